# arcards/models/asset.py
import uuid
from datetime import datetime, timezone

from ..extensions import db


def utcnow() -> datetime:
    # naive UTC, matching what SQLite hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def unix_seconds(dt: datetime | None) -> int:
    if dt is None:
        return 0
    return int(dt.replace(tzinfo=timezone.utc).timestamp())


class AssetStatus:
    PROCESSING = "processing"
    READY = "ready"
    NEEDS_BETTER_IMAGE = "needs_better_image"
    ERROR = "error"

    ALL = (PROCESSING, READY, NEEDS_BETTER_IMAGE, ERROR)


class Asset(db.Model):
    __tablename__ = "asset"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = db.Column(db.String(128), nullable=False, index=True)

    title = db.Column(db.String(200), nullable=False, default="")
    description = db.Column(db.Text)
    is_public = db.Column(db.Boolean, nullable=False, default=True, index=True)

    # storage refs (paths inside the image/video/artifact buckets)
    image_ref = db.Column(db.String(512))
    video_ref = db.Column(db.String(512))
    artifact_ref = db.Column(db.String(512))         # set iff status == ready
    published_ref = db.Column(db.String(512))        # last artifact that reached ready, still servable
    published_generation = db.Column(db.Integer)

    status = db.Column(db.String(30), nullable=False, default=AssetStatus.PROCESSING, index=True)
    error_message = db.Column(db.Text)               # set iff status == error

    # single-flight bookkeeping
    compile_generation = db.Column(db.Integer, nullable=False, default=0)
    compile_token = db.Column(db.String(36))
    compile_started_at = db.Column(db.DateTime)

    image_updated_at = db.Column(db.DateTime)
    keypoint_count = db.Column(db.Integer)
    compiled_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_ready(self) -> bool:
        return self.status == AssetStatus.READY

    @property
    def served_ref(self):
        """
        Artifact base path readers should get right now, if any.

        While processing, the last published artifact stays servable. Terminal
        failure statuses serve nothing.
        """
        if self.status == AssetStatus.READY:
            return self.artifact_ref
        if self.status == AssetStatus.PROCESSING:
            return self.published_ref
        return None

    @property
    def served_generation(self):
        if self.status == AssetStatus.READY and self.artifact_ref:
            return self.compile_generation
        if self.status == AssetStatus.PROCESSING and self.published_ref:
            return self.published_generation
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "description": self.description,
            "is_public": self.is_public,
            "status": self.status,
            "error_message": self.error_message,
            "image_ref": self.image_ref,
            "video_ref": self.video_ref,
            "artifact_ref": self.artifact_ref,
            "compile_generation": self.compile_generation,
            "keypoint_count": self.keypoint_count,
            "compiled_at": self.compiled_at.isoformat() if self.compiled_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Asset {self.id} {self.status} gen={self.compile_generation}>"
