# arcards/services/asset_service.py
"""
Asset lifecycle: create, attach media, recompile, delete, and the read side
used by the public endpoint and the descriptor proxy.

Storage paths come only from (owner_id, asset_id, media kind), so replacing
media overwrites a known path instead of piling up files.
"""
from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from flask import current_app, url_for
from sqlalchemy import update

from ..errors import AuthorizationError, BlobNotFoundError, NotFoundError, ValidationError
from ..extensions import compile_queue, db, storage
from ..models.asset import Asset, AssetStatus, utcnow
from .compile_service import blob_paths, current_codec, publish_uploaded
from .storage_service import allowed_ext

log = logging.getLogger(__name__)

IMAGE = "image"
VIDEO = "video"

_CONTENT_TYPE_EXT = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
}


@dataclass
class Upload:
    data: bytes
    filename: str = ""
    content_type: str = ""


def _bucket(kind: str) -> str:
    return current_app.config["IMAGE_BUCKET" if kind == IMAGE else "VIDEO_BUCKET"]


def asset_prefix(owner_id: str, asset_id: str) -> str:
    return f"{owner_id}/{asset_id}/"


def media_path(owner_id: str, asset_id: str, kind: str, ext: str) -> str:
    return f"{asset_prefix(owner_id, asset_id)}{kind}.{ext}"


def _resolve_ext(upload: Upload, kind: str) -> str:
    allowed = current_app.config[
        "ALLOWED_IMAGE_EXTENSIONS" if kind == IMAGE else "ALLOWED_VIDEO_EXTENSIONS"
    ]
    if upload.filename and allowed_ext(upload.filename, allowed):
        ext = Path(upload.filename).suffix.lower().lstrip(".")
        return "jpg" if ext == "jpeg" else ext
    ctype = (upload.content_type or "").split(";")[0].strip().lower()
    ext = _CONTENT_TYPE_EXT.get(ctype)
    if ext and ext in allowed:
        return ext
    raise ValidationError(f"Unsupported {kind} type; allowed: {', '.join(sorted(allowed))}")


def _content_type(path: str) -> str:
    return mimetypes.guess_type(path)[0] or "application/octet-stream"


def _store_media(asset: Asset, kind: str, upload: Upload) -> str:
    if not upload.data:
        raise ValidationError(f"Empty {kind} upload")
    ext = _resolve_ext(upload, kind)
    bucket = _bucket(kind)
    path = media_path(asset.owner_id, asset.id, kind, ext)
    storage.put(bucket, path, upload.data, _content_type(path))

    # a different extension would leave the old file behind
    stale_prefix = f"{asset_prefix(asset.owner_id, asset.id)}{kind}."
    stale = [p for p in storage.list(bucket, stale_prefix) if p != path]
    if stale:
        storage.delete(bucket, stale)
    return path


# -----------------
# Write side
# -----------------

def create_asset(owner_id: str, title: str = "", description: Optional[str] = None,
                 is_public: bool = True, image: Optional[Upload] = None,
                 video: Optional[Upload] = None) -> Asset:
    owner_id = (owner_id or "").strip()
    if not owner_id or "/" in owner_id or owner_id in (".", ".."):
        raise ValidationError("Invalid owner id")
    title = (title or "").strip()
    if len(title) > 200:
        raise ValidationError("Title is too long")

    asset = Asset(
        owner_id=owner_id,
        title=title,
        description=(description or "").strip() or None,
        is_public=bool(is_public),
        status=AssetStatus.PROCESSING,
        compile_generation=0,
    )
    db.session.add(asset)
    db.session.commit()
    log.info("asset created: %s owner=%s", asset.id, owner_id)

    if video is not None:
        attach_video(asset, video)
    if image is not None:
        attach_image(asset, image)
    return asset


def attach_image(asset: Asset, upload: Upload) -> int:
    """Store a new image, start a new generation and queue its compilation."""
    asset_id = asset.id
    path = _store_media(asset, IMAGE, upload)
    now = utcnow()
    result = db.session.execute(
        update(Asset)
        .where(Asset.id == asset_id)
        .values(
            compile_generation=Asset.compile_generation + 1,
            image_ref=path,
            image_updated_at=now,
            status=AssetStatus.PROCESSING,
            artifact_ref=None,
            error_message=None,
            compile_token=None,
            compile_started_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    if result.rowcount != 1:
        raise NotFoundError("Asset not found")

    db.session.refresh(asset)
    generation = asset.compile_generation
    log.info("image attached: asset=%s gen=%s path=%s", asset_id, generation, path)
    compile_queue.enqueue(asset_id, generation)
    # the worker writes through its own session
    db.session.expire(asset)
    return generation


def attach_video(asset: Asset, upload: Upload) -> str:
    path = _store_media(asset, VIDEO, upload)
    asset.video_ref = path
    db.session.commit()
    log.info("video attached: asset=%s path=%s", asset.id, path)
    return path


def attach_artifact(asset: Asset, tables: Dict[str, bytes]) -> int:
    """Publish client-compiled descriptor tables as a new generation."""
    if not asset.image_ref:
        raise ValidationError("Asset has no image the artifact could describe")
    generation = publish_uploaded(asset.id, tables)
    db.session.expire(asset)
    return generation


def request_recompile(asset: Asset) -> int:
    if not asset.image_ref:
        raise ValidationError("Asset has no image to compile")
    generation = asset.compile_generation
    compile_queue.enqueue(asset.id, generation)
    db.session.expire(asset)
    return generation


def delete_asset(owner_id: str, asset_id: str) -> bool:
    """
    Remove the row, then every blob under the asset's prefix in every bucket.

    An attempt still in flight then finds the row gone at finalize and
    removes its own snapshot.
    Safe to retry after a partial failure; returns whether a row was deleted.
    """
    asset = db.session.get(Asset, asset_id)
    if asset is not None and asset.owner_id != owner_id:
        raise AuthorizationError("Not your asset")

    deleted = asset is not None
    if deleted:
        db.session.delete(asset)
        db.session.commit()
        log.info("asset deleted: %s", asset_id)

    cfg = current_app.config
    prefix = asset_prefix(owner_id, asset_id)
    for bucket in (cfg["IMAGE_BUCKET"], cfg["VIDEO_BUCKET"], cfg["ARTIFACT_BUCKET"]):
        removed = storage.delete_prefix(bucket, prefix)
        if removed:
            log.info("purged %s blob(s) from %s for asset %s", len(removed), bucket, asset_id)
    return deleted


def get_owned_asset(owner_id: str, asset_id: str) -> Asset:
    asset = db.session.get(Asset, asset_id)
    if asset is None:
        raise NotFoundError("Asset not found")
    if asset.owner_id != owner_id:
        raise AuthorizationError("Not your asset")
    return asset


def list_assets(owner_id: str):
    return (
        Asset.query
        .filter_by(owner_id=owner_id)
        .order_by(Asset.created_at.desc(), Asset.id)
        .all()
    )


# -----------------
# Read side
# -----------------

def get_public_asset(asset_id: str) -> Asset:
    asset = db.session.get(Asset, asset_id)
    if asset is None or not asset.is_public:
        raise NotFoundError("Asset not found")
    return asset


def descriptor_base_url(asset: Asset) -> Optional[str]:
    """Versioned proxy base the tracking client appends extensions to."""
    generation = asset.served_generation
    if generation is None:
        return None
    codec = current_codec()
    return url_for(
        "proxy.versioned_descriptor",
        owner_id=asset.owner_id,
        asset_id=asset.id,
        generation=generation,
        filename=codec.base_name,
        _external=True,
    )


def public_view(asset: Asset) -> dict:
    """Public read model. Anything but ready exposes the status only."""
    if asset.status != AssetStatus.READY:
        view = {"status": asset.status}
        if asset.status == AssetStatus.ERROR:
            view["message"] = "This asset could not be prepared."
        return view

    cfg = current_app.config
    ttl = int(cfg.get("SIGNED_URL_TTL", 3600))
    codec = current_codec()
    artifact_urls: Dict[str, str] = {}
    for name, path in blob_paths(asset.artifact_ref, codec).items():
        artifact_urls[name.rsplit(".", 1)[-1]] = storage.signed_url(cfg["ARTIFACT_BUCKET"], path, ttl)

    return {
        "id": asset.id,
        "status": asset.status,
        "title": asset.title,
        "imageUrl": storage.signed_url(cfg["IMAGE_BUCKET"], asset.image_ref, ttl) if asset.image_ref else None,
        "videoUrl": storage.signed_url(cfg["VIDEO_BUCKET"], asset.video_ref, ttl) if asset.video_ref else None,
        "artifactUrls": artifact_urls,
        "descriptorUrl": descriptor_base_url(asset),
        "expiresIn": ttl,
    }


class NotReady(Exception):
    def __init__(self, status: str):
        self.status = status
        super().__init__(status)


def _served_path(owner_id: str, asset_id: str, filename: str,
                 generation: Optional[int]):
    asset = db.session.get(Asset, asset_id)
    if asset is None or asset.owner_id != owner_id or not asset.is_public:
        raise NotFoundError("Asset not found")

    codec = current_codec()
    if filename not in codec.blob_names:
        raise NotFoundError("Unknown descriptor file")

    base = asset.served_ref
    served_generation = asset.served_generation
    if base is None:
        raise NotReady(asset.status)
    if generation is not None and generation != served_generation:
        raise NotFoundError("Descriptor generation not available")
    return blob_paths(base, codec)[filename], served_generation


def resolve_descriptor(owner_id: str, asset_id: str, filename: str,
                       generation: Optional[int] = None):
    """
    Map (owner, asset, filename) to artifact bytes.

    Serves the current artifact when ready, otherwise the last published one
    while a replacement compiles. Raises NotFoundError / NotReady.
    """
    bucket = current_app.config["ARTIFACT_BUCKET"]
    path, served_generation = _served_path(owner_id, asset_id, filename, generation)
    try:
        return storage.get(bucket, path), served_generation
    except BlobNotFoundError:
        # a newer generation was finalized and retired this snapshot after the row was read
        db.session.rollback()
        fresh_path, served_generation = _served_path(owner_id, asset_id, filename, generation)
        if fresh_path == path:
            raise
        log.info("descriptor %s moved to %s during fetch", path, fresh_path)
        return storage.get(bucket, fresh_path), served_generation
