# arcards/services/compile_service.py
"""
Compilation job coordinator.

One call to ``compile_asset(asset_id, generation)`` is one attempt:

    claim -> fetch image -> decode -> extract -> encode -> publish -> finalize

Claim and finalize are conditional UPDATEs keyed on (compile_generation,
compile_token); they are the only synchronisation between attempts, so any
number of workers in any number of processes may race on the same asset.
Every failure ends as a terminal asset status; nothing is raised to callers.

``publish_uploaded`` takes tables compiled by the client through the same
snapshot publish and finalize; its errors propagate to the request.
"""
from __future__ import annotations

import logging
import time
import uuid
from datetime import timedelta
from typing import Dict, Optional, Tuple

from flask import current_app
from sqlalchemy import and_, or_, select, update

from ..errors import (
    ArcardsError,
    BlobNotFoundError,
    CompilationError,
    ConflictError,
    LowQualityInputError,
    MalformedArtifact,
    NotFoundError,
    StorageError,
    ValidationError,
)
from ..extensions import db, storage
from ..models.asset import Asset, AssetStatus, unix_seconds, utcnow
from .artifact_codec import ArtifactCodec, get_codec
from .feature_extractor import FeatureExtractor, decode_raster, get_extractor

log = logging.getLogger(__name__)

# outcomes returned by compile_asset (useful for logs, tests and the CLI)
SKIPPED = "skipped"
READY = "ready"
DISCARDED = "discarded"
NEEDS_BETTER_IMAGE = "needs_better_image"
FAILED = "error"


class CompilationTimeout(CompilationError):
    pass


# -----------------
# Paths
# -----------------

def artifact_prefix(owner_id: str, asset_id: str) -> str:
    return f"{owner_id}/{asset_id}/nft/"


def artifact_base(owner_id: str, asset_id: str, generation: int, codec: ArtifactCodec) -> str:
    """Generation snapshot base path; blob names are base + extension."""
    return f"{artifact_prefix(owner_id, asset_id)}g{generation}/{codec.base_name}"


def blob_paths(base: str, codec: ArtifactCodec) -> Dict[str, str]:
    folder = base.rsplit("/", 1)[0]
    return {name: f"{folder}/{name}" for name in codec.blob_names}


def current_codec() -> ArtifactCodec:
    return get_codec(current_app.config.get("ARTIFACT_FORMAT", "triplet"))


def current_extractor() -> FeatureExtractor:
    return get_extractor(
        current_app.config.get("FEATURE_EXTRACTOR", "harris"),
        max_keypoints=int(current_app.config.get("MAX_KEYPOINTS", 500)),
    )


# -----------------
# Conditional updates
# -----------------

def _budget() -> timedelta:
    return timedelta(seconds=int(current_app.config.get("COMPILE_TIMEOUT_SECONDS", 300)))


def claim(asset_id: str, generation: int) -> Optional[str]:
    """
    Take the single-flight marker for ``generation``. Returns the attempt token,
    or None if the generation is stale or another attempt holds a live marker.
    """
    now = utcnow()
    token = str(uuid.uuid4())
    stmt = (
        update(Asset)
        .where(
            Asset.id == asset_id,
            Asset.compile_generation == generation,
            or_(Asset.compile_token.is_(None), Asset.compile_started_at < now - _budget()),
        )
        .values(
            compile_token=token,
            compile_started_at=now,
            status=AssetStatus.PROCESSING,
            artifact_ref=None,
            error_message=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    db.session.commit()
    return token if result.rowcount == 1 else None


def _guard(asset_id: str, generation: int, token: str):
    return and_(
        Asset.id == asset_id,
        Asset.compile_generation == generation,
        Asset.compile_token == token,
    )


def _finalize_ready(asset_id: str, generation: int, token: str, base: str, count: int) -> bool:
    now = utcnow()
    stmt = (
        update(Asset)
        .where(_guard(asset_id, generation, token))
        .values(
            status=AssetStatus.READY,
            artifact_ref=base,
            published_ref=base,
            published_generation=generation,
            error_message=None,
            keypoint_count=count,
            compiled_at=now,
            compile_token=None,
            compile_started_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    db.session.commit()
    return result.rowcount == 1


def _finalize_failed(asset_id: str, generation: int, token: str, status: str, message: str,
                     keep_published: bool) -> bool:
    now = utcnow()
    values = dict(
        status=status,
        artifact_ref=None,
        error_message=message if status == AssetStatus.ERROR else None,
        compile_token=None,
        compile_started_at=None,
        updated_at=now,
    )
    if not keep_published:
        values.update(published_ref=None, published_generation=None)
    stmt = (
        update(Asset)
        .where(_guard(asset_id, generation, token))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    db.session.commit()
    return result.rowcount == 1


# -----------------
# Attempt
# -----------------

class _Deadline:
    def __init__(self, seconds: float, clock=time.monotonic):
        self.clock = clock
        self.expires = clock() + seconds

    def check(self, step: str) -> None:
        if self.clock() > self.expires:
            raise CompilationTimeout(f"Compilation timed out during {step}")


def compile_asset(asset_id: str, generation: int, extractor: Optional[FeatureExtractor] = None,
                  codec: Optional[ArtifactCodec] = None) -> str:
    token = claim(asset_id, generation)
    if token is None:
        log.info("compile skipped: asset=%s gen=%s (stale or already in flight)", asset_id, generation)
        return SKIPPED

    asset = db.session.get(Asset, asset_id)
    if asset is None:
        return DISCARDED
    owner_id = asset.owner_id
    image_ref = asset.image_ref
    generated_at = unix_seconds(asset.image_updated_at)
    previous_ref = asset.published_ref
    db.session.rollback()

    codec = codec or current_codec()
    extractor = extractor or current_extractor()
    base = artifact_base(owner_id, asset_id, generation, codec)
    deadline = _Deadline(_budget().total_seconds())
    started = time.monotonic()
    cfg = current_app.config
    uploaded = False

    try:
        if not image_ref:
            raise CompilationError("Asset has no image")
        try:
            data = storage.get(cfg["IMAGE_BUCKET"], image_ref)
        except BlobNotFoundError as e:
            raise CompilationError("Source image not found in storage") from e
        except StorageError as e:
            raise CompilationError(f"Could not fetch source image: {e}") from e
        deadline.check("fetch")

        raster = decode_raster(data, max_side=int(cfg.get("MAX_IMAGE_SIDE", 1024)))
        deadline.check("decode")

        try:
            keypoints = extractor.extract(raster)
        except ArcardsError:
            raise
        except Exception as e:
            raise CompilationError(f"Feature extraction failed: {e}") from e
        minimum = int(cfg.get("MIN_KEYPOINTS", 50))
        if len(keypoints) < minimum:
            raise LowQualityInputError(len(keypoints), minimum)
        deadline.check("extract")

        try:
            blobs = codec.encode(keypoints, raster.width, raster.height, generated_at)
        except (ValueError, OverflowError) as e:
            raise CompilationError(f"Artifact encoding failed: {e}") from e
        deadline.check("encode")

        uploaded = True
        _publish(blobs, base, codec)
        deadline.check("publish")

    except LowQualityInputError as e:
        log.info("compile needs better image: asset=%s gen=%s %s", asset_id, generation, e)
        return _fail(asset_id, generation, token, AssetStatus.NEEDS_BETTER_IMAGE, str(e),
                     base, codec, previous_ref, uploaded)
    except ArcardsError as e:
        log.warning("compile failed: asset=%s gen=%s %s", asset_id, generation, e)
        return _fail(asset_id, generation, token, AssetStatus.ERROR, str(e) or type(e).__name__,
                     base, codec, previous_ref, uploaded)
    except Exception as e:
        log.exception("compile crashed: asset=%s gen=%s", asset_id, generation)
        return _fail(asset_id, generation, token, AssetStatus.ERROR, f"Unexpected compilation failure: {e}",
                     base, codec, previous_ref, uploaded)

    if not _finalize_ready(asset_id, generation, token, base, len(keypoints)):
        log.info("compile result discarded: asset=%s gen=%s superseded", asset_id, generation)
        _discard_snapshot(asset_id, base, codec)
        return DISCARDED

    if previous_ref and previous_ref != base:
        _retire(previous_ref, codec)
    log.info("compile ready: asset=%s gen=%s keypoints=%s in %.2fs",
             asset_id, generation, len(keypoints), time.monotonic() - started)
    return READY


def _publish(blobs: Dict[str, bytes], base: str, codec: ArtifactCodec) -> None:
    """Upload every blob under the snapshot base, then verify all of them landed."""
    bucket = current_app.config["ARTIFACT_BUCKET"]
    paths = blob_paths(base, codec)
    for name, path in paths.items():
        storage.put(bucket, path, blobs[name], "application/octet-stream")

    folder = base.rsplit("/", 1)[0] + "/"
    try:
        present = set(storage.list(bucket, folder))
    except StorageError as e:
        raise CompilationError(f"Could not verify artifact upload: {e}") from e
    missing = [p for p in paths.values() if p not in present]
    if missing:
        raise CompilationError(f"Artifact upload incomplete, missing {', '.join(missing)}")


def _fail(asset_id, generation, token, status, message, base, codec, previous_ref, uploaded) -> str:
    # The old artifact belongs to an older image; only keep it if it is this generation's own.
    keep = previous_ref == base
    if _finalize_failed(asset_id, generation, token, status, message, keep_published=keep):
        if previous_ref and not keep:
            _retire(previous_ref, codec)
        if uploaded and not keep:
            _retire(base, codec)
        return NEEDS_BETTER_IMAGE if status == AssetStatus.NEEDS_BETTER_IMAGE else FAILED
    if uploaded:
        _discard_snapshot(asset_id, base, codec)
    return DISCARDED


def _discard_snapshot(asset_id: str, base: str, codec: ArtifactCodec) -> None:
    asset = db.session.get(Asset, asset_id)
    in_use = asset is not None and base in (asset.published_ref, asset.artifact_ref)
    db.session.rollback()
    if not in_use:
        _retire(base, codec)


def _retire(base: str, codec: ArtifactCodec) -> None:
    """Best-effort removal of one artifact snapshot."""
    bucket = current_app.config["ARTIFACT_BUCKET"]
    folder = base.rsplit("/", 1)[0] + "/"
    try:
        storage.delete_prefix(bucket, folder)
    except StorageError as e:
        log.warning("could not remove artifact snapshot %s: %s", base, e)


# -----------------
# Artifacts compiled elsewhere
# -----------------

def _claim_next_generation(asset_id: str) -> Tuple[int, str]:
    """Start a new generation and take its marker in the same UPDATE."""
    now = utcnow()
    token = str(uuid.uuid4())
    result = db.session.execute(
        update(Asset)
        .where(Asset.id == asset_id)
        .values(
            compile_generation=Asset.compile_generation + 1,
            compile_token=token,
            compile_started_at=now,
            status=AssetStatus.PROCESSING,
            artifact_ref=None,
            error_message=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    if result.rowcount != 1:
        raise NotFoundError("Asset not found")
    generation = db.session.execute(
        select(Asset.compile_generation).where(Asset.id == asset_id, Asset.compile_token == token)
    ).scalar_one_or_none()
    db.session.rollback()
    if generation is None:
        raise ConflictError("Superseded by a newer upload")
    return generation, token


def publish_uploaded(asset_id: str, blobs: Dict[str, bytes],
                     codec: Optional[ArtifactCodec] = None) -> int:
    """
    Publish descriptor tables compiled by the client.

    The tables are decoded first, so a malformed upload changes nothing. A
    valid one becomes a new generation that supersedes any attempt in flight,
    and goes through the same snapshot publish and guarded finalize as a
    server-side compile. Returns the new generation.
    """
    codec = codec or current_codec()
    try:
        artifact = codec.decode(blobs)
    except MalformedArtifact as e:
        raise ValidationError(f"Malformed artifact: {e}") from e
    minimum = int(current_app.config.get("MIN_KEYPOINTS", 50))
    if len(artifact.keypoints) < minimum:
        raise ValidationError(str(LowQualityInputError(len(artifact.keypoints), minimum)))

    generation, token = _claim_next_generation(asset_id)
    asset = db.session.get(Asset, asset_id)
    if asset is None:
        raise NotFoundError("Asset not found")
    owner_id = asset.owner_id
    previous_ref = asset.published_ref
    db.session.rollback()

    base = artifact_base(owner_id, asset_id, generation, codec)
    try:
        _publish({name: blobs[name] for name in codec.blob_names}, base, codec)
    except ArcardsError as e:
        log.warning("uploaded artifact failed to publish: asset=%s gen=%s %s", asset_id, generation, e)
        _fail(asset_id, generation, token, AssetStatus.ERROR, str(e) or type(e).__name__,
              base, codec, previous_ref, True)
        raise

    if not _finalize_ready(asset_id, generation, token, base, len(artifact.keypoints)):
        _discard_snapshot(asset_id, base, codec)
        raise ConflictError("Superseded by a newer upload")

    if previous_ref and previous_ref != base:
        _retire(previous_ref, codec)
    log.info("uploaded artifact ready: asset=%s gen=%s keypoints=%s",
             asset_id, generation, len(artifact.keypoints))
    return generation


def reap_stale_compilations() -> int:
    """Fail attempts whose marker outlived the compile budget. Returns rows touched."""
    now = utcnow()
    stmt = (
        update(Asset)
        .where(Asset.compile_token.is_not(None), Asset.compile_started_at < now - _budget())
        .values(
            status=AssetStatus.ERROR,
            artifact_ref=None,
            error_message="Compilation timed out",
            compile_token=None,
            compile_started_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    db.session.commit()
    if result.rowcount:
        log.warning("reaped %s stale compilation(s)", result.rowcount)
    return result.rowcount
