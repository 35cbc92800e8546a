"""
Descriptor proxy for the AR client.

The client is given a base URL and appends table extensions to it, so the
paths here mirror the artifact blob names. Versioned URLs never change
content and are cached for good; unversioned ones follow replacements.
"""
from hashlib import md5
from io import BytesIO

from flask import Blueprint, send_file

from ..services.artifact_codec import content_type_for
from ..services.asset_service import resolve_descriptor

proxy_bp = Blueprint("proxy", __name__)

IMMUTABLE = "public, max-age=31536000, immutable"
SHORT = "public, max-age=60"


def _etag(b: bytes) -> str:
    return md5(b).hexdigest()


def _send(data: bytes, filename: str, cache_control: str, generation: int):
    resp = send_file(
        BytesIO(data),
        mimetype=content_type_for(filename),
        download_name=filename,
        etag=_etag(data),
        conditional=True,
    )
    resp.headers["Cache-Control"] = cache_control
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Expose-Headers"] = "ETag, X-Artifact-Generation"
    resp.headers["X-Artifact-Generation"] = str(generation)
    return resp


@proxy_bp.get("/ar/nft/<owner_id>/<asset_id>/<filename>")
def descriptor(owner_id, asset_id, filename):
    data, generation = resolve_descriptor(owner_id, asset_id, filename)
    return _send(data, filename, SHORT, generation)


@proxy_bp.get("/ar/nft/<owner_id>/<asset_id>/g<int:generation>/<filename>")
def versioned_descriptor(owner_id, asset_id, generation, filename):
    data, served = resolve_descriptor(owner_id, asset_id, filename, generation=generation)
    return _send(data, filename, IMMUTABLE, served)
