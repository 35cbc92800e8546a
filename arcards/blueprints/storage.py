"""Serves signed URLs minted by the local storage backend."""
import mimetypes
from io import BytesIO

from flask import Blueprint, abort, request, send_file

from ..extensions import storage
from ..services.storage_service import LocalStorageBackend

storage_bp = Blueprint("storage", __name__)


@storage_bp.get("/storage/<bucket>/<path:path>")
def signed_object(bucket, path):
    backend = storage.backend
    if not isinstance(backend, LocalStorageBackend):
        abort(404)
    token = request.args.get("token", "")
    if not token or not backend.verify_token(bucket, path, token):
        abort(403)

    data = storage.get(bucket, path)
    resp = send_file(
        BytesIO(data),
        mimetype=mimetypes.guess_type(path)[0] or "application/octet-stream",
        download_name=path.rsplit("/", 1)[-1],
        conditional=True,
    )
    resp.headers["Cache-Control"] = "private, max-age=300"
    resp.headers["Access-Control-Allow-Origin"] = "*"
    return resp
