from typing import Dict, Optional

from flask import request, url_for

from ...config import _as_bool
from ...models.asset import Asset
from ...services.asset_service import Upload, descriptor_base_url


def _upload_from_file(field: str) -> Optional[Upload]:
    f = request.files.get(field)
    if f is None or not f.filename:
        return None
    return Upload(data=f.read(), filename=f.filename, content_type=f.mimetype or "")


def _upload_from_request() -> Upload:
    """Multipart ``file`` field, or the raw body with its Content-Type."""
    up = _upload_from_file("file")
    if up is not None:
        return up
    return Upload(
        data=request.get_data(cache=False),
        filename=request.args.get("filename", ""),
        content_type=request.mimetype or "",
    )


def _artifact_tables(blob_names) -> Dict[str, bytes]:
    """Files posted under each table's extension (``iset``, ``fset`` ...)."""
    tables = {}
    for name in blob_names:
        f = request.files.get(name.rsplit(".", 1)[-1])
        if f is not None:
            tables[name] = f.read()
    return tables


def _form_value(name: str, default=None):
    if request.is_json:
        return (request.get_json(silent=True) or {}).get(name, default)
    return request.form.get(name, default)


def _form_bool(name: str, default: bool = True) -> bool:
    val = _form_value(name)
    if val is None:
        return default
    if isinstance(val, bool):
        return val
    return _as_bool(str(val), default)


def _owner_view(asset: Asset) -> dict:
    data = asset.to_dict()
    data["descriptor_url"] = descriptor_base_url(asset)
    data["public_url"] = url_for("public.asset_view", asset_id=asset.id, _external=True)
    data["upload_targets"] = {
        "image": url_for("api.put_image", asset_id=asset.id, _external=True),
        "video": url_for("api.put_video", asset_id=asset.id, _external=True),
        "artifact": url_for("api.put_artifact", asset_id=asset.id, _external=True),
    }
    return data
