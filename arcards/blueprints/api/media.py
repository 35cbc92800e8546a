from flask import jsonify
from flask_login import login_required

from ...security import current_owner_id
from ...services import asset_service
from ...services.compile_service import current_codec
from . import api_bp
from .utils import _artifact_tables, _owner_view, _upload_from_request


@api_bp.put("/assets/<asset_id>/image")
@login_required
def put_image(asset_id):
    asset = asset_service.get_owned_asset(current_owner_id(), asset_id)
    asset_service.attach_image(asset, _upload_from_request())
    return jsonify(_owner_view(asset)), 202


@api_bp.put("/assets/<asset_id>/video")
@login_required
def put_video(asset_id):
    asset = asset_service.get_owned_asset(current_owner_id(), asset_id)
    asset_service.attach_video(asset, _upload_from_request())
    return jsonify(_owner_view(asset))


@api_bp.put("/assets/<asset_id>/artifact")
@login_required
def put_artifact(asset_id):
    """Multipart upload of client-compiled tables, one field per extension."""
    asset = asset_service.get_owned_asset(current_owner_id(), asset_id)
    asset_service.attach_artifact(asset, _artifact_tables(current_codec().blob_names))
    return jsonify(_owner_view(asset))
