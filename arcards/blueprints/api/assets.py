from flask import jsonify
from flask_login import login_required

from ...security import current_owner_id
from ...services import asset_service
from . import api_bp
from .utils import _form_bool, _form_value, _owner_view, _upload_from_file


@api_bp.post("/assets")
@login_required
def create_asset():
    asset = asset_service.create_asset(
        owner_id=current_owner_id(),
        title=_form_value("title", "") or "",
        description=_form_value("description"),
        is_public=_form_bool("is_public", True),
        image=_upload_from_file("image"),
        video=_upload_from_file("video"),
    )
    return jsonify(_owner_view(asset)), 201


@api_bp.get("/assets")
@login_required
def list_assets():
    assets = asset_service.list_assets(current_owner_id())
    return jsonify(items=[_owner_view(a) for a in assets])


@api_bp.get("/assets/<asset_id>")
@login_required
def get_asset(asset_id):
    asset = asset_service.get_owned_asset(current_owner_id(), asset_id)
    return jsonify(_owner_view(asset))


@api_bp.post("/assets/<asset_id>/recompile")
@login_required
def recompile(asset_id):
    asset = asset_service.get_owned_asset(current_owner_id(), asset_id)
    generation = asset_service.request_recompile(asset)
    return jsonify(id=asset_id, generation=generation, status="queued"), 202


@api_bp.delete("/assets/<asset_id>")
@login_required
def delete_asset(asset_id):
    asset_service.delete_asset(current_owner_id(), asset_id)
    return "", 204
