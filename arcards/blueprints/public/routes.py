from flask import jsonify

from ...services.asset_service import get_public_asset, public_view
from . import public_bp


@public_bp.get("/p/<asset_id>")
def asset_view(asset_id):
    view = public_view(get_public_asset(asset_id))
    resp = jsonify(view)
    # signed urls are minted per request
    resp.headers["Cache-Control"] = "no-store"
    resp.headers["Access-Control-Allow-Origin"] = "*"
    return resp
