# arcards/security.py
"""
Identity seam. Sessions live in an external identity service; it hands the
owner a signed bearer token that we only verify.
"""
from typing import Optional

from flask import current_app, jsonify
from flask_login import UserMixin, current_user
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .extensions import login_manager

TOKEN_SALT = "arcards-owner"


class Principal(UserMixin):
    def __init__(self, owner_id: str):
        self.id = owner_id

    @property
    def owner_id(self) -> str:
        return self.id


def _ts() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key=current_app.config["SECRET_KEY"], salt=TOKEN_SALT)


def issue_owner_token(owner_id: str) -> str:
    return _ts().dumps({"sub": owner_id})


def verify_owner_token(token: str, max_age: Optional[int] = None) -> Optional[str]:
    if max_age is None:
        max_age = int(current_app.config.get("OWNER_TOKEN_MAX_AGE", 7 * 24 * 3600))
    try:
        data = _ts().loads(token, max_age=max_age)
    except (BadSignature, SignatureExpired):
        return None
    sub = data.get("sub") if isinstance(data, dict) else None
    return sub if isinstance(sub, str) and sub else None


@login_manager.request_loader
def load_principal_from_request(request):
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    owner_id = verify_owner_token(token.strip())
    return Principal(owner_id) if owner_id else None


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify(error="unauthorized", message="A valid bearer token is required"), 401


def current_owner_id() -> str:
    return current_user.owner_id

