import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from ...errors import ArcardsError, NotFoundError, StorageError
from ...extensions import db
from ...services.asset_service import NotReady
from . import errors_bp

log = logging.getLogger(__name__)


def _error(code: int, error: str, message: str, **extra):
    body = {"error": error, "message": message}
    body.update(extra)
    return jsonify(body), code


# Domain errors carry their own status and a message safe to show
@errors_bp.app_errorhandler(ArcardsError)
def err_domain(e: ArcardsError):
    if isinstance(e, StorageError) and not isinstance(e, NotFoundError):
        # provider text never reaches the client
        log.warning("storage error on %s: %s", request.path, e)
        return _error(e.http_status, "storage_unavailable", e.public_message)
    message = e.public_message if isinstance(e, StorageError) else (str(e) or e.public_message)
    return _error(e.http_status, type(e).__name__, message)


# Descriptor requested before any artifact was published
@errors_bp.app_errorhandler(NotReady)
def err_not_ready(e: NotReady):
    resp, status = _error(409, "not_ready", "Descriptors are not available yet", status=e.status)
    resp.headers["Retry-After"] = "5"
    resp.headers["Access-Control-Allow-Origin"] = "*"
    return resp, status


# 413 – Payload Too Large (uploads)
@errors_bp.app_errorhandler(413)
def err_413(e):
    return _error(413, "payload_too_large", "Upload exceeds the size limit")


# 500 – Internal Server Error
@errors_bp.app_errorhandler(500)
def err_500(e):
    # if a DB action caused this, rollback so app isn't stuck in bad transaction
    try:
        db.session.rollback()
    except Exception:
        log.exception("rollback failed")
    return _error(500, "internal_error", "Internal error")


@errors_bp.app_errorhandler(HTTPException)
def err_http(e: HTTPException):
    return _error(e.code or 500, (e.name or "error").lower().replace(" ", "_"), e.description or "")


# Last-resort: any other Exception
@errors_bp.app_errorhandler(Exception)
def err_unexpected(e):
    log.exception("unhandled error on %s %s", request.method, request.path)
    try:
        db.session.rollback()
    except Exception:
        log.exception("rollback failed")
    # Don't leak internals
    return _error(500, "internal_error", "Internal error")
