from flask import Blueprint

api_bp = Blueprint("api", __name__)

# Import route modules to register their endpoints
from . import assets  # noqa: E402,F401
from . import media   # noqa: E402,F401
