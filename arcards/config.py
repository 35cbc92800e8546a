# arcards/config.py
import os
from dotenv import load_dotenv

load_dotenv()

def _as_bool(val: str | None, default=False) -> bool:
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}

def _as_set(val: str | None, default: str) -> set:
    return {v.strip().lower() for v in (val or default).split(",") if v.strip()}

class Config:
    # --- Core ---
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
    APP_VERSION = os.getenv("APP_VERSION")
    EXTERNAL_BASE_URL = os.getenv("EXTERNAL_BASE_URL", "http://localhost:5000")

    # DB
    SQLALCHEMY_DATABASE_URI = (
        os.getenv("SQLALCHEMY_DATABASE_URI")
        or os.getenv("DATABASE_URL")
        or "sqlite:///arcards.db"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # --- Identity (tokens are minted by the external identity service) ---
    OWNER_TOKEN_MAX_AGE = int(os.getenv("OWNER_TOKEN_MAX_AGE", str(7 * 24 * 3600)))

    # --- Uploads ---
    MAX_CONTENT_LENGTH = int(os.getenv("MAX_CONTENT_LENGTH", str(100 * 1024 * 1024)))  # 100MB
    ALLOWED_IMAGE_EXTENSIONS = _as_set(os.getenv("ALLOWED_IMAGE_EXTENSIONS"), "jpg,jpeg,png,webp")
    ALLOWED_VIDEO_EXTENSIONS = _as_set(os.getenv("ALLOWED_VIDEO_EXTENSIONS"), "mp4,webm,mov")

    # --- Storage ---
    STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local")   # local|supabase
    STORAGE_ROOT = os.getenv("STORAGE_ROOT")                   # local only; default <instance>/storage
    SUPABASE_URL = os.getenv("SUPABASE_URL")
    SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    IMAGE_BUCKET = os.getenv("IMAGE_BUCKET", "postcard-images")
    VIDEO_BUCKET = os.getenv("VIDEO_BUCKET", "postcard-videos")
    ARTIFACT_BUCKET = os.getenv("ARTIFACT_BUCKET", "nft-descriptors")
    STORAGE_TIMEOUT = float(os.getenv("STORAGE_TIMEOUT", "20"))
    STORAGE_RETRY_ATTEMPTS = int(os.getenv("STORAGE_RETRY_ATTEMPTS", "4"))
    STORAGE_RETRY_BASE_DELAY = float(os.getenv("STORAGE_RETRY_BASE_DELAY", "0.2"))
    STORAGE_RETRY_MAX_DELAY = float(os.getenv("STORAGE_RETRY_MAX_DELAY", "5"))
    SIGNED_URL_TTL = int(os.getenv("SIGNED_URL_TTL", "3600"))

    # --- Compilation ---
    ARTIFACT_FORMAT = os.getenv("ARTIFACT_FORMAT", "triplet")      # triplet|consolidated
    FEATURE_EXTRACTOR = os.getenv("FEATURE_EXTRACTOR", "harris")
    MAX_KEYPOINTS = int(os.getenv("MAX_KEYPOINTS", "500"))
    MIN_KEYPOINTS = int(os.getenv("MIN_KEYPOINTS", "50"))
    MAX_IMAGE_SIDE = int(os.getenv("MAX_IMAGE_SIDE", "1024"))
    COMPILE_EXECUTOR = os.getenv("COMPILE_EXECUTOR", "thread")     # thread|sync
    COMPILE_WORKERS = int(os.getenv("COMPILE_WORKERS", "4"))
    COMPILE_TIMEOUT_SECONDS = int(os.getenv("COMPILE_TIMEOUT_SECONDS", "300"))

    # --- Logging ---
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR = os.getenv("LOG_DIR", "logs")
    LOG_FILENAME = os.getenv("LOG_FILENAME", "arcards.log")
    LOG_JSON = _as_bool(os.getenv("LOG_JSON", "0"))

    # --- Sentry ---
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0"))

    PREFERRED_URL_SCHEME = os.getenv("PREFERRED_URL_SCHEME", "https")
