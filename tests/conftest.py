"""
Shared fixtures.

Every test gets its own app: SQLite file and local storage under tmp_path,
compilation inline (``COMPILE_EXECUTOR = "sync"``) and zero retry delays.
"""
from io import BytesIO

import numpy as np
import pytest
from PIL import Image

from arcards import create_app
from arcards.config import Config
from arcards.extensions import db
from arcards.security import issue_owner_token
from arcards.services.artifact_codec import DESCRIPTOR_LENGTH, Keypoint


def make_config(tmp_path, **overrides):
    class TestConfig(Config):
        TESTING = True
        SECRET_KEY = "test-secret"
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'test.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"check_same_thread": False}}
        EXTERNAL_BASE_URL = "http://localhost"
        SERVER_NAME = "localhost"
        PREFERRED_URL_SCHEME = "http"
        STORAGE_BACKEND = "local"
        STORAGE_ROOT = str(tmp_path / "storage")
        STORAGE_RETRY_BASE_DELAY = 0.0
        STORAGE_RETRY_MAX_DELAY = 0.0
        COMPILE_EXECUTOR = "sync"
        LOG_DIR = str(tmp_path / "logs")
        LOG_LEVEL = "DEBUG"
        SENTRY_DSN = ""

    for key, value in overrides.items():
        setattr(TestConfig, key, value)
    return TestConfig


@pytest.fixture
def config_overrides():
    return {}


@pytest.fixture
def app(tmp_path, config_overrides):
    app = create_app(make_config(tmp_path, **config_overrides))
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield


@pytest.fixture
def auth_headers(app):
    def _headers(owner_id="owner-1"):
        with app.app_context():
            token = issue_owner_token(owner_id)
        return {"Authorization": f"Bearer {token}"}
    return _headers


# -----------------
# Images
# -----------------

def png_bytes(pixels: np.ndarray) -> bytes:
    buf = BytesIO()
    Image.fromarray(pixels.astype(np.uint8)).save(buf, format="PNG")
    return buf.getvalue()


def checkerboard(size=512, square=16) -> np.ndarray:
    idx = np.arange(size) // square
    return ((idx[:, None] + idx[None, :]) % 2) * 255


def flat_gray(size=512, value=128) -> np.ndarray:
    return np.full((size, size), value)


@pytest.fixture
def checkerboard_png():
    return png_bytes(checkerboard())


@pytest.fixture
def gray_png():
    return png_bytes(flat_gray())


# -----------------
# Keypoints
# -----------------

def random_keypoints(count, seed=0, width=640, height=480):
    """Seeded keypoints built from float32 values, so they survive a round trip exactly."""
    rng = np.random.default_rng(seed)
    xy = (rng.random((count, 2)) * (width, height)).astype(np.float32)
    response = rng.random(count).astype(np.float32)
    angle = (rng.random(count) * 360.0).astype(np.float32)
    octave = rng.integers(0, 4, count)
    desc = rng.standard_normal((count, DESCRIPTOR_LENGTH)).astype(np.float32)
    return [
        Keypoint(
            x=float(xy[i, 0]),
            y=float(xy[i, 1]),
            response=float(response[i]),
            angle=float(angle[i]),
            octave=int(octave[i]),
            descriptor=tuple(float(v) for v in desc[i]),
        )
        for i in range(count)
    ]
