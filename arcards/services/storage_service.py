# arcards/services/storage_service.py
"""
Object store gateway.

``StorageGateway`` is the only thing the rest of the app talks to. It owns the
retry policy: every call retries ``TransientStorageError`` with bounded
exponential backoff and jitter, so callers never write their own retry loop.
The backend does the actual I/O and classifies failures.
"""
from __future__ import annotations

import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Iterable, List, Optional
from urllib.parse import quote, urlencode

import requests
from flask import current_app
from itsdangerous import BadSignature, URLSafeTimedSerializer
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from ..errors import (
    BlobNotFoundError,
    PermanentStorageError,
    TransientStorageError,
    ValidationError,
)

log = logging.getLogger(__name__)


def validate_path(path: str) -> str:
    """Object keys are relative posix paths; no traversal, no absolute paths."""
    if not path or not isinstance(path, str):
        raise ValidationError("Empty storage path")
    if path.startswith("/") or "\\" in path or "\x00" in path:
        raise ValidationError(f"Invalid storage path: {path!r}")
    if any(part in ("", ".", "..") for part in path.split("/")):
        raise ValidationError(f"Invalid storage path: {path!r}")
    return path


def allowed_ext(filename: str, exts: Iterable[str]) -> bool:
    suffix = Path(filename or "").suffix.lower().lstrip(".")
    return bool(suffix) and suffix in set(exts)


# -----------------
# Backends
# -----------------

class StorageBackend:
    def put(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        raise NotImplementedError

    def get(self, bucket: str, path: str) -> bytes:
        raise NotImplementedError

    def list(self, bucket: str, prefix: str) -> List[str]:
        raise NotImplementedError

    def delete(self, bucket: str, paths: List[str]) -> None:
        raise NotImplementedError

    def signed_url(self, bucket: str, path: str, ttl: int) -> str:
        raise NotImplementedError


class LocalStorageBackend(StorageBackend):
    """
    Buckets are directories under ``root``. Writes go through a temp file and
    ``os.replace`` so a reader never sees a half-written blob. Signed URLs point
    at the ``storage`` blueprint and carry an itsdangerous token.
    """

    SALT = "arcards-storage"

    def __init__(self, root: str, secret_key: str, public_base_url: str):
        self.root = Path(root)
        self.secret_key = secret_key
        self.public_base_url = (public_base_url or "").rstrip("/")

    def _bucket_dir(self, bucket: str) -> Path:
        validate_path(bucket)
        if "/" in bucket:
            raise ValidationError(f"Invalid bucket: {bucket!r}")
        return self.root / bucket

    def _abs(self, bucket: str, path: str) -> Path:
        base = self._bucket_dir(bucket)
        target = base / validate_path(path)
        if os.path.commonpath([str(base.resolve()), str(target.resolve())]) != str(base.resolve()):
            raise ValidationError(f"Invalid storage path: {path!r}")
        return target

    def put(self, bucket, path, data, content_type):
        target = self._abs(bucket, path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                os.replace(tmp, target)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except PermissionError as e:
            raise PermanentStorageError(f"put {bucket}/{path}: {e}") from e
        except OSError as e:
            raise TransientStorageError(f"put {bucket}/{path}: {e}") from e

    def get(self, bucket, path):
        target = self._abs(bucket, path)
        try:
            return target.read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as e:
            raise BlobNotFoundError(f"{bucket}/{path}") from e
        except PermissionError as e:
            raise PermanentStorageError(f"get {bucket}/{path}: {e}") from e
        except OSError as e:
            raise TransientStorageError(f"get {bucket}/{path}: {e}") from e

    def list(self, bucket, prefix):
        base = self._bucket_dir(bucket)
        if not base.exists():
            return []
        names = []
        for dirpath, _dirs, files in os.walk(base):
            for fname in files:
                if fname.startswith(".upload-"):
                    continue
                rel = Path(dirpath, fname).relative_to(base).as_posix()
                if rel.startswith(prefix or ""):
                    names.append(rel)
        return sorted(names)

    def delete(self, bucket, paths):
        for path in paths:
            target = self._abs(bucket, path)
            try:
                target.unlink(missing_ok=True)
            except PermissionError as e:
                raise PermanentStorageError(f"delete {bucket}/{path}: {e}") from e
            except OSError as e:
                raise TransientStorageError(f"delete {bucket}/{path}: {e}") from e
            self._prune(bucket, target.parent)

    def _prune(self, bucket: str, directory: Path) -> None:
        base = self._bucket_dir(bucket)
        while directory != base and base in directory.parents:
            try:
                directory.rmdir()
            except OSError:
                return
            directory = directory.parent

    # --- signed urls ---

    def _serializer(self) -> URLSafeTimedSerializer:
        return URLSafeTimedSerializer(secret_key=self.secret_key, salt=self.SALT)

    def signed_url(self, bucket, path, ttl):
        validate_path(path)
        token = self._serializer().dumps({"b": bucket, "p": path, "e": int(time.time()) + int(ttl)})
        return f"{self.public_base_url}/storage/{quote(bucket)}/{quote(path)}?{urlencode({'token': token})}"

    def verify_token(self, bucket: str, path: str, token: str) -> bool:
        try:
            data = self._serializer().loads(token)
        except BadSignature:
            return False
        return (
            data.get("b") == bucket
            and data.get("p") == path
            and int(data.get("e", 0)) >= int(time.time())
        )


class SupabaseStorageBackend(StorageBackend):
    """Supabase Storage REST API. Every request carries a bounded timeout."""

    def __init__(self, url: str, service_key: str, timeout: float = 20, session=None):
        if not url or not service_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")
        self.base = url.rstrip("/") + "/storage/v1"
        self.service_key = service_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self, extra: Optional[dict] = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
        }
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, url: str, what: str, **kwargs) -> requests.Response:
        try:
            r = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientStorageError(f"{what}: {e}") from e
        except requests.RequestException as e:
            raise PermanentStorageError(f"{what}: {e}") from e

        if r.status_code < 400:
            return r
        if r.status_code == 404 or self._says_not_found(r):
            raise BlobNotFoundError(what)
        if r.status_code == 429 or r.status_code >= 500:
            raise TransientStorageError(f"{what}: HTTP {r.status_code}")
        log.error("storage %s failed: HTTP %s | body=%s", what, r.status_code, r.text[:300])
        raise PermanentStorageError(f"{what}: HTTP {r.status_code}")

    @staticmethod
    def _says_not_found(r: requests.Response) -> bool:
        # Supabase reports missing objects as 400 with statusCode "404" in the body.
        try:
            body = r.json()
        except ValueError:
            return False
        return isinstance(body, dict) and (
            str(body.get("statusCode")) == "404" or body.get("error") in ("not_found", "Not found")
        )

    def _object_url(self, kind: str, bucket: str, path: str) -> str:
        return f"{self.base}/{kind}/{quote(bucket)}/{quote(validate_path(path))}"

    def put(self, bucket, path, data, content_type):
        self._request(
            "POST", self._object_url("object", bucket, path), f"put {bucket}/{path}",
            data=data,
            headers=self._headers({"Content-Type": content_type, "x-upsert": "true"}),
        )

    def get(self, bucket, path):
        r = self._request("GET", self._object_url("object", bucket, path), f"get {bucket}/{path}",
                          headers=self._headers())
        return r.content

    def list(self, bucket, prefix):
        # Supabase lists one folder level at a time; folders come back with id == null.
        folder, _, stem = (prefix or "").rpartition("/")
        out: List[str] = []
        pending = [folder]
        while pending:
            current = pending.pop()
            offset = 0
            while True:
                r = self._request(
                    "POST", f"{self.base}/object/list/{quote(bucket)}", f"list {bucket}/{current}",
                    json={"prefix": current, "limit": 1000, "offset": offset,
                          "sortBy": {"column": "name", "order": "asc"}},
                    headers=self._headers(),
                )
                entries = r.json() or []
                for entry in entries:
                    full = f"{current}/{entry['name']}" if current else entry["name"]
                    if entry.get("id") is None:
                        if full.startswith(prefix) or prefix.startswith(full + "/"):
                            pending.append(full)
                    elif full.startswith(prefix):
                        out.append(full)
                if len(entries) < 1000:
                    break
                offset += 1000
        return sorted(out)

    def delete(self, bucket, paths):
        if not paths:
            return
        self._request(
            "DELETE", f"{self.base}/object/{quote(bucket)}", f"delete {bucket} x{len(paths)}",
            json={"prefixes": [validate_path(p) for p in paths]},
            headers=self._headers(),
        )

    def signed_url(self, bucket, path, ttl):
        r = self._request(
            "POST", self._object_url("object/sign", bucket, path), f"sign {bucket}/{path}",
            json={"expiresIn": int(ttl)},
            headers=self._headers(),
        )
        signed = (r.json() or {}).get("signedURL")
        if not signed:
            raise TransientStorageError(f"sign {bucket}/{path}: no signed URL returned")
        return f"{self.base}{signed}" if signed.startswith("/") else signed


# -----------------
# Gateway (Flask extension)
# -----------------

class _GatewayState:
    def __init__(self, backend: StorageBackend, attempts: int, base_delay: float, max_delay: float):
        self.backend = backend
        self.attempts = attempts
        self.base_delay = base_delay
        self.max_delay = max_delay


class StorageGateway:
    """
    Capability wrapper around the blob store. Owns no business state.

    Bound per app through ``init_app``; pass ``backend`` directly to use it
    outside an app context.
    """

    EXTENSION_KEY = "arcards-storage"

    def __init__(self, app=None, backend: Optional[StorageBackend] = None,
                 attempts: int = 4, base_delay: float = 0.2, max_delay: float = 5.0):
        self._standalone = (
            _GatewayState(backend, attempts, base_delay, max_delay) if backend is not None else None
        )
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        backend = app.config.get("STORAGE_BACKEND_INSTANCE") or _build_backend(app)
        app.extensions[self.EXTENSION_KEY] = _GatewayState(
            backend,
            int(app.config.get("STORAGE_RETRY_ATTEMPTS", 4)),
            float(app.config.get("STORAGE_RETRY_BASE_DELAY", 0.2)),
            float(app.config.get("STORAGE_RETRY_MAX_DELAY", 5.0)),
        )

    def _state(self) -> _GatewayState:
        if self._standalone is not None:
            return self._standalone
        return current_app.extensions[self.EXTENSION_KEY]

    @property
    def backend(self) -> StorageBackend:
        return self._state().backend

    def _call(self, fn_name: str, *args):
        state = self._state()
        retrying = Retrying(
            stop=stop_after_attempt(max(1, state.attempts)),
            wait=wait_exponential_jitter(initial=state.base_delay, max=state.max_delay,
                                         jitter=state.base_delay),
            retry=retry_if_exception_type(TransientStorageError),
            before_sleep=before_sleep_log(log, logging.WARNING),
            reraise=True,
        )
        return retrying(getattr(state.backend, fn_name), *args)

    def put(self, bucket: str, path: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        self._call("put", bucket, validate_path(path), data, content_type)
        log.info("storage put %s/%s (%s bytes)", bucket, path, len(data))

    def get(self, bucket: str, path: str) -> bytes:
        return self._call("get", bucket, validate_path(path))

    def list(self, bucket: str, prefix: str) -> List[str]:
        return self._call("list", bucket, prefix or "")

    def exists(self, bucket: str, path: str) -> bool:
        return validate_path(path) in self.list(bucket, path)

    def delete(self, bucket: str, paths: Iterable[str]) -> None:
        paths = [validate_path(p) for p in paths]
        if not paths:
            return
        self._call("delete", bucket, paths)
        log.info("storage delete %s: %s", bucket, paths)

    def delete_prefix(self, bucket: str, prefix: str) -> List[str]:
        """Remove everything under ``prefix``. Already-missing objects are fine."""
        names = self.list(bucket, prefix)
        self.delete(bucket, names)
        return names

    def signed_url(self, bucket: str, path: str, ttl: Optional[int] = None) -> str:
        if ttl is None:
            ttl = int(current_app.config.get("SIGNED_URL_TTL", 3600))
        return self._call("signed_url", bucket, validate_path(path), int(ttl))


def _build_backend(app) -> StorageBackend:
    kind = (app.config.get("STORAGE_BACKEND") or "local").lower()
    if kind == "supabase":
        return SupabaseStorageBackend(
            app.config.get("SUPABASE_URL"),
            app.config.get("SUPABASE_SERVICE_ROLE_KEY"),
            timeout=float(app.config.get("STORAGE_TIMEOUT", 20)),
        )
    if kind == "local":
        root = app.config.get("STORAGE_ROOT") or os.path.join(app.instance_path, "storage")
        Path(root).mkdir(parents=True, exist_ok=True)
        return LocalStorageBackend(
            root,
            secret_key=app.config["SECRET_KEY"],
            public_base_url=app.config.get("EXTERNAL_BASE_URL") or "http://localhost:5000",
        )
    raise ValueError(f"Unknown STORAGE_BACKEND: {kind!r}")
