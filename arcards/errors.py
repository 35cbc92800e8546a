# arcards/errors.py
"""Error taxonomy shared by the services and the HTTP layer."""


class ArcardsError(Exception):
    http_status = 500
    public_message = "Internal error"


class ValidationError(ArcardsError):
    http_status = 400
    public_message = "Invalid request"


class NotFoundError(ArcardsError):
    http_status = 404
    public_message = "Not found"


class AuthorizationError(ArcardsError):
    http_status = 403
    public_message = "Forbidden"


class ConflictError(ArcardsError):
    http_status = 409
    public_message = "Conflict"


# --- storage ---

class StorageError(ArcardsError):
    http_status = 503
    public_message = "Storage temporarily unavailable"


class TransientStorageError(StorageError):
    """Network or provider hiccup; retried by the storage gateway only."""


class PermanentStorageError(StorageError):
    """Permission denied, bad request, or anything a retry will not fix."""


class BlobNotFoundError(NotFoundError, PermanentStorageError):
    http_status = 404
    public_message = "Not found"


# --- compilation ---

class CompilationError(ArcardsError):
    """Decode/extract/encode failure. Terminal for the attempt."""


class MalformedArtifact(CompilationError):
    pass


class LowQualityInputError(ArcardsError):
    """Too few trackable features. The owner can fix this with a better image."""

    def __init__(self, found: int, required: int):
        self.found = found
        self.required = required
        super().__init__(
            f"Image has {found} trackable features, at least {required} are needed. "
            "Use a sharper image with more texture and contrast."
        )
