from __future__ import annotations

from typing import Optional


class InferError(Exception):
    """Base class for errors surfaced to clients.

    Every error carries one taxonomy tag (``error_type``) and the HTTP status
    it maps to:
    - Unhealthy (503)
    - Backend (500)
    - Overloaded (429)
    - Validation (422)
    - Tokenizer (422)
    """

    status_code: int = 500
    error_type: str = "Backend"

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_response(self) -> dict:
        return {"error": self.message, "error_type": self.error_type}

    def to_openai_response(self) -> dict:
        return {"message": self.message, "code": self.status_code, "type": self.error_type}


class UnhealthyError(InferError):
    """The compute backend failed its health probe (503)."""
    status_code = 503
    error_type = "Unhealthy"


class BackendError(InferError):
    """Compute failure during inference (500)."""
    status_code = 500
    error_type = "Backend"


class OverloadedError(InferError):
    """Concurrency ceiling reached; the caller should retry later (429)."""
    status_code = 429
    error_type = "Overloaded"


class ValidationError(InferError):
    """Request or model descriptor failed validation (422)."""
    status_code = 422
    error_type = "Validation"


class ShapeError(ValidationError):
    """Input payload does not match the accepted sequence grammar.

    ``kind`` is stable across messages so callers can match on it; ``position``
    identifies the offending batch element when the failure is inside a batch.
    """

    def __init__(
        self,
        message: str,
        *,
        length: Optional[int] = None,
        position: Optional[int] = None,
        kind: str = "arity",
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.length = length
        self.position = position


class TokenizerError(InferError):
    """Tokenizer load or tokenization failure (422)."""
    status_code = 422
    error_type = "Tokenizer"


class StartupError(Exception):
    """Mixin for failures raised while assembling the pipeline.

    ``state`` names the last assembly state reached before the failure.
    """

    state: Optional[str] = None


class DownloadError(StartupError, BackendError):
    """Model artifacts could not be fetched."""


class DescriptorError(StartupError, ValidationError):
    """``config.json`` is missing, malformed, or yields unusable limits."""


class TokenizerLoadError(StartupError, TokenizerError):
    """``tokenizer.json`` is missing or cannot be deserialized."""


class BackendConstructionError(StartupError, BackendError):
    """The compute backend could not be instantiated."""


class HealthCheckError(StartupError, UnhealthyError):
    """The freshly constructed backend did not pass its health probe."""


__all__ = [
    "InferError",
    "UnhealthyError",
    "BackendError",
    "OverloadedError",
    "ValidationError",
    "ShapeError",
    "TokenizerError",
    "StartupError",
    "DownloadError",
    "DescriptorError",
    "TokenizerLoadError",
    "BackendConstructionError",
    "HealthCheckError",
]
