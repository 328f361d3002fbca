from __future__ import annotations
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from gems.models import ValidationReport


class GemsError(Exception):
    """Root of every error raised by the gems package."""


# --- provider failures (absorbed by the router, never reach callers) ---

class ProviderError(GemsError):
    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider

    def __str__(self) -> str:
        msg = super().__str__()
        if self.provider:
            return f"{self.provider}: {msg}"
        return msg


class AvailabilityError(ProviderError):
    """Backend unreachable, binary missing, or not configured."""


class AuthenticationError(ProviderError):
    """Backend rejected our credentials."""


class RateLimitError(ProviderError):
    pass


class ProviderTimeoutError(ProviderError, TimeoutError):
    pass


class ProviderResponseError(ProviderError):
    """Backend answered but the payload had no usable content."""


# --- validation failures ---

class ArtifactValidationError(GemsError):
    def __init__(self, message: str, report: Optional["ValidationReport"] = None):
        super().__init__(message)
        self.report = report


class ComponentSyntaxError(ArtifactValidationError):
    pass


class StructuralError(ArtifactValidationError):
    pass


# --- store failures (the only kind that escapes artifact production) ---

class ArtifactIOError(GemsError, OSError):
    pass


class GemNotFoundError(ArtifactIOError):
    pass


class InconsistentArtifactError(ArtifactIOError):
    """A multi-file operation stopped partway; companion files may disagree."""

    def __init__(self, message: str, completed: Optional[list] = None):
        super().__init__(message)
        self.completed = list(completed or [])


class PresetNotFoundError(ArtifactIOError):
    """No style preset file under that name."""
