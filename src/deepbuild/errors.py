from __future__ import annotations

from enum import Enum
from typing import Any


class DeepBuildError(Exception):
    """Base class for all errors raised by deepbuild."""


class ConfigurationError(DeepBuildError, ValueError):
    """Raised when runtime settings are missing or invalid."""


# ---------------------------------------------------------------------------
# Model invocation
# ---------------------------------------------------------------------------

class ModelInvocationError(DeepBuildError):
    """The model endpoint could not produce a reply."""


class NetworkError(ModelInvocationError):
    """Connection failure or request timeout talking to the model endpoint."""


class AuthError(ModelInvocationError):
    """Missing or rejected API credential."""


class ProviderError(ModelInvocationError):
    """The provider answered with an error status or an unusable reply."""


# ---------------------------------------------------------------------------
# Payload protocol
# ---------------------------------------------------------------------------

class PayloadErrorKind(str, Enum):
    UNTERMINATED = "unterminated"
    INVALID_ENCODING = "invalid_encoding"
    NO_PAYLOAD = "no_payload"
    SCHEMA_MISMATCH = "schema_mismatch"


class PayloadError(DeepBuildError):
    """A model reply did not carry a usable structured payload.

    ``document`` holds the decoded-but-invalid object for ``SCHEMA_MISMATCH``
    so callers can log what the model actually sent.
    """

    def __init__(
        self,
        kind: PayloadErrorKind,
        message: str,
        *,
        document: Any = None,
        issues: tuple[str, ...] = (),
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.document = document
        self.issues = issues


# ---------------------------------------------------------------------------
# Orchestration and storage
# ---------------------------------------------------------------------------

class NoContentError(DeepBuildError):
    """An implementation reply carried no content for the requested path."""

    def __init__(self, path: str) -> None:
        super().__init__(f"No file content in response for {path}")
        self.path = path


class NotFoundError(DeepBuildError, LookupError):
    """A project or file record does not exist."""


class ProjectBusyError(DeepBuildError):
    """A generation run is already in flight for the project."""

    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project {project_id} is already generating")
        self.project_id = project_id
