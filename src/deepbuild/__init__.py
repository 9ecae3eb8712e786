from importlib.metadata import version

from .errors import (
    AuthError,
    ConfigurationError,
    DeepBuildError,
    ModelInvocationError,
    NetworkError,
    NoContentError,
    NotFoundError,
    PayloadError,
    PayloadErrorKind,
    ProjectBusyError,
    ProviderError,
)
from .llm import ChatModelInvoker, ModelInvoker
from .model_selection import GenerationConfig, resolve_generation_config
from .models import (
    ChatMessage,
    ClarificationStatus,
    ClarifyingQuestion,
    FileStatus,
    FileTask,
    FileUpdate,
    GenerationReport,
    ImplementationPayload,
    MessageKind,
    Project,
    ProjectBrief,
    ProjectPhase,
    ReplyKind,
    TranscriptMessage,
)
from .orchestrator import GenerationOrchestrator
from .parser import PayloadParser, extract_document, validate_payload
from .settings import RuntimeSettings
from .store import InMemoryProjectStore, ProjectStore, SqliteProjectStore, open_store
from .transcript import ChatTranscript


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "AuthError",
    "ChatMessage",
    "ChatModelInvoker",
    "ChatTranscript",
    "ClarificationStatus",
    "ClarifyingQuestion",
    "ConfigurationError",
    "DeepBuildError",
    "FileStatus",
    "FileTask",
    "FileUpdate",
    "GenerationConfig",
    "GenerationOrchestrator",
    "GenerationReport",
    "ImplementationPayload",
    "InMemoryProjectStore",
    "MessageKind",
    "ModelInvocationError",
    "ModelInvoker",
    "NetworkError",
    "NoContentError",
    "NotFoundError",
    "PayloadError",
    "PayloadErrorKind",
    "PayloadParser",
    "Project",
    "ProjectBrief",
    "ProjectBusyError",
    "ProjectPhase",
    "ProjectStore",
    "ProviderError",
    "ReplyKind",
    "RuntimeSettings",
    "SqliteProjectStore",
    "TranscriptMessage",
    "extract_document",
    "get_version",
    "open_store",
    "resolve_generation_config",
    "validate_payload",
]
