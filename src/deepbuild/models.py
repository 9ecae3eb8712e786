from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import PurePosixPath
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class FileStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"
    REGENERATING = "regenerating"


class ProjectPhase(str, Enum):
    AWAITING_BRIEF = "awaiting_brief"
    AWAITING_ANSWERS = "awaiting_answers"
    GENERATING_FILES = "generating_files"
    IDLE = "idle"


class ReplyKind(str, Enum):
    BRIEF = "brief"
    IMPLEMENTATION = "implementation"


class MessageKind(str, Enum):
    PROGRESS = "progress"
    REPLY = "reply"
    QUESTION = "question"
    INFO = "info"


def _utc_now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Brief payload
# ---------------------------------------------------------------------------

class _BriefModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class AppSummary(_BriefModel):
    name: str = ""
    purpose: str = ""
    main_features: list[str] = Field(default_factory=list)


class BriefFile(_BriefModel):
    """One entry of the brief's file list; ``file`` is the project-relative path."""

    file: str
    purpose: str = ""

    @property
    def path(self) -> str:
        return self.file

    @field_validator("file")
    @classmethod
    def _validate_path(cls, value: str) -> str:
        path = value.strip()
        if not path:
            raise ValueError("file path cannot be empty")
        if path.startswith(("/", "\\")):
            raise ValueError(f"file path must be relative: {path}")
        if ".." in PurePosixPath(path.replace("\\", "/")).parts:
            raise ValueError(f"path traversal is not allowed: {path}")
        return path


class BasicStructure(_BriefModel):
    files: list[BriefFile] = Field(min_length=1)


class TechnicalOutline(_BriefModel):
    tech_stack: list[str] = Field(default_factory=list)
    external_dependencies: list[str] = Field(default_factory=list)
    basic_structure: BasicStructure


class ImplementationNotes(_BriefModel):
    starting_point: str = ""
    key_considerations: list[str] = Field(default_factory=list)
    potential_challenges: list[str] = Field(default_factory=list)


class BriefBody(_BriefModel):
    app_summary: AppSummary = Field(default_factory=AppSummary)
    technical_outline: TechnicalOutline
    implementation_notes: ImplementationNotes = Field(default_factory=ImplementationNotes)


class ClarifyingQuestion(_BriefModel):
    question: str
    why_needed: str = ""


class ProjectBrief(_BriefModel):
    """Structured project plan produced from a user description."""

    project_brief: BriefBody
    clarifying_questions: list[ClarifyingQuestion] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_paths(self) -> "ProjectBrief":
        seen: set[str] = set()
        for entry in self.project_brief.technical_outline.basic_structure.files:
            if entry.file in seen:
                raise ValueError(f"duplicate file path in brief: {entry.file}")
            seen.add(entry.file)
        return self

    @property
    def file_list(self) -> list[BriefFile]:
        """Declared files in generation order."""
        return list(self.project_brief.technical_outline.basic_structure.files)

    @property
    def app_name(self) -> str:
        return self.project_brief.app_summary.name

    def purpose_for(self, path: str) -> str:
        for entry in self.file_list:
            if entry.file == path:
                return entry.purpose
        return ""


# ---------------------------------------------------------------------------
# Implementation payload
# ---------------------------------------------------------------------------

class ThoughtProcess(BaseModel):
    problem_analysis: str
    solution_approach: str
    implementation_plan: str
    potential_issues: str


MAX_FILE_CONTENT_CHARS = 1_000_000


class FileToCreate(BaseModel):
    path: str
    content: str = Field(max_length=MAX_FILE_CONTENT_CHARS)
    purpose: str = ""


class FileToEdit(BaseModel):
    path: str
    original_snippet: str = ""
    new_snippet: str = Field(max_length=MAX_FILE_CONTENT_CHARS)
    change_reason: str = ""


class ImplementationPayload(BaseModel):
    thought_process: ThoughtProcess
    assistant_reply: str
    files_to_create: list[FileToCreate]
    files_to_edit: list[FileToEdit]

    def find_created(self, path: str) -> FileToCreate | None:
        return next((entry for entry in self.files_to_create if entry.path == path), None)

    def find_edited(self, path: str) -> FileToEdit | None:
        return next((entry for entry in self.files_to_edit if entry.path == path), None)


# ---------------------------------------------------------------------------
# Model conversation
# ---------------------------------------------------------------------------

class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str


class TranscriptMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    kind: MessageKind
    content: str
    created_at: datetime = Field(default_factory=_utc_now)


# ---------------------------------------------------------------------------
# Persisted project state
# ---------------------------------------------------------------------------

class FileTask(BaseModel):
    """Persisted generation state of one target file.

    ``content`` is non-empty exactly when the file is completed, and ``error``
    is set exactly when the file failed.
    """

    project_id: str
    path: str
    purpose: str = ""
    content: str = ""
    status: FileStatus = FileStatus.PENDING
    error: str | None = None

    @model_validator(mode="after")
    def _check_status_invariants(self) -> "FileTask":
        if self.status == FileStatus.COMPLETED and not self.content:
            raise ValueError(f"completed file {self.path} must have content")
        if self.status != FileStatus.COMPLETED and self.content:
            raise ValueError(f"file {self.path} has content but status is {self.status.value}")
        if self.status == FileStatus.ERROR and not self.error:
            raise ValueError(f"errored file {self.path} must carry an error message")
        if self.status != FileStatus.ERROR and self.error is not None:
            raise ValueError(f"file {self.path} has an error but status is {self.status.value}")
        return self


class FileUpdate(BaseModel):
    """Partial update for a single FileTask.

    Fields left as ``None`` keep their stored value; moving to a status other
    than ``completed`` clears content, and to one other than ``error`` clears
    the error.
    """

    status: FileStatus | None = None
    content: str | None = None
    error: str | None = None

    def apply(self, task: FileTask) -> FileTask:
        status = self.status if self.status is not None else task.status
        content = self.content if self.content is not None else task.content
        error = self.error if self.error is not None else task.error
        if status != FileStatus.COMPLETED:
            content = ""
        if status != FileStatus.ERROR:
            error = None
        return FileTask(
            project_id=task.project_id,
            path=task.path,
            purpose=task.purpose,
            content=content,
            status=status,
            error=error,
        )


class Project(BaseModel):
    id: str
    name: str
    created_at: datetime
    brief: ProjectBrief
    files: list[FileTask] = Field(default_factory=list)
    phase: ProjectPhase = ProjectPhase.AWAITING_ANSWERS
    answers: dict[str, str] = Field(default_factory=dict)
    busy: bool = False

    def file(self, path: str) -> FileTask | None:
        return next((task for task in self.files if task.path == path), None)

    @property
    def pending_questions(self) -> list[ClarifyingQuestion]:
        """Questions without an answer, in brief order.

        Answers are keyed by question text, so repeated question text is
        answered once for all of its occurrences.
        """
        return [q for q in self.brief.clarifying_questions if q.question not in self.answers]

    def status_counts(self) -> dict[FileStatus, int]:
        counts = {status: 0 for status in FileStatus}
        for task in self.files:
            counts[task.status] += 1
        return counts


@dataclass(frozen=True)
class ClarificationStatus:
    """Result of recording one clarifying answer."""

    project_id: str
    answered: int
    remaining: int
    next_question: ClarifyingQuestion | None = None
    generation: "GenerationReport | None" = None

    @property
    def complete(self) -> bool:
        return self.remaining == 0


@dataclass
class GenerationReport:
    """Best-effort outcome of a per-file generation run."""

    project_id: str
    completed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def all_completed(self) -> bool:
        return not self.failed
