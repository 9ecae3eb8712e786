from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph

from .errors import ModelInvocationError, NoContentError, NotFoundError, PayloadError, ProjectBusyError
from .llm import ModelInvoker
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
)
from .parser import PayloadParser
from .prompts import (
    build_brief_prompt,
    build_chat_prompt,
    build_implementation_prompt,
    render_brief_overview,
    render_question,
    system_prompt_for,
)
from .settings import RuntimeSettings
from .store import ProjectStore
from .transcript import ChatTranscript

logger = logging.getLogger(__name__)

_FILE_FAILURES = (ModelInvocationError, PayloadError, NoContentError)


class GenerationState(TypedDict, total=False):
    project_id: str
    queue: list[str]
    current_path: str | None
    completed: list[str]
    failed: dict[str, str]


class GenerationOrchestrator:
    """Drives a project from description to generated files.

    Brief creation, the clarifying Q&A, and the per-file generation loop all
    persist every transition through ``store`` before moving on, and report
    it on ``transcript``. Generation is strictly sequential; a project that is
    already running rejects new runs with ``ProjectBusyError``.
    """

    def __init__(
        self,
        store: ProjectStore,
        invoker: ModelInvoker,
        *,
        settings: RuntimeSettings | None = None,
        parser: PayloadParser | None = None,
        transcript: ChatTranscript | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.store = store
        self.invoker = invoker
        self.parser = (
            parser
            if parser is not None
            else PayloadParser(invoker, max_continuations=self.settings.max_continuations)
        )
        self.transcript = transcript if transcript is not None else ChatTranscript()
        self._busy: set[str] = set()
        self._busy_lock = threading.Lock()
        self.graph = self._build_graph().compile()

    # ------------------------------------------------------------------
    # Busy tracking
    # ------------------------------------------------------------------

    @contextmanager
    def _claim(self, project_id: str) -> Iterator[None]:
        with self._busy_lock:
            if project_id in self._busy:
                raise ProjectBusyError(project_id)
            self._busy.add(project_id)
        try:
            yield
        finally:
            with self._busy_lock:
                self._busy.discard(project_id)

    def is_busy(self, project_id: str) -> bool:
        with self._busy_lock:
            return project_id in self._busy

    def _with_busy(self, project: Project) -> Project:
        return project.model_copy(update={"busy": self.is_busy(project.id)})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_project(self, project_id: str) -> Project | None:
        project = self.store.get_project(project_id)
        return self._with_busy(project) if project is not None else None

    def list_projects(self) -> list[Project]:
        return [self._with_busy(project) for project in self.store.list_projects()]

    def _require(self, project_id: str) -> Project:
        project = self.store.get_project(project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return project

    def current_question(self, project_id: str) -> ClarifyingQuestion | None:
        """Return the first unanswered clarifying question, if any."""
        pending = self._require(project_id).pending_questions
        return pending[0] if pending else None

    # ------------------------------------------------------------------
    # Model round trip
    # ------------------------------------------------------------------

    def _converse(
        self, kind: ReplyKind, prompt: str, *, use_cache: bool
    ) -> tuple[str, list[ChatMessage], GenerationConfig]:
        conversation = [
            ChatMessage(role="system", content=system_prompt_for(kind)),
            ChatMessage(role="user", content=prompt),
        ]
        config = resolve_generation_config(self.settings)
        logger.debug("Requesting %s payload (%d prompt chars)", kind.value, len(prompt))
        raw_text = self.invoker.invoke(conversation, config, use_cache=use_cache)
        return raw_text, conversation, config

    def _request_brief(self, prompt: str) -> ProjectBrief:
        raw_text, conversation, config = self._converse(ReplyKind.BRIEF, prompt, use_cache=True)
        return self.parser.parse_brief(raw_text, conversation=conversation, config=config)

    def _request_implementation(self, prompt: str, *, use_cache: bool = True) -> ImplementationPayload:
        raw_text, conversation, config = self._converse(ReplyKind.IMPLEMENTATION, prompt, use_cache=use_cache)
        return self.parser.parse_implementation(
            raw_text, conversation=conversation, config=config, use_cache=use_cache
        )

    # ------------------------------------------------------------------
    # Brief creation and clarifying Q&A
    # ------------------------------------------------------------------

    def create_project(self, name: str, description: str) -> Project:
        """Request a brief for ``description`` and persist it as a new project.

        Nothing is persisted when the model call or payload parsing fails.

        Raises:
            ValueError: If ``description`` is blank.
            ModelInvocationError: If the model could not be reached.
            PayloadError: If the reply carried no valid brief.
        """
        if not description.strip():
            raise ValueError("description cannot be empty")
        brief = self._request_brief(build_brief_prompt(description))

        project_name = name.strip() or brief.app_name.strip() or "Untitled project"
        project_id = self.store.create_project(project_name, brief)
        if not brief.clarifying_questions:
            self.store.update_project(project_id, phase=ProjectPhase.IDLE)

        self.transcript.add_message(project_id, description.strip(), kind=MessageKind.REPLY, role="user")
        self.transcript.add_message(project_id, render_brief_overview(brief), kind=MessageKind.REPLY)
        if brief.clarifying_questions:
            self.transcript.add_message(
                project_id,
                render_question(brief.clarifying_questions[0], first=True),
                kind=MessageKind.QUESTION,
            )
        project = self._require(project_id)
        logger.info(
            "Project %s has %d files and %d clarifying questions",
            project_id,
            len(project.files),
            len(brief.clarifying_questions),
        )
        return self._with_busy(project)

    def answer_question(self, project_id: str, answer: str) -> ClarificationStatus:
        """Record ``answer`` for the current question.

        After the last answer the project moves to ``generating_files`` and the
        generation loop runs before this call returns.

        Raises:
            ValueError: If ``answer`` is blank or no question is pending.
            NotFoundError: If the project does not exist.
            ProjectBusyError: If the project is generating.
        """
        if not answer.strip():
            raise ValueError("answer cannot be empty")
        with self._claim(project_id):
            project = self._require(project_id)
            pending = project.pending_questions
            if project.phase != ProjectPhase.AWAITING_ANSWERS or not pending:
                raise ValueError(f"Project {project_id} has no pending clarifying question")

            question = pending[0]
            answers = {**project.answers, question.question: answer.strip()}
            self.store.update_project(project_id, answers=answers)
            self.transcript.add_message(project_id, answer.strip(), kind=MessageKind.REPLY, role="user")

            remaining = [item for item in pending if item.question not in answers]
            if remaining:
                self.transcript.add_message(
                    project_id,
                    render_question(remaining[0], first=False),
                    kind=MessageKind.QUESTION,
                )
                return ClarificationStatus(
                    project_id=project_id,
                    answered=len(answers),
                    remaining=len(remaining),
                    next_question=remaining[0],
                )

            self.transcript.add_message(project_id, "Thanks for the answers! Generating the project files now.")
            report = self._run_generation(project_id)
        return ClarificationStatus(
            project_id=project_id,
            answered=len(answers),
            remaining=0,
            generation=report,
        )

    # ------------------------------------------------------------------
    # Per-file generation loop
    # ------------------------------------------------------------------

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(GenerationState)
        graph.add_node("dispatch", self._dispatch_node)
        graph.add_node("generate_file", self._generate_file_node)
        graph.add_node("finalize", self._finalize_node)

        graph.add_edge(START, "dispatch")
        graph.add_conditional_edges(
            "dispatch",
            self._dispatch_route,
            {
                "generate_file": "generate_file",
                "finalize": "finalize",
            },
        )
        graph.add_edge("generate_file", "dispatch")
        graph.add_edge("finalize", END)
        return graph

    def _dispatch_node(self, state: GenerationState) -> dict[str, Any]:
        queue = list(state.get("queue", []))
        if not queue:
            return {"current_path": None}
        return {"current_path": queue[0], "queue": queue[1:]}

    def _dispatch_route(self, state: GenerationState) -> str:
        if state.get("current_path"):
            return "generate_file"
        return "finalize"

    def _generate_file_node(self, state: GenerationState) -> dict[str, Any]:
        project_id = state["project_id"]
        path = state.get("current_path")
        if not path:
            return {}
        task = self._generate_one(self._require(project_id), path, status=FileStatus.GENERATING)
        if task.status == FileStatus.COMPLETED:
            return {"completed": [*state.get("completed", []), path]}
        return {"failed": {**state.get("failed", {}), path: task.error or ""}}

    def _finalize_node(self, state: GenerationState) -> dict[str, Any]:
        project_id = state["project_id"]
        completed = state.get("completed", [])
        failed = state.get("failed", {})
        summary = f"Generation finished: {len(completed)} file(s) completed"
        if failed:
            summary += f", {len(failed)} failed ({', '.join(failed)})"
        self.transcript.add_message(project_id, summary + ".")
        logger.info("Project %s: %d completed, %d failed", project_id, len(completed), len(failed))
        return {}

    def generate_files(self, project_id: str) -> GenerationReport:
        """Generate every file of the brief in declared order.

        A failing file is marked ``error`` and the loop moves on to the next
        one; the report lists what completed and what failed.

        Raises:
            ValueError: If clarifying questions are still unanswered.
            NotFoundError: If the project does not exist.
            ProjectBusyError: If the project is already generating.
        """
        with self._claim(project_id):
            return self._run_generation(project_id)

    def _run_generation(self, project_id: str) -> GenerationReport:
        # Caller holds the busy claim for project_id.
        project = self._require(project_id)
        if project.pending_questions:
            raise ValueError(
                f"Project {project_id} has {len(project.pending_questions)} unanswered clarifying question(s)"
            )
        paths = [entry.path for entry in project.brief.file_list]
        self.store.update_project(project_id, phase=ProjectPhase.GENERATING_FILES)
        self.transcript.add_message(project_id, f"Starting generation of {len(paths)} file(s).")
        logger.info("Generating %d files for project %s", len(paths), project_id)

        initial_state: GenerationState = {
            "project_id": project_id,
            "queue": paths,
            "current_path": None,
            "completed": [],
            "failed": {},
        }
        try:
            result = self.graph.invoke(
                initial_state,
                config={"recursion_limit": max(self.settings.recursion_limit, 2 * len(paths) + 5)},
            )
        finally:
            self.store.update_project(project_id, phase=ProjectPhase.IDLE)
        return GenerationReport(
            project_id=project_id,
            completed=list(result.get("completed", [])),
            failed=dict(result.get("failed", {})),
        )

    def regenerate_file(self, project_id: str, path: str) -> FileTask:
        """Run one generation round for a single file of the project.

        Raises:
            NotFoundError: If the project or the path does not exist.
            ProjectBusyError: If the project is already generating.
        """
        with self._claim(project_id):
            project = self._require(project_id)
            if project.file(path) is None:
                raise NotFoundError(f"File not found: {path} in project {project_id}")
            return self._generate_one(project, path, status=FileStatus.REGENERATING)

    def _generate_one(self, project: Project, path: str, *, status: FileStatus) -> FileTask:
        task = project.file(path)
        purpose = task.purpose if task is not None else project.brief.purpose_for(path)
        self.store.update_file(project.id, path, FileUpdate(status=status))
        self.transcript.progress(project.id, f"Generating {path}...")

        try:
            content, explanation = self._implement(
                project, path, purpose, use_cache=status != FileStatus.REGENERATING
            )
        except _FILE_FAILURES as exc:
            logger.warning("Failed to generate %s for project %s: %s", path, project.id, exc)
            failed = self.store.update_file(project.id, path, FileUpdate(status=FileStatus.ERROR, error=str(exc)))
            self.transcript.progress(project.id, f"Failed to generate {path}: {exc}")
            return failed

        completed = self.store.update_file(
            project.id, path, FileUpdate(status=FileStatus.COMPLETED, content=content)
        )
        if explanation:
            self.transcript.add_message(project.id, explanation, kind=MessageKind.REPLY)
        self.transcript.progress(project.id, f"Generated {path}")
        logger.info("Generated %s for project %s (%d chars)", path, project.id, len(content))
        return completed

    def _implement(self, project: Project, path: str, purpose: str, *, use_cache: bool) -> tuple[str, str]:
        prompt = build_implementation_prompt(project.brief, project.answers, path=path, purpose=purpose)
        payload = self._request_implementation(prompt, use_cache=use_cache)

        created = payload.find_created(path)
        if created is not None and created.content:
            return created.content, payload.assistant_reply
        edited = payload.find_edited(path)
        if edited is not None and edited.new_snippet:
            return edited.new_snippet, edited.change_reason
        raise NoContentError(path)

    # ------------------------------------------------------------------
    # Follow-up chat
    # ------------------------------------------------------------------

    def send_chat_message(self, project_id: str, message: str) -> ImplementationPayload:
        """Send a follow-up request and apply the returned changes to existing files.

        Only paths that already belong to the project are touched. Edits whose
        ``original_snippet`` is not found in the current content are skipped
        and reported on the transcript.

        Raises:
            ValueError: If ``message`` is blank.
            NotFoundError: If the project does not exist.
            ProjectBusyError: If the project is generating.
        """
        if not message.strip():
            raise ValueError("message cannot be empty")
        with self._claim(project_id):
            project = self._require(project_id)
            self.transcript.add_message(project_id, message.strip(), kind=MessageKind.REPLY, role="user")
            try:
                payload = self._request_implementation(build_chat_prompt(project.brief, project.files, message))
            except (ModelInvocationError, PayloadError) as exc:
                self.transcript.add_message(project_id, f"Request failed: {exc}")
                raise
            self.transcript.add_message(project_id, payload.assistant_reply, kind=MessageKind.REPLY)

            contents = {task.path: task.content for task in project.files}
            for created in payload.files_to_create:
                if created.path not in contents:
                    self.transcript.add_message(
                        project_id, f"Skipped {created.path}: only existing project files can be changed."
                    )
                    continue
                if not created.content:
                    self.transcript.add_message(project_id, f"Skipped {created.path}: reply carried no content.")
                    continue
                contents[created.path] = created.content
                self._store_content(project_id, created.path, created.content)

            for edit in payload.files_to_edit:
                current = contents.get(edit.path)
                if not current or not edit.original_snippet or edit.original_snippet not in current:
                    self.transcript.add_message(
                        project_id, f"Skipped edit to {edit.path}: original snippet not found."
                    )
                    continue
                updated = current.replace(edit.original_snippet, edit.new_snippet, 1)
                if not updated:
                    self.transcript.add_message(project_id, f"Skipped edit to {edit.path}: result would be empty.")
                    continue
                contents[edit.path] = updated
                self._store_content(project_id, edit.path, updated)
        return payload

    def _store_content(self, project_id: str, path: str, content: str) -> None:
        self.store.update_file(project_id, path, FileUpdate(status=FileStatus.COMPLETED, content=content))
        self.transcript.progress(project_id, f"Updated {path}")

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_project(self, project_id: str) -> None:
        """Delete a project, its files and its transcript.

        Raises:
            ProjectBusyError: If the project is generating.
        """
        with self._claim(project_id):
            self.store.delete_project(project_id)
            self.transcript.clear(project_id)
