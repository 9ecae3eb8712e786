from collections.abc import Sequence
from typing import Any

import pytest
from langchain_core.messages import AIMessage

from deepbuild.errors import AuthError, NetworkError, NotFoundError, PayloadError, ProjectBusyError
from deepbuild.llm import ChatModelInvoker
from deepbuild.models import ChatMessage, FileStatus, MessageKind, ProjectPhase
from deepbuild.orchestrator import GenerationOrchestrator
from deepbuild.settings import RuntimeSettings
from deepbuild.store import ProjectStore
from deepbuild.transcript import ChatTranscript

from fakes import ScriptedInvoker, brief_document, implementation_document, requested_path, wrap


def _default_responder(messages: Sequence[ChatMessage]) -> str:
    path = requested_path(messages)
    if path is None:
        return wrap(brief_document())
    return wrap(implementation_document(path, f"// contents of {path}\n", reply=f"Wrote {path}"))


def _build(
    store: ProjectStore, settings: RuntimeSettings, responder=_default_responder
) -> tuple[GenerationOrchestrator, ScriptedInvoker]:
    invoker = ScriptedInvoker(responder)
    orchestrator = GenerationOrchestrator(store, invoker, settings=settings)
    return orchestrator, invoker


def _answer_all(orchestrator: GenerationOrchestrator, project_id: str):
    status = orchestrator.answer_question(project_id, "A JSON file")
    assert status.remaining == 1
    assert status.generation is None
    return orchestrator.answer_question(project_id, "Yes, optional")


def test_todo_cli_end_to_end(store: ProjectStore, settings: RuntimeSettings) -> None:
    orchestrator, invoker = _build(store, settings)

    project = orchestrator.create_project("", "a todo list CLI")
    assert project.name == "Todo CLI"
    assert project.phase == ProjectPhase.AWAITING_ANSWERS
    assert [task.path for task in project.files] == ["todo.ts", "README.md"]
    assert all(task.status == FileStatus.PENDING for task in project.files)
    assert orchestrator.current_question(project.id).question == "Which storage backend?"

    status = _answer_all(orchestrator, project.id)

    assert status.complete
    assert status.answered == 2
    assert status.generation.completed == ["todo.ts", "README.md"]
    assert status.generation.all_completed

    finished = orchestrator.get_project(project.id)
    assert finished.phase == ProjectPhase.IDLE
    assert finished.busy is False
    assert finished.answers == {
        "Which storage backend?": "A JSON file",
        "Should tasks have due dates?": "Yes, optional",
    }
    assert [(task.path, task.status) for task in finished.files] == [
        ("todo.ts", FileStatus.COMPLETED),
        ("README.md", FileStatus.COMPLETED),
    ]
    assert finished.file("README.md").content == "// contents of README.md\n"

    progress = [message.content for message in orchestrator.transcript.messages(project.id, kind=MessageKind.PROGRESS)]
    assert progress == ["Generating todo.ts...", "Generated todo.ts", "Generating README.md...", "Generated README.md"]

    assert [requested_path(call) for call in invoker.calls] == [None, "todo.ts", "README.md"]
    file_prompt = invoker.calls[1][-1].content
    assert "Q: Which storage backend?\nA: A JSON file" in file_prompt
    assert "Purpose: CLI entry point" in file_prompt
    assert '"project_brief"' in file_prompt


def test_brief_failure_persists_nothing(store: ProjectStore, settings: RuntimeSettings) -> None:
    orchestrator, _ = _build(store, settings, lambda _messages: "I would rather chat about the weather.")

    with pytest.raises(PayloadError):
        orchestrator.create_project("demo", "a todo list CLI")

    assert orchestrator.list_projects() == []


def test_missing_api_key_aborts_brief_creation(store: ProjectStore) -> None:
    orchestrator, invoker = _build(store, RuntimeSettings(store_backend="memory"))

    with pytest.raises(AuthError, match="configure your DeepSeek API key"):
        orchestrator.create_project("demo", "a todo list CLI")

    assert invoker.calls == []
    assert orchestrator.list_projects() == []


def test_blank_description_is_rejected(store: ProjectStore, settings: RuntimeSettings) -> None:
    orchestrator, invoker = _build(store, settings)
    with pytest.raises(ValueError):
        orchestrator.create_project("demo", "   ")
    assert invoker.calls == []


def test_failed_model_call_does_not_stop_the_loop(store: ProjectStore, settings: RuntimeSettings) -> None:
    def responder(messages: Sequence[ChatMessage]) -> str:
        if requested_path(messages) == "todo.ts":
            raise NetworkError("connection reset")
        return _default_responder(messages)

    orchestrator, _ = _build(store, settings, responder)
    project = orchestrator.create_project("demo", "a todo list CLI")
    report = _answer_all(orchestrator, project.id).generation

    assert report.completed == ["README.md"]
    assert report.failed == {"todo.ts": "connection reset"}
    stored = orchestrator.get_project(project.id)
    assert stored.file("todo.ts").status == FileStatus.ERROR
    assert stored.file("todo.ts").error == "connection reset"
    assert stored.file("README.md").status == FileStatus.COMPLETED
    assert stored.phase == ProjectPhase.IDLE


def test_invalid_payload_marks_only_that_file_failed(store: ProjectStore, settings: RuntimeSettings) -> None:
    def responder(messages: Sequence[ChatMessage]) -> str:
        if requested_path(messages) == "README.md":
            return wrap({"assistant_reply": "missing everything else"})
        return _default_responder(messages)

    orchestrator, _ = _build(store, settings, responder)
    project = orchestrator.create_project("demo", "a todo list CLI")
    report = _answer_all(orchestrator, project.id).generation

    assert report.completed == ["todo.ts"]
    assert list(report.failed) == ["README.md"]
    progress = [message.content for message in orchestrator.transcript.messages(project.id, kind=MessageKind.PROGRESS)]
    assert progress[-1].startswith("Failed to generate README.md")


def test_reply_without_requested_path_is_no_content(store: ProjectStore, settings: RuntimeSettings) -> None:
    def responder(messages: Sequence[ChatMessage]) -> str:
        if requested_path(messages) == "todo.ts":
            return wrap(implementation_document("other.ts", "unrelated"))
        return _default_responder(messages)

    orchestrator, _ = _build(store, settings, responder)
    project = orchestrator.create_project("demo", "a todo list CLI")
    report = _answer_all(orchestrator, project.id).generation

    assert report.failed == {"todo.ts": "No file content in response for todo.ts"}
    assert report.completed == ["README.md"]


def test_edit_entry_for_requested_path_is_used_as_content(store: ProjectStore, settings: RuntimeSettings) -> None:
    def responder(messages: Sequence[ChatMessage]) -> str:
        path = requested_path(messages)
        if path is None:
            return wrap(brief_document(questions=()))
        edit = {"path": path, "original_snippet": "", "new_snippet": "edited body", "change_reason": "fresh"}
        return wrap(implementation_document(path, "", edits=[edit]))

    orchestrator, _ = _build(store, settings, responder)
    project = orchestrator.create_project("demo", "a todo list CLI")
    orchestrator.generate_files(project.id)

    assert orchestrator.get_project(project.id).file("todo.ts").content == "edited body"
    replies = [message.content for message in orchestrator.transcript.messages(project.id, kind=MessageKind.REPLY)]
    assert "fresh" in replies


def test_project_without_questions_waits_for_generate(store: ProjectStore, settings: RuntimeSettings) -> None:
    def responder(messages: Sequence[ChatMessage]) -> str:
        if requested_path(messages) is None:
            return wrap(brief_document(questions=()))
        return _default_responder(messages)

    orchestrator, invoker = _build(store, settings, responder)
    project = orchestrator.create_project("demo", "a todo list CLI")

    assert project.phase == ProjectPhase.IDLE
    assert orchestrator.current_question(project.id) is None
    assert len(invoker.calls) == 1
    with pytest.raises(ValueError):
        orchestrator.answer_question(project.id, "unprompted")

    report = orchestrator.generate_files(project.id)
    assert report.completed == ["todo.ts", "README.md"]


def test_repeated_question_text_is_answered_once(store: ProjectStore, settings: RuntimeSettings) -> None:
    def responder(messages: Sequence[ChatMessage]) -> str:
        if requested_path(messages) is None:
            return wrap(brief_document(questions=("Language?", "Language?")))
        return _default_responder(messages)

    orchestrator, _ = _build(store, settings, responder)
    project = orchestrator.create_project("demo", "a todo list CLI")

    status = orchestrator.answer_question(project.id, "TypeScript")

    assert status.complete
    assert status.generation is not None
    assert orchestrator.get_project(project.id).answers == {"Language?": "TypeScript"}


def test_regenerate_file_recovers_failed_file(store: ProjectStore, settings: RuntimeSettings) -> None:
    failing = {"todo.ts"}
    seen_status: list[FileStatus] = []
    orchestrator: GenerationOrchestrator

    def responder(messages: Sequence[ChatMessage]) -> str:
        path = requested_path(messages)
        if path is not None and path in failing:
            raise NetworkError("timeout")
        if path == "todo.ts":
            seen_status.append(orchestrator.store.get_project(project_id).file(path).status)
        return _default_responder(messages)

    orchestrator, invoker = _build(store, settings, responder)
    project_id = orchestrator.create_project("demo", "a todo list CLI").id
    _answer_all(orchestrator, project_id)
    assert orchestrator.get_project(project_id).file("todo.ts").status == FileStatus.ERROR
    assert all(invoker.use_cache)

    failing.clear()
    task = orchestrator.regenerate_file(project_id, "todo.ts")

    assert seen_status == [FileStatus.REGENERATING]
    assert invoker.use_cache[-1] is False
    assert task.status == FileStatus.COMPLETED
    assert task.error is None
    assert task.content == "// contents of todo.ts\n"

    with pytest.raises(NotFoundError):
        orchestrator.regenerate_file(project_id, "missing.ts")


def test_second_run_while_busy_is_rejected(store: ProjectStore, settings: RuntimeSettings) -> None:
    observed: dict[str, object] = {}
    orchestrator: GenerationOrchestrator

    def responder(messages: Sequence[ChatMessage]) -> str:
        path = requested_path(messages)
        if path == "todo.ts":
            observed["busy"] = orchestrator.get_project(project_id).busy
            observed["phase"] = orchestrator.get_project(project_id).phase
            with pytest.raises(ProjectBusyError):
                orchestrator.generate_files(project_id)
            with pytest.raises(ProjectBusyError):
                orchestrator.regenerate_file(project_id, "README.md")
            with pytest.raises(ProjectBusyError):
                orchestrator.delete_project(project_id)
        return _default_responder(messages)

    orchestrator, _ = _build(store, settings, responder)
    project_id = orchestrator.create_project("demo", "a todo list CLI").id
    _answer_all(orchestrator, project_id)

    assert observed == {"busy": True, "phase": ProjectPhase.GENERATING_FILES}
    assert orchestrator.is_busy(project_id) is False


def test_chat_message_applies_changes_to_existing_files(store: ProjectStore, settings: RuntimeSettings) -> None:
    chat_reply = {
        "thought_process": {
            "problem_analysis": "a",
            "solution_approach": "b",
            "implementation_plan": "c",
            "potential_issues": "d",
        },
        "assistant_reply": "Added a header and usage section.",
        "files_to_create": [
            {"path": "todo.ts", "content": "// header\nconsole.log('todo')\n", "purpose": "p"},
            {"path": "extra.ts", "content": "new file", "purpose": "p"},
        ],
        "files_to_edit": [
            {
                "path": "README.md",
                "original_snippet": "contents of README.md",
                "new_snippet": "Usage: todo add <task>",
                "change_reason": "usage",
            },
            {"path": "README.md", "original_snippet": "not present", "new_snippet": "x", "change_reason": "y"},
        ],
    }

    def responder(messages: Sequence[ChatMessage]) -> str:
        if messages[-1].content.endswith("Only create or edit files that already exist in the project."):
            return wrap(chat_reply)
        return _default_responder(messages)

    orchestrator, invoker = _build(store, settings, responder)
    project_id = orchestrator.create_project("demo", "a todo list CLI").id
    _answer_all(orchestrator, project_id)

    payload = orchestrator.send_chat_message(project_id, "Add a usage section")

    assert payload.assistant_reply == "Added a header and usage section."
    assert "--- todo.ts ---" in invoker.calls[-1][-1].content
    project = orchestrator.get_project(project_id)
    assert project.file("todo.ts").content == "// header\nconsole.log('todo')\n"
    assert project.file("README.md").content == "// Usage: todo add <task>\n"
    assert project.file("extra.ts") is None
    infos = [message.content for message in orchestrator.transcript.messages(project_id, kind=MessageKind.INFO)]
    assert "Skipped extra.ts: only existing project files can be changed." in infos
    assert "Skipped edit to README.md: original snippet not found." in infos


def test_delete_project_removes_state_and_transcript(store: ProjectStore, settings: RuntimeSettings) -> None:
    transcript = ChatTranscript()
    received: list[str] = []
    transcript.subscribe(lambda _project_id, message: received.append(message.content))
    orchestrator = GenerationOrchestrator(
        store, ScriptedInvoker(_default_responder), settings=settings, transcript=transcript
    )
    project_id = orchestrator.create_project("demo", "a todo list CLI").id
    assert received

    orchestrator.delete_project(project_id)

    assert orchestrator.get_project(project_id) is None
    assert transcript.messages(project_id) == []
    with pytest.raises(NotFoundError):
        orchestrator.generate_files(project_id)


def _three_file_brief(messages: Sequence[ChatMessage]) -> str:
    files = (("a.py", "first"), ("b.py", "second"), ("c.py", "third"))
    return wrap(brief_document(files=files, questions=()))


def test_middle_file_failure_keeps_order_and_continues(store: ProjectStore, settings: RuntimeSettings) -> None:
    def responder(messages: Sequence[ChatMessage]) -> str:
        path = requested_path(messages)
        if path is None:
            return _three_file_brief(messages)
        if path == "b.py":
            raise NetworkError("connection reset")
        return _default_responder(messages)

    orchestrator, invoker = _build(store, settings, responder)
    project_id = orchestrator.create_project("demo", "three modules").id
    report = orchestrator.generate_files(project_id)

    assert [requested_path(call) for call in invoker.calls[1:]] == ["a.py", "b.py", "c.py"]
    assert report.completed == ["a.py", "c.py"]
    assert report.failed == {"b.py": "connection reset"}
    project = orchestrator.get_project(project_id)
    assert [(task.path, task.status) for task in project.files] == [
        ("a.py", FileStatus.COMPLETED),
        ("b.py", FileStatus.ERROR),
        ("c.py", FileStatus.COMPLETED),
    ]
    assert project.file("c.py").content == "// contents of c.py\n"
    progress = [message.content for message in orchestrator.transcript.messages(project_id, kind=MessageKind.PROGRESS)]
    assert progress == [
        "Generating a.py...",
        "Generated a.py",
        "Generating b.py...",
        "Failed to generate b.py: connection reset",
        "Generating c.py...",
        "Generated c.py",
    ]


class _BalanceExhaustedModel:
    """Chat model that answers the brief and then fails every file request like an unpaid account."""

    def invoke(self, input: Any) -> AIMessage:
        if "Please provide the complete implementation for the file: " in input[-1].content:
            raise ValueError({"message": "Insufficient Balance", "type": "unknown_error"})
        return AIMessage(content=_three_file_brief([]))


def test_provider_error_body_fails_each_file_without_aborting(store: ProjectStore, settings: RuntimeSettings) -> None:
    invoker = ChatModelInvoker(settings, model_factory=lambda config, cache: _BalanceExhaustedModel())
    orchestrator = GenerationOrchestrator(store, invoker, settings=settings)
    project_id = orchestrator.create_project("demo", "three modules").id

    report = orchestrator.generate_files(project_id)

    assert report.completed == []
    assert list(report.failed) == ["a.py", "b.py", "c.py"]
    assert all("Insufficient Balance" in error for error in report.failed.values())
    project = orchestrator.get_project(project_id)
    assert [task.status for task in project.files] == [FileStatus.ERROR] * 3
    assert project.phase == ProjectPhase.IDLE
    assert project.busy is False


def test_unexpected_error_still_returns_project_to_idle(store: ProjectStore, settings: RuntimeSettings) -> None:
    def responder(messages: Sequence[ChatMessage]) -> str:
        if requested_path(messages) == "README.md":
            raise RuntimeError("disk on fire")
        return _default_responder(messages)

    orchestrator, _ = _build(store, settings, responder)
    project_id = orchestrator.create_project("demo", "a todo list CLI").id
    orchestrator.answer_question(project_id, "A JSON file")

    with pytest.raises(RuntimeError):
        orchestrator.answer_question(project_id, "Yes, optional")

    project = orchestrator.get_project(project_id)
    assert project.phase == ProjectPhase.IDLE
    assert project.busy is False
    assert project.file("todo.ts").status == FileStatus.COMPLETED


def test_generate_files_refuses_unanswered_questions(store: ProjectStore, settings: RuntimeSettings) -> None:
    orchestrator, invoker = _build(store, settings)
    project_id = orchestrator.create_project("demo", "a todo list CLI").id

    with pytest.raises(ValueError, match="unanswered clarifying question"):
        orchestrator.generate_files(project_id)

    orchestrator.answer_question(project_id, "A JSON file")
    with pytest.raises(ValueError, match="1 unanswered"):
        orchestrator.generate_files(project_id)

    assert len(invoker.calls) == 1
    project = orchestrator.get_project(project_id)
    assert project.phase == ProjectPhase.AWAITING_ANSWERS
    assert all(task.status == FileStatus.PENDING for task in project.files)
    assert orchestrator.current_question(project_id).question == "Should tasks have due dates?"


def test_final_answer_keeps_the_project_claimed_into_generation(
    store: ProjectStore, settings: RuntimeSettings
) -> None:
    orchestrator, _ = _build(store, settings)
    project_id = orchestrator.create_project("demo", "a todo list CLI").id
    busy_at_handoff: list[bool] = []

    def on_message(owner: str, message) -> None:
        if owner == project_id and message.content.startswith("Thanks for the answers!"):
            busy_at_handoff.append(orchestrator.is_busy(project_id))
            with pytest.raises(ProjectBusyError):
                orchestrator.generate_files(project_id)

    orchestrator.transcript.subscribe(on_message)
    status = _answer_all(orchestrator, project_id)

    assert busy_at_handoff == [True]
    assert status.generation.all_completed
