"""Entry point for `python -m deepbuild` and the `deepbuild` CLI script."""

from __future__ import annotations

import argparse
import logging
from collections.abc import Sequence
from pathlib import Path

from deepbuild import GenerationOrchestrator
from deepbuild.errors import DeepBuildError
from deepbuild.llm import ChatModelInvoker
from deepbuild.models import FileStatus, GenerationReport, Project, TranscriptMessage
from deepbuild.settings import RuntimeSettings
from deepbuild.store import open_store


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Turn app descriptions into generated project files")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    new = commands.add_parser("new", help="Create a project, answer its questions and generate its files")
    new.add_argument("name", help="Project name (empty to use the name from the brief)")
    new.add_argument("description", help="Description of the utility app to build")

    commands.add_parser("list", help="List stored projects, newest first")

    show = commands.add_parser("show", help="Print a project's files and their status")
    show.add_argument("project_id")

    generate = commands.add_parser("generate", help="Generate every file of a project")
    generate.add_argument("project_id")

    regenerate = commands.add_parser("regenerate", help="Regenerate a single file")
    regenerate.add_argument("project_id")
    regenerate.add_argument("path")

    delete = commands.add_parser("delete", help="Delete a project and its files")
    delete.add_argument("project_id")
    return parser.parse_args(argv)


def build_orchestrator(settings: RuntimeSettings, repo_root: Path) -> GenerationOrchestrator:
    store = open_store(settings, repo_root=repo_root)
    return GenerationOrchestrator(store, ChatModelInvoker(settings), settings=settings)


def _print_message(_project_id: str, message: TranscriptMessage) -> None:
    if message.role == "user":
        return
    print(message.content)


def _print_report(report: GenerationReport) -> None:
    print(f"completed={len(report.completed)} failed={len(report.failed)}")
    for path, error in report.failed.items():
        print(f"  {path}: {error}")


def _print_project(project: Project) -> None:
    print(f"{project.id}  {project.name}  phase={project.phase.value}  created={project.created_at.isoformat()}")
    for task in project.files:
        print(f"  [{task.status.value}] {task.path}" + (f"  ({task.error})" if task.error else ""))


def _run_new(orchestrator: GenerationOrchestrator, name: str, description: str) -> int:
    project = orchestrator.create_project(name, description)
    print(f"project_id={project.id}")
    question = orchestrator.current_question(project.id)
    if question is None:
        report = orchestrator.generate_files(project.id)
    else:
        report = None
        while report is None:
            answer = input("> ").strip()
            if not answer:
                print("Please enter an answer.")
                continue
            status = orchestrator.answer_question(project.id, answer)
            report = status.generation
    _print_report(report)
    return 0 if report.all_completed else 1


def run_command(args: argparse.Namespace, orchestrator: GenerationOrchestrator) -> int:
    if args.command == "new":
        return _run_new(orchestrator, args.name, args.description)
    if args.command == "list":
        for project in orchestrator.list_projects():
            done = project.status_counts()[FileStatus.COMPLETED]
            print(f"{project.id}  {project.name}  {done}/{len(project.files)} files  phase={project.phase.value}")
        return 0
    if args.command == "show":
        project = orchestrator.get_project(args.project_id)
        if project is None:
            logging.error("Project not found: %s", args.project_id)
            return 1
        _print_project(project)
        for task in project.files:
            if task.content:
                print(f"\n--- {task.path} ---\n{task.content}")
        return 0
    if args.command == "generate":
        report = orchestrator.generate_files(args.project_id)
        _print_report(report)
        return 0 if report.all_completed else 1
    if args.command == "regenerate":
        task = orchestrator.regenerate_file(args.project_id, args.path)
        print(f"[{task.status.value}] {task.path}")
        return 0 if task.error is None else 1
    if args.command == "delete":
        orchestrator.delete_project(args.project_id)
        print(f"deleted {args.project_id}")
        return 0
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    repo_root = Path.cwd()
    try:
        settings = RuntimeSettings.from_env(repo_root)
        orchestrator = build_orchestrator(settings, repo_root)
    except (OSError, ValueError) as exc:
        logging.error("Unable to initialise deepbuild: %s", exc)
        return 1

    orchestrator.transcript.subscribe(_print_message)
    try:
        return run_command(args, orchestrator)
    except (DeepBuildError, ValueError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1
    except EOFError:
        logging.error("Input closed before all questions were answered")
        return 1
    finally:
        orchestrator.store.close()


if __name__ == "__main__":
    raise SystemExit(main())
