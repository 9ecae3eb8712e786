from __future__ import annotations

from collections.abc import Mapping, Sequence

from .canonical import to_canonical_json
from .models import ClarifyingQuestion, FileTask, ProjectBrief, ReplyKind

APP_NAME = "DeepBuild"

OPEN_MARKER = "<final_json>"
CLOSE_MARKER = "</final_json>"

BRIEF_SYSTEM_PROMPT = f"""You are {APP_NAME}, an elite software engineer. When a user describes their utility app, create a simple but clear project overview.

Your response must always be wrapped in {OPEN_MARKER} tags and match this structure:
{{
  "project_brief": {{
    "app_summary": {{
      "name": "Name of the utility",
      "purpose": "What the utility does",
      "main_features": ["List of core features"]
    }},
    "technical_outline": {{
      "tech_stack": ["Key technologies needed"],
      "external_dependencies": ["Required libraries/tools"],
      "basic_structure": {{
        "files": [
          {{
            "file": "filename",
            "purpose": "what this file will do"
          }}
        ]
      }}
    }},
    "implementation_notes": {{
      "starting_point": "Where to begin implementation",
      "key_considerations": ["Important points to keep in mind"],
      "potential_challenges": ["Possible issues to watch for"]
    }}
  }},
  "clarifying_questions": [
    {{
      "question": "Question text",
      "why_needed": "Why this information matters"
    }}
  ]
}}

List every file the project needs in "files", in the order they should be written.
Remember: Always wrap your response in {OPEN_MARKER} tags and ensure it's valid JSON."""

IMPLEMENTATION_SYSTEM_PROMPT = f"""You are {APP_NAME}, an elite software engineer with decades of experience across all programming domains. You will receive a project brief and need to provide a detailed implementation.

Your response must always be wrapped in {OPEN_MARKER} tags and match this structure:
{{
  "thought_process": {{
    "problem_analysis": "Initial breakdown of the problem and key considerations",
    "solution_approach": "Explanation of different approaches considered and reasoning",
    "implementation_plan": "Step-by-step plan for implementing the solution",
    "potential_issues": "Discussion of possible challenges and mitigations"
  }},
  "assistant_reply": "Your main explanation or response",
  "files_to_create": [
    {{
      "path": "path/to/new/file",
      "content": "complete file content",
      "purpose": "Explanation of this file's role"
    }}
  ],
  "files_to_edit": [
    {{
      "path": "path/to/existing/file",
      "original_snippet": "exact code to be replaced",
      "new_snippet": "new code to insert",
      "change_reason": "Explanation of why this change is needed"
    }}
  ]
}}

Guidelines:
1. Always show your reasoning process
2. Include proper error handling and all necessary imports
3. Use exactly the file path you were asked for
4. Keep responses focused and concise
5. Consider the project context and existing files

Remember: Always wrap your response in {OPEN_MARKER} tags and ensure it's valid JSON."""

CONTINUATION_PROMPT = (
    "Your previous response was cut off before the closing "
    f"{CLOSE_MARKER} tag. Continue exactly where you stopped, without repeating "
    f"anything, and finish the JSON document followed by {CLOSE_MARKER}."
)


def system_prompt_for(kind: ReplyKind) -> str:
    return BRIEF_SYSTEM_PROMPT if kind == ReplyKind.BRIEF else IMPLEMENTATION_SYSTEM_PROMPT


def build_brief_prompt(description: str) -> str:
    return f"Create a project brief for the following utility app: {description.strip()}"


def _answers_block(answers: Mapping[str, str]) -> str:
    if not answers:
        return ""
    pairs = "\n\n".join(f"Q: {question}\nA: {answer}" for question, answer in answers.items())
    return f"\n\nAdditional context from clarifying questions:\n{pairs}"


def build_implementation_prompt(
    brief: ProjectBrief,
    answers: Mapping[str, str],
    *,
    path: str,
    purpose: str,
) -> str:
    """Build the per-file implementation prompt.

    Embeds the full brief as canonical JSON, every recorded answer, and the
    target file's path and purpose.
    """
    return (
        f"Based on this project brief: {to_canonical_json(brief)}"
        f"{_answers_block(answers)}\n\n"
        f"Please provide the complete implementation for the file: {path}\n"
        f"Purpose: {purpose}\n\n"
        "Provide the complete file content in a format that can be directly used.\n"
        "Include any necessary imports, configurations, and full implementation details.\n"
        "Ensure the code follows best practices and includes proper error handling."
    )


def build_chat_prompt(brief: ProjectBrief, files: Sequence[FileTask], message: str) -> str:
    """Build a follow-up prompt carrying the brief and the current file contents."""
    sections = [f"Based on this project brief: {to_canonical_json(brief)}"]
    written = [task for task in files if task.content]
    if written:
        listing = "\n\n".join(f"--- {task.path} ---\n{task.content}" for task in written)
        sections.append(f"Current project files:\n{listing}")
    sections.append(f"User request: {message.strip()}")
    sections.append("Only create or edit files that already exist in the project.")
    return "\n\n".join(sections)


def render_brief_overview(brief: ProjectBrief) -> str:
    body = brief.project_brief
    summary = body.app_summary
    outline = body.technical_outline
    notes = body.implementation_notes

    def bullets(items: Sequence[str]) -> str:
        return "\n".join(f"- {item}" for item in items) or "- none"

    return (
        "# Project Brief Overview\n\n"
        "## App Summary\n"
        f"**Purpose:** {summary.purpose}\n\n"
        f"**Main Features:**\n{bullets(summary.main_features)}\n\n"
        "## Technical Stack\n"
        f"- Technologies: {', '.join(outline.tech_stack) or 'none'}\n"
        f"- Dependencies: {', '.join(outline.external_dependencies) or 'none'}\n\n"
        f"**Files:**\n{bullets([f'{entry.file}: {entry.purpose}' for entry in brief.file_list])}\n\n"
        "## Implementation Notes\n"
        f"**Starting Point:** {notes.starting_point}\n\n"
        f"**Key Considerations:**\n{bullets(notes.key_considerations)}\n\n"
        f"**Potential Challenges:**\n{bullets(notes.potential_challenges)}"
    )


def render_question(question: ClarifyingQuestion, *, first: bool) -> str:
    lead = (
        "Let's get started! I have a few questions to help me better understand your needs:"
        if first
        else "Thanks! Next question:"
    )
    text = f"{lead}\n\n{question.question}"
    if question.why_needed:
        text += f"\n\nWhy I ask: {question.why_needed}"
    return text
