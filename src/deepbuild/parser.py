"""Sentinel-delimited payload protocol.

Model replies carry their structured document between ``<final_json>`` and
``</final_json>``. A reply with an opening marker but no closing marker was
cut off by the token limit; the parser asks the model to continue, appends
the continuation and tries again, up to ``max_continuations`` rounds.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import ValidationError

from .errors import PayloadError, PayloadErrorKind
from .llm import ModelInvoker
from .model_selection import GenerationConfig
from .models import ChatMessage, ImplementationPayload, ProjectBrief, ReplyKind
from .prompts import CLOSE_MARKER, CONTINUATION_PROMPT, OPEN_MARKER

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTINUATIONS = 3

_FENCE_RE = re.compile(r"^```[\w+-]*[ \t]*\n(.*?)\n?```$", re.DOTALL)

Payload = ProjectBrief | ImplementationPayload

_SCHEMAS: dict[ReplyKind, type[ProjectBrief] | type[ImplementationPayload]] = {
    ReplyKind.BRIEF: ProjectBrief,
    ReplyKind.IMPLEMENTATION: ImplementationPayload,
}


# ---------------------------------------------------------------------------
# Tagged results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Extracted:
    document: Any
    source: Literal["sentinel", "bare"]


@dataclass(frozen=True)
class Truncated:
    partial: str


@dataclass(frozen=True)
class ValidPayload:
    payload: Payload


@dataclass(frozen=True)
class InvalidPayload:
    document: Any
    issues: tuple[str, ...]


@dataclass(frozen=True)
class ModelReply:
    raw_text: str
    payload: Payload
    continuations: int = 0


# ---------------------------------------------------------------------------
# Extraction and validation
# ---------------------------------------------------------------------------

def _strip_fence(text: str) -> str:
    body = text.strip()
    match = _FENCE_RE.match(body)
    return match.group(1).strip() if match else body


def _decode(text: str) -> Any:
    # strict=False admits raw newlines inside strings, which appear when a
    # continuation is spliced into the middle of a string value.
    return json.loads(text, strict=False)


def extract_document(raw_text: str) -> Extracted | Truncated:
    """Locate and decode the structured document in a raw reply.

    Returns:
        ``Extracted`` with the decoded document, or ``Truncated`` when the
        opening marker has no matching closing marker.

    Raises:
        PayloadError: ``INVALID_ENCODING`` when the delimited text is not JSON,
            ``NO_PAYLOAD`` when there are no markers and the whole text is not JSON.
    """
    start = raw_text.find(OPEN_MARKER)
    if start == -1:
        try:
            return Extracted(document=_decode(_strip_fence(raw_text)), source="bare")
        except json.JSONDecodeError as exc:
            preview = raw_text.strip()[:200].replace("\n", " ")
            raise PayloadError(
                PayloadErrorKind.NO_PAYLOAD,
                f"Invalid response format: missing {OPEN_MARKER} data ({preview!r})",
            ) from exc

    inner_start = start + len(OPEN_MARKER)
    end = raw_text.find(CLOSE_MARKER, inner_start)
    if end == -1:
        return Truncated(partial=raw_text)

    inner = _strip_fence(raw_text[inner_start:end])
    try:
        return Extracted(document=_decode(inner), source="sentinel")
    except json.JSONDecodeError as exc:
        raise PayloadError(
            PayloadErrorKind.INVALID_ENCODING,
            f"Structured block is not valid JSON: {exc.msg} at line {exc.lineno} column {exc.colno}",
        ) from exc


def _format_issue(error: dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ())) or "<root>"
    return f"{location}: {error.get('msg', 'invalid value')}"


def validate_payload(document: Any, kind: ReplyKind) -> ValidPayload | InvalidPayload:
    """Validate a decoded document against the shape expected for ``kind``."""
    if not isinstance(document, dict):
        return InvalidPayload(
            document=document,
            issues=(f"<root>: expected a JSON object, got {type(document).__name__}",),
        )
    schema = _SCHEMAS[kind]
    try:
        return ValidPayload(payload=schema.model_validate(document))
    except ValidationError as exc:
        return InvalidPayload(
            document=document,
            issues=tuple(_format_issue(error) for error in exc.errors()),
        )


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class PayloadParser:
    """Extracts, repairs and validates structured payloads from model replies.

    Holds no per-call state; one instance can parse any number of replies.
    """

    def __init__(
        self,
        invoker: ModelInvoker | None = None,
        *,
        max_continuations: int = DEFAULT_MAX_CONTINUATIONS,
    ) -> None:
        if max_continuations < 0:
            raise ValueError("max_continuations must be >= 0")
        self.invoker = invoker
        self.max_continuations = max_continuations

    def parse_reply(
        self,
        raw_text: str,
        kind: ReplyKind,
        *,
        conversation: Sequence[ChatMessage] = (),
        config: GenerationConfig | None = None,
        use_cache: bool = True,
    ) -> ModelReply:
        """Parse ``raw_text``, running continuation rounds while it is truncated.

        Args:
            raw_text: The model's reply to ``conversation``.
            kind: Expected payload shape.
            conversation: The messages that produced ``raw_text``; continuation
                requests extend this conversation.
            config: Generation parameters for continuation requests.
            use_cache: Whether continuation requests may be answered from cache.

        Returns:
            The accumulated raw text and its validated payload.

        Raises:
            PayloadError: On unterminated, undecodable, missing or mis-shaped payloads.
            ModelInvocationError: If a continuation request fails.
        """
        accumulated = raw_text
        rounds = 0
        while True:
            result = extract_document(accumulated)
            if isinstance(result, Extracted):
                break
            if rounds >= self.max_continuations or self.invoker is None:
                raise PayloadError(
                    PayloadErrorKind.UNTERMINATED,
                    f"Reply is missing {CLOSE_MARKER} after {rounds} continuation round(s)",
                )
            rounds += 1
            logger.warning(
                "Reply truncated after %d chars; requesting continuation %d/%d",
                len(accumulated),
                rounds,
                self.max_continuations,
            )
            continuation = self.invoker.invoke(
                [
                    *conversation,
                    ChatMessage(role="assistant", content=accumulated),
                    ChatMessage(role="user", content=CONTINUATION_PROMPT),
                ],
                config,
                use_cache=use_cache,
            )
            accumulated = f"{accumulated}\n{continuation}"

        outcome = validate_payload(result.document, kind)
        if isinstance(outcome, InvalidPayload):
            raise PayloadError(
                PayloadErrorKind.SCHEMA_MISMATCH,
                f"Invalid {kind.value} payload: {'; '.join(outcome.issues[:5])}",
                document=outcome.document,
                issues=outcome.issues,
            )
        return ModelReply(raw_text=accumulated, payload=outcome.payload, continuations=rounds)

    def parse(
        self,
        raw_text: str,
        kind: ReplyKind,
        *,
        conversation: Sequence[ChatMessage] = (),
        config: GenerationConfig | None = None,
        use_cache: bool = True,
    ) -> Payload:
        return self.parse_reply(
            raw_text, kind, conversation=conversation, config=config, use_cache=use_cache
        ).payload

    def parse_brief(
        self,
        raw_text: str,
        *,
        conversation: Sequence[ChatMessage] = (),
        config: GenerationConfig | None = None,
    ) -> ProjectBrief:
        payload = self.parse(raw_text, ReplyKind.BRIEF, conversation=conversation, config=config)
        if not isinstance(payload, ProjectBrief):
            raise PayloadError(PayloadErrorKind.SCHEMA_MISMATCH, "Expected a project brief payload")
        return payload

    def parse_implementation(
        self,
        raw_text: str,
        *,
        conversation: Sequence[ChatMessage] = (),
        config: GenerationConfig | None = None,
        use_cache: bool = True,
    ) -> ImplementationPayload:
        payload = self.parse(
            raw_text, ReplyKind.IMPLEMENTATION, conversation=conversation, config=config, use_cache=use_cache
        )
        if not isinstance(payload, ImplementationPayload):
            raise PayloadError(PayloadErrorKind.SCHEMA_MISMATCH, "Expected an implementation payload")
        return payload
