from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Literal

from .models import MessageKind, TranscriptMessage

logger = logging.getLogger(__name__)

TranscriptListener = Callable[[str, TranscriptMessage], None]


class ChatTranscript:
    """Per-project, append-only log of user-visible messages.

    Listeners are called synchronously with ``(project_id, message)`` after
    each append, in subscription order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._messages: dict[str, list[TranscriptMessage]] = {}
        self._listeners: list[TranscriptListener] = []

    def subscribe(self, listener: TranscriptListener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def add_message(
        self,
        project_id: str,
        content: str,
        *,
        kind: MessageKind = MessageKind.INFO,
        role: Literal["system", "user", "assistant"] = "assistant",
    ) -> TranscriptMessage:
        message = TranscriptMessage(role=role, kind=kind, content=content)
        with self._lock:
            self._messages.setdefault(project_id, []).append(message)
            listeners = list(self._listeners)
        logger.debug("[%s] %s/%s: %s", project_id, role, kind.value, content[:120])
        for listener in listeners:
            listener(project_id, message)
        return message

    def progress(self, project_id: str, content: str) -> TranscriptMessage:
        return self.add_message(project_id, content, kind=MessageKind.PROGRESS)

    def messages(self, project_id: str, *, kind: MessageKind | None = None) -> list[TranscriptMessage]:
        with self._lock:
            history = list(self._messages.get(project_id, ()))
        if kind is None:
            return history
        return [message for message in history if message.kind == kind]

    def clear(self, project_id: str) -> None:
        with self._lock:
            self._messages.pop(project_id, None)
