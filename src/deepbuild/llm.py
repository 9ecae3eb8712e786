from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from typing import Any, Protocol

import httpx
import openai
from langchain_core.caches import BaseCache, InMemoryCache
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .errors import AuthError, NetworkError, ProviderError
from .model_selection import GenerationConfig, resolve_generation_config
from .models import ChatMessage
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

# Transient failures surface to the caller; the orchestrator decides what to retry.
_DEFAULT_MAX_RETRIES: int = 0


class SupportsInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports invoke."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


class ModelInvoker(Protocol):
    """Sends an ordered conversation to the model endpoint and returns the raw reply text.

    ``use_cache=False`` forces a fresh request even when an identical
    conversation was answered before.
    """

    def invoke(
        self,
        messages: Sequence[ChatMessage],
        config: GenerationConfig | None = None,
        *,
        use_cache: bool = True,
    ) -> str:
        ...


def get_chat_model(
    config: GenerationConfig,
    *,
    cache: BaseCache | bool | None = None,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    http_client: httpx.Client | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI client for an OpenAI-compatible provider endpoint.

    Args:
        config: Resolved generation parameters, including endpoint and credential.
        cache: LangChain response cache, ``False`` to disable caching.
        max_retries: Client-level retry attempts on transient failures.
        http_client: Optional pre-configured HTTP client for the OpenAI SDK.

    Returns:
        Configured ChatOpenAI instance.
    """
    if not config.model.strip():
        raise ValueError("model must be a non-empty string")
    return ChatOpenAI(
        model=config.model,
        api_key=config.api_key,
        base_url=config.api_base,
        temperature=config.temperature,
        top_p=config.top_p,
        max_tokens=config.max_tokens,
        timeout=config.timeout_seconds,
        max_retries=max_retries,
        cache=cache,
        http_client=http_client,
    )


def to_langchain_messages(messages: Sequence[ChatMessage]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        if message.role == "system":
            converted.append(SystemMessage(content=message.content))
        elif message.role == "assistant":
            converted.append(AIMessage(content=message.content))
        else:
            converted.append(HumanMessage(content=message.content))
    return converted


def _content_to_text(content: Any) -> str:
    """Recursively extract plain text from heterogeneous LLM response content."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    chunks.append(text_value)
                elif item.get("content") is not None:
                    chunks.append(_content_to_text(item["content"]))
                else:
                    chunks.append(json.dumps(item, sort_keys=True))
            else:
                chunks.append(str(item))
        return "".join(chunks)
    if isinstance(content, dict):
        if "content" in content:
            return _content_to_text(content["content"])
        return json.dumps(content, sort_keys=True)
    return str(content)


def extract_reply_text(response: Any) -> str:
    """Extract the reply text from a chat model response or message-like object."""
    if isinstance(response, str):
        return response
    if isinstance(response, dict) and "content" in response:
        return _content_to_text(response["content"])
    content = getattr(response, "content", None)
    if content is not None:
        return _content_to_text(content)
    return _content_to_text(response)


class ChatModelInvoker:
    """Model Invocation Service backed by ``ChatOpenAI``.

    One client is built per distinct GenerationConfig and cache mode, and
    reused. When ``cache_enabled`` is set, identical conversations with
    identical parameters are answered from an in-process LangChain cache
    unless the caller passes ``use_cache=False``.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        model_factory: Callable[[GenerationConfig, BaseCache | bool], SupportsInvoke] | None = None,
    ) -> None:
        self.settings = settings
        self._cache: BaseCache | None = InMemoryCache() if settings.cache_enabled else None
        self._model_factory = model_factory if model_factory is not None else self._build_model
        self._models: dict[tuple[GenerationConfig, bool], SupportsInvoke] = {}

    @staticmethod
    def _build_model(config: GenerationConfig, cache: BaseCache | bool) -> SupportsInvoke:
        return get_chat_model(config, cache=cache)

    def _model_for(self, config: GenerationConfig, *, use_cache: bool) -> SupportsInvoke:
        cached = use_cache and self._cache is not None
        model = self._models.get((config, cached))
        if model is None:
            model = self._model_factory(config, self._cache if cached else False)
            self._models[(config, cached)] = model
        return model

    def invoke(
        self,
        messages: Sequence[ChatMessage],
        config: GenerationConfig | None = None,
        *,
        use_cache: bool = True,
    ) -> str:
        """Send ``messages`` and return the raw reply text.

        Raises:
            AuthError: Missing credential, or the provider rejected it.
            NetworkError: Connection failure or request timeout.
            ProviderError: Any other client or provider failure, or an empty reply.
        """
        if not messages:
            raise ValueError("messages must contain at least one message")
        resolved = config if config is not None else resolve_generation_config(self.settings)
        model = self._model_for(resolved, use_cache=use_cache)
        logger.debug(
            "Invoking %s/%s with %d messages (%d chars)",
            resolved.provider,
            resolved.model,
            len(messages),
            sum(len(message.content) for message in messages),
        )
        try:
            response = model.invoke(to_langchain_messages(messages))
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise AuthError(f"{resolved.provider} rejected the API key: {exc}") from exc
        except openai.APITimeoutError as exc:
            raise NetworkError(
                f"{resolved.provider} request timed out after {resolved.timeout_seconds:g}s"
            ) from exc
        except openai.APIConnectionError as exc:
            raise NetworkError(f"Could not reach {resolved.provider}: {exc}") from exc
        except openai.APIError as exc:
            raise ProviderError(f"{resolved.provider} API request failed: {exc}") from exc
        except (openai.OpenAIError, httpx.HTTPError, ValueError) as exc:
            # langchain-openai raises ValueError for error bodies returned with HTTP 200.
            raise ProviderError(f"{resolved.provider} request failed: {exc}") from exc

        text = extract_reply_text(response)
        if not text.strip():
            raise ProviderError(f"{resolved.provider} returned an empty reply")
        return text
