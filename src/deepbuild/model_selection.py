from __future__ import annotations

from dataclasses import dataclass

from .errors import AuthError
from .settings import VALID_PROVIDERS, RuntimeSettings


@dataclass(frozen=True)
class ProviderProfile:
    """Per-provider generation defaults for an OpenAI-compatible chat endpoint."""

    model: str
    max_tokens: int


DEFAULT_PROFILES_BY_PROVIDER: dict[str, ProviderProfile] = {
    "deepseek": ProviderProfile(model="deepseek-chat", max_tokens=8000),
    "hyperbolic": ProviderProfile(model="deepseek-ai/DeepSeek-V3", max_tokens=512),
}


@dataclass(frozen=True)
class GenerationConfig:
    """Fully resolved parameters for one model invocation."""

    provider: str
    model: str
    api_base: str
    api_key: str
    max_tokens: int
    temperature: float
    top_p: float
    timeout_seconds: float


def resolve_generation_config(settings: RuntimeSettings) -> GenerationConfig:
    """Resolve the selected provider's profile and overrides into a GenerationConfig.

    Environment overrides (model version, max tokens, temperature, top_p) apply
    on top of the provider defaults.

    Args:
        settings: Validated runtime settings.

    Returns:
        The GenerationConfig for the active provider.

    Raises:
        ValueError: If the selected provider is unknown.
        AuthError: If no API key is configured for the selected provider.
    """
    provider = settings.selected_model
    if provider not in VALID_PROVIDERS:
        raise ValueError(
            f"Unknown provider '{provider}'. Valid providers: {', '.join(sorted(VALID_PROVIDERS))}"
        )
    api_key = settings.active_api_key
    if not api_key:
        label = "DeepSeek" if provider == "deepseek" else "Hyperbolic"
        raise AuthError(f"Please configure your {label} API key before generating.")

    profile = DEFAULT_PROFILES_BY_PROVIDER[provider]
    api_base = settings.deepseek_api_base if provider == "deepseek" else settings.hyperbolic_api_base
    return GenerationConfig(
        provider=provider,
        model=settings.model_version or profile.model,
        api_base=api_base,
        api_key=api_key,
        max_tokens=settings.max_tokens if settings.max_tokens is not None else profile.max_tokens,
        temperature=settings.temperature,
        top_p=settings.top_p,
        timeout_seconds=settings.request_timeout_seconds,
    )
