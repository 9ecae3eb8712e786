from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigurationError

VALID_PROVIDERS: frozenset[str] = frozenset({"deepseek", "hyperbolic"})
VALID_STORE_BACKENDS: frozenset[str] = frozenset({"sqlite", "memory"})

DEFAULT_DEEPSEEK_API_BASE = "https://api.deepseek.com/v1"
DEFAULT_HYPERBOLIC_API_BASE = "https://api.hyperbolic.xyz/v1"


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    selected_model: str = "deepseek"
    deepseek_api_key: str = ""
    hyperbolic_api_key: str = ""
    model_version: str = ""
    max_tokens: int | None = None
    temperature: float = 0.7
    top_p: float = 0.9
    request_timeout_ms: int = 60_000
    cache_enabled: bool = False
    deepseek_api_base: str = DEFAULT_DEEPSEEK_API_BASE
    hyperbolic_api_base: str = DEFAULT_HYPERBOLIC_API_BASE
    store_backend: str = "sqlite"
    store_path: str = "deepbuild_store/projects.sqlite"
    max_continuations: int = 3
    recursion_limit: int = 1_000

    @classmethod
    def from_env(cls, repo_root: Path | None = None) -> "RuntimeSettings":
        """Build settings from ``DEEPBUILD_*`` and provider environment variables.

        A ``.env`` file in ``repo_root`` (or the cwd) is loaded first without
        overriding variables that are already set.
        """
        env_path = (repo_root if repo_root is not None else Path.cwd()) / ".env"
        if env_path.is_file():
            load_dotenv(env_path)

        max_tokens_raw = os.getenv("DEEPBUILD_MAX_TOKENS")
        return cls(
            selected_model=os.getenv("DEEPBUILD_API_PROVIDER", "deepseek"),
            deepseek_api_key=os.getenv("DEEPSEEK_API_KEY", ""),
            hyperbolic_api_key=os.getenv("HYPERBOLIC_API_KEY", ""),
            model_version=os.getenv("DEEPBUILD_MODEL_VERSION", ""),
            max_tokens=(
                _get_env_int("DEEPBUILD_MAX_TOKENS", default=0, minimum=1, maximum=1_000_000)
                if max_tokens_raw is not None
                else None
            ),
            temperature=_get_env_float("DEEPBUILD_TEMPERATURE", default=0.7, minimum=0.0, maximum=2.0),
            top_p=_get_env_float("DEEPBUILD_TOP_P", default=0.9, minimum=0.0, maximum=1.0),
            request_timeout_ms=_get_env_int("DEEPBUILD_REQUEST_TIMEOUT_MS", default=60_000, minimum=1_000),
            cache_enabled=_get_env_bool("DEEPBUILD_CACHE_ENABLED", default=False),
            deepseek_api_base=os.getenv("DEEPSEEK_API_BASE", DEFAULT_DEEPSEEK_API_BASE),
            hyperbolic_api_base=os.getenv("HYPERBOLIC_API_BASE", DEFAULT_HYPERBOLIC_API_BASE),
            store_backend=os.getenv("DEEPBUILD_STORE_BACKEND", "sqlite"),
            store_path=os.getenv("DEEPBUILD_STORE_PATH", "deepbuild_store/projects.sqlite"),
            max_continuations=_get_env_int("DEEPBUILD_MAX_CONTINUATIONS", default=3, minimum=0, maximum=20),
            recursion_limit=_get_env_int("DEEPBUILD_RECURSION_LIMIT", default=1_000, minimum=25),
        ).normalized()

    @property
    def active_api_key(self) -> str:
        """Return the credential for the selected provider, or an empty string."""
        return self.deepseek_api_key if self.selected_model == "deepseek" else self.hyperbolic_api_key

    @property
    def is_configured(self) -> bool:
        return bool(self.active_api_key)

    @property
    def request_timeout_seconds(self) -> float:
        return self.request_timeout_ms / 1000.0

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ConfigurationError on invalid configuration."""
        selected_model = self.selected_model.strip().lower()
        if selected_model not in VALID_PROVIDERS:
            raise ConfigurationError(
                f"DEEPBUILD_API_PROVIDER must be one of: {', '.join(sorted(VALID_PROVIDERS))}, "
                f"got: {self.selected_model!r}"
            )

        store_backend = self.store_backend.strip().lower()
        if store_backend not in VALID_STORE_BACKENDS:
            raise ConfigurationError(
                f"DEEPBUILD_STORE_BACKEND must be one of: {', '.join(sorted(VALID_STORE_BACKENDS))}, "
                f"got: {self.store_backend!r}"
            )
        if store_backend == "sqlite" and not self.store_path.strip():
            raise ConfigurationError("DEEPBUILD_STORE_PATH must be non-empty for the sqlite backend")

        # -- Provider endpoints --
        deepseek_api_base = self.deepseek_api_base.strip().rstrip("/")
        if not deepseek_api_base:
            raise ConfigurationError("DEEPSEEK_API_BASE must be non-empty")
        hyperbolic_api_base = self.hyperbolic_api_base.strip().rstrip("/")
        if not hyperbolic_api_base:
            raise ConfigurationError("HYPERBOLIC_API_BASE must be non-empty")

        # -- Numeric bounds --
        if self.max_tokens is not None and self.max_tokens < 1:
            raise ConfigurationError(f"DEEPBUILD_MAX_TOKENS must be >= 1, got: {self.max_tokens}")
        if not 0.0 <= self.temperature <= 2.0:
            raise ConfigurationError(f"DEEPBUILD_TEMPERATURE must be within [0, 2], got: {self.temperature}")
        if not 0.0 <= self.top_p <= 1.0:
            raise ConfigurationError(f"DEEPBUILD_TOP_P must be within [0, 1], got: {self.top_p}")
        if self.max_continuations < 0:
            raise ConfigurationError(
                f"DEEPBUILD_MAX_CONTINUATIONS must be >= 0, got: {self.max_continuations}"
            )

        return replace(
            self,
            selected_model=selected_model,
            deepseek_api_key=self.deepseek_api_key.strip(),
            hyperbolic_api_key=self.hyperbolic_api_key.strip(),
            model_version=self.model_version.strip(),
            deepseek_api_base=deepseek_api_base,
            hyperbolic_api_base=hyperbolic_api_base,
            store_backend=store_backend,
        )

    def store_file(self, repo_root: Path) -> Path:
        path = Path(self.store_path)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ConfigurationError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ConfigurationError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ConfigurationError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got: {raw!r}")
