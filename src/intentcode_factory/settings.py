from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    instance_id: str = "default"
    default_model: str = "gpt-4o-mini"
    llm_timeout_seconds: int = 120
    max_concurrency: int = 1
    generation_history_limit: int = 5
    recursion_limit: int = 1_000
    max_replans: int = 5

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("INTENTCODE_STATE_STORE_ROOT", "state_store"),
            instance_id=os.getenv("INTENTCODE_INSTANCE_ID", "default"),
            default_model=os.getenv("INTENTCODE_DEFAULT_MODEL", "gpt-4o-mini"),
            llm_timeout_seconds=_get_env_int("INTENTCODE_LLM_TIMEOUT_SECONDS", default=120, minimum=1, maximum=3_600),
            max_concurrency=_get_env_int("INTENTCODE_MAX_CONCURRENCY", default=1, minimum=1, maximum=64),
            generation_history_limit=_get_env_int("INTENTCODE_GENERATION_HISTORY_LIMIT", default=5, minimum=1),
            recursion_limit=_get_env_int("INTENTCODE_RECURSION_LIMIT", default=1_000, minimum=25),
            max_replans=_get_env_int("INTENTCODE_MAX_REPLANS", default=5, minimum=0, maximum=100),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        default_model = self.default_model.strip()
        if not default_model:
            raise ValueError("INTENTCODE_DEFAULT_MODEL must be non-empty")
        instance_id = self.instance_id.strip()
        if not instance_id:
            raise ValueError("INTENTCODE_INSTANCE_ID must be non-empty")
        if not self.state_store_root.strip():
            raise ValueError("INTENTCODE_STATE_STORE_ROOT must be non-empty")

        if self.recursion_limit > 100_000:
            raise ValueError(
                f"INTENTCODE_RECURSION_LIMIT must be <= 100000, got: {self.recursion_limit}"
            )
        if self.max_concurrency < 1:
            raise ValueError(f"INTENTCODE_MAX_CONCURRENCY must be >= 1, got: {self.max_concurrency}")
        if self.generation_history_limit < 1:
            raise ValueError(
                f"INTENTCODE_GENERATION_HISTORY_LIMIT must be >= 1, got: {self.generation_history_limit}"
            )
        return RuntimeSettings(
            state_store_root=self.state_store_root,
            instance_id=instance_id,
            default_model=default_model,
            llm_timeout_seconds=self.llm_timeout_seconds,
            max_concurrency=self.max_concurrency,
            generation_history_limit=self.generation_history_limit,
            recursion_limit=self.recursion_limit,
            max_replans=self.max_replans,
        )

    def state_store_path(self, repo_root: Path | None = None) -> Path:
        path = Path(self.state_store_root)
        if path.is_absolute():
            return path
        return (repo_root if repo_root is not None else Path.cwd()) / path


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
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
