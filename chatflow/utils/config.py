"""Configuration utilities for loading engine settings from the environment."""

import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from dotenv import load_dotenv


def load_env(env_file: Optional[str] = None) -> None:
    """Load environment variables from a .env file.

    Args:
        env_file: Optional path to .env file. If not specified, searches
                 for .env in current and parent directories.

    Example:
        >>> from chatflow.utils.config import load_env, EngineSettings
        >>> load_env()
        >>> settings = EngineSettings.from_env()
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()


def get_config(key: str, default: Optional[str] = None) -> Optional[str]:
    """Get configuration value from environment.

    Args:
        key: Configuration key
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    return os.getenv(key, default)


def _env_number(name: str, default: Any) -> Any:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return type(default)(raw)
    except ValueError:
        return default


@dataclass
class EngineSettings:
    """Tunables for the step executor, scheduler and worker pool.

    Attributes:
        max_attempts: Attempts per node before a transient failure becomes terminal
        retry_base_seconds: Backoff for the first retry; doubles per attempt
        retry_max_seconds: Upper bound for a single backoff
        external_timeout_seconds: Per-call timeout for messaging/HTTP/mutations
        default_input_timeout_seconds: Wait limit for input/button nodes (0 = none)
        max_steps_per_claim: Safety limit on steps driven under one claim
        claim_lease_seconds: Age after which a running claim is considered abandoned
        worker_count: Worker tasks started by Scheduler.start()
        sweep_interval_seconds: Period of the timer sweep
        database_path: SQLite file used by SQLiteBackend
    """

    max_attempts: int = 3
    retry_base_seconds: float = 2.0
    retry_max_seconds: float = 60.0
    external_timeout_seconds: float = 10.0
    default_input_timeout_seconds: float = 0.0
    max_steps_per_claim: int = 1000
    claim_lease_seconds: float = 300.0
    worker_count: int = 4
    sweep_interval_seconds: float = 1.0
    database_path: str = "chatflow.db"

    ENV_NAMES = {
        "max_attempts": "CHATFLOW_MAX_ATTEMPTS",
        "retry_base_seconds": "CHATFLOW_RETRY_BASE_SECONDS",
        "retry_max_seconds": "CHATFLOW_RETRY_MAX_SECONDS",
        "external_timeout_seconds": "CHATFLOW_EXTERNAL_TIMEOUT_SECONDS",
        "default_input_timeout_seconds": "CHATFLOW_INPUT_TIMEOUT_SECONDS",
        "max_steps_per_claim": "CHATFLOW_MAX_STEPS_PER_CLAIM",
        "claim_lease_seconds": "CHATFLOW_CLAIM_LEASE_SECONDS",
        "worker_count": "CHATFLOW_WORKERS",
        "sweep_interval_seconds": "CHATFLOW_SWEEP_INTERVAL_SECONDS",
        "database_path": "CHATFLOW_DATABASE_PATH",
    }

    @classmethod
    def from_env(cls, **overrides: Any) -> "EngineSettings":
        """Build settings from CHATFLOW_* environment variables.

        Unparseable values fall back to the defaults.
        """
        values: Dict[str, Any] = {}
        defaults = cls()
        for f in fields(cls):
            env_name = cls.ENV_NAMES.get(f.name)
            default = getattr(defaults, f.name)
            if env_name is None:
                continue
            if isinstance(default, str):
                values[f.name] = os.getenv(env_name, default)
            else:
                values[f.name] = _env_number(env_name, default)
        values.update(overrides)
        return cls(**values)

    def retry_delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based).

        attempt <= 0 -> 0s, 1 -> base, 2 -> 2*base, ... capped at retry_max_seconds.
        """
        if attempt <= 0:
            return 0.0
        delay = self.retry_base_seconds * (2 ** (attempt - 1))
        return min(delay, self.retry_max_seconds)
