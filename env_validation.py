"""Environment variable validation and management."""

import os
import logging
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when environment variables are missing or invalid."""
    pass


DEFAULTS: Dict[str, str] = {
    "DB_PATH": "drill.db",
    "CATALOG_PATH": os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "catalog.json"),
    "ATTEMPTS_MAX": "5",
    "ATTEMPT_REGEN_MINUTES": "60",
    "SYNC_TIMEOUT": "5.0",
    "SYNC_MAX_ATTEMPTS": "3",
}

OPTIONAL_VARS: Dict[str, str] = {
    "SYNC_URL": "Reward ledger endpoint for currency sync",
    "SYNC_AUTH": "Authorization header for the reward ledger",
}

_POSITIVE_INTS = ("ATTEMPTS_MAX", "ATTEMPT_REGEN_MINUTES", "SYNC_MAX_ATTEMPTS")


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises ConfigurationError if validation fails.
    """
    for var, value in DEFAULTS.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    url = os.getenv("SYNC_URL")
    if url and not (url.startswith("http://") or url.startswith("https://")):
        raise ConfigurationError(f"Invalid URL format for SYNC_URL: {url}")

    for var in _POSITIVE_INTS:
        get_env_int(var, int(DEFAULTS[var]))
    get_env_float("SYNC_TIMEOUT", float(DEFAULTS["SYNC_TIMEOUT"]))

    seed = os.getenv("ENGINE_SEED")
    if seed:
        try:
            int(seed)
        except ValueError:
            raise ConfigurationError(f"ENGINE_SEED must be an integer, got {seed!r}") from None

    for var, description in OPTIONAL_VARS.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)


def get_env_int(name: str, default: int) -> int:
    """Get a positive integer from the environment."""
    value = os.getenv(name)
    if not value:
        return default
    try:
        parsed = int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None
    if parsed <= 0:
        raise ConfigurationError(f"{name} must be positive, got {parsed}")
    return parsed


def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        parsed = float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None
    if parsed <= 0:
        raise ConfigurationError(f"{name} must be positive, got {parsed}")
    return parsed


@dataclass(frozen=True)
class EngineConfig:
    db_path: str = DEFAULTS["DB_PATH"]
    catalog_path: str = DEFAULTS["CATALOG_PATH"]
    attempts_max: int = 5
    attempt_regen_minutes: int = 60
    sync_url: Optional[str] = None
    sync_auth: Optional[str] = None
    sync_timeout: float = 5.0
    sync_max_attempts: int = 3
    seed: Optional[int] = None

    @property
    def sync_enabled(self) -> bool:
        return bool(self.sync_url)


def load_config() -> EngineConfig:
    """Read the environment into an ``EngineConfig``."""
    seed = os.getenv("ENGINE_SEED")
    url = os.getenv("SYNC_URL") or None
    if url and not (url.startswith("http://") or url.startswith("https://")):
        raise ConfigurationError(f"Invalid URL format for SYNC_URL: {url}")
    try:
        seed_value = int(seed) if seed else None
    except ValueError:
        raise ConfigurationError(f"ENGINE_SEED must be an integer, got {seed!r}") from None
    return EngineConfig(
        db_path=os.getenv("DB_PATH") or DEFAULTS["DB_PATH"],
        catalog_path=os.getenv("CATALOG_PATH") or DEFAULTS["CATALOG_PATH"],
        attempts_max=get_env_int("ATTEMPTS_MAX", 5),
        attempt_regen_minutes=get_env_int("ATTEMPT_REGEN_MINUTES", 60),
        sync_url=url,
        sync_auth=os.getenv("SYNC_AUTH") or None,
        sync_timeout=get_env_float("SYNC_TIMEOUT", 5.0),
        sync_max_attempts=get_env_int("SYNC_MAX_ATTEMPTS", 3),
        seed=seed_value,
    )
