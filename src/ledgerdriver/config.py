"""Driver configuration.

``DriverConfig`` is an immutable, validated set of driver settings. It can be
built directly, or loaded from a dictionary, environment variables or a
configuration file:

    DriverConfig.from_file("ledger.yaml")
            |
            +---> FileConfigSource (YAML, JSON, TOML)
            +---> EnvConfigSource (LEDGERDRIVER_* variables, override file)
            |
            v
        DriverConfig.from_dict(merged)

Example (YAML):
    ledger_name: vehicle-registration
    max_concurrent_transactions: 10
    pool_timeout: 0.001
    retry:
      max_retries: 4
      sleep_base_ms: 10
      sleep_cap_ms: 5000

Environment variables use ``__`` for nesting:
    LEDGERDRIVER_LEDGER_NAME=vehicle-registration
    LEDGERDRIVER_RETRY__MAX_RETRIES=2
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ledgerdriver.common.resilience.config import RetryPolicy
from ledgerdriver.common.resilience.retry import ExponentialBackoff
from ledgerdriver.errors import LedgerDriverError

logger = logging.getLogger(__name__)

DEFAULT_ENV_PREFIX = "LEDGERDRIVER"


# =============================================================================
# Exceptions
# =============================================================================


class ConfigError(LedgerDriverError):
    """Base configuration error."""

    pass


class ConfigSourceError(ConfigError):
    """A configuration source could not be read."""

    pass


# =============================================================================
# Configuration Sources
# =============================================================================


class ConfigSource(ABC):
    """Abstract base class for configuration sources."""

    @abstractmethod
    def load(self) -> dict[str, Any]:
        """Load configuration from source.

        Returns:
            Dictionary of configuration values.
        """
        pass


class EnvConfigSource(ConfigSource):
    """Environment variable configuration source.

    Example:
        LEDGERDRIVER_LEDGER_NAME=vehicles
        LEDGERDRIVER_RETRY__MAX_RETRIES=2

        Will produce:
        {"ledger_name": "vehicles", "retry": {"max_retries": 2}}
    """

    def __init__(
        self,
        prefix: str = DEFAULT_ENV_PREFIX,
        separator: str = "__",
        environ: dict[str, str] | None = None,
    ) -> None:
        """Initialize environment source.

        Args:
            prefix: Environment variable prefix, without trailing underscore.
            separator: Separator for nested keys.
            environ: Mapping to read instead of ``os.environ``.
        """
        self._prefix = f"{prefix.rstrip('_')}_"
        self._separator = separator
        self._environ = environ

    def load(self) -> dict[str, Any]:
        """Load configuration from environment."""
        environ = os.environ if self._environ is None else self._environ
        result: dict[str, Any] = {}

        for key, value in environ.items():
            if not key.startswith(self._prefix):
                continue
            parts = key[len(self._prefix) :].lower().split(self._separator)

            current = result
            for part in parts[:-1]:
                current = current.setdefault(part, {})
            current[parts[-1]] = self._parse_value(value)

        return result

    def _parse_value(self, value: str) -> Any:
        """Parse string value to appropriate type."""
        # Number
        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        # Boolean
        if value.lower() in ("true", "yes", "on"):
            return True
        if value.lower() in ("false", "no", "off"):
            return False

        # None
        if value.lower() in ("null", "none", ""):
            return None

        # JSON array/object
        if value.startswith(("[", "{")):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        return value


class FileConfigSource(ConfigSource):
    """File-based configuration source.

    Supports YAML, JSON, and TOML formats, detected from the file extension.
    """

    def __init__(self, path: str | Path, *, required: bool = True) -> None:
        """Initialize file source.

        Args:
            path: Path to configuration file.
            required: Raise error if file not found.
        """
        self._path = Path(path)
        self._required = required

    def load(self) -> dict[str, Any]:
        """Load configuration from file."""
        if not self._path.exists():
            if self._required:
                raise ConfigSourceError(f"Configuration file not found: {self._path}")
            return {}

        content = self._path.read_text(encoding="utf-8")
        suffix = self._path.suffix.lower()

        try:
            if suffix in (".yaml", ".yml"):
                loaded = yaml.safe_load(content) or {}
            elif suffix == ".json":
                loaded = json.loads(content)
            elif suffix == ".toml":
                loaded = tomllib.loads(content)
            else:
                raise ConfigSourceError(f"Unsupported file format: {suffix}")
        except (yaml.YAMLError, json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
            raise ConfigSourceError(f"Failed to load config {self._path}: {e}") from e

        if not isinstance(loaded, dict):
            raise ConfigSourceError(f"Configuration root must be a mapping: {self._path}")
        return loaded


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# =============================================================================
# Driver Configuration
# =============================================================================


@dataclass(frozen=True)
class DriverConfig:
    """Configuration for ``LedgerDriver`` and ``AsyncLedgerDriver``.

    Attributes:
        ledger_name: Name of the ledger every session is opened on.
        max_concurrent_transactions: Pool capacity and permit count.
        pool_timeout: Seconds to wait for a permit before
            ``SessionPoolEmptyError``.
        retry_policy: Default retry policy for ``execute``.
    """

    DEFAULT_MAX_CONCURRENT_TRANSACTIONS = 50
    DEFAULT_POOL_TIMEOUT = 0.001

    ledger_name: str
    max_concurrent_transactions: int = DEFAULT_MAX_CONCURRENT_TRANSACTIONS
    pool_timeout: float = DEFAULT_POOL_TIMEOUT
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy.default)

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not isinstance(self.ledger_name, str) or not self.ledger_name:
            raise ValueError("ledger_name must not be None or empty")
        if self.max_concurrent_transactions <= 0:
            raise ValueError("max_concurrent_transactions must be positive")
        if self.pool_timeout < 0:
            raise ValueError("pool_timeout must not be negative")

    @classmethod
    def no_retry(cls, ledger_name: str) -> "DriverConfig":
        """Defaults, but every unit of work gets a single attempt."""
        return cls(ledger_name=ledger_name, retry_policy=RetryPolicy.no_retry())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DriverConfig":
        """Build a configuration from a (possibly nested) dictionary."""
        retry = data.get("retry") or {}
        backoff = ExponentialBackoff(
            sleep_base_ms=int(retry.get("sleep_base_ms", ExponentialBackoff.DEFAULT_SLEEP_BASE_MS)),
            sleep_cap_ms=int(retry.get("sleep_cap_ms", ExponentialBackoff.DEFAULT_SLEEP_CAP_MS)),
        )
        retry_policy = RetryPolicy(
            max_retries=int(retry.get("max_retries", RetryPolicy.DEFAULT_MAX_RETRIES)),
            backoff=backoff,
        )

        return cls(
            ledger_name=str(data.get("ledger_name") or ""),
            max_concurrent_transactions=int(
                data.get("max_concurrent_transactions", cls.DEFAULT_MAX_CONCURRENT_TRANSACTIONS)
            ),
            pool_timeout=float(data.get("pool_timeout", cls.DEFAULT_POOL_TIMEOUT)),
            retry_policy=retry_policy,
        )

    @classmethod
    def from_env(
        cls,
        prefix: str = DEFAULT_ENV_PREFIX,
        environ: dict[str, str] | None = None,
    ) -> "DriverConfig":
        """Build a configuration from ``<prefix>_*`` environment variables."""
        return cls.from_dict(EnvConfigSource(prefix, environ=environ).load())

    @classmethod
    def from_file(
        cls,
        path: str | Path,
        *,
        env_prefix: str | None = DEFAULT_ENV_PREFIX,
        environ: dict[str, str] | None = None,
    ) -> "DriverConfig":
        """Load a configuration file, with environment variables on top.

        Args:
            path: YAML, JSON or TOML file.
            env_prefix: Prefix of overriding variables; None disables them.
            environ: Mapping to read instead of ``os.environ``.
        """
        data = FileConfigSource(path).load()
        if env_prefix is not None:
            data = _merge(data, EnvConfigSource(env_prefix, environ=environ).load())
        logger.debug(f"Loaded driver configuration from {path}")
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a dictionary ``from_dict`` accepts."""
        data: dict[str, Any] = {
            "ledger_name": self.ledger_name,
            "max_concurrent_transactions": self.max_concurrent_transactions,
            "pool_timeout": self.pool_timeout,
            "retry": {"max_retries": self.retry_policy.max_retries},
        }
        backoff = self.retry_policy.backoff
        if isinstance(backoff, ExponentialBackoff):
            data["retry"]["sleep_base_ms"] = backoff.sleep_base_ms
            data["retry"]["sleep_cap_ms"] = backoff.sleep_cap_ms
        return data


__all__ = [
    "ConfigError",
    "ConfigSourceError",
    "ConfigSource",
    "EnvConfigSource",
    "FileConfigSource",
    "DriverConfig",
]
