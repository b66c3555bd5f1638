"""Configuration for memoized functions.

MemoConfig is immutable: it is fixed when a MemoizedFunction is created and
never changes afterwards. Builder methods return modified copies.

Configuration can also come from the environment or a JSON/YAML file, which
is useful when cache sizes and lifetimes are deployment concerns rather
than code concerns.

Configuration Precedence (highest to lowest) for ``MemoConfig.load``:
    1. Environment variables
    2. Configuration file
    3. Default values

Example:
    >>> from memoengine.config import MemoConfig
    >>> config = MemoConfig(max_size=500, ttl_seconds=30.0)
    >>> config.with_ttl(60.0).ttl_seconds
    60.0
    >>> MemoConfig.load("memo.yaml", env_prefix="USERS_CACHE")
"""

from __future__ import annotations

import dataclasses
import json
import math
import os
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Any, Self

import yaml

from memoengine.exceptions import (
    ConfigurationError,
    InvalidConfigValueError,
    MissingConfigError,
)


if TYPE_CHECKING:
    from collections.abc import Callable, Hashable


# =============================================================================
# Constants
# =============================================================================

DEFAULT_ENV_PREFIX = "MEMOENGINE"


# =============================================================================
# Enums
# =============================================================================


class ExpirationMode(Enum):
    """How ``ttl_seconds`` is measured.

    Attributes:
        ABSOLUTE: Entries expire ``ttl_seconds`` after they were written.
        SLIDING: Every hit pushes the expiry ``ttl_seconds`` into the future.
    """

    ABSOLUTE = auto()
    SLIDING = auto()


# =============================================================================
# Environment Variable Utilities
# =============================================================================


class EnvReader:
    """Typed accessors for prefixed environment variables.

    Example:
        >>> reader = EnvReader(prefix="MEMOENGINE")
        >>> reader.get_int("MAX_SIZE", default=128)  # reads MEMOENGINE_MAX_SIZE
    """

    def __init__(self, prefix: str = DEFAULT_ENV_PREFIX) -> None:
        self.prefix = prefix

    def _make_key(self, name: str) -> str:
        if self.prefix:
            return f"{self.prefix}_{name}"
        return name

    def get(self, name: str, default: str | None = None) -> str | None:
        """Get a string environment variable."""
        return os.environ.get(self._make_key(name), default)

    def get_required(self, name: str) -> str:
        """Get a required string environment variable.

        Raises:
            MissingConfigError: If variable is not set.
        """
        key = self._make_key(name)
        value = os.environ.get(key)
        if value is None:
            raise MissingConfigError(key)
        return value

    def get_int(self, name: str, default: int | None = None) -> int | None:
        """Get an integer environment variable.

        Raises:
            InvalidConfigValueError: If value cannot be parsed as int.
        """
        value = self.get(name)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid integer value for {self._make_key(name)}",
                config_key=self._make_key(name),
                value=value,
                expected="integer",
                cause=e,
            ) from e

    def get_float(self, name: str, default: float | None = None) -> float | None:
        """Get a float environment variable.

        Raises:
            InvalidConfigValueError: If value cannot be parsed as float.
        """
        value = self.get(name)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid float value for {self._make_key(name)}",
                config_key=self._make_key(name),
                value=value,
                expected="float",
                cause=e,
            ) from e

    def get_bool(self, name: str, default: bool | None = None) -> bool | None:
        """Get a boolean environment variable.

        Truthy values: "1", "true", "yes", "on" (case-insensitive)
        Falsy values: "0", "false", "no", "off" (case-insensitive)

        Raises:
            InvalidConfigValueError: If value cannot be parsed as bool.
        """
        value = self.get(name)
        if value is None:
            return default
        lower_value = value.lower()
        if lower_value in ("1", "true", "yes", "on"):
            return True
        if lower_value in ("0", "false", "no", "off"):
            return False
        raise InvalidConfigValueError(
            f"Invalid boolean value for {self._make_key(name)}",
            config_key=self._make_key(name),
            value=value,
            expected="boolean (1/0, true/false, yes/no, on/off)",
        )


# =============================================================================
# File Configuration Utilities
# =============================================================================


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open() as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse YAML configuration: {path}",
            details={"path": str(path)},
            cause=e,
        ) from e


def _load_json(path: Path) -> dict[str, Any]:
    try:
        with path.open() as f:
            data = json.load(f)
            return data if isinstance(data, dict) else {}
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Failed to parse JSON configuration: {path}",
            details={"path": str(path)},
            cause=e,
        ) from e


def load_config_file(path: Path) -> dict[str, Any]:
    """Load configuration from a JSON or YAML file.

    Raises:
        ConfigurationError: If the file is missing, malformed or of an
            unsupported type.
    """
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {path}",
            details={"path": str(path)},
        )

    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        return _load_yaml(path)
    if suffix == ".json":
        return _load_json(path)
    raise ConfigurationError(
        f"Unsupported configuration file format: {suffix}",
        details={"path": str(path), "suffix": suffix},
    )


# =============================================================================
# Memo Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class MemoConfig:
    """Configuration of a memoized function.

    Attributes:
        max_size: Maximum number of cached entries (LRU bound). None means
            unbounded.
        ttl_seconds: Lifetime of an entry in seconds. None means entries
            never expire.
        key_fn: Custom key function called with the call's arguments; it
            must return a hashable key. Mutually exclusive with ``weak``.
        weak: Key entries on the identity of the first argument and drop
            them once that object is garbage collected.
        expiration: ABSOLUTE (default) or SLIDING TTL semantics.
        hash_keys: Replace structural keys with their SHA-256 digest, which
            bounds key memory for large arguments.
        name: Cache name used in logs and hook context. Defaults to the
            wrapped function's qualified name.

    Example:
        >>> config = MemoConfig(max_size=2)
        >>> config.with_ttl(1.0).to_dict()["ttl_seconds"]
        1.0
    """

    max_size: int | None = None
    ttl_seconds: float | None = None
    key_fn: Callable[..., Hashable] | None = None
    weak: bool = False
    expiration: ExpirationMode = ExpirationMode.ABSOLUTE
    hash_keys: bool = False
    name: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_size is not None and (
            isinstance(self.max_size, bool) or not isinstance(self.max_size, int)
        ):
            raise InvalidConfigValueError(
                "max_size must be an integer",
                config_key="max_size",
                value=self.max_size,
                expected="integer >= 1 or None",
            )
        if self.max_size is not None and self.max_size < 1:
            raise InvalidConfigValueError(
                "max_size must be at least 1; a cache that can hold nothing cannot evict",
                config_key="max_size",
                value=self.max_size,
                expected="integer >= 1 or None",
            )
        if self.ttl_seconds is not None and (
            not math.isfinite(self.ttl_seconds) or self.ttl_seconds <= 0
        ):
            raise InvalidConfigValueError(
                "ttl_seconds must be a finite positive number if specified",
                config_key="ttl_seconds",
                value=self.ttl_seconds,
                expected="finite positive number or None",
            )
        if self.key_fn is not None and not callable(self.key_fn):
            raise InvalidConfigValueError(
                "key_fn must be callable",
                config_key="key_fn",
                value=self.key_fn,
                expected="callable",
            )
        if self.weak and self.key_fn is not None:
            raise ConfigurationError(
                "weak mode keys on argument identity and cannot be combined with key_fn",
                config_key="weak",
            )
        if self.weak and self.hash_keys:
            raise ConfigurationError(
                "weak mode keys on argument identity and cannot be combined with hash_keys",
                config_key="weak",
            )
        if self.expiration is ExpirationMode.SLIDING and self.ttl_seconds is None:
            raise ConfigurationError(
                "sliding expiration requires ttl_seconds",
                config_key="expiration",
            )

    @property
    def is_bounded(self) -> bool:
        """Whether memory use is bounded by size or time."""
        return self.max_size is not None or self.ttl_seconds is not None

    def with_max_size(self, max_size: int | None) -> MemoConfig:
        """Create config with new max_size."""
        return dataclasses.replace(self, max_size=max_size)

    def with_ttl(self, ttl_seconds: float | None) -> MemoConfig:
        """Create config with new TTL."""
        return dataclasses.replace(self, ttl_seconds=ttl_seconds)

    def with_expiration(self, expiration: ExpirationMode) -> MemoConfig:
        """Create config with new expiration mode."""
        return dataclasses.replace(self, expiration=expiration)

    def with_key_fn(self, key_fn: Callable[..., Hashable] | None) -> MemoConfig:
        """Create config with a custom key function."""
        return dataclasses.replace(self, key_fn=key_fn)

    def with_weak(self, weak: bool = True) -> MemoConfig:
        """Create config with weak mode toggled."""
        return dataclasses.replace(self, weak=weak)

    def with_name(self, name: str) -> MemoConfig:
        """Create config with a name."""
        return dataclasses.replace(self, name=name)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization.

        ``key_fn`` is code, not data, and is left out.
        """
        return {
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "weak": self.weak,
            "expiration": self.expiration.name,
            "hash_keys": self.hash_keys,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create MemoConfig from dictionary.

        Raises:
            InvalidConfigValueError: If ``expiration`` names an unknown mode.
        """
        expiration_name = str(data.get("expiration", "ABSOLUTE")).upper()
        try:
            expiration = ExpirationMode[expiration_name]
        except KeyError as e:
            raise InvalidConfigValueError(
                f"Unknown expiration mode: {data.get('expiration')}",
                config_key="expiration",
                value=data.get("expiration"),
                expected="ABSOLUTE or SLIDING",
                cause=e,
            ) from e

        ttl_seconds = data.get("ttl_seconds")
        return cls(
            max_size=data.get("max_size"),
            ttl_seconds=float(ttl_seconds) if ttl_seconds is not None else None,
            weak=bool(data.get("weak", False)),
            expiration=expiration,
            hash_keys=bool(data.get("hash_keys", False)),
            name=data.get("name"),
        )

    @classmethod
    def from_env(cls, prefix: str = DEFAULT_ENV_PREFIX) -> Self:
        """Create configuration from environment variables.

        Environment Variables:
            {PREFIX}_MAX_SIZE: Maximum number of entries (int)
            {PREFIX}_TTL_SECONDS: Entry lifetime in seconds (float)
            {PREFIX}_WEAK: Weak mode (bool)
            {PREFIX}_EXPIRATION: ABSOLUTE or SLIDING
            {PREFIX}_HASH_KEYS: Hash structural keys (bool)
            {PREFIX}_NAME: Cache name
        """
        return cls.from_dict(_read_env(EnvReader(prefix)))

    @classmethod
    def from_file(cls, path: Path | str) -> Self:
        """Create configuration from a JSON or YAML file."""
        return cls.from_dict(load_config_file(Path(path)))

    @classmethod
    def load(
        cls,
        config_file: Path | str | None = None,
        env_prefix: str = DEFAULT_ENV_PREFIX,
    ) -> Self:
        """Load a file (if given) and apply environment overrides on top."""
        data: dict[str, Any] = {}
        if config_file is not None:
            data.update(load_config_file(Path(config_file)))
        data.update(_read_env(EnvReader(env_prefix)))
        return cls.from_dict(data)


def _read_env(env: EnvReader) -> dict[str, Any]:
    """Collect the variables that are actually set."""
    values: dict[str, Any] = {
        "max_size": env.get_int("MAX_SIZE"),
        "ttl_seconds": env.get_float("TTL_SECONDS"),
        "weak": env.get_bool("WEAK"),
        "expiration": env.get("EXPIRATION"),
        "hash_keys": env.get_bool("HASH_KEYS"),
        "name": env.get("NAME"),
    }
    return {key: value for key, value in values.items() if value is not None}


# Default configurations for common use cases
DEFAULT_MEMO_CONFIG = MemoConfig()

# Small, short-lived cache for hot lookups
SMALL_MEMO_CONFIG = MemoConfig(max_size=100, ttl_seconds=60.0)

# Large cache for stable data
LARGE_MEMO_CONFIG = MemoConfig(max_size=10000, ttl_seconds=3600.0)

# Short-lived cache for transient data
SHORT_TTL_MEMO_CONFIG = MemoConfig(max_size=500, ttl_seconds=30.0)

# Long-lived cache for reference data
LONG_TTL_MEMO_CONFIG = MemoConfig(max_size=1000, ttl_seconds=86400.0)  # 24 hours
