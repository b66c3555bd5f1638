"""memoengine: memoization for Python functions and coroutines.

Wraps a computation so that calls with equivalent arguments are answered
from a cache, with an LRU size bound, TTL expiry, single-flight
deduplication of concurrent calls, and an identity-keyed weak mode whose
entries go away when their key objects are garbage collected.

Quick Start:
    >>> from memoengine import memoize
    >>> add = memoize(lambda a, b: a + b, max_size=2)
    >>> add(1, 2)
    3
    >>> add.stats().hits
    0

Decorator:
    >>> from memoengine import memoized
    >>> @memoized(ttl_seconds=1.0)
    ... async def fetch_user(user_id: int) -> dict:
    ...     return await api.get_user(user_id)

Weak Mode:
    >>> render = memoize(render_document, weak=True)
    >>> render(document)  # dropped once ``document`` is collected

Configuration:
    >>> from memoengine import MemoConfig
    >>> config = MemoConfig.load("memo.yaml", env_prefix="USERS_CACHE")
    >>> fetch = memoize(fetch_user, config)

Logging:
    >>> from memoengine import configure_logging, LoggingMemoHook
    >>> configure_logging(level="DEBUG")
    >>> fetch = memoize(fetch_user, hooks=[LoggingMemoHook()])

Available Components:
    - Façade: memoize, memoized, MemoizedFunction, AsyncMemoizedFunction
    - Configuration: MemoConfig, ExpirationMode, EnvReader, presets
    - Keys: StructuralKeyDeriver, CallableKeyDeriver, IdentityKeyDeriver
    - Storage and eviction: CacheStore, CacheEntry, EvictionPolicy
    - Concurrency: InFlightRegistry
    - Weak mode: WeakEntryTracker
    - Statistics: Stats
    - Hooks: MemoHook, LoggingMemoHook, MetricsMemoHook, CompositeMemoHook
    - Errors: MemoEngineError, ConfigurationError, KeyDerivationError
    - Logging: get_logger, configure_logging, LogContext
"""

__version__ = "0.1.0"

# =============================================================================
# Configuration
# =============================================================================
from memoengine.config import (
    DEFAULT_ENV_PREFIX,
    DEFAULT_MEMO_CONFIG,
    LARGE_MEMO_CONFIG,
    LONG_TTL_MEMO_CONFIG,
    SHORT_TTL_MEMO_CONFIG,
    SMALL_MEMO_CONFIG,
    EnvReader,
    ExpirationMode,
    MemoConfig,
    load_config_file,
)

# =============================================================================
# Eviction
# =============================================================================
from memoengine.eviction import (
    EvictionPolicy,
    EvictionReason,
    SizeBound,
    TimeBound,
)

# =============================================================================
# Exceptions
# =============================================================================
from memoengine.exceptions import (
    ConfigurationError,
    InvalidConfigValueError,
    KeyDerivationError,
    MemoEngineError,
    MissingConfigError,
)

# =============================================================================
# Hooks
# =============================================================================
from memoengine.hooks import (
    CompositeMemoHook,
    LoggingMemoHook,
    MemoHook,
    MetricsMemoHook,
)

# =============================================================================
# In-flight Registry
# =============================================================================
from memoengine.inflight import InFlightRegistry, PendingComputation, Role

# =============================================================================
# Keys
# =============================================================================
from memoengine.keys import (
    CallableKeyDeriver,
    IdentityKey,
    IdentityKeyDeriver,
    KeyDeriver,
    StructuralKeyDeriver,
    create_key_deriver,
)

# =============================================================================
# Logging
# =============================================================================
from memoengine.logging import (
    BufferingHandler,
    JSONFormatter,
    LogContext,
    LogLevel,
    MemoLogger,
    StdlibLoggerAdapter,
    StreamHandler,
    TextFormatter,
    configure_logging,
    get_logger,
)

# =============================================================================
# Façade
# =============================================================================
from memoengine.memoize import (
    AsyncMemoizedFunction,
    MemoizedFunction,
    memoize,
    memoized,
)

# =============================================================================
# Statistics
# =============================================================================
from memoengine.stats import Stats

# =============================================================================
# Store
# =============================================================================
from memoengine.store import CacheEntry, CacheStore

# =============================================================================
# Weak Mode
# =============================================================================
from memoengine.weak import WeakEntryTracker


# =============================================================================
# Public API
# =============================================================================

__all__ = [
    # Version
    "__version__",
    # Façade
    "AsyncMemoizedFunction",
    "MemoizedFunction",
    "memoize",
    "memoized",
    # Configuration
    "DEFAULT_ENV_PREFIX",
    "DEFAULT_MEMO_CONFIG",
    "LARGE_MEMO_CONFIG",
    "LONG_TTL_MEMO_CONFIG",
    "SHORT_TTL_MEMO_CONFIG",
    "SMALL_MEMO_CONFIG",
    "EnvReader",
    "ExpirationMode",
    "MemoConfig",
    "load_config_file",
    # Keys
    "CallableKeyDeriver",
    "IdentityKey",
    "IdentityKeyDeriver",
    "KeyDeriver",
    "StructuralKeyDeriver",
    "create_key_deriver",
    # Store
    "CacheEntry",
    "CacheStore",
    # Eviction
    "EvictionPolicy",
    "EvictionReason",
    "SizeBound",
    "TimeBound",
    # In-flight Registry
    "InFlightRegistry",
    "PendingComputation",
    "Role",
    # Weak Mode
    "WeakEntryTracker",
    # Statistics
    "Stats",
    # Hooks
    "CompositeMemoHook",
    "LoggingMemoHook",
    "MemoHook",
    "MetricsMemoHook",
    # Exceptions
    "ConfigurationError",
    "InvalidConfigValueError",
    "KeyDerivationError",
    "MemoEngineError",
    "MissingConfigError",
    # Logging
    "BufferingHandler",
    "JSONFormatter",
    "LogContext",
    "LogLevel",
    "MemoLogger",
    "StdlibLoggerAdapter",
    "StreamHandler",
    "TextFormatter",
    "configure_logging",
    "get_logger",
]
