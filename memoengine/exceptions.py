"""Exception hierarchy for memoengine.

All engine-raised exceptions inherit from MemoEngineError so callers can
catch any engine failure at a single point. Errors raised by the wrapped
computation are never wrapped: they reach the caller (and every waiter on a
shared in-flight computation) as the very same exception object.

Exception Hierarchy:
    MemoEngineError (base)
    ├── ConfigurationError
    │   ├── InvalidConfigValueError
    │   └── MissingConfigError
    └── KeyDerivationError

Example:
    >>> try:
    ...     fetch_user(open("users.db"))
    ... except KeyDerivationError as e:
    ...     logger.warning(f"Uncacheable call: {e}")
    ... except MemoEngineError as e:
    ...     logger.error(f"Engine error: {e}")
"""

from __future__ import annotations

from typing import Any


class MemoEngineError(Exception):
    """Base exception for all memoengine errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional error context.
        cause: Optional original exception that caused this error.

    Example:
        >>> try:
        ...     raise MemoEngineError("Something went wrong", details={"key": "value"})
        ... except MemoEngineError as e:
        ...     print(f"Error: {e.message}, Details: {e.details}")
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error description.
            details: Optional dictionary with additional error context.
            cause: Optional original exception that caused this error.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        """Return string representation with details if present."""
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def __repr__(self) -> str:
        """Return detailed representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"details={self.details!r}, "
            f"cause={self.cause!r})"
        )

    def with_context(self, **kwargs: Any) -> MemoEngineError:
        """Create a new exception with additional context details.

        Args:
            **kwargs: Additional context to add to details.

        Returns:
            New exception instance with merged details.

        Example:
            >>> e = MemoEngineError("Error", details={"key": "value"})
            >>> e.with_context(cache_name="users").details
            {'key': 'value', 'cache_name': 'users'}
        """
        merged_details = {**self.details, **kwargs}
        return MemoEngineError(self.message, details=merged_details, cause=self.cause)


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(MemoEngineError):
    """Invalid memoization setup.

    Raised when a MemoizedFunction is constructed, never per call.

    Attributes:
        config_key: Optional key that caused the configuration error.
    """

    def __init__(
        self,
        message: str,
        *,
        config_key: str | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        """Initialize configuration error.

        Args:
            message: Human-readable error description.
            config_key: Optional key that caused the configuration error.
            details: Optional dictionary with additional error context.
            cause: Optional original exception that caused this error.
        """
        details = details or {}
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, details=details, cause=cause)
        self.config_key = config_key


class InvalidConfigValueError(ConfigurationError):
    """A configuration value failed validation.

    Attributes:
        config_key: The configuration key with invalid value.
        value: The invalid value that was provided.
        expected: Description of what was expected.
    """

    def __init__(
        self,
        message: str,
        *,
        config_key: str,
        value: Any = None,
        expected: str | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        """Initialize invalid config value error.

        Args:
            message: Human-readable error description.
            config_key: The configuration key with invalid value.
            value: The invalid value that was provided.
            expected: Description of what was expected.
            details: Optional dictionary with additional error context.
            cause: Optional original exception that caused this error.
        """
        details = details or {}
        details["value"] = value
        if expected:
            details["expected"] = expected
        super().__init__(message, config_key=config_key, details=details, cause=cause)
        self.value = value
        self.expected = expected


class MissingConfigError(ConfigurationError):
    """A required configuration key is not provided."""

    def __init__(
        self,
        config_key: str,
        *,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        """Initialize missing config error.

        Args:
            config_key: The missing configuration key.
            details: Optional dictionary with additional error context.
            cause: Optional original exception that caused this error.
        """
        super().__init__(
            f"Missing required configuration: {config_key}",
            config_key=config_key,
            details=details,
            cause=cause,
        )


# =============================================================================
# Key Derivation Errors
# =============================================================================


class KeyDerivationError(MemoEngineError):
    """A cache key could not be derived for a call.

    Raised by a failing custom key function, by arguments that have no
    canonical serialization, or by a weak-mode call whose first argument
    cannot be weakly referenced. The call fails; the cache is untouched.

    Attributes:
        argument_type: Name of the offending argument type, if known.
    """

    def __init__(
        self,
        message: str,
        *,
        argument_type: str | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        """Initialize key derivation error.

        Args:
            message: Human-readable error description.
            argument_type: Name of the offending argument type.
            details: Optional dictionary with additional error context.
            cause: Optional original exception that caused this error.
        """
        details = details or {}
        if argument_type:
            details["argument_type"] = argument_type
        super().__init__(message, details=details, cause=cause)
        self.argument_type = argument_type
