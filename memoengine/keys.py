"""Cache key derivation.

A key deriver turns the arguments of a call into a hashable cache key. Two
calls whose arguments are equal by the deriver's notion of equality must
produce equal keys, and derivation never has side effects.

Strategies:
    - StructuralKeyDeriver: canonical serialization of plain data (default)
    - CallableKeyDeriver: user-supplied key function
    - IdentityKeyDeriver: identity of the first argument (weak mode)

Example:
    >>> deriver = StructuralKeyDeriver()
    >>> deriver.derive((1, {"b": 2, "a": 1}), {}) == deriver.derive((1, {"a": 1, "b": 2}), {})
    True
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import decimal
import enum
import hashlib
import inspect
import json
import math
import types
import typing
import uuid
import weakref
from abc import abstractmethod
from pathlib import PurePath
from typing import (
    TYPE_CHECKING,
    Any,
    NamedTuple,
    Protocol,
    runtime_checkable,
)

from memoengine.exceptions import ConfigurationError, KeyDerivationError


if TYPE_CHECKING:
    from collections.abc import Callable, Hashable

    from memoengine.config import MemoConfig


# Types whose instances cannot be weakly referenced; a weak-mode function
# annotated with one of these as its first parameter can never be cached.
_NON_WEAKREFABLE_TYPES: tuple[type, ...] = (int, float, complex, str, bytes, bool, tuple, type(None))

# Value types whose str() is a stable, lossless identity.
_STR_VALUE_TYPES: tuple[type, ...] = (
    decimal.Decimal,
    dt.datetime,
    dt.date,
    dt.time,
    dt.timedelta,
    uuid.UUID,
    PurePath,
)


@runtime_checkable
class KeyDeriver(Protocol):
    """Protocol for cache key derivation strategies."""

    @abstractmethod
    def derive(self, args: tuple[Any, ...], kwargs: dict[str, Any]) -> Hashable:
        """Derive the cache key for one call.

        Args:
            args: Positional arguments of the call.
            kwargs: Keyword arguments of the call.

        Returns:
            A hashable cache key.

        Raises:
            KeyDerivationError: If no key can be derived for these arguments.
        """
        ...


# =============================================================================
# Structural Keys
# =============================================================================


class StructuralKeyDeriver:
    """Derive keys from a canonical serialization of the arguments.

    Argument order and deep value equality decide key equality. Containers
    are tagged so that ``(1, 2)``, ``[1, 2]`` and ``{1, 2}`` stay distinct,
    and dict and set contents are ordered canonically so insertion order
    never matters. ``True`` and ``1`` produce different keys, as do ``1``
    and ``1.0``.

    Values with no canonical form (open files, sockets, arbitrary objects)
    raise KeyDerivationError; memoize such functions with a ``key_fn`` or
    in weak mode instead.
    """

    def __init__(self, hash_keys: bool = False) -> None:
        """Initialize structural key deriver.

        Args:
            hash_keys: Return the SHA-256 hex digest of the serialization
                instead of the serialization itself.
        """
        self.hash_keys = hash_keys

    def derive(self, args: tuple[Any, ...], kwargs: dict[str, Any]) -> str:
        active: set[int] = set()
        payload: list[Any] = [self._canonical(arg, active) for arg in args]
        if kwargs:
            payload.append(
                {"$kwargs": [[name, self._canonical(kwargs[name], active)] for name in sorted(kwargs)]}
            )
        serialized = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
        if self.hash_keys:
            return hashlib.sha256(serialized.encode()).hexdigest()
        return serialized

    def _canonical(self, value: Any, active: set[int]) -> Any:
        # bool before int: bool is an int subclass.
        if value is None or isinstance(value, (bool, str)):
            return value
        if isinstance(value, enum.Enum):
            return {"$enum": f"{type(value).__module__}.{type(value).__qualname__}.{value.name}"}
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            if math.isnan(value) or math.isinf(value):
                return {"$float": repr(value)}
            if value == 0:
                # -0.0 == 0.0
                value = 0.0
            return {"$float": value.hex()}
        if isinstance(value, (bytes, bytearray)):
            return {"$bytes": bytes(value).hex()}
        if isinstance(value, _STR_VALUE_TYPES):
            return {"$value": f"{type(value).__module__}.{type(value).__qualname__}", "v": str(value)}

        if isinstance(value, (list, tuple, dict, set, frozenset)) or (
            dataclasses.is_dataclass(value) and not isinstance(value, type)
        ):
            marker = id(value)
            if marker in active:
                raise KeyDerivationError(
                    "Cannot derive a cache key for a self-referencing argument",
                    argument_type=type(value).__name__,
                )
            active.add(marker)
            try:
                return self._canonical_container(value, active)
            finally:
                active.discard(marker)

        raise KeyDerivationError(
            f"Cannot derive a cache key for argument of type {type(value).__name__}; "
            "pass key_fn or use weak mode",
            argument_type=type(value).__name__,
        )

    def _canonical_container(self, value: Any, active: set[int]) -> Any:
        if isinstance(value, list):
            return {"$list": [self._canonical(item, active) for item in value]}
        if isinstance(value, tuple):
            items = [self._canonical(item, active) for item in value]
            if hasattr(value, "_fields"):
                return {"$namedtuple": type(value).__qualname__, "items": items}
            return {"$tuple": items}
        if isinstance(value, dict):
            pairs = [[self._canonical(k, active), self._canonical(v, active)] for k, v in value.items()]
            pairs.sort(key=_sort_token)
            return {"$dict": pairs}
        if isinstance(value, (set, frozenset)):
            items = [self._canonical(item, active) for item in value]
            items.sort(key=_sort_token)
            return {"$set": items}
        fields = {
            f.name: self._canonical(getattr(value, f.name), active)
            for f in dataclasses.fields(value)
            if f.compare
        }
        return {"$dataclass": f"{type(value).__module__}.{type(value).__qualname__}", "fields": fields}


def _sort_token(item: Any) -> str:
    return json.dumps(item, separators=(",", ":"), sort_keys=True)


# =============================================================================
# Custom Keys
# =============================================================================


class CallableKeyDeriver:
    """Derive keys with a user-supplied function.

    The function receives the call's arguments unchanged, e.g. for
    ``fetch(user)`` a key function ``lambda user: user.id``.
    """

    def __init__(self, key_fn: Callable[..., Hashable]) -> None:
        self._key_fn = key_fn

    def derive(self, args: tuple[Any, ...], kwargs: dict[str, Any]) -> Hashable:
        try:
            key = self._key_fn(*args, **kwargs)
        except Exception as e:
            raise KeyDerivationError(
                f"key_fn raised {type(e).__name__}: {e}",
                details={"key_fn": _describe(self._key_fn)},
                cause=e,
            ) from e
        try:
            hash(key)
        except TypeError as e:
            raise KeyDerivationError(
                f"key_fn returned an unhashable {type(key).__name__}",
                argument_type=type(key).__name__,
                details={"key_fn": _describe(self._key_fn)},
                cause=e,
            ) from e
        return key


# =============================================================================
# Identity Keys
# =============================================================================


class IdentityKey(NamedTuple):
    """Cache key for weak mode.

    Attributes:
        object_id: ``id()`` of the first argument.
        rest: Structural key of the remaining arguments, or None when the
            first argument is the only one.
    """

    object_id: int
    rest: str | None = None


class IdentityKeyDeriver:
    """Derive keys from the identity of the first positional argument.

    Two distinct objects with equal contents derive different keys. Any
    further arguments are folded in structurally, so ``render(doc, "html")``
    and ``render(doc, "pdf")`` are cached separately for the same ``doc``.
    """

    def __init__(self) -> None:
        self._rest_deriver = StructuralKeyDeriver()

    def validate(self, func: Callable[..., Any]) -> None:
        """Check at setup time that ``func`` can be memoized in weak mode.

        Raises:
            ConfigurationError: If ``func`` takes no positional argument, or
                its first parameter is annotated with a type that cannot be
                weakly referenced.
        """
        try:
            signature = inspect.signature(func)
        except (TypeError, ValueError):
            return

        positional = [
            p
            for p in signature.parameters.values()
            if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD, p.VAR_POSITIONAL)
        ]
        if not positional:
            raise ConfigurationError(
                f"weak mode requires {_describe(func)} to take a positional argument",
                config_key="weak",
            )

        first = positional[0]
        if first.kind is first.VAR_POSITIONAL:
            return
        annotation = _resolve_annotation(func, first.name, first.annotation)
        if _is_non_weakrefable_type(annotation):
            raise ConfigurationError(
                f"weak mode keys on the first argument, but {_describe(func)} declares "
                f"'{first.name}: {annotation.__name__}', which cannot be weakly referenced",
                config_key="weak",
                details={"parameter": first.name, "annotation": annotation.__name__},
            )

    def derive(self, args: tuple[Any, ...], kwargs: dict[str, Any]) -> IdentityKey:
        if not args:
            raise KeyDerivationError("weak mode requires the key object as first positional argument")
        key_object = args[0]
        try:
            weakref.ref(key_object)
        except TypeError as e:
            raise KeyDerivationError(
                f"weak mode cannot track an argument of type {type(key_object).__name__}",
                argument_type=type(key_object).__name__,
                cause=e,
            ) from e

        rest = self._rest_deriver.derive(args[1:], kwargs) if (len(args) > 1 or kwargs) else None
        return IdentityKey(id(key_object), rest)


# =============================================================================
# Factory
# =============================================================================


def create_key_deriver(config: MemoConfig) -> KeyDeriver:
    """Pick the key deriver a configuration asks for."""
    if config.weak:
        return IdentityKeyDeriver()
    if config.key_fn is not None:
        return CallableKeyDeriver(config.key_fn)
    return StructuralKeyDeriver(hash_keys=config.hash_keys)


def _describe(func: Callable[..., Any]) -> str:
    return getattr(func, "__qualname__", None) or repr(func)


def _is_non_weakrefable_type(annotation: Any) -> bool:
    # Parameterized generics such as list[int] are not classes.
    if not isinstance(annotation, type) or isinstance(annotation, types.GenericAlias):
        return False
    return issubclass(annotation, _NON_WEAKREFABLE_TYPES)


def _resolve_annotation(func: Callable[..., Any], name: str, annotation: Any) -> Any:
    if annotation is inspect.Parameter.empty:
        return None
    if not isinstance(annotation, str):
        return annotation
    try:
        return typing.get_type_hints(func).get(name)
    except Exception:
        # Unresolvable forward references cannot be checked at setup.
        return None
