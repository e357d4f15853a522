"""Typed outcomes returned by the ranking and participation services."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar, Union

from .loader import ConstraintViolation, RecordNotFound, StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    ok = True


@dataclass(frozen=True)
class NotFound:
    reason: str

    ok = False


@dataclass(frozen=True)
class ValidationFailure:
    """The request was understood but violates a rule (state, uniqueness...)."""

    reason: str
    conflict: bool = False

    ok = False


@dataclass(frozen=True)
class TransientFailure:
    """The store could not be reached; the caller may retry."""

    reason: str

    ok = False


Result = Union[Ok[Any], NotFound, ValidationFailure, TransientFailure]


def capture(description: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Result:
    """Run a store-backed operation and fold its failures into a result."""
    try:
        return Ok(func(*args, **kwargs))
    except RecordNotFound as exc:
        return NotFound(str(exc))
    except ConstraintViolation as exc:
        return ValidationFailure(str(exc), conflict=exc.conflict)
    except StoreUnavailable as exc:
        logger.warning("%s failed: %s", description, exc)
        return TransientFailure(str(exc))
