"""
Three-state outcome container.

Every repository operation, every live query and the migration
request/response operations return a ``Result``:

- ``Success(value)`` carries the value
- ``Error(cause, message)`` carries the exception that ended the operation
- ``Loading()`` carries nothing; it marks a live query that has not produced
  its first value yet and is never terminal

``safe_call`` is the only place where exceptions are converted to values.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union

from .exceptions import ResultNotReadyError

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class Success(Generic[T]):
    """Completed operation with a value."""

    value: T

    @property
    def is_success(self) -> bool:
        return True

    @property
    def is_error(self) -> bool:
        return False

    @property
    def is_loading(self) -> bool:
        return False

    def map(self, transform: Callable[[T], R]) -> Success[R]:
        return Success(transform(self.value))

    def on_success(self, action: Callable[[T], Any]) -> Success[T]:
        action(self.value)
        return self

    def on_error(self, action: Callable[[Exception], Any]) -> Success[T]:
        return self

    def on_loading(self, action: Callable[[], Any]) -> Success[T]:
        return self

    def get_or_none(self) -> T:
        return self.value

    def get_or_throw(self) -> T:
        return self.value

    def exception_or_none(self) -> None:
        return None


@dataclass(frozen=True)
class Error:
    """Failed operation.

    ``message`` defaults to the text of ``cause``.
    """

    cause: Exception
    message: str = field(default="")

    def __post_init__(self) -> None:
        if not self.message:
            object.__setattr__(self, "message", str(self.cause) or type(self.cause).__name__)

    @property
    def is_success(self) -> bool:
        return False

    @property
    def is_error(self) -> bool:
        return True

    @property
    def is_loading(self) -> bool:
        return False

    def map(self, transform: Callable[[Any], Any]) -> Error:
        return Error(self.cause, self.message)

    def on_success(self, action: Callable[[Any], Any]) -> Error:
        return self

    def on_error(self, action: Callable[[Exception], Any]) -> Error:
        action(self.cause)
        return self

    def on_loading(self, action: Callable[[], Any]) -> Error:
        return self

    def get_or_none(self) -> None:
        return None

    def get_or_throw(self) -> Any:
        raise self.cause

    def exception_or_none(self) -> Exception:
        return self.cause


@dataclass(frozen=True)
class Loading:
    """Operation still in flight. Carries no payload."""

    @property
    def is_success(self) -> bool:
        return False

    @property
    def is_error(self) -> bool:
        return False

    @property
    def is_loading(self) -> bool:
        return True

    def map(self, transform: Callable[[Any], Any]) -> Loading:
        return self

    def on_success(self, action: Callable[[Any], Any]) -> Loading:
        return self

    def on_error(self, action: Callable[[Exception], Any]) -> Loading:
        return self

    def on_loading(self, action: Callable[[], Any]) -> Loading:
        action()
        return self

    def get_or_none(self) -> None:
        return None

    def get_or_throw(self) -> Any:
        raise ResultNotReadyError()

    def exception_or_none(self) -> None:
        return None


LOADING = Loading()

Result = Union[Success[T], Error, Loading]


async def safe_call(fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> Result[T]:
    """Await ``fn(*args, **kwargs)`` and wrap the outcome.

    Any ``Exception`` becomes an ``Error``; cancellation is not an
    ``Exception`` and still propagates.
    """
    try:
        return Success(await fn(*args, **kwargs))
    except Exception as e:
        return Error(e, str(e) or type(e).__name__)
