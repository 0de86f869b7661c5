"""Discriminated result type for calls into external providers.

Provider clients return ``Ok(value)`` or ``Err(error)`` instead of raising,
so callers have to look at ``result.ok`` before touching the payload:

    result = await carrier.track_shipment(number)
    if not result.ok:
        raise NotFoundError(result.error.message)
    tracking = result.value
"""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from libs.common.errors import ExternalServiceError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    error: ExternalServiceError

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self):
        raise self.error


Result = Union[Ok[T], Err]
