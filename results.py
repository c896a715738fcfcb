from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class LookupStatus(str, Enum):
    found = "found"
    not_found = "not_found"
    upstream_failure = "upstream_failure"


@dataclass(frozen=True)
class Lookup(Generic[T]):
    status: LookupStatus
    value: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def found(cls, value: T) -> "Lookup[T]":
        return cls(LookupStatus.found, value=value)

    @classmethod
    def not_found(cls, error: Optional[str] = None) -> "Lookup[T]":
        return cls(LookupStatus.not_found, error=error)

    @classmethod
    def failed(cls, error: str) -> "Lookup[T]":
        return cls(LookupStatus.upstream_failure, error=error)

    @property
    def ok(self) -> bool:
        return self.status == LookupStatus.found
