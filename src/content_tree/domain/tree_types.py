from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Union, final


@dataclass(frozen=True)
class Bounded:
    value: int

    def __post_init__(self) -> None:
        if self.value < 0:
            raise ValueError("limit must be >= 0")

    def allows(self, count: int) -> bool:
        return count <= self.value


@final
@dataclass(frozen=True)
class Unbounded:
    def allows(self, count: int) -> bool:  # noqa: ARG002
        _ = count
        return True


UNBOUNDED = Unbounded()

Limit = Union[Bounded, Unbounded]


def limit_from_column(value: int | None) -> Limit:
    # NULL in storage means "no limit"; 0 is a real limit.
    if value is None:
        return UNBOUNDED
    return Bounded(int(value))


def limit_to_column(limit: Limit) -> int | None:
    if isinstance(limit, Bounded):
        return limit.value
    return None


def tightest(*limits: Limit) -> Limit:
    bounded = [x.value for x in limits if isinstance(x, Bounded)]
    if not bounded:
        return UNBOUNDED
    return Bounded(min(bounded))


@dataclass(frozen=True)
class Lifecycle:
    """Audit and soft-delete state shared by every persisted tree entity."""

    created_at: datetime
    created_by: str | None
    modified_at: datetime | None
    modified_by: str | None
    is_deleted: bool
    deleted_at: datetime | None
    deleted_by: str | None
