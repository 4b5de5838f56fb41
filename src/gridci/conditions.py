"""Step predicates over the trigger context.

Conditions are small tagged variants rather than an expression language:

    Step("Checkout PR", ..., condition=event_is("pull_request_target"))
    Step("Push image", ..., condition=ref_is("refs/heads/main"))
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple, Union

from .model import EventContext, EventKind


class Condition:
    """Base class; subclasses implement evaluate()."""

    def evaluate(self, ctx: EventContext) -> bool:
        raise NotImplementedError

    def __call__(self, ctx: EventContext) -> bool:
        return self.evaluate(ctx)

    def __invert__(self) -> "Condition":
        return Not(self)

    def __and__(self, other: "Condition") -> "Condition":
        return And((self, other))

    def __or__(self, other: "Condition") -> "Condition":
        return Or((self, other))


@dataclass(frozen=True)
class Always(Condition):
    def evaluate(self, ctx: EventContext) -> bool:
        return True


@dataclass(frozen=True)
class EventKindIs(Condition):
    kinds: Tuple[EventKind, ...]

    def evaluate(self, ctx: EventContext) -> bool:
        return ctx.kind in self.kinds


@dataclass(frozen=True)
class RefIs(Condition):
    ref: str

    def evaluate(self, ctx: EventContext) -> bool:
        return ctx.ref == self.ref


@dataclass(frozen=True)
class BranchIs(Condition):
    branch: str

    def evaluate(self, ctx: EventContext) -> bool:
        return ctx.branch == self.branch


@dataclass(frozen=True)
class Not(Condition):
    inner: Condition

    def evaluate(self, ctx: EventContext) -> bool:
        return not self.inner.evaluate(ctx)


@dataclass(frozen=True)
class And(Condition):
    parts: Tuple[Condition, ...]

    def evaluate(self, ctx: EventContext) -> bool:
        return all(p.evaluate(ctx) for p in self.parts)


@dataclass(frozen=True)
class Or(Condition):
    parts: Tuple[Condition, ...]

    def evaluate(self, ctx: EventContext) -> bool:
        return any(p.evaluate(ctx) for p in self.parts)


# ---------------------------------------------------------------------
# Helpers (DSL sugar)
# ---------------------------------------------------------------------

KindLike = Union[EventKind, str]


def _kind(k: KindLike) -> EventKind:
    return k if isinstance(k, EventKind) else EventKind.parse(k)


def always() -> Condition:
    return Always()


def event_is(*kinds: KindLike) -> Condition:
    if not kinds:
        raise ValueError("event_is() needs at least one event kind")
    return EventKindIs(tuple(_kind(k) for k in kinds))


def event_is_not(*kinds: KindLike) -> Condition:
    return Not(event_is(*kinds))


def ref_is(ref: str) -> Condition:
    return RefIs(ref)


def branch_is(branch: str) -> Condition:
    return BranchIs(branch)


def all_of(*parts: Condition) -> Condition:
    return And(tuple(parts))


def any_of(*parts: Condition) -> Condition:
    return Or(tuple(parts))


def holds(condition: Condition | None, ctx: EventContext) -> bool:
    """A missing condition always holds."""
    return True if condition is None else condition.evaluate(ctx)
