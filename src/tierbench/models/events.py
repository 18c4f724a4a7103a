# Copyright (c) Syntropy Systems
"""Pydantic models for compiler trace events."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from typing_extensions import TypeAlias

from .base import FrozenModel

EventKind: TypeAlias = Literal["optimize", "deoptimize", "inline_cache_transition"]

EVENT_KINDS: tuple[EventKind, ...] = (
    "optimize",
    "deoptimize",
    "inline_cache_transition",
)

# Single-character inline cache states printed by V8's --trace-ic.
IC_STATES: dict[str, str] = {
    "0": "uninitialized",
    ".": "premonomorphic",
    "1": "monomorphic",
    "P": "polymorphic",
    "N": "megamorphic",
    "^": "recompute_handler",
    "G": "generic",
    "X": "no_feedback",
}


class TraceEvent(FrozenModel):
    """One optimization-related state change observed in a diagnostic stream."""

    kind: EventKind
    subject_id: str
    reason: str = ""
    sequence: int = Field(ge=0)
    timestamp_millis: float = 0.0
    location: str | None = None
    old_state: str | None = None
    new_state: str | None = None
    grammar: str | None = None
