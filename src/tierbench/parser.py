# Copyright (c) Syntropy Systems
"""Line-oriented parser for tiered-compiler diagnostic output.

Each line is matched against a table of single-line grammars. The parser is a
pure function of the line, the carried ``ParserState`` and the caller-supplied
timestamp, so the same inputs always give the same result.

Two families of lines are understood:

- V8 style output from ``--trace-opt``, ``--trace-deopt`` and ``--trace-ic``
  (``[marking 0x... <JSFunction foo ...> for optimization ...]`` and friends)
- a compact bracketed form that workloads can print themselves
  (``[Optimizing foo]``, ``[Deoptimizing foo reason=wrong map]``, ...)
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Callable, Union

from typing_extensions import TypeAlias

from tierbench.models.events import IC_STATES, EventKind, TraceEvent

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

ANONYMOUS = "(anonymous)"
UNKNOWN_SUBJECT = "(unknown)"
UNKNOWN_REASON = "unknown"

_ADDR = r"(?:0x[0-9a-fA-F]+,? )?"
_FUNC = (
    r"<(?:JSFunction|SharedFunctionInfo)(?: (?P<subject>[^\s<>()]+))?"
    r"(?: \(sfi ?= ?[^)]*\))?>"
)
_TARGET = r"(?: \(target (?P<target>\w+)\))?"
_IC_STATE = r"[0.1PN^GX]"


@dataclass(frozen=True)
class ParserState:
    """State carried between lines of one run.

    ``in_flight`` maps subjects whose optimization has begun but not
    completed to the reason given when it began.
    """

    next_sequence: int = 0
    in_flight: Mapping[str, str] = field(default_factory=dict)
    pending_deopt: str | None = None
    skipped: int = 0


@dataclass(frozen=True)
class ParseSkipped:
    """Marker for a line that matched no grammar."""

    line: str


ParseResult: TypeAlias = Union[TraceEvent, ParseSkipped, None]
_Handler: TypeAlias = Callable[
    ["re.Match[str]", ParserState, float, str],
    "tuple[ParseResult, ParserState]",
]


@dataclass(frozen=True)
class Grammar:
    """A named single-line pattern and what to do when it matches."""

    name: str
    prefix: str
    pattern: re.Pattern[str]
    handler: _Handler


def _subject(match: re.Match[str]) -> str:
    subject = match.groupdict().get("subject")
    if subject:
        return subject
    text = match.group(0)
    if subject == "" or "<JSFunction" in text or "<SharedFunctionInfo" in text:
        return ANONYMOUS
    return UNKNOWN_SUBJECT


def _emit(
    state: ParserState,
    kind: EventKind,
    subject: str,
    reason: str,
    timestamp_millis: float,
    grammar: str,
    **extra: str | None,
) -> tuple[TraceEvent, ParserState]:
    event = TraceEvent(
        kind=kind,
        subject_id=subject,
        reason=reason,
        sequence=state.next_sequence,
        timestamp_millis=timestamp_millis,
        grammar=grammar,
        **extra,
    )
    in_flight = state.in_flight
    if kind != "inline_cache_transition" and subject in in_flight:
        in_flight = {k: v for k, v in in_flight.items() if k != subject}
    return event, replace(
        state, next_sequence=state.next_sequence + 1, in_flight=in_flight
    )


def _begin_optimize(
    match: re.Match[str], state: ParserState, _ts: float, _grammar: str
) -> tuple[ParseResult, ParserState]:
    groups = match.groupdict()
    reason = groups.get("reason") or ""
    if not reason and groups.get("target"):
        reason = f"target {groups['target']}"
    subject = _subject(match)
    in_flight = dict(state.in_flight)
    # `[marking ...]` carries the interesting reason; a later
    # `[compiling method ...]` for the same subject must not replace it.
    if not in_flight.get(subject):
        in_flight[subject] = reason.strip()
    return None, replace(state, in_flight=in_flight)


def _complete_optimize(
    match: re.Match[str], state: ParserState, ts: float, grammar: str
) -> tuple[ParseResult, ParserState]:
    subject = _subject(match)
    groups = match.groupdict()
    reason = state.in_flight.get(subject) or groups.get("reason") or ""
    if not reason and groups.get("target"):
        reason = f"target {groups['target']}"
    return _emit(state, "optimize", subject, reason.strip(), ts, grammar)


def _deoptimize(
    match: re.Match[str], state: ParserState, ts: float, grammar: str
) -> tuple[ParseResult, ParserState]:
    reason = (match.groupdict().get("reason") or UNKNOWN_REASON).strip()
    return _emit(state, "deoptimize", _subject(match), reason, ts, grammar)


def _begin_legacy_deopt(
    match: re.Match[str], state: ParserState, ts: float, grammar: str
) -> tuple[ParseResult, ParserState]:
    subject = _subject(match)
    if state.pending_deopt is None:
        return None, replace(state, pending_deopt=subject)
    # The previous begin never got its reason line.
    event, state = _emit(
        state, "deoptimize", state.pending_deopt, UNKNOWN_REASON, ts, grammar
    )
    return event, replace(state, pending_deopt=subject)


def _legacy_deopt_reason(
    match: re.Match[str], state: ParserState, ts: float, grammar: str
) -> tuple[ParseResult, ParserState]:
    if state.pending_deopt is None:
        return ParseSkipped(match.string), replace(state, skipped=state.skipped + 1)
    event, state = _emit(
        state,
        "deoptimize",
        state.pending_deopt,
        match.group("reason").strip(),
        ts,
        grammar,
        location=match.group("location") or None,
    )
    return event, replace(state, pending_deopt=None)


def _ic_state_name(raw: str) -> str:
    return IC_STATES.get(raw, raw.lower())


def _ic_transition(
    match: re.Match[str], state: ParserState, ts: float, grammar: str
) -> tuple[ParseResult, ParserState]:
    groups = match.groupdict()
    old = _ic_state_name(groups["old"])
    new = _ic_state_name(groups["new"])
    site = groups.get("ic") or "IC"
    return _emit(
        state,
        "inline_cache_transition",
        _subject(match),
        f"{site} {old}->{new}",
        ts,
        grammar,
        location=groups.get("location"),
        old_state=old,
        new_state=new,
    )


GRAMMARS: tuple[Grammar, ...] = (
    Grammar(
        "optimize-begin",
        "[marking ",
        re.compile(
            r"\[marking (?:.*? )?" + _FUNC + r"(?:.*?reason: (?P<reason>[^\],]+))?"
        ),
        _begin_optimize,
    ),
    Grammar(
        "optimize-begin-compile",
        "[compiling method ",
        re.compile(r"\[compiling method " + _ADDR + _FUNC + _TARGET),
        _begin_optimize,
    ),
    Grammar(
        "optimize-begin-compact",
        "[Optimizing ",
        re.compile(r"\[Optimizing (?P<subject>[^\s\]]+)(?: reason=(?P<reason>[^\]]*))?\]"),
        _begin_optimize,
    ),
    Grammar(
        "optimize-complete",
        "[completed optimizing ",
        re.compile(r"\[completed optimizing " + _ADDR + _FUNC + _TARGET),
        _complete_optimize,
    ),
    Grammar(
        "optimize-complete-compile",
        "[completed compiling ",
        re.compile(r"\[completed compiling " + _ADDR + _FUNC + _TARGET),
        _complete_optimize,
    ),
    Grammar(
        "optimize-complete-compact",
        "[Optimized ",
        re.compile(r"\[Optimized (?P<subject>[^\s\]]+)(?: reason=(?P<reason>[^\]]*))?\]"),
        _complete_optimize,
    ),
    Grammar(
        "deopt-dependent-code",
        "[marking dependent code ",
        re.compile(
            r"\[marking dependent code " + _ADDR + r"(?:" + _FUNC + r")?"
            r".*?for deoptimization, reason: (?P<reason>[^\]]+)"
        ),
        _deoptimize,
    ),
    Grammar(
        "deopt-bailout",
        "[bailout (kind: ",
        re.compile(
            r"\[bailout \(kind: (?P<bailout_kind>[\w-]+), reason: (?P<reason>[^)]+)\):"
            r" begin\. deoptimizing .*?" + _FUNC
        ),
        _deoptimize,
    ),
    Grammar(
        "deopt-compact",
        "[Deoptimizing ",
        re.compile(r"\[Deoptimizing (?P<subject>[^\s\]]+)(?: reason=(?P<reason>[^\]]*))?\]"),
        _deoptimize,
    ),
    Grammar(
        "deopt-legacy-begin",
        "[deoptimizing (",
        re.compile(r"\[deoptimizing \((?P<bailout_kind>[^)]*)\): begin " + _ADDR + _FUNC),
        _begin_legacy_deopt,
    ),
    Grammar(
        "deopt-legacy-reason",
        ";;; deoptimize at ",
        re.compile(r";;; deoptimize at <(?P<location>[^>]*)>, (?P<reason>.+)$"),
        _legacy_deopt_reason,
    ),
    Grammar(
        "ic-transition",
        "[",
        re.compile(
            r"\[(?P<ic>\w*IC) in [~*^]?(?P<subject>[^\s+]*)\+\d+ at (?P<location>\S+)"
            r" \((?P<old>" + _IC_STATE + r")->(?P<new>" + _IC_STATE + r")\)"
        ),
        _ic_transition,
    ),
    Grammar(
        "ic-transition-compact",
        "[InlineCache ",
        re.compile(
            r"\[InlineCache (?P<subject>\S+) (?P<old>\w+|" + _IC_STATE + r")->"
            r"(?P<new>\w+|" + _IC_STATE + r")\]"
        ),
        _ic_transition,
    ),
)


def _best_match(
    text: str, grammars: Iterable[Grammar]
) -> tuple[Grammar, re.Match[str]] | None:
    """Pick the matching grammar with the longest fixed prefix.

    Ties go to the grammar listed first.
    """
    best: tuple[Grammar, re.Match[str]] | None = None
    for grammar in grammars:
        if not text.startswith(grammar.prefix):
            continue
        match = grammar.pattern.match(text)
        if match is None:
            continue
        if best is None or len(grammar.prefix) > len(best[0].prefix):
            best = (grammar, match)
    return best


def parse_line(
    line: str,
    state: ParserState,
    *,
    timestamp_millis: float = 0.0,
) -> tuple[ParseResult, ParserState]:
    """Parse one diagnostic line.

    Returns ``(event, new_state)``. ``event`` is a TraceEvent, ``None`` when the
    line was recognized but completes no event (an optimization begin marker),
    or ``ParseSkipped`` when no grammar matched.
    """
    text = line.strip() if isinstance(line, str) else ""
    found = _best_match(text, GRAMMARS) if text else None
    if found is None:
        return ParseSkipped(str(line)), replace(state, skipped=state.skipped + 1)
    grammar, match = found
    return grammar.handler(match, state, timestamp_millis, grammar.name)


def flush_state(
    state: ParserState, *, timestamp_millis: float = 0.0
) -> tuple[TraceEvent | None, ParserState]:
    """Emit whatever the state still holds at end of stream."""
    if state.pending_deopt is None:
        return None, state
    event, state = _emit(
        state,
        "deoptimize",
        state.pending_deopt,
        UNKNOWN_REASON,
        timestamp_millis,
        "deopt-legacy-begin",
    )
    return event, replace(state, pending_deopt=None)


class TraceBuffer:
    """Ordered event buffer for a single run."""

    _state: ParserState
    _events: list[TraceEvent]

    def __init__(self) -> None:
        self._state = ParserState()
        self._events = []

    def feed(self, line: str, timestamp_millis: float = 0.0) -> TraceEvent | None:
        """Parse a line and keep the event it produced, if any."""
        result, self._state = parse_line(
            line, self._state, timestamp_millis=timestamp_millis
        )
        if isinstance(result, TraceEvent):
            self._events.append(result)
            return result
        return None

    def flush(self, timestamp_millis: float = 0.0) -> TraceEvent | None:
        """Flush carried state at end of stream."""
        event, self._state = flush_state(self._state, timestamp_millis=timestamp_millis)
        if event is not None:
            self._events.append(event)
        return event

    @property
    def events(self) -> tuple[TraceEvent, ...]:
        return tuple(self._events)

    @property
    def skipped(self) -> int:
        return self._state.skipped

    @property
    def state(self) -> ParserState:
        return self._state


def parse_lines(lines: Iterable[str]) -> TraceBuffer:
    """Parse a finished stream of lines, flushing at the end."""
    buffer = TraceBuffer()
    for line in lines:
        _ = buffer.feed(line)
    _ = buffer.flush()
    return buffer
