"""
Condition evaluator — used by condition nodes and trigger nodes.

Condition strings are a single function call or a contact comparison:

    Contains('help')            ExactMatch('Hi', true)
    RegexMatch('^order\\s+\\d+')  StartsWith('hey')   EndsWith('?')
    HasMedia()                  MediaType('image')
    TimeBefore('09:00')         TimeAfter('18:00')  TimeBetween('22:00,06:00')
    Contact.name == 'Ana'       Contact.tags == 'vip'

Strings are parsed once into a small typed AST (memoized), then evaluated
against a MessageContext. Evaluation never raises for user-authored
conditions: anything malformed evaluates False and is reported as a
Diagnostic.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from functools import lru_cache
from typing import Any, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from pydantic import BaseModel

from models.schemas import Diagnostic, MessageContext

logger = structlog.get_logger()


def get_nested_value(data: Any, field: str) -> Any:
    """Get a value from nested dicts/models using dot notation. e.g. 'contact.name'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, BaseModel) and part in type(current).model_fields:
            current = getattr(current, part)
        else:
            return None
    return current


# ──────────────────────────────────────────────────────────────
#  AST
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: tuple[Union[str, bool], ...] = ()


@dataclass(frozen=True)
class ContactComparison:
    attribute: str
    value: str


ConditionAst = Union[FunctionCall, ContactComparison]


@dataclass(frozen=True)
class ParseResult:
    ast: Optional[ConditionAst]
    diagnostics: tuple[Diagnostic, ...] = ()

    @property
    def ok(self) -> bool:
        return self.ast is not None


@dataclass
class ConditionResult:
    matched: bool
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def __bool__(self):
        return self.matched


# name → (min args, max args); the first arg is always a string,
# an optional second arg is a boolean flag unless noted in _STRING_PAIR.
FUNCTIONS: dict[str, tuple[int, int]] = {
    "Contains": (1, 2),
    "ExactMatch": (1, 2),
    "StartsWith": (1, 2),
    "EndsWith": (1, 2),
    "RegexMatch": (1, 1),
    "HasMedia": (0, 0),
    "MediaType": (1, 1),
    "TimeBefore": (1, 1),
    "TimeAfter": (1, 1),
    "TimeBetween": (1, 2),
}

_STRING_PAIR = {"TimeBetween"}       # TimeBetween('09:00', '17:00') is also accepted

CONTACT_FIELDS = ("id", "name", "phone", "email")

_CALL_RE = re.compile(r"^\s*([A-Za-z_]\w*)\s*\((.*)\)\s*$", re.DOTALL)
_CONTACT_RE = re.compile(r"^\s*Contact\.(\w+)\s*==\s*(.*?)\s*$", re.DOTALL)
_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")


class _ParseError(ValueError):
    pass


# ──────────────────────────────────────────────────────────────
#  Parsing
# ──────────────────────────────────────────────────────────────

def _tokenize_args(src: str) -> list[Union[str, bool]]:
    """Split an argument list into quoted strings and true/false flags."""
    args: list[Union[str, bool]] = []
    i, n = 0, len(src)
    expect_value = True
    while i < n:
        ch = src[i]
        if ch.isspace():
            i += 1
            continue
        if not expect_value:
            if ch != ",":
                raise _ParseError(f"expected ',' at position {i}")
            expect_value = True
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            i += 1
            buf = []
            while i < n and src[i] != quote:
                if src[i] == "\\" and i + 1 < n:
                    nxt = src[i + 1]
                    # keep backslashes the string itself does not need escaped (regex classes)
                    buf.append(nxt if nxt in (quote, "\\") else src[i:i + 2])
                    i += 2
                    continue
                buf.append(src[i])
                i += 1
            if i >= n:
                raise _ParseError("unterminated string")
            args.append("".join(buf))
            i += 1
        else:
            j = i
            while j < n and src[j] != "," and not src[j].isspace():
                j += 1
            word = src[i:j].lower()
            if word not in ("true", "false"):
                raise _ParseError(f"unexpected token '{src[i:j]}'")
            args.append(word == "true")
            i = j
        expect_value = False
    if args and expect_value:
        raise _ParseError("trailing ','")
    return args


def _check_signature(name: str, args: list[Union[str, bool]]) -> None:
    lo, hi = FUNCTIONS[name]
    if not lo <= len(args) <= hi:
        raise _ParseError(f"{name} takes {lo}-{hi} arguments, got {len(args)}")
    if args and not isinstance(args[0], str):
        raise _ParseError(f"{name} expects a quoted string as first argument")
    if len(args) == 2:
        want = str if name in _STRING_PAIR else bool
        if not isinstance(args[1], want):
            raise _ParseError(f"{name} second argument must be {'a string' if want is str else 'true/false'}")


@lru_cache(maxsize=1024)
def parse_condition(text: str) -> ParseResult:
    """Parse a condition string into an AST. Never raises."""
    if not text or not text.strip():
        return ParseResult(None, (Diagnostic(code="malformed_condition", message="empty condition"),))

    contact = _CONTACT_RE.match(text)
    if contact:
        attribute, rhs = contact.group(1), contact.group(2)
        try:
            values = _tokenize_args(rhs)
        except _ParseError as e:
            return ParseResult(None, (Diagnostic(code="malformed_condition", message=f"{text!r}: {e}"),))
        if len(values) != 1 or not isinstance(values[0], str):
            return ParseResult(None, (Diagnostic(
                code="malformed_condition",
                message=f"{text!r}: contact comparison needs one quoted value",
            ),))
        return ParseResult(ContactComparison(attribute=attribute, value=values[0]))

    call = _CALL_RE.match(text)
    if not call:
        return ParseResult(None, (Diagnostic(code="malformed_condition", message=f"cannot parse {text!r}"),))

    name = call.group(1)
    if name not in FUNCTIONS:
        return ParseResult(None, (Diagnostic(code="unknown_function", message=f"unknown function '{name}'"),))
    try:
        args = _tokenize_args(call.group(2))
        _check_signature(name, args)
    except _ParseError as e:
        return ParseResult(None, (Diagnostic(code="invalid_arguments", message=f"{text!r}: {e}"),))
    return ParseResult(FunctionCall(name=name, args=tuple(args)))


# ──────────────────────────────────────────────────────────────
#  Evaluation
# ──────────────────────────────────────────────────────────────

def _fold(text: str, case_sensitive: bool) -> str:
    return text if case_sensitive else text.casefold()


def _parse_hhmm(value: str) -> time:
    m = _TIME_RE.match(value)
    if not m:
        raise ValueError(f"expected HH:MM, got {value!r}")
    hours, minutes = int(m.group(1)), int(m.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError(f"time out of range: {value!r}")
    return time(hours, minutes)


def _local_time(context: MessageContext, sink: list[Diagnostic]) -> time:
    ts = context.timestamp
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    try:
        tz = ZoneInfo(context.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        sink.append(Diagnostic(code="unknown_timezone",
                               message=f"unknown timezone {context.timezone!r}, using UTC"))
        tz = timezone.utc
    local = ts.astimezone(tz)
    return time(local.hour, local.minute, local.second)


def _time_between(now: time, start: time, end: time) -> bool:
    if start == end:
        return False
    if start < end:
        return start <= now < end
    return now >= start or now < end           # interval crosses midnight


def _evaluate_call(call: FunctionCall, context: MessageContext, sink: list[Diagnostic]) -> bool:
    name, args = call.name, call.args
    text = context.message_text or ""

    if name in ("Contains", "ExactMatch", "StartsWith", "EndsWith"):
        case_sensitive = bool(args[1]) if len(args) > 1 else False
        needle = _fold(args[0], case_sensitive)
        hay = _fold(text, case_sensitive)
        if name == "Contains":
            return needle in hay
        if name == "ExactMatch":
            return hay.strip() == needle.strip()
        if name == "StartsWith":
            return hay.startswith(needle)
        return hay.endswith(needle)

    if name == "RegexMatch":
        try:
            pattern = re.compile(args[0])
        except re.error as e:
            sink.append(Diagnostic(code="invalid_regex", message=f"invalid pattern {args[0]!r}: {e}"))
            logger.warning("condition_invalid_regex", pattern=args[0], error=str(e))
            return False
        return pattern.search(text) is not None

    if name == "HasMedia":
        return bool(context.media_type)

    if name == "MediaType":
        return (context.media_type or "").casefold() == args[0].strip().casefold()

    # Time functions
    try:
        if name == "TimeBetween":
            if len(args) == 2:
                start_s, end_s = args[0], args[1]
            else:
                start_s, sep, end_s = args[0].partition(",")
                if not sep:
                    raise ValueError(f"expected 'HH:MM,HH:MM', got {args[0]!r}")
            start, end = _parse_hhmm(start_s), _parse_hhmm(end_s)
            return _time_between(_local_time(context, sink), start, end)
        bound = _parse_hhmm(args[0])
    except ValueError as e:
        sink.append(Diagnostic(code="invalid_time", message=str(e)))
        return False
    now = _local_time(context, sink)
    if name == "TimeBefore":
        return now < bound
    return now >= bound                          # TimeAfter


def _evaluate_contact(cmp: ContactComparison, context: MessageContext, sink: list[Diagnostic]) -> bool:
    contact = context.contact
    if cmp.attribute == "tags":
        return cmp.value in set(contact.tags)
    if cmp.attribute in CONTACT_FIELDS:
        resolved = getattr(contact, cmp.attribute)
    elif cmp.attribute in contact.attributes:
        resolved = contact.attributes[cmp.attribute]
    else:
        sink.append(Diagnostic(code="unknown_contact_attribute",
                               message=f"contact has no attribute '{cmp.attribute}'"))
        return False
    if resolved is None:
        return False
    return str(resolved) == cmp.value


def evaluate(
    condition: Union[str, ConditionAst],
    context: MessageContext,
    diagnostics: Optional[list[Diagnostic]] = None,
) -> bool:
    """
    Evaluate a condition string (or pre-parsed AST) against a message context.

    Pure and deterministic: the context is never mutated. Problems are
    appended to ``diagnostics`` when a list is supplied.
    """
    sink = diagnostics if diagnostics is not None else []
    if isinstance(condition, str):
        parsed = parse_condition(condition)
        sink.extend(parsed.diagnostics)
        ast = parsed.ast
    else:
        ast = condition
    if ast is None:
        return False

    try:
        if isinstance(ast, ContactComparison):
            return _evaluate_contact(ast, context, sink)
        return _evaluate_call(ast, context, sink)
    except (TypeError, ValueError) as e:
        sink.append(Diagnostic(code="evaluation_error", message=str(e)))
        return False


def evaluate_condition_result(condition: str, context: MessageContext) -> ConditionResult:
    """Evaluate and return the outcome together with its diagnostics."""
    diagnostics: list[Diagnostic] = []
    matched = evaluate(condition, context, diagnostics)
    return ConditionResult(matched=matched, diagnostics=diagnostics)
