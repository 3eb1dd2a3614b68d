"""
Keyword Router — picks the output handle an inbound reply routes through.

A node's ``data.keywords`` is an ordered list. Each keyword owns one output
handle (``keyword-<slug>``); one extra ``no-match`` handle catches the rest.
Matching is containment, tested in list order, first match wins:

    keywords = [agent, Agent Smith]
    route(keywords, "call an agent smith please").handle_id == "keyword-agent"

Quick-reply nodes route the same way through ``option-<n>`` handles.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

import structlog

from models.schemas import (
    KEYWORD_HANDLE_PREFIX, NO_MATCH_HANDLE, Keyword,
    keyword_handle_id, slugify,
)

logger = structlog.get_logger()

OPTION_HANDLE_PREFIX = "option-"

__all__ = [
    "KEYWORD_HANDLE_PREFIX", "NO_MATCH_HANDLE", "OPTION_HANDLE_PREFIX",
    "RouteDecision", "slugify", "keyword_handle_id", "option_handle_id",
    "coerce_keywords", "normalize_keywords", "parse_keyword_string",
    "keyword_matches", "route", "output_handles", "route_quick_reply",
    "is_keyword_handle",
]


@dataclass(frozen=True)
class RouteDecision:
    handle_id: str
    keyword: Optional[Keyword] = None
    option_index: Optional[int] = None       # 1-based, quick replies only

    @property
    def matched(self) -> bool:
        return self.handle_id != NO_MATCH_HANDLE


def option_handle_id(index: int) -> str:
    return f"{OPTION_HANDLE_PREFIX}{index}"


def is_keyword_handle(handle: Optional[str]) -> bool:
    return bool(handle) and handle.startswith(KEYWORD_HANDLE_PREFIX)


def coerce_keywords(raw: Iterable[Union[Keyword, dict[str, Any], str]]) -> list[Keyword]:
    """Accept Keyword objects, their dict form, or bare strings."""
    result = []
    for item in raw or []:
        if isinstance(item, Keyword):
            result.append(item)
        elif isinstance(item, dict):
            result.append(Keyword.model_validate(item))
        else:
            result.append(Keyword(value=str(item)))
    return result


def normalize_keywords(keywords: Iterable[Union[Keyword, dict[str, Any], str]]) -> list[Keyword]:
    """
    Drop blank keywords and resolve handle collisions: when two keywords
    slug to the same handle, the last-defined one is kept.
    """
    items = [k for k in coerce_keywords(keywords) if k.value.strip()]
    last_index = {k.handle_id: i for i, k in enumerate(items)}
    deduped = [k for i, k in enumerate(items) if last_index[k.handle_id] == i]
    if len(deduped) != len(items):
        logger.debug("keywords_deduplicated", dropped=len(items) - len(deduped))
    return deduped


def parse_keyword_string(text: str, case_sensitive: bool = False) -> list[Keyword]:
    """Split the legacy comma-separated keyword field into Keyword objects."""
    values = [part.strip() for part in (text or "").split(",")]
    return normalize_keywords(Keyword(value=v, case_sensitive=case_sensitive) for v in values if v)


def keyword_matches(keyword: Keyword, text: str) -> bool:
    if keyword.case_sensitive:
        return keyword.value in text
    return keyword.value.casefold() in text.casefold()


def route(keywords: Iterable[Union[Keyword, dict[str, Any], str]], text: str) -> RouteDecision:
    """Return the handle of the first keyword contained in ``text``, else no-match."""
    for keyword in coerce_keywords(keywords):
        if keyword.value and keyword_matches(keyword, text or ""):
            return RouteDecision(handle_id=keyword.handle_id, keyword=keyword)
    return RouteDecision(handle_id=NO_MATCH_HANDLE)


def output_handles(keywords: Iterable[Union[Keyword, dict[str, Any], str]]) -> list[str]:
    return [k.handle_id for k in normalize_keywords(keywords)] + [NO_MATCH_HANDLE]


def _option_text(option: Any) -> str:
    if isinstance(option, dict):
        return str(option.get("text") or option.get("label") or option.get("title") or "")
    return str(option)


def route_quick_reply(options: list[Any], text: str) -> RouteDecision:
    """
    Match a reply against quick-reply options, by number ("2") or by the
    option's text (case-insensitive). Options are 1-based.
    """
    reply = (text or "").strip()
    if reply.isdigit():
        index = int(reply)
        if 1 <= index <= len(options):
            return RouteDecision(handle_id=option_handle_id(index), option_index=index)
    folded = reply.casefold()
    for index, option in enumerate(options, start=1):
        if folded and _option_text(option).strip().casefold() == folded:
            return RouteDecision(handle_id=option_handle_id(index), option_index=index)
    return RouteDecision(handle_id=NO_MATCH_HANDLE)
