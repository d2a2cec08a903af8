# ──────────────────────────────────────────────────────────────────────────────
# File: services/query_parser.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Natural-language search query parsing.

Turns a query like "articles about AI from last week" into structured filters
(content types, date range, author, price range) plus a semantic remainder
("AI") that is handed to Claude for ranking.

Two parsers:
- parse_simple: regex based, synchronous, always available
- parse_with_ai: asks Claude for the same structure, falls back to
  parse_simple on any failure

apply_filters narrows an item list with the structured filters. Each filter is
an independent predicate, so the result does not depend on their order.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from services.claude_client import ClaudeClient, extract_json_object
from services.errors import ClassificationError
from services.item_repository import CONTENT_TYPES

logger = logging.getLogger(__name__)


# ─── Result types ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DateRange:
    """Inclusive time window."""

    start: datetime
    end: datetime

    def contains(self, when: datetime) -> bool:
        return self.start <= when <= self.end

    def to_api(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class PriceRange:
    """Inclusive price bounds; ``max=None`` means no upper bound."""

    min: float = 0
    max: Optional[float] = None

    def __post_init__(self):
        if self.max is not None and self.min > self.max:
            raise ValueError(f"price min {self.min} is greater than max {self.max}")

    def contains(self, price: float) -> bool:
        return price >= self.min and (self.max is None or price <= self.max)

    def to_api(self) -> Dict[str, Optional[float]]:
        return {"min": self.min, "max": self.max}


@dataclass
class QueryFilters:
    types: List[str] = field(default_factory=list)
    date_range: Optional[DateRange] = None
    author: Optional[str] = None
    entities: List[str] = field(default_factory=list)
    price_range: Optional[PriceRange] = None

    @property
    def is_empty(self) -> bool:
        return not (self.types or self.date_range or self.author or self.price_range)

    def to_api(self) -> Dict[str, Any]:
        return {
            "types": list(self.types),
            "dateRange": self.date_range.to_api() if self.date_range else None,
            "author": self.author,
            "entities": list(self.entities),
            "priceRange": self.price_range.to_api() if self.price_range else None,
        }

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "QueryFilters":
        """Build filters from the camelCase JSON shape produced by ``to_api``."""

        date_range = None
        raw_dates = data.get("dateRange")
        if raw_dates:
            start = _parse_timestamp(raw_dates.get("start"))
            end = _parse_timestamp(raw_dates.get("end"))
            if start is None or end is None:
                raise ValueError("dateRange needs a valid start and end")
            date_range = DateRange(start, end)

        price_range = None
        raw_price = data.get("priceRange")
        if raw_price:
            price_range = _price_range(raw_price.get("min"), raw_price.get("max"))

        return cls(
            types=_known_types(data.get("types") or []),
            date_range=date_range,
            author=data.get("author") or None,
            entities=list(data.get("entities") or []),
            price_range=price_range,
        )


@dataclass
class ParsedQuery:
    semantic: str
    filters: QueryFilters = field(default_factory=QueryFilters)
    keywords: List[str] = field(default_factory=list)
    explanation: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        payload = {
            "semantic": self.semantic,
            "filters": self.filters.to_api(),
            "keywords": list(self.keywords),
        }
        if self.explanation is not None:
            payload["explanation"] = self.explanation
        return payload


# ─── Relative dates ─────────────────────────────────────────────────────────

def _start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def _end_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=23, minute=59, second=59, microsecond=999999)


def _days_since_sunday(dt: datetime) -> int:
    # weekday(): Monday == 0; weeks start on Sunday
    return (dt.weekday() + 1) % 7


def _today(now: datetime) -> DateRange:
    return DateRange(_start_of_day(now), now)


def _yesterday(now: datetime) -> DateRange:
    start = _start_of_day(now - timedelta(days=1))
    return DateRange(start, _end_of_day(start))


def _this_week(now: datetime) -> DateRange:
    return DateRange(_start_of_day(now - timedelta(days=_days_since_sunday(now))), now)


def _last_week(now: datetime) -> DateRange:
    start = _start_of_day(now - timedelta(days=_days_since_sunday(now) + 7))
    return DateRange(start, _end_of_day(start + timedelta(days=6)))


def _this_month(now: datetime) -> DateRange:
    return DateRange(_start_of_day(now.replace(day=1)), now)


def _last_month(now: datetime) -> DateRange:
    end = _start_of_day(now.replace(day=1)) - timedelta(microseconds=1)
    return DateRange(_start_of_day(end.replace(day=1)), end)


def _last_days(days: int) -> Callable[[datetime], DateRange]:
    def window(now: datetime) -> DateRange:
        return DateRange(_start_of_day(now - timedelta(days=days)), now)
    return window


# Checked in this order; the first phrase found wins
DATE_PATTERNS: Dict[str, Callable[[datetime], DateRange]] = {
    "today": _today,
    "yesterday": _yesterday,
    "this week": _this_week,
    "last week": _last_week,
    "this month": _this_month,
    "last month": _last_month,
    "last 7 days": _last_days(7),
    "last 30 days": _last_days(30),
}

_DATE_REGEXES = {
    phrase: re.compile(r"\b" + re.escape(phrase).replace(r"\ ", r"\s+") + r"\b", re.IGNORECASE)
    for phrase in DATE_PATTERNS
}


def _resolve_now(now: Optional[datetime]) -> datetime:
    # Timezone aware so windows compare with UTC item stamps; naive means local time
    now = now or datetime.now()
    return now if now.tzinfo is not None else now.astimezone()


def date_range_for_phrase(phrase: Optional[str], now: Optional[datetime] = None) -> Optional[DateRange]:
    """Map free text containing one of the DATE_PATTERNS phrases to a window."""

    if not phrase:
        return None
    for key, regex in _DATE_REGEXES.items():
        if regex.search(phrase):
            return DATE_PATTERNS[key](_resolve_now(now))
    return None


# ─── Patterns ───────────────────────────────────────────────────────────────

_TYPE_REGEXES = {
    content_type: re.compile(rf"\b{content_type}s?\b", re.IGNORECASE)
    for content_type in CONTENT_TYPES
}

_NUMBER = r"(\d+(?:\.\d+)?)"

# First match wins
PRICE_PATTERNS = [
    (re.compile(rf"\bunder\s+\$\s?{_NUMBER}", re.IGNORECASE), "max"),
    (re.compile(rf"\bless\s+than\s+\$\s?{_NUMBER}", re.IGNORECASE), "max"),
    (re.compile(rf"\bbelow\s+\$\s?{_NUMBER}", re.IGNORECASE), "max"),
    (re.compile(rf"\bover\s+\$\s?{_NUMBER}", re.IGNORECASE), "min"),
    (re.compile(rf"\bmore\s+than\s+\$\s?{_NUMBER}", re.IGNORECASE), "min"),
    (re.compile(rf"\babove\s+\$\s?{_NUMBER}", re.IGNORECASE), "min"),
    (re.compile(rf"\$\s?{_NUMBER}\s*-\s*\$\s?{_NUMBER}"), "range"),
]

_QUOTED_RE = re.compile(r'"([^"]+)"')
_FILLER_WORDS = r"(?:i\s+saved|from|by|about|saved)"
_LEADING_FILLER_RE = re.compile(rf"^{_FILLER_WORDS}\b\s*", re.IGNORECASE)
_TRAILING_FILLER_RE = re.compile(rf"\s*\b{_FILLER_WORDS}$", re.IGNORECASE)


def _number(text: str) -> float:
    value = float(text)
    return int(value) if value.is_integer() else value


def _price_range(low: Any, high: Any) -> Optional[PriceRange]:
    if low is None and high is None:
        return None
    low = float(low) if low is not None else 0
    high = float(high) if high is not None and high != float("inf") else None
    if high is not None and low > high:
        low, high = high, low
    return PriceRange(min=low, max=high)


def _known_types(types: Iterable[Any]) -> List[str]:
    known = []
    for value in types:
        name = str(value).strip().lower()
        if name in CONTENT_TYPES and name not in known:
            known.append(name)
    return known


def _clean_remainder(text: str) -> str:
    text = re.sub(r"\s+", " ", text).strip()
    while True:
        stripped = _LEADING_FILLER_RE.sub("", text, count=1).strip()
        stripped = _TRAILING_FILLER_RE.sub("", stripped, count=1).strip()
        if stripped == text:
            return text
        text = stripped


# ─── Parsers ────────────────────────────────────────────────────────────────

def parse_simple(query: str, now: Optional[datetime] = None) -> ParsedQuery:
    """Pattern-based parse. Pure apart from reading the clock for date windows."""

    remainder = query or ""
    filters = QueryFilters()
    keywords: List[str] = []

    # Quoted phrases are literal and never drive filters
    for match in _QUOTED_RE.finditer(remainder):
        keywords.append(match.group(1))
    remainder = _QUOTED_RE.sub(" ", remainder)

    for content_type, regex in _TYPE_REGEXES.items():
        if regex.search(remainder):
            filters.types.append(content_type)
            remainder = regex.sub(" ", remainder)

    for phrase, regex in _DATE_REGEXES.items():
        if regex.search(remainder):
            filters.date_range = DATE_PATTERNS[phrase](_resolve_now(now))
            remainder = regex.sub(" ", remainder)
            break

    for regex, kind in PRICE_PATTERNS:
        match = regex.search(remainder)
        if not match:
            continue
        if kind == "max":
            filters.price_range = PriceRange(min=0, max=_number(match.group(1)))
        elif kind == "min":
            filters.price_range = PriceRange(min=_number(match.group(1)), max=None)
        else:
            low, high = sorted((_number(match.group(1)), _number(match.group(2))))
            filters.price_range = PriceRange(min=low, max=high)
        remainder = remainder[:match.start()] + " " + remainder[match.end():]
        break

    return ParsedQuery(
        semantic=_clean_remainder(remainder),
        filters=filters,
        keywords=keywords,
    )


AI_PARSE_PROMPT = """You are a query parser for a knowledge management system called Synapse.
Parse this natural language search query and extract structured information.

Query: {query}

Extract:
1. Content types (from: {types})
2. Date range (today, yesterday, this week, last week, this month, last month, last 7 days, last 30 days, or specific dates)
3. Author/entities mentioned
4. Price range (if mentioned)
5. Keywords and main semantic meaning
6. Any exact phrases to match

Return a JSON object with this structure:
{{
  "semantic": "the core meaning of the query without filters",
  "filters": {{
    "types": ["array of content types"],
    "author": "author name if mentioned",
    "entities": ["array of entities like names, products, topics"],
    "priceRange": {{ "min": number, "max": number }} or null,
    "datePhrase": "original date phrase" or null
  }},
  "keywords": ["exact phrases to match"],
  "explanation": "brief explanation of how you parsed the query"
}}

Examples:

Query: "articles about AI agents I saved last month"
{{
  "semantic": "AI agents",
  "filters": {{
    "types": ["article"],
    "author": null,
    "entities": ["AI agents"],
    "priceRange": null,
    "datePhrase": "last month"
  }},
  "keywords": [],
  "explanation": "Looking for articles about AI agents from last month"
}}

Query: "what Karpathy said about tokenization in that paper"
{{
  "semantic": "tokenization",
  "filters": {{
    "types": ["article", "note"],
    "author": "Karpathy",
    "entities": ["Karpathy", "tokenization"],
    "priceRange": null,
    "datePhrase": null
  }},
  "keywords": ["tokenization"],
  "explanation": "Looking for content by Karpathy about tokenization"
}}

Query: "black shoes under $300"
{{
  "semantic": "black shoes",
  "filters": {{
    "types": ["product"],
    "author": null,
    "entities": ["black shoes"],
    "priceRange": {{ "min": 0, "max": 300 }},
    "datePhrase": null
  }},
  "keywords": ["black", "shoes"],
  "explanation": "Looking for product items with black shoes under $300"
}}

Now parse the query above and return ONLY the JSON object, no other text."""


class _AIPriceRange(BaseModel):
    model_config = ConfigDict(extra="ignore")

    min: Optional[float] = None
    max: Optional[float] = None


class _AIFilters(BaseModel):
    model_config = ConfigDict(extra="ignore")

    types: List[str] = []
    author: Optional[str] = None
    entities: List[str] = []
    priceRange: Optional[_AIPriceRange] = None
    datePhrase: Optional[str] = None

    @field_validator("types", "entities", mode="before")
    @classmethod
    def null_to_list(cls, value):
        return value or []


class _AIParsedQuery(BaseModel):
    """Shape Claude is asked to return."""

    model_config = ConfigDict(extra="ignore")

    semantic: str = ""
    filters: _AIFilters = _AIFilters()
    keywords: List[str] = []
    explanation: Optional[str] = None

    @field_validator("keywords", mode="before")
    @classmethod
    def null_to_list(cls, value):
        return value or []

    @field_validator("semantic", mode="before")
    @classmethod
    def null_to_str(cls, value):
        return value or ""

    @field_validator("filters", mode="before")
    @classmethod
    def null_to_filters(cls, value):
        return value or {}


async def parse_with_ai(query: str, client: ClaudeClient, now: Optional[datetime] = None) -> ParsedQuery:
    """Claude-assisted parse; any failure degrades to :func:`parse_simple`."""

    prompt = AI_PARSE_PROMPT.format(query=json.dumps(query), types=", ".join(CONTENT_TYPES))
    try:
        reply = await client.complete(prompt, max_tokens=2048)
        parsed = _AIParsedQuery.model_validate(extract_json_object(reply))
        ai_filters = parsed.filters
        price = ai_filters.priceRange
        filters = QueryFilters(
            types=_known_types(ai_filters.types),
            date_range=date_range_for_phrase(ai_filters.datePhrase, now),
            author=(ai_filters.author or "").strip() or None,
            entities=[e for e in ai_filters.entities if e],
            price_range=_price_range(price.min, price.max) if price else None,
        )
    except (ClassificationError, ValidationError, ValueError) as e:
        logger.warning(f"AI query parsing failed, falling back to simple parser: {e}")
        return parse_simple(query, now=now)

    return ParsedQuery(
        semantic=parsed.semantic.strip(),
        filters=filters,
        keywords=[k for k in parsed.keywords if k],
        explanation=parsed.explanation or "",
    )


async def parse(query: str, use_ai: bool = True, client: Optional[ClaudeClient] = None,
                now: Optional[datetime] = None) -> ParsedQuery:
    if use_ai and client is not None:
        return await parse_with_ai(query, client, now=now)
    return parse_simple(query, now=now)


# ─── Filtering ──────────────────────────────────────────────────────────────

def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _metadata(item: Mapping[str, Any]) -> Mapping[str, Any]:
    return item.get("metadata") or {}


def _item_price(item: Mapping[str, Any]) -> Optional[float]:
    price = _metadata(item).get("price")
    if price is None or isinstance(price, bool):
        return None
    if isinstance(price, (int, float)):
        return float(price)
    digits = re.sub(r"[^0-9.]", "", str(price))
    try:
        return float(digits)
    except ValueError:
        return None


def _item_created_at(item: Mapping[str, Any]) -> Optional[datetime]:
    return _parse_timestamp(item.get("createdAt", item.get("created_at")))


def apply_filters(
    items: Iterable[Mapping[str, Any]],
    filters: Union[QueryFilters, Mapping[str, Any], None],
) -> List[Mapping[str, Any]]:
    """Keep the items that satisfy every active filter."""

    if filters is None:
        return list(items)
    if not isinstance(filters, QueryFilters):
        filters = QueryFilters.from_api(filters)

    predicates: List[Callable[[Mapping[str, Any]], bool]] = []

    if filters.types:
        wanted = set(filters.types)
        predicates.append(lambda item: item.get("type") in wanted)

    if filters.date_range:
        window = filters.date_range

        def in_window(item):
            created = _item_created_at(item)
            return created is not None and window.contains(created)
        predicates.append(in_window)

    if filters.author:
        needle = filters.author.lower()
        predicates.append(
            lambda item: needle in str(_metadata(item).get("author") or "").lower()
        )

    if filters.price_range:
        bounds = filters.price_range

        def in_budget(item):
            price = _item_price(item)
            return price is not None and bounds.contains(price)
        predicates.append(in_budget)

    return [item for item in items if all(check(item) for check in predicates)]
