"""iCalendar feed support: lightweight VEVENT extraction and feed fetching.

Only the DTSTART/DTEND instants of timed events are extracted. Everything else
in the feed, including all-day events, is ignored.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List

import requests

from ..availability.errors import MalformedInputError, ProviderError
from ..availability.models import BusyBlock
from ..availability.projector import resolve_timezone

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0

_DATE_ONLY = re.compile(r"^\d{8}$")
_DATE_TIME = re.compile(r"^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})$")


@dataclass
class _EventState:
    properties: dict[str, datetime] = field(default_factory=dict)
    all_day: bool = False
    malformed: bool = False
    nested_depth: int = 0


def parse_ical(text: str) -> List[BusyBlock]:
    """Parse raw iCalendar text into busy blocks.

    Malformed or partial events are dropped one at a time; they never abort
    the rest of the feed.
    """

    blocks: List[BusyBlock] = []
    event: _EventState | None = None

    for line in _unfold_lines(text):
        upper = line.upper()
        if upper == "BEGIN:VEVENT":
            event = _EventState()
            continue
        if event is None:
            continue

        # END:VEVENT closes the event even when a sub-component was left open.
        if upper == "END:VEVENT":
            block = _finish_event(event)
            if block is not None:
                blocks.append(block)
            event = None
            continue

        # Sub-components such as VALARM carry their own properties.
        if upper.startswith("BEGIN:"):
            event.nested_depth += 1
            continue
        if upper.startswith("END:"):
            event.nested_depth = max(0, event.nested_depth - 1)
            continue
        if event.nested_depth:
            continue

        name, params, value = _split_property(line)
        if name not in {"DTSTART", "DTEND"}:
            continue
        if params.get("VALUE", "").upper() == "DATE":
            event.all_day = True
            continue
        try:
            parsed = _parse_ical_datetime(value, params.get("TZID"))
        except MalformedInputError as exc:
            logger.debug("Dropping event with unparseable %s: %s", name, exc)
            event.malformed = True
            continue
        if parsed is None:
            event.all_day = True
            continue
        event.properties[name] = parsed

    return blocks


def validate_feed_url(url: str) -> str:
    """Normalise a subscribed feed URL, rejecting anything that is not HTTP(S)."""

    candidate = (url or "").strip()
    if candidate.lower().startswith("webcal://"):
        candidate = "https://" + candidate[len("webcal://"):]
    if not candidate.lower().startswith(("http://", "https://")):
        raise MalformedInputError("Invalid iCal URL")
    return candidate


FeedFetcher = Callable[[str, float], tuple[int, str]]


class IcalFeedClient:
    """Fetches subscribed iCalendar feeds and extracts their busy blocks."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        fetcher: FeedFetcher | None = None,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self._timeout = timeout
        self._fetcher = fetcher or _default_feed_fetcher
        self._logger = logger_instance or logger

    def fetch_busy_blocks(self, url: str) -> List[BusyBlock]:
        status_code, body = self._fetcher(validate_feed_url(url), self._timeout)
        if not 200 <= status_code < 300:
            self._logger.warning("iCal feed returned HTTP %s", status_code)
            raise ProviderError(f"Failed to fetch iCal feed: {status_code}")

        blocks = parse_ical(body)
        self._logger.info("Parsed %s busy blocks from iCal feed", len(blocks))
        return blocks


def _finish_event(event: _EventState) -> BusyBlock | None:
    if event.all_day or event.malformed:
        return None
    start = event.properties.get("DTSTART")
    end = event.properties.get("DTEND")
    if start is None or end is None:
        logger.debug("Dropping event without DTSTART/DTEND")
        return None
    if end <= start:
        logger.debug("Dropping event ending at or before its start (%s - %s)", start, end)
        return None
    return BusyBlock(start=start, end=end)


def _unfold_lines(text: str) -> List[str]:
    normalised = text.replace("\r\n", "\n").replace("\r", "\n")
    unfolded = re.sub(r"\n[ \t]", "", normalised)
    return [line.strip() for line in unfolded.split("\n") if line.strip()]


def _split_property(line: str) -> tuple[str, dict[str, str], str]:
    in_quotes = False
    colon = -1
    for index, char in enumerate(line):
        if char == '"':
            in_quotes = not in_quotes
        elif char == ":" and not in_quotes:
            colon = index
            break
    if colon == -1:
        return "", {}, ""

    head, value = line[:colon], line[colon + 1:].strip()
    name, *raw_params = head.split(";")
    params: dict[str, str] = {}
    for raw in raw_params:
        key, _, param_value = raw.partition("=")
        params[key.strip().upper()] = param_value.strip().strip('"')
    return name.strip().upper(), params, value


def _parse_ical_datetime(value: str, tzid: str | None) -> datetime | None:
    """Parse a DTSTART/DTEND value; ``None`` marks an all-day date."""

    if _DATE_ONLY.match(value):
        return None

    is_utc = value.upper().endswith("Z")
    raw = value[:-1] if is_utc else value
    match = _DATE_TIME.match(raw)
    if not match:
        raise MalformedInputError(f"Unsupported date-time value {value!r}")
    try:
        naive = datetime(*(int(part) for part in match.groups()))
    except ValueError as exc:
        raise MalformedInputError(f"Invalid date-time value {value!r}") from exc

    if is_utc:
        return naive.replace(tzinfo=timezone.utc)
    # Floating times and unknown TZIDs are read as UTC.
    return naive.replace(tzinfo=resolve_timezone(tzid))


def _default_feed_fetcher(url: str, timeout: float) -> tuple[int, str]:
    try:
        response = requests.get(url, headers={"Accept": "text/calendar"}, timeout=timeout)
    except requests.Timeout as exc:
        raise ProviderError(f"Timed out fetching iCal feed after {timeout:g}s") from exc
    except requests.RequestException as exc:
        raise ProviderError(f"Failed to fetch iCal feed: {exc}") from exc
    return response.status_code, response.text
