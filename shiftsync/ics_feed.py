from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from datetime import date, datetime, time, timedelta, timezone
from time import monotonic
from typing import Any
from urllib.parse import urljoin
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import recurring_ical_events
import requests
from icalendar import Calendar as ICalendar

from shiftsync.errors import ContentError, SecurityRejection, TransientError
from shiftsync.models import UNTITLED_EVENT, RemoteEvent, SecurityConfig, SyncConfig
from shiftsync.url_classifier import (
    log_rejection,
    normalize_fetch_url,
    rejection_message,
    validate_calendar_url,
)

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = "data:text/calendar;base64,"
MAX_REDIRECTS = 5
DAY_START = "00:00"
DAY_END = "23:59"


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _hash_text(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()  # nosec B324


def is_data_url(url: str) -> bool:
    return str(url or "").startswith("data:")


def encode_data_url(content: str) -> str:
    return DATA_URL_PREFIX + base64.b64encode(content.encode("utf-8")).decode("ascii")


def decode_data_url(url: str) -> str:
    header, _, payload = str(url or "").partition(",")
    if not header.startswith("data:") or not payload:
        raise ContentError("Embedded calendar data is missing")
    if not header.endswith(";base64"):
        return payload
    try:
        return base64.b64decode(payload, validate=True).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError) as exc:
        raise ContentError("Embedded calendar data is not valid base64") from exc


def validate_ics_content(content: Any) -> ICalendar:
    if not isinstance(content, (str, bytes)):
        raise ContentError("Invalid ICS file format or file contains no events")
    text = _decode_raw_ical(content).lstrip("\ufeff").strip()
    if not text:
        raise ContentError("ICS content is empty")
    upper = text.upper()
    if not upper.startswith("BEGIN:VCALENDAR") or "END:VCALENDAR" not in upper:
        raise ContentError("Invalid ICS file format: missing VCALENDAR envelope")
    try:
        calendar_obj = ICalendar.from_ical(text)
    except Exception as exc:
        raise ContentError("Failed to parse calendar data. Invalid ICS format.") from exc
    if not any(component.name == "VEVENT" for component in calendar_obj.walk()):
        raise ContentError("Invalid ICS file format or file contains no events")
    return calendar_obj


def _resolve_tz(name: str) -> ZoneInfo | timezone:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", name)
        return timezone.utc


def _decoded(component: Any, key: str) -> Any:
    prop = component.get(key)
    if prop is None:
        return None
    return getattr(prop, "dt", prop)


def _is_all_day(value: Any) -> bool:
    return isinstance(value, date) and not isinstance(value, datetime)


def _stamp(value: Any) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            return value.strftime("%Y%m%dT%H%M%SZ")
        return value.strftime("%Y%m%dT%H%M%S")
    if isinstance(value, date):
        return value.strftime("%Y%m%d")
    return str(value)


def _localize(value: datetime, tz: ZoneInfo | timezone) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)


def _event_end(component: Any, start: Any) -> Any:
    end = _decoded(component, "DTEND")
    if end is not None:
        return end
    duration = _decoded(component, "DURATION")
    if isinstance(duration, timedelta):
        return start + duration
    if _is_all_day(start):
        return start + timedelta(days=1)
    return start


def split_into_days(
    start: date | datetime,
    end: date | datetime,
    tz: ZoneInfo | timezone,
) -> list[tuple[str, str, str]]:
    if _is_all_day(start):
        end_date = end if _is_all_day(end) else end.date()
        if end_date <= start:
            end_date = start + timedelta(days=1)
        span = (end_date - start).days
        return [
            ((start + timedelta(days=offset)).isoformat(), DAY_START, DAY_END)
            for offset in range(span)
        ]

    start_local = _localize(start, tz)
    end_local = _localize(end, tz) if isinstance(end, datetime) else start_local
    if end_local < start_local:
        end_local = start_local
    last_date = end_local.date()
    ends_at_midnight = end_local.time() == time.min and last_date > start_local.date()
    if ends_at_midnight:
        last_date -= timedelta(days=1)

    entries: list[tuple[str, str, str]] = []
    current = start_local.date()
    while current <= last_date:
        first = current == start_local.date()
        last = current == last_date
        start_text = start_local.strftime("%H:%M") if first else DAY_START
        end_text = end_local.strftime("%H:%M") if last and not ends_at_midnight else DAY_END
        entries.append((current.isoformat(), start_text, end_text))
        current += timedelta(days=1)
    return entries


def parse_events(
    content: str | ICalendar,
    window_start: datetime,
    window_end: datetime,
    tz_name: str = "UTC",
) -> list[RemoteEvent]:
    calendar_obj = content if isinstance(content, ICalendar) else validate_ics_content(content)
    tz = _resolve_tz(tz_name)
    try:
        occurrences = list(recurring_ical_events.of(calendar_obj).between(window_start, window_end))
    except Exception as exc:
        raise ContentError(f"Failed to expand calendar events: {exc}") from exc

    uid_counts: dict[str, int] = {}
    for occurrence in occurrences:
        uid = str(occurrence.get("UID", "")).strip()
        uid_counts[uid] = uid_counts.get(uid, 0) + 1

    events: list[RemoteEvent] = []
    seen: set[str] = set()
    for occurrence in occurrences:
        start = _decoded(occurrence, "DTSTART")
        if not isinstance(start, date):
            continue
        end = _event_end(occurrence, start)
        title = str(occurrence.get("SUMMARY", "") or "").strip() or UNTITLED_EVENT
        notes = str(occurrence.get("DESCRIPTION", "") or "").strip() or None

        uid = str(occurrence.get("UID", "")).strip()
        if not uid:
            uid = _hash_text(f"{title}|{_stamp(start)}")
        recurring = any(key in occurrence for key in ("RECURRENCE-ID", "RRULE", "RDATE"))
        if recurring or uid_counts.get(uid, 0) > 1:
            recurrence = _decoded(occurrence, "RECURRENCE-ID") or start
            base_id = f"{uid}_{_stamp(recurrence)}"
        else:
            base_id = uid

        days = split_into_days(start, end, tz)
        for index, (day, start_time, end_time) in enumerate(days):
            remote_id = f"{base_id}_day{index}" if len(days) > 1 else base_id
            if remote_id in seen:
                continue
            seen.add(remote_id)
            events.append(
                RemoteEvent(
                    remote_id=remote_id,
                    date=day,
                    start_time=start_time,
                    end_time=end_time,
                    title=title,
                    notes=notes,
                    is_all_day=_is_all_day(start),
                )
            )
    events.sort(key=lambda item: (item.date, item.start_time, item.remote_id))
    return events


def sync_window(now: datetime, config: SyncConfig) -> tuple[datetime, datetime]:
    now_utc = now.astimezone(timezone.utc)
    return (
        now_utc - timedelta(days=config.window_days_back),
        now_utc + timedelta(days=config.window_days_forward),
    )


class FeedFetcher:
    def __init__(self, sync_config: SyncConfig, security: SecurityConfig) -> None:
        self.sync_config = sync_config
        self.security = security

    def fetch(self, url: str, sync_type: str | None = None) -> str:
        if is_data_url(url):
            return decode_data_url(url)
        timeout = self.sync_config.fetch_timeout_seconds
        deadline = monotonic() + timeout
        target = self._checked_target(url, sync_type, "Calendar URL rejected")
        for _ in range(MAX_REDIRECTS + 1):
            remaining = self._remaining(deadline)
            try:
                response = requests.get(
                    target,
                    timeout=remaining,
                    headers={"User-Agent": self.sync_config.user_agent, "Accept": "text/calendar, */*"},
                    allow_redirects=False,
                    stream=True,
                )
            except requests.Timeout as exc:
                raise TransientError(f"Request timed out after {timeout} seconds") from exc
            except requests.RequestException as exc:
                raise TransientError(f"Failed to fetch calendar: {exc}") from exc

            try:
                if response.is_redirect:
                    next_url = urljoin(target, response.headers.get("Location", ""))
                    target = self._checked_target(next_url, sync_type, "Calendar redirect rejected")
                    continue
                if response.status_code >= 400:
                    raise TransientError(
                        f"Failed to fetch calendar: HTTP {response.status_code} {response.reason or ''}".strip()
                    )
                return _decode_raw_ical(self._read_body(response, deadline))
            finally:
                response.close()
        raise TransientError("Failed to fetch calendar: too many redirects")

    def _checked_target(self, url: str, sync_type: str | None, prefix: str) -> str:
        reason = validate_calendar_url(url, sync_type, self.security)
        if reason:
            log_rejection(url, reason, sync_type or "custom")
            raise SecurityRejection(
                f"{prefix}: {rejection_message(reason, sync_type or 'custom')}",
                reason=reason,
            )
        return normalize_fetch_url(url)

    def _remaining(self, deadline: float) -> float:
        remaining = deadline - monotonic()
        if remaining <= 0:
            raise TransientError(
                f"Request timed out after {self.sync_config.fetch_timeout_seconds} seconds"
            )
        return remaining

    def _read_body(self, response: Any, deadline: float) -> bytes:
        limit = self.sync_config.max_feed_bytes
        chunks: list[bytes] = []
        size = 0
        try:
            for chunk in response.iter_content(chunk_size=65536):
                self._remaining(deadline)
                if not chunk:
                    continue
                size += len(chunk)
                if size > limit:
                    raise ContentError(f"Calendar feed exceeds {limit} bytes")
                chunks.append(chunk)
        except requests.Timeout as exc:
            raise TransientError("Request timed out while reading calendar") from exc
        except requests.RequestException as exc:
            raise TransientError(f"Failed to read calendar: {exc}") from exc
        return b"".join(chunks)
