from __future__ import annotations

import logging
import uuid
from typing import Any, Callable

from shiftsync.errors import NotFoundError, SecurityRejection, ValidationError
from shiftsync.events import ChangeBroadcaster, ChangeEvent
from shiftsync.ics_feed import encode_data_url, validate_ics_content
from shiftsync.models import (
    DEFAULT_DISPLAY_MODE,
    DEFAULT_SYNC_COLOR,
    SYNC_TYPES,
    VALID_SYNC_INTERVALS,
    ExternalSync,
    SecurityConfig,
    utc_now,
)
from shiftsync.state_store import StateStore
from shiftsync.url_classifier import (
    detect_sync_type,
    log_rejection,
    rejection_message,
    validate_calendar_url,
)

logger = logging.getLogger(__name__)

FIELD_COLUMNS = {
    "name": "name",
    "calendarUrl": "calendar_url",
    "color": "color",
    "displayMode": "display_mode",
    "autoSyncInterval": "auto_sync_interval",
    "isHidden": "is_hidden",
    "hideFromStats": "hide_from_stats",
}


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _flag(value: Any, name: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be true or false")
    return value


def validate_interval(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or value not in VALID_SYNC_INTERVALS:
        allowed = ", ".join(str(x) for x in VALID_SYNC_INTERVALS)
        raise ValidationError(f"Invalid auto-sync interval. Must be one of: {allowed} minutes")
    return value


def check_calendar_url(url: str, sync_type: str, security: SecurityConfig) -> None:
    reason = validate_calendar_url(url, sync_type, security)
    if reason:
        log_rejection(url, reason, sync_type)
        raise SecurityRejection(rejection_message(reason, sync_type), reason=reason)


class ExternalSyncRegistry:
    def __init__(
        self,
        state_store: StateStore,
        broadcaster: ChangeBroadcaster,
        security_provider: Callable[[], SecurityConfig] | None = None,
    ) -> None:
        self.state_store = state_store
        self.broadcaster = broadcaster
        self.security_provider = security_provider or SecurityConfig

    def create(self, payload: dict[str, Any]) -> ExternalSync:
        calendar_id = _text(payload.get("calendarId"))
        name = _text(payload.get("name"))
        if not calendar_id or not name:
            raise ValidationError("Calendar ID and name are required")

        ics_content = payload.get("icsContent")
        calendar_url = _text(payload.get("calendarUrl"))
        if ics_content is not None and (ics_content != "" or not calendar_url):
            validate_ics_content(ics_content)
            if isinstance(ics_content, bytes):
                ics_content = ics_content.decode("utf-8", errors="replace")
            sync_type = "custom"
            is_one_time_import = True
            final_url = encode_data_url(ics_content)
            interval = 0
        elif calendar_url:
            claimed = _text(payload.get("syncType")).lower()
            if claimed and claimed not in SYNC_TYPES:
                raise ValidationError(f"Invalid sync type. Must be one of: {', '.join(SYNC_TYPES)}")
            sync_type = claimed or detect_sync_type(calendar_url)
            check_calendar_url(calendar_url, sync_type, self.security_provider())
            is_one_time_import = False
            final_url = calendar_url
            interval = validate_interval(payload.get("autoSyncInterval"))
        else:
            raise ValidationError("Either calendar URL or ICS content is required")

        now = utc_now()
        record = ExternalSync(
            id=str(uuid.uuid4()),
            calendar_id=calendar_id,
            name=name,
            sync_type=sync_type,
            calendar_url=final_url,
            color=_text(payload.get("color")) or DEFAULT_SYNC_COLOR,
            display_mode=_text(payload.get("displayMode")) or DEFAULT_DISPLAY_MODE,
            auto_sync_interval=interval,
            is_one_time_import=is_one_time_import,
            is_hidden=_flag(payload.get("isHidden"), "isHidden"),
            hide_from_stats=_flag(payload.get("hideFromStats"), "hideFromStats"),
            created_at=now,
            updated_at=now,
        )
        created = self.state_store.create_external_sync(record)
        logger.info(
            "Created %s external sync %s for calendar %s (interval=%d, one_time=%s)",
            created.sync_type,
            created.id,
            created.calendar_id,
            created.auto_sync_interval,
            created.is_one_time_import,
        )
        self._publish("create", created)
        return created

    def list_for_calendar(self, calendar_id: str) -> list[ExternalSync]:
        if not _text(calendar_id):
            raise ValidationError("Calendar ID is required")
        return self.state_store.list_external_syncs(_text(calendar_id))

    def get(self, sync_id: str) -> ExternalSync:
        record = self.state_store.get_external_sync(sync_id)
        if record is None:
            raise NotFoundError("External sync not found")
        return record

    def update(self, sync_id: str, payload: dict[str, Any]) -> ExternalSync:
        existing = self.get(sync_id)
        fields: dict[str, Any] = {}
        for key, column in FIELD_COLUMNS.items():
            if key in payload and payload[key] is not None:
                fields[column] = payload[key]

        if "name" in fields:
            fields["name"] = _text(fields["name"])
            if not fields["name"]:
                raise ValidationError("Name cannot be empty")
        if "calendar_url" in fields:
            if existing.is_one_time_import:
                raise ValidationError("Calendar URL cannot be changed for a one-time import")
            fields["calendar_url"] = _text(fields["calendar_url"])
            check_calendar_url(fields["calendar_url"], existing.sync_type, self.security_provider())
        if "auto_sync_interval" in fields:
            fields["auto_sync_interval"] = validate_interval(fields["auto_sync_interval"])
            if existing.is_one_time_import and fields["auto_sync_interval"] != 0:
                raise ValidationError("One-time imports cannot be auto-synced")
        for key in ("isHidden", "hideFromStats"):
            column = FIELD_COLUMNS[key]
            if column in fields:
                fields[column] = _flag(fields[column], key)
        for text_field in ("color", "display_mode"):
            if text_field in fields:
                fields[text_field] = _text(fields[text_field]) or getattr(existing, text_field)

        updated = self.state_store.update_external_sync(sync_id, fields)
        if updated is None:
            raise NotFoundError("External sync not found")
        self._publish("update", updated)
        return updated

    def delete(self, sync_id: str) -> int:
        existing = self.get(sync_id)
        deleted_shifts = self.state_store.delete_external_sync(sync_id)
        if deleted_shifts is None:
            raise NotFoundError("External sync not found")
        logger.info("Deleted external sync %s and %d imported shifts", sync_id, deleted_shifts)
        self._publish("delete", existing, {"deletedShifts": deleted_shifts})
        return deleted_shifts

    def _publish(self, action: str, record: ExternalSync, extra: dict[str, Any] | None = None) -> None:
        payload = record.to_dict()
        payload.update(extra or {})
        self.broadcaster.publish(ChangeEvent("external-sync", action, record.calendar_id, payload))
