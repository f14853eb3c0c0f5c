from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Union


VALID_SYNC_INTERVALS = (0, 5, 15, 30, 60, 120, 360, 720, 1440)
SYNC_TYPES = ("google", "icloud", "custom", "generic-webcal")
DEFAULT_SYNC_COLOR = "#3b82f6"
DEFAULT_DISPLAY_MODE = "normal"
UNTITLED_EVENT = "Untitled Event"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def _str_list(values: Any, default: list[str]) -> list[str]:
    if not isinstance(values, (list, tuple)):
        return list(default)
    return [str(x).strip().lower() for x in values if str(x).strip()]


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ServerConfig":
        data = data or {}
        return cls(
            host=str(data.get("host", "0.0.0.0")).strip() or "0.0.0.0",
            port=int(data.get("port", 8080)),
        )


@dataclass
class SyncConfig:
    tick_seconds: int = 60
    max_workers: int = 4
    fetch_timeout_seconds: int = 10
    shutdown_grace_seconds: int = 10
    window_days_back: int = 90
    window_days_forward: int = 365
    max_feed_bytes: int = 10 * 1024 * 1024
    timezone: str = "UTC"
    user_agent: str = "shiftsync/0.1"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            tick_seconds=max(5, int(data.get("tick_seconds", 60))),
            max_workers=max(1, int(data.get("max_workers", 4))),
            fetch_timeout_seconds=max(1, int(data.get("fetch_timeout_seconds", 10))),
            shutdown_grace_seconds=max(0, int(data.get("shutdown_grace_seconds", 10))),
            window_days_back=max(0, int(data.get("window_days_back", 90))),
            window_days_forward=max(1, int(data.get("window_days_forward", 365))),
            max_feed_bytes=max(1024, int(data.get("max_feed_bytes", 10 * 1024 * 1024))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            user_agent=str(data.get("user_agent", "shiftsync/0.1")).strip() or "shiftsync/0.1",
        )


@dataclass
class SecurityConfig:
    google_domains: list[str] = field(default_factory=lambda: ["google.com"])
    icloud_domains: list[str] = field(default_factory=lambda: ["icloud.com"])
    custom_allowed_domains: list[str] = field(default_factory=list)
    allow_private_hosts: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SecurityConfig":
        data = data or {}
        return cls(
            google_domains=_str_list(data.get("google_domains"), ["google.com"]) or ["google.com"],
            icloud_domains=_str_list(data.get("icloud_domains"), ["icloud.com"]) or ["icloud.com"],
            custom_allowed_domains=_str_list(data.get("custom_allowed_domains"), []),
            allow_private_hosts=bool(data.get("allow_private_hosts", False)),
        )


@dataclass
class AuthConfig:
    enabled: bool = False
    api_tokens: dict[str, str] = field(default_factory=dict)
    calendar_owners: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AuthConfig":
        data = data or {}
        tokens: dict[str, str] = {}
        raw_tokens = data.get("api_tokens", {})
        if isinstance(raw_tokens, dict):
            for token, user_id in raw_tokens.items():
                token_text = str(token).strip()
                user_text = str(user_id or "").strip()
                if token_text and user_text:
                    tokens[token_text] = user_text
        owners: dict[str, list[str]] = {}
        raw_owners = data.get("calendar_owners", {})
        if isinstance(raw_owners, dict):
            for calendar_id, users in raw_owners.items():
                cid = str(calendar_id).strip()
                if not cid:
                    continue
                if isinstance(users, str):
                    users = [users]
                owners[cid] = [str(u).strip() for u in users or [] if str(u).strip()]
        return cls(enabled=bool(data.get("enabled", False)), api_tokens=tokens, calendar_owners=owners)


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(level=str(data.get("level", "INFO")).strip().upper() or "INFO")


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            server=ServerConfig.from_dict(data.get("server")),
            sync=SyncConfig.from_dict(data.get("sync")),
            security=SecurityConfig.from_dict(data.get("security")),
            auth=AuthConfig.from_dict(data.get("auth")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class ExternalSync:
    id: str
    calendar_id: str
    name: str
    sync_type: str
    calendar_url: str
    color: str = DEFAULT_SYNC_COLOR
    display_mode: str = DEFAULT_DISPLAY_MODE
    auto_sync_interval: int = 0
    is_one_time_import: bool = False
    is_hidden: bool = False
    hide_from_stats: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_synced_at: datetime | None = None
    last_sync_status: str | None = None
    last_sync_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "calendarId": self.calendar_id,
            "name": self.name,
            "syncType": self.sync_type,
            "calendarUrl": self.calendar_url,
            "color": self.color,
            "displayMode": self.display_mode,
            "autoSyncInterval": self.auto_sync_interval,
            "isOneTimeImport": self.is_one_time_import,
            "isHidden": self.is_hidden,
            "hideFromStats": self.hide_from_stats,
            "createdAt": serialize_datetime(self.created_at),
            "updatedAt": serialize_datetime(self.updated_at),
            "lastSyncedAt": serialize_datetime(self.last_synced_at),
            "lastSyncStatus": self.last_sync_status,
            "lastSyncError": self.last_sync_error,
        }


@dataclass
class Shift:
    id: str
    calendar_id: str
    date: str
    start_time: str
    end_time: str
    title: str
    color: str = DEFAULT_SYNC_COLOR
    notes: str | None = None
    is_all_day: bool = False
    external_sync_id: str | None = None
    external_event_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_user_authored(self) -> bool:
        return not self.external_sync_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "calendarId": self.calendar_id,
            "date": self.date,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "title": self.title,
            "color": self.color,
            "notes": self.notes,
            "isAllDay": self.is_all_day,
            "externalSyncId": self.external_sync_id,
            "externalEventId": self.external_event_id,
            "syncedFromExternal": bool(self.external_sync_id),
            "createdAt": serialize_datetime(self.created_at),
            "updatedAt": serialize_datetime(self.updated_at),
        }


@dataclass
class RemoteEvent:
    remote_id: str
    date: str
    start_time: str
    end_time: str
    title: str
    notes: str | None = None
    is_all_day: bool = False


@dataclass
class DiffSummary:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    total_events: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.created or self.updated or self.deleted)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Succeeded:
    sync_id: str
    summary: DiffSummary
    trigger: str = "manual"
    calendar_id: str = ""

    ok = True

    def to_dict(self) -> dict[str, Any]:
        payload = self.summary.to_dict()
        payload.update({"syncId": self.sync_id, "calendarId": self.calendar_id, "trigger": self.trigger})
        return payload


@dataclass
class Failed:
    sync_id: str
    kind: str
    message: str
    trigger: str = "manual"

    ok = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "syncId": self.sync_id,
            "kind": self.kind,
            "message": self.message,
            "trigger": self.trigger,
        }


AttemptResult = Union[Succeeded, Failed]
