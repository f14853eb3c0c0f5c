from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from shiftsync.models import ExternalSync, RemoteEvent, Shift


COMPARED_FIELDS = ("date", "start_time", "end_time", "title", "notes", "is_all_day", "color")


@dataclass
class ShiftDiff:
    inserts: list[Shift] = field(default_factory=list)
    updates: list[Shift] = field(default_factory=list)
    deletes: list[str] = field(default_factory=list)
    unchanged: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.inserts or self.updates or self.deletes)


def _shift_from_event(sync: ExternalSync, event: RemoteEvent, now: datetime) -> Shift:
    return Shift(
        id=str(uuid.uuid4()),
        calendar_id=sync.calendar_id,
        date=event.date,
        start_time=event.start_time,
        end_time=event.end_time,
        title=event.title,
        color=sync.color,
        notes=event.notes,
        is_all_day=event.is_all_day,
        external_sync_id=sync.id,
        external_event_id=event.remote_id,
        created_at=now,
        updated_at=now,
    )


def needs_update(shift: Shift, candidate: Shift) -> bool:
    for name in COMPARED_FIELDS:
        current = getattr(shift, name)
        incoming = getattr(candidate, name)
        if name == "notes":
            current = current or None
            incoming = incoming or None
        if current != incoming:
            return True
    return False


def compute_diff(
    *,
    sync: ExternalSync,
    remote_events: Iterable[RemoteEvent],
    existing_shifts: Iterable[Shift],
    now: datetime,
) -> ShiftDiff:
    owned: dict[str, Shift] = {}
    orphaned: list[str] = []
    for shift in existing_shifts:
        if shift.external_sync_id != sync.id:
            continue
        key = shift.external_event_id or ""
        if not key or key in owned:
            orphaned.append(shift.id)
            continue
        owned[key] = shift

    diff = ShiftDiff()
    seen: set[str] = set()
    for event in remote_events:
        if not event.remote_id or event.remote_id in seen:
            continue
        seen.add(event.remote_id)
        candidate = _shift_from_event(sync, event, now)
        existing = owned.get(event.remote_id)
        if existing is None:
            diff.inserts.append(candidate)
            continue
        if needs_update(existing, candidate):
            candidate.id = existing.id
            candidate.created_at = existing.created_at
            diff.updates.append(candidate)
        else:
            diff.unchanged += 1

    diff.deletes = orphaned + [shift.id for key, shift in owned.items() if key not in seen]
    return diff
