from __future__ import annotations

from typing import Mapping

from shiftsync.models import AuthConfig


class AccessPolicy:
    def __init__(self, config: AuthConfig) -> None:
        self.config = config

    def authenticate(self, headers: Mapping[str, str]) -> str | None:
        header = str(headers.get("authorization", "") or "").strip()
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return self.config.api_tokens.get(token.strip())

    def can_edit(self, user_id: str | None, calendar_id: str) -> bool:
        if not self.config.enabled:
            return True
        if not user_id:
            return False
        return user_id in self.config.calendar_owners.get(calendar_id, [])

    def can_view(self, user_id: str | None, calendar_id: str) -> bool:
        return self.can_edit(user_id, calendar_id)
