"""Conversation persistence."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Iterable, Protocol, Sequence

from hybridrag.models import Message, Role


class MessageStore(Protocol):
    """Persistence contract for chat turns."""

    def create_message(
        self, role: Role, content: str, *, user_id: str, workspace_id: str | None = None
    ) -> Message:
        """Persist and return a new message."""

    def list_messages(
        self, *, user_id: str, workspace_id: str | None = None, limit: int | None = None
    ) -> Sequence[Message]:
        """Return messages in ``created_at`` order; ``limit`` keeps the newest ones."""


class InMemoryMessageStore:
    """Thread-safe process-local message store."""

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._lock = threading.Lock()

    def create_message(
        self, role: Role, content: str, *, user_id: str, workspace_id: str | None = None
    ) -> Message:
        message = Message(role=role, content=content, user_id=user_id, workspace_id=workspace_id)
        with self._lock:
            self._messages.append(message)
        return message

    def list_messages(
        self, *, user_id: str, workspace_id: str | None = None, limit: int | None = None
    ) -> Sequence[Message]:
        with self._lock:
            selected = [
                m for m in self._messages if m.user_id == user_id and m.workspace_id == workspace_id
            ]
        selected.sort(key=lambda m: m.created_at)
        if limit is not None:
            selected = selected[-limit:] if limit > 0 else []
        return selected


def daily_activity(
    messages: Iterable[Message], *, days: int = 7, now: datetime | None = None
) -> list[dict[str, object]]:
    """Messages per UTC day for the last ``days`` days, oldest first."""

    today = (now or datetime.now(timezone.utc)).date()
    buckets = {(today - timedelta(days=offset)).isoformat(): 0 for offset in range(days)}
    for message in messages:
        key = message.created_at.date().isoformat()
        if key in buckets:
            buckets[key] += 1
    return [{"date": day, "count": buckets[day]} for day in sorted(buckets)]
