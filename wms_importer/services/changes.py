from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass

"""Change notification: an explicit publish/subscribe interface.

The import publishes one ChangeEvent per table after its batches are written;
subscribers (an in-process list refresher, the PostgreSQL NOTIFY publisher in
``db.notify``) decide what to do with it. A failing subscriber is logged and
never breaks the import that published the event.
"""

__all__ = [
    "ALL_TABLES",
    "ChangeBus",
    "ChangeEvent",
]

logger = logging.getLogger(__name__)

ALL_TABLES = "*"
MAX_EVENT_KEYS = 100  # pg_notify payload 上限 (8000 bytes) 対策


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    action: str  # "upsert" | "insert" | "reload"
    count: int = 0
    keys: tuple[str, ...] = ()

    def to_json(self) -> str:
        data = asdict(self)
        data["keys"] = list(self.keys[:MAX_EVENT_KEYS])
        return json.dumps(data, ensure_ascii=False)

    @classmethod
    def from_json(cls, payload: str) -> ChangeEvent:
        """Raises ValueError for payloads that are not change events."""
        try:
            data = json.loads(payload)
            return cls(
                table=data["table"],
                action=data["action"],
                count=int(data.get("count", 0)),
                keys=tuple(data.get("keys", ())),
            )
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ValueError(f"invalid change event payload: {payload!r}") from e


Subscriber = Callable[[ChangeEvent], None]


class ChangeBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = {}

    def subscribe(self, table: str, callback: Subscriber) -> Callable[[], None]:
        """Subscribe to one table (or ALL_TABLES); returns the unsubscribe function."""
        self._subscribers.setdefault(table, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(table, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event``; returns the number of subscribers that accepted it."""
        targets = list(self._subscribers.get(event.table, [])) + list(
            self._subscribers.get(ALL_TABLES, [])
        )
        delivered = 0
        for callback in targets:
            try:
                callback(event)
                delivered += 1
            except Exception:
                logger.exception("change subscriber failed for table=%s", event.table)
        return delivered

    __call__ = publish
