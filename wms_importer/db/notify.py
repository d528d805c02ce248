from __future__ import annotations

import logging
import select
from collections.abc import Iterator
from typing import Any

from ..services.changes import ChangeEvent
from .batch_upsert import quote_ident

"""Change notifications over PostgreSQL LISTEN / NOTIFY.

``PgNotifyPublisher`` is a ChangeBus subscriber (or a direct notifier) that
sends each ChangeEvent as JSON with pg_notify. ``listen`` yields the events
other importers publish, so a long-running consumer can refresh its lists.
"""

__all__ = [
    "DEFAULT_CHANNEL",
    "PgNotifyPublisher",
    "listen",
]

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "wms_changes"


class PgNotifyPublisher:
    def __init__(self, connection: Any, channel: str = DEFAULT_CHANNEL) -> None:
        self.connection = connection
        self.channel = channel

    def __call__(self, event: ChangeEvent) -> None:
        try:
            with self.connection.cursor() as cur:
                cur.execute("SELECT pg_notify(%s, %s)", (self.channel, event.to_json()))
            self.connection.commit()
        except Exception:
            self.connection.rollback()
            raise


def listen(
    connection: Any,
    channel: str = DEFAULT_CHANNEL,
    timeout: float = 5.0,
    max_events: int | None = None,
) -> Iterator[ChangeEvent]:
    """Yield ChangeEvents until ``timeout`` seconds pass without one or
    ``max_events`` were received. ``connection`` must be in autocommit mode."""
    with connection.cursor() as cur:
        cur.execute(f"LISTEN {quote_ident(channel)}")
    received = 0
    while True:
        readable, _, _ = select.select([connection], [], [], timeout)
        if not readable:
            logger.debug("listen channel=%s idle for %.1fs, stopping", channel, timeout)
            return
        connection.poll()
        while connection.notifies:
            notify = connection.notifies.pop(0)
            try:
                event = ChangeEvent.from_json(notify.payload)
            except ValueError as e:
                logger.warning("ignoring notification on %s: %s", channel, e)
                continue
            yield event
            received += 1
            if max_events is not None and received >= max_events:
                return
