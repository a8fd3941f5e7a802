"""
In-process realtime change feed.

Mirrors the managed realtime service the dashboard listens to: a client opens
a named channel, binds callbacks to (event, table, filter) triples and
subscribes. Writers publish row changes after commit; every matching binding
gets the new row, in publish order.
"""
import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

Callback = Callable[[Dict[str, Any]], None]


def parse_filter(filter_expr: Optional[str]):
    """Parse ``column=eq.value`` into ``(column, value)``."""
    if not filter_expr:
        return None
    column, sep, rest = filter_expr.partition("=")
    if not sep or not rest.startswith("eq."):
        raise ValueError(f"Unsupported realtime filter: {filter_expr}")
    return column, rest[len("eq."):]


class Binding:
    def __init__(self, event: str, table: str, filter_expr: Optional[str], callback: Callback):
        self.event = event.upper()
        self.table = table
        self.filter = parse_filter(filter_expr)
        self.callback = callback

    def matches(self, table: str, event: str, row: Dict[str, Any]) -> bool:
        if table != self.table:
            return False
        if self.event != "*" and event.upper() != self.event:
            return False
        if self.filter:
            column, value = self.filter
            return row.get(column) is not None and str(row.get(column)) == value
        return True


class Channel:
    def __init__(self, hub: "RealtimeHub", name: str):
        self.hub = hub
        self.name = name
        self.bindings: List[Binding] = []
        self.subscribed = False

    def on(self, event: str, table: str, callback: Callback, filter: Optional[str] = None) -> "Channel":
        self.bindings.append(Binding(event, table, filter, callback))
        return self

    def subscribe(self) -> "Channel":
        self.hub._add(self)
        self.subscribed = True
        return self

    def unsubscribe(self):
        self.hub.remove_channel(self)


class RealtimeHub:
    """Routes published row changes to subscribed channels."""

    def __init__(self):
        self._channels: List[Channel] = []
        self.lock = threading.Lock()

    def channel(self, name: str) -> Channel:
        return Channel(self, name)

    def _add(self, channel: Channel):
        with self.lock:
            if channel not in self._channels:
                self._channels.append(channel)

    def remove_channel(self, channel: Channel) -> bool:
        with self.lock:
            channel.subscribed = False
            if channel in self._channels:
                self._channels.remove(channel)
                return True
            return False

    def active_channels(self) -> List[str]:
        with self.lock:
            return [c.name for c in self._channels]

    def publish(self, table: str, event: str, row: Dict[str, Any]) -> int:
        """Deliver a row change to every matching binding. Returns the delivery count."""
        with self.lock:
            channels = list(self._channels)

        delivered = 0
        for channel in channels:
            for binding in channel.bindings:
                if not binding.matches(table, event, row):
                    continue
                try:
                    binding.callback(dict(row))
                    delivered += 1
                except Exception:
                    logger.exception("Realtime callback on channel %s failed", channel.name)
        return delivered

    def subscribe(self, name: str, event: str, table: str, callback: Callback,
                  filter: Optional[str] = None) -> Callable[[], None]:
        """Open a single-binding channel; returns the teardown closure."""
        channel = self.channel(name).on(event, table, callback, filter=filter).subscribe()

        def unsubscribe():
            self.remove_channel(channel)

        return unsubscribe


class AccessEventWindow:
    """
    Most-recent-first window over streamed access events.

    New rows are prepended and the window is truncated to ``limit``. A row
    whose id was already seen is ignored, so duplicate deliveries are harmless.
    """

    def __init__(self, limit: int = 50, initial: Optional[List[Dict[str, Any]]] = None):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.events: Deque[Dict[str, Any]] = deque(maxlen=limit)
        self._seen: Set[str] = set()
        for row in reversed(initial or []):
            self.push(row)

    def push(self, row: Dict[str, Any]) -> bool:
        event_id = row.get("id")
        if event_id is not None and event_id in self._seen:
            return False
        if len(self.events) == self.limit:
            dropped = self.events.pop()
            self._seen.discard(dropped.get("id"))
        self.events.appendleft(row)
        if event_id is not None:
            self._seen.add(event_id)
        return True

    def __len__(self):
        return len(self.events)

    def to_list(self) -> List[Dict[str, Any]]:
        return list(self.events)
