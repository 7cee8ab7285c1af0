"""Ordered per-run event log with synchronous fan-out to subscribers."""

from __future__ import annotations

import logging
import queue
import threading
import uuid
from collections import deque
from typing import Any, Iterable, Iterator, Optional

from ..domain.models import LifecycleEvent, RunTerminal, now_iso
from ..storage.interfaces import EventRepository

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """A live stream of event records; iterate it or poll with ``get``.

    Records arrive in publication order. The stream ends when ``close`` is
    called, either by the holder or by the bus.
    """

    def __init__(
        self,
        bus: "EventBus",
        *,
        run_id: Optional[str] = None,
        channels: Optional[Iterable[str]] = None,
    ) -> None:
        self._bus = bus
        self.run_id = run_id
        self.channels = frozenset(channels) if channels else None
        self._queue: queue.Queue[Any] = queue.Queue()
        self._closed = threading.Event()

    def matches(self, record: dict[str, Any]) -> bool:
        if self.run_id is not None and record.get("run_id") != self.run_id:
            return False
        if self.channels is not None and record.get("channel") not in self.channels:
            return False
        return True

    def _offer(self, record: dict[str, Any]) -> None:
        if not self._closed.is_set() and self.matches(record):
            self._queue.put(record)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def get(self, timeout: Optional[float] = None) -> Optional[dict[str, Any]]:
        """Next record, or ``None`` on timeout or after the stream closed."""
        if self._closed.is_set() and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._queue.put(_CLOSED)
            return None
        return item

    def drain(self) -> list[dict[str, Any]]:
        """Every record already queued, without blocking."""
        items: list[dict[str, Any]] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return items
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return items
            items.append(item)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._bus._remove(self)
        self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return
            yield item

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class EventBus:
    """Append lifecycle events to per-run logs and fan them out to subscribers.

    Delivery is at-least-once per live subscriber and in emission order for
    every run. Late subscribers only see new events unless they ask for
    ``replay``, which hands them the run's log first with no gap or overlap.

    Logs of finished runs (those that published ``run-terminal``) stay in
    memory up to ``retain_finished``; older ones are dropped and served from
    the repository instead.
    """

    def __init__(self, repo: Optional[EventRepository] = None, *, retain_finished: int = 256) -> None:
        self._repo = repo
        self._retain_finished = max(0, retain_finished)
        self._lock = threading.Lock()
        self._logs: dict[str, list[dict[str, Any]]] = {}
        self._finished: deque[str] = deque()
        self._subscribers: list[Subscription] = []

    def publish(self, run_id: str, event: LifecycleEvent) -> dict[str, Any]:
        """Record ``event`` for ``run_id`` and deliver it to every matching subscriber.

        Returns:
            dict[str, Any]: The envelope with its per-run ``seq``.
        """
        with self._lock:
            log = self._logs.setdefault(run_id, [])
            record = {
                "id": f"evt-{uuid.uuid4().hex[:10]}",
                "seq": len(log) + 1,
                "ts": now_iso(),
                "run_id": run_id,
                "channel": event.channel,
                "type": event.event_type,
                "payload": event.payload(),
            }
            log.append(record)
            if self._repo is not None:
                try:
                    self._repo.append(dict(record))
                except OSError:
                    logger.exception("Failed to persist event %s for run %s", record["type"], run_id)
            for subscriber in list(self._subscribers):
                subscriber._offer(record)
            if isinstance(event, RunTerminal):
                self._finished.append(run_id)
                while len(self._finished) > self._retain_finished:
                    self._logs.pop(self._finished.popleft(), None)
        logger.debug("run %s event #%s %s", run_id, record["seq"], record["type"])
        return record

    def subscribe(
        self,
        run_id: Optional[str] = None,
        *,
        channels: Optional[Iterable[str]] = None,
        replay: bool = False,
    ) -> Subscription:
        """Open a subscription, optionally scoped to one run and some channels.

        Args:
            run_id (Optional[str]): Only deliver events of this run.
            channels (Optional[Iterable[str]]): Only deliver these channels.
            replay (bool): Deliver the run's existing log before live events.
                Requires ``run_id``.
        """
        if replay and run_id is None:
            raise ValueError("replay requires a run_id")
        subscription = Subscription(self, run_id=run_id, channels=channels)
        with self._lock:
            if replay and run_id is not None:
                for record in self._log_for(run_id):
                    subscription._offer(record)
            self._subscribers.append(subscription)
        return subscription

    def _log_for(self, run_id: str) -> list[dict[str, Any]]:
        log = self._logs.get(run_id)
        if log is not None:
            return list(log)
        if self._repo is not None:
            return self._repo.list_for_run(run_id)
        return []

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def history(self, run_id: str) -> list[dict[str, Any]]:
        """The run's events in emission order; falls back to the persisted log."""
        with self._lock:
            return self._log_for(run_id)

    def close(self) -> None:
        """End every open subscription."""
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.close()
