"""
Broadcast Hub — log and status fan-out to observers

Two message classes:
- LogEntry: severity + HH:MM:SS timestamp + text
- StatusUpdate: current step, lifecycle state and the session fields
  relevant to that step

Publishing never blocks the producer:
- every observer owns a bounded inbox; when it is full the observer's
  oldest message is dropped to make room
- recent log entries are also kept in a bounded history; when that is
  full the newest entry is dropped

Observers iterate subscribe(); after HEARTBEAT_INTERVAL_SECONDS of silence
they receive a synthetic {"type": "ping"}.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Optional

from core.rules import RULES
from core.session import Address, Goods, Order, SettleDeliveryInfo, Store

logger = logging.getLogger("slotgrab.broadcast")

HEARTBEAT = {"type": "ping"}


class LogLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class RunState(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass
class LogEntry:
    time: str
    level: LogLevel
    message: str

    def to_dict(self) -> dict:
        return {"time": self.time, "level": self.level.value, "message": self.message}


@dataclass
class StatusUpdate:
    step: str
    status: RunState
    address: Optional[Address] = None
    stores: list[Store] = field(default_factory=list)
    goods: list[Goods] = field(default_factory=list)
    delivery_fee: str = ""
    time_slots: list[SettleDeliveryInfo] = field(default_factory=list)
    order: Optional[Order] = None
    error: str = ""

    def to_dict(self) -> dict:
        """camelCase wire shape; empty fields are omitted."""
        data: dict = {"step": self.step, "status": self.status.value}
        if self.address is not None:
            data["address"] = self.address.to_dict()
        if self.stores:
            data["stores"] = [s.to_dict() for s in self.stores]
        if self.goods:
            data["goodsList"] = [g.to_dict() for g in self.goods]
        if self.delivery_fee:
            data["deliveryFee"] = self.delivery_fee
        if self.time_slots:
            data["timeSlots"] = [s.to_dict() for s in self.time_slots]
        if self.order is not None:
            data["order"] = self.order.to_dict()
        if self.error:
            data["error"] = self.error
        return data


class BroadcastHub:
    """Point-to-point fan-out with per-observer bounded inboxes."""

    def __init__(
        self,
        history_size: int = RULES.LOG_HISTORY_SIZE,
        inbox_size: int = RULES.OBSERVER_INBOX_SIZE,
        heartbeat_interval: float = RULES.HEARTBEAT_INTERVAL_SECONDS,
    ):
        self._history: deque[LogEntry] = deque()
        self._history_size = history_size
        self._inbox_size = inbox_size
        self._heartbeat_interval = heartbeat_interval
        self._observers: set[asyncio.Queue] = set()
        self.last_status: Optional[StatusUpdate] = None
        self.dropped_history: int = 0
        self.dropped_inbox: int = 0

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    # ----------------------------------------------------------
    # PUBLISH
    # ----------------------------------------------------------

    def log(self, level: LogLevel, message: str) -> LogEntry:
        entry = LogEntry(
            time=datetime.now().strftime(RULES.LOG_TIME_FORMAT),
            level=level,
            message=message,
        )
        if len(self._history) < self._history_size:
            self._history.append(entry)
        else:
            self.dropped_history += 1
        self._fan_out(entry.to_dict())
        return entry

    def publish_status(self, update: StatusUpdate) -> None:
        self.last_status = update
        self._fan_out(update.to_dict())

    def _fan_out(self, payload: dict) -> None:
        for inbox in list(self._observers):
            if inbox.full():
                try:
                    inbox.get_nowait()
                    self.dropped_inbox += 1
                except asyncio.QueueEmpty:
                    pass
            inbox.put_nowait(payload)

    # ----------------------------------------------------------
    # CONSUME
    # ----------------------------------------------------------

    def recent_logs(self, drain: bool = False) -> list[LogEntry]:
        """Snapshot of the bounded log history; drain=True also empties it."""
        entries = list(self._history)
        if drain:
            self._history.clear()
        return entries

    async def subscribe(self, initial: Optional[dict] = None) -> AsyncIterator[dict]:
        """
        Yield messages in publish order until the consumer stops iterating.
        No history is replayed beyond the optional initial snapshot.
        """
        inbox: asyncio.Queue = asyncio.Queue(maxsize=self._inbox_size)
        self._observers.add(inbox)
        logger.debug(f"Observer attached ({len(self._observers)} live)")
        try:
            if initial is not None:
                yield initial
            while True:
                try:
                    message = await asyncio.wait_for(inbox.get(), timeout=self._heartbeat_interval)
                except asyncio.TimeoutError:
                    yield dict(HEARTBEAT)
                    continue
                yield message
        finally:
            self._observers.discard(inbox)
            logger.debug(f"Observer detached ({len(self._observers)} live)")
