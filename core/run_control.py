"""
Run Control — configure / start / stop / status

Enforces at most one acquisition run at a time:
- SessionLock (shared/exclusive): configure swaps the Session under exclusive
  access, status snapshots read under shared access
- RunFlag: the is-a-run-active boolean behind its own narrow asyncio.Lock,
  so start/stop never wait behind the session lock
- RunContext: everything one run owns (session, vendor client, hub, flag
  generation), handed to the engine at launch

Stopping is cooperative: stop() clears the flag and the engine notices it
at its next check point.
"""

import asyncio
import logging
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional

from core.broadcast import BroadcastHub, LogLevel, RunState, StatusUpdate
from core.engine import AcquisitionEngine
from core.session import Address, Config, Session
from core.vendor import ClientFactory, VendorClient, VendorError

logger = logging.getLogger("slotgrab.control")


class ControlError(Exception):
    """configure/start misuse surfaced to the caller."""
    pass


# ============================================================
# LOCKS & FLAGS
# ============================================================

class SessionLock:
    """
    Shared/exclusive lock for the session slot.

    Readers share; a writer waits for readers to leave and blocks new ones.
    """

    def __init__(self):
        self._cond: Optional[asyncio.Condition] = None
        self._readers = 0
        self._writer = False

    def _condition(self) -> asyncio.Condition:
        # Created lazily so the lock can be built outside a running loop.
        if self._cond is None:
            self._cond = asyncio.Condition()
        return self._cond

    @asynccontextmanager
    async def shared(self):
        cond = self._condition()
        async with cond:
            await cond.wait_for(lambda: not self._writer)
            self._readers += 1
        try:
            yield
        finally:
            async with cond:
                self._readers -= 1
                cond.notify_all()

    @asynccontextmanager
    async def exclusive(self):
        cond = self._condition()
        async with cond:
            await cond.wait_for(lambda: not self._writer and self._readers == 0)
            self._writer = True
        try:
            yield
        finally:
            async with cond:
                self._writer = False
                cond.notify_all()


class RunFlag:
    """
    is-a-run-active, guarded by its own lock.

    Each start() opens a new generation; an engine only sees itself as
    active while its generation is current, so a late-finishing run cannot
    clear the flag of the run that replaced it.
    """

    def __init__(self):
        self._lock: Optional[asyncio.Lock] = None
        self._active = False
        self._generation = 0

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def active(self) -> bool:
        return self._active

    async def try_start(self) -> Optional[int]:
        """Flip the flag on; None if a run is already active."""
        async with self._get_lock():
            if self._active:
                return None
            self._active = True
            self._generation += 1
            return self._generation

    async def is_active(self, generation: Optional[int] = None) -> bool:
        async with self._get_lock():
            if generation is not None and generation != self._generation:
                return False
            return self._active

    async def clear(self, generation: Optional[int] = None) -> None:
        """Idempotent. With a generation, only clears if it is still current."""
        async with self._get_lock():
            if generation is not None and generation != self._generation:
                return
            self._active = False


@dataclass
class RunContext:
    """What one run owns; lifetime = one start-to-terminal cycle."""
    session: Session
    client: VendorClient
    hub: BroadcastHub
    flag: RunFlag
    generation: int

    async def is_active(self) -> bool:
        return await self.flag.is_active(self.generation)

    async def finish(self) -> None:
        await self.flag.clear(self.generation)


# ============================================================
# CONTROLLER
# ============================================================

class AcquisitionController:
    """
    Control surface consumed by the HTTP/WebSocket layer.

    client_factory builds one VendorClient per configured session; None
    means no vendor integration was plugged in.
    """

    def __init__(
        self,
        hub: BroadcastHub,
        client_factory: Optional[ClientFactory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._hub = hub
        self._client_factory = client_factory
        self._sleep = sleep
        self._session: Optional[Session] = None
        self._client: Optional[VendorClient] = None
        self._session_lock = SessionLock()
        self._flag = RunFlag()
        self._task: Optional[asyncio.Task] = None
        self.engine: Optional[AcquisitionEngine] = None

    @property
    def is_running(self) -> bool:
        return self._flag.active

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    # ----------------------------------------------------------
    # CONFIGURE
    # ----------------------------------------------------------

    async def configure(self, config: Config) -> tuple[Address, list[Address]]:
        """
        Establish a new Session, replacing any previous one.
        Returns (selected address, all addresses of the account).
        """
        if not config.auth_token:
            raise ControlError("auth token must not be empty")
        if self._client_factory is None:
            raise ControlError("vendor client not configured")

        client = self._client_factory(config)
        try:
            address = await client.init_session(config)
            addresses = await client.get_address()
        except VendorError as e:
            await client.close()
            raise ControlError(f"session initialization failed: {e}") from e

        session = Session(config=config, address=address)
        async with self._session_lock.exclusive():
            previous = self._client
            self._session = session
            self._client = client

        # A running engine keeps its own client until it finishes.
        if previous is not None and previous is not client and not self._flag.active:
            await previous.close()

        logger.info(f"Session configured (floor={config.floor_id}, delivery_type={config.delivery_type})")
        self._hub.log(LogLevel.SUCCESS, "Configuration saved")
        self._hub.publish_status(StatusUpdate(step="configured", status=RunState.STOPPED, address=address))
        return address, addresses

    # ----------------------------------------------------------
    # START / STOP
    # ----------------------------------------------------------

    async def start(self) -> None:
        async with self._session_lock.shared():
            session, client = self._session, self._client

        # Checked in this order so a configured-but-running session reports "already running".
        if self._flag.active:
            raise ControlError("already running")
        if session is None or client is None:
            raise ControlError("not configured")

        generation = await self._flag.try_start()
        if generation is None:
            raise ControlError("already running")

        context = RunContext(
            session=session, client=client, hub=self._hub,
            flag=self._flag, generation=generation,
        )
        self.engine = AcquisitionEngine(context, sleep=self._sleep)

        logger.info("Acquisition run starting")
        self._hub.log(LogLevel.INFO, "Starting acquisition...")
        self._hub.publish_status(StatusUpdate(step="starting", status=RunState.RUNNING))

        self._task = asyncio.create_task(self.engine.run())
        self._task.add_done_callback(self._on_engine_done)

    async def stop(self) -> None:
        """Always succeeds; the engine observes it at its next check point."""
        await self._flag.clear()
        logger.info("Acquisition stop requested")
        self._hub.log(LogLevel.WARNING, "Stopped by user")
        self._hub.publish_status(StatusUpdate(step="stopped", status=RunState.STOPPED))

    def _on_engine_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("Acquisition task cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Acquisition task crashed: {exc}", exc_info=exc)
            self._hub.publish_status(StatusUpdate(step="crashed", status=RunState.ERROR, error=str(exc)))
            return
        logger.info(f"Acquisition run finished: {task.result().value}")

    async def shutdown(self) -> None:
        """Stop the run and release the vendor client (process exit)."""
        await self._flag.clear()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._client is not None:
            await self._client.close()

    # ----------------------------------------------------------
    # STATUS / SUBSCRIBE
    # ----------------------------------------------------------

    async def status(self) -> StatusUpdate:
        async with self._session_lock.shared():
            session = self._session
            last = self._hub.last_status
            running = self._flag.active

            if running:
                state = RunState.RUNNING
            elif last is not None and last.status in (RunState.SUCCESS, RunState.ERROR):
                state = last.status
            else:
                state = RunState.STOPPED

            snapshot = StatusUpdate(step=last.step if last is not None else "idle", status=state)
            if session is not None:
                snapshot.address = session.address
                snapshot.stores = list(session.stores.values())
                snapshot.goods = list(session.goods)
                snapshot.delivery_fee = session.delivery_fee
                snapshot.time_slots = list(session.slots.values())
                if self.engine is not None and self.engine.session is session and self.engine.order is not None:
                    snapshot.order = self.engine.order
            return snapshot

    async def subscribe(self) -> AsyncIterator[dict]:
        """Observer stream: current snapshot first (when configured), then live messages."""
        initial = None
        if self._session is not None:
            initial = (await self.status()).to_dict()
        async with aclosing(self._hub.subscribe(initial=initial)) as stream:
            async for message in stream:
                yield message
