"""Periodic resync loop for a single BLE device."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable, Iterable

from gattsync.core.controller import SessionController, SessionState
from gattsync.core.converter import ByteConverter, DataConverter
from gattsync.core.errors import GattsyncError
from gattsync.core.model import DeviceSpec, Parameters, StatusEntry, StatusSnapshot
from gattsync.core.status import StatusStore
from gattsync.transports.base import Session

LOGGER = logging.getLogger(__name__)

StatusHandler = Callable[[str, StatusSnapshot], None]


class Device:
    """Keeps one BLE peripheral in sync with a `DeviceSpec`.

    Every cycle builds a fresh `SessionController`, lets the session scan,
    connect and process the peripheral until it disconnects (or the cycle
    timeout expires), then hands the resulting snapshot to `handler`. Cycles
    never overlap, and only one loop per `Device` is active at a time.
    """

    def __init__(
        self,
        name: str,
        handler: StatusHandler,
        params: Parameters,
        session: Session,
        *,
        converter: DataConverter | None = None,
    ) -> None:
        self.name = name
        self.handler = handler
        self.params = params
        self.session = session
        self.converter = converter or ByteConverter()
        self._stop: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def configure(self, spec: DeviceSpec, status: Iterable[StatusEntry] = ()) -> asyncio.Task[None]:
        """(Re)start the resync loop; must be called with an event loop running."""
        previous = self._task
        if self._stop is not None:
            self._stop.set()
        self._stop = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self._run(spec, tuple(status), self._stop, previous),
            name=f"gattsync-{self.name}",
        )
        return self._task

    def shutdown(self) -> None:
        if self._stop is not None:
            self._stop.set()
        LOGGER.info("Requested shutdown of %s", self.name)

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def _run(
        self,
        spec: DeviceSpec,
        status: StatusSnapshot,
        stop: asyncio.Event,
        previous: asyncio.Task[None] | None,
    ) -> None:
        if previous is not None and not previous.done():
            LOGGER.info("Waiting for the previous sync loop of %s to stop", self.name)
            await asyncio.gather(previous, return_exceptions=True)

        loop = asyncio.get_running_loop()
        interval = self.params.sync_interval
        next_tick = loop.time() + interval
        LOGGER.info("Sync interval of %s is set to %ss", self.name, interval)

        while True:
            snapshot = await self._sync_once(spec, status, stop)
            self._publish(snapshot)
            if self.params.carry_status:
                status = snapshot

            now = loop.time()
            if interval <= 0:
                delay = 0.0
            elif now >= next_tick:
                # Ticks missed while the cycle ran collapse into a single one.
                delay = 0.0
                next_tick += interval * (math.floor((now - next_tick) / interval) + 1)
            else:
                delay = next_tick - now
                next_tick += interval

            if await _wait_stopped(stop, delay):
                LOGGER.info("Stopped sync loop of %s", self.name)
                return

    async def _sync_once(self, spec: DeviceSpec, status: StatusSnapshot, stop: asyncio.Event) -> StatusSnapshot:
        store = StatusStore(status)
        controller = SessionController(
            spec,
            store,
            self.session,
            converter=self.converter,
            observation_window=self.params.observation_window,
            mtu=self.params.mtu,
        )
        self.session.handle(controller.handlers())

        try:
            await self.session.init(controller.on_state_changed)
            await self._await_cycle(controller, stop)
        except GattsyncError as exc:
            LOGGER.error("Sync of %s failed: %s", self.name, exc)
        except Exception:
            LOGGER.exception("Sync of %s failed unexpectedly", self.name)
        finally:
            await self.session.close()

        LOGGER.info("Device %s done", self.name)
        return store.snapshot()

    async def _await_cycle(self, controller: SessionController, stop: asyncio.Event) -> None:
        """Wait for the controller to finish, the cycle timeout, or a stop request.

        A stop request aborts the cycle only while nothing is connected yet; an
        in-progress connection is allowed to run to its disconnect.
        """
        loop = asyncio.get_running_loop()
        timeout = self.params.timeout
        deadline = None if timeout is None else loop.time() + timeout
        done = loop.create_task(controller.wait_done())
        stopped = loop.create_task(stop.wait())
        waiting = {done, stopped}
        try:
            while not controller.done:
                remaining = None if deadline is None else max(0.0, deadline - loop.time())
                finished, _ = await asyncio.wait(waiting, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                if not finished:
                    LOGGER.warning("Sync of %s timed out after %ss", self.name, timeout)
                    await controller.abort()
                    return
                if stopped in finished and not controller.done:
                    waiting.discard(stopped)
                    if controller.state in (SessionState.IDLE, SessionState.SCANNING):
                        LOGGER.info("Stop requested while %s was %s", self.name, controller.state.value)
                        await controller.abort()
                        return
        finally:
            done.cancel()
            stopped.cancel()

    def _publish(self, snapshot: StatusSnapshot) -> None:
        try:
            self.handler(self.name, snapshot)
        except Exception:
            LOGGER.exception("Status handler failed for %s", self.name)
            return
        LOGGER.info("Synced %s status with %d properties", self.name, len(snapshot))


async def _wait_stopped(stop: asyncio.Event, delay: float) -> bool:
    if stop.is_set():
        return True
    try:
        await asyncio.wait_for(stop.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True
