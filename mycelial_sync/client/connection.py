"""
MODULE OVERVIEW:
The lifecycle of one push channel (one WebSocket), as an explicit state machine.

WHAT IS HAPPENING HERE:
    idle -> connecting -> open -> (closing | closed_abnormal) -> idle
                                         closed_abnormal -> exhausted

We use the `websockets` library for the socket and the running asyncio loop
for the reconnect timer. The timer handle is owned state: every transition
that supersedes a pending reconnect cancels it, so a scheduled reconnect can
never race a manual disconnect into a double connect.

An unreachable server must not produce a reconnect storm, so abnormal closes
spend a bounded budget with exponential spacing (base * 2^(attempt-1)).
A successful open refills the budget. When it runs out the channel parks in
`exhausted` and reports ExhaustedRetries once.

Both the socket factory (`connector`) and the timer (`scheduler`) are
injectable so the state machine runs against fakes in tests.
"""
import asyncio
import inspect
import json
from typing import Any, Awaitable, Callable

import websockets
from loguru import logger

from mycelial_sync.shared.client_utils import (
    CLEAN_CLOSE_CODES,
    CLIENT_CLOSE_CODE,
    backoff_delay,
    make_channel_stats,
    utc_now_iso,
)
from mycelial_sync.shared.errors import ExhaustedRetries, SyncError, TransportError
from mycelial_sync.shared.models import ConnectionState

Connector = Callable[[str], Awaitable[Any]]
Scheduler = Callable[[float, Callable[[], None]], Any]


def loop_scheduler(delay_s: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay_s, callback)


class ConnectionManager:
    def __init__(
        self,
        name: str,
        url: str,
        base_interval_s: float = 3.0,
        max_attempts: int = 5,
        reset_delay_s: float = 0.1,
        open_timeout_s: float = 10.0,
        on_open: Callable[[], Any] | None = None,
        on_message: Callable[[Any], Any] | None = None,
        on_close: Callable[[int | None], Any] | None = None,
        on_error: Callable[[SyncError], Any] | None = None,
        on_state_change: Callable[[ConnectionState], Any] | None = None,
        connector: Connector | None = None,
        scheduler: Scheduler | None = None,
    ):
        self.name = name
        self.url = url
        self.base_interval_s = base_interval_s
        self.max_attempts = max_attempts
        self.reset_delay_s = reset_delay_s
        self.open_timeout_s = open_timeout_s

        self.on_open = on_open
        self.on_message = on_message
        self.on_close = on_close
        self.on_error = on_error
        self.on_state_change = on_state_change

        self._connector = connector or self._default_connector
        self._scheduler = scheduler or loop_scheduler

        self.state = ConnectionState.IDLE
        self.attempts = 0
        self.stats = make_channel_stats()

        self._socket: Any = None
        self._task: asyncio.Task | None = None
        self._timer: Any = None
        # Bumped by disconnect(); a run started under an older epoch is stale
        self._epoch = 0
        self._pending_closes: set[asyncio.Task] = set()

    async def _default_connector(self, url: str) -> Any:
        return await websockets.connect(url, open_timeout=self.open_timeout_s)

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    @property
    def reconnect_pending(self) -> bool:
        return self._timer is not None

    # ==========================
    # TRANSITIONS
    # ==========================
    def connect(self) -> asyncio.Task | None:
        if self.state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            logger.debug(f"channel={self.name} event=connect_skipped state={self.state.value}")
            return None

        self._cancel_timer()
        if self.attempts >= self.max_attempts:
            if self.state is not ConnectionState.EXHAUSTED:
                self._set_state(ConnectionState.EXHAUSTED)
                logger.warning(f"channel={self.name} event=exhausted attempts={self.attempts}")
                self._report(ExhaustedRetries(self.name, self.attempts))
            else:
                logger.warning(f"channel={self.name} event=connect_refused reason=exhausted")
            return None

        self._set_state(ConnectionState.CONNECTING)
        logger.info(
            f"channel={self.name} event=connect url={self.url} "
            f"attempt={self.attempts + 1}/{self.max_attempts}"
        )
        self._task = asyncio.get_running_loop().create_task(self._run(self._epoch))
        return self._task

    def disconnect(self) -> None:
        self._cancel_timer()
        self.attempts = 0
        self._epoch += 1

        socket, self._socket = self._socket, None
        if socket is not None:
            self._set_state(ConnectionState.CLOSING)
            self._close_later(socket)
        if self.state is not ConnectionState.IDLE:
            self._set_state(ConnectionState.IDLE)
        logger.info(f"channel={self.name} event=disconnect reason=client")

    def reset_connection(self) -> None:
        """Force a fresh attempt outside the backoff schedule."""
        self.disconnect()
        self._timer = self._scheduler(self.reset_delay_s, self._fire_reconnect)

    async def send(self, payload: dict) -> bool:
        socket = self._socket
        if self.state is not ConnectionState.OPEN or socket is None:
            logger.warning(
                f"channel={self.name} event=send_dropped state={self.state.value} "
                f"type={payload.get('type')}"
            )
            return False
        try:
            data = json.dumps(payload)
        except (TypeError, ValueError) as e:
            logger.warning(f"channel={self.name} event=send_dropped reason=unserializable detail='{e}'")
            return False
        try:
            await socket.send(data)
        except websockets.ConnectionClosed as e:
            logger.warning(f"channel={self.name} event=send_failed reason='{e}'")
            return False
        return True

    async def aclose(self) -> None:
        task = self._task
        self.disconnect()
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)
        if self._pending_closes:
            await asyncio.gather(*self._pending_closes, return_exceptions=True)

    # ==========================
    # CHANNEL LOOP
    # ==========================
    async def _run(self, epoch: int) -> None:
        try:
            socket = await self._connector(self.url)
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            if epoch == self._epoch:
                self._on_abnormal(TransportError(f"{self.name} handshake failed", cause=e, url=self.url))
            return

        if epoch != self._epoch:
            # disconnect() landed while the handshake was in flight
            self._close_later(socket)
            return

        self._socket = socket
        self.attempts = 0
        self.stats["connected_at"] = utc_now_iso()
        self._set_state(ConnectionState.OPEN)
        logger.info(f"channel={self.name} event=open")
        await self._dispatch(self.on_open)

        try:
            async for raw in socket:
                if epoch != self._epoch:
                    break
                self._record(raw)
                await self._dispatch(self.on_message, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            if self._socket is socket:
                self._socket = None

        if epoch != self._epoch:
            return

        code = getattr(socket, "close_code", None)
        self.stats["last_close_code"] = code
        if code in CLEAN_CLOSE_CODES:
            self._set_state(ConnectionState.IDLE)
            logger.info(f"channel={self.name} event=close code={code}")
            await self._dispatch(self.on_close, code)
        else:
            self._on_abnormal(TransportError(f"{self.name} closed abnormally", close_code=code))
            await self._dispatch(self.on_close, code)

    def _on_abnormal(self, error: TransportError) -> None:
        self._set_state(ConnectionState.CLOSED_ABNORMAL)
        self.stats["errors"] += 1
        self._report(error)

        if self.attempts < self.max_attempts:
            self.attempts += 1
            delay = backoff_delay(self.base_interval_s, self.attempts)
            self.stats["reconnect_count"] += 1
            logger.warning(
                f"channel={self.name} event=reconnect_scheduled attempt={self.attempts}/{self.max_attempts} "
                f"delay={delay:.2f}s error='{error}'"
            )
            self._timer = self._scheduler(delay, self._fire_reconnect)
        else:
            self._set_state(ConnectionState.EXHAUSTED)
            logger.warning(f"channel={self.name} event=exhausted attempts={self.attempts}")
            self._report(ExhaustedRetries(self.name, self.attempts))

    def _fire_reconnect(self) -> None:
        self._timer = None
        self.connect()

    # ==========================
    # HELPERS
    # ==========================
    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _close_later(self, socket: Any) -> None:
        task = asyncio.get_running_loop().create_task(socket.close(CLIENT_CLOSE_CODE, "Client disconnect"))
        self._pending_closes.add(task)
        task.add_done_callback(self._pending_closes.discard)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        self.state = state
        if self.on_state_change:
            try:
                self.on_state_change(state)
            except Exception as e:
                logger.error(f"channel={self.name} event=callback_error callback=on_state_change reason='{e}'")

    def _report(self, error: SyncError) -> None:
        if self.on_error:
            try:
                self.on_error(error)
            except Exception as e:
                logger.error(f"channel={self.name} event=callback_error callback=on_error reason='{e}'")

    def _record(self, raw: Any) -> None:
        self.stats["events_received"] += 1
        self.stats["bytes_received"] += len(raw)
        self.stats["last_event_at"] = utc_now_iso()

    async def _dispatch(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"channel={self.name} event=callback_error reason='{e}'")
