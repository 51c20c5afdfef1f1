"""A bidirectional OCPP/J RPC pipe between a charge station and a CSMS.

A pipe brokers Call and CallResult (or CallError) messages in both directions.
It does not know about the transports: callers feed ``charge_station_rx`` and
``csms_rx`` and drain ``charge_station_tx`` and ``csms_tx``.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from collections.abc import Iterable
from enum import IntEnum

from .message import GatewayMessage
from .ocpp import MessageType

log = logging.getLogger(__name__)


class PipeStatus(IntEnum):
    """What the pipe is currently waiting for."""

    WAITING = 0
    CHARGE_STATION_CALL = 1
    CSMS_CALL = 2


class _Halted(Exception):
    """Raised inside the worker when the pipe is closed during a send."""


class _Channel:
    """A bounded FIFO of messages sharing its pipe's condition variable."""

    def __init__(self, cond: threading.Condition, capacity: int) -> None:
        self._cond = cond
        self._capacity = capacity
        self._items: deque[GatewayMessage] = deque()

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def _has_room(self) -> bool:
        return len(self._items) < self._capacity

    def put(self, msg: GatewayMessage, timeout: float | None = None) -> None:
        """Add a message, waiting for room; raises queue.Full on timeout."""
        with self._cond:
            if not self._cond.wait_for(self._has_room, timeout):
                raise queue.Full
            self._items.append(msg)
            self._cond.notify_all()

    def get(self, timeout: float | None = None) -> GatewayMessage:
        """Take the oldest message, waiting for one; raises queue.Empty on timeout."""
        with self._cond:
            if not self._cond.wait_for(lambda: bool(self._items), timeout):
                raise queue.Empty
            msg = self._items.popleft()
            self._cond.notify_all()
            return msg


class Pipe:
    """Transfers RPC messages between a charge station and the CSMS."""

    def __init__(
        self,
        response_timeout: float = 10.0,
        message_id_buffer_len: int = 10,
        csms_message_queue_len: int = 5,
        csms_call_queue_len: int = 5,
        csms_call_response_buffer_len: int = 5,
    ) -> None:
        if message_id_buffer_len < 1:
            raise ValueError("message_id_buffer_len must be at least 1")
        if csms_call_response_buffer_len < 1:
            raise ValueError("csms_call_response_buffer_len must be at least 1")
        if csms_call_queue_len < 0:
            raise ValueError("csms_call_queue_len must not be negative")

        self.response_timeout = response_timeout
        self.message_id_buffer_len = message_id_buffer_len
        self.csms_message_queue_len = csms_message_queue_len
        self.csms_call_queue_len = csms_call_queue_len
        self.csms_call_response_buffer_len = csms_call_response_buffer_len

        self._cond = threading.Condition()
        self._halted = False
        self._thread: threading.Thread | None = None

        self.charge_station_rx = _Channel(self._cond, 1)
        self.charge_station_tx = _Channel(self._cond, 1)
        self.csms_rx = _Channel(self._cond, max(csms_message_queue_len, 1))
        self.csms_tx = _Channel(self._cond, 1)
        self._csms_rx_call_buf = _Channel(self._cond, csms_call_queue_len)

    def __enter__(self) -> Pipe:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def start(self) -> None:
        """Begin transferring messages on a background thread."""
        if self._thread is not None:
            raise RuntimeError("pipe already started")
        self._thread = threading.Thread(target=self._run, name="pipe", daemon=True)
        self._thread.start()

    def close(self) -> None:
        """Stop the pipe and wait briefly for its thread to finish."""
        with self._cond:
            self._halted = True
            self._cond.notify_all()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)

    # -- channel operations used by the worker --------------------------------

    def _select(
        self, channels: list[_Channel], timeout: float | None
    ) -> tuple[_Channel, GatewayMessage] | None:
        with self._cond:
            self._cond.wait_for(
                lambda: self._halted or any(ch._items for ch in channels), timeout
            )
            if self._halted:
                return None
            for ch in channels:
                if ch._items:
                    msg = ch._items.popleft()
                    self._cond.notify_all()
                    return ch, msg
            return None

    def _send(self, channel: _Channel, msg: GatewayMessage) -> None:
        with self._cond:
            self._cond.wait_for(lambda: self._halted or channel._has_room())
            if self._halted:
                raise _Halted
            channel._items.append(msg)
            self._cond.notify_all()

    def _try_send(self, channel: _Channel, msg: GatewayMessage) -> bool:
        with self._cond:
            if not channel._has_room():
                return False
            channel._items.append(msg)
            self._cond.notify_all()
            return True

    # -- the state machine ------------------------------------------------------

    def _run(self) -> None:
        ids: deque[str] = deque(maxlen=self.message_id_buffer_len)
        calls: deque[GatewayMessage] = deque(maxlen=self.csms_call_response_buffer_len)
        status = PipeStatus.WAITING
        try:
            while True:
                current = calls[-1] if calls else None
                if status is PipeStatus.WAITING:
                    status = self._step_waiting(ids, calls, current)
                elif status is PipeStatus.CHARGE_STATION_CALL:
                    status = self._step_charge_station_call(ids)
                else:
                    status = self._step_csms_call(ids, calls, current)
                if status is None:
                    return
        except _Halted:
            return

    def _step_waiting(
        self,
        ids: deque[str],
        calls: deque[GatewayMessage],
        current: GatewayMessage | None,
    ) -> PipeStatus | None:
        # charge station traffic is listed first so that it takes priority
        picked = self._select(
            [self.charge_station_rx, self.csms_rx, self._csms_rx_call_buf], None
        )
        if picked is None:
            return None
        channel, msg = picked

        if channel is self.charge_station_rx:
            if msg.message_type == MessageType.CALL:
                return self._forward_cs_call(msg, ids)
            if current is not None and msg.message_id == current.message_id:
                log.warning("CS call response for message %s is late", msg.message_id)
                self._attach_call(msg, current)
                self._send(self.csms_tx, msg)
            elif (call := _find_call(calls, msg.message_id)) is not None:
                log.warning("CS call response for message %s is very late", msg.message_id)
                self._attach_call(msg, call)
                self._send(self.csms_tx, msg)
            else:
                log.error(
                    "CS call response with message id %s has no corresponding CSMS call",
                    msg.message_id,
                )
            return PipeStatus.WAITING

        if channel is self.csms_rx and msg.message_type != MessageType.CALL:
            if ids and ids[-1] == msg.message_id:
                log.warning("CSMS call response with message id %s is late", msg.message_id)
                self._send(self.charge_station_tx, msg)
            else:
                log.error("CSMS message id %s is not a call", msg.message_id)
            return PipeStatus.WAITING

        return self._forward_csms_call(msg, calls)

    def _step_charge_station_call(self, ids: deque[str]) -> PipeStatus | None:
        picked = self._select([self.csms_rx], self.response_timeout)
        if picked is None:
            if self._halted:
                return None
            log.warning(
                "CSMS did not respond before timeout to message %s",
                ids[-1] if ids else None,
            )
            return PipeStatus.WAITING
        _, msg = picked

        if msg.message_type == MessageType.CALL:
            if self._try_send(self._csms_rx_call_buf, msg):
                log.warning("buffering CSMS call message: %s", msg.message_id)
            else:
                log.warning("CSMS call buffer full - dropping message %s", msg.message_id)
            return PipeStatus.CHARGE_STATION_CALL

        if ids and ids[-1] == msg.message_id:
            self._send(self.charge_station_tx, msg)
            return PipeStatus.WAITING
        log.warning("CSMS call response not for current call: %s", msg.message_id)
        return PipeStatus.CHARGE_STATION_CALL

    def _step_csms_call(
        self,
        ids: deque[str],
        calls: deque[GatewayMessage],
        current: GatewayMessage | None,
    ) -> PipeStatus | None:
        current_id = current.message_id if current is not None else None
        picked = self._select([self.charge_station_rx], self.response_timeout)
        if picked is None:
            if self._halted:
                return None
            log.warning("CS did not respond before timeout to message %s", current_id)
            return PipeStatus.WAITING
        _, msg = picked

        if msg.message_type == MessageType.CALL:
            log.warning(
                "CS made call %s when expecting CS call response to %s",
                msg.message_id,
                current_id,
            )
            return self._forward_cs_call(msg, ids, PipeStatus.CSMS_CALL)
        if current is not None and msg.message_id == current.message_id:
            self._attach_call(msg, current)
            self._send(self.csms_tx, msg)
            return PipeStatus.WAITING
        if (call := _find_call(calls, msg.message_id)) is not None:
            log.warning(
                "CS call response to call %s when expecting response to %s",
                msg.message_id,
                current_id,
            )
            self._attach_call(msg, call)
            self._send(self.csms_tx, msg)
        else:
            log.error(
                "CS call response with message id %s has no corresponding CSMS call",
                msg.message_id,
            )
        return PipeStatus.CSMS_CALL

    def _forward_cs_call(
        self,
        msg: GatewayMessage,
        ids: deque[str],
        unchanged: PipeStatus = PipeStatus.WAITING,
    ) -> PipeStatus:
        if msg.message_id in ids:
            log.error("CS message id %s reused", msg.message_id)
            return unchanged
        ids.append(msg.message_id)
        self._send(self.csms_tx, msg)
        return PipeStatus.CHARGE_STATION_CALL

    def _forward_csms_call(
        self, msg: GatewayMessage, calls: deque[GatewayMessage]
    ) -> PipeStatus:
        if _find_call(calls, msg.message_id) is not None:
            log.warning("CSMS call with duplicate message id %s", msg.message_id)
        calls.append(msg)
        self._send(self.charge_station_tx, msg)
        return PipeStatus.CSMS_CALL

    @staticmethod
    def _attach_call(msg: GatewayMessage, call: GatewayMessage) -> None:
        msg.action = call.action
        msg.request_payload = call.request_payload


def _find_call(calls: deque[GatewayMessage], message_id: str) -> GatewayMessage | None:
    """Find a CSMS call by id, searching the newest first and then oldest onwards."""
    if not calls:
        return None
    ordered: Iterable[GatewayMessage] = (calls[-1], *list(calls)[:-1])
    return next((call for call in ordered if call.message_id == message_id), None)