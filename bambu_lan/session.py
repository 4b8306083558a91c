"""Request/response messaging session over the printer's MQTT channel.

The printer's broker is publish/subscribe only. This module layers
request/response semantics on top of it: a waiting request registers a
pending completion keyed by its ``sequence_id`` and every inbound report is
offered to that completion as it arrives.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from . import constants
from .adapters.mqtt import MQTTClient
from .commands import BambuCommands, DeviceCommand, extract_sequence_id
from .config import PrinterConfig, SessionConfig
from .errors import (
    CommandResponseTimeout,
    ConcurrentWaitError,
    ConnectionFailedError,
    NotConnectedError,
    SessionStateError,
    StatusTimeout,
    TelemetryParseError,
)
from .retry import RetryPolicy
from .telemetry import (
    ParseFailure,
    TelemetryBuffer,
    TelemetryMessage,
    extract_trays,
    parse_message,
)

LOGGER = logging.getLogger(__name__)

UpdateCallback = Callable[[Dict[str, Any]], None]
ClientFactory = Callable[..., MQTTClient]

PAYLOAD_PREVIEW_LENGTH = 200


class SessionState(str, Enum):
    """Lifecycle of a messaging session."""

    UNCONNECTED = "unconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


_TRANSITIONS = {
    SessionState.UNCONNECTED: {SessionState.CONNECTING},
    SessionState.CONNECTING: {SessionState.CONNECTED, SessionState.UNCONNECTED},
    SessionState.CONNECTED: {SessionState.DISCONNECTING},
    SessionState.DISCONNECTING: {SessionState.UNCONNECTED},
}


class ResponseFallback(str, Enum):
    """What a waiting request does when no report carries its sequence id."""

    LATEST = "latest"
    """Settle with the most recent report after one poll interval."""

    STRICT = "strict"
    """Only an exact sequence id match settles the wait."""


@dataclass(slots=True)
class CommandResponse:
    success: bool
    message: str
    sequence_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


Selection = tuple[Optional[TelemetryMessage], bool]


class _PendingResponse:
    """One outstanding correlated wait.

    ``select`` inspects the reports received since the request was published
    and returns ``(candidate, decisive)``. A decisive candidate settles the
    wait immediately. A non-decisive candidate arms a one-shot grace timer so
    a better report can still arrive before the wait settles.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        sequence_id: str,
        select: Callable[[List[TelemetryMessage]], Selection],
        grace_period: float,
    ) -> None:
        self.sequence_id = sequence_id
        self.future: asyncio.Future[TelemetryMessage] = loop.create_future()
        self._loop = loop
        self._select = select
        self._grace_period = grace_period
        self._received: List[TelemetryMessage] = []
        self._timer: Optional[asyncio.TimerHandle] = None

    def offer(self, message: TelemetryMessage) -> None:
        if self.future.done():
            return
        self._received.append(message)
        candidate, decisive = self._select(self._received)
        if candidate is not None and decisive:
            self._settle(candidate)
        elif candidate is not None and self._timer is None:
            self._timer = self._loop.call_later(self._grace_period, self._on_grace_elapsed)

    def _on_grace_elapsed(self) -> None:
        self._timer = None
        if self.future.done():
            return
        candidate, _ = self._select(self._received)
        if candidate is not None:
            self._settle(candidate)

    def _settle(self, message: TelemetryMessage) -> None:
        self.cancel_timer()
        if not self.future.done():
            self.future.set_result(message)

    def fail(self, exc: BaseException) -> None:
        self.cancel_timer()
        if not self.future.done():
            self.future.set_exception(exc)

    def cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None


def _has_material_bay(message: TelemetryMessage) -> bool:
    return extract_trays(message.raw) is not None


class MessagingSession:
    """Owns one long-lived broker connection to a single printer."""

    def __init__(
        self,
        printer: PrinterConfig,
        session_config: Optional[SessionConfig] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        client_factory: ClientFactory = MQTTClient,
        client_id: Optional[str] = None,
    ) -> None:
        self.printer = printer
        self.config = session_config or SessionConfig()
        self.fallback = ResponseFallback(self.config.response_fallback)
        self.retry_policy = retry_policy or RetryPolicy()
        self.client_id = client_id or f"bambu-lan-{uuid.uuid4().hex[:12]}"
        self.commands = BambuCommands()
        self.buffer = TelemetryBuffer(self.config.buffer_size)
        self.parse_failures: Deque[ParseFailure] = deque(
            maxlen=constants.PARSE_FAILURE_HISTORY
        )

        self._client_factory = client_factory
        self._client: Optional[MQTTClient] = None
        self._state = SessionState.UNCONNECTED
        self._pending: Dict[str, _PendingResponse] = {}
        self._update_callback: Optional[UpdateCallback] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def report_topic(self) -> str:
        return self.printer.report_topic

    @property
    def request_topic(self) -> str:
        return self.printer.request_topic

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return (
            self._state is SessionState.CONNECTED
            and self._client is not None
            and self._client.is_connected()
        )

    @property
    def pending_sequence_ids(self) -> List[str]:
        return list(self._pending)

    def _set_state(self, state: SessionState) -> None:
        if state not in _TRANSITIONS[self._state]:
            raise SessionStateError(self._state.value, state.value)
        LOGGER.debug("Session state %s -> %s", self._state.value, state.value)
        self._state = state

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """Connect and subscribe to the report topic, retrying transient failures.

        Only valid from ``UNCONNECTED``. A broker drop fails any outstanding wait
        but leaves the session ``CONNECTED``; call :meth:`disconnect` before
        connecting again.
        """

        self._set_state(SessionState.CONNECTING)
        try:
            self._client = await self.retry_policy.run_conditional(
                self._open_client, on_retry=self._log_retry
            )
        except BaseException:
            self._set_state(SessionState.UNCONNECTED)
            raise
        self._set_state(SessionState.CONNECTED)
        LOGGER.info("Session connected to printer %s", self.printer.serial_number)

    async def _open_client(self) -> MQTTClient:
        client = self._client_factory(self.printer, client_id=self.client_id)
        client.set_message_handler(self._handle_message)
        client.register_disconnect_handler(self._handle_connection_lost)
        try:
            await client.connect(timeout=self.config.connect_timeout_seconds)
            await client.subscribe(
                self.report_topic, timeout=self.config.connect_timeout_seconds
            )
        except Exception:
            await client.disconnect(timeout=self.config.disconnect_timeout_seconds)
            raise
        return client

    @staticmethod
    def _log_retry(attempt: int, exc: BaseException, delay: float) -> None:
        LOGGER.info("Reconnecting to printer (attempt %d) in %.1fs", attempt + 1, delay)

    async def disconnect(self) -> None:
        """Close the connection. Never raises; a no-op unless connected.

        Also the recovery step after the broker drops the connection, returning
        the session to ``UNCONNECTED`` so :meth:`connect` can be called again.
        """

        if self._state is not SessionState.CONNECTED:
            return

        self._set_state(SessionState.DISCONNECTING)
        client, self._client = self._client, None
        try:
            if client is not None:
                graceful = await client.disconnect(
                    timeout=self.config.disconnect_timeout_seconds
                )
                if not graceful:
                    LOGGER.warning("Graceful disconnect timeout, forced disconnect")
        except Exception as exc:
            LOGGER.warning("Error while disconnecting from printer: %s", exc)
        finally:
            self._fail_pending(NotConnectedError())
            self.buffer.clear()
            self._set_state(SessionState.UNCONNECTED)

    async def __aenter__(self) -> "MessagingSession":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    def _handle_connection_lost(self, rc: int) -> None:
        if self._state is not SessionState.CONNECTED:
            return
        LOGGER.warning("Lost connection to printer broker (rc=%s)", rc)
        self._fail_pending(
            ConnectionFailedError(
                f"Connection to printer lost while waiting for a response (rc={rc})"
            )
        )

    # ------------------------------------------------------------------
    # Inbound reports
    # ------------------------------------------------------------------
    def subscribe_to_updates(self, callback: Optional[UpdateCallback]) -> None:
        """Register the single update callback, replacing any previous one."""

        self._update_callback = callback

    def _handle_message(self, topic: str, payload: bytes) -> None:
        try:
            message = parse_message(payload)
        except TelemetryParseError as exc:
            self._record_parse_failure(exc, payload)
            return

        self.buffer.append(message)

        for pending in list(self._pending.values()):
            pending.offer(message)

        callback = self._update_callback
        if callback is not None and topic == self.report_topic:
            try:
                callback(message.raw)
            except Exception:
                LOGGER.exception("Update callback raised an exception")

    def _record_parse_failure(self, exc: Exception, payload: bytes) -> None:
        preview = bytes(payload[:PAYLOAD_PREVIEW_LENGTH]).decode("utf-8", errors="replace")
        LOGGER.warning("Failed to parse MQTT message: %s", exc)
        self.parse_failures.append(ParseFailure(error=str(exc), payload_preview=preview))

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def _require_client(self) -> MQTTClient:
        if self._client is None or self._state is not SessionState.CONNECTED:
            raise NotConnectedError()
        return self._client

    def _publish(self, client: MQTTClient, command: DeviceCommand) -> None:
        LOGGER.debug(
            "Publishing %s/%s (sequence_id=%s)",
            command.variant.value,
            command.command,
            command.sequence_id,
        )
        client.publish(self.request_topic, command.encode(), qos=1)

    async def publish_command(
        self, command: DeviceCommand, wait_for_response: bool = False
    ) -> CommandResponse:
        """Publish ``command``; optionally wait for the printer's echo of it."""

        client = self._require_client()
        sequence_id = command.sequence_id

        if not wait_for_response:
            self._publish(client, command)
            return CommandResponse(
                success=True,
                message="Command sent successfully",
                sequence_id=sequence_id,
            )

        def select(received: List[TelemetryMessage]) -> Selection:
            for message in received:
                if extract_sequence_id(message.raw) == sequence_id:
                    return message, True
            if self.fallback is ResponseFallback.LATEST and received:
                return received[-1], False
            return None, False

        message = await self._await_response(
            client,
            command,
            select,
            timeout_error=CommandResponseTimeout(
                self.config.response_timeout_seconds, sequence_id=sequence_id
            ),
        )

        matched = extract_sequence_id(message.raw) == sequence_id
        if not matched:
            LOGGER.info(
                "No report echoed sequence_id=%s; returning the latest report", sequence_id
            )
        return CommandResponse(
            success=True,
            message="Command executed and response received"
            if matched
            else "Command sent; latest printer report returned",
            sequence_id=sequence_id,
            data=message.raw,
        )

    async def get_status(self) -> Dict[str, Any]:
        """Request a full state push and return the best report received.

        Reports carrying material-bay data win over the echo of the push
        request, which wins over the most recent report.
        """

        client = self._require_client()
        command = self.commands.push_all(sequence_id=str(time.time_ns()))
        sequence_id = command.sequence_id

        def select(received: List[TelemetryMessage]) -> Selection:
            for message in received:
                if _has_material_bay(message):
                    return message, True
            for message in received:
                if extract_sequence_id(message.raw) == sequence_id:
                    return message, False
            if self.fallback is ResponseFallback.LATEST and received:
                return received[-1], False
            return None, False

        message = await self._await_response(
            client,
            command,
            select,
            timeout_error=StatusTimeout(
                self.config.response_timeout_seconds, sequence_id=sequence_id
            ),
        )
        return message.raw

    async def _await_response(
        self,
        client: MQTTClient,
        command: DeviceCommand,
        select: Callable[[List[TelemetryMessage]], Selection],
        *,
        timeout_error: CommandResponseTimeout,
    ) -> TelemetryMessage:
        if self._pending:
            raise ConcurrentWaitError(next(iter(self._pending)))

        sequence_id = command.sequence_id
        pending = _PendingResponse(
            asyncio.get_running_loop(),
            sequence_id,
            select,
            self.config.poll_interval_seconds,
        )

        # Stale reports must not satisfy this request.
        self.buffer.clear()
        self._pending[sequence_id] = pending
        try:
            self._publish(client, command)
            return await asyncio.wait_for(
                pending.future, timeout=self.config.response_timeout_seconds
            )
        except asyncio.TimeoutError:
            raise timeout_error from None
        finally:
            pending.cancel_timer()
            self._pending.pop(sequence_id, None)
            self.buffer.clear()

    def _fail_pending(self, exc: BaseException) -> None:
        for pending in list(self._pending.values()):
            pending.fail(exc)
