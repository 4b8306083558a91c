"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Any, Awaitable, Callable, Dict, List, Optional

import paho.mqtt.client as mqtt

from .. import constants
from ..config import PrinterConfig
from ..errors import (
    AuthenticationError,
    ConnectionRefused,
    ConnectionTimeout,
    NotConnectedError,
)

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None] | None]

# CONNACK codes for bad credentials / not authorised, in both the MQTT 3.1.1
# numbering and the reason-code numbering paho 2.x reports them with.
_AUTH_FAILURE_CODES = {4, 5, 134, 135}


def _rc_value(rc: Any) -> int:
    value = getattr(rc, "value", rc)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


def _insecure_tls_context() -> ssl.SSLContext:
    # Printers present self-signed certificates.
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client."""

    def __init__(
        self,
        config: PrinterConfig,
        *,
        client_id: str,
        keepalive: int = 60,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.keepalive = keepalive

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._message_handler: Optional[MessageHandler] = None
        self._last_connect_rc: Optional[int] = None
        self._connect_failed: bool = False
        self._connected: bool = False
        self._pending_subscriptions: Dict[int, asyncio.Future[List[int]]] = {}
        self._early_subacks: Dict[int, List[int]] = {}
        self._disconnect_handlers: List[Callable[[int], None]] = []

    async def connect(self, timeout: float = constants.CONNECT_TIMEOUT_SECONDS) -> None:
        """Connect to the printer's broker and wait for CONNACK."""

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None
        self._connect_failed = False

        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
        )
        client.enable_logger(LOGGER.getChild("paho"))
        client.username_pw_set(constants.PRINTER_USERNAME, self.config.access_code)

        if self.config.use_tls:
            client.tls_set_context(_insecure_tls_context())
            client.tls_insecure_set(True)

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message

        self._client = client

        LOGGER.info(
            "Connecting to printer broker %s:%s (tls=%s)",
            self.config.host,
            self.config.mqtt_port,
            self.config.use_tls,
        )

        client.connect_async(self.config.host, self.config.mqtt_port, self.keepalive)
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self._teardown()
            raise ConnectionTimeout(timeout, host=self.config.host) from exc

        rc = self._last_connect_rc
        if self._connect_failed or rc is None or rc != 0:
            self._teardown()
            if rc in _AUTH_FAILURE_CODES:
                raise AuthenticationError(
                    f"Printer broker rejected the access code (rc={rc}). "
                    "Check the LAN access code on the printer.",
                    rc=rc,
                )
            if self._connect_failed:
                raise ConnectionRefused(
                    f"Could not reach printer broker at {self.config.host}:"
                    f"{self.config.mqtt_port}. Is the printer online with LAN mode enabled?"
                )
            raise ConnectionRefused(
                f"Printer broker rejected connection (rc={rc})", rc=rc
            )

    async def subscribe(
        self,
        topic: str,
        qos: int = 1,
        timeout: float = constants.CONNECT_TIMEOUT_SECONDS,
    ) -> None:
        """Subscribe and wait for SUBACK."""

        if not self._client or not self._loop:
            raise NotConnectedError()

        result, mid = self._client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise ConnectionRefused(f"Subscribe to {topic} failed with rc={result}", rc=result)

        codes = self._early_subacks.pop(mid, None)
        if codes is None:
            future: asyncio.Future[List[int]] = self._loop.create_future()
            self._pending_subscriptions[mid] = future
            try:
                codes = await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise ConnectionTimeout(timeout, host=self.config.host) from exc
            finally:
                self._pending_subscriptions.pop(mid, None)

        if any(code >= 128 for code in codes):
            raise ConnectionRefused(
                f"Failed to subscribe to {topic}: broker returned {codes}"
            )
        LOGGER.debug("Subscribed to %s", topic)

    def publish(self, topic: str, payload: bytes, qos: int = 1, retain: bool = False) -> None:
        if not self._client or not self._connected:
            raise NotConnectedError()

        info = self._client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise ConnectionRefused(f"Publish failed with rc={info.rc}", rc=info.rc)

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    async def disconnect(
        self, timeout: float = constants.DISCONNECT_TIMEOUT_SECONDS
    ) -> bool:
        """Disconnect, forcing the network loop down if the broker does not answer.

        Returns ``True`` for a graceful close, ``False`` when it was forced.
        Never raises.
        """

        client = self._client
        if client is None:
            return True

        graceful = True
        try:
            client.disconnect()
            if self._disconnect_event is not None:
                await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Graceful disconnect timed out after %.1fs, forcing close", timeout)
            graceful = False
        except Exception as exc:
            LOGGER.warning("Graceful disconnect failed (%s), forcing close", exc)
            graceful = False
        finally:
            self._teardown()
        return graceful

    def _teardown(self) -> None:
        client = self._client
        self._client = None
        self._connected = False
        for future in self._pending_subscriptions.values():
            if not future.done():
                future.cancel()
        self._pending_subscriptions.clear()
        self._early_subacks.clear()
        if client is not None:
            try:
                client.loop_stop()
            except Exception:  # pragma: no cover
                LOGGER.debug("paho loop_stop raised", exc_info=True)

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _call_in_loop(self, callback: Callable[..., Any], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(callback, *args)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        rc = _rc_value(reason_code)
        self._call_in_loop(self._handle_connack, rc)

    def _handle_connack(self, rc: int) -> None:
        self._last_connect_rc = rc
        if rc == 0:
            LOGGER.info("Connected to printer broker")
            self._connected = True
        else:
            LOGGER.error("Printer broker connection failed with rc=%s", rc)
            self._connected = False
        if self._connected_event:
            self._connected_event.set()

    def _on_connect_fail(self, client, userdata) -> None:
        self._call_in_loop(self._handle_connect_fail)

    def _handle_connect_fail(self) -> None:
        LOGGER.warning("Could not open a connection to the printer broker")
        self._connect_failed = True
        if self._connected_event:
            self._connected_event.set()

    def _on_disconnect(
        self, client, userdata, disconnect_flags=None, reason_code=None, properties=None
    ) -> None:
        self._call_in_loop(self._handle_disconnect, _rc_value(reason_code))

    def _handle_disconnect(self, rc: int) -> None:
        LOGGER.info("Disconnected from printer broker (rc=%s)", rc)
        self._connected = False
        if self._disconnect_event:
            self._disconnect_event.set()
        for handler in self._disconnect_handlers:
            try:
                handler(rc)
            except Exception:  # pragma: no cover
                LOGGER.exception("Disconnect handler raised an exception")

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None) -> None:
        codes = [_rc_value(code) for code in reason_code_list or []]
        self._call_in_loop(self._handle_suback, mid, codes)

    def _handle_suback(self, mid: int, codes: List[int]) -> None:
        future = self._pending_subscriptions.pop(mid, None)
        if future is None:
            self._early_subacks[mid] = codes
        elif not future.done():
            future.set_result(codes)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        self._call_in_loop(self._deliver, message.topic, message.payload)

    def _deliver(self, topic: str, payload: bytes) -> None:
        handler = self._message_handler
        if handler is None:
            return
        try:
            result = handler(topic, payload)
            if asyncio.iscoroutine(result):
                asyncio.ensure_future(result)
        except Exception:  # pragma: no cover
            LOGGER.exception("MQTT message handler raised an exception")
