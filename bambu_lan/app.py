"""Per-invocation orchestration of printer operations."""

from __future__ import annotations

import base64
import dataclasses
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from . import constants
from .adapters.camera import CameraClient, camera_urls
from .adapters.ftp import FileTransferClient
from .commands import DeviceCommand, PrintOptions, parse_ams_mapping
from .config import BambuConfig
from .errors import ConfigurationError, MaterialBayNotDetected, UnknownOperationError
from .filament import extract_profiles, match_profiles
from .retry import RetryPolicy
from .session import MessagingSession
from .telemetry import summarize_progress, summarize_temperatures

LOGGER = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[Dict[str, Any]]]


def to_jsonable(value: Any) -> Any:
    """Convert dataclass results into plain JSON-compatible structures."""

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            field.name: to_jsonable(getattr(value, field.name))
            for field in dataclasses.fields(value)
        }
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def storage_path(file_name: str) -> str:
    """Map a print reference onto its path on the FTPS share.

    The FTPS root is the SD card, so ``/sdcard/a.3mf`` and
    ``file:///sdcard/a.3mf`` both live at ``/a.3mf``.
    """

    path = file_name
    if path.startswith(constants.FILE_URL_PREFIX):
        path = "/" + path[len(constants.FILE_URL_PREFIX):]
    if path.startswith(constants.SDCARD_ROOT):
        path = "/" + path[len(constants.SDCARD_ROOT):]
    if not path.startswith("/"):
        path = "/" + path
    return path


class PrinterOperations:
    """Routes ``resource``/``operation`` requests to the printer.

    The messaging session and the file-transfer connection are opened lazily
    on first use and closed by :meth:`close`.
    """

    def __init__(
        self,
        config: BambuConfig,
        *,
        session_factory: Callable[..., MessagingSession] = MessagingSession,
        transfer_factory: Callable[..., FileTransferClient] = FileTransferClient,
        camera_factory: Optional[Callable[..., CameraClient]] = None,
    ) -> None:
        self.config = config
        self._session_factory = session_factory
        self._transfer_factory = transfer_factory
        self._camera_factory = camera_factory or CameraClient.for_printer
        self._session: Optional[MessagingSession] = None
        self._transfer: Optional[FileTransferClient] = None

        self._handlers: Dict[str, Dict[str, Handler]] = {
            "print": {
                "start": self.start_print,
                "pause": self.pause_print,
                "resume": self.resume_print,
                "stop": self.stop_print,
            },
            "status": {
                "current": self.current_status,
                "progress": self.progress,
                "temperature": self.temperatures,
            },
            "file": {
                "upload": self.upload_file,
                "list": self.list_files,
                "delete": self.delete_file,
                "download": self.download_file,
            },
            "camera": {
                "stream-url": self.stream_urls,
                "snapshot-url": self.snapshot_url,
                "snapshot": self.snapshot,
            },
            "control": {
                "led": self.set_led,
                "speed": self.set_speed,
                "home": self.home,
                "fan": self.set_fan,
                "temperature": self.set_temperature,
                "heaters-off": self.heaters_off,
                "gcode": self.send_gcode,
                "emergency-stop": self.emergency_stop,
                "load-filament": self.load_filament,
                "unload-filament": self.unload_filament,
            },
        }

    @property
    def resources(self) -> Dict[str, Sequence[str]]:
        return {name: tuple(ops) for name, ops in self._handlers.items()}

    async def dispatch(self, resource: str, operation: str, **params: Any) -> Dict[str, Any]:
        operations = self._handlers.get(resource)
        if operations is None:
            raise UnknownOperationError(resource, known=self._handlers)
        handler = operations.get(operation)
        if handler is None:
            raise UnknownOperationError(resource, operation, known=operations)
        LOGGER.debug("Dispatching %s/%s", resource, operation)
        return await handler(**params)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------
    def _require_printer(self) -> None:
        missing = self.config.printer.missing_fields()
        if missing:
            raise ConfigurationError(missing)

    async def session(self) -> MessagingSession:
        if self._session is None:
            self._require_printer()
            session = self._session_factory(
                self.config.printer,
                self.config.session,
                retry_policy=RetryPolicy.from_config(self.config.retry),
            )
            await session.connect()
            self._session = session
        return self._session

    async def transfer(self) -> FileTransferClient:
        if self._transfer is None:
            self._require_printer()
            client = self._transfer_factory(self.config.printer, self.config.transfer)
            await client.connect()
            self._transfer = client
        return self._transfer

    async def close(self) -> None:
        session, self._session = self._session, None
        transfer, self._transfer = self._transfer, None
        if session is not None:
            await session.disconnect()
        if transfer is not None:
            await transfer.disconnect()

    async def __aenter__(self) -> "PrinterOperations":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _send(self, command: DeviceCommand, message: str, wait: bool) -> Dict[str, Any]:
        session = await self.session()
        response = await session.publish_command(command, wait_for_response=wait)
        result: Dict[str, Any] = {
            "success": response.success,
            "message": message,
            "sequence_id": response.sequence_id,
        }
        if response.data is not None:
            result["response"] = response.data
        return result

    # ------------------------------------------------------------------
    # print
    # ------------------------------------------------------------------
    async def start_print(
        self,
        file_name: str,
        *,
        bed_leveling: bool = True,
        flow_calibration: bool = False,
        vibration_calibration: bool = True,
        layer_inspect: bool = False,
        timelapse: bool = False,
        use_ams: bool = True,
        ams_mapping: Any = None,
        auto_match: bool = False,
        require_ams: bool = False,
        wait: bool = False,
    ) -> Dict[str, Any]:
        """Start a print, optionally matching its filaments to the loaded trays."""

        mapping = parse_ams_mapping(ams_mapping)
        result: Dict[str, Any] = {}

        if auto_match:
            transfer = await self.transfer()
            archive = await transfer.download_to_buffer(storage_path(file_name))
            parsed = extract_profiles(archive)

            session = await self.session()
            status = await session.get_status()
            matched = match_profiles(parsed.profiles, status)
            if require_ams and not matched.ams_detected:
                raise MaterialBayNotDetected()

            mapping = list(matched.mapping)
            use_ams = use_ams and matched.ams_detected
            result["filament_match"] = {
                "ams_detected": matched.ams_detected,
                "total_slots": matched.total_slots,
                "mapping": mapping,
                "matches": [
                    {
                        "profile": match.profile.index,
                        "type": match.profile.type,
                        "colour": match.profile.colour,
                        "name": match.profile.name,
                        "slot": match.matched_slot,
                        "tray_id": match.matched_tray_id,
                    }
                    for match in matched.matches
                ],
            }
            LOGGER.info("Filament mapping for %s: %s", file_name, mapping)

        options = PrintOptions(
            bed_leveling=bed_leveling,
            flow_calibration=flow_calibration,
            vibration_calibration=vibration_calibration,
            layer_inspect=layer_inspect,
            timelapse=timelapse,
            use_ams=use_ams,
        )
        if mapping:
            options.ams_mapping = mapping

        session = await self.session()
        command = session.commands.start_print(file_name, options)
        sent = await self._send(command, f"Print job started: {file_name}", wait)
        sent["file_name"] = file_name
        sent["ams_mapping"] = list(options.ams_mapping)
        sent.update(result)
        return sent

    async def pause_print(self, *, wait: bool = False) -> Dict[str, Any]:
        session = await self.session()
        return await self._send(session.commands.pause_print(), "Print paused", wait)

    async def resume_print(self, *, wait: bool = False) -> Dict[str, Any]:
        session = await self.session()
        return await self._send(session.commands.resume_print(), "Print resumed", wait)

    async def stop_print(self, *, wait: bool = False) -> Dict[str, Any]:
        session = await self.session()
        return await self._send(session.commands.stop_print(), "Print stopped", wait)

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------
    async def current_status(self) -> Dict[str, Any]:
        session = await self.session()
        return await session.get_status()

    async def progress(self) -> Dict[str, Any]:
        session = await self.session()
        return summarize_progress(await session.get_status())

    async def temperatures(self) -> Dict[str, Any]:
        session = await self.session()
        return summarize_temperatures(await session.get_status())

    # ------------------------------------------------------------------
    # file
    # ------------------------------------------------------------------
    async def upload_file(
        self,
        file_name: str,
        *,
        remote_path: str = "/",
        content: Optional[str] = None,
        local_path: Optional[Path] = None,
    ) -> Dict[str, Any]:
        transfer = await self.transfer()
        result = await transfer.upload(
            file_name,
            remote_path,
            content=content,
            local_path=local_path,
            progress=lambda p: LOGGER.debug(
                "Uploading %s: %d%%", p.file_name, p.percentage
            ),
        )
        return to_jsonable(result)

    async def list_files(self, *, path: str = "/") -> Dict[str, Any]:
        transfer = await self.transfer()
        files = await transfer.list_files(path)
        return {"success": True, "files": to_jsonable(files)}

    async def delete_file(self, path: str) -> Dict[str, Any]:
        transfer = await self.transfer()
        return to_jsonable(await transfer.delete_file(path))

    async def download_file(self, path: str, *, local_path: Optional[Path] = None) -> Dict[str, Any]:
        transfer = await self.transfer()
        if local_path is not None:
            written = await transfer.download_file(path, Path(local_path))
            return {"success": True, "path": path, "local_path": str(written)}
        data = await transfer.download_to_buffer(path)
        return {
            "success": True,
            "path": path,
            "size": len(data),
            "content_base64": base64.b64encode(data).decode("ascii"),
        }

    # ------------------------------------------------------------------
    # camera
    # ------------------------------------------------------------------
    async def stream_urls(self) -> Dict[str, Any]:
        urls = camera_urls(self.config.printer)
        return {"rtsp": urls["rtsp"], "http": urls["http"]}

    async def snapshot_url(self) -> Dict[str, Any]:
        return {
            "url": camera_urls(self.config.printer)["snapshot"],
            "message": "Use this URL to fetch a snapshot image",
        }

    async def snapshot(self, *, output: Optional[Path] = None) -> Dict[str, Any]:
        async with self._camera_factory(self.config.printer) as camera:
            capture = await camera.capture()

        result = to_jsonable(capture)
        if capture.success and output is not None and capture.image_data is not None:
            Path(output).write_bytes(capture.image_data)
            result.pop("image_data", None)
            result["output"] = str(output)
        return result

    # ------------------------------------------------------------------
    # control
    # ------------------------------------------------------------------
    async def set_led(
        self,
        node: str,
        mode: str,
        *,
        on_time: int = 500,
        off_time: int = 500,
        wait: bool = False,
    ) -> Dict[str, Any]:
        session = await self.session()
        command = session.commands.set_led(node, mode, on_time, off_time)
        return await self._send(command, f"LED {node} set to {mode}", wait)

    async def set_speed(self, percent: float, *, wait: bool = False) -> Dict[str, Any]:
        session = await self.session()
        command = session.commands.set_speed(percent)
        return await self._send(command, f"Speed set to {command.body['param']}%", wait)

    async def home(self, *, wait: bool = False) -> Dict[str, Any]:
        session = await self.session()
        return await self._send(session.commands.home_axes(), "Homing axes", wait)

    async def set_fan(self, fan: str, percent: float, *, wait: bool = False) -> Dict[str, Any]:
        session = await self.session()
        builders = {
            "part": session.commands.set_part_cooling_fan,
            "chamber": session.commands.set_chamber_fan,
        }
        builder = builders.get(fan)
        if builder is None:
            raise ValueError(f"Unknown fan {fan!r}; expected one of: {', '.join(builders)}")
        return await self._send(builder(percent), f"{fan.capitalize()} fan set to {percent:g}%", wait)

    async def set_temperature(
        self, heater: str, temperature: float, *, wait: bool = False
    ) -> Dict[str, Any]:
        session = await self.session()
        builders = {
            "bed": session.commands.set_bed_temperature,
            "nozzle": session.commands.set_nozzle_temperature,
        }
        builder = builders.get(heater)
        if builder is None:
            raise ValueError(
                f"Unknown heater {heater!r}; expected one of: {', '.join(builders)}"
            )
        return await self._send(
            builder(temperature), f"{heater.capitalize()} target set to {temperature:g}°C", wait
        )

    async def heaters_off(self, *, wait: bool = False) -> Dict[str, Any]:
        session = await self.session()
        return await self._send(session.commands.turn_off_heaters(), "Heaters off", wait)

    async def send_gcode(
        self, instruction: str, *, param: str = "", wait: bool = False
    ) -> Dict[str, Any]:
        session = await self.session()
        command = session.commands.send_gcode(instruction, param)
        return await self._send(command, f"Sent {instruction}", wait)

    async def emergency_stop(self, *, wait: bool = False) -> Dict[str, Any]:
        session = await self.session()
        return await self._send(session.commands.emergency_stop(), "Emergency stop sent", wait)

    async def load_filament(self, tray_id: int, *, wait: bool = False) -> Dict[str, Any]:
        session = await self.session()
        return await self._send(
            session.commands.load_filament(tray_id), f"Loading filament from tray {tray_id}", wait
        )

    async def unload_filament(self, tray_id: int, *, wait: bool = False) -> Dict[str, Any]:
        session = await self.session()
        return await self._send(
            session.commands.unload_filament(tray_id), f"Unloading filament from tray {tray_id}", wait
        )
