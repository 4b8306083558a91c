"""Command encoder for the printer's MQTT request channel.

Every payload is a JSON object with a single top-level key naming the command
variant; the correlation ``sequence_id`` lives inside that variant's body,
which is also where the printer echoes it back.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence

from . import constants

LOGGER = logging.getLogger(__name__)


class CommandVariant(str, Enum):
    PRINT = "print"
    PUSHING = "pushing"
    SYSTEM = "system"
    GCODE_LINE = "gcode_line"


class LEDNode(str, Enum):
    CHAMBER_LIGHT = "chamber_light"
    WORK_LIGHT = "work_light"
    LOGO_LED = "logo_led"


class LEDMode(str, Enum):
    ON = "on"
    OFF = "off"
    FLASHING = "flashing"


@dataclass(frozen=True, slots=True)
class DeviceCommand:
    """An outbound command, immutable once built."""

    variant: CommandVariant
    body: Mapping[str, Any]

    def __post_init__(self) -> None:
        if "sequence_id" not in self.body:
            raise ValueError("Command body must carry a sequence_id")
        object.__setattr__(self, "body", MappingProxyType(dict(self.body)))

    @property
    def sequence_id(self) -> str:
        return str(self.body["sequence_id"])

    @property
    def command(self) -> Optional[str]:
        return self.body.get("command")

    def to_payload(self) -> Dict[str, Dict[str, Any]]:
        body = {
            key: list(value) if isinstance(value, (list, tuple)) else value
            for key, value in self.body.items()
        }
        return {self.variant.value: body}

    def encode(self) -> bytes:
        return json.dumps(self.to_payload(), separators=(",", ":")).encode("utf-8")


@dataclass(slots=True)
class PrintOptions:
    bed_leveling: bool = True
    flow_calibration: bool = False
    vibration_calibration: bool = True
    layer_inspect: bool = False
    timelapse: bool = False
    use_ams: bool = True
    ams_mapping: List[int] = field(default_factory=lambda: [0])


def extract_sequence_id(message: Mapping[str, Any]) -> Optional[str]:
    """Return the correlation identifier carried under any known variant key."""

    for variant in CommandVariant:
        section = message.get(variant.value)
        if isinstance(section, Mapping) and "sequence_id" in section:
            value = section["sequence_id"]
            if value is None:
                continue
            return str(value)
    return None


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def fan_percent_to_device(percent: float) -> int:
    """Scale a 0-100 fan percentage to the printer's 0-255 range."""

    clamped = _clamp(percent, constants.MIN_FAN_PERCENT, constants.MAX_FAN_PERCENT)
    return int(clamped / 100 * constants.FAN_DEVICE_MAX + 0.5)


class BambuCommands:
    """Builds command payloads with an owned, monotonically increasing sequence id."""

    def __init__(self, start: int = 0) -> None:
        if start < 0:
            raise ValueError("sequence ids are non-negative")
        self._sequence_id = start

    @property
    def current_sequence_id(self) -> int:
        return self._sequence_id

    def reset_sequence_id(self) -> None:
        self._sequence_id = 0

    def _next_sequence_id(self) -> str:
        value = self._sequence_id
        self._sequence_id += 1
        return str(value)

    def _build(self, variant: CommandVariant, **body: Any) -> DeviceCommand:
        return DeviceCommand(variant, {"sequence_id": self._next_sequence_id(), **body})

    # ------------------------------------------------------------------
    # Print control
    # ------------------------------------------------------------------
    def start_print(
        self, file_name: str, options: Optional[PrintOptions] = None
    ) -> DeviceCommand:
        """Start printing a sliced project already stored on the printer.

        ``file_name`` may be a bare name, a path on the SD card, or a full
        ``file:///`` URL.
        """

        opts = options or PrintOptions()
        if file_name.startswith(constants.FILE_URL_PREFIX):
            url = file_name
        elif file_name.startswith(constants.SDCARD_ROOT):
            url = f"{constants.FILE_URL_PREFIX}{file_name.lstrip('/')}"
        else:
            url = f"{constants.FILE_URL_PREFIX}sdcard/{file_name.lstrip('/')}"

        display_name = file_name.rstrip("/").rsplit("/", 1)[-1] or file_name

        return self._build(
            CommandVariant.PRINT,
            command="project_file",
            # The target printers only run the first plate's instructions.
            param=constants.PLATE_GCODE_PATH,
            project_id="",
            profile_id="",
            task_id="",
            subtask_id="",
            url=url,
            file="",
            subtask_name=display_name,
            bed_type="auto",
            bed_leveling=opts.bed_leveling,
            flow_cali=opts.flow_calibration,
            vibration_cali=opts.vibration_calibration,
            layer_inspect=opts.layer_inspect,
            timelapse=opts.timelapse,
            use_ams=opts.use_ams,
            ams_mapping=list(opts.ams_mapping),
        )

    def pause_print(self) -> DeviceCommand:
        return self._build(CommandVariant.PRINT, command="pause")

    def resume_print(self) -> DeviceCommand:
        return self._build(CommandVariant.PRINT, command="resume")

    def stop_print(self) -> DeviceCommand:
        return self._build(CommandVariant.PRINT, command="stop")

    # ------------------------------------------------------------------
    # Telemetry push control
    # ------------------------------------------------------------------
    def push_all(self, sequence_id: Optional[str] = None) -> DeviceCommand:
        """Request a full state snapshot.

        ``sequence_id`` overrides the counter; status polls use a timestamp.
        """

        return DeviceCommand(
            CommandVariant.PUSHING,
            {
                "sequence_id": sequence_id
                if sequence_id is not None
                else self._next_sequence_id(),
                "command": "pushall",
                "version": 1,
                "push_target": 1,
            },
        )

    def start_pushing(self) -> DeviceCommand:
        return self._build(CommandVariant.PUSHING, command="start")

    def stop_pushing(self) -> DeviceCommand:
        return self._build(CommandVariant.PUSHING, command="stop")

    # ------------------------------------------------------------------
    # System control
    # ------------------------------------------------------------------
    def set_led(
        self,
        node: LEDNode | str,
        mode: LEDMode | str,
        on_time: int = 500,
        off_time: int = 500,
    ) -> DeviceCommand:
        led_node = LEDNode(node)
        led_mode = LEDMode(mode)
        flashing = led_mode is LEDMode.FLASHING
        return self._build(
            CommandVariant.SYSTEM,
            command="ledctrl",
            led_node=led_node.value,
            led_mode=led_mode.value,
            led_on_time=on_time,
            led_off_time=off_time,
            loop_times=1 if flashing else 0,
            interval_time=on_time + off_time if flashing else 0,
        )

    def set_speed(self, percent: float) -> DeviceCommand:
        clamped = int(
            _clamp(round(percent), constants.MIN_SPEED_PERCENT, constants.MAX_SPEED_PERCENT)
        )
        if clamped != percent:
            LOGGER.debug("Speed %s%% clamped to %s%%", percent, clamped)
        return self._build(CommandVariant.SYSTEM, command="print_speed", param=str(clamped))

    # ------------------------------------------------------------------
    # Raw instructions
    # ------------------------------------------------------------------
    def send_gcode(self, instruction: str, param: str = "") -> DeviceCommand:
        return self._build(CommandVariant.GCODE_LINE, command=instruction, param=param or "")

    def home_axes(self) -> DeviceCommand:
        return self.send_gcode("G28")

    def set_chamber_fan(self, percent: float) -> DeviceCommand:
        return self.send_gcode("M106", f"P2 S{fan_percent_to_device(percent)}")

    def set_part_cooling_fan(self, percent: float) -> DeviceCommand:
        return self.send_gcode("M106", f"P3 S{fan_percent_to_device(percent)}")

    def set_bed_temperature(self, temperature: float) -> DeviceCommand:
        return self.send_gcode("M140", f"S{temperature:g}")

    def set_nozzle_temperature(self, temperature: float) -> DeviceCommand:
        return self.send_gcode("M104", f"S{temperature:g}")

    def turn_off_heaters(self) -> DeviceCommand:
        return self.send_gcode("M104 S0; M140 S0")

    def emergency_stop(self) -> DeviceCommand:
        return self.send_gcode("M112")

    def unload_filament(self, tray_id: int) -> DeviceCommand:
        return self.send_gcode("M620", f"P{tray_id}A")

    def load_filament(self, tray_id: int) -> DeviceCommand:
        return self.send_gcode("M620", f"P{tray_id}T255")

    def resume_filament_load(self) -> DeviceCommand:
        return self.send_gcode("M621", "S255")


def parse_ams_mapping(value: str | Sequence[int] | None) -> Optional[List[int]]:
    """Parse a comma separated tray list such as ``"0,2"``."""

    if value is None:
        return None
    if isinstance(value, str):
        items = [item.strip() for item in value.split(",") if item.strip()]
        try:
            return [int(item) for item in items] or None
        except ValueError as exc:
            raise ValueError(
                f"AMS mapping must be comma separated tray ids, got {value!r}"
            ) from exc
    return [int(item) for item in value]
