"""Inbound telemetry model for the printer's report channel."""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterator, List, Mapping, Optional, Union

from . import constants
from .commands import CommandVariant
from .errors import TelemetryParseError

LOGGER = logging.getLogger(__name__)

TRAYS_PER_AMS_UNIT = 4


@dataclass(frozen=True, slots=True)
class CommandEcho:
    """A report tagged with one of the command variant keys."""

    variant: CommandVariant
    sequence_id: Optional[str]
    command: Optional[str]
    raw: Dict[str, Any]

    @property
    def is_status_report(self) -> bool:
        return self.command == "push_status"


@dataclass(frozen=True, slots=True)
class PrintEcho(CommandEcho):
    pass


@dataclass(frozen=True, slots=True)
class PushingEcho(CommandEcho):
    pass


@dataclass(frozen=True, slots=True)
class SystemEcho(CommandEcho):
    pass


@dataclass(frozen=True, slots=True)
class GcodeLineEcho(CommandEcho):
    pass


@dataclass(frozen=True, slots=True)
class StateSnapshot:
    """Untagged report; carries the raw key/value data as received."""

    raw: Dict[str, Any]
    sequence_id: Optional[str] = None


TelemetryMessage = Union[PrintEcho, PushingEcho, SystemEcho, GcodeLineEcho, StateSnapshot]

_ECHO_TYPES = {
    CommandVariant.PRINT: PrintEcho,
    CommandVariant.PUSHING: PushingEcho,
    CommandVariant.SYSTEM: SystemEcho,
    CommandVariant.GCODE_LINE: GcodeLineEcho,
}


def classify(data: Dict[str, Any]) -> TelemetryMessage:
    """Wrap a decoded report in its variant type."""

    tags = [variant for variant in CommandVariant if isinstance(data.get(variant.value), dict)]
    if len(tags) == 1:
        variant = tags[0]
        section = data[variant.value]
        sequence_id = section.get("sequence_id")
        return _ECHO_TYPES[variant](
            variant=variant,
            sequence_id=None if sequence_id is None else str(sequence_id),
            command=section.get("command"),
            raw=data,
        )
    return StateSnapshot(raw=data)


def decode_payload(payload: Union[bytes, str]) -> Dict[str, Any]:
    if isinstance(payload, bytes):
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise TelemetryParseError(f"Report payload is not valid UTF-8: {exc}") from exc
    else:
        text = payload

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise TelemetryParseError(f"Report payload is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise TelemetryParseError(
            f"Report payload must be a JSON object, got {type(data).__name__}"
        )
    return data


def parse_message(payload: Union[bytes, str]) -> TelemetryMessage:
    return classify(decode_payload(payload))


# ----------------------------------------------------------------------
# Buffering
# ----------------------------------------------------------------------
@dataclass(slots=True)
class ParseFailure:
    error: str
    payload_preview: str
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class TelemetryBuffer:
    """Fixed-capacity FIFO of inbound reports; the oldest entry is evicted first."""

    def __init__(self, capacity: int = constants.MESSAGE_BUFFER_SIZE) -> None:
        if capacity < 1:
            raise ValueError("Buffer capacity must be at least 1")
        self._items: Deque[TelemetryMessage] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._items.maxlen or 0

    def append(self, message: TelemetryMessage) -> None:
        self._items.append(message)

    def clear(self) -> None:
        self._items.clear()

    def latest(self) -> Optional[TelemetryMessage]:
        return self._items[-1] if self._items else None

    def snapshot(self) -> List[TelemetryMessage]:
        return list(self._items)

    def __iter__(self) -> Iterator[TelemetryMessage]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)


# ----------------------------------------------------------------------
# Material bay
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AmsTray:
    tray_id: int
    tray_type: str
    tray_color: str
    unit_id: int = 0

    @property
    def slot(self) -> int:
        return self.tray_id + 1


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _ams_section(status: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    print_section = status.get("print")
    if isinstance(print_section, Mapping) and isinstance(print_section.get("ams"), Mapping):
        return print_section["ams"]
    if isinstance(status.get("ams"), Mapping):
        return status["ams"]
    return None


def extract_trays(status: Mapping[str, Any]) -> Optional[List[AmsTray]]:
    """Return the loaded material-bay trays, or ``None`` when no bay is reported.

    Accepts both ``print.ams.ams[*].tray`` (what printers send) and a flat
    ``ams.tray`` list. Tray ids from unit ``n`` are offset by ``4 * n``.
    """

    section = _ams_section(status)
    if section is None:
        return None

    units: List[Mapping[str, Any]]
    if isinstance(section.get("ams"), list):
        units = [unit for unit in section["ams"] if isinstance(unit, Mapping)]
    elif isinstance(section.get("tray"), list):
        units = [{"id": "0", "tray": section["tray"]}]
    else:
        return None

    trays: List[AmsTray] = []
    for unit in units:
        unit_id = _as_int(unit.get("id"), 0)
        for tray in unit.get("tray") or []:
            if not isinstance(tray, Mapping):
                continue
            local_id = _as_int(tray.get("id"), 0)
            trays.append(
                AmsTray(
                    tray_id=unit_id * TRAYS_PER_AMS_UNIT + local_id,
                    tray_type=str(tray.get("tray_type") or ""),
                    tray_color=str(tray.get("tray_color") or ""),
                    unit_id=unit_id,
                )
            )
    return trays


def has_ams(status: Mapping[str, Any]) -> bool:
    return bool(extract_trays(status))


# ----------------------------------------------------------------------
# Summaries
# ----------------------------------------------------------------------
def state_section(status: Mapping[str, Any]) -> Mapping[str, Any]:
    """Return the mapping holding printer state fields.

    Printers nest the full report under ``print``; older firmware and
    fixtures put the same fields at the top level.
    """

    section = status.get("print")
    if isinstance(section, Mapping) and (
        "gcode_state" in section or "mc_percent" in section or "nozzle_temper" in section
    ):
        return section
    return status


def summarize_progress(status: Mapping[str, Any]) -> Dict[str, Any]:
    state = state_section(status)
    return {
        "progress": state.get("mc_percent") or 0,
        "layer": state.get("layer_num") or 0,
        "totalLayers": state.get("total_layer_num") or 0,
        "remainingTime": state.get("mc_remaining_time") or 0,
        "fileName": state.get("gcode_file") or "",
        "state": state.get("gcode_state") or "UNKNOWN",
    }


def summarize_temperatures(status: Mapping[str, Any]) -> Dict[str, Any]:
    state = state_section(status)
    return {
        "nozzle": {
            "current": state.get("nozzle_temper") or 0,
            "target": state.get("nozzle_target_temper") or 0,
        },
        "bed": {
            "current": state.get("bed_temper") or 0,
            "target": state.get("bed_target_temper") or 0,
        },
        "chamber": state.get("chamber_temper") or 0,
    }
