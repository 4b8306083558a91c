"""Filament profile extraction from sliced ``.3mf`` projects.

A sliced project is a ZIP archive. Its ``Metadata/plate_1.gcode`` entry
starts with a comment header written by the slicer, for example::

    ; filament: 1,2
    ; filament_type = PETG;PETG;PLA;PLA;TPU
    ; filament_colour = #515151;#000000;#68724D;#042F56;#2850E0
    ; filament_settings_id = "Name1";"Name2";"Name3";"Name4";"Name5"

Only the materials listed in ``; filament:`` are returned.
"""

from __future__ import annotations

import io
import logging
import zipfile
from dataclasses import dataclass
from itertools import islice
from pathlib import Path
from typing import List, Sequence, Tuple

from .. import constants
from ..errors import (
    InvalidArchive,
    InvalidSlotNumber,
    MissingDirective,
    MissingSliceData,
    ProfileIndexOutOfRange,
)

LOGGER = logging.getLogger(__name__)

HEADER_LINE_LIMIT = 500
MIN_SLOT = 1
MAX_SLOT = 4

DEFAULT_COLOUR = "#FFFFFF"
DEFAULT_NAME = "Unknown Profile"
DEFAULT_TYPE = "UNKNOWN"

SLOT_DIRECTIVE = "filament:"
TYPE_DIRECTIVE = "filament_type ="
COLOUR_DIRECTIVE = "filament_colour ="
NAME_DIRECTIVE = "filament_settings_id ="


@dataclass(frozen=True, slots=True)
class FilamentProfile:
    index: int
    type: str
    colour: str
    name: str
    slot_number: int
    tray_id: int


@dataclass(frozen=True, slots=True)
class ParsedFilamentData:
    profiles: Tuple[FilamentProfile, ...]
    detected_mapping: Tuple[int, ...]
    total_embedded: int


def extract_profiles(data: bytes) -> ParsedFilamentData:
    """Parse a sliced project held in memory."""

    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, ValueError) as exc:
        raise InvalidArchive(str(exc)) from exc

    with archive:
        try:
            raw = archive.read(constants.PLATE_GCODE_PATH)
        except KeyError as exc:
            raise MissingSliceData(constants.PLATE_GCODE_PATH) from exc
        except (zipfile.BadZipFile, OSError) as exc:
            raise InvalidArchive(str(exc)) from exc

    return parse_gcode_header(raw.decode("utf-8", errors="replace"))


def extract_profiles_from_file(path: Path) -> ParsedFilamentData:
    return extract_profiles(Path(path).read_bytes())


def parse_gcode_header(text: str) -> ParsedFilamentData:
    """Parse the slicer comment header at the top of a plate's instructions."""

    slots_used: List[int] = []
    types: List[str] = []
    colours: List[str] = []
    names: List[str] = []
    slot_directive_seen = False

    for line in islice(io.StringIO(text), HEADER_LINE_LIMIT):
        if not line.startswith(";"):
            continue
        comment = line[1:].strip()

        if comment.startswith(SLOT_DIRECTIVE):
            slot_directive_seen = True
            slots_used = parse_slot_usage(comment[len(SLOT_DIRECTIVE):])
        elif comment.startswith(TYPE_DIRECTIVE):
            types = _split_values(comment[len(TYPE_DIRECTIVE):])
        elif comment.startswith(COLOUR_DIRECTIVE):
            colours = _split_values(comment[len(COLOUR_DIRECTIVE):])
        elif comment.startswith(NAME_DIRECTIVE):
            names = [
                value.strip('"')
                for value in _split_values(comment[len(NAME_DIRECTIVE):])
            ]

    if not slot_directive_seen:
        raise MissingDirective(
            SLOT_DIRECTIVE,
            "This may not be a valid Bambu Studio sliced file.",
        )
    if not types or types == [""]:
        raise MissingDirective(TYPE_DIRECTIVE)

    profiles: List[FilamentProfile] = []
    for slot_number in slots_used:
        index = slot_number - 1
        if index >= len(types):
            raise ProfileIndexOutOfRange(index, slot_number, len(types))

        profiles.append(
            FilamentProfile(
                index=index,
                type=_value_at(types, index) or DEFAULT_TYPE,
                colour=_value_at(colours, index) or DEFAULT_COLOUR,
                name=_value_at(names, index) or DEFAULT_NAME,
                slot_number=slot_number,
                tray_id=index,
            )
        )

    LOGGER.debug(
        "Extracted %d of %d embedded filament profiles (slots %s)",
        len(profiles),
        len(types),
        slots_used,
    )

    return ParsedFilamentData(
        profiles=tuple(profiles),
        detected_mapping=tuple(profile.tray_id for profile in profiles),
        total_embedded=len(types),
    )


def parse_slot_usage(value: str) -> List[int]:
    """Parse ``"1,3,4"`` into ``[1, 3, 4]``; every entry must be in 1-4."""

    slots: List[int] = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            number = int(item)
        except ValueError:
            raise InvalidSlotNumber(item, minimum=MIN_SLOT, maximum=MAX_SLOT) from None
        if number < MIN_SLOT or number > MAX_SLOT:
            raise InvalidSlotNumber(item, minimum=MIN_SLOT, maximum=MAX_SLOT)
        slots.append(number)

    if not slots:
        raise MissingDirective(SLOT_DIRECTIVE, "No valid slot numbers found on the line.")
    return slots


def _split_values(value: str) -> List[str]:
    return [item.strip() for item in value.strip().split(";")]


def _value_at(values: Sequence[str], index: int) -> str:
    return values[index] if index < len(values) else ""
