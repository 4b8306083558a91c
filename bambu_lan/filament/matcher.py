"""Strict reconciliation of sliced-file filaments against the live material bay.

Both type and colour must match; there is no partial or fuzzy matching, so a
print can never silently start with the wrong material.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from ..errors import FilamentNotFound
from ..telemetry import AmsTray, extract_trays
from .profiles import FilamentProfile

LOGGER = logging.getLogger(__name__)

COLOR_HEX_LENGTH = 6


@dataclass(frozen=True, slots=True)
class MatchedFilament:
    profile: FilamentProfile
    matched_slot: int
    matched_tray_id: int
    current_color: str
    current_type: str
    match_quality: str = "exact"


@dataclass(frozen=True, slots=True)
class FilamentMatchResult:
    mapping: Tuple[int, ...]
    matches: Tuple[MatchedFilament, ...]
    ams_detected: bool
    total_slots: int


def normalize_type(value: str) -> str:
    return value.strip().upper()


def normalize_color(value: str) -> str:
    """Normalise a hex colour to six uppercase digits without ``#``.

    Printers report ``RRGGBBAA``; slicers write ``#RRGGBB``.
    """

    color = value.strip().upper()
    if color.startswith("#"):
        color = color[1:]
    color = "".join(color.split())
    if len(color) >= 8:
        color = color[:COLOR_HEX_LENGTH]
    return color


def format_available(trays: Sequence[AmsTray]) -> str:
    if not trays:
        return "No filaments loaded"
    return ", ".join(
        f"Slot {tray.slot}: {tray.tray_type or 'Unknown'} ({tray.tray_color or 'Unknown'})"
        for tray in trays
    )


def find_exact_match(
    profile: FilamentProfile, trays: Sequence[AmsTray]
) -> Optional[MatchedFilament]:
    """Return the first tray matching type and colour, in reported order."""

    wanted_type = normalize_type(profile.type)
    wanted_color = normalize_color(profile.colour)

    for tray in trays:
        if not tray.tray_type:
            continue
        if (
            normalize_type(tray.tray_type) == wanted_type
            and normalize_color(tray.tray_color) == wanted_color
        ):
            return MatchedFilament(
                profile=profile,
                matched_slot=tray.slot,
                matched_tray_id=tray.tray_id,
                current_color=tray.tray_color,
                current_type=tray.tray_type,
            )
    return None


def match_profiles(
    profiles: Sequence[FilamentProfile], status: Mapping[str, Any]
) -> FilamentMatchResult:
    """Map every profile onto a loaded tray or fail without a partial result.

    Without a material bay (or with an empty one) the printer feeds from a
    single external spool, so every profile maps to tray 0.
    """

    trays = extract_trays(status)

    if not trays:
        LOGGER.info("No AMS trays reported; mapping %d profile(s) to the external spool", len(profiles))
        return FilamentMatchResult(
            mapping=tuple(0 for _ in profiles),
            matches=tuple(
                MatchedFilament(
                    profile=profile,
                    matched_slot=1,
                    matched_tray_id=0,
                    current_color=profile.colour,
                    current_type=profile.type,
                )
                for profile in profiles
            ),
            ams_detected=False,
            total_slots=1,
        )

    matches: List[MatchedFilament] = []
    for profile in profiles:
        match = find_exact_match(profile, trays)
        if match is None:
            raise FilamentNotFound(profile, format_available(trays))
        LOGGER.debug(
            "Profile %d (%s %s) matched slot %d",
            profile.index,
            profile.type,
            profile.colour,
            match.matched_slot,
        )
        matches.append(match)

    return FilamentMatchResult(
        mapping=tuple(match.matched_tray_id for match in matches),
        matches=tuple(matches),
        ams_detected=True,
        total_slots=len(trays),
    )
