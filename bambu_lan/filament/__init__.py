"""Sliced-file filament extraction and material-bay matching."""

from .matcher import (
    FilamentMatchResult,
    MatchedFilament,
    format_available,
    match_profiles,
    normalize_color,
    normalize_type,
)
from .profiles import (
    FilamentProfile,
    ParsedFilamentData,
    extract_profiles,
    extract_profiles_from_file,
    parse_gcode_header,
)

__all__ = [
    "FilamentMatchResult",
    "FilamentProfile",
    "MatchedFilament",
    "ParsedFilamentData",
    "extract_profiles",
    "extract_profiles_from_file",
    "format_available",
    "match_profiles",
    "normalize_color",
    "normalize_type",
    "parse_gcode_header",
]
