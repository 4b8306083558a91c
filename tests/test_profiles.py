import pytest

from bambu_lan.errors import (
    InvalidArchive,
    InvalidSlotNumber,
    MissingDirective,
    MissingSliceData,
    ProfileIndexOutOfRange,
)
from bambu_lan.filament import extract_profiles, extract_profiles_from_file, parse_gcode_header

from conftest import build_3mf


def test_extracts_only_used_slots(sliced_project):
    parsed = extract_profiles(sliced_project("1,3"))

    assert parsed.total_embedded == 5
    assert parsed.detected_mapping == (0, 2)
    first, second = parsed.profiles
    assert (first.index, first.type, first.colour, first.name) == (
        0,
        "PETG",
        "#515151",
        "Bambu PETG HF",
    )
    assert (second.slot_number, second.tray_id, second.type) == (3, 2, "PLA")


def test_reads_project_from_disk(tmp_path, sliced_project):
    path = tmp_path / "part.3mf"
    path.write_bytes(sliced_project("2"))

    parsed = extract_profiles_from_file(path)

    assert [profile.name for profile in parsed.profiles] == ["Generic PETG"]


def test_missing_values_use_defaults():
    parsed = parse_gcode_header("; filament: 2\n; filament_type = PLA;ABS\n")

    profile = parsed.profiles[0]
    assert profile.type == "ABS"
    assert profile.colour == "#FFFFFF"
    assert profile.name == "Unknown Profile"


def test_not_a_zip():
    with pytest.raises(InvalidArchive, match="Not a valid ZIP archive"):
        extract_profiles(b"plain text")


def test_unsliced_project():
    with pytest.raises(MissingSliceData, match="Metadata/plate_1.gcode not found"):
        extract_profiles(build_3mf(None, extra={"3D/3dmodel.model": "<model/>"}))


def test_missing_slot_directive():
    with pytest.raises(MissingDirective, match="valid Bambu Studio sliced file"):
        parse_gcode_header("; filament_type = PLA\n")


def test_missing_type_directive():
    with pytest.raises(MissingDirective, match="filament_type"):
        parse_gcode_header("; filament: 1\n")


@pytest.mark.parametrize("slots", ["0", "5", "x"])
def test_invalid_slot_numbers(slots):
    with pytest.raises(InvalidSlotNumber, match="Must be 1-4"):
        parse_gcode_header(f"; filament: {slots}\n; filament_type = PLA\n")


def test_slot_beyond_embedded_profiles():
    with pytest.raises(ProfileIndexOutOfRange) as excinfo:
        parse_gcode_header("; filament: 3\n; filament_type = PLA;PETG\n")

    assert excinfo.value.available == 2


def test_header_beyond_line_limit_is_ignored():
    text = "G1 X0\n" * 600 + "; filament: 1\n; filament_type = PLA\n"

    with pytest.raises(MissingDirective):
        parse_gcode_header(text)
