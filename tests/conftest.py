import io
import zipfile

import pytest

from bambu_lan.config import PrinterConfig

SAMPLE_HEADER = """; HEADER_BLOCK_START
; generated by BambuStudio 01.09.00.70
; filament: {slots}
; filament_type = PETG;PETG;PLA;PLA;TPU
; filament_colour = #515151;#000000;#FF0000;#042F56;#2850E0
; filament_settings_id = "Bambu PETG HF";"Generic PETG";"Bambu PLA Basic";"Bambu PLA Matte";"Generic TPU"
; HEADER_BLOCK_END
G28
"""


def build_3mf(gcode: str | None, *, extra: dict[str, str] | None = None) -> bytes:
    """Build a sliced-project archive in memory."""

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("[Content_Types].xml", "<Types/>")
        if gcode is not None:
            archive.writestr("Metadata/plate_1.gcode", gcode)
        for name, content in (extra or {}).items():
            archive.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def printer_config() -> PrinterConfig:
    return PrinterConfig(
        host="192.168.1.50",
        access_code="12345678",
        serial_number="01S00C123456789",
    )


@pytest.fixture
def sliced_project():
    """Factory for archives whose header uses the given slot list."""

    def factory(slots: str = "3") -> bytes:
        return build_3mf(SAMPLE_HEADER.format(slots=slots))

    return factory
