from pathlib import Path

from bambu_lan import constants
from bambu_lan.config import load_config, save_config


def test_load_config_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "bambu-lan.cfg", environ={})

    assert config.printer.host == ""
    assert config.printer.mqtt_port == 8883
    assert config.printer.ftp_port == 990
    assert config.printer.use_tls is True
    assert config.printer.missing_fields() == ["host", "access_code", "serial_number"]
    assert config.session.response_timeout_seconds == constants.RESPONSE_TIMEOUT_SECONDS
    assert config.session.buffer_size == 100
    assert config.session.response_fallback == "latest"
    assert config.retry.max_retries == 3
    assert config.retry.backoff_multiplier == 2.0
    assert config.transfer.connect_retries == 2
    assert config.logging.level == "INFO"
    assert config.logging.path is None


def test_load_config_reads_file(tmp_path: Path) -> None:
    config_path = tmp_path / "bambu-lan.cfg"
    config_path.write_text(
        """
[printer]
host = 192.168.1.50
access_code = 12345678
serial_number = 01S00C123456789
use_tls = false

[session]
response_timeout_seconds = 5
response_fallback = STRICT

[logging]
level = DEBUG
path = ~/bambu.log
        """.strip()
        + "\n",
        encoding="utf-8",
    )

    config = load_config(config_path, environ={})

    assert config.printer.missing_fields() == []
    assert config.printer.use_tls is False
    assert config.printer.report_topic == "device/01S00C123456789/report"
    assert config.printer.request_topic == "device/01S00C123456789/request"
    assert config.session.response_timeout_seconds == 5.0
    assert config.session.response_fallback == "strict"
    assert config.logging.level == "DEBUG"
    assert config.logging.path == Path("~/bambu.log").expanduser()


def test_environment_overrides_file(tmp_path: Path) -> None:
    config_path = tmp_path / "bambu-lan.cfg"
    config_path.write_text("[printer]\nhost = 10.0.0.1\n", encoding="utf-8")

    config = load_config(
        config_path,
        environ={
            "BAMBU_HOST": "10.0.0.9",
            "BAMBU_ACCESS_CODE": "secret",
            "BAMBU_SERIAL": "SERIAL",
        },
    )

    assert config.printer.host == "10.0.0.9"
    assert config.printer.access_code == "secret"
    assert config.printer.serial_number == "SERIAL"


def test_invalid_values_fall_back(tmp_path: Path) -> None:
    config_path = tmp_path / "bambu-lan.cfg"
    config_path.write_text(
        """
[session]
response_fallback = sometimes
poll_interval_seconds = 0
buffer_size = 0

[retry]
max_retries = -2
jitter_ratio = 4
        """.strip()
        + "\n",
        encoding="utf-8",
    )

    config = load_config(config_path, environ={})

    assert config.session.response_fallback == "latest"
    assert config.session.poll_interval_seconds == constants.POLL_INTERVAL_SECONDS
    assert config.session.buffer_size == 1
    assert config.retry.max_retries == 0
    assert config.retry.jitter_ratio == 1.0


def test_save_config_round_trip(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "bambu-lan.cfg"
    config = load_config(config_path, environ={})
    config.raw.set("printer", "host", "printer.local")

    save_config(config)

    reloaded = load_config(config_path, environ={})
    assert reloaded.printer.host == "printer.local"
