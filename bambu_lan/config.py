"""Configuration loader for bambu-lan."""

from __future__ import annotations

import os
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from . import constants

ENV_OVERRIDES = {
    "BAMBU_HOST": "host",
    "BAMBU_ACCESS_CODE": "access_code",
    "BAMBU_SERIAL": "serial_number",
}

RESPONSE_FALLBACK_POLICIES = ("latest", "strict")


@dataclass(slots=True)
class PrinterConfig:
    host: str = ""
    access_code: str = ""
    serial_number: str = ""
    mqtt_port: int = constants.DEFAULT_MQTT_PORT
    use_tls: bool = True  # Printers ship self-signed certificates; verification is disabled
    ftp_port: int = constants.DEFAULT_FTP_PORT

    @property
    def report_topic(self) -> str:
        return constants.REPORT_TOPIC_TEMPLATE.format(serial=self.serial_number)

    @property
    def request_topic(self) -> str:
        return constants.REQUEST_TOPIC_TEMPLATE.format(serial=self.serial_number)

    def missing_fields(self) -> list[str]:
        return [
            name
            for name in ("host", "access_code", "serial_number")
            if not getattr(self, name)
        ]


@dataclass(slots=True)
class SessionConfig:
    connect_timeout_seconds: float = constants.CONNECT_TIMEOUT_SECONDS
    response_timeout_seconds: float = constants.RESPONSE_TIMEOUT_SECONDS
    disconnect_timeout_seconds: float = constants.DISCONNECT_TIMEOUT_SECONDS
    poll_interval_seconds: float = constants.POLL_INTERVAL_SECONDS
    buffer_size: int = constants.MESSAGE_BUFFER_SIZE
    response_fallback: str = "latest"  # "latest" or "strict"


@dataclass(slots=True)
class RetryConfig:
    max_retries: int = constants.RETRY_MAX_RETRIES
    initial_delay_seconds: float = constants.RETRY_INITIAL_DELAY_SECONDS
    max_delay_seconds: float = constants.RETRY_MAX_DELAY_SECONDS
    backoff_multiplier: float = constants.RETRY_BACKOFF_MULTIPLIER
    jitter_ratio: float = 0.0


@dataclass(slots=True)
class TransferConfig:
    connect_timeout_seconds: float = constants.FTP_CONNECT_TIMEOUT_SECONDS
    download_timeout_seconds: float = constants.FTP_DOWNLOAD_TIMEOUT_SECONDS
    connect_retries: int = 2


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class BambuConfig:
    printer: PrinterConfig
    session: SessionConfig
    retry: RetryConfig
    transfer: TransferConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path


def _positive(value: float, default: float) -> float:
    return value if value > 0 else default


def load_config(
    path: Optional[Path] = None, *, environ: Optional[Mapping[str, str]] = None
) -> BambuConfig:
    """Load configuration from disk, applying defaults and environment overrides."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    env = os.environ if environ is None else environ

    parser = ConfigParser()
    parser.read_dict(
        {
            "printer": {
                "host": "",
                "access_code": "",
                "serial_number": "",
                "mqtt_port": str(constants.DEFAULT_MQTT_PORT),
                "use_tls": "true",
                "ftp_port": str(constants.DEFAULT_FTP_PORT),
            },
            "session": {
                "connect_timeout_seconds": str(constants.CONNECT_TIMEOUT_SECONDS),
                "response_timeout_seconds": str(constants.RESPONSE_TIMEOUT_SECONDS),
                "disconnect_timeout_seconds": str(constants.DISCONNECT_TIMEOUT_SECONDS),
                "poll_interval_seconds": str(constants.POLL_INTERVAL_SECONDS),
                "buffer_size": str(constants.MESSAGE_BUFFER_SIZE),
                "response_fallback": "latest",
            },
            "retry": {
                "max_retries": str(constants.RETRY_MAX_RETRIES),
                "initial_delay_seconds": str(constants.RETRY_INITIAL_DELAY_SECONDS),
                "max_delay_seconds": str(constants.RETRY_MAX_DELAY_SECONDS),
                "backoff_multiplier": str(constants.RETRY_BACKOFF_MULTIPLIER),
                "jitter_ratio": "0.0",
            },
            "transfer": {
                "connect_timeout_seconds": str(constants.FTP_CONNECT_TIMEOUT_SECONDS),
                "download_timeout_seconds": str(constants.FTP_DOWNLOAD_TIMEOUT_SECONDS),
                "connect_retries": "2",
            },
            "logging": {
                "level": "INFO",
                "log_network": "false",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    for env_name, option in ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value:
            parser.set("printer", option, value)

    printer = PrinterConfig(
        host=parser.get("printer", "host").strip(),
        access_code=parser.get("printer", "access_code").strip(),
        serial_number=parser.get("printer", "serial_number").strip(),
        mqtt_port=parser.getint(
            "printer", "mqtt_port", fallback=constants.DEFAULT_MQTT_PORT
        ),
        use_tls=parser.getboolean("printer", "use_tls", fallback=True),
        ftp_port=parser.getint("printer", "ftp_port", fallback=constants.DEFAULT_FTP_PORT),
    )

    session_defaults = SessionConfig()
    fallback_policy = parser.get("session", "response_fallback", fallback="latest")
    fallback_policy = fallback_policy.strip().lower()
    if fallback_policy not in RESPONSE_FALLBACK_POLICIES:
        fallback_policy = session_defaults.response_fallback

    session = SessionConfig(
        connect_timeout_seconds=_positive(
            parser.getfloat("session", "connect_timeout_seconds"),
            session_defaults.connect_timeout_seconds,
        ),
        response_timeout_seconds=_positive(
            parser.getfloat("session", "response_timeout_seconds"),
            session_defaults.response_timeout_seconds,
        ),
        disconnect_timeout_seconds=_positive(
            parser.getfloat("session", "disconnect_timeout_seconds"),
            session_defaults.disconnect_timeout_seconds,
        ),
        poll_interval_seconds=_positive(
            parser.getfloat("session", "poll_interval_seconds"),
            session_defaults.poll_interval_seconds,
        ),
        buffer_size=max(1, parser.getint("session", "buffer_size")),
        response_fallback=fallback_policy,
    )

    retry = RetryConfig(
        max_retries=max(0, parser.getint("retry", "max_retries")),
        initial_delay_seconds=max(0.0, parser.getfloat("retry", "initial_delay_seconds")),
        max_delay_seconds=max(0.0, parser.getfloat("retry", "max_delay_seconds")),
        backoff_multiplier=max(1.0, parser.getfloat("retry", "backoff_multiplier")),
        jitter_ratio=max(0.0, min(1.0, parser.getfloat("retry", "jitter_ratio"))),
    )

    transfer_defaults = TransferConfig()
    transfer = TransferConfig(
        connect_timeout_seconds=_positive(
            parser.getfloat("transfer", "connect_timeout_seconds"),
            transfer_defaults.connect_timeout_seconds,
        ),
        download_timeout_seconds=_positive(
            parser.getfloat("transfer", "download_timeout_seconds"),
            transfer_defaults.download_timeout_seconds,
        ),
        connect_retries=max(0, parser.getint("transfer", "connect_retries")),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    return BambuConfig(
        printer=printer,
        session=session,
        retry=retry,
        transfer=transfer,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )


def save_config(config: BambuConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
