"""FTPS adapter for the printer's SD card storage."""

from __future__ import annotations

import asyncio
import ftplib
import io
import logging
import posixpath
import socket
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple, Union

from .. import constants, paths
from ..config import PrinterConfig, TransferConfig
from ..errors import (
    DownloadTimeout,
    NotConnectedError,
    RemoteFileNotFound,
    TransferAuthError,
    TransferConnectionError,
    TransferError,
    TransferPermissionDenied,
)
from ..retry import RetryPolicy

LOGGER = logging.getLogger(__name__)

UPLOAD_BLOCK_SIZE = 8192


class ImplicitFTPS(ftplib.FTP_TLS):
    """``FTP_TLS`` that speaks TLS from the first byte.

    The printer listens for implicit FTPS on port 990 and rejects data
    connections that do not resume the control channel's TLS session.
    """

    def connect(self, host: str = "", port: int = 0, timeout: float = -999,
                source_address: Any = None) -> str:
        if host:
            self.host = host
        if port:
            self.port = port
        if timeout != -999:
            self.timeout = timeout
        if source_address is not None:
            self.source_address = source_address

        raw = socket.create_connection(
            (self.host, self.port), self.timeout, source_address=self.source_address
        )
        self.af = raw.family
        self.sock = self.context.wrap_socket(raw, server_hostname=self.host)
        self.file = self.sock.makefile("r", encoding=self.encoding)
        self.welcome = self.getresp()
        return self.welcome

    def ntransfercmd(self, cmd: str, rest: Any = None) -> Tuple[socket.socket, Optional[int]]:
        conn, size = ftplib.FTP.ntransfercmd(self, cmd, rest)
        if self._prot_p:
            conn = self.context.wrap_socket(
                conn, server_hostname=self.host, session=self.sock.session
            )
        return conn, size


FTPFactory = Callable[[ssl.SSLContext, bool], ftplib.FTP_TLS]


def default_ftp_factory(context: ssl.SSLContext, implicit: bool) -> ftplib.FTP_TLS:
    if implicit:
        return ImplicitFTPS(context=context)
    return ftplib.FTP_TLS(context=context)


@dataclass(slots=True)
class RemoteFile:
    name: str
    path: str
    type: str  # "file" or "directory"
    size: Optional[int] = None
    modified: Optional[datetime] = None
    permissions: Optional[str] = None

    @property
    def is_directory(self) -> bool:
        return self.type == "directory"


@dataclass(slots=True)
class UploadProgress:
    file_name: str
    bytes_transferred: int
    total_bytes: int

    @property
    def percentage(self) -> int:
        if self.total_bytes <= 0:
            return 100
        return round(self.bytes_transferred / self.total_bytes * 100)


@dataclass(slots=True)
class UploadResult:
    success: bool
    message: str
    file_name: str
    remote_path: str


@dataclass(slots=True)
class DeleteResult:
    success: bool
    message: str
    file_name: str


ProgressCallback = Callable[[UploadProgress], None]


def _ftp_code(exc: BaseException) -> str:
    return str(exc)[:3]


def _parse_mlsd_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value[:14], "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def parse_list_line(line: str, directory: str) -> Optional[RemoteFile]:
    """Parse one Unix-style ``LIST`` line."""

    parts = line.split(None, 8)
    if len(parts) < 9:
        return None
    permissions, name = parts[0], parts[8]
    if name in (".", ".."):
        return None
    try:
        size: Optional[int] = int(parts[4])
    except ValueError:
        size = None
    return RemoteFile(
        name=name,
        path=posixpath.join(directory, name),
        type="directory" if permissions.startswith("d") else "file",
        size=size,
        permissions=permissions,
    )


class FileTransferClient:
    """Async facade over a blocking FTPS connection to one printer.

    Blocking ``ftplib`` calls run in a worker thread one at a time; the
    control connection is not shared between concurrent calls.
    """

    def __init__(
        self,
        printer: PrinterConfig,
        transfer: Optional[TransferConfig] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        ftp_factory: Optional[FTPFactory] = None,
    ) -> None:
        self.printer = printer
        self.config = transfer or TransferConfig()
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=self.config.connect_retries
        )
        self._ftp_factory = ftp_factory or default_ftp_factory
        self._ftp: Optional[ftplib.FTP_TLS] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._ftp is not None

    @property
    def implicit_tls(self) -> bool:
        return self.printer.ftp_port == constants.IMPLICIT_FTPS_PORT

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        def log_retry(attempt: int, exc: BaseException, delay: float) -> None:
            LOGGER.warning("FTP connection attempt %d failed: %s. Retrying...", attempt, exc)

        self._ftp = await self.retry_policy.run_conditional(
            lambda: asyncio.to_thread(self._open), on_retry=log_retry
        )

    def _open(self) -> ftplib.FTP_TLS:
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

        ftp = self._ftp_factory(context, self.implicit_tls)
        try:
            ftp.connect(
                self.printer.host,
                self.printer.ftp_port,
                timeout=self.config.connect_timeout_seconds,
            )
            if not self.implicit_tls:
                ftp.auth()
            ftp.login(constants.PRINTER_USERNAME, self.printer.access_code)
            ftp.prot_p()
        except ftplib.error_perm as exc:
            ftp.close()
            if _ftp_code(exc) == "530":
                raise TransferAuthError() from exc
            raise TransferConnectionError(
                self.printer.host, self.printer.ftp_port, str(exc)
            ) from exc
        except (OSError, EOFError, ftplib.Error) as exc:
            ftp.close()
            raise TransferConnectionError(
                self.printer.host, self.printer.ftp_port, str(exc)
            ) from exc

        LOGGER.info(
            "FTPS connected to %s:%s (implicit=%s)",
            self.printer.host,
            self.printer.ftp_port,
            self.implicit_tls,
        )
        return ftp

    async def _ensure_connection(self) -> ftplib.FTP_TLS:
        if self._ftp is None:
            await self.connect()
        if self._ftp is None:
            raise NotConnectedError("FTP")
        return self._ftp

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        async with self._lock:
            return await asyncio.to_thread(func, *args)

    async def disconnect(self) -> None:
        """Close the connection; a no-op when already closed."""

        ftp, self._ftp = self._ftp, None
        if ftp is None:
            return
        try:
            await asyncio.to_thread(ftp.quit)
        except (OSError, EOFError, ftplib.Error) as exc:
            LOGGER.debug("FTP QUIT failed (%s); closing socket", exc)
            ftp.close()

    async def __aenter__(self) -> "FileTransferClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def upload(
        self,
        file_name: str,
        remote_path: str = "/",
        *,
        content: Union[bytes, str, None] = None,
        local_path: Optional[Path] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        """Upload ``content`` or the file at ``local_path`` as ``file_name``."""

        safe_name = paths.sanitize_filename(file_name)
        safe_dir = paths.sanitize_path(remote_path or "/")
        target = paths.safe_join(safe_dir, safe_name)

        if local_path is not None:
            data = await asyncio.to_thread(Path(local_path).read_bytes)
        elif content is not None:
            data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        else:
            raise ValueError("Either local_path or content must be provided")

        def store(ftp: ftplib.FTP_TLS) -> None:
            sent = 0

            def on_block(block: bytes) -> None:
                nonlocal sent
                sent += len(block)
                if progress is not None:
                    progress(UploadProgress(safe_name, sent, len(data)))

            try:
                ftp.storbinary(f"STOR {target}", io.BytesIO(data), UPLOAD_BLOCK_SIZE, on_block)
            except ftplib.error_perm as exc:
                code = _ftp_code(exc)
                if code == "530":
                    raise TransferAuthError() from exc
                if code == "550" or "permission" in str(exc).lower():
                    raise TransferPermissionDenied(safe_dir) from exc
                raise TransferError(f"Failed to upload file: {exc}") from exc

        ftp = await self._ensure_connection()
        await self._call(store, ftp)
        LOGGER.info("Uploaded %s (%d bytes)", target, len(data))
        return UploadResult(
            success=True,
            message=f"File {safe_name} uploaded successfully",
            file_name=safe_name,
            remote_path=target,
        )

    async def list_files(self, path: str = "/") -> List[RemoteFile]:
        directory = paths.sanitize_path(path)

        def listing(ftp: ftplib.FTP_TLS) -> List[RemoteFile]:
            try:
                return [
                    RemoteFile(
                        name=name,
                        path=posixpath.join(directory, name),
                        type="directory" if facts.get("type") == "dir" else "file",
                        size=int(facts["size"]) if facts.get("size") else None,
                        modified=_parse_mlsd_time(facts.get("modify")),
                        permissions=facts.get("unix.mode") or facts.get("perm"),
                    )
                    for name, facts in ftp.mlsd(directory)
                    if name not in (".", "..") and facts.get("type") not in ("cdir", "pdir")
                ]
            except ftplib.error_perm as exc:
                if _ftp_code(exc) != "502":
                    raise
                LOGGER.debug("MLSD not supported, falling back to LIST")

            lines: List[str] = []
            ftp.retrlines(f"LIST {directory}", lines.append)
            return [entry for entry in (parse_list_line(line, directory) for line in lines) if entry]

        ftp = await self._ensure_connection()
        try:
            return await self._call(listing, ftp)
        except ftplib.Error as exc:
            raise TransferError(f"Failed to list files in {path}: {exc}") from exc

    async def delete_file(self, path: str) -> DeleteResult:
        target = paths.sanitize_path(path)
        ftp = await self._ensure_connection()
        try:
            await self._call(ftp.delete, target)
        except ftplib.error_perm as exc:
            if _ftp_code(exc) == "550":
                raise RemoteFileNotFound(target) from exc
            raise TransferError(f"Failed to delete file {path}: {exc}") from exc
        return DeleteResult(
            success=True,
            message=f"File {target} deleted successfully",
            file_name=posixpath.basename(target) or target,
        )

    def _retrieve(self, ftp: ftplib.FTP_TLS, target: str, sink: Callable[[bytes], Any]) -> None:
        sock = getattr(ftp, "sock", None)
        previous = sock.gettimeout() if sock is not None else None
        if sock is not None:
            sock.settimeout(self.config.download_timeout_seconds)
        try:
            ftp.retrbinary(f"RETR {target}", sink)
        finally:
            if sock is not None:
                sock.settimeout(previous)

    async def _download(self, path: str, sink: Callable[[bytes], Any]) -> str:
        target = paths.sanitize_path(path)
        ftp = await self._ensure_connection()
        try:
            await self._call(self._retrieve, ftp, target, sink)
        except ftplib.error_perm as exc:
            if _ftp_code(exc) == "550" or "not found" in str(exc).lower():
                raise RemoteFileNotFound(path) from exc
            raise TransferError(f"Failed to download file {path}: {exc}") from exc
        except TimeoutError as exc:
            raise DownloadTimeout(path) from exc
        return target

    async def download_to_buffer(self, path: str) -> bytes:
        """Download ``path`` into memory."""

        buffer = io.BytesIO()
        target = await self._download(path, buffer.write)
        LOGGER.debug("Downloaded %s (%d bytes)", target, buffer.tell())
        return buffer.getvalue()

    async def download_file(self, path: str, local_path: Path) -> Path:
        """Download ``path`` to ``local_path``, leaving any existing file intact on failure."""

        local = Path(local_path)
        partial = local.with_name(f".{local.name}.part")
        try:
            with partial.open("wb") as handle:
                await self._download(path, handle.write)
            partial.replace(local)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        return local

    async def create_directory(self, path: str) -> str:
        """Create ``path`` and any missing parents."""

        target = paths.sanitize_path(path)

        def make_dirs(ftp: ftplib.FTP_TLS) -> None:
            prefix = "/" if target.startswith("/") else ""
            for part in [part for part in target.split("/") if part]:
                prefix = posixpath.join(prefix, part) if prefix else part
                try:
                    ftp.mkd(prefix)
                except ftplib.error_perm as exc:
                    # 550/521: already exists
                    if _ftp_code(exc) not in ("550", "521"):
                        raise

        ftp = await self._ensure_connection()
        try:
            await self._call(make_dirs, ftp)
        except ftplib.Error as exc:
            raise TransferError(f"Failed to create directory {path}: {exc}") from exc
        return target

    async def change_directory(self, path: str) -> str:
        target = paths.sanitize_path(path)
        ftp = await self._ensure_connection()
        try:
            await self._call(ftp.cwd, target)
        except ftplib.error_perm as exc:
            raise TransferError(f"Failed to change directory to {path}: {exc}") from exc
        return target

    async def get_current_directory(self) -> str:
        ftp = await self._ensure_connection()
        try:
            return await self._call(ftp.pwd)
        except ftplib.Error as exc:
            raise TransferError(f"Failed to get current directory: {exc}") from exc
