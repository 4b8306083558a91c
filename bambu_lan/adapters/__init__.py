"""Adapter modules for the printer's network services."""

from .camera import CameraClient, CaptureResult, camera_urls
from .ftp import FileTransferClient, RemoteFile, UploadProgress, UploadResult
from .mqtt import MQTTClient

__all__ = [
    "CameraClient",
    "CaptureResult",
    "FileTransferClient",
    "MQTTClient",
    "RemoteFile",
    "UploadProgress",
    "UploadResult",
    "camera_urls",
]
