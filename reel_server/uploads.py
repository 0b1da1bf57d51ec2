import logging
import os
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

from .errors import UploadNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = ".mp3"
_EXTENSION_RE = re.compile(r"^\.[A-Za-z0-9]{1,8}$")
_STORED_NAME_RE = re.compile(r"^([0-9a-f]{16})(\.[A-Za-z0-9]{1,8})$")


@dataclass
class UploadedAsset:
    id: str
    filename: str
    path: Path
    size: int
    expires_at: float

    @property
    def size_kb(self) -> int:
        return round(self.size / 1024)


def upload_extension(filename: Optional[str]) -> str:
    ext = os.path.splitext(os.path.basename(filename or ""))[1]
    return ext.lower() if _EXTENSION_RE.match(ext) else DEFAULT_EXTENSION


class UploadStore:
    """Short-lived storage for client payloads (e.g. lip-sync audio).

    Files are only reachable by their generated ``<id><ext>`` name and stop
    being served once expired, whether or not the deletion task has run.
    """

    def __init__(self, upload_dir: str, retention: float = 1800.0, cleanup=None,
                 clock: Callable[[], float] = time.time):
        self.upload_dir = Path(upload_dir)
        self.retention = retention
        self.cleanup = cleanup
        self.clock = clock
        self._assets: Dict[str, UploadedAsset] = {}

    @property
    def expires_in(self) -> str:
        return f"{int(self.retention // 60)}m"

    @property
    def registered(self) -> int:
        return len(self._assets)

    def write(self, data: bytes, filename: Optional[str] = None) -> UploadedAsset:
        """Blocking part of ``store()``; safe to run in an executor."""
        file_id = secrets.token_hex(8)
        name = f"{file_id}{upload_extension(filename)}"
        path = self.upload_dir / name
        path.write_bytes(data)
        return UploadedAsset(
            id=file_id,
            filename=name,
            path=path,
            size=len(data),
            expires_at=self.clock() + self.retention,
        )

    def add(self, asset: UploadedAsset) -> UploadedAsset:
        self._assets[asset.filename] = asset
        if self.cleanup is not None:
            self.cleanup.schedule(
                str(asset.path),
                delay=self.retention,
                on_removed=lambda: self._forget(asset.filename),
            )
        logger.info("[upload] Stored %s (%dKB)", asset.filename, asset.size_kb)
        return asset

    def store(self, data: bytes, filename: Optional[str] = None) -> UploadedAsset:
        return self.add(self.write(data, filename))

    def _forget(self, name: str) -> None:
        self._assets.pop(name, None)

    def resolve(self, filename: str) -> Path:
        name = os.path.basename(filename or "")
        if name != filename or not _STORED_NAME_RE.match(name):
            raise UploadNotFoundError()
        path = self.upload_dir / name
        if not path.is_file():
            self._assets.pop(name, None)
            raise UploadNotFoundError()

        asset = self._assets.get(name)
        if asset is not None:
            expires_at = asset.expires_at
        else:
            # left over from an earlier process
            expires_at = path.stat().st_mtime + self.retention
        if self.clock() >= expires_at:
            logger.info("[upload] %s expired", name)
            raise UploadNotFoundError()
        return path
