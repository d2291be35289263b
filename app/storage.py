import logging
import shutil
from pathlib import Path
from typing import BinaryIO
from uuid import uuid4

from app.errors import PayloadTooLarge

logger = logging.getLogger(__name__)


class LocalStorage:
    """Flat directory of uploaded files addressed by opaque handles.

    A handle is the stored file's name inside ``root``; client-supplied
    names never touch the filesystem.
    """

    def __init__(self, root_dir: str):
        self.root = Path(root_dir)

    def init(self, *, reset: bool = False) -> None:
        if reset and self.root.exists():
            shutil.rmtree(self.root)
        self.root.mkdir(parents=True, exist_ok=True)

    def new_handle(self, suffix: str = "") -> str:
        return f"{uuid4().hex}{suffix}"

    def path(self, handle: str) -> Path:
        if not handle or Path(handle).name != handle:
            raise ValueError(f"invalid storage handle: {handle!r}")
        return self.root / handle

    def save_file(self, source: BinaryIO, *, suffix: str, max_size_bytes: int) -> tuple[str, int]:
        handle = self.new_handle(suffix)
        target = self.path(handle)

        total = 0
        try:
            with target.open("wb") as f:
                while True:
                    chunk = source.read(1024 * 1024)
                    if not chunk:
                        break
                    total += len(chunk)
                    if total > max_size_bytes:
                        raise PayloadTooLarge()
                    f.write(chunk)
        except BaseException:
            target.unlink(missing_ok=True)
            raise
        return handle, total

    def open(self, handle: str) -> BinaryIO:
        return self.path(handle).open("rb")

    def exists(self, handle: str) -> bool:
        return self.path(handle).is_file()

    def delete(self, handle: str) -> bool:
        """Remove a stored file. Never raises; returns whether a file was removed."""
        try:
            self.path(handle).unlink()
        except FileNotFoundError:
            logger.warning("File already gone: %s", handle)
            return False
        except (OSError, ValueError) as exc:
            logger.error("Failed to delete file %s: %s", handle, exc)
            return False
        logger.info("Deleted file %s", handle)
        return True
