import asyncio
import logging
import re

from app.errors import TranscodeFailed
from app.storage import LocalStorage

logger = logging.getLogger(__name__)

_KEPUB_SUFFIX = re.compile(r"\.kepub\.epub$", re.IGNORECASE)
_EPUB_SUFFIX = re.compile(r"\.epub$", re.IGNORECASE)


def kepub_name(filename: str) -> str:
    """``book.epub`` -> ``book.kepub.epub``, without doubling an existing suffix."""
    return _EPUB_SUFFIX.sub(".kepub.epub", _KEPUB_SUFFIX.sub(".epub", filename))


class KepubifyTranscoder:
    """Converts a stored EPUB into a Kobo EPUB with the ``kepubify`` tool."""

    def __init__(self, storage: LocalStorage, executable: str = "kepubify"):
        self.storage = storage
        self.executable = executable

    async def transcode(self, input_handle: str) -> str:
        """Convert ``input_handle`` and return the handle of the result.

        The input file is deleted whatever the outcome.
        """
        output_handle = self.storage.new_handle(".kepub.epub")
        args = [
            "-v",
            "-u",
            "-o",
            str(self.storage.path(output_handle)),
            str(self.storage.path(input_handle)),
        ]
        logger.info("Running %s on %s", self.executable, input_handle)
        try:
            try:
                process = await asyncio.create_subprocess_exec(self.executable, *args)
            except OSError as exc:
                logger.error("Could not start %s: %s", self.executable, exc)
                raise TranscodeFailed(message=f"could not run {self.executable}") from exc
            try:
                returncode = await process.wait()
            except asyncio.CancelledError:
                logger.warning("Conversion of %s cancelled, killing %s", input_handle, self.executable)
                if process.returncode is None:
                    process.kill()
                    await process.wait()
                if self.storage.exists(output_handle):
                    self.storage.delete(output_handle)
                raise
        finally:
            self.storage.delete(input_handle)

        if returncode != 0:
            logger.error("%s exited with code %s", self.executable, returncode)
            if self.storage.exists(output_handle):
                self.storage.delete(output_handle)
            raise TranscodeFailed(returncode)
        if not self.storage.exists(output_handle):
            raise TranscodeFailed(message=f"{self.executable} produced no output")
        return output_handle
