import logging

from app.store import FileRef, SessionStore
from app.storage import LocalStorage

logger = logging.getLogger(__name__)


class FileSlotManager:
    """Attaches, replaces and tears down the single file of a session.

    The swap itself happens under the store's per-key lock; deleting the
    detached file's bytes always happens afterwards, outside that lock.
    """

    def __init__(self, store: SessionStore, storage: LocalStorage):
        self.store = store
        self.storage = storage

    def set_file(self, key: str, new_file: FileRef) -> FileRef | None:
        """Attach ``new_file`` and return the file it replaced.

        Raises ``UnknownSession`` if the key is not live; the caller still
        owns ``new_file`` in that case.
        """
        return self.store.swap_file(key, new_file)

    def clear_file(self, key: str) -> FileRef | None:
        return self.store.swap_file(key, None)

    def dispose(self, file: FileRef | None) -> bool:
        if file is None:
            return False
        logger.info("Deleting file %s (%s)", file.storage_handle, file.display_name)
        return self.storage.delete(file.storage_handle)
