"""Pairing-key lifecycle: issue, upload, download, status, release.

Identity is always an explicit argument. Issue records the caller's identity
as the session owner; download and status only answer a matching identity
and otherwise behave as if the key did not exist. Upload deliberately skips
the identity check, because the uploading device is never the one that
issued the key.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO

from fastapi.concurrency import run_in_threadpool

from app.config import Settings
from app.errors import Forbidden, InvalidPayload, KeyCollision, KeyspaceExhausted, UnknownSession
from app.keys import KeyGenerator, normalize_key
from app.scheduling import LoopScheduler, Scheduler
from app.slots import FileSlotManager
from app.storage import LocalStorage
from app.store import FileRef, SessionRecord, SessionStore
from app.transcode import KepubifyTranscoder, kepub_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionStatus:
    last_touched_at: datetime
    file_name: str | None


def _display_name(filename: str) -> str:
    return filename.replace("\\", "/").rsplit("/", 1)[-1].strip()


class SessionService:
    def __init__(
        self,
        settings: Settings,
        *,
        storage: LocalStorage | None = None,
        scheduler: Scheduler | None = None,
        key_generator: KeyGenerator | None = None,
        transcoder: KepubifyTranscoder | None = None,
    ):
        self.settings = settings
        self.storage = storage or LocalStorage(settings.storage_dir)
        self.scheduler = scheduler or LoopScheduler()
        self.key_generator = key_generator or KeyGenerator(settings.key_alphabet, settings.key_length)
        self.transcoder = transcoder or KepubifyTranscoder(self.storage, settings.kepubify_path)
        self.store = SessionStore(
            self.scheduler,
            expire_delay=settings.expire_delay_seconds,
            max_lifetime=settings.max_expire_duration_seconds,
            shards=settings.store_shards,
            on_evict=self._on_evict,
        )
        self.slots = FileSlotManager(self.store, self.storage)

    @property
    def session_count(self) -> int:
        return len(self.store)

    def _on_evict(self, key: str, file: FileRef | None) -> None:
        self.slots.dispose(file)

    def issue(self, identity: str) -> str:
        if self.settings.issuer_marker not in identity:
            logger.error("Non-%s device tried to generate a key: %s", self.settings.issuer_marker, identity)
            raise Forbidden(f"only {self.settings.issuer_marker} devices can generate keys")

        logger.info("There are currently %d key(s) in use.", len(self.store))
        attempts = 0
        while True:
            live = len(self.store)
            if attempts > live:
                logger.error("Can't generate more keys, map is full. attempts=%d live=%d", attempts, live)
                raise KeyspaceExhausted()
            attempts += 1
            key = self.key_generator.generate()
            now = self.scheduler.now()
            record = SessionRecord(key=key, owner_identity=identity, created_at=now, last_touched_at=now)
            try:
                self.store.insert(key, record)
            except KeyCollision:
                continue
            break

        self.store.touch(key)
        logger.info("Generated key %s, %d attempt(s)", key, attempts)
        return key

    async def bind_upload(
        self,
        key: str,
        identity: str,
        filename: str,
        source: BinaryIO,
        *,
        transcode: bool = False,
    ) -> FileRef:
        """Store an upload and make it the session's current file.

        Any file previously attached to the session is deleted once the new
        one is visible.
        """
        key = normalize_key(key)
        if key not in self.store:
            logger.error("Upload for unknown key %s", key)
            raise UnknownSession(f"Unknown key: {key}")

        display_name = _display_name(filename or "")
        extension = self.settings.required_extension.lower()
        if not display_name.lower().endswith(extension):
            logger.error("Filename does not end with %s: %s", extension, filename)
            raise InvalidPayload(f"Uploaded file does not end with {extension}: {filename}")

        logger.debug("Upload for key %s from %s", key, identity)
        handle, size = await run_in_threadpool(
            self.storage.save_file,
            source,
            suffix=extension,
            max_size_bytes=self.settings.max_upload_size_bytes,
        )
        if size == 0:
            self.storage.delete(handle)
            raise InvalidPayload("Invalid or no file submitted")

        if transcode:
            handle = await self.transcoder.transcode(handle)
            display_name = kepub_name(display_name)

        file = FileRef(display_name=display_name, storage_handle=handle, uploaded_at=self.scheduler.now())
        try:
            if not self.store.touch(key):
                raise UnknownSession(f"Unknown key: {key}")
            previous = self.slots.set_file(key, file)
        except UnknownSession:
            logger.error("Key %s expired during upload, discarding %s", key, handle)
            self.storage.delete(handle)
            raise

        logger.info("Attached %s to key %s", display_name, key)
        self.slots.dispose(previous)
        return file

    def bind_download(self, key: str, identity: str) -> FileRef | None:
        key = normalize_key(key)
        record = self.store.get(key)
        if record is None or record.file is None:
            return None
        if record.owner_identity != identity:
            logger.error("User agent doesn't match: %s VS %s", record.owner_identity, identity)
            return None
        if not self.store.touch(key):
            return None
        return record.file

    def open_download(self, key: str, identity: str) -> tuple[FileRef, BinaryIO] | None:
        """``bind_download`` plus an open handle on the file's bytes.

        The handle is opened before control returns to the event loop, so a
        concurrent replacement cannot delete the file out from under it.
        """
        file = self.bind_download(key, identity)
        if file is None:
            return None
        try:
            return file, self.storage.open(file.storage_handle)
        except FileNotFoundError:
            logger.error("File for key %s is missing: %s", normalize_key(key), file.storage_handle)
            return None

    def release(self, key: str) -> None:
        key = normalize_key(key)
        previous = self.slots.clear_file(key)
        if previous is not None:
            logger.info("Released %s from key %s", previous.display_name, key)
        self.slots.dispose(previous)

    def status(self, key: str, identity: str) -> SessionStatus:
        key = normalize_key(key)
        record = self.store.get(key)
        if record is None:
            raise UnknownSession("Unknown key")
        if record.owner_identity != identity:
            logger.error("User agent doesn't match: %s VS %s", record.owner_identity, identity)
            raise UnknownSession("Unknown key")
        self.store.touch(key)
        record = self.store.get(key)
        if record is None:
            raise UnknownSession("Unknown key")
        return SessionStatus(
            last_touched_at=record.last_touched_at,
            file_name=record.file.display_name if record.file else None,
        )

    def shutdown(self) -> None:
        removed = self.store.clear()
        for _, file in removed:
            self.slots.dispose(file)
        if removed:
            logger.info("Dropped %d session(s) on shutdown", len(removed))
