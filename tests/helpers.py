import heapq
import itertools
import random
from datetime import datetime, timedelta, timezone

from app.keys import KeyGenerator
from app.service import SessionService
from app.storage import LocalStorage

KOBO = "Mozilla/5.0 (Linux; U; Android 2.0; en-us;) AppleWebKit/538.1 (KHTML, like Gecko) Version/4.0 Mobile Safari/538.1 (Kobo Touch 0373/4.38.23171)"
PHONE = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148"
OTHER_KOBO = "Mozilla/5.0 (Kobo Libra 2) Version/4.0"


class ManualTimer:
    def __init__(self, callback, args):
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Simulated clock; timers only fire inside ``advance``."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.start = start
        self.elapsed = 0.0
        self._queue = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self.elapsed)

    def call_later(self, delay, callback, *args) -> ManualTimer:
        timer = ManualTimer(callback, args)
        heapq.heappush(self._queue, (self.elapsed + delay, next(self._seq), timer))
        return timer

    def advance(self, seconds: float) -> None:
        target = self.elapsed + seconds
        while self._queue and self._queue[0][0] <= target:
            when, _, timer = heapq.heappop(self._queue)
            self.elapsed = max(self.elapsed, when)
            if not timer.cancelled:
                timer.callback(*timer.args)
        self.elapsed = target

    @property
    def pending(self) -> int:
        return sum(1 for _, _, timer in self._queue if not timer.cancelled)


class CountingStorage(LocalStorage):
    def __init__(self, root_dir: str):
        super().__init__(root_dir)
        self.saved = []
        self.deleted = []

    def save_file(self, source, **kwargs):
        handle, size = super().save_file(source, **kwargs)
        self.saved.append(handle)
        return handle, size

    def delete(self, handle: str) -> bool:
        self.deleted.append(handle)
        return super().delete(handle)

    def stored(self) -> list[str]:
        return sorted(p.name for p in self.root.iterdir())


def build_service(settings, storage, scheduler, *, seed: int = 7) -> SessionService:
    generator = KeyGenerator(settings.key_alphabet, settings.key_length, random.Random(seed))
    return SessionService(settings, storage=storage, scheduler=scheduler, key_generator=generator)
