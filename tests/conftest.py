import pytest

from app.config import Settings
from app.service import SessionService
from tests.helpers import CountingStorage, ManualScheduler, build_service


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def storage(tmp_path) -> CountingStorage:
    storage = CountingStorage(str(tmp_path / "uploads"))
    storage.init()
    return storage


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(storage_dir=str(tmp_path / "uploads"), reset_storage_on_startup=False)


@pytest.fixture
def service(settings, storage, scheduler) -> SessionService:
    return build_service(settings, storage, scheduler)
