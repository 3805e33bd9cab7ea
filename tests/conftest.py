import pytest

from fakes import FREE_EVENT, PAID_EVENT, FakeMandapamApi, SleepRecorder, jpeg_bytes

from mandapam.config import AppConfig


# Purpose: Config with the production defaults and no external services.
@pytest.fixture
def config() -> AppConfig:
    return AppConfig(backend_api_url="http://backend.test/api", redis_url="")


# Purpose: Backend double for a free event.
@pytest.fixture
def free_api() -> FakeMandapamApi:
    return FakeMandapamApi(FREE_EVENT)


# Purpose: Backend double for a paid event.
@pytest.fixture
def paid_api() -> FakeMandapamApi:
    return FakeMandapamApi(PAID_EVENT)


# Purpose: Sleep replacement so debounce and poll spacing cost no real time.
@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


# Purpose: A small, valid profile photo.
@pytest.fixture
def photo_bytes() -> bytes:
    return jpeg_bytes()
