import logging
import pathlib
import sys

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from chatsync.config import reset_sync_settings_cache
from chatsync.sync.timers import BackgroundTasks
from fakes import FakeRequestApi, FakeScheduler, FakeTransport


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def api() -> FakeRequestApi:
    return FakeRequestApi()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def tasks() -> BackgroundTasks:
    return BackgroundTasks()


@pytest.fixture
def clean_settings():
    reset_sync_settings_cache()
    yield
    reset_sync_settings_cache()


@pytest.fixture
def clean_loggers():
    def _clear():
        for name in ("chatsync", "chatsync.wire"):
            logger = logging.getLogger(name)
            for handler in list(logger.handlers):
                handler.close()
            logger.handlers.clear()
            logger.setLevel(logging.NOTSET)
        logging.getLogger("chatsync.wire").propagate = True

    _clear()
    yield
    _clear()
