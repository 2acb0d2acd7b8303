import logging

import pytest

import file_watcher_backup as fwb


@pytest.fixture
def logger(caplog):
    log = logging.getLogger("fwb_tests")
    caplog.set_level(fwb.TRACE, logger=log.name)
    return log


@pytest.fixture
def source(tmp_path):
    src = tmp_path / "notes.txt"
    src.write_text("a")
    return src


@pytest.fixture
def target(tmp_path, source):
    backup = tmp_path / "backup"
    backup.mkdir()
    return fwb.WatchTarget.create(source.resolve(), backup.resolve())


@pytest.fixture
def app_logger():
    """The process-wide logger configured by main(); handlers removed afterwards."""
    log = logging.getLogger("file_watcher_backup")
    before = list(log.handlers)
    yield log
    for h in list(log.handlers):
        if h not in before:
            log.removeHandler(h)
            h.close()
