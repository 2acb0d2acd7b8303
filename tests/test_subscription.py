import queue
import time

import pytest
from watchdog.events import (
    DirModifiedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

import file_watcher_backup as fwb


@pytest.fixture
def channel():
    return queue.Queue()


@pytest.fixture
def handler(source, channel):
    return fwb.SourceEventHandler(source.resolve(), channel, clock=lambda: 7.0)


def kinds(channel):
    out = []
    while not channel.empty():
        out.append(channel.get_nowait().kind)
    return out


def test_handler_maps_events_for_source(handler, channel, source):
    src = str(source.resolve())
    handler.dispatch(FileModifiedEvent(src))
    handler.dispatch(FileCreatedEvent(src))
    handler.dispatch(FileDeletedEvent(src))
    handler.dispatch(FileMovedEvent(src, src + ".old"))
    assert kinds(channel) == [
        fwb.EventKind.WRITE,
        fwb.EventKind.CREATE,
        fwb.EventKind.REMOVE,
        fwb.EventKind.RENAME,
    ]


def test_handler_treats_rename_onto_source_as_write(handler, channel, source):
    tmp = str(source.parent.resolve() / ".notes.txt.swp")
    handler.dispatch(FileMovedEvent(tmp, str(source.resolve())))
    item = channel.get_nowait()
    assert item.kind is fwb.EventKind.WRITE
    assert item.path == source.resolve()
    assert item.timestamp == 7.0


def test_handler_ignores_siblings_and_directories(handler, channel, source):
    sibling = str(source.parent.resolve() / "other.txt")
    handler.dispatch(FileModifiedEvent(sibling))
    handler.dispatch(FileMovedEvent(sibling, sibling + ".bak"))
    handler.dispatch(DirModifiedEvent(str(source.parent.resolve())))
    assert channel.empty()


class FakeEmitter:
    def __init__(self, alive=True):
        self.alive = alive

    def is_alive(self):
        return self.alive


class FakeObserver:
    def __init__(self, fail=False, alive=True, emitters=()):
        self.fail = fail
        self.alive = alive
        self.emitters = emitters
        self.scheduled = []
        self.stopped = False

    def schedule(self, handler, path, recursive=False):
        if self.fail:
            raise FileNotFoundError(2, "No such file or directory", path)
        self.scheduled.append((path, recursive))

    def start(self):
        pass

    def is_alive(self):
        return self.alive

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass


def test_subscription_watches_parent_non_recursively(source, channel, logger):
    observer = FakeObserver()
    sub = fwb.SourceSubscription(source.resolve(), channel, logger, observer=observer)
    sub.start()
    assert observer.scheduled == [(str(source.resolve().parent), False)]
    sub.stop()
    assert observer.stopped


def test_subscription_setup_failure_is_fatal(source, channel, logger):
    sub = fwb.SourceSubscription(source.resolve(), channel, logger, observer=FakeObserver(fail=True))
    with pytest.raises(fwb.WatchSetupError) as exc:
        sub.start()
    assert exc.value.exit_code == fwb.EX_IOERR
    assert "Error adding path to watcher" in str(exc.value)


def test_check_reports_dead_emitter_once(source, channel, logger):
    emitter = FakeEmitter()
    sub = fwb.SourceSubscription(source.resolve(), channel, logger, observer=FakeObserver(emitters=(emitter,)))
    assert sub.check() is None
    emitter.alive = False
    assert isinstance(sub.check(), fwb.WatchError)
    assert sub.check() is None


def test_real_observer_mirrors_edit(source, target, logger):
    channel = queue.Queue()
    fwb.initial_sync(target, logger)
    assert target.destination_file_path.read_text() == "a"

    sub = fwb.SourceSubscription(target.source_path, channel, logger)
    sub.start()
    try:
        stream = fwb.DebouncedEventStream(channel, window=0.2, health_check=sub.check, idle_poll_sec=0.05)
        loop = fwb.WatchLoop(target, stream, logger)
        time.sleep(0.2)
        source.write_text("ab")

        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            for item in stream.poll():
                loop.handle(item)
            if target.destination_file_path.read_text() == "ab":
                break
        assert target.destination_file_path.read_text() == "ab"
    finally:
        sub.stop()
