import threading
import time

import pytest

from watchrun.events import Op
from watchrun.exceptions import InitError, NotificationError
from watchrun.pipeline import Pipeline
from watchrun.runner import BatchOutcome
from watchrun.source import WatchdogSource

from conftest import FakeSource, RecordingRunner


def run_events(pipeline, source, events):
    pipeline.start()
    for path, op in events:
        source.emit(path, op)
    assert pipeline.stop(grace=5.0)


@pytest.fixture
def build(make_config, fast_cache):
    def _build(source=None, runner=None, **overrides):
        source = source or FakeSource()
        runner = runner or RecordingRunner()
        pipeline = Pipeline(make_config(**overrides), source=source, runner=runner, cache=fast_cache, poll_timeout=0.01)
        return pipeline, source, runner

    return _build


def test_identical_rewrite_runs_one_batch(tmp_path, build):
    pipeline, source, runner = build(include_pattern=".*")
    path = tmp_path / "a.txt"
    path.write_text("hello")

    run_events(pipeline, source, [(path, Op.CREATE), (path, Op.WRITE), (path, Op.WRITE)])

    assert [(event.path, event.op) for event in runner.events] == [(path, Op.CREATE)]
    assert pipeline.stats.events_received == 3
    assert pipeline.stats.events_rejected == 2
    assert pipeline.stats.batches_run == 1


def test_new_subdirectory_is_watched_before_its_files_are_filtered(tmp_path, build):
    log = []
    source = FakeSource(log=log)
    runner = RecordingRunner(log=log)
    pipeline, source, runner = build(source=source, runner=runner, recursive=True)

    sub = tmp_path / "sub"
    sub.mkdir()
    inner = sub / "file.txt"
    inner.write_text("data")

    run_events(pipeline, source, [(sub, Op.CREATE), (inner, Op.WRITE)])

    assert sub in pipeline.watchset
    assert [event.path for event in runner.events] == [sub, inner]
    assert log.index(("add", sub)) < log.index(("run", runner.events[1]))


def test_files_written_before_the_watch_still_fire(tmp_path, build):
    pipeline, source, runner = build(recursive=True)
    sub = tmp_path / "sub"
    sub.mkdir()
    inner = sub / "file.txt"
    inner.write_text("data")

    run_events(pipeline, source, [(sub, Op.CREATE)])

    assert [(event.path, event.op) for event in runner.events] == [(sub, Op.CREATE), (inner, Op.CREATE)]
    assert pipeline.stats.events_received == 1
    assert pipeline.stats.events_discovered == 1


def test_new_subdirectory_file_fires_with_watchdog_source(tmp_path, make_config, fast_cache):
    runner = RecordingRunner()
    pipeline = Pipeline(
        make_config(recursive=True),
        source=WatchdogSource(poll_timeout=0.05),
        runner=runner,
        cache=fast_cache,
        poll_timeout=0.05,
    )
    pipeline.start()
    sub = tmp_path / "sub"
    sub.mkdir()
    inner = sub / "file.txt"
    inner.write_text("data")
    time.sleep(1.0)
    assert pipeline.stop(grace=5.0)

    assert sub in pipeline.watchset
    assert any(event.path == inner for event in runner.events)


def test_excluded_names_never_run_commands(tmp_path, build):
    pipeline, source, runner = build(include_pattern=r"\.py$", exclude_pattern=r"^test_")
    names = ["notes.txt", "test_mod.py", "README"]
    for name in names:
        (tmp_path / name).write_text("x")

    run_events(pipeline, source, [(tmp_path / name, Op.CREATE) for name in names])

    assert runner.batches == []
    assert pipeline.stats.events_rejected == 3


def test_event_mask_skips_after_watch_sync(tmp_path, build):
    pipeline, source, runner = build(recursive=True, events=Op.WRITE)
    sub = tmp_path / "sub"
    sub.mkdir()

    run_events(pipeline, source, [(sub, Op.CREATE)])

    assert sub in pipeline.watchset
    assert runner.batches == []
    assert pipeline.stats.events_skipped == 1


def test_events_processed_in_arrival_order(tmp_path, build):
    pipeline, source, runner = build()
    paths = [tmp_path / f"f{index}.txt" for index in range(10)]
    run_events(pipeline, source, [(path, Op.REMOVE) for path in paths])
    assert [event.path for event in runner.events] == paths


def test_full_queue_applies_backpressure_without_loss(tmp_path, build):
    release = threading.Event()

    class SlowRunner(RecordingRunner):
        def run(self, commands, event, *, cancel=None):
            release.wait(5)
            return super().run(commands, event, cancel=cancel)

    pipeline, source, runner = build(runner=SlowRunner(), queue_size=1)
    pipeline.start()
    paths = [tmp_path / f"gone{index}" for index in range(5)]
    for path in paths:
        source.emit(path, Op.REMOVE)
    release.set()
    assert pipeline.stop(grace=5.0)

    assert [event.path for event in runner.events] == paths


def test_init_error_when_root_missing(tmp_path, build):
    pipeline, source, _ = build(root_path=tmp_path / "missing")
    with pytest.raises(InitError):
        pipeline.start()
    assert not pipeline.running


def test_init_error_when_root_registration_fails(tmp_path, build):
    source = FakeSource()
    source.fail_on.add(tmp_path)
    pipeline, source, _ = build(source=source)

    with pytest.raises(InitError):
        pipeline.start()
    assert source.closed


def test_notification_error_ends_the_session(tmp_path, build):
    pipeline, source, runner = build()
    pipeline.start()
    source.emit(tmp_path / "before", Op.REMOVE)
    source.fail("inotify queue overflow")

    assert pipeline.wait(timeout=5)
    assert isinstance(pipeline.error, NotificationError)
    assert not pipeline.running
    assert [event.path for event in runner.events] == [tmp_path / "before"]
    assert pipeline.stop()


def test_command_failure_does_not_stop_the_pipeline(tmp_path, make_config, fast_cache):
    source = FakeSource()
    config = make_config(commands=["false", "echo should-not-run"])
    pipeline = Pipeline(config, source=source, cache=fast_cache, poll_timeout=0.01)

    run_events(pipeline, source, [(tmp_path / "a", Op.REMOVE), (tmp_path / "b", Op.REMOVE)])

    assert pipeline.stats.batches_run == 2
    assert pipeline.stats.batches_failed == 2


def test_stop_cancels_after_grace_period(tmp_path, build):
    started = threading.Event()

    class BlockingRunner(RecordingRunner):
        def run(self, commands, event, *, cancel=None):
            started.set()
            cancel.wait(5)
            outcome = BatchOutcome(event=event, cancelled=True)
            self.batches.append(outcome)
            return outcome

    pipeline, source, runner = build(runner=BlockingRunner())
    pipeline.start()
    for index in range(3):
        source.emit(tmp_path / f"x{index}", Op.REMOVE)
    assert started.wait(5)

    assert pipeline.stop(grace=0.1)
    assert len(runner.batches) == 1


def test_start_twice_is_an_error(build):
    pipeline, _, _ = build()
    pipeline.start()
    try:
        with pytest.raises(InitError):
            pipeline.start()
    finally:
        pipeline.stop()


def test_stop_is_idempotent(build):
    pipeline, source, _ = build()
    assert pipeline.stop()
    pipeline.start()
    assert pipeline.stop()
    assert pipeline.stop()
    assert source.closed
