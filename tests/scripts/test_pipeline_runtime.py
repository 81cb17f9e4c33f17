from __future__ import annotations

import signal

import pytest

from scripts import pipeline_runtime


class _Shutdown:
    def __init__(self, stop_after_waits: int = 1) -> None:
        self.waits: list[float] = []
        self._stop_after = stop_after_waits

    def is_set(self) -> bool:
        return len(self.waits) >= self._stop_after

    def wait(self, timeout: float) -> bool:
        self.waits.append(timeout)
        return self.is_set()


def test_worker_loop_waits_only_when_idle(mocker) -> None:
    worker = mocker.Mock()
    worker.process_available_tasks.side_effect = [3, 1, 0]
    shutdown = _Shutdown(stop_after_waits=1)

    pipeline_runtime.run_worker_loop(worker, shutdown, poll_interval=2.0)

    assert worker.process_available_tasks.call_count == 3
    assert shutdown.waits == [2.0]


def test_worker_loop_backs_off_on_repeated_failures(mocker) -> None:
    worker = mocker.Mock()
    worker.process_available_tasks.side_effect = [
        RuntimeError("database is locked"),
        RuntimeError("database is locked"),
        2,
        RuntimeError("database is locked"),
    ]
    shutdown = _Shutdown(stop_after_waits=3)

    pipeline_runtime.run_worker_loop(worker, shutdown, poll_interval=1.5)

    assert shutdown.waits == [1.5, 3.0, 1.5]


def test_worker_loop_run_once_reraises(mocker) -> None:
    worker = mocker.Mock()
    worker.process_available_tasks.side_effect = RuntimeError("lease failed")

    with pytest.raises(RuntimeError, match="lease failed"):
        pipeline_runtime.run_worker_loop(worker, _Shutdown(), poll_interval=1.0, run_once=True)


def test_worker_loop_run_once_skips_wait(mocker) -> None:
    worker = mocker.Mock()
    worker.process_available_tasks.return_value = 0
    shutdown = _Shutdown()

    pipeline_runtime.run_worker_loop(worker, shutdown, poll_interval=1.0, run_once=True)

    worker.process_available_tasks.assert_called_once_with()
    assert shutdown.waits == []


@pytest.mark.parametrize(
    ("failures", "expected"),
    [(1, 2.0), (2, 4.0), (3, 8.0), (10, pipeline_runtime.MAX_FAILURE_BACKOFF_SECONDS)],
)
def test_failure_backoff(failures: int, expected: float) -> None:
    assert pipeline_runtime.failure_backoff(2.0, failures) == expected


def test_periodic_loop_continues_after_failure(mocker) -> None:
    action = mocker.Mock(side_effect=[RuntimeError("boom"), None])
    shutdown = _Shutdown(stop_after_waits=2)

    pipeline_runtime.run_periodic(action, shutdown, interval_seconds=30.0)

    assert action.call_count == 2
    assert shutdown.waits == [30.0, 30.0]


def test_shutdown_flag_set_by_signal_handler() -> None:
    flag = pipeline_runtime.ShutdownFlag()

    flag.handle(signal.SIGTERM, None)

    assert flag.is_set()
    assert flag.wait(0) is True


def test_start_process_configures_logging_and_signals(mocker) -> None:
    setup = mocker.patch.object(pipeline_runtime, "setup_logging")
    install = mocker.patch.object(pipeline_runtime.signal, "signal")
    settings = mocker.Mock(log_level="DEBUG", json_logs=True)

    flag = pipeline_runtime.start_process(settings)

    setup.assert_called_once_with(log_level="DEBUG", json_logs=True)
    assert {call.args[0] for call in install.call_args_list} == {
        signal.SIGTERM,
        signal.SIGINT,
    }
    assert isinstance(flag, pipeline_runtime.ShutdownFlag)
