import threading

from app import stop_sweepers
from utils.sweeper import PeriodicSweeper


def test_sweeper_runs_until_stopped():
    ran = threading.Event()

    def job():
        ran.set()
        return 1

    sweeper = PeriodicSweeper("test", 0.01, job)
    sweeper.start()
    thread = sweeper._thread
    assert ran.wait(2)

    stop_sweepers([sweeper])

    assert thread.is_alive() is False
    assert sweeper._thread is None


def test_failing_job_counts_as_nothing_swept():
    def job():
        raise RuntimeError("database unavailable")

    assert PeriodicSweeper("broken", 60, job).run_once() == 0
    assert PeriodicSweeper("ok", 60, lambda: 3).run_once() == 3
