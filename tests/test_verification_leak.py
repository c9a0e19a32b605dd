"""Verification Test: worker and memory leak checks.

Abandoned reader workers must not pile up: a stream never has more than one
worker in flight, and workers end once the process behind them is gone.
Spawning, draining and removing many processes must leave the thread count
and RSS where they started.
"""

import gc
import os
import sys
import threading
import time

import psutil
import pytest

from procreg.config import RegistryConfig
from procreg.errors import ReadTimeoutError
from procreg.handle import ProcessHandle
from procreg.registry import create_registry
from procreg.scope import Scope

PYTHON = sys.executable
SLEEPER = ["-c", "import time; time.sleep(30)"]


def get_current_memory_mb() -> float:
    """Get current process memory usage in MB."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


def get_thread_count() -> int:
    return threading.active_count()


def wait_until(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.1)
    return predicate()


class TestWorkerLeakCheck:
    """Reader worker verification suite tests."""

    def test_repeated_timeouts_keep_one_worker(self):
        """
        Test many timed-out reads on one stream run a single worker.

        Each read uses a fresh short scope, so every one of them is abandoned
        while the child stays silent.
        """
        handle = ProcessHandle.launch(PYTHON, SLEEPER, None, Scope.unbounded(), RegistryConfig())
        try:
            for _ in range(50):
                with pytest.raises(ReadTimeoutError):
                    handle.stdout.read(Scope(timeout=0.01))

            workers = [
                t for t in threading.enumerate() if t.name == f"StreamReader-{handle.pid}-stdout"
            ]
            assert len(workers) == 1
            assert handle.inflight_reads == 1
        finally:
            handle.close()

    def test_timed_out_fetches_keep_two_workers_per_process(self):
        """
        Test concurrent timed-out fetches on both streams run one worker each.

        The scope is not enforced by a kill, so the silent child outlives it
        and every abandoned worker stays blocked.
        """
        config = RegistryConfig(kill_on_scope_end=False)
        with create_registry("fetch-leak", config) as registry:
            proc_id = registry.spawn(PYTHON, SLEEPER, scope=Scope(timeout=0.3))
            handle = registry._get(proc_id)
            timeouts: list[int] = []
            lock = threading.Lock()

            def fetch(read) -> None:
                try:
                    read(proc_id)
                except ReadTimeoutError:
                    with lock:
                        timeouts.append(proc_id)

            threads = [
                threading.Thread(target=fetch, args=(read,))
                for read in (registry.fetch_stdout, registry.fetch_stderr) * 5
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=5.0)

            for _ in range(20):
                with pytest.raises(ReadTimeoutError):
                    registry.fetch_stdout(proc_id)
                with pytest.raises(ReadTimeoutError):
                    registry.fetch_stderr(proc_id)

            assert len(timeouts) == 10
            assert registry.running(proc_id)
            assert handle.inflight_reads == 2
            for stream in ("stdout", "stderr"):
                workers = [
                    t
                    for t in threading.enumerate()
                    if t.name == f"StreamReader-{handle.pid}-{stream}"
                ]
                assert len(workers) == 1

        assert wait_until(lambda: handle.inflight_reads == 0)

    def test_abandoned_workers_end_with_their_process(self):
        """
        Test workers abandoned on scope expiry finish once the process is killed.

        Every handle times out once; its watcher then kills the child, which
        closes the pipes and releases the blocked worker.
        """
        baseline = get_thread_count()
        is_ci = os.environ.get("CI", "false").lower() == "true"
        num_processes = 10 if is_ci else 20

        with create_registry("leak") as registry:
            ids = [
                registry.spawn(PYTHON, SLEEPER, scope=Scope(timeout=0.3))
                for _ in range(num_processes)
            ]
            for proc_id in ids:
                with pytest.raises(ReadTimeoutError):
                    registry.fetch_stdout(proc_id)

            assert wait_until(lambda: not any(registry.running(i) for i in ids))
            assert wait_until(lambda: get_thread_count() <= baseline), (
                f"{get_thread_count() - baseline} threads left behind"
            )

    def test_spawn_churn_memory_stable(self):
        """
        Test spawning, draining and removing processes does not leak memory.

        Removed handles must release their streams, threads and psutil
        objects.
        """
        gc.collect()
        baseline_threads = get_thread_count()
        initial_memory = get_current_memory_mb()

        with create_registry("churn") as registry:
            for i in range(50):
                proc_id = registry.spawn(PYTHON, ["-c", f"print({i})"])
                stdout, _ = registry.wait_output(proc_id)
                assert stdout.strip() == str(i).encode()
                assert wait_until(lambda: not registry.running(proc_id))
                registry.remove(proc_id)

            assert len(registry) == 0

        gc.collect()
        time.sleep(0.5)

        assert wait_until(lambda: get_thread_count() <= baseline_threads)

        memory_delta = get_current_memory_mb() - initial_memory
        max_delta_mb = 10.0
        assert memory_delta < max_delta_mb, (
            f"Memory increased by {memory_delta:.2f}MB over 50 processes, "
            f"expected < {max_delta_mb}MB"
        )
