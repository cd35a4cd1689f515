import logging
import os
import signal
import subprocess
import threading
import time
from typing import List, Optional

from .config import int_setting
from .errors import AlreadyRunning, ExecutionFailure, LockContention, NotFound, StateConflict
from .locks import FileLockCoordinator, WorkerRegistry
from .models import COMPLETED, FAILED, PENDING, PROCESSING, Job
from .repository import Queue

logger = logging.getLogger(__name__)


def _kill_process_group(proc: subprocess.Popen):
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def run_command(cmd: str, timeout: int = 30, capture_output: bool = True) -> str:
    """
    Run `cmd` through the shell, verbatim, in its own process group.

    Returns captured stdout. Raises ExecutionFailure on non-zero exit, on
    timeout (the whole group is killed) or when the shell cannot be started.
    """
    pipe = subprocess.PIPE if capture_output else None
    try:
        proc = subprocess.Popen(
            cmd,
            shell=True,
            stdout=pipe,
            stderr=pipe,
            text=True,
            start_new_session=True,
        )
    except OSError as e:
        raise ExecutionFailure(f"could not start command: {e}")

    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_process_group(proc)
        proc.communicate()
        raise ExecutionFailure(f"timed out after {timeout}s", timed_out=True)

    if stdout:
        logger.info("stdout: %s", stdout.strip())
    if stderr:
        logger.info("stderr: %s", stderr.strip())

    if proc.returncode != 0:
        detail = stderr.strip().splitlines()[-1] if stderr and stderr.strip() else ""
        message = f"exit_code={proc.returncode}"
        if detail:
            message = f"{message}: {detail[:500]}"
        raise ExecutionFailure(message, returncode=proc.returncode)
    return stdout or ""


class WorkerManager:
    """
    Pool of worker threads draining one Queue.

    Each loop claims a job by taking its file lock and then flipping it from
    pending to processing; the flip is conditional so a stale `next_pending`
    read can never make two workers run the same job.
    """

    def __init__(
        self,
        queue: Queue,
        locks: FileLockCoordinator,
        *,
        registry: Optional[WorkerRegistry] = None,
        poll_interval: float = 1.0,
        contention_interval: float = 0.1,
        grace_period: float = 30.0,
        capture_output: bool = True,
    ):
        self.queue = queue
        self.locks = locks
        self.registry = registry
        self.poll_interval = poll_interval
        self.contention_interval = contention_interval
        self.grace_period = grace_period
        self.capture_output = capture_output

        self._stop = threading.Event()
        self._stopped = threading.Event()
        self._threads: List[threading.Thread] = []
        self._state_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    @property
    def active_workers(self) -> int:
        return sum(1 for t in self._threads if t.is_alive())

    # ---------- Pool ----------
    def start_workers(self, count: int):
        if count < 1:
            raise ValueError("count must be >= 1")
        with self._state_lock:
            if self.running:
                raise AlreadyRunning("Workers are already running.")
            self._stop.clear()
            self._stopped.clear()
            self._threads = []
            if self.registry is not None:
                self.registry.register(count)
            for i in range(count):
                name = f"worker-{i + 1}"
                t = threading.Thread(target=self._worker_loop, args=(name,), name=name, daemon=True)
                t.start()
                self._threads.append(t)
                logger.info("Started %s", name)

    def stop_workers(self, grace_period: Optional[float] = None) -> bool:
        """Stop claiming new work and wait for in-flight jobs. Returns True when fully drained."""
        grace = self.grace_period if grace_period is None else grace_period
        self._stop.set()

        deadline = time.monotonic() + grace
        for t in self._threads:
            if t is threading.current_thread():
                continue
            t.join(max(0.0, deadline - time.monotonic()))

        alive = [t.name for t in self._threads if t.is_alive()]
        if alive:
            logger.warning(
                "Grace period of %ss elapsed; workers still running: %s", grace, ", ".join(alive)
            )
        else:
            logger.info("All workers stopped gracefully.")
            if self.registry is not None:
                self.registry.unregister()
        self._stopped.set()
        return not alive

    def wait(self, interval: float = 0.5):
        """Block until every loop exits or stop_workers() has returned, drained or not."""
        # short joins keep the main thread responsive to signals
        while self.running and not self._stopped.is_set():
            for t in self._threads:
                if self._stopped.is_set():
                    break
                t.join(interval)

    def install_signal_handlers(self):
        def _handler(signum, frame):
            logger.info("Received signal %s. Stopping workers", signum)
            self.stop_workers()

        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, _handler)

    # ---------- Loop ----------
    def _worker_loop(self, name: str):
        holder = f"{os.getpid()}:{name}"
        while not self._stop.is_set():
            try:
                job = self.queue.next_pending()
                if job is None:
                    self._stop.wait(self.poll_interval)
                    continue
                try:
                    with self.locks.hold(job.id, holder):
                        self._process(name, job)
                except LockContention:
                    logger.debug("[%s] %s is locked by another worker", name, job.id)
                    self._stop.wait(self.contention_interval)
            except Exception:
                logger.exception("[%s] Unexpected error", name)
                self._stop.wait(self.poll_interval)
        logger.info("[%s] Worker stopped.", name)

    def _process(self, name: str, job: Job):
        try:
            self.queue.transition_state(job.id, PROCESSING, expected=PENDING)
        except (StateConflict, NotFound):
            logger.debug("[%s] %s was claimed elsewhere, skipping", name, job.id)
            return

        timeout = int_setting(self.queue.get_config(), "job-timeout")
        logger.info("[%s] Executing job: %s -> %s", name, job.id, job.command)
        try:
            run_command(job.command, timeout=timeout, capture_output=self.capture_output)
        except ExecutionFailure as e:
            self._handle_failure(name, job.id, e)
        else:
            self.queue.transition_state(job.id, COMPLETED)
            logger.info("[%s] Job %s completed successfully.", name, job.id)

    def _handle_failure(self, name: str, job_id: str, error: ExecutionFailure):
        job = self.queue.increment_attempts(job_id)
        self.queue.transition_state(job_id, FAILED, str(error))

        if job.attempts >= job.max_retries:
            self.queue.move_to_dlq(job_id)
            logger.warning(
                "[%s] Job %s failed (%s), attempt %d/%d. Moved to DLQ.",
                name, job_id, error, job.attempts, job.max_retries,
            )
            return

        base = int_setting(self.queue.get_config(), "backoff-base")
        delay = base ** job.attempts
        logger.warning(
            "[%s] Job %s failed (%s), attempt %d/%d. Retrying in %ss.",
            name, job_id, error, job.attempts, job.max_retries, delay,
        )
        # shutdown cuts the backoff short; the job still goes back to pending
        self._stop.wait(delay)
        self.queue.transition_state(job_id, PENDING)
