import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote, unquote

from .errors import LockContention

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"


class FileLockCoordinator:
    """
    Per-job locks as marker files, placed with a hard link so they appear
    complete with their holder token.

    link() fails when the name exists, so only one creator wins. Locks never expire: a
    worker killed before its cleanup runs leaves the marker behind, and the
    job stays locked until an operator removes it.
    """

    def __init__(self, lock_dir):
        self.lock_dir = Path(lock_dir)
        self.lock_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, job_id: str) -> Path:
        return self.lock_dir / (quote(job_id, safe="") + LOCK_SUFFIX)

    def try_acquire(self, job_id: str, holder: str) -> bool:
        # holder is written first, then linked into place; link fails if the lock exists
        fd, tmp = tempfile.mkstemp(dir=str(self.lock_dir), prefix=".", suffix=".holder")
        try:
            with os.fdopen(fd, "w") as fh:
                fh.write(holder)
            os.link(tmp, self._path(job_id))
        except FileExistsError:
            return False
        finally:
            os.unlink(tmp)
        return True

    def release(self, job_id: str):
        try:
            os.unlink(self._path(job_id))
        except FileNotFoundError:
            pass

    def holder(self, job_id: str) -> Optional[str]:
        try:
            return self._path(job_id).read_text()
        except FileNotFoundError:
            return None

    def held(self) -> Dict[str, str]:
        locks = {}
        for path in sorted(self.lock_dir.glob("*" + LOCK_SUFFIX)):
            job_id = unquote(path.name[: -len(LOCK_SUFFIX)])
            holder = self.holder(job_id)
            if holder is not None:
                locks[job_id] = holder
        return locks

    @contextmanager
    def hold(self, job_id: str, holder: str):
        if not self.try_acquire(job_id, holder):
            raise LockContention(f"Job '{job_id}' is locked by another worker.")
        try:
            yield
        finally:
            self.release(job_id)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class WorkerRegistry:
    """One file per running worker process: name is the pid, content the thread count."""

    def __init__(self, directory):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def register(self, count: int, pid: Optional[int] = None):
        path = self.directory / str(pid or os.getpid())
        path.write_text(str(count))

    def unregister(self, pid: Optional[int] = None):
        try:
            os.unlink(self.directory / str(pid or os.getpid()))
        except FileNotFoundError:
            pass

    def _entries(self) -> Dict[int, int]:
        entries = {}
        for path in self.directory.iterdir():
            if not path.name.isdigit():
                continue
            pid = int(path.name)
            if not _pid_alive(pid):
                logger.debug("Pruning registry entry of dead worker process %s", pid)
                self.unregister(pid)
                continue
            try:
                entries[pid] = int(path.read_text() or 0)
            except (FileNotFoundError, ValueError):
                continue
        return entries

    def pids(self) -> List[int]:
        return sorted(self._entries())

    def active_count(self) -> int:
        return sum(self._entries().values())
