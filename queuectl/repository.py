import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Mapping, Optional

from .config import DEFAULT_CONFIG, int_setting
from .db import SnapshotStore
from .errors import InvalidSpec, NotFound, StateConflict
from .models import COMPLETED, DEAD, FAILED, JOB_STATES, PENDING, PROCESSING, Job, Status
from .utils import generate_job_id, now_iso


def _find(entries: List[Dict[str, Any]], job_id: str) -> int:
    for i, entry in enumerate(entries):
        if entry["id"] == job_id:
            return i
    return -1


class Queue:
    """
    Job registry on top of a SnapshotStore.

    Every operation runs under one in-process lock plus the store's own
    exclusive section, so a load-modify-save cycle is never interleaved with
    another one, whether it comes from a sibling thread or another process.
    """

    def __init__(self, store: SnapshotStore):
        self.store = store
        self._mutex = threading.RLock()

    @contextmanager
    def _mutate(self):
        with self._mutex, self.store.transaction() as snapshot:
            yield snapshot

    def _load(self) -> Dict[str, Any]:
        with self._mutex:
            return self.store.load()

    def _main_entry(self, snapshot, job_id: str) -> Dict[str, Any]:
        idx = _find(snapshot["jobs"], job_id)
        if idx < 0:
            raise NotFound(f"Job '{job_id}' not found.")
        return snapshot["jobs"][idx]

    # ---------- Enqueue ----------
    def enqueue(self, spec: Mapping[str, Any]) -> Job:
        command = spec.get("command")
        if not isinstance(command, str) or not command.strip():
            raise InvalidSpec("Command cannot be empty.")

        job_id = spec.get("id")
        if job_id is not None and (not isinstance(job_id, str) or not job_id.strip()):
            raise InvalidSpec("Job id must be a non-empty string.")

        max_retries = spec.get("max_retries")
        if max_retries is not None:
            if isinstance(max_retries, bool) or not isinstance(max_retries, int):
                raise InvalidSpec("max_retries must be an integer.")
            if max_retries < 0:
                raise InvalidSpec("max_retries must be >= 0.")

        with self._mutate() as snapshot:
            if job_id is None:
                job_id = generate_job_id()
                while _find(snapshot["jobs"], job_id) >= 0 or _find(snapshot["dlq"], job_id) >= 0:
                    job_id = generate_job_id()
            elif _find(snapshot["jobs"], job_id) >= 0 or _find(snapshot["dlq"], job_id) >= 0:
                raise InvalidSpec(f"Job '{job_id}' already exists.")

            if max_retries is None:
                max_retries = int_setting(snapshot["config"], "max-retries")

            ts = now_iso()
            job = Job(
                id=job_id,
                command=command,
                state=PENDING,
                attempts=0,
                max_retries=max_retries,
                created_at=ts,
                updated_at=ts,
            )
            snapshot["jobs"].append(job.to_dict())
        return job

    # ---------- Lifecycle ----------
    def next_pending(self) -> Optional[Job]:
        for entry in self._load()["jobs"]:
            if entry["state"] == PENDING:
                return Job.from_dict(entry)
        return None

    def transition_state(
        self,
        job_id: str,
        new_state: str,
        error_message: Optional[str] = None,
        *,
        expected: Optional[str] = None,
    ) -> Job:
        if new_state not in JOB_STATES:
            raise ValueError(f"Unknown job state: {new_state!r}")
        if new_state == DEAD:
            raise ValueError("Use move_to_dlq() to send a job to the DLQ.")

        with self._mutate() as snapshot:
            entry = self._main_entry(snapshot, job_id)
            if entry["state"] == DEAD:
                return Job.from_dict(entry)
            if expected is not None and entry["state"] != expected:
                raise StateConflict(
                    f"Job '{job_id}' is {entry['state']}, expected {expected}."
                )
            entry["state"] = new_state
            entry["updated_at"] = now_iso()
            if error_message is not None:
                entry["error_message"] = error_message
            return Job.from_dict(entry)

    def increment_attempts(self, job_id: str) -> Job:
        with self._mutate() as snapshot:
            entry = self._main_entry(snapshot, job_id)
            entry["attempts"] = int(entry.get("attempts", 0)) + 1
            entry["updated_at"] = now_iso()
            return Job.from_dict(entry)

    # ---------- DLQ ----------
    def move_to_dlq(self, job_id: str) -> Job:
        with self._mutate() as snapshot:
            idx = _find(snapshot["jobs"], job_id)
            if idx < 0:
                raise NotFound(f"Job '{job_id}' not found.")
            entry = snapshot["jobs"].pop(idx)
            entry["state"] = DEAD
            entry["updated_at"] = now_iso()
            snapshot["dlq"].append(entry)
            return Job.from_dict(entry)

    def retry_from_dlq(self, job_id: str) -> Job:
        with self._mutate() as snapshot:
            idx = _find(snapshot["dlq"], job_id)
            if idx < 0:
                raise NotFound(f"Job '{job_id}' not found in DLQ.")
            entry = snapshot["dlq"].pop(idx)
            entry["state"] = PENDING
            entry["attempts"] = 0
            entry["updated_at"] = now_iso()
            snapshot["jobs"].append(entry)
            return Job.from_dict(entry)

    # ---------- Queries ----------
    def get_job(self, job_id: str) -> Job:
        snapshot = self._load()
        for entries in (snapshot["jobs"], snapshot["dlq"]):
            idx = _find(entries, job_id)
            if idx >= 0:
                return Job.from_dict(entries[idx])
        raise NotFound(f"Job '{job_id}' not found.")

    def list_jobs(self, state: str = "all") -> List[Job]:
        if state != "all" and state not in JOB_STATES:
            raise ValueError(f"Unknown job state: {state!r}")
        jobs = [Job.from_dict(e) for e in self._load()["jobs"]]
        if state == "all":
            return jobs
        return [j for j in jobs if j.state == state]

    def list_dlq(self) -> List[Job]:
        return [Job.from_dict(e) for e in self._load()["dlq"]]

    # ---------- Config ----------
    def get_config(self) -> Dict[str, str]:
        return dict(self._load()["config"])

    def set_config(self, key: str, value):
        with self._mutate() as snapshot:
            snapshot["config"][key] = str(value)

    # ---------- Status ----------
    def status(self, active_workers: int = 0) -> Status:
        snapshot = self._load()
        config = dict(snapshot["config"])
        status = Status(
            dead=len(snapshot["dlq"]),
            max_retries=config.get("max-retries", DEFAULT_CONFIG["max-retries"]),
            backoff_base=config.get("backoff-base", DEFAULT_CONFIG["backoff-base"]),
            job_timeout=config.get("job-timeout", DEFAULT_CONFIG["job-timeout"]),
            active_workers=active_workers,
            config=config,
        )
        for entry in snapshot["jobs"]:
            state = entry["state"]
            if state in (PENDING, PROCESSING, COMPLETED, FAILED):
                setattr(status, state, getattr(status, state) + 1)
        return status
