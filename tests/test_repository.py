import threading

import pytest

from queuectl.errors import InvalidSpec, NotFound, StateConflict
from queuectl.models import COMPLETED, DEAD, FAILED, PENDING, PROCESSING
from queuectl.repository import Queue


# ---------- Enqueue ----------
def test_enqueue_defaults(queue):
    job = queue.enqueue({"id": "test-1", "command": 'echo "test"'})
    assert job.id == "test-1"
    assert job.state == PENDING
    assert job.attempts == 0
    assert job.max_retries == 3
    assert job.created_at == job.updated_at
    assert job.created_at.endswith("Z")
    assert [j.id for j in queue.list_jobs()] == ["test-1"]


def test_enqueue_explicit_max_retries(queue):
    assert queue.enqueue({"command": "true", "max_retries": 5}).max_retries == 5
    assert queue.enqueue({"command": "true", "max_retries": 0}).max_retries == 0


def test_enqueue_generates_hex_id(queue):
    a = queue.enqueue({"command": "true"})
    b = queue.enqueue({"command": "true"})
    assert a.id != b.id
    assert len(a.id) == 16
    int(a.id, 16)


def test_enqueue_default_follows_config(queue):
    queue.set_config("max-retries", "1")
    assert queue.enqueue({"command": "false"}).max_retries == 1


@pytest.mark.parametrize(
    "spec",
    [
        {},
        {"command": ""},
        {"command": "   "},
        {"command": 42},
        {"command": "true", "id": ""},
        {"command": "true", "max_retries": -1},
        {"command": "true", "max_retries": "many"},
        {"command": "true", "max_retries": True},
        {"command": "true", "max_retries": 2.7},
        {"command": "true", "max_retries": "3"},
    ],
)
def test_enqueue_rejects_invalid_spec(queue, spec):
    with pytest.raises(InvalidSpec):
        queue.enqueue(spec)
    assert queue.list_jobs() == []


def test_enqueue_rejects_duplicate_ids_across_sets(queue):
    queue.enqueue({"id": "dup", "command": "true"})
    with pytest.raises(InvalidSpec):
        queue.enqueue({"id": "dup", "command": "true"})

    queue.move_to_dlq("dup")
    with pytest.raises(InvalidSpec):
        queue.enqueue({"id": "dup", "command": "true"})


# ---------- Lifecycle ----------
def test_next_pending_is_insertion_ordered_and_read_only(queue):
    assert queue.next_pending() is None
    queue.enqueue({"id": "a", "command": "true"})
    queue.enqueue({"id": "b", "command": "true"})
    assert queue.next_pending().id == "a"
    assert queue.next_pending().id == "a"

    queue.transition_state("a", PROCESSING)
    assert queue.next_pending().id == "b"
    queue.transition_state("b", COMPLETED)
    assert queue.next_pending() is None


def test_transition_state_sets_error_only_when_given(queue):
    queue.enqueue({"id": "j", "command": "false"})
    job = queue.transition_state("j", FAILED, "exit_code=1")
    assert job.state == FAILED
    assert job.error_message == "exit_code=1"

    job = queue.transition_state("j", PENDING)
    assert job.state == PENDING
    assert job.error_message == "exit_code=1"


def test_transition_state_errors(queue):
    with pytest.raises(NotFound):
        queue.transition_state("missing", PROCESSING)

    queue.enqueue({"id": "j", "command": "true"})
    with pytest.raises(ValueError):
        queue.transition_state("j", "bogus")
    with pytest.raises(ValueError):
        queue.transition_state("j", DEAD)


def test_transition_state_expected_guard(queue):
    queue.enqueue({"id": "j", "command": "true"})
    queue.transition_state("j", PROCESSING, expected=PENDING)
    with pytest.raises(StateConflict):
        queue.transition_state("j", PROCESSING, expected=PENDING)
    assert queue.get_job("j").state == PROCESSING


def test_increment_attempts(queue):
    queue.enqueue({"id": "j", "command": "true"})
    queue.transition_state("j", PROCESSING)
    assert queue.increment_attempts("j").attempts == 1
    assert queue.list_jobs(PROCESSING)[0].attempts == 1
    with pytest.raises(NotFound):
        queue.increment_attempts("missing")


# ---------- DLQ ----------
def test_move_to_dlq_and_back(queue):
    original = queue.enqueue({"id": "j", "command": "false", "max_retries": 2})
    queue.increment_attempts("j")
    queue.increment_attempts("j")

    dead = queue.move_to_dlq("j")
    assert dead.state == DEAD
    assert queue.list_jobs("all") == []
    assert [(j.id, j.state, j.attempts) for j in queue.list_dlq()] == [("j", DEAD, 2)]

    revived = queue.retry_from_dlq("j")
    assert queue.list_dlq() == []
    assert [j.id for j in queue.list_jobs("all")] == ["j"]
    assert revived.state == PENDING
    assert revived.attempts == 0
    assert revived.command == original.command
    assert revived.max_retries == original.max_retries
    assert revived.created_at == original.created_at


def test_move_to_dlq_missing(queue):
    with pytest.raises(NotFound):
        queue.move_to_dlq("missing")


def test_retry_from_dlq_missing_leaves_sets_unchanged(queue):
    queue.enqueue({"id": "live", "command": "true"})
    queue.enqueue({"id": "gone", "command": "false"})
    queue.move_to_dlq("gone")

    with pytest.raises(NotFound):
        queue.retry_from_dlq("live")
    with pytest.raises(NotFound):
        queue.retry_from_dlq("nope")

    assert [j.id for j in queue.list_jobs()] == ["live"]
    assert [j.id for j in queue.list_dlq()] == ["gone"]


def test_transition_does_not_reach_dlq_jobs(queue):
    queue.enqueue({"id": "j", "command": "false"})
    queue.move_to_dlq("j")
    with pytest.raises(NotFound):
        queue.transition_state("j", PENDING)
    assert queue.get_job("j").state == DEAD


# ---------- Queries / config / status ----------
def test_list_jobs_filters(queue):
    queue.enqueue({"id": "a", "command": "true"})
    queue.enqueue({"id": "b", "command": "true"})
    queue.transition_state("b", COMPLETED)
    assert [j.id for j in queue.list_jobs(PENDING)] == ["a"]
    assert [j.id for j in queue.list_jobs(COMPLETED)] == ["b"]
    assert [j.id for j in queue.list_jobs("all")] == ["a", "b"]
    with pytest.raises(ValueError):
        queue.list_jobs("weird")


def test_get_job_missing(queue):
    with pytest.raises(NotFound):
        queue.get_job("nope")


def test_config_roundtrip_keeps_unknown_keys(queue):
    assert queue.get_config() == {"max-retries": "3", "backoff-base": "2", "job-timeout": "30"}
    queue.set_config("max-retries", "5")
    queue.set_config("colour", "blue")
    config = queue.get_config()
    assert config["max-retries"] == "5"
    assert config["colour"] == "blue"


def test_status_counts(queue):
    for job_id in ("p", "r", "c", "f", "d"):
        queue.enqueue({"id": job_id, "command": "true"})
    queue.transition_state("r", PROCESSING)
    queue.transition_state("c", COMPLETED)
    queue.transition_state("f", FAILED, "boom")
    queue.move_to_dlq("d")
    queue.set_config("backoff-base", "4")

    status = queue.status(active_workers=3)
    assert (status.pending, status.processing, status.completed, status.failed, status.dead) == (1, 1, 1, 1, 1)
    assert status.max_retries == "3"
    assert status.backoff_base == "4"
    assert status.active_workers == 3
    assert status.to_dict()["config"]["backoff-base"] == "4"


# ---------- Concurrency ----------
def test_concurrent_enqueues_from_separate_instances_lose_nothing(store):
    queues = [Queue(store) for _ in range(4)]

    def producer(q, n):
        for i in range(15):
            q.enqueue({"id": f"{n}-{i}", "command": "true"})

    threads = [threading.Thread(target=producer, args=(q, n)) for n, q in enumerate(queues)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(Queue(store).list_jobs()) == 60


def test_dlq_moves_are_never_half_visible(queue):
    for i in range(20):
        queue.enqueue({"id": f"j{i}", "command": "false"})
    seen_bad = []
    done = threading.Event()

    def reader():
        while not done.is_set():
            snapshot = queue.store.load()
            main = {e["id"] for e in snapshot["jobs"]}
            dlq = {e["id"] for e in snapshot["dlq"]}
            if main & dlq or len(main | dlq) != 20:
                seen_bad.append((main, dlq))

    t = threading.Thread(target=reader)
    t.start()
    try:
        for i in range(20):
            queue.move_to_dlq(f"j{i}")
    finally:
        done.set()
        t.join()
    assert seen_bad == []
    assert len(queue.list_dlq()) == 20
