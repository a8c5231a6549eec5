import json
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from ratus.engine.memdb.engine import MemDBEngine
from ratus.engine.memdb.store import Config
from ratus.models import (
    Commit,
    ConflictError,
    NotFoundError,
    Promise,
    ServiceUnavailableError,
    Task,
    TaskState,
)
from ratus.nonce import generate


def now():
    return datetime.now(timezone.utc)


def pending(task_id, n, payload="a", topic="test", scheduled=None):
    return Task(
        id=task_id,
        topic=topic,
        state=TaskState.PENDING,
        produced=n,
        scheduled=scheduled or n,
        payload=payload,
    )


def run_concurrently(fn, times=3):
    def call():
        try:
            return fn()
        except Exception as exc:  # collected for assertions
            return exc

    with ThreadPoolExecutor(max_workers=times) as pool:
        futures = [pool.submit(call) for _ in range(times)]
        return [f.result() for f in futures]


@pytest.fixture
def engine():
    g = MemDBEngine(Config(retention_period=timedelta(minutes=10)))
    with pytest.raises(ServiceUnavailableError):
        g.ready()
    g.open()
    g.ready()
    yield g
    g.destroy()


# Blank state.


def test_blank_chore_and_poll(engine):
    engine.chore()
    with pytest.raises(NotFoundError):
        engine.poll("test", Promise(id="foo"))
    assert engine.list_tasks("test", 10, 0) == []


def test_blank_commit(engine):
    with pytest.raises(NotFoundError):
        engine.commit("foo", Commit(payload="hello"))


def test_blank_topic(engine):
    assert engine.list_topics(10, 0) == []
    with pytest.raises(NotFoundError):
        engine.get_topic("test")
    assert engine.delete_topic("test").deleted == 0
    assert engine.delete_topics().deleted == 0


def test_blank_task(engine):
    assert engine.list_tasks("test", 10, 0) == []
    with pytest.raises(NotFoundError):
        engine.get_task("foo")
    assert engine.delete_task("foo").deleted == 0
    assert engine.delete_tasks("test").deleted == 0


def test_blank_promise(engine):
    assert engine.list_promises("test", 10, 0) == []
    with pytest.raises(NotFoundError):
        engine.get_promise("foo")
    assert engine.delete_promise("foo").deleted == 0
    assert engine.delete_promises("test").deleted == 0


# Sequential operations.


def test_sequential(engine):
    n = now()

    assert engine.insert_task(pending("1", n, "a")).created == 1
    u = engine.insert_tasks([pending("1", n, "xxx"), pending("2", n, "b")])
    assert u.created == 1
    with pytest.raises(ConflictError):
        engine.insert_task(pending("1", n, "xxx"))
    assert engine.get_task("1").payload == "a"
    assert engine.get_topic("test").count == 2

    v = engine.insert_promise(Promise(id="1", deadline=n))
    assert v.state == TaskState.ACTIVE
    with pytest.raises(ConflictError):
        engine.insert_promise(Promise(id="1", deadline=n))
    with pytest.raises(NotFoundError):
        engine.insert_promise(Promise(id="xxx", deadline=n))
    assert engine.get_promise("1").deadline == n
    v = engine.upsert_promise(Promise(id="2", deadline=n))
    assert v.state == TaskState.ACTIVE
    with pytest.raises(NotFoundError):
        engine.upsert_promise(Promise(id="xxx", deadline=n))
    assert engine.get_promise("2").deadline == n

    engine.chore()
    with pytest.raises(NotFoundError):
        engine.get_promise("1")

    engine.poll("test", Promise(deadline=n))
    engine.poll("test", Promise(deadline=n))
    assert len(engine.list_promises("test", 10, 0)) == 2

    with pytest.raises(ConflictError):
        engine.commit("1", Commit(nonce="xxx"))
    with pytest.raises(NotFoundError):
        engine.commit("xxx", Commit(nonce="xxx"))
    v = engine.get_task("1")
    m = Commit(
        nonce=v.nonce,
        topic="completed",
        state=TaskState.COMPLETED,
        scheduled=n,
        payload="completed",
    )
    assert engine.commit("1", m).payload == "completed"
    with pytest.raises(ConflictError):
        engine.commit("1", m)

    assert [t.name for t in engine.list_topics(10, 0)] == ["completed", "test"]
    assert engine.delete_topic("completed").deleted == 1
    assert engine.delete_topics().deleted == 1
    assert engine.delete_topics().deleted == 0


# Concurrent operations.


def test_concurrent_insert_task(engine):
    n = now()
    results = run_concurrently(lambda: engine.insert_task(pending("1", n)))
    assert sum(isinstance(r, ConflictError) for r in results) == 2
    assert len(engine.list_tasks("test", 10, 0)) == 1
    assert engine.delete_task("1").deleted == 1


def test_concurrent_upsert_task(engine):
    n = now()
    results = run_concurrently(lambda: engine.upsert_task(pending("1", n)))
    assert sum(r.created for r in results) == 1
    assert sum(r.updated for r in results) == 2
    assert len(engine.list_tasks("test", 10, 0)) == 1
    assert engine.delete_tasks("test").deleted == 1


def test_concurrent_insert_tasks(engine):
    n = now()
    results = run_concurrently(
        lambda: engine.insert_tasks([pending("1", n, "a"), pending("2", n, "b")])
    )
    assert sum(r.created for r in results) == 2
    assert len(engine.list_tasks("test", 10, 0)) == 2
    assert engine.delete_topic("test").deleted == 2


def test_concurrent_upsert_tasks(engine):
    n = now()
    results = run_concurrently(
        lambda: engine.upsert_tasks([pending("1", n, "a"), pending("2", n, "b")])
    )
    assert sum(r.created for r in results) == 2
    assert sum(r.updated for r in results) == 4
    assert len(engine.list_tasks("test", 10, 0)) == 2
    assert engine.delete_topics().deleted == 2


def test_concurrent_insert_promise(engine):
    n = now()
    engine.insert_task(pending("1", n))
    results = run_concurrently(lambda: engine.insert_promise(Promise(id="1", deadline=n)))
    assert sum(isinstance(r, ConflictError) for r in results) == 2
    assert engine.get_promise("1").deadline == n
    assert engine.get_task("1").state == TaskState.ACTIVE
    assert engine.delete_promise("1").deleted == 1
    assert engine.get_task("1").state == TaskState.PENDING
    assert engine.get_task("1").nonce == ""
    assert engine.delete_task("1").deleted == 1


def test_concurrent_upsert_promise(engine):
    n = now()
    engine.insert_task(pending("1", n))
    results = run_concurrently(lambda: engine.upsert_promise(Promise(id="1", deadline=n)))
    assert all(r.state == TaskState.ACTIVE for r in results)
    assert engine.get_promise("1").deadline == n
    assert engine.delete_promises("test").deleted == 1
    assert engine.get_task("1").state == TaskState.PENDING
    assert engine.delete_tasks("test").deleted == 1


def test_concurrent_poll(engine):
    n = now()
    engine.insert_tasks([pending("1", n, "a"), pending("2", n, "b")])
    results = run_concurrently(lambda: engine.poll("test", Promise(deadline=n)))
    assert sum(isinstance(r, NotFoundError) for r in results) == 1
    assert sorted(r.id for r in results if isinstance(r, Task)) == ["1", "2"]
    assert len(engine.list_promises("test", 10, 0)) == 2
    engine.chore()
    assert engine.list_promises("test", 10, 0) == []
    assert engine.delete_topic("test").deleted == 2


def test_concurrent_commit(engine):
    n = now()
    k = generate(16)
    m = Commit(
        nonce=k, topic="archived", state=TaskState.ARCHIVED, scheduled=n, payload="archived"
    )
    task = pending("1", n)
    task.nonce = k
    engine.insert_task(task)
    results = run_concurrently(lambda: engine.commit("1", m))
    assert sum(isinstance(r, ConflictError) for r in results) == 2
    v = engine.get_task("1")
    assert v.state == TaskState.ARCHIVED
    assert v.payload == "archived"
    assert engine.delete_tasks("archived").deleted == 1
    assert engine.delete_topics().deleted == 0


# Scheduling.


def test_schedule(engine):
    n = now()
    n1 = n + timedelta(milliseconds=200)
    n2 = n + timedelta(milliseconds=400)
    engine.insert_tasks([pending("1", n, "a"), pending("2", n, "b", scheduled=n1)])
    assert engine.poll("test", Promise(deadline=n1)).id == "1"
    with pytest.raises(NotFoundError):
        engine.poll("test", Promise(deadline=n1))
    time.sleep(0.25)
    v = engine.poll("test", Promise(deadline=n2))
    assert v.id == "2"
    assert v.deadline == n2
    assert engine.delete_topics().deleted == 2


# Pagination.


def test_pagination(engine):
    n = now()
    engine.insert_tasks(
        [
            Task(id=i, topic=t, state=TaskState.ACTIVE, produced=n, scheduled=n, payload=p)
            for i, t, p in [("1", "a", "a"), ("2", "b", "b"), ("3", "c", "c-3"), ("4", "c", "c-4")]
        ]
    )
    assert [t.name for t in engine.list_topics(1, 1)] == ["b"]
    assert engine.list_topics(10, 10) == []
    assert [t.id for t in engine.list_tasks("c", 1, 1)] == ["4"]
    assert engine.list_tasks("c", 10, 10) == []
    assert [p.id for p in engine.list_promises("c", 1, 1)] == ["4"]
    assert engine.list_promises("c", 10, 10) == []
    assert engine.delete_topics().deleted == 4


# Payloads.

NESTED = {
    "empty": None,
    "bool": True,
    "int": 123,
    "float": 3.14,
    "string": "hello",
    "array": [1, 2, "a"],
}
PAYLOAD_CASES = [
    ("1", None),
    ("2", True),
    ("3", 123),
    ("4", 3.14),
    ("5", "hello"),
    ("6", [1, 2, "a"]),
    ("7", {**NESTED, "nested": dict(NESTED)}),
]


@pytest.mark.parametrize("task_id,payload", PAYLOAD_CASES)
def test_payload(engine, task_id, payload):
    n = now()
    engine.insert_task(
        Task(id=task_id, topic="test", state=TaskState.ACTIVE, scheduled=n, payload=payload)
    )
    v = engine.get_task(task_id)
    assert v.id == task_id
    assert v.state == TaskState.ACTIVE
    assert v.scheduled == n
    assert json.dumps(v.payload, sort_keys=True) == json.dumps(payload, sort_keys=True)


def test_returned_tasks_are_copies(engine):
    n = now()
    engine.insert_task(pending("1", n, "a"))
    v = engine.get_task("1")
    v.topic = "changed"
    assert engine.get_task("1").topic == "test"


def test_context_manager_opens_engine():
    with MemDBEngine() as g:
        assert g.insert_task(pending("1", now())).created == 1
        assert g.get_topic("test").count == 1


def test_operations_before_open_raise():
    g = MemDBEngine()
    with pytest.raises(ServiceUnavailableError):
        g.get_task("1")


# Snapshots.


def test_snapshot(tmp_path):
    path = tmp_path / "test.db"
    config = Config(
        snapshot_path=str(path),
        snapshot_interval=timedelta(minutes=5),
        retention_period=timedelta(minutes=10),
    )
    g = MemDBEngine(config)
    g.open()
    n = now()
    g.insert_tasks(
        [
            Task(id="1", topic="test", state=TaskState.PENDING, scheduled=n, consumed=n, payload="hello"),
            Task(id="2", topic="test", state=TaskState.PENDING, scheduled=n, consumed=n, payload=3.14),
        ]
    )

    g.chore()
    assert path.exists()
    g.chore()

    g.insert_task(
        Task(id="3", topic="test", state=TaskState.PENDING, scheduled=n, consumed=n, payload=NESTED)
    )
    g.close()
    assert path.exists()

    u = MemDBEngine(config)
    u.open()
    assert len(u.list_tasks("test", 10, 0)) == 3
    assert u.get_task("1").decode(str) == "hello"
    assert u.get_task("2").decode(float) == 3.14
    text = json.dumps(u.get_task("3").decode(dict))
    for piece in (
        '"array": [1, 2, "a"]',
        '"bool": true',
        '"empty": null',
        '"float": 3.14',
        '"int": 123',
        '"string": "hello"',
    ):
        assert piece in text
    u.destroy()
    assert not path.exists()


def test_expire():
    retention = timedelta(milliseconds=200)
    g = MemDBEngine(Config(retention_period=retention))
    with pytest.raises(ServiceUnavailableError):
        g.ready()
    g.open()
    n = now()
    n1 = n + retention
    n2 = n + 2 * retention
    g.insert_tasks(
        [
            Task(id="1", topic="test", state=TaskState.COMPLETED, scheduled=n, consumed=n),
            Task(id="2", topic="test", state=TaskState.COMPLETED, scheduled=n1, consumed=n1),
            Task(
                id="3",
                topic="test",
                state=TaskState.ACTIVE,
                scheduled=n,
                consumed=n,
                deadline=n2,
            ),
        ]
    )
    for i in range(3):
        if i > 0:
            time.sleep(0.25)
        g.chore()
        assert len(g.list_tasks("test", 10, 0)) == 3 - i
    assert g.get_task("3").state == TaskState.PENDING