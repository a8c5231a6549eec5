"""In-memory task table with ordered views, task updates and snapshot files."""

from __future__ import annotations

import contextlib
import copy
import dataclasses
import json
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator, Union

from ratus.engine.memdb.indexer import StateFieldIndex, TimeFieldIndex
from ratus.models import NONCE_LENGTH, Commit, Promise, Task, TaskState
from ratus.nonce import generate

PathLike = Union[str, "os.PathLike[str]"]

_PENDING = StateFieldIndex("state", TaskState.PENDING)
_ACTIVE = StateFieldIndex("state", TaskState.ACTIVE)
_COMPLETED = StateFieldIndex("state", TaskState.COMPLETED)
_SCHEDULED = TimeFieldIndex("scheduled")
_DEADLINE = TimeFieldIndex("deadline")
_CONSUMED = TimeFieldIndex("consumed")

# Time-ordered views start at the Unix epoch, as range scans do in the engine.
_EPOCH_KEY = _SCHEDULED.from_args(datetime(1970, 1, 1, tzinfo=timezone.utc))


@dataclass
class Config:
    """Settings of the in-memory storage engine."""

    snapshot_path: str = ""
    snapshot_interval: timedelta = timedelta(minutes=5)
    retention_period: timedelta = timedelta(hours=72)


def _in_state(task: Task, index: StateFieldIndex) -> bool:
    ok, _ = index.from_object(task)
    return ok


def _time_ordered(
    tasks: Iterable[Task], time_index: TimeFieldIndex
) -> list[Task]:
    keyed = []
    for task in tasks:
        ok, key = time_index.from_object(task)
        if not ok or key is None or key < _EPOCH_KEY:
            continue
        keyed.append((key, task.id, task))
    keyed.sort(key=lambda entry: (entry[0], entry[1]))
    return [copy.copy(task) for _, _, task in keyed]


class TaskTable:
    """A thread-safe table of tasks keyed by ID, with index-like ordered views.

    Stored tasks are never handed out directly: values are copied on the way
    in and on the way out, so callers cannot change the table by accident.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    @contextlib.contextmanager
    def transaction(self) -> Iterator[TaskTable]:
        """Hold the table exclusively; changes are undone if the block raises."""
        with self._lock:
            saved = dict(self._tasks)
            try:
                yield self
            except BaseException:
                self._tasks = saved
                raise

    def get(self, task_id: str) -> Task | None:
        """Return a copy of the task with the given ID, or None."""
        with self._lock:
            task = self._tasks.get(task_id)
            return None if task is None else copy.copy(task)

    def put(self, task: Task) -> None:
        """Insert a task, replacing any task with the same ID."""
        with self._lock:
            self._tasks[task.id] = copy.copy(task)

    def delete(self, task_id: str) -> int:
        """Delete a task by ID and return the number of tasks removed."""
        with self._lock:
            return 0 if self._tasks.pop(task_id, None) is None else 1

    def clear(self) -> int:
        """Delete every task and return how many were removed."""
        with self._lock:
            count = len(self._tasks)
            self._tasks = {}
            return count

    def _by_id(self) -> list[Task]:
        with self._lock:
            return [copy.copy(self._tasks[key]) for key in sorted(self._tasks)]

    def by_topic(self, topic: str) -> list[Task]:
        """Tasks in a topic, ordered by ID."""
        with self._lock:
            return sorted(
                (copy.copy(t) for t in self._tasks.values() if t.topic == topic),
                key=lambda t: t.id,
            )

    def all_by_topic(self) -> list[Task]:
        """All tasks, ordered by topic and then by ID."""
        with self._lock:
            return sorted(
                (copy.copy(t) for t in self._tasks.values()),
                key=lambda t: (t.topic, t.id),
            )

    def pending(self, topic: str) -> list[Task]:
        """Pending tasks of a topic, ordered by scheduled time and then by ID."""
        with self._lock:
            candidates = [
                t
                for t in self._tasks.values()
                if t.topic == topic and _in_state(t, _PENDING)
            ]
            return _time_ordered(candidates, _SCHEDULED)

    def active_by_deadline(self) -> list[Task]:
        """Active tasks, ordered by deadline and then by ID."""
        with self._lock:
            candidates = [t for t in self._tasks.values() if _in_state(t, _ACTIVE)]
            return _time_ordered(candidates, _DEADLINE)

    def active_by_topic(self, topic: str) -> list[Task]:
        """Active tasks of a topic, ordered by ID."""
        with self._lock:
            return sorted(
                (
                    copy.copy(t)
                    for t in self._tasks.values()
                    if t.topic == topic and _in_state(t, _ACTIVE)
                ),
                key=lambda t: t.id,
            )

    def completed_by_consumed(self) -> list[Task]:
        """Completed tasks, ordered by consumption time and then by ID."""
        with self._lock:
            candidates = [t for t in self._tasks.values() if _in_state(t, _COMPLETED)]
            return _time_ordered(candidates, _CONSUMED)


def recover_task(task: Task) -> Task:
    """Return a copy set back to pending, with the nonce cleared."""
    return dataclasses.replace(task, state=TaskState.PENDING, nonce="")


def consume_task(task: Task, promise: Promise, now: datetime) -> Task:
    """Return a copy claimed by the promise: active, with a fresh nonce."""
    return dataclasses.replace(
        task,
        state=TaskState.ACTIVE,
        nonce=generate(NONCE_LENGTH),
        consumer=promise.consumer,
        consumed=now,
        deadline=promise.deadline,
    )


def apply_commit(task: Task, commit: Commit) -> Task:
    """Return a copy with the commit's updates applied and the nonce cleared."""
    changes: dict[str, object] = {"nonce": ""}
    if commit.topic:
        changes["topic"] = commit.topic
    if commit.state is not None:
        changes["state"] = commit.state
    if commit.scheduled is not None:
        changes["scheduled"] = commit.scheduled
    if commit.payload is not None:
        changes["payload"] = commit.payload
    return dataclasses.replace(task, **changes)


def save_snapshot(table: TaskTable, path: PathLike) -> int:
    """Write every task to ``path``, one JSON record per line; return the count.

    The file is written under a temporary name and moved into place only
    when writing succeeded.
    """
    target = os.fspath(path)
    temporary = f"{target}.{generate(8)}"
    try:
        with table.transaction(), open(temporary, "w", encoding="utf-8") as handle:
            count = 0
            for task in table._by_id():
                handle.write(json.dumps(task.to_dict()))
                handle.write("\n")
                count += 1
    except BaseException:
        with contextlib.suppress(OSError):
            os.remove(temporary)
        raise
    os.replace(temporary, target)
    return count


def load_snapshot(table: TaskTable, path: PathLike) -> int:
    """Insert the tasks stored in a snapshot file; a missing file loads nothing."""
    try:
        handle = open(os.fspath(path), encoding="utf-8")
    except FileNotFoundError:
        return 0
    count = 0
    with handle, table.transaction():
        for line in handle:
            if not line.strip():
                continue
            table.put(Task.from_dict(json.loads(line)))
            count += 1
    return count