"""Storage engine keeping all tasks in memory, with optional snapshot files."""

from __future__ import annotations

import os
import threading
from datetime import datetime, timezone
from typing import Sequence, TypeVar

from ratus.engine.base import Engine
from ratus.engine.memdb.store import (
    Config,
    TaskTable,
    apply_commit,
    consume_task,
    load_snapshot,
    recover_task,
    save_snapshot,
)
from ratus.models import (
    ConflictError,
    Commit,
    Deleted,
    NotFoundError,
    Promise,
    ServiceUnavailableError,
    Task,
    TaskState,
    Topic,
    Updated,
)

_T = TypeVar("_T")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    """Treat naive times as UTC so that they compare with aware ones."""
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _page(items: Sequence[_T], limit: int, offset: int) -> list[_T]:
    return list(items[max(offset, 0) : max(offset + limit, 0)])


def _promise_of(task: Task) -> Promise:
    return Promise(id=task.id, consumer=task.consumer, deadline=task.deadline)


class MemDBEngine(Engine):
    """Keeps tasks in an in-memory table; snapshots are written if a path is set."""

    def __init__(self, config: Config | None = None) -> None:
        self.config = config if config is not None else Config()
        self._table: TaskTable | None = None
        self._save_lock = threading.Lock()
        self._saved: datetime | None = None

    @property
    def _db(self) -> TaskTable:
        if self._table is None:
            raise ServiceUnavailableError("storage engine is not open")
        return self._table

    # Lifecycle.

    def open(self) -> None:
        table = TaskTable()
        if self.config.snapshot_path:
            load_snapshot(table, self.config.snapshot_path)
        self._table = table

    def close(self) -> None:
        if self.config.snapshot_path:
            save_snapshot(self._db, self.config.snapshot_path)

    def destroy(self) -> None:
        self.delete_topics()
        self.close()
        if self.config.snapshot_path:
            os.remove(self.config.snapshot_path)

    def ready(self) -> None:
        if self._table is None:
            raise ServiceUnavailableError()

    # Queue operations.

    def chore(self) -> None:
        db = self._db
        with db.transaction():
            now = _now()
            for task in db.active_by_deadline():
                if task.deadline is not None and _aware(task.deadline) > now:
                    break
                db.put(recover_task(task))
            retention = self.config.retention_period
            for task in db.completed_by_consumed():
                if task.consumed is not None and _aware(task.consumed) + retention > now:
                    break
                db.delete(task.id)

        if not self.config.snapshot_path:
            return
        with self._save_lock:
            now = _now()
            if self._saved is not None and self._saved + self.config.snapshot_interval > now:
                return
            save_snapshot(db, self.config.snapshot_path)
            self._saved = now

    def poll(self, topic: str, promise: Promise) -> Task:
        db = self._db
        with db.transaction():
            now = _now()
            candidates = db.pending(topic)
            if not candidates:
                raise NotFoundError()
            task = candidates[0]
            if task.scheduled is not None and _aware(task.scheduled) > now:
                raise NotFoundError()
            updated = consume_task(task, promise, now)
            db.put(updated)
            return updated

    def commit(self, task_id: str, commit: Commit) -> Task:
        db = self._db
        with db.transaction():
            task = db.get(task_id)
            if task is None:
                raise NotFoundError()
            if commit.nonce and commit.nonce != task.nonce:
                raise ConflictError()
            updated = apply_commit(task, commit)
            db.put(updated)
            return updated

    # Topics.

    def list_topics(self, limit: int, offset: int) -> list[Topic]:
        db = self._db
        result: list[Topic] = []
        previous = ""
        seen = 0
        with db.transaction():
            for task in db.all_by_topic():
                if len(result) >= limit:
                    break
                if task.topic != previous:
                    previous = task.topic
                    if seen >= offset:
                        result.append(Topic(name=task.topic))
                    seen += 1
        return result

    def delete_topics(self) -> Deleted:
        return Deleted(deleted=self._db.clear())

    def get_topic(self, topic: str) -> Topic:
        count = len(self._db.by_topic(topic))
        if count == 0:
            raise NotFoundError()
        return Topic(name=topic, count=count)

    def delete_topic(self, topic: str) -> Deleted:
        db = self._db
        with db.transaction():
            return Deleted(deleted=sum(db.delete(t.id) for t in db.by_topic(topic)))

    # Tasks.

    def list_tasks(self, topic: str, limit: int, offset: int) -> list[Task]:
        return _page(self._db.by_topic(topic), limit, offset)

    def insert_tasks(self, tasks: Sequence[Task]) -> Updated:
        db = self._db
        created = 0
        with db.transaction():
            for task in tasks:
                if db.get(task.id) is not None:
                    continue
                db.put(task)
                created += 1
        return Updated(created=created, updated=0)

    def upsert_tasks(self, tasks: Sequence[Task]) -> Updated:
        db = self._db
        created = 0
        with db.transaction():
            for task in tasks:
                existed = db.get(task.id) is not None
                db.put(task)
                if not existed:
                    created += 1
        return Updated(created=created, updated=len(tasks) - created)

    def delete_tasks(self, topic: str) -> Deleted:
        return self.delete_topic(topic)

    def get_task(self, task_id: str) -> Task:
        task = self._db.get(task_id)
        if task is None:
            raise NotFoundError()
        return task

    def insert_task(self, task: Task) -> Updated:
        db = self._db
        with db.transaction():
            if db.get(task.id) is not None:
                raise ConflictError()
            db.put(task)
        return Updated(created=1, updated=0)

    def upsert_task(self, task: Task) -> Updated:
        db = self._db
        with db.transaction():
            existed = 1 if db.get(task.id) is not None else 0
            db.put(task)
        return Updated(created=1 - existed, updated=existed)

    def delete_task(self, task_id: str) -> Deleted:
        return Deleted(deleted=self._db.delete(task_id))

    # Promises.

    def list_promises(self, topic: str, limit: int, offset: int) -> list[Promise]:
        return [_promise_of(t) for t in _page(self._db.active_by_topic(topic), limit, offset)]

    def delete_promises(self, topic: str) -> Deleted:
        db = self._db
        deleted = 0
        with db.transaction():
            for task in db.active_by_topic(topic):
                db.put(recover_task(task))
                deleted += 1
        return Deleted(deleted=deleted)

    def get_promise(self, promise_id: str) -> Promise:
        task = self._db.get(promise_id)
        if task is None or task.state != TaskState.ACTIVE:
            raise NotFoundError()
        return _promise_of(task)

    def insert_promise(self, promise: Promise) -> Task:
        db = self._db
        with db.transaction():
            task = db.get(promise.id)
            if task is None:
                raise NotFoundError()
            if task.state != TaskState.PENDING:
                raise ConflictError()
            updated = consume_task(task, promise, _now())
            db.put(updated)
            return updated

    def upsert_promise(self, promise: Promise) -> Task:
        db = self._db
        with db.transaction():
            task = db.get(promise.id)
            if task is None:
                raise NotFoundError()
            updated = consume_task(task, promise, _now())
            db.put(updated)
            return updated

    def delete_promise(self, promise_id: str) -> Deleted:
        db = self._db
        with db.transaction():
            task = db.get(promise_id)
            if task is None or task.state != TaskState.ACTIVE:
                return Deleted(deleted=0)
            db.put(recover_task(task))
            return Deleted(deleted=1)