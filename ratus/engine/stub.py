"""A storage engine that returns canned data, for testing."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

from ratus.engine.base import Engine
from ratus.models import (
    NONCE_LENGTH,
    Commit,
    Deleted,
    Promise,
    Task,
    TaskState,
    Topic,
    Updated,
)
from ratus.nonce import generate

CANNED_ID = "id"
CANNED_TOPIC = "topic"
CANNED_DATE = datetime(2022, 7, 29, 20, 0, 0, tzinfo=timezone.utc)
CANNED_PAYLOAD = "payload"


class StubEngine(Engine):
    """Engine returning canned data, or raising ``err`` from every operation if set."""

    def __init__(self, err: BaseException | None = None) -> None:
        self.err = err

    def _check(self) -> None:
        if self.err is not None:
            raise self.err

    def _active_task(self, topic: str, deadline: datetime | None) -> Task:
        return Task(
            id=CANNED_ID,
            topic=topic,
            state=TaskState.ACTIVE,
            nonce=generate(NONCE_LENGTH),
            produced=CANNED_DATE,
            scheduled=CANNED_DATE,
            consumed=CANNED_DATE,
            deadline=deadline,
            payload=CANNED_PAYLOAD,
        )

    def _stored_task(self, task_id: str, topic: str, state: TaskState) -> Task:
        return Task(
            id=task_id,
            topic=topic,
            state=state,
            produced=CANNED_DATE,
            scheduled=CANNED_DATE,
            consumed=CANNED_DATE,
            deadline=CANNED_DATE,
            payload=CANNED_PAYLOAD,
        )

    def open(self) -> None:
        self._check()

    def close(self) -> None:
        self._check()

    def destroy(self) -> None:
        self._check()

    def ready(self) -> None:
        self._check()

    def chore(self) -> None:
        self._check()

    def poll(self, topic: str, promise: Promise) -> Task:
        self._check()
        return self._active_task(topic, promise.deadline)

    def commit(self, task_id: str, commit: Commit) -> Task:
        self._check()
        return self._stored_task(task_id, CANNED_TOPIC, TaskState.COMPLETED)

    def list_topics(self, limit: int, offset: int) -> list[Topic]:
        self._check()
        return [Topic(name=CANNED_TOPIC)]

    def delete_topics(self) -> Deleted:
        self._check()
        return Deleted(deleted=1)

    def get_topic(self, topic: str) -> Topic:
        self._check()
        return Topic(name=CANNED_TOPIC, count=1)

    def delete_topic(self, topic: str) -> Deleted:
        self._check()
        return Deleted(deleted=1)

    def list_tasks(self, topic: str, limit: int, offset: int) -> list[Task]:
        self._check()
        return [self._stored_task(CANNED_ID, topic, TaskState.PENDING)]

    def insert_tasks(self, tasks: Sequence[Task]) -> Updated:
        self._check()
        return Updated(created=1, updated=0)

    def upsert_tasks(self, tasks: Sequence[Task]) -> Updated:
        self._check()
        return Updated(created=1, updated=1)

    def delete_tasks(self, topic: str) -> Deleted:
        self._check()
        return Deleted(deleted=1)

    def get_task(self, task_id: str) -> Task:
        self._check()
        return self._stored_task(task_id, CANNED_TOPIC, TaskState.PENDING)

    def insert_task(self, task: Task) -> Updated:
        self._check()
        return Updated(created=1, updated=0)

    def upsert_task(self, task: Task) -> Updated:
        self._check()
        return Updated(created=0, updated=1)

    def delete_task(self, task_id: str) -> Deleted:
        self._check()
        return Deleted(deleted=1)

    def list_promises(self, topic: str, limit: int, offset: int) -> list[Promise]:
        self._check()
        return [Promise(id=CANNED_ID, deadline=CANNED_DATE)]

    def delete_promises(self, topic: str) -> Deleted:
        self._check()
        return Deleted(deleted=1)

    def get_promise(self, promise_id: str) -> Promise:
        self._check()
        return Promise(id=promise_id, deadline=CANNED_DATE)

    def insert_promise(self, promise: Promise) -> Task:
        self._check()
        return self._active_task(CANNED_TOPIC, CANNED_DATE)

    def upsert_promise(self, promise: Promise) -> Task:
        self._check()
        return self._active_task(CANNED_TOPIC, CANNED_DATE)

    def delete_promise(self, promise_id: str) -> Deleted:
        self._check()
        return Deleted(deleted=1)