"""Interface for storage engine implementations."""

from __future__ import annotations

from abc import ABC, abstractmethod
from types import TracebackType
from typing import Sequence

from ratus.models import Commit, Deleted, Promise, Task, Topic, Updated


class Engine(ABC):
    """A storage engine holding topics, tasks and promises.

    Operations raise the errors defined in :mod:`ratus.models`, such as
    :class:`~ratus.models.NotFoundError` or :class:`~ratus.models.ConflictError`.
    Used as a context manager, the engine is opened on entry and closed on exit.
    """

    def __enter__(self) -> Engine:
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # Lifecycle.

    @abstractmethod
    def open(self) -> None:
        """Open or connect to the storage engine."""

    @abstractmethod
    def close(self) -> None:
        """Close or disconnect from the storage engine."""

    @abstractmethod
    def destroy(self) -> None:
        """Clear all data and close the storage engine."""

    @abstractmethod
    def ready(self) -> None:
        """Probe the storage engine, raising ServiceUnavailableError if it is not ready."""

    # Queue operations.

    @abstractmethod
    def chore(self) -> None:
        """Recover timed out tasks and delete expired tasks."""

    @abstractmethod
    def poll(self, topic: str, promise: Promise) -> Task:
        """Claim the next available task in a topic and return it."""

    @abstractmethod
    def commit(self, task_id: str, commit: Commit) -> Task:
        """Apply a set of updates to a task and return the updated task."""

    # Topics.

    @abstractmethod
    def list_topics(self, limit: int, offset: int) -> list[Topic]:
        """List all topics."""

    @abstractmethod
    def delete_topics(self) -> Deleted:
        """Delete all topics and tasks."""

    @abstractmethod
    def get_topic(self, topic: str) -> Topic:
        """Get information about a topic."""

    @abstractmethod
    def delete_topic(self, topic: str) -> Deleted:
        """Delete a topic and its tasks."""

    # Tasks.

    @abstractmethod
    def list_tasks(self, topic: str, limit: int, offset: int) -> list[Task]:
        """List all tasks in a topic."""

    @abstractmethod
    def insert_tasks(self, tasks: Sequence[Task]) -> Updated:
        """Insert a batch of tasks while ignoring existing ones."""

    @abstractmethod
    def upsert_tasks(self, tasks: Sequence[Task]) -> Updated:
        """Insert or update a batch of tasks."""

    @abstractmethod
    def delete_tasks(self, topic: str) -> Deleted:
        """Delete all tasks in a topic."""

    @abstractmethod
    def get_task(self, task_id: str) -> Task:
        """Get a task by its unique ID."""

    @abstractmethod
    def insert_task(self, task: Task) -> Updated:
        """Insert a new task."""

    @abstractmethod
    def upsert_task(self, task: Task) -> Updated:
        """Insert or update a task."""

    @abstractmethod
    def delete_task(self, task_id: str) -> Deleted:
        """Delete a task by its unique ID."""

    # Promises.

    @abstractmethod
    def list_promises(self, topic: str, limit: int, offset: int) -> list[Promise]:
        """List all promises in a topic."""

    @abstractmethod
    def delete_promises(self, topic: str) -> Deleted:
        """Delete all promises in a topic."""

    @abstractmethod
    def get_promise(self, promise_id: str) -> Promise:
        """Get a promise by the unique ID of its target task."""

    @abstractmethod
    def insert_promise(self, promise: Promise) -> Task:
        """Claim a task if it is in the pending state."""

    @abstractmethod
    def upsert_promise(self, promise: Promise) -> Task:
        """Claim a task regardless of its current state."""

    @abstractmethod
    def delete_promise(self, promise_id: str) -> Deleted:
        """Delete a promise by the unique ID of its target task."""