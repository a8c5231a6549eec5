"""Validation and normalization of tasks, promises, commits and pagination options.

Every function here raises :class:`~ratus.models.BadRequestError` when the
input cannot be accepted. Normalization returns new objects and leaves the
inputs untouched.
"""

from __future__ import annotations

import dataclasses
import json
import re
from datetime import datetime, timedelta, timezone
from fractions import Fraction
from typing import Any, Mapping, Sequence, Union

from ratus.models import (
    DEFAULT_LIMIT,
    DEFAULT_TIMEOUT,
    BadRequestError,
    Commit,
    Promise,
    Task,
    Tasks,
    TaskState,
)

Body = Union[bytes, str, None]
Query = Mapping[str, Union[str, Sequence[str]]]

_UNIT_NANOSECONDS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_MAX_NANOSECONDS = (1 << 63) - 1
_ELEMENT = re.compile(r"(\d+(?:\.\d*)?|\.\d+)([^\d.]*)")
_INTEGER = re.compile(r"[+-]?\d+")
_MISSING = object()


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"300ms"``, ``"-1.5h"`` or ``"2h45m"``.

    Valid units are ``ns``, ``us`` (or ``µs``), ``ms``, ``s``, ``m`` and ``h``.
    Precision below one microsecond is dropped.
    """
    rest = text
    negative = False
    if rest[:1] in ("+", "-"):
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f'time: invalid duration "{text}"')

    limit = _MAX_NANOSECONDS + (1 if negative else 0)
    total = Fraction(0)
    position = 0
    while position < len(rest):
        match = _ELEMENT.match(rest, position)
        if match is None:
            raise ValueError(f'time: invalid duration "{text}"')
        number, unit = match.groups()
        if not unit:
            raise ValueError(f'time: missing unit in duration "{text}"')
        scale = _UNIT_NANOSECONDS.get(unit)
        if scale is None:
            raise ValueError(f'time: unknown unit "{unit}" in duration "{text}"')
        total += Fraction(number) * scale
        if total > limit:
            raise ValueError(f'time: invalid duration "{text}"')
        position = match.end()

    nanoseconds = int(total)
    microseconds = nanoseconds // 1000
    return timedelta(microseconds=-microseconds if negative else microseconds)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _duration(text: str) -> timedelta:
    try:
        return parse_duration(text)
    except ValueError as exc:
        raise BadRequestError(str(exc)) from exc


def _valid_state(state: Any) -> bool:
    return TaskState.PENDING <= state <= TaskState.ARCHIVED


def normalize_task(task: Task, task_id: str = "", topic: str = "") -> Task:
    """Validate a task and fill in its ID, topic, production and scheduled times."""
    new_id = task.id or task_id
    if not new_id:
        raise BadRequestError("task ID must not be empty")
    if task_id and new_id != task_id:
        raise BadRequestError("task ID is inconsistent with the path parameter")

    new_topic = task.topic or topic
    if not new_topic:
        raise BadRequestError("topic must not be empty")

    if not _valid_state(task.state):
        raise BadRequestError(f"invalid state {int(task.state)}")

    now = _now()
    produced = task.produced if task.produced is not None else now
    scheduled = task.scheduled
    if task.defer and scheduled is None:
        scheduled = now + _duration(task.defer)
    if scheduled is None:
        scheduled = now

    return dataclasses.replace(
        task,
        id=new_id,
        topic=new_topic,
        state=TaskState(task.state),
        produced=produced,
        scheduled=scheduled,
        defer="",
    )


def normalize_promise(promise: Promise, promise_id: str = "") -> Promise:
    """Validate a promise and turn its timeout into an absolute deadline."""
    new_id = promise.id
    if promise_id and not new_id:
        new_id = promise_id
    if promise_id and new_id != promise_id:
        raise BadRequestError("promise ID is inconsistent with the path parameter")

    deadline = promise.deadline
    if deadline is None:
        deadline = _now() + _duration(promise.timeout or DEFAULT_TIMEOUT)

    return dataclasses.replace(promise, id=new_id, deadline=deadline, timeout="")


def normalize_commit(commit: Commit) -> Commit:
    """Validate a commit, defaulting its target state to completed."""
    state = TaskState.COMPLETED if commit.state is None else commit.state
    if not _valid_state(state):
        raise BadRequestError(f"invalid target state {int(state)}")

    scheduled = commit.scheduled
    if commit.defer and scheduled is None:
        scheduled = _now() + _duration(commit.defer)

    return dataclasses.replace(
        commit, state=TaskState(state), scheduled=scheduled, defer=""
    )


def _kind(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _parse_json(body: Body) -> Any:
    """Decode a JSON body, returning ``_MISSING`` for an empty one."""
    if body is None:
        return _MISSING
    text = body.decode("utf-8") if isinstance(body, bytes) else body
    if not text.strip():
        return _MISSING
    return json.loads(text)


def _load_body(body: Body) -> Any:
    try:
        data = _parse_json(body)
    except ValueError as exc:
        raise BadRequestError(str(exc)) from exc
    if data is _MISSING:
        raise BadRequestError("missing request body")
    return data


def bind_task(body: Body, task_id: str = "", topic: str = "") -> Task:
    """Decode a task from a required JSON request body and normalize it."""
    data = _load_body(body)
    try:
        task = Task.from_dict(data)
    except ValueError as exc:
        raise BadRequestError(str(exc)) from exc
    return normalize_task(task, task_id, topic)


def bind_tasks(body: Body, topic: str = "") -> Tasks:
    """Decode a task list from a required JSON request body and normalize every task."""
    data = _load_body(body)
    if not isinstance(data, Mapping):
        raise BadRequestError(f"cannot unmarshal {_kind(data)} into task list")
    items = data.get("data")
    if items is None:
        items = []
    if not isinstance(items, list):
        raise BadRequestError(
            f"cannot unmarshal {_kind(items)} into field data of type task list"
        )
    try:
        tasks = [Task.from_dict(item) for item in items]
    except ValueError as exc:
        raise BadRequestError(str(exc)) from exc
    return Tasks(data=[normalize_task(task, "", topic) for task in tasks])


def _first(value: str | Sequence[str]) -> str:
    if isinstance(value, str):
        return value
    return value[0] if value else ""


def _promise_from_query(promise: Promise, query: Query) -> Promise:
    changes: dict[str, Any] = {}
    for key, name in (("_id", "id"), ("consumer", "consumer"), ("timeout", "timeout")):
        if key in query:
            changes[name] = _first(query[key])
    if "deadline" in query:
        text = _first(query["deadline"])
        if text:
            try:
                changes["deadline"] = Promise.from_dict({"deadline": text}).deadline
            except ValueError:
                pass
    return dataclasses.replace(promise, **changes)


def bind_promise(
    body: Body = None, query: Query | None = None, promise_id: str = ""
) -> Promise:
    """Build a promise from an optional JSON body and query parameters.

    Query parameters take precedence over the body; a malformed body is ignored.
    """
    promise = Promise()
    try:
        data = _parse_json(body)
        if data is not _MISSING:
            promise = Promise.from_dict(data)
    except ValueError:
        promise = Promise()
    promise = _promise_from_query(promise, query or {})
    return normalize_promise(promise, promise_id)


def bind_commit(body: Body = None) -> Commit:
    """Build a commit from an optional JSON body; a malformed body is ignored."""
    commit = Commit()
    try:
        data = _parse_json(body)
        if data is not _MISSING:
            commit = Commit.from_dict(data)
    except ValueError:
        commit = Commit()
    return normalize_commit(commit)


def _query_int(query: Query, key: str) -> int:
    if key not in query:
        return 0
    text = _first(query[key])
    if text == "":
        return 0
    if not _INTEGER.fullmatch(text):
        raise ValueError(f"invalid integer {text!r}")
    value = int(text)
    if not -(1 << 63) <= value < (1 << 63):
        raise ValueError(f"integer {text!r} out of range")
    return value


def bind_pagination(query: Query | None, max_limit: int, max_offset: int) -> tuple[int, int]:
    """Return the validated ``(limit, offset)`` pair from query parameters."""
    query = query or {}
    try:
        limit = _query_int(query, "limit")
        offset = _query_int(query, "offset")
    except ValueError:
        raise BadRequestError("invalid pagination parameters") from None

    if limit == 0:
        limit = min(DEFAULT_LIMIT, max_limit)

    if limit < 0:
        raise BadRequestError("limit must not be negative")
    if offset < 0:
        raise BadRequestError("offset must not be negative")
    if limit > max_limit:
        raise BadRequestError(f"exceeded maximum allowed limit of {max_limit}")
    if offset > max_offset:
        raise BadRequestError(f"exceeded maximum allowed offset of {max_offset}")

    return limit, offset