"""Data models and error types shared by the task queue service and its clients."""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import json
import re
import types
import typing
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import IntEnum
from http import HTTPStatus
from typing import Any, Iterator, Mapping

DEFAULT_TIMEOUT = "10m"
"""Default timeout duration for task execution."""

DEFAULT_LIMIT = 10
"""Default number of resources to return in pagination."""

NONCE_LENGTH = 16
"""Length of the randomly generated nonce strings."""

STATUS_CLIENT_CLOSED_REQUEST = 499
"""Status code for client closed request errors."""


class TaskState(IntEnum):
    """State of a task."""

    PENDING = 0
    ACTIVE = 1
    COMPLETED = 2
    ARCHIVED = 3


class RatusError(Exception):
    """Base class of all errors reported by the service."""

    code: int = HTTPStatus.INTERNAL_SERVER_ERROR
    sentinel: str = ""

    def __init__(self, detail: str = "") -> None:
        super().__init__(": ".join(part for part in (self.sentinel, detail) if part))

    @classmethod
    def _with_message(cls, message: str) -> RatusError:
        exc = cls()
        exc.args = (message,)
        return exc


class BadRequestError(RatusError):
    """The request is malformed."""

    code = HTTPStatus.BAD_REQUEST
    sentinel = "bad request"


class NotFoundError(RatusError):
    """The requested resource is not found."""

    code = HTTPStatus.NOT_FOUND
    sentinel = "not found"


class ConflictError(RatusError):
    """The resource conflicts with existing ones."""

    code = HTTPStatus.CONFLICT
    sentinel = "conflict"


class ClientClosedRequestError(RatusError):
    """The client closed the request."""

    code = STATUS_CLIENT_CLOSED_REQUEST
    sentinel = "client closed request"


class InternalServerError(RatusError):
    """The server encountered a situation it does not know how to handle."""

    code = HTTPStatus.INTERNAL_SERVER_ERROR
    sentinel = "internal server error"


class ServiceUnavailableError(RatusError):
    """The service is unavailable."""

    code = HTTPStatus.SERVICE_UNAVAILABLE
    sentinel = "service unavailable"


_ERRORS_BY_CODE: dict[int, type[RatusError]] = {
    STATUS_CLIENT_CLOSED_REQUEST: ClientClosedRequestError,
    HTTPStatus.BAD_REQUEST: BadRequestError,
    HTTPStatus.NOT_FOUND: NotFoundError,
    HTTPStatus.CONFLICT: ConflictError,
    HTTPStatus.INTERNAL_SERVER_ERROR: InternalServerError,
    HTTPStatus.SERVICE_UNAVAILABLE: ServiceUnavailableError,
}

_CODE_RULES: list[tuple[tuple[type[BaseException], ...], int]] = [
    ((asyncio.CancelledError, EOFError, ClientClosedRequestError), STATUS_CLIENT_CLOSED_REQUEST),
    ((BadRequestError,), HTTPStatus.BAD_REQUEST),
    ((NotFoundError,), HTTPStatus.NOT_FOUND),
    ((ConflictError,), HTTPStatus.CONFLICT),
    ((ServiceUnavailableError,), HTTPStatus.SERVICE_UNAVAILABLE),
]


def _chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__


# JSON helpers -------------------------------------------------------------

_TIME_PATTERN = re.compile(
    r"^(\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2})(\.\d+)?(Z|z|[+-]\d{2}:\d{2})?$"
)


def _format_time(value: datetime) -> str:
    text = value.isoformat()
    if value.utcoffset() == timedelta(0):
        text = text[: -len("+00:00")] + "Z"
    return text


def _parse_time(value: Any, key: str) -> datetime:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValueError(
            f"cannot unmarshal {_json_kind(value)} into field {key} of type time"
        )
    match = _TIME_PATTERN.match(value)
    if match is None:
        raise ValueError(f"cannot parse {value!r} as a time for field {key}")
    base, fraction, zone = match.groups()
    text = base
    if fraction:
        text += "." + fraction[1:7].ljust(6, "0")
    if zone:
        text += "+00:00" if zone in ("Z", "z") else zone
    return datetime.fromisoformat(text)


def _json_kind(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    return type(value).__name__


def _require_mapping(data: Any, name: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValueError(f"cannot unmarshal {_json_kind(data)} into {name}")
    return data


def _get_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(
            f"cannot unmarshal {_json_kind(value)} into field {key} of type string"
        )
    return value


def _get_int(data: Mapping[str, Any], key: str, default: int | None) -> int | None:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        if isinstance(value, float) and value.is_integer():
            return int(value)
        raise ValueError(
            f"cannot unmarshal {_json_kind(value)} into field {key} of type int"
        )
    return value


def _get_time(data: Mapping[str, Any], key: str) -> datetime | None:
    value = data.get(key)
    if value is None:
        return None
    return _parse_time(value, key)


def _to_state(value: int) -> int:
    try:
        return TaskState(value)
    except ValueError:
        return value


def _get_state(data: Mapping[str, Any], key: str) -> int | None:
    value = _get_int(data, key, None)
    return None if value is None else _to_state(value)


def _put_time(out: dict[str, Any], key: str, value: datetime | None) -> None:
    if value is not None:
        out[key] = _format_time(value)


_KNOWN_NAMES: dict[str, Any] = {
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "list": list,
    "List": list,
    "dict": dict,
    "Dict": dict,
    "tuple": tuple,
    "Tuple": tuple,
    "Any": Any,
    "object": object,
    "None": type(None),
    "NoneType": type(None),
}


def _split_top(text: str, sep: str) -> list[str]:
    """Split ``text`` on ``sep`` where it is not inside brackets."""
    parts: list[str] = []
    current: list[str] = []
    depth = 0
    for char in text:
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
        if char == sep and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    parts.append("".join(current).strip())
    return parts


def _lookup(name: str, owner: type) -> Any:
    name = name.strip().rpartition(".")[2]
    if name in _KNOWN_NAMES:
        return _KNOWN_NAMES[name]
    namespaces = [vars(owner)]
    module = inspect.getmodule(owner)
    if module is not None:
        namespaces.append(vars(module))
    for namespace in namespaces:
        if name in namespace:
            return namespace[name]
    return Any


def _resolve(annotation: Any, owner: type) -> Any:
    """Turn a string annotation of a dataclass field into a usable type."""
    if not isinstance(annotation, str):
        return annotation
    text = annotation.strip().strip("'\"")
    options = _split_top(text, "|")
    if len(options) > 1:
        return typing.Union[tuple(_resolve(option, owner) for option in options)]
    if text.endswith("]") and "[" in text:
        base, _, inner = text[:-1].partition("[")
        base = base.strip().rpartition(".")[2]
        args = tuple(_resolve(arg, owner) for arg in _split_top(inner, ","))
        if base == "Optional":
            return typing.Union[args + (type(None),)]
        if base == "Union":
            return typing.Union[args]
        origin = _lookup(base, owner)
        if origin in (list, tuple, dict):
            return origin[args if len(args) > 1 else args[0]]
        return origin
    return _lookup(text, owner)


def _convert(data: Any, kind: Any) -> Any:
    """Convert JSON-decoded data into the requested type."""
    if kind is Any or kind is object or kind is None or data is None:
        return data
    origin = typing.get_origin(kind)
    if origin is typing.Union or (
        hasattr(types, "UnionType") and origin is getattr(types, "UnionType")
    ):
        errors = []
        for option in typing.get_args(kind):
            if option is type(None):
                continue
            try:
                return _convert(data, option)
            except ValueError as exc:
                errors.append(str(exc))
        raise ValueError("; ".join(errors) or f"cannot decode into {kind!r}")
    if dataclasses.is_dataclass(kind) and isinstance(kind, type):
        if not isinstance(data, dict):
            raise ValueError(f"cannot unmarshal {_json_kind(data)} into {kind.__name__}")
        lowered = {key.lower(): key for key in data}
        values = {}
        for item in dataclasses.fields(kind):
            key = item.name if item.name in data else lowered.get(item.name.lower())
            if key is not None:
                values[item.name] = _convert(data[key], _resolve(item.type, kind))
        try:
            return kind(**values)
        except TypeError as exc:
            raise ValueError(str(exc)) from exc
    if origin in (list, tuple) or kind in (list, tuple):
        if not isinstance(data, list):
            raise ValueError(f"cannot unmarshal {_json_kind(data)} into array")
        args = typing.get_args(kind)
        inner = args[0] if args else Any
        items = [_convert(item, inner) for item in data]
        return tuple(items) if (origin or kind) is tuple else items
    if origin is dict or kind is dict:
        if not isinstance(data, dict):
            raise ValueError(f"cannot unmarshal {_json_kind(data)} into object")
        args = typing.get_args(kind)
        inner = args[1] if len(args) == 2 else Any
        return {key: _convert(value, inner) for key, value in data.items()}
    if kind is bool:
        if not isinstance(data, bool):
            raise ValueError(f"cannot unmarshal {_json_kind(data)} into bool")
        return data
    if kind is int:
        if isinstance(data, bool) or not isinstance(data, int):
            raise ValueError(f"cannot unmarshal {_json_kind(data)} into int")
        return data
    if kind is float:
        if isinstance(data, bool) or not isinstance(data, (int, float)):
            raise ValueError(f"cannot unmarshal {_json_kind(data)} into float")
        return float(data)
    if kind is str:
        if not isinstance(data, str):
            raise ValueError(f"cannot unmarshal {_json_kind(data)} into string")
        return data
    raise ValueError(f"cannot decode into {kind!r}")


# Resources ----------------------------------------------------------------


@dataclass
class Topic:
    """An ordered subset of tasks with the same topic name."""

    name: str
    count: int = 0

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.count:
            out["count"] = self.count
        return out

    @classmethod
    def from_dict(cls, data: Any) -> Topic:
        data = _require_mapping(data, "topic")
        return cls(name=_get_str(data, "name"), count=_get_int(data, "count", 0) or 0)


@dataclass
class Task:
    """An idempotent unit of work to be executed asynchronously."""

    id: str = ""
    topic: str = ""
    state: int = TaskState.PENDING
    nonce: str = ""
    producer: str = ""
    consumer: str = ""
    produced: datetime | None = None
    scheduled: datetime | None = None
    consumed: datetime | None = None
    deadline: datetime | None = None
    payload: Any = None
    defer: str = ""

    def decode(self, kind: Any = object) -> Any:
        """Return the payload converted into ``kind`` through its JSON form."""
        try:
            data = json.loads(json.dumps(self.payload))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"cannot encode payload: {exc}") from exc
        return _convert(data, kind)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "_id": self.id,
            "topic": self.topic,
            "state": int(self.state),
            "nonce": self.nonce,
        }
        if self.producer:
            out["producer"] = self.producer
        if self.consumer:
            out["consumer"] = self.consumer
        _put_time(out, "produced", self.produced)
        _put_time(out, "scheduled", self.scheduled)
        _put_time(out, "consumed", self.consumed)
        _put_time(out, "deadline", self.deadline)
        if self.payload is not None:
            out["payload"] = self.payload
        if self.defer:
            out["defer"] = self.defer
        return out

    @classmethod
    def from_dict(cls, data: Any) -> Task:
        data = _require_mapping(data, "task")
        state = _get_state(data, "state")
        return cls(
            id=_get_str(data, "_id"),
            topic=_get_str(data, "topic"),
            state=TaskState.PENDING if state is None else state,
            nonce=_get_str(data, "nonce"),
            producer=_get_str(data, "producer"),
            consumer=_get_str(data, "consumer"),
            produced=_get_time(data, "produced"),
            scheduled=_get_time(data, "scheduled"),
            consumed=_get_time(data, "consumed"),
            deadline=_get_time(data, "deadline"),
            payload=data.get("payload"),
            defer=_get_str(data, "defer"),
        )


@dataclass
class Promise:
    """A claim on the ownership of an active task."""

    id: str = ""
    consumer: str = ""
    deadline: datetime | None = None
    timeout: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.id:
            out["_id"] = self.id
        if self.consumer:
            out["consumer"] = self.consumer
        _put_time(out, "deadline", self.deadline)
        if self.timeout:
            out["timeout"] = self.timeout
        return out

    @classmethod
    def from_dict(cls, data: Any) -> Promise:
        data = _require_mapping(data, "promise")
        return cls(
            id=_get_str(data, "_id"),
            consumer=_get_str(data, "consumer"),
            deadline=_get_time(data, "deadline"),
            timeout=_get_str(data, "timeout"),
        )


@dataclass
class Commit:
    """A set of updates to be applied to a task."""

    nonce: str = ""
    topic: str = ""
    state: int | None = None
    scheduled: datetime | None = None
    payload: Any = None
    defer: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.nonce:
            out["nonce"] = self.nonce
        if self.topic:
            out["topic"] = self.topic
        if self.state is not None:
            out["state"] = int(self.state)
        _put_time(out, "scheduled", self.scheduled)
        if self.payload is not None:
            out["payload"] = self.payload
        if self.defer:
            out["defer"] = self.defer
        return out

    @classmethod
    def from_dict(cls, data: Any) -> Commit:
        data = _require_mapping(data, "commit")
        return cls(
            nonce=_get_str(data, "nonce"),
            topic=_get_str(data, "topic"),
            state=_get_state(data, "state"),
            scheduled=_get_time(data, "scheduled"),
            payload=data.get("payload"),
            defer=_get_str(data, "defer"),
        )


@dataclass
class Topics:
    """A list of topic resources."""

    data: list[Topic] = field(default_factory=list)


@dataclass
class Tasks:
    """A list of task resources."""

    data: list[Task] = field(default_factory=list)


@dataclass
class Promises:
    """A list of promise resources."""

    data: list[Promise] = field(default_factory=list)


@dataclass
class Updated:
    """Result of an update operation."""

    created: int = 0
    updated: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"created": self.created, "updated": self.updated}


@dataclass
class Deleted:
    """Result of a delete operation."""

    deleted: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"deleted": self.deleted}


@dataclass
class ErrorMessage:
    """An error code and message as sent over the wire."""

    code: int
    message: str

    def to_exception(self) -> RatusError:
        """Build the matching exception, avoiding a duplicated sentinel prefix."""
        cls = _ERRORS_BY_CODE.get(self.code)
        if cls is None:
            exc = RatusError._with_message(self.message)
            exc.code = self.code
            return exc
        rest = self.message.removeprefix(cls.sentinel)
        return cls._with_message(cls.sentinel + rest)

    def to_dict(self) -> dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message}}

    @classmethod
    def from_dict(cls, data: Any) -> ErrorMessage:
        data = _require_mapping(data, "error message")
        inner = _require_mapping(data.get("error", {}), "error")
        return cls(code=_get_int(inner, "code", 0) or 0, message=_get_str(inner, "message"))


def new_error(exc: BaseException) -> ErrorMessage:
    """Create an error message with a status code chosen from the exception."""
    chain = list(_chain(exc))
    code: int = HTTPStatus.INTERNAL_SERVER_ERROR
    for kinds, status in _CODE_RULES:
        if any(isinstance(item, kinds) for item in chain):
            code = status
            break
    return ErrorMessage(code=int(code), message=str(exc))