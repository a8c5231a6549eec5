from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from ratus.engine.memdb.indexer import StateFieldIndex, TimeFieldIndex
from ratus.models import Task, TaskState

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

INDEXERS = {
    "state": StateFieldIndex(field="state", filter=TaskState.PENDING),
    "time": TimeFieldIndex(field="scheduled"),
}


@pytest.mark.parametrize("name", INDEXERS)
def test_object_normal(name):
    indexer = INDEXERS[name]
    ok, key = indexer.from_object(
        Task(state=TaskState.PENDING, scheduled=datetime.now(timezone.utc))
    )
    assert ok is True
    assert isinstance(key, bytes) and len(key) > 0


@pytest.mark.parametrize("name", INDEXERS)
def test_object_missing_field(name):
    assert INDEXERS[name].from_object(object()) == (False, None)


@pytest.mark.parametrize("name", INDEXERS)
def test_object_wrong_type(name):
    with pytest.raises(TypeError):
        INDEXERS[name].from_object(SimpleNamespace(state="", scheduled=""))


@pytest.mark.parametrize("name", INDEXERS)
def test_object_filtered(name):
    obj = Task(state=TaskState.ACTIVE, scheduled=None)
    assert INDEXERS[name].from_object(obj) == (False, None)


@pytest.mark.parametrize("name", INDEXERS)
def test_args_count(name):
    with pytest.raises(ValueError, match="single argument"):
        INDEXERS[name].from_args(1, 2)


@pytest.mark.parametrize("name", INDEXERS)
def test_args_invalid(name):
    with pytest.raises(ValueError, match="invalid"):
        INDEXERS[name].from_args(None)


@pytest.mark.parametrize("name", INDEXERS)
def test_args_type(name):
    with pytest.raises(TypeError):
        INDEXERS[name].from_args("foo")


@pytest.mark.parametrize(
    "name, error", [("state", ValueError), ("time", TypeError)]
)
def test_args_filter(name, error):
    with pytest.raises(error):
        INDEXERS[name].from_args(TaskState.ACTIVE)


def test_state_keys():
    index = StateFieldIndex(field="state", filter=TaskState.COMPLETED)
    assert index.from_args(TaskState.COMPLETED) == b"\x02"
    assert index.from_object(Task(state=TaskState.COMPLETED)) == (True, b"\x02")
    assert INDEXERS["state"].from_args(TaskState.PENDING) == b"\x00"


def test_time_key_epoch():
    assert INDEXERS["time"].from_args(EPOCH) == b"\x80" + b"\x00" * 7


def test_time_key_one_millisecond():
    key = INDEXERS["time"].from_args(EPOCH + timedelta(milliseconds=1))
    assert key == b"\x80" + b"\x00" * 6 + b"\x01"


def test_time_key_truncates_to_milliseconds():
    assert INDEXERS["time"].from_args(EPOCH + timedelta(microseconds=999)) == (
        INDEXERS["time"].from_args(EPOCH)
    )


def test_time_key_before_epoch():
    key = INDEXERS["time"].from_args(EPOCH - timedelta(microseconds=1))
    assert key == b"\x7f" + b"\xff" * 7


def test_time_key_preserves_order():
    index = INDEXERS["time"]
    moments = [
        EPOCH - timedelta(days=400),
        EPOCH - timedelta(milliseconds=1),
        EPOCH,
        datetime(2022, 7, 29, 20, 0, tzinfo=timezone.utc),
        datetime(2022, 7, 29, 20, 0, 1, tzinfo=timezone.utc),
    ]
    keys = [index.from_args(moment) for moment in moments]
    assert keys == sorted(keys)
    assert len(set(keys)) == len(keys)


def test_time_object_matches_args():
    moment = datetime(2022, 7, 29, 20, 0, tzinfo=timezone.utc)
    ok, key = INDEXERS["time"].from_object(Task(scheduled=moment))
    assert ok is True
    assert key == INDEXERS["time"].from_args(moment)