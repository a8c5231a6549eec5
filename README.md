# ratus

A task queue library built around three ideas:

* **Tasks** belong to a **topic** and are handed out in the order of their
  scheduled time. A task may be scheduled for the future, either with an
  absolute time or with a relative `defer` duration such as `"10m"`.
* A consumer claims a task by making a **promise** with a deadline. Active
  tasks whose deadline has passed are put back into the pending state by
  `chore`, so that another consumer can retry them.
* A consumer finishes a task with a **commit**. A commit may carry the
  task's nonce; each claim gives the task a fresh nonce and each commit
  clears it, so a consumer holding a stale nonce gets a `ConflictError`.

The package has no dependencies outside the standard library.

## Task states

`ratus.models.TaskState` has four members:

| State       | Meaning                                                        |
|-------------|----------------------------------------------------------------|
| `PENDING`   | ready to run, or waiting for its scheduled time                |
| `ACTIVE`    | claimed by a consumer under a promise                          |
| `COMPLETED` | finished; removed by `chore` once the retention period expired |
| `ARCHIVED`  | kept indefinitely                                              |

## Models

`ratus.models` holds the dataclasses `Topic`, `Task`, `Promise`, `Commit`,
`Updated`, `Deleted` and `ErrorMessage`, and the list wrappers `Topics`,
`Tasks` and `Promises`. `Topic`, `Task`, `Promise`, `Commit` and
`ErrorMessage` convert to and from JSON-ready dictionaries with `to_dict`
and `from_dict`; times are written as ISO 8601 strings.
`Task.decode(kind)` converts the payload through its JSON form into a
requested type, such as `int`, `list[str]` or a dataclass.

## Storage engines

Every engine implements the abstract class `ratus.engine.base.Engine`:
`open`, `close`, `destroy`, `ready`, `chore`, `poll`, `commit`, and the
list/get/insert/upsert/delete operations on topics, tasks and promises.
An engine can be used as a context manager, which opens it on entry and
closes it on exit.

* `ratus.engine.memdb.engine.MemDBEngine` keeps tasks in a thread-safe
  in-memory `TaskTable` (`ratus.engine.memdb.store`). Its `Config` sets
  `snapshot_path`, `snapshot_interval` (default five minutes) and
  `retention_period` (default 72 hours). With a snapshot path set, the
  engine loads the snapshot on `open`, writes it on `close` and from
  `chore` once the interval has passed, and removes it on `destroy`.
  Snapshots are files of one JSON task record per line, written under a
  temporary name and moved into place when complete.
* `ratus.engine.stub.StubEngine` returns canned data, or raises the
  exception it was given from every operation. It is meant for tests of
  code that sits on top of an engine.

## Producing and consuming

```python
from ratus.models import Commit, Promise, Task, TaskState
from ratus.normalize import normalize_commit, normalize_promise, normalize_task
from ratus.engine.memdb.engine import MemDBEngine
from ratus.engine.memdb.store import Config

engine = MemDBEngine(Config())
engine.open()

# Produce: normalisation fills in the produced and scheduled times.
task = normalize_task(Task(id="1", topic="emails", payload={"to": "user@example.com"}), "1", "emails")
engine.insert_task(task)

# Consume: a promise without a deadline gets the default ten-minute timeout.
claimed = engine.poll("emails", normalize_promise(Promise(consumer="worker-1"), ""))

# Commit: a commit without a state marks the task as completed.
done = engine.commit(claimed.id, normalize_commit(Commit(nonce=claimed.nonce)))
assert done.state is TaskState.COMPLETED

# Run periodically to recover timed-out tasks and drop expired ones.
engine.chore()
engine.close()
```

## Errors

Failures are raised as subclasses of `RatusError` from `ratus.models`:
`BadRequestError`, `NotFoundError`, `ConflictError`,
`ClientClosedRequestError`, `InternalServerError` and
`ServiceUnavailableError`. `new_error` turns an exception into an
`ErrorMessage` with the matching HTTP status code (499 for a closed
request, cancellation or `EOFError`; 500 for anything unrecognised), and
`ErrorMessage.to_exception` turns such a message back into the matching
exception class.

## Request normalisation

`ratus.normalize` validates and completes request data:

* `normalize_task`, `normalize_promise` and `normalize_commit` check an
  object and return a completed copy, turning relative `defer` and
  `timeout` durations into absolute times.
* `bind_task` and `bind_tasks` take a required JSON request body as bytes
  or text; `bind_promise` and `bind_commit` take an optional one, and
  `bind_promise` also reads query parameters, which take precedence.
* `bind_pagination(query, max_limit, max_offset)` returns a
  `(limit, offset)` pair, defaulting the limit to the smaller of 10 and
  `max_limit`.

All of them raise `BadRequestError` with a descriptive message when the
input is invalid. `parse_duration` accepts duration strings such as
`"1h30m"`, `"250ms"` or `"-1.5h"`.

## Metrics

`ratus.metrics` provides `Counter`, `Gauge` and `Histogram` metrics with
labels, and a `Registry` whose `render` method produces the Prometheus
text exposition format. The service metrics are registered in
`ratus.metrics.REGISTRY`, and `observe_request` records the duration of a
handled request in the request histogram.

## What this package does not do

This is a library only. It has no HTTP server or routing, no command-line
program, no network client, and no storage engine other than the
in-memory one; the normalisation functions and metrics are building
blocks for a server that the package itself does not provide.