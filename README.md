# tgtask

`tgtask` keeps track of test-orchestration tasks. A task is scheduled, then
processed, then archived. It stays in storage through every step, and storage
is an SQLite database. The package also holds a set of test plans. They run
inside the current process against an in-memory sync service.

## Install

```
pip install .
pip install ".[test]"   # adds pytest, for running the test suite
```

The package has no third-party dependencies.

## Identifiers

A task is identified by an xid: 20 characters that encode 12 bytes. The first
four of those bytes hold the creation time in Unix seconds. `tgtask.xid`
provides these functions:

- `decode_xid(text)` returns the raw bytes, or raises `ValueError`.
- `encode_xid(raw)` turns raw bytes back into text.
- `xid_time(text)` returns the embedded time as a UTC `datetime`.

## Tasks

A `Task` in `tgtask.task` holds the following:

- an `id`
- a `priority`
- a `type`, either `TaskType.BUILD` or `TaskType.RUN`
- `plan` and `case`
- a list of `states`, each a `DatedState` made of a `created` time and a `State`
- `created_by`, a `CreatedBy` with user, repo, branch and commit

`Task` has these methods:

- `created()` returns the time of the first state.
- `state()` returns the latest state.
  Both `created()` and `state()` raise `ValueError` when the task has no states.
- `is_canceled()` tells whether the latest state is `State.CANCELED`.
- `name()` returns `"build"` for build tasks, `"plan:case"` for run tasks, and `"not supported"` otherwise.
- `took()` returns the time from the first state to the last, truncated to whole seconds.
- `created_by_ci()` is true when repo, commit and branch are all set.
- `render_created_by()` returns an HTML link to the commit for CI tasks, and the user name otherwise.
- `to_dict()` and `from_dict()` convert to and from a dict.
- `to_json()` and `from_json()` convert to and from JSON.

`Outcome` lists the outcomes a task can report.

## Storage

`Storage` in `tgtask.storage` stores each task under a key built from three
parts: a state prefix (`queue`, `current` or `archive`), the Unix seconds
encoded in the task's xid, and the xid itself. `task_key` builds this key.
Because of the key layout you can list the tasks in one state within a span of
time:

```python
from datetime import datetime, timezone
from tgtask.storage import Storage
from tgtask.task import Task, State

with Storage.in_memory() as store:
    task = Task(id="bt4brhjpc98qra498sg0")
    store.persist_scheduled(task)
    store.process_task(task)          # scheduled -> processing
    tasks = store.filter(
        State.PROCESSING,
        datetime(2020, 1, 1, tzinfo=timezone.utc),
        datetime(2030, 1, 1, tzinfo=timezone.utc),
    )
```

### Opening a store

- `Storage(path)` opens or creates an SQLite file. It raises `OSError` if the file cannot be opened.
- `Storage.in_memory()` creates a store that lives only as long as the object.

### Writing and moving tasks

- `put(prefix, task)` writes a task under the given prefix.
- `persist_scheduled(task)` writes a task under the scheduled prefix.
- `persist_processing(task)` writes a task under the processing prefix.
- `process_task(task)` moves a task from scheduled to processing.
- `archive_task(task)` moves a task from processing to archived.
- `change_prefix(dst, src, task_id)` moves a task between any two prefixes. The move is atomic.

### Reading tasks

- `fetch(prefix, task_id)` reads the task stored under one prefix.
- `get(task_id)` looks under the archived prefix, then processing, then scheduled.
- `filter(state, start, end)` and `range(prefix, start, end)` return the tasks whose ids were created in `[start, end)`, in key order.
- `has_key(key)` tells whether a key is stored.
- `values_with_prefix(prefix)` returns the raw values stored under a prefix.

### Deleting tasks

- `delete(task_id)` removes the task from whichever prefix holds it.

### Errors

- A missing task raises `TaskNotFoundError`.
- An id that is not a valid xid raises `InvalidTaskIdError`.

## Queue

`TaskQueue` in `tgtask.queue` is a thread-safe priority queue backed by a
`Storage`. Tasks come out in this order:

1. Higher priority first.
2. Among tasks of equal priority, the earliest `created()` first.

Every task pushed onto the queue needs at least one state.

```python
from tgtask.queue import TaskQueue

queue = TaskQueue(store, 100)     # converter defaults to Task.from_json
queue.push(task)                  # stored as scheduled
queue.push_unique_by_branch(other)
next_task = queue.pop()           # moved to processing
len(queue)
```

`push_unique_by_branch(task)` first cancels every queued task with the same
repo and branch as the new task. It only does this when both the repo and the
branch are set. Each canceled task gets a `State.CANCELED` state and is
archived.

When you create a queue, it reloads the tasks that are still stored as
scheduled or processing.

The queue raises two errors:

- `push` raises `QueueFullError` when the queue already holds `max_size` tasks.
- `pop` raises `QueueEmptyError` when there is nothing to take.

## Test plans

The `tgtask.plans` subpackage holds test cases that run against a `RunEnv`.
The runtime pieces are in `tgtask.plans.runenv`.

### RunEnv

A `RunEnv` carries the instance parameters, which you read with
`string_param` and `int_param`. It also records what a case reports:

- `messages` and `failures`
- `events`
- `points`, `counters` and `timers`

### SyncService and SyncClient

A `SyncService` is shared by all instances of a run. Each instance talks to it
through a `SyncClient`, which provides:

- `signal_entry`
- `barrier`
- `signal_and_wait`
- `publish`, `subscribe` and `publish_subscribe` on a `Topic`

### Running cases

- `invoke(case, runenv, init_ctx=None)` runs one case and returns a `RunOutcome`.
- `invoke_map(testcases, runenv, init_ctx=None)` picks the case named by `runenv.test_case`. It raises `ValueError` for an unknown name.

A case that takes `(runenv, init_ctx)` receives an `InitContext` with a sync
client already attached. A case that takes only `runenv` must attach a sync
client itself; if it does not, the run counts as a failure.

### Plan modules

- `example` covers output, failure, panic, params, sync, metrics and artifact. `testcases()` maps case names to functions.
- `integrations` holds the placebo cases (`placebo_ok`, `placebo_panic`, `placebo_stall`) and `silent_failure`. It also holds `docker_customize`, the builder check `override_builder_configuration`, `shim_version` and `noop`.
- `network` holds `pingpong`, `routing_policy_test`, `ping_pong_exchange` and `same_addrs`, plus the `NetworkConfig`, `LinkShape`, `LinkRule`, `RoutingPolicy` and `FilterAction` types.
- `splitbrain` holds `route_filter`, `expect_errors`, `Region` and `Node`.
- `verify` holds `uses_data_network` and `is_control_net`.
- `benchmarks` holds the startup, network-init, link-shape, barrier and subtree benchmarks. `testcases()` maps case names to functions.
- `storm` holds `storm`, `share_addresses`, `handle_request`, `get_subnet_addr` and `ListenAddrs`.

## What the package does not do

The package does not provide the following:

- **A command-line tool or daemon.** You use the queue and storage from your own code.
- **A sync service that reaches other processes or machines.** `SyncService` lives in memory, and every instance must share the same object.
- **Network shaping.** The network, splitbrain, verify, benchmark and storm cases expect the caller to supply `init_ctx.net_client`, with `configure_network`, `wait_network_initialized` and `get_data_network_ip`. Some cases also take helper callables, such as an interface-address provider, a fetcher or a pinger.
- **Metric export.** Metrics stay on the `RunEnv` and are not sent anywhere.