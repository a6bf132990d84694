"""In-process runtime for test plans: run environment, sync service and invocation."""

from __future__ import annotations

import functools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterator, Mapping

logger = logging.getLogger(__name__)

GIT_COMMIT = ""

RUN_EVENTS = "run_events"


class RunOutcome(str, Enum):
    """Final outcome of a test case instance."""

    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class Topic:
    """A named pub/sub channel on the sync service."""

    name: str


class SyncService:
    """Coordination point shared by all instances of a run: states and topics."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._counters: dict[str, int] = {}
        self._topics: dict[str, list[Any]] = {}

    def _signal(self, state: str) -> int:
        with self._cond:
            seq = self._counters.get(state, 0) + 1
            self._counters[state] = seq
            self._cond.notify_all()
            return seq

    def _wait(self, state: str, target: int, timeout: float | None) -> None:
        with self._cond:
            reached = self._cond.wait_for(lambda: self._counters.get(state, 0) >= target, timeout)
        if not reached:
            raise TimeoutError(f"barrier {state!r} timed out waiting for {target} instances")

    def _publish(self, topic: Topic, payload: Any) -> int:
        with self._cond:
            items = self._topics.setdefault(topic.name, [])
            items.append(payload)
            self._cond.notify_all()
            return len(items)

    def _follow(self, topic: Topic, closed: Callable[[], bool]) -> Iterator[Any]:
        index = 0
        while True:
            with self._cond:
                self._cond.wait_for(lambda: closed() or len(self._topics.get(topic.name, ())) > index)
                items = self._topics.get(topic.name, [])
                if index >= len(items):
                    return
                item = items[index]
            index += 1
            yield item

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()


class SyncClient:
    """A single instance's connection to a sync service."""

    def __init__(self, service: SyncService) -> None:
        self._service = service
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("sync client is closed")

    def signal_entry(self, state: str) -> int:
        """Signal entry into a state; returns this instance's sequence number."""
        self._check_open()
        return self._service._signal(state)

    def barrier(self, state: str, target: int, timeout: float | None = None) -> None:
        """Block until ``target`` instances have entered ``state``."""
        self._check_open()
        self._service._wait(state, target, timeout)

    def signal_and_wait(self, state: str, target: int, timeout: float | None = None) -> int:
        """Signal entry into a state and wait for ``target`` instances to do the same."""
        seq = self.signal_entry(state)
        self._service._wait(state, target, timeout)
        return seq

    def publish(self, topic: Topic, payload: Any) -> int:
        """Publish a payload; returns its 1-based position in the topic."""
        self._check_open()
        return self._service._publish(topic, payload)

    def subscribe(self, topic: Topic) -> Iterator[Any]:
        """Iterate over every payload of a topic, waiting for new ones until closed."""
        self._check_open()
        return self._service._follow(topic, lambda: self._closed)

    def publish_subscribe(self, topic: Topic, payload: Any) -> tuple[int, Iterator[Any]]:
        seq = self.publish(topic, payload)
        return seq, self.subscribe(topic)

    def close(self) -> None:
        self._closed = True
        self._service._wake()


@dataclass(eq=False)
class RunEnv:
    """Parameters of one test instance and the record of what it reported."""

    test_plan: str = ""
    test_case: str = ""
    test_run: str = ""
    test_instance_count: int = 1
    test_group_id: str = "single"
    test_group_instance_count: int = 1
    test_instance_params: dict[str, str] = field(default_factory=dict)
    test_sidecar: bool = False
    test_subnet: str = ""
    test_start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sync_service: SyncService = field(default_factory=SyncService)
    sync_client: SyncClient | None = None
    outcome: RunOutcome | None = None
    messages: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    events: list[str] = field(default_factory=list)
    points: dict[str, list[float]] = field(default_factory=dict)
    counters: dict[str, int] = field(default_factory=dict)
    timers: dict[str, list[float]] = field(default_factory=dict)

    def record_message(self, msg: str, *args: Any) -> None:
        text = msg % args if args else msg
        logger.info("%s", text)
        self.messages.append(text)

    def record_failure(self, err: BaseException | str) -> None:
        text = str(err)
        logger.error("failure: %s", text)
        self.failures.append(text)
        self.events.append("failure")

    def record_start(self) -> None:
        self.events.append("start")

    def record_point(self, name: str, value: float) -> None:
        self.points.setdefault(name, []).append(value)

    def counter_inc(self, name: str, delta: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + delta

    def timer_update(self, name: str, seconds: float) -> None:
        self.timers.setdefault(name, []).append(seconds)

    def string_param(self, name: str) -> str:
        try:
            return self.test_instance_params[name]
        except KeyError:
            raise KeyError(f"missing parameter: {name}") from None

    def int_param(self, name: str) -> int:
        value = self.string_param(name)
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"parameter {name} is not an integer: {value!r}") from None

    def attach_sync_client(self, client: SyncClient) -> None:
        self.sync_client = client


@dataclass
class InitContext:
    """Clients prepared for a test case before it starts."""

    sync_client: SyncClient
    net_client: Any = None


def _required_positional(case: Callable[..., Any]) -> int:
    """Count the positional parameters a case must be given."""
    if isinstance(case, functools.partial):
        return max(_required_positional(case.func) - len(case.args), 0)
    target: Any = case
    offset = 0
    if not hasattr(target, "__code__") and not hasattr(target, "__func__"):
        target = type(case).__call__
        offset = 1
    if hasattr(target, "__func__"):
        target = target.__func__
        offset = 1
    code = getattr(target, "__code__", None)
    if code is None:
        return 1
    required = code.co_argcount - len(getattr(target, "__defaults__", None) or ())
    return max(required - offset, 0)


def invoke(
    case: Callable[..., Any],
    runenv: RunEnv,
    init_ctx: InitContext | None = None,
) -> RunOutcome:
    """Run one test case and return its outcome.

    A case taking ``(runenv, init_ctx)`` gets a sync client prepared for it.
    A case taking only ``runenv`` must attach a sync client itself, or its
    success cannot be reported and the run counts as a failure.
    """
    runenv.record_start()
    try:
        if _required_positional(case) >= 2:
            if init_ctx is None:
                init_ctx = InitContext(SyncClient(runenv.sync_service))
            if runenv.sync_client is None:
                runenv.attach_sync_client(init_ctx.sync_client)
            case(runenv, init_ctx)
        else:
            case(runenv)
    except Exception as exc:
        runenv.record_failure(exc)
        outcome = RunOutcome.FAILURE
    else:
        client = runenv.sync_client
        if client is None or client.closed:
            runenv.record_failure("test case finished without reporting its outcome to the sync service")
            outcome = RunOutcome.FAILURE
        else:
            outcome = RunOutcome.SUCCESS
    runenv.outcome = outcome
    runenv.events.append(outcome.value)
    client = runenv.sync_client
    if client is not None and not client.closed:
        client.publish(Topic(RUN_EVENTS), {"group": runenv.test_group_id, "outcome": outcome.value})
    return outcome


def invoke_map(
    testcases: Mapping[str, Callable[..., Any]],
    runenv: RunEnv,
    init_ctx: InitContext | None = None,
) -> RunOutcome:
    """Run the case named by ``runenv.test_case``."""
    try:
        case = testcases[runenv.test_case]
    except KeyError:
        raise ValueError(f"unrecognized test case: {runenv.test_case}") from None
    return invoke(case, runenv, init_ctx)