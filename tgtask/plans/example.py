"""Example test plan cases showing output, failures, parameters, sync and metrics."""

from __future__ import annotations

import random
import time
from pathlib import Path
from typing import Callable

from .runenv import InitContext, RunEnv

ARTIFACT_PATH = "/artifact.txt"


def example_output(runenv: RunEnv, init_ctx: InitContext) -> None:
    """Emit two messages and one metric."""
    runenv.record_message("Hello, World.")
    runenv.record_message("Additional arguments: %d", len(runenv.test_instance_params))
    runenv.record_point("donkeypower", 3.0)


def example_failure(runenv: RunEnv, init_ctx: InitContext) -> None:
    """Always fails."""
    runenv.record_message("This is what happens when there is a failure")
    raise RuntimeError("intentional oops")


def example_panic(runenv: RunEnv, init_ctx: InitContext) -> None:
    """Always hits an unhandled error."""
    runenv.record_message("About to hit an unhandled error")
    raise RuntimeError("intentional panic")


def example_params(runenv: RunEnv, init_ctx: InitContext) -> None:
    """Report the parameters passed to the instance."""
    runenv.record_message("Params are defined in toml manifest")
    runenv.record_message("Params can be overridden by the commandline!")
    for key, value in runenv.test_instance_params.items():
        runenv.record_message("key: %s, value: %s", key, value)
    runenv.record_message("The value of param2 is %s", runenv.string_param("param2"))


def example_sync(
    runenv: RunEnv,
    init_ctx: InitContext,
    pause: Callable[[float], None] = time.sleep,
) -> None:
    """The first instance to enrol leads; the others wait until it releases them."""
    client = init_ctx.sync_client
    seq = client.signal_entry("enrolled")
    runenv.record_message("my sequence ID: %d", seq)

    if seq == 1:
        runenv.record_message("i'm the leader.")
        followers = runenv.test_instance_count - 1
        runenv.record_message("waiting for %d instances to become ready", followers)
        client.barrier("ready", followers)
        runenv.record_message("the followers are all ready")
        runenv.record_message("ready...")
        pause(1)
        runenv.record_message("set...")
        pause(5)
        runenv.record_message("go, release followers!")
        client.signal_entry("released")
        return

    sleep = random.randrange(5)
    runenv.record_message("i'm a follower; signalling ready after %d seconds", sleep)
    pause(sleep)
    runenv.record_message("follower signalling now")
    client.signal_entry("ready")
    client.barrier("released", 1)
    runenv.record_message("i have been released")


def example_metrics(
    runenv: RunEnv,
    init_ctx: InitContext,
    duration: float = 30.0,
    interval: float = 0.1,
) -> None:
    """Record random values at every interval until the duration has passed."""
    deadline = time.monotonic() + duration
    while True:
        time.sleep(interval)
        if time.monotonic() >= deadline:
            return
        data = random.randrange(15)
        runenv.record_message("Doing work: %d", data)
        runenv.counter_inc("example.counter1", data)
        runenv.record_point("example.histogram1", data)
        runenv.record_point("example.gauge1", float(data))


def example_artifact(runenv: RunEnv, init_ctx: InitContext, path: str = ARTIFACT_PATH) -> None:
    """Report the contents of an artifact file shipped with the build."""
    try:
        text = Path(path).read_text()
    except OSError as exc:
        runenv.record_failure(exc)
        raise
    runenv.record_message(text)


def testcases() -> dict[str, Callable[[RunEnv, InitContext], None]]:
    """The plan's cases by name."""
    return {
        "output": example_output,
        "failure": example_failure,
        "panic": example_panic,
        "params": example_params,
        "sync": example_sync,
        "metrics": example_metrics,
        "artifact": example_artifact,
    }