"""Benchmarks of the runtime: start-up, network set-up, barriers and pub/sub."""

from __future__ import annotations

import math
import random
import string
import time
from datetime import datetime, timezone
from typing import Callable

from .network import LinkShape, NetworkConfig
from .runenv import InitContext, RunEnv, Topic
from .storm import storm

_PAYLOAD_ALPHABET = string.ascii_letters + string.digits


def _remaining(deadline: float) -> float:
    return max(deadline - time.monotonic(), 0.0)


def start_time_bench(runenv: RunEnv, init_ctx: InitContext) -> None:
    """Report the time between scheduling the run and this instance starting."""
    elapsed = datetime.now(timezone.utc) - runenv.test_start_time
    runenv.record_point("time_to_start_secs", elapsed.total_seconds())


def network_init_bench(runenv: RunEnv, init_ctx: InitContext) -> None:
    """Report how long the network takes to initialise."""
    started = time.monotonic()
    init_ctx.net_client.wait_network_initialized()
    runenv.record_point("time_to_network_init_secs", time.monotonic() - started)


def network_link_shape_bench(runenv: RunEnv, init_ctx: InitContext) -> None:
    """Report how long a change of link shape takes to be applied."""
    netclient = init_ctx.net_client
    netclient.wait_network_initialized()

    config = NetworkConfig(
        network="default",
        default=LinkShape(latency=0.25),
        callback_state=f"callback-{random.getrandbits(63)}",
        callback_target=1,
    )
    before = time.monotonic()
    netclient.configure_network(config)
    runenv.record_point("time_to_shape_network_secs", time.monotonic() - before)


def barrier_percentages() -> list[tuple[str, float]]:
    """Metric names and the share of instances each barrier waits for."""
    result = []
    percent = 0.2
    while percent <= 1.0:
        result.append((f"barrier_time_{int(percent * 100)}_percent", percent))
        percent += 0.2
    return result


def barrier_bench(runenv: RunEnv, init_ctx: InitContext) -> None:
    """Time barriers that wait on a growing share of the instances."""
    iterations = runenv.int_param("barrier_iterations")
    deadline = time.monotonic() + runenv.int_param("barrier_test_timeout_secs")

    client = init_ctx.sync_client
    init_ctx.net_client.wait_network_initialized()

    tests = barrier_percentages()
    for i in range(1, iterations + 1):
        for name, percent in tests:
            target = math.floor(runenv.test_instance_count * percent) or 1
            client.signal_and_wait(f"ready_{i}_{name}", runenv.test_instance_count, _remaining(deadline))

            started = time.monotonic()
            client.signal_and_wait(f"test_{i}_{name}", target, _remaining(deadline))
            elapsed = time.monotonic() - started

            runenv.record_point(name, elapsed)
            runenv.timer_update(name, elapsed)


def subtree_sizes() -> list[int]:
    """Payload sizes in bytes, doubling from 64 B to 4 KiB."""
    sizes = []
    size = 64
    while size <= 4 * 1024:
        sizes.append(size)
        size <<= 1
    return sizes


def _payload(size: int) -> str:
    # Seeded by size so every instance derives the same payload.
    return "".join(random.Random(size).choices(_PAYLOAD_ALPHABET, k=size))


def subtree_bench(runenv: RunEnv, init_ctx: InitContext) -> None:
    """One instance publishes payloads of growing size; the others read and check them."""
    iterations = runenv.int_param("subtree_iterations")
    deadline = time.monotonic() + runenv.int_param("subtree_test_timeout_secs")

    client = init_ctx.sync_client
    init_ctx.net_client.wait_network_initialized()

    seq = client.publish(Topic("instances"), runenv.test_run)
    mode = "publish" if seq == 1 else "receive"

    specs = []
    for size in subtree_sizes():
        name = f"subtree_time_{size}_bytes"
        specs.append((f"{name}_{mode}", _payload(size), Topic(name)))

    if mode == "publish":
        runenv.record_message("i am the publisher")
        for metric, data, topic in specs:
            for i in range(1, iterations + 1):
                started = time.monotonic()
                client.publish(topic, data)
                elapsed = time.monotonic() - started
                runenv.timer_update(metric, elapsed)
                runenv.record_point(metric + "_secs", elapsed)
                if i % 500 == 0:
                    runenv.record_message("published %d items (series: %s)", i, metric)
        # Let the subscribers start.
        client.signal_entry("handoff")
        # Wait for everyone to finish before leaving.
        client.signal_and_wait("end", runenv.test_group_instance_count, _remaining(deadline))
        return

    try:
        runenv.record_message("i am a subscriber")
        client.barrier("handoff", 1, _remaining(deadline))
        for metric, data, topic in specs:
            updates = client.subscribe(topic)
            for i in range(1, iterations + 1):
                started = time.monotonic()
                received = next(updates, None)
                elapsed = time.monotonic() - started
                if received is None:
                    raise RuntimeError("subscription closed before all items arrived")
                runenv.timer_update(metric, elapsed)
                runenv.record_point(metric + "_secs", elapsed)
                if received != data:
                    raise RuntimeError("received unexpected value")
                if i % 500 == 0:
                    runenv.record_message("received %d items (series: %s)", i, metric)
    finally:
        client.signal_entry("end")


def testcases() -> dict[str, Callable[[RunEnv, InitContext], None]]:
    """The plan's cases by name."""
    return {
        "startup": start_time_bench,
        "netinit": network_init_bench,
        "netlinkshape": network_link_shape_bench,
        "barrier": barrier_bench,
        "subtree": subtree_bench,
        "storm": storm,
    }