"""Connection storm: every instance opens many TCP connections to the others and floods them."""

from __future__ import annotations

import ipaddress
import itertools
import logging
import os
import queue
import random
import socket
import threading
import time
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any, Iterable

from .runenv import InitContext, RunEnv, SyncClient, Topic

logger = logging.getLogger(__name__)

BUFFER_SIZE = 4 * 1024
PEER_TOPIC = Topic("peers")
RUN_TIMEOUT = 3000.0
DIAL_TIMEOUT = 30.0
METRICS_FLUSH_SECONDS = 10.0

_metrics_lock = threading.Lock()


@dataclass
class ListenAddrs:
    """The ``host:port`` addresses an instance listens on."""

    addrs: list[str] = field(default_factory=list)


def _inc(runenv: RunEnv, name: str, delta: int = 1) -> None:
    with _metrics_lock:
        runenv.counter_inc(name, delta)


def _remaining(deadline: float) -> float:
    return max(deadline - time.monotonic(), 0.0)


def _local_addrs() -> list[str]:
    addrs = {"127.0.0.1"}
    try:
        for info in socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET):
            addrs.add(info[4][0])
    except OSError:
        pass
    return sorted(addrs)


def get_subnet_addr(subnet: Any, addrs: Iterable[Any]) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
    """The first of ``addrs`` (plain or CIDR form) that lies in ``subnet``; raises LookupError."""
    network = ipaddress.ip_network(str(subnet), strict=False)
    candidates = list(addrs)
    for addr in candidates:
        ip = ipaddress.ip_interface(str(addr)).ip
        if ip in network:
            return ip
    raise LookupError(f"no network interface found. Addrs: {[str(a) for a in candidates]}")


def handle_request(runenv: RunEnv, conn: socket.socket) -> None:
    """Read and count everything a peer sends until it closes, then close the connection."""
    with conn:
        while True:
            try:
                data = conn.recv(BUFFER_SIZE)
            except OSError as exc:
                logger.error("Error reading: %s", exc)
                data = b""
            _inc(runenv, "bytes.read", len(data))
            if not data:
                break


def share_addresses(
    client: SyncClient,
    runenv: RunEnv,
    my_info: ListenAddrs,
    timeout: float | None = None,
) -> list[str]:
    """Publish this instance's addresses and collect those of every instance."""
    try:
        _, updates = client.publish_subscribe(PEER_TOPIC, my_info)
    except Exception as exc:
        raise RuntimeError(f"publish/subscribe failure: {exc}") from exc

    count = runenv.test_instance_count
    received: queue.Queue[ListenAddrs] = queue.Queue()

    def pump() -> None:
        for info in itertools.islice(updates, count):
            received.put(info)

    threading.Thread(target=pump, daemon=True).start()

    deadline = None if timeout is None else time.monotonic() + timeout
    result: list[str] = []
    for i in range(count):
        wait = None if deadline is None else _remaining(deadline)
        try:
            info = received.get(timeout=wait)
        except queue.Empty:
            raise TimeoutError("timed out waiting for peer addresses") from None
        runenv.record_message("got info: %d: %s", i, info.addrs)
        result.extend(info.addrs)
        _inc(runenv, "got.info")
    return result


def _accept_loop(runenv: RunEnv, listener: socket.socket) -> None:
    while True:
        try:
            conn, _ = listener.accept()
        except OSError:
            return
        threading.Thread(target=handle_request, args=(runenv, conn), daemon=True).start()


def _send(
    runenv: RunEnv,
    client: SyncClient,
    addr: str,
    size: int,
    delay_ms: int,
    dial_sem: threading.Semaphore,
    write_sem: threading.Semaphore,
    total_dials: int,
    deadline: float,
) -> None:
    try:
        delay = random.randrange(delay_ms) / 1000
        runenv.record_message("sleeping for: %.3fs", delay)
        time.sleep(delay)

        host, _, port = addr.rpartition(":")
        with dial_sem:
            started = time.monotonic()
            try:
                conn = socket.create_connection((host, int(port)), timeout=DIAL_TIMEOUT)
            except OSError as exc:
                runenv.record_failure(f"couldnt dial: {addr} {exc}")
                runenv.timer_update("dial.fail", time.monotonic() - started)
                return
        runenv.timer_update("dial.ok", time.monotonic() - started)

        with conn:
            client.signal_and_wait("outgoing-dials-done", total_dials, _remaining(deadline))
            remaining = size
            while remaining > 0:
                with write_sem:
                    chunk = min(remaining, BUFFER_SIZE)
                    remaining -= chunk
                    data = os.urandom(chunk)
                    started = time.monotonic()
                    try:
                        conn.sendall(data)
                    except OSError as exc:
                        runenv.timer_update("conn.write.err", time.monotonic() - started)
                        runenv.record_failure(f"couldnt write to conn: {addr} {exc}")
                        continue
                    runenv.timer_update("conn.write.ok", time.monotonic() - started)
                    _inc(runenv, "bytes.sent", len(data))
    except Exception as exc:
        runenv.record_failure(exc)


def storm(runenv: RunEnv, init_ctx: InitContext) -> None:
    """Open listeners, learn every peer's addresses, then dial random peers and send data."""
    deadline = time.monotonic() + RUN_TIMEOUT
    runenv.record_start()

    conn_count = runenv.int_param("conn_count")
    conn_delay_ms = runenv.int_param("conn_delay_ms")
    conn_dial = runenv.int_param("concurrent_dials")
    outgoing = runenv.int_param("conn_outgoing")
    size_kb = runenv.int_param("data_size_kb")

    runenv.record_message("running with data_size_kb: %d", size_kb)
    runenv.record_message("running with conn_outgoing: %d", outgoing)
    runenv.record_message("running with conn_count: %d", conn_count)
    runenv.record_message("running with conn_delay_ms: %d", conn_delay_ms)
    runenv.record_message("running with conncurrent_dials: %d", conn_dial)

    size = size_kb * 1024
    client = init_ctx.sync_client

    if not runenv.test_sidecar:
        return

    init_ctx.net_client.wait_network_initialized()
    ip = get_subnet_addr(runenv.test_subnet, _local_addrs())
    count = runenv.test_instance_count

    with ExitStack() as stack:
        my_node = ListenAddrs()
        mine: set[str] = set()
        for _ in range(conn_count):
            try:
                listener = socket.create_server((str(ip), 0))
            except OSError as exc:
                _inc(runenv, "listens.err")
                runenv.record_message("error listening: %s", exc)
                raise
            stack.callback(listener.close)
            host, port = listener.getsockname()[:2]
            addr = f"{host}:{port}"
            runenv.record_message("listening on %s", addr)
            _inc(runenv, "listens.ok")
            my_node.addrs.append(addr)
            mine.add(addr)
            threading.Thread(target=_accept_loop, args=(runenv, listener), daemon=True).start()

        runenv.record_message("my node info: %s", my_node.addrs)
        client.signal_and_wait("listening", count, _remaining(deadline))

        all_addrs = share_addresses(client, runenv, my_node, _remaining(deadline))
        others = [addr for addr in all_addrs if addr not in mine]

        client.signal_and_wait("got-other-addrs", count, _remaining(deadline))
        _inc(runenv, "other.addrs", len(others))

        dial_sem = threading.Semaphore(conn_dial)
        write_sem = threading.Semaphore(conn_dial)
        total_dials = count * outgoing

        workers = []
        for _ in range(outgoing):
            addr = random.choice(others)
            worker = threading.Thread(
                target=_send,
                args=(runenv, client, addr, size, conn_delay_ms, dial_sem, write_sem, total_dials, deadline),
                daemon=True,
            )
            workers.append(worker)
            worker.start()
        for worker in workers:
            worker.join()

        runenv.record_message("done writing")
        client.signal_and_wait("done writing", count, _remaining(deadline))
        runenv.record_message("done writing after barrier")

        # Let the last metrics be emitted.
        time.sleep(METRICS_FLUSH_SECONDS)
        runenv.record_message("Done")