"""Network test plan: latency-checked ping-pong and routing policy checks.

The network client handed in through ``InitContext.net_client`` must provide
``configure_network(config)``, ``wait_network_initialized()`` and
``get_data_network_ip()``; each call blocks until the change has been applied.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Callable, Iterable

from .runenv import InitContext, RunEnv

logger = logging.getLogger(__name__)

PING_PORT = 1234
PROBE_CONTENT = "hello world\n"


class RoutingPolicy(str, Enum):
    """Whether an instance may reach networks other than the data network."""

    ALLOW_ALL = "allow_all"
    DENY_ALL = "deny_all"


class FilterAction(IntEnum):
    """What a link does with the packets it carries."""

    ACCEPT = 0
    REJECT = 1
    DROP = 2


@dataclass
class LinkShape:
    """Traffic shaping of a link; durations are in seconds, bandwidth in bits per second."""

    latency: float = 0.0
    jitter: float = 0.0
    bandwidth: int = 0
    filter: FilterAction = FilterAction.ACCEPT
    loss: float = 0.0


@dataclass
class LinkRule:
    """A link shape that applies to traffic towards one subnet."""

    subnet: ipaddress.IPv4Network | ipaddress.IPv6Network
    link_shape: LinkShape = field(default_factory=LinkShape)


@dataclass
class NetworkConfig:
    """Requested configuration of one network of a test instance."""

    network: str = ""
    enable: bool = False
    default: LinkShape = field(default_factory=LinkShape)
    rules: list[LinkRule] = field(default_factory=list)
    ipv4: ipaddress.IPv4Interface | None = None
    callback_state: str = ""
    callback_target: int = 0
    routing_policy: RoutingPolicy | None = None


def same_addrs(a: Iterable[Any], b: Iterable[Any]) -> bool:
    """True when both address lists have the same length and every address of ``b`` is in ``a``."""
    a_list, b_list = [str(addr) for addr in a], [str(addr) for addr in b]
    if len(a_list) != len(b_list):
        return False
    known = set(a_list)
    return all(addr in known for addr in b_list)


def _recv_byte(conn: socket.socket) -> bytes:
    data = conn.recv(1)
    if not data:
        raise ConnectionError("connection closed by peer")
    return data


def ping_pong_exchange(conn: socket.socket, seq: int, rtt_min: float, rtt_max: float) -> float:
    """Bounce this instance's id off the peer and return the round-trip time in seconds.

    Raises RuntimeError when the echoed id is wrong or the RTT is outside
    ``[rtt_min, rtt_max]``.
    """
    mine = bytes([seq & 0xFF])

    logger.debug("waiting until ready")
    conn.sendall(b"\x00")
    _recv_byte(conn)

    start = time.monotonic()
    logger.debug("writing my id")
    conn.sendall(mine)
    logger.debug("reading their id")
    theirs = _recv_byte(conn)
    logger.debug("returning their id")
    conn.sendall(theirs)
    logger.debug("reading my id")
    echoed = _recv_byte(conn)
    rtt = time.monotonic() - start

    if echoed != mine:
        raise RuntimeError("read unexpected value")
    if rtt < rtt_min or rtt > rtt_max:
        raise RuntimeError(f"expected an RTT between {rtt_min:.6f}s and {rtt_max:.6f}s, got {rtt:.6f}s")
    return rtt


def pingpong(
    runenv: RunEnv,
    init_ctx: InitContext,
    addrs_provider: Callable[[], Iterable[Any]],
) -> None:
    """Two instances swap ids over TCP under shaped latency and check the RTT.

    ``addrs_provider`` lists the instance's interface addresses; they must not
    change while the network is being configured.
    """
    client = init_ctx.sync_client
    netclient = init_ctx.net_client

    old_addrs = list(addrs_provider())

    config = NetworkConfig(
        network="default",
        enable=True,
        default=LinkShape(latency=0.1, bandwidth=1 << 20),
        callback_state="network-configured",
        routing_policy=RoutingPolicy.DENY_ALL,
    )
    runenv.record_message("before netclient.MustConfigureNetwork")
    netclient.configure_network(config)

    seq = client.signal_and_wait("ip-allocation", runenv.test_instance_count)

    if not same_addrs(old_addrs, addrs_provider()):
        raise RuntimeError("interfaces changed")

    runenv.record_message("I am %d", seq)

    subnet = ipaddress.ip_network(runenv.test_subnet, strict=False)
    octets = subnet.network_address.packed[:2] + bytes([((seq >> 8) + 1) & 0xFF, seq & 0xFF])
    config.ipv4 = ipaddress.IPv4Interface(f"{ipaddress.IPv4Address(octets)}/24")
    config.callback_state = "ip-changed"

    listener = socket.create_server(("", PING_PORT)) if seq == 1 else None
    try:
        runenv.record_message("before reconfiguring network")
        netclient.configure_network(config)

        if seq == 1:
            conn, _ = listener.accept()
        elif seq == 2:
            peer = ipaddress.IPv4Address(octets[:3] + b"\x01")
            conn = socket.create_connection((str(peer), PING_PORT))
        else:
            raise RuntimeError("expected at most two test instances")

        with conn:
            conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

            def round_trip(test: str, rtt_min: float, rtt_max: float) -> None:
                runenv.record_message("waiting until ready")
                rtt = ping_pong_exchange(conn, seq, rtt_min, rtt_max)
                runenv.record_message("ping RTT was %.6fs [%.6fs, %.6fs]", rtt, rtt_min, rtt_max)
                # Don't reconfigure the network until both sides are done.
                client.signal_and_wait("ping-pong-" + test, runenv.test_instance_count)

            round_trip("200", 0.200, 0.215)

            config.default.latency = 0.010
            config.callback_state = "latency-reduced"
            netclient.configure_network(config)

            runenv.record_message("ping pong")
            round_trip("10", 0.020, 0.035)
    finally:
        if listener is not None:
            listener.close()


def routing_policy_test(
    policy: RoutingPolicy,
    fetch: Callable[[], bytes | str],
) -> Callable[[RunEnv, InitContext], None]:
    """A case that applies ``policy`` and checks whether an outside document can be fetched.

    ``fetch`` retrieves the probe document, raising when it cannot be reached.
    """

    def case(runenv: RunEnv, init_ctx: InitContext) -> None:
        config = NetworkConfig(
            network="default",
            enable=True,
            callback_state="network-configured-with-policy",
            routing_policy=policy,
        )
        runenv.record_message("configuring network with network policy: %s", RoutingPolicy(policy).value)
        init_ctx.net_client.configure_network(config)

        if policy == RoutingPolicy.DENY_ALL:
            try:
                fetch()
            except Exception as exc:
                runenv.record_message("connection failed as expected: %s", exc)
                return
            raise RuntimeError("http request must not work with traffic blocked")

        body = fetch()
        text = body.decode() if isinstance(body, bytes) else body
        if text != PROBE_CONTENT:
            raise RuntimeError(f"received {text}, expected {PROBE_CONTENT}")
        runenv.record_message("received message: %s", PROBE_CONTENT)

    return case