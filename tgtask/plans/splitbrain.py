"""Split-brain plan: nodes in region A cannot reach region B; region C reaches everyone.

Each node serves HTTP, learns every other node through the sync service and
tries to reach each of them. Nodes of region A filter traffic to region B
with the action under test.
"""

from __future__ import annotations

import ipaddress
import itertools
import logging
import socket
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable

from .network import FilterAction, LinkRule, LinkShape, NetworkConfig
from .runenv import InitContext, RunEnv, Topic

logger = logging.getLogger(__name__)

HTTP_PORT = 8765
SETTLE_SECONDS = 10.0
HTTP_TIMEOUT = 60.0


class Region(Enum):
    A = 0
    B = 1
    C = 2

    def __str__(self) -> str:
        return f"region_{self.name}"


@dataclass(frozen=True)
class Node:
    """A test instance and the region it was placed in."""

    region: Region
    ip: ipaddress.IPv4Address | ipaddress.IPv6Address


def expect_errors(test_case: str, a: Node, b: Node) -> bool:
    """Whether a connection between ``a`` and ``b`` is expected to fail."""
    if test_case == "accept" or Region.C in (a.region, b.region):
        return False
    return {a.region, b.region} == {Region.A, Region.B}


def _http_status(url: str) -> int:
    try:
        with urllib.request.urlopen(url, timeout=HTTP_TIMEOUT) as response:
            return response.status
    except urllib.error.HTTPError as exc:
        return exc.code


def _start_server(runenv: RunEnv, port: int) -> ThreadingHTTPServer | None:
    class Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            host, peer_port = self.client_address[:2]
            runenv.record_message("received http request from %s:%s", host, peer_port)
            body = b"hello.\n"
            self.send_response(200)
            self.send_header("Content-Type", "text/plain")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format: str, *args: Any) -> None:
            logger.debug(format, *args)

    try:
        server = ThreadingHTTPServer(("", port), Handler)
    except OSError as exc:
        logger.warning("http server could not start: %s", exc)
        return None
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server


def route_filter(
    action: FilterAction,
    http_get: Callable[[str], int] = _http_status,
) -> Callable[..., None]:
    """A case in which region A applies ``action`` to traffic towards region B.

    ``http_get`` fetches a URL and returns its status code, raising when the
    node cannot be reached.
    """

    def case(
        runenv: RunEnv,
        init_ctx: InitContext,
        settle: float = SETTLE_SECONDS,
        port: int = HTTP_PORT,
    ) -> None:
        if not runenv.test_sidecar:
            raise RuntimeError("this plan must be run with sidecar enabled")

        client = init_ctx.sync_client
        netclient = init_ctx.net_client
        netclient.wait_network_initialized()

        runenv.record_message("Starting http server")
        server = _start_server(runenv, port)
        try:
            _run(runenv, client, netclient, action, http_get, settle, port)
        finally:
            if server is not None:
                server.shutdown()
                server.server_close()

    return case


def _run(
    runenv: RunEnv,
    client: Any,
    netclient: Any,
    action: FilterAction,
    http_get: Callable[[str], int],
    settle: float,
    port: int,
) -> None:
    # The order of arrival decides the region.
    seq = client.signal_entry("region-select")
    ip = ipaddress.ip_address(str(netclient.get_data_network_ip()))
    me = Node(Region(seq % 3), ip)
    runenv.record_message("my ip is %s and I am in region %s", ip, me.region)

    _, updates = client.publish_subscribe(Topic("nodes"), me)
    nodes = []
    for node in itertools.islice(updates, runenv.test_instance_count):
        runenv.record_message("received node (%s) %s", node.region, node.ip)
        if node.ip != me.ip:
            nodes.append(node)

    if me.region == Region.A:
        config = NetworkConfig(
            network="default",
            callback_state="reconfigured" + socket.gethostname(),
            callback_target=1,
            enable=True,
            rules=[
                LinkRule(
                    subnet=ipaddress.ip_network(f"{node.ip}/{node.ip.max_prefixlen}"),
                    link_shape=LinkShape(filter=action),
                )
                for node in nodes
                if node.region == Region.B
            ],
        )
        netclient.configure_network(config)

    runenv.record_message("waiting for all nodes to receive all addresses")
    client.signal_and_wait("nodeRoundup", runenv.test_instance_count)

    # Give every server a moment to come up.
    if settle > 0:
        threading.Event().wait(settle)

    unexpected: BaseException | None = None
    errors = status_ok = total = 0
    for node in nodes:
        total += 1
        host = f"[{node.ip}]" if node.ip.version == 6 else str(node.ip)
        remote = f"http://{host}:{port}"
        runenv.record_message("(region %s) contacting %s", me.region, remote)
        try:
            status = http_get(remote)
        except Exception as exc:
            errors += 1
            if not expect_errors(runenv.test_case, me, node):
                runenv.record_failure(exc)
                unexpected = exc
            continue
        if status == 200:
            status_ok += 1

    runenv.record_message("could not connect %d", errors)
    runenv.record_message("200 status codes %d", status_ok)
    runenv.record_message("total, %d", total)

    client.signal_and_wait("testcomplete", runenv.test_instance_count)

    if unexpected is not None:
        raise unexpected