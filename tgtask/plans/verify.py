"""Verification plan: instances must reach each other only over the data network."""

from __future__ import annotations

from typing import Any, Callable, Iterable

from .runenv import InitContext, RunEnv, Topic

END_OF_NETWORKS = "endOfNetworks"
INTERFACES = ("eth0", "eth1")

_TARGET_MODE = 1
_PING_MODE = 2


def is_control_net(network: str) -> bool:
    """Whether an address belongs to the control network."""
    return network.startswith("192.18.") or network.startswith("100.96.")


def uses_data_network(
    runenv: RunEnv,
    init_ctx: InitContext,
    interfaces: Callable[[str], Iterable[Any]],
    ping: Callable[[str], float],
) -> None:
    """One instance publishes its addresses; another pings each of them.

    ``interfaces`` lists the addresses (in CIDR form) of a named interface;
    ``ping`` returns the packet loss, in percent, towards an address. A
    failure is recorded when the control network answers or the data network
    loses packets.
    """
    client = init_ctx.sync_client
    try:
        init_ctx.net_client.wait_network_initialized()
    except Exception as exc:
        runenv.record_failure(exc)
        raise

    topic = Topic("addrs")
    mode = client.signal_and_wait("ready", runenv.test_instance_count)

    if mode == _TARGET_MODE:
        runenv.record_message("target mode. publishing target networks.")
        for name in INTERFACES:
            try:
                addrs = list(interfaces(name))
            except Exception as exc:
                runenv.record_failure(exc)
                raise
            for addr in addrs:
                runenv.record_message("publishing %s", addr)
                client.publish(topic, str(addr))
        client.publish(topic, END_OF_NETWORKS)
        runenv.record_message("published my addresses from all networks to sync service. ready to be tested.")
        client.signal_entry("target-ready")

    elif mode == _PING_MODE:
        runenv.record_message("ping mode. waiting for target networks.")
        client.barrier("target-ready", 1)
        runenv.record_message("starting ping")
        for network in client.subscribe(topic):
            if network == END_OF_NETWORKS:
                break
            runenv.record_message("checking if network is reachable: %s", network)
            addr = network.split("/")[0]
            loss = ping(addr)
            if is_control_net(addr) and loss != 100.0:
                runenv.record_failure("error - control network is accessible; it should not be")
            elif not is_control_net(addr) and loss > 0.0:
                runenv.record_failure("error - data network is not accessible; it should be")
            runenv.record_message("packet loss on %s: %f%%", network, loss)

    client.signal_and_wait("finished", runenv.test_instance_count)