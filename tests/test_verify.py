import itertools

import pytest

from tgtask.plans.runenv import InitContext, RunEnv, SyncClient, SyncService, Topic
from tgtask.plans.verify import END_OF_NETWORKS, is_control_net, uses_data_network

ADDRS = {"eth0": ["192.18.0.5/16"], "eth1": ["16.0.0.5/16"]}


class FakeNetClient:
    def __init__(self, error=None):
        self.error = error

    def wait_network_initialized(self):
        if self.error:
            raise self.error


def no_ping(addr):
    raise AssertionError("ping must not be used")


@pytest.mark.parametrize(
    "network, expected",
    [("192.18.0.5", True), ("100.96.1.1", True), ("16.0.0.5", False), ("192.168.0.1", False)],
)
def test_is_control_net(network, expected):
    assert is_control_net(network) is expected


def test_target_publishes_all_addresses():
    runenv = RunEnv(test_instance_count=1)
    ctx = InitContext(SyncClient(runenv.sync_service), FakeNetClient())
    uses_data_network(runenv, ctx, ADDRS.__getitem__, no_ping)
    other = SyncClient(runenv.sync_service)
    published = list(itertools.takewhile(lambda x: x != END_OF_NETWORKS, other.subscribe(Topic("addrs"))))
    assert published == ["192.18.0.5/16", "16.0.0.5/16"]
    assert other.signal_entry("target-ready") == 2
    assert runenv.failures == []


def test_target_records_missing_interface():
    runenv = RunEnv(test_instance_count=1)
    ctx = InitContext(SyncClient(runenv.sync_service), FakeNetClient())
    with pytest.raises(KeyError):
        uses_data_network(runenv, ctx, {"eth0": ["16.0.0.5/16"]}.__getitem__, no_ping)
    assert len(runenv.failures) == 1


def test_network_init_failure_is_recorded():
    runenv = RunEnv(test_instance_count=1)
    ctx = InitContext(SyncClient(runenv.sync_service), FakeNetClient(RuntimeError("no sidecar")))
    with pytest.raises(RuntimeError, match="no sidecar"):
        uses_data_network(runenv, ctx, ADDRS.__getitem__, no_ping)
    assert runenv.failures == ["no sidecar"]


def run_ping_mode(losses):
    service = SyncService()
    target = SyncClient(service)
    target.signal_entry("ready")
    for addr in ["192.18.0.5/16", "16.0.0.5/16", END_OF_NETWORKS]:
        target.publish(Topic("addrs"), addr)
    target.signal_entry("target-ready")
    target.signal_entry("finished")
    runenv = RunEnv(test_instance_count=2, sync_service=service)
    ctx = InitContext(SyncClient(service), FakeNetClient())
    pinged = []

    def ping(addr):
        pinged.append(addr)
        return losses[addr]

    uses_data_network(runenv, ctx, no_ping, ping)
    return runenv, pinged


def test_ping_mode_healthy_networks():
    runenv, pinged = run_ping_mode({"192.18.0.5": 100.0, "16.0.0.5": 0.0})
    assert pinged == ["192.18.0.5", "16.0.0.5"]
    assert runenv.failures == []


def test_ping_mode_control_network_reachable():
    runenv, _ = run_ping_mode({"192.18.0.5": 0.0, "16.0.0.5": 0.0})
    assert runenv.failures == ["error - control network is accessible; it should not be"]


def test_ping_mode_data_network_lossy():
    runenv, _ = run_ping_mode({"192.18.0.5": 100.0, "16.0.0.5": 50.0})
    assert runenv.failures == ["error - data network is not accessible; it should be"]


def test_other_instances_only_wait():
    service = SyncService()
    other = SyncClient(service)
    for state in ("ready", "finished"):
        other.signal_entry(state)
        other.signal_entry(state)
    runenv = RunEnv(test_instance_count=3, sync_service=service)
    ctx = InitContext(SyncClient(service), FakeNetClient())
    uses_data_network(runenv, ctx, no_ping, no_ping)
    assert runenv.messages == []
    assert other.signal_entry("finished") == 4