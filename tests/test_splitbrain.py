import copy
import ipaddress

import pytest

from tgtask.plans.network import FilterAction
from tgtask.plans.runenv import InitContext, RunEnv, SyncClient, SyncService, Topic
from tgtask.plans.splitbrain import Node, Region, expect_errors, route_filter


class FakeNetClient:
    def __init__(self, ip):
        self.ip = ip
        self.configs = []
        self.waits = 0

    def configure_network(self, config):
        self.configs.append(copy.deepcopy(config))

    def wait_network_initialized(self):
        self.waits += 1

    def get_data_network_ip(self):
        return self.ip


def node(region, ip):
    return Node(region, ipaddress.ip_address(ip))


def test_region_names():
    assert [str(Region(i)) for i in range(3)] == ["region_A", "region_B", "region_C"]


@pytest.mark.parametrize(
    "case, a, b, expected",
    [
        ("drop", Region.A, Region.B, True),
        ("reject", Region.B, Region.A, True),
        ("accept", Region.A, Region.B, False),
        ("drop", Region.A, Region.C, False),
        ("drop", Region.C, Region.B, False),
        ("drop", Region.A, Region.A, False),
    ],
)
def test_expect_errors(case, a, b, expected):
    assert expect_errors(case, node(a, "10.0.0.1"), node(b, "10.0.0.2")) is expected


def setup_cluster(test_case, me_seq):
    service = SyncService()
    other = SyncClient(service)
    for _ in range(me_seq - 1):
        other.signal_entry("region-select")
    others = [node(Region.B, "10.0.0.2"), node(Region.C, "10.0.0.3")]
    for n in others:
        other.publish(Topic("nodes"), n)
    for state in ("nodeRoundup", "testcomplete"):
        other.signal_entry(state)
        other.signal_entry(state)
    runenv = RunEnv(test_case=test_case, test_instance_count=3, test_sidecar=True, sync_service=service)
    net = FakeNetClient("10.0.0.1")
    return runenv, net, InitContext(SyncClient(service), net)


def unreachable_b(calls):
    def http_get(url):
        calls.append(url)
        if "10.0.0.2" in url:
            raise ConnectionError("blocked")
        return 200

    return http_get


def test_region_a_filters_region_b():
    runenv, net, ctx = setup_cluster("drop", 3)
    calls = []
    route_filter(FilterAction.DROP, unreachable_b(calls))(runenv, ctx, settle=0, port=0)
    assert len(net.configs) == 1
    rules = net.configs[0].rules
    assert [str(rule.subnet) for rule in rules] == ["10.0.0.2/32"]
    assert rules[0].link_shape.filter == FilterAction.DROP
    assert net.configs[0].callback_target == 1
    assert len(calls) == 2
    assert runenv.failures == []
    assert "could not connect 1" in runenv.messages
    assert "200 status codes 1" in runenv.messages
    assert "total, 2" in runenv.messages


def test_accept_case_fails_on_unreachable_node():
    runenv, net, ctx = setup_cluster("accept", 3)
    calls = []
    with pytest.raises(ConnectionError, match="blocked"):
        route_filter(FilterAction.ACCEPT, unreachable_b(calls))(runenv, ctx, settle=0, port=0)
    assert runenv.failures == ["blocked"]
    assert net.configs[0].rules[0].link_shape.filter == FilterAction.ACCEPT


def test_region_b_does_not_configure():
    runenv, net, ctx = setup_cluster("drop", 1)
    route_filter(FilterAction.DROP, lambda url: 200)(runenv, ctx, settle=0, port=0)
    assert net.configs == []
    assert "my ip is 10.0.0.1 and I am in region region_B" in runenv.messages
    assert "200 status codes 2" in runenv.messages


def test_requires_sidecar():
    runenv, net, ctx = setup_cluster("drop", 1)
    runenv.test_sidecar = False
    with pytest.raises(RuntimeError, match="sidecar enabled"):
        route_filter(FilterAction.DROP, lambda url: 200)(runenv, ctx, settle=0, port=0)
    assert net.waits == 0