import re

import pytest

from topology_control.errors import CyclicDependency, InvalidPort
from topology_control.resolver import dependency_order, render, resolve, topological_order


def test_three_tier_addresses(three_tier):
    addresses = resolve(three_tier)
    assert addresses == {"db": "db.ns:27017", "api": "api.ns:8080", "web": "web.ns:80"}
    assert list(addresses) == ["db", "api", "web"]


def test_addresses_are_injected_into_dependents(three_tier):
    specs = {spec.name: spec for spec in render(three_tier)}
    assert specs["api"].env == {"DB_URL": "db.ns:27017", "LOG_LEVEL": "info"}
    assert specs["web"].env == {"API_URL": "api.ns:8080"}
    assert specs["db"].env == {}
    assert specs["web"].depends_on == ["api"]
    assert specs["db"].address == "db.ns:27017"


def test_templates_can_use_host_and_port(workload):
    descriptors = [
        workload("db", 27017, 28017),
        workload(
            "api",
            8080,
            env={
                "MONGO_URL": {"ref": "db", "template": "mongodb://{address}/shop"},
                "DB_HOST": {"ref": "db", "template": "{host}"},
                "DB_PORT": {"ref": "db", "template": "{port}"},
                "JSON": {"ref": "db", "template": '{"db": "{address}"}'},
            },
        ),
    ]
    env = {spec.name: spec for spec in render(descriptors)}["api"].env
    assert env["MONGO_URL"] == "mongodb://db.ns:27017/shop"
    assert env["DB_HOST"] == "db.ns"
    assert env["DB_PORT"] == "27017"
    assert env["JSON"] == '{"db": "db.ns:27017"}'


def test_independent_workloads_are_ordered_by_name(workload):
    descriptors = [workload("zeta", 1), workload("alpha", 2), workload("mid", 3, env={"Z": {"ref": "zeta"}})]
    assert [d.name for d in dependency_order(descriptors)] == ["alpha", "zeta", "mid"]


def test_every_address_has_name_namespace_port_form(workload):
    descriptors = [
        workload(f"w{i}", 1000 + i, namespace="prod", env={"UP": {"ref": f"w{i - 1}"}} if i else None)
        for i in range(6)
    ]
    addresses = resolve(descriptors)
    assert len(addresses) == 6
    for name, address in addresses.items():
        assert re.fullmatch(rf"{name}\.prod:\d+", address)


def test_cycles_fail_resolution(workload):
    descriptors = [workload("a", 1, env={"X": {"ref": "b"}}), workload("b", 2, env={"X": {"ref": "a"}})]
    with pytest.raises(CyclicDependency):
        resolve(descriptors)


def test_self_reference_fails_resolution(workload):
    with pytest.raises(CyclicDependency):
        resolve([workload("api", 8080, env={"SELF": {"ref": "api"}})])


def test_resolution_is_scoped_to_one_namespace(workload):
    with pytest.raises(ValueError):
        resolve([workload("db", 1, namespace="a"), workload("db", 1, namespace="b")])


def test_workload_without_ports_has_no_address(workload):
    with pytest.raises(InvalidPort) as excinfo:
        resolve([workload("db", 5432), workload("worker")])
    assert excinfo.value.issues == ["ns/worker declares no ports"]


def test_lenient_order_appends_cycle_members():
    graph = {"c": ["a"], "a": ["b"], "b": ["a"], "d": []}
    assert topological_order(graph, strict=False) == ["d", "a", "b", "c"]
