import pytest

from topology_control.errors import TopologyFileError
from topology_control.models import DesiredTopology, LiteralValue, Operation, OperationKind, PortSpec, ServiceRef


TOPOLOGY = """
namespace: shop
workloads:
  - name: db
    image: mongo
    ports: [27017]
  - name: api
    image: localhost:5000/shop/api
    replicas: 2
    ports:
      - container_port: 8080
      - "9090/udp"
    env:
      MONGO_URL: {ref: db, template: "mongodb://{address}/shop"}
      DEBUG: true
      WORKERS: 4
  - name: exporter
    namespace: monitoring
    image: prom/exporter:v1
    ports: [9100]
"""


def _write(tmp_path, text):
    path = tmp_path / "topology.yaml"
    path.write_text(text)
    return path


def test_load_topology_applies_defaults_and_coercions(tmp_path):
    topology = DesiredTopology.from_file(_write(tmp_path, TOPOLOGY))
    db, api, exporter = topology.workloads

    assert db.namespace == "shop"
    assert db.image == "mongo:latest"
    assert db.replicas == 1
    assert db.ports == [PortSpec(container_port=27017, protocol="TCP")]

    assert api.image == "localhost:5000/shop/api:latest"
    assert api.ports[1] == PortSpec(container_port=9090, protocol="UDP")
    assert api.env["MONGO_URL"] == ServiceRef(workload="db", template="mongodb://{address}/shop")
    assert api.env["DEBUG"] == LiteralValue(value="true")
    assert api.env["WORKERS"] == LiteralValue(value="4")
    assert api.dependencies == ("db",)
    assert api.host == "api.shop"

    assert exporter.namespace == "monitoring"
    assert exporter.image == "prom/exporter:v1"


def test_missing_file_is_reported(tmp_path):
    with pytest.raises(TopologyFileError, match="not found"):
        DesiredTopology.from_file(tmp_path / "nope.yaml")


def test_schema_errors_are_reported(tmp_path):
    path = _write(tmp_path, "workloads:\n  - name: db\n    image: mongo\n    replicas: -1\n")
    with pytest.raises(TopologyFileError):
        DesiredTopology.from_file(path)


def test_invalid_yaml_is_reported(tmp_path):
    with pytest.raises(TopologyFileError, match="invalid YAML"):
        DesiredTopology.from_file(_write(tmp_path, "workloads: [\n"))


def test_names_must_be_dns_labels(workload):
    with pytest.raises(ValueError):
        workload("Bad_Name", 80)


def test_empty_file_is_an_empty_topology(tmp_path):
    topology = DesiredTopology.from_file(_write(tmp_path, ""))
    assert topology.namespace == "default"
    assert topology.workloads == []
    assert topology.namespaces == ["default"]


def test_declared_namespaces_include_empty_and_explicit_ones(tmp_path):
    topology = DesiredTopology.from_file(
        _write(tmp_path, "namespace: shop\nworkloads:\n  - {name: cache, namespace: infra, image: redis, ports: [6379]}\n")
    )
    assert topology.namespaces == ["infra", "shop"]


def test_protocol_is_normalized_but_not_rejected():
    assert PortSpec(container_port=53, protocol="udp").protocol == "UDP"
    assert PortSpec(container_port=53, protocol="sctp").protocol == "SCTP"


def test_operation_describe():
    op = Operation(kind=OperationKind.UPDATE, namespace="ns", name="api", changed_fields=("image", "env"))
    assert op.describe() == "update ns/api (image, env)"
    assert Operation(kind=OperationKind.DELETE, namespace="ns", name="web").describe() == "delete ns/web"
