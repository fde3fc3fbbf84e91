import json

import pytest

from topology_control.errors import ReconciliationError
from topology_control.main import main

TOPOLOGY = """
namespace: ns
workloads:
  - name: db
    image: mongo:7
    ports: [27017]
  - name: api
    image: shop/api:1.0
    ports: [8080]
    env:
      DB_URL: {ref: db}
"""


@pytest.fixture
def topology_file(tmp_path):
    path = tmp_path / "topology.yaml"
    path.write_text(TOPOLOGY)
    return path


def test_plan_then_apply(topology_file, platform):
    assert main(["plan", "-f", str(topology_file)], platform=platform) == 0
    assert platform.workloads == {}

    assert main(["apply", "-f", str(topology_file)], platform=platform) == 0
    assert platform.workloads[("ns", "api")].env == {"DB_URL": "db.ns:27017"}


def test_apply_reports_partial_failure(topology_file, platform):
    platform.failures[("ns", "api")] = [ReconciliationError("boom")]
    assert main(["apply", "-f", str(topology_file)], platform=platform) == 1
    assert ("ns", "db") in platform.workloads


def test_rejected_topology_exits_2(tmp_path, platform):
    path = tmp_path / "topology.yaml"
    path.write_text("workloads:\n  - name: api\n    image: a\n    ports: [8080]\n    env: {X: {ref: api}}\n")

    assert main(["apply", "-f", str(path)], platform=platform) == 2
    assert platform.calls == []


def test_targets_written_as_file_sd(topology_file, platform, tmp_path):
    main(["apply", "-f", str(topology_file)], platform=platform)
    out = tmp_path / "targets.json"

    assert main(["targets", "-f", str(topology_file), "-o", str(out)], platform=platform) == 0
    assert [entry["targets"] for entry in json.loads(out.read_text())] == [["api.ns:8080"], ["db.ns:27017"]]


def test_teardown_cascade(topology_file, platform):
    main(["apply", "-f", str(topology_file)], platform=platform)

    assert main(["teardown", "ns"], platform=platform) == 1
    assert len(platform.workloads) == 2

    assert main(["teardown", "ns", "--cascade", "--yes"], platform=platform) == 0
    assert platform.workloads == {}


def test_apply_with_emptied_namespace_deletes_its_workloads(topology_file, platform):
    main(["apply", "-f", str(topology_file)], platform=platform)
    topology_file.write_text("namespace: ns\nworkloads: []\n")

    assert main(["apply", "-f", str(topology_file)], platform=platform) == 0
    assert platform.workloads == {}
    assert [call[:3] for call in platform.calls[-2:]] == [("delete", "ns", "api"), ("delete", "ns", "db")]
