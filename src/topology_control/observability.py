"""Scrape-target discovery for an external metrics stack.

Targets are a projection of the workloads the platform currently runs in a
namespace. Nothing here stores metrics or renders dashboards; the output is
written in the Prometheus ``file_sd_configs`` format for whatever consumes it.
"""
import json
from pathlib import Path

from .models import ObservedState, ScrapeTarget
from .platform import Platform
from .settings import get_settings


def discover_targets(namespace: str, observed: ObservedState, metrics_path: str | None = None) -> list[ScrapeTarget]:
    metrics_path = metrics_path or get_settings().METRICS_PATH
    targets = []
    for workload in sorted(observed.in_namespace(namespace), key=lambda w: w.name):
        if not workload.ports or workload.replicas == 0:
            continue
        targets.append(
            ScrapeTarget(
                name=workload.name,
                address=workload.host,
                port=workload.ports[0].container_port,
                labels={
                    "namespace": namespace,
                    "workload": workload.name,
                    "job": f"{namespace}/{workload.name}",
                },
                metrics_path=metrics_path,
            )
        )
    return targets


class ObservabilityAttachment:
    """Discovers targets on demand; every call observes the platform again."""

    def __init__(self, platform: Platform, metrics_path: str | None = None):
        self.platform = platform
        self.metrics_path = metrics_path

    def discover_targets(self, namespace: str) -> list[ScrapeTarget]:
        return discover_targets(namespace, self.platform.observe(namespace), self.metrics_path)

    def discover_all(self, namespaces: list[str]) -> list[ScrapeTarget]:
        targets = []
        for namespace in namespaces:
            targets.extend(self.discover_targets(namespace))
        return targets


def to_file_sd(targets: list[ScrapeTarget]) -> list[dict]:
    return [
        {
            "targets": [t.endpoint],
            "labels": {**t.labels, "__metrics_path__": t.metrics_path},
        }
        for t in targets
    ]


def write_file_sd(targets: list[ScrapeTarget], path: Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(to_file_sd(targets), indent=2) + "\n")
    # Prometheus re-reads the file on change; replace it atomically.
    tmp.replace(path)
