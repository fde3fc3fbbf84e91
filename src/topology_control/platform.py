import json
import secrets
from collections import defaultdict
from contextlib import contextmanager
from typing import Protocol

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container
from rich.console import Console

from .errors import NamespaceNotEmpty, PlatformUnavailable, ReconciliationError
from .models import ObservedState, ObservedWorkload, WorkloadSpec
from .settings import get_settings

console = Console()

LABEL_MANAGED = "topology.managed"
LABEL_NAMESPACE = "topology.namespace"
LABEL_WORKLOAD = "topology.workload"
LABEL_LAST_APPLIED = "topology.last-applied"
LABEL_ROLE = "topology.role"

ROLE_REPLICA = "replica"
ROLE_RECORD = "record"


class Platform(Protocol):
    """What the reconciliation driver needs from a container platform."""

    def ensure_namespace(self, namespace: str) -> None: ...

    def delete_namespace(self, namespace: str, cascade: bool = False) -> None: ...

    def observe(self, namespace: str) -> ObservedState: ...

    def create_workload(self, spec: WorkloadSpec) -> None: ...

    def update_workload(self, spec: WorkloadSpec, changed_fields: tuple[str, ...]) -> None: ...

    def delete_workload(self, namespace: str, name: str) -> None: ...


@contextmanager
def _platform_errors(action: str):
    """Translate docker SDK failures into the reconciliation error taxonomy."""
    try:
        yield
    except APIError as e:
        if e.is_server_error():
            raise PlatformUnavailable(f"{action}: {e}") from e
        raise ReconciliationError(f"{action}: {e}") from e
    except (DockerException, OSError) as e:
        raise PlatformUnavailable(f"{action}: {e}") from e


class DockerPlatform:
    """Runs the topology on a single Docker engine.

    A namespace is a bridge network; a workload is `replicas` labeled containers
    on that network, reachable under the alias `<name>.<namespace>`. The
    rendered spec is kept in a label, the way `kubectl apply` keeps its
    last-applied configuration. Each workload also owns one created but never
    started record container carrying that label, so a workload scaled to
    zero replicas is still observed.
    """

    def __init__(self, client: docker.DockerClient | None = None):
        self.settings = get_settings()
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            with _platform_errors("connect to Docker daemon"):
                if self.settings.DOCKER_BASE_URL:
                    self._client = docker.DockerClient(
                        base_url=self.settings.DOCKER_BASE_URL, timeout=self.settings.DOCKER_TIMEOUT
                    )
                else:
                    self._client = docker.from_env(timeout=self.settings.DOCKER_TIMEOUT)
        return self._client

    def network_name(self, namespace: str) -> str:
        return f"{self.settings.NETWORK_PREFIX}{namespace}"

    # -- namespaces -------------------------------------------------------

    def ensure_namespace(self, namespace: str) -> None:
        name = self.network_name(namespace)
        with _platform_errors(f"ensure namespace {namespace}"):
            try:
                self.client.networks.get(name)
            except NotFound:
                self.client.networks.create(
                    name, driver="bridge", labels={LABEL_MANAGED: "true", LABEL_NAMESPACE: namespace}
                )
                console.print(f"   [dim]Created network '{name}' for namespace {namespace}[/dim]")

    def delete_namespace(self, namespace: str, cascade: bool = False) -> None:
        with _platform_errors(f"delete namespace {namespace}"):
            containers = self._containers(namespace)
            if containers and not cascade:
                raise NamespaceNotEmpty(
                    f"Namespace {namespace} still holds {len(containers)} container(s); cascade not confirmed"
                )
            for container in containers:
                container.remove(force=True)
            try:
                self.client.networks.get(self.network_name(namespace)).remove()
            except NotFound:
                pass

    # -- observation ------------------------------------------------------

    def observe(self, namespace: str) -> ObservedState:
        with _platform_errors(f"observe namespace {namespace}"):
            by_workload: dict[str, list[Container]] = defaultdict(list)
            for container in self._containers(namespace):
                by_workload[container.labels.get(LABEL_WORKLOAD, "")].append(container)

            workloads = []
            for name, group in sorted(by_workload.items()):
                if not name:
                    continue
                replicas = _replicas(group)
                # Report the oldest replica: a half-finished replace keeps showing as drift.
                # A workload scaled to zero is only known through its record.
                source = min(replicas or group, key=lambda c: c.attrs.get("Created", ""))
                applied = json.loads(source.labels.get(LABEL_LAST_APPLIED, "{}"))
                workloads.append(
                    ObservedWorkload(
                        name=name,
                        namespace=namespace,
                        image=source.attrs.get("Config", {}).get("Image") or applied.get("image", ""),
                        replicas=len(replicas),
                        ready_replicas=sum(1 for c in replicas if _is_ready(c)),
                        ports=applied.get("ports", []),
                        env=applied.get("env", {}),
                        depends_on=applied.get("depends_on", []),
                    )
                )
        return ObservedState(workloads=workloads)

    # -- workloads --------------------------------------------------------

    def create_workload(self, spec: WorkloadSpec) -> None:
        self.ensure_namespace(spec.namespace)
        with _platform_errors(f"create {spec.namespace}/{spec.name}"):
            self._pull(spec.image)
            current = self._containers(spec.namespace, spec.name)
            self._write_record(spec, current)
            # A retried create only starts what the failed attempt did not.
            for _ in range(spec.replicas - len(_replicas(current))):
                self._run(spec)

    def update_workload(self, spec: WorkloadSpec, changed_fields: tuple[str, ...]) -> None:
        with _platform_errors(f"update {spec.namespace}/{spec.name}"):
            current = self._containers(spec.namespace, spec.name)
            if set(changed_fields) <= {"replicas"}:
                if not any(_is_record(c) for c in current):
                    self._write_record(spec, current)
                self._scale(spec, _replicas(current))
                return

            # Start the replacement set before removing the old one.
            self._pull(spec.image)
            self._write_record(spec, current)
            for _ in range(spec.replicas):
                self._run(spec)
            for container in _replicas(current):
                container.remove(force=True)

    def delete_workload(self, namespace: str, name: str) -> None:
        with _platform_errors(f"delete {namespace}/{name}"):
            for container in self._containers(namespace, name):
                console.print(f"   [dim]Removing container '{container.name}'...[/dim]")
                container.remove(force=True)

    # -- helpers ----------------------------------------------------------

    def _containers(self, namespace: str, name: str | None = None) -> list[Container]:
        labels = [f"{LABEL_MANAGED}=true", f"{LABEL_NAMESPACE}={namespace}"]
        if name:
            labels.append(f"{LABEL_WORKLOAD}={name}")
        return self.client.containers.list(all=True, filters={"label": labels})

    def _scale(self, spec: WorkloadSpec, current: list[Container]) -> None:
        extra = len(current) - spec.replicas
        if extra > 0:
            newest_first = sorted(current, key=lambda c: c.attrs.get("Created", ""), reverse=True)
            for container in newest_first[:extra]:
                container.remove(force=True)
        for _ in range(max(0, -extra)):
            self._run(spec)

    def _pull(self, image: str) -> None:
        try:
            self.client.images.pull(image)
        except ImageNotFound as e:
            raise ReconciliationError(f"Image {image} not found locally or remotely") from e
        except APIError:
            console.print(f"   [dim red]Warning: Could not pull {image}. Trying local cache...[/dim red]")

    def _write_record(self, spec: WorkloadSpec, current: list[Container]) -> Container:
        """Replace the stopped container that keeps the workload's last-applied spec.

        Labels cannot change on an existing container, so every new spec gets
        a new record. The record is never started and holds no replica.
        """
        for container in current:
            if _is_record(container):
                container.remove(force=True)
        return self.client.containers.create(
            spec.image,
            name=f"{spec.namespace}-{spec.name}-record",
            labels={**_labels(spec), LABEL_ROLE: ROLE_RECORD},
            network_mode="none",
        )

    def _run(self, spec: WorkloadSpec) -> Container:
        network_name = self.network_name(spec.namespace)
        container_name = f"{spec.namespace}-{spec.name}-{secrets.token_hex(3)}"
        console.print(f"   [dim]Provisioning {container_name} from {spec.image}...[/dim]")

        container = self.client.containers.create(
            spec.image,
            name=container_name,
            environment=spec.env,
            labels={**_labels(spec), LABEL_ROLE: ROLE_REPLICA},
            network=network_name,
            # Other tiers resolve <name>.<namespace> through these aliases.
            networking_config={
                network_name: self.client.api.create_endpoint_config(aliases=[spec.host, spec.name])
            },
            restart_policy={"Name": "unless-stopped"},
        )
        container.start()
        return container


def _labels(spec: WorkloadSpec) -> dict[str, str]:
    applied = {
        "image": spec.image,
        "ports": [p.model_dump() for p in spec.ports],
        "env": spec.env,
        "depends_on": spec.depends_on,
        "address": spec.address,
    }
    return {
        LABEL_MANAGED: "true",
        LABEL_NAMESPACE: spec.namespace,
        LABEL_WORKLOAD: spec.name,
        LABEL_LAST_APPLIED: json.dumps(applied, sort_keys=True),
    }


def _is_record(container: Container) -> bool:
    return container.labels.get(LABEL_ROLE) == ROLE_RECORD


def _replicas(containers: list[Container]) -> list[Container]:
    return [c for c in containers if not _is_record(c)]


def _is_ready(container: Container) -> bool:
    if container.status != "running":
        return False
    health = container.attrs.get("State", {}).get("Health")
    return health is None or health.get("Status") == "healthy"
