from enum import Enum
from pathlib import Path
from typing import Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as SchemaError

from .errors import TopologyFileError

DNS_LABEL = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"

# Fields compared between desired and observed state; an Update carries a subset of these.
DIFF_FIELDS = ("image", "replicas", "ports", "env")


class PortSpec(BaseModel):
    """A container port. Range and protocol are checked by the validator, not here."""

    model_config = ConfigDict(frozen=True)

    container_port: int
    protocol: str = "TCP"

    @field_validator("protocol")
    @classmethod
    def normalize_protocol(cls, v: str) -> str:
        return v.strip().upper()

    def __str__(self) -> str:
        return f"{self.container_port}/{self.protocol.lower()}"


class LiteralValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["literal"] = "literal"
    value: str


class ServiceRef(BaseModel):
    """Reference to another workload's binding address, rendered through `template`."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["ref"] = "ref"
    workload: str
    template: str = Field("{address}", description="May use {address}, {host} and {port}")


EnvBinding = Union[LiteralValue, ServiceRef]


def _coerce_env_binding(value):
    if isinstance(value, (LiteralValue, ServiceRef)):
        return value
    if isinstance(value, dict):
        if "kind" in value:
            return value
        if "ref" in value:
            data = dict(value)
            data["workload"] = data.pop("ref")
            return {"kind": "ref", **data}
        if "value" in value:
            return {"kind": "literal", **value}
        return value
    if isinstance(value, bool):
        return {"kind": "literal", "value": "true" if value else "false"}
    if isinstance(value, (int, float, str)):
        return {"kind": "literal", "value": str(value)}
    return value


def _coerce_port(value):
    if isinstance(value, int) and not isinstance(value, bool):
        return {"container_port": value}
    if isinstance(value, str):
        port, _, protocol = value.partition("/")
        return {"container_port": port, "protocol": protocol or "TCP"}
    return value


class WorkloadDescriptor(BaseModel):
    """Desired state of one tier."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., pattern=DNS_LABEL, max_length=63, description="Unique within its namespace")
    namespace: str = Field("default", pattern=DNS_LABEL, max_length=63)
    image: str = Field(..., min_length=1, description="registry/repo:tag")
    replicas: int = Field(1, ge=0)
    ports: list[PortSpec] = Field(default_factory=list, description="Ordered; the first one is the binding port")
    env: dict[str, EnvBinding] = Field(default_factory=dict)

    @field_validator("image")
    @classmethod
    def validate_image_tag(cls, v: str) -> str:
        last = v.rsplit("/", 1)[-1]
        if ":" not in last and "@" not in last:
            return f"{v}:latest"
        return v

    @field_validator("ports", mode="before")
    @classmethod
    def coerce_ports(cls, v):
        if isinstance(v, list):
            return [_coerce_port(p) for p in v]
        return v

    @field_validator("env", mode="before")
    @classmethod
    def coerce_env(cls, v):
        if isinstance(v, dict):
            return {str(k): _coerce_env_binding(b) for k, b in v.items()}
        return v

    @property
    def key(self) -> tuple[str, str]:
        return self.namespace, self.name

    @property
    def host(self) -> str:
        return f"{self.name}.{self.namespace}"

    @property
    def dependencies(self) -> tuple[str, ...]:
        return tuple(sorted({b.workload for b in self.env.values() if isinstance(b, ServiceRef)}))


class DesiredTopology(BaseModel):
    """The operator-facing document: a default namespace plus its workloads."""

    namespace: str = Field("default", pattern=DNS_LABEL, max_length=63)
    workloads: list[WorkloadDescriptor] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def apply_default_namespace(cls, data):
        if not isinstance(data, dict):
            return data
        namespace = data.get("namespace") or "default"
        workloads = []
        for w in data.get("workloads") or []:
            if isinstance(w, dict) and not w.get("namespace"):
                w = {**w, "namespace": namespace}
            workloads.append(w)
        return {**data, "namespace": namespace, "workloads": workloads}

    @property
    def namespaces(self) -> list[str]:
        """Every namespace the document manages, including ones with no workloads left."""
        return sorted({self.namespace} | {w.namespace for w in self.workloads})

    @classmethod
    def from_file(cls, path: Path) -> "DesiredTopology":
        """Loads and validates the desired topology from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise TopologyFileError(f"{path} not found")

        try:
            with open(path) as f:
                raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise TopologyFileError(f"{path}: invalid YAML: {e}") from e

        try:
            return cls.model_validate(raw or {})
        except SchemaError as e:
            raise TopologyFileError(f"{path}: {e}") from e


class WorkloadSpec(BaseModel):
    """A descriptor with every binding resolved; what the platform is asked to run."""

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str
    image: str
    replicas: int
    ports: list[PortSpec]
    env: dict[str, str]
    address: str
    depends_on: list[str] = Field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return self.namespace, self.name

    @property
    def host(self) -> str:
        return f"{self.name}.{self.namespace}"


class ObservedWorkload(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str
    image: str
    replicas: int = Field(..., ge=0, description="Instances the platform currently holds")
    ready_replicas: int = Field(0, ge=0, description="Instances reported healthy")
    ports: list[PortSpec] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return self.namespace, self.name

    @property
    def host(self) -> str:
        return f"{self.name}.{self.namespace}"


class ObservedState(BaseModel):
    """Read-only snapshot of what the platform runs."""

    model_config = ConfigDict(frozen=True)

    workloads: list[ObservedWorkload] = Field(default_factory=list)

    def get(self, namespace: str, name: str) -> Optional[ObservedWorkload]:
        for w in self.workloads:
            if w.namespace == namespace and w.name == name:
                return w
        return None

    def in_namespace(self, namespace: str) -> list[ObservedWorkload]:
        return [w for w in self.workloads if w.namespace == namespace]


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Operation(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: OperationKind
    namespace: str
    name: str
    changed_fields: tuple[str, ...] = ()
    spec: Optional[WorkloadSpec] = None

    @property
    def key(self) -> tuple[str, str]:
        return self.namespace, self.name

    def describe(self) -> str:
        target = f"{self.namespace}/{self.name}"
        if self.kind is OperationKind.CREATE:
            return f"create {target} image={self.spec.image} replicas={self.spec.replicas} address={self.spec.address}"
        if self.kind is OperationKind.UPDATE:
            return f"update {target} ({', '.join(self.changed_fields)})"
        return f"delete {target}"


class WorkloadState(str, Enum):
    ABSENT = "Absent"
    PENDING = "Pending"
    APPLYING = "Applying"
    CONVERGED = "Converged"
    DEGRADED = "Degraded"


class ScrapeTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    address: str
    port: int
    labels: dict[str, str]
    metrics_path: str = "/metrics"

    @property
    def endpoint(self) -> str:
        return f"{self.address}:{self.port}"
