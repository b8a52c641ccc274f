"""Control-plane entities and the tolerant catalog deserializer."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from spotcycle.exceptions import ValidationError

# Regions that only exist on second-generation hardware when the catalog
# does not say so explicitly.
GEN2_REGIONS = frozenset({"us-west-sjc-1"})

# Field aliases, most authoritative first.
CODE_FIELDS = ("code", "name", "id")
VCPU_FIELDS = ("vcpu", "vCPU", "vcpus", "cpu")
MEMORY_FIELDS = ("memoryGB", "memory_gb", "memory")
PRICE_FIELDS = ("price", "price_per_hour", "price_hour")
GPU_FIELDS = ("gpu_count", "gpus", "gpu_info", "accelerators", "gpu")

# Leading number of a unit-suffixed value such as "16GB".
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?")


class LifecycleState(str, Enum):
    ABSENT = "absent"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    PAUSING = "pausing"
    PAUSED = "paused"
    RESUMING = "resuming"
    FAILED = "failed"


@dataclass(frozen=True)
class Region:
    code: str
    generation: str = "gen1"

    @classmethod
    def from_api(cls, item: dict[str, Any] | str) -> Region:
        if isinstance(item, str):
            code = item
            generation = None
        else:
            code = _first(item, ("code", "name"))
            generation = item.get("generation")
        if not code:
            raise ValidationError(f"Region entry has no code: {item!r}")
        if generation:
            generation = str(generation).lower()
        else:
            generation = "gen2" if code in GEN2_REGIONS else "gen1"
        return cls(code=str(code), generation=generation)


@dataclass(frozen=True)
class ServerClass:
    """A named instance type with its current per-hour price.

    ``score`` is derived by the ranker and never read back from the API.
    """

    code: str
    vcpu: float
    memory_gb: float
    price_per_hour: float
    gpu_count: int = 0
    score: float | None = None

    @property
    def has_gpu(self) -> bool:
        return self.gpu_count > 0

    @classmethod
    def from_catalog(cls, item: dict[str, Any]) -> ServerClass:
        """Build a server class from one catalog entry.

        Each field is looked up through a prioritized alias list; a required
        field with no usable alias raises :class:`ValidationError` naming the
        field and the candidate instead of defaulting to zero.
        """
        if not isinstance(item, dict):
            raise ValidationError(f"Server class entry is not an object: {item!r}")
        code = _first(item, CODE_FIELDS)
        if not code:
            raise ValidationError(
                f"Server class entry is missing 'code' (tried {', '.join(CODE_FIELDS)}): {item!r}"
            )
        return cls(
            code=str(code),
            vcpu=_required_number(item, VCPU_FIELDS, "vcpu", code),
            memory_gb=_required_number(item, MEMORY_FIELDS, "memoryGB", code),
            price_per_hour=_required_number(item, PRICE_FIELDS, "price", code),
            gpu_count=extract_gpu_count(_first(item, GPU_FIELDS)),
        )


@dataclass(frozen=True)
class NodePool:
    id: str
    cloudspace_id: str
    server_class: str
    bid_price: float | None = None
    desired_count: int = 0
    observed_count: int | None = None

    @classmethod
    def from_api(cls, item: dict[str, Any], cloudspace_id: str) -> NodePool:
        bid = _first(item, ("bidPrice", "bid_price", "bid"))
        observed = _first(item, ("observed", "observedCount", "observed_count", "count"))
        return cls(
            id=str(_first(item, ("id", "name")) or ""),
            cloudspace_id=str(item.get("cloudspace_id") or cloudspace_id),
            server_class=str(_first(item, ("serverClass", "server_class")) or ""),
            bid_price=_parse_number(bid) if bid is not None else None,
            desired_count=int(_parse_number(_first(item, ("desired", "desiredCount", "desired_count"))) or 0),
            observed_count=int(_parse_number(observed)) if observed is not None else None,
        )


@dataclass(frozen=True)
class Cloudspace:
    id: str
    name: str
    region: str
    generation: str = "gen1"
    node_pools: tuple[NodePool, ...] = ()
    organization: str | None = None

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> Cloudspace:
        cs_id = _first(item, ("id", "cloudspace_id", "name"))
        if not cs_id:
            raise ValidationError(f"Cloudspace entry has no id: {item!r}")
        cs_id = str(cs_id)
        region = str(item.get("region") or "")
        generation = item.get("generation")
        if generation:
            generation = str(generation).lower()
        else:
            generation = "gen2" if region in GEN2_REGIONS else "gen1"
        pools = tuple(
            NodePool.from_api(p, cs_id)
            for p in (item.get("nodePools") or item.get("node_pools") or [])
            if isinstance(p, dict)
        )
        return cls(
            id=cs_id,
            name=str(item.get("name") or cs_id),
            region=region,
            generation=generation,
            node_pools=pools,
            organization=_first(item, ("organization", "namespace")),
        )

    def describe(self) -> str:
        return f"{self.name} (ID: {self.id}) - Region: {self.region} - Node pools: {len(self.node_pools)}"


@dataclass(frozen=True)
class MarketSample:
    region: str
    server_class: str
    price: float
    timestamp: float


@dataclass
class AccessEndpoint:
    """Where the workload can be reached once pods are Ready."""

    address: str | None
    namespace: str
    service: str
    local_port: int = 8080

    @property
    def url(self) -> str | None:
        return f"http://{self.address}" if self.address else None

    @property
    def instructions(self) -> str:
        if self.address:
            return f"Access the workload at {self.url}"
        return (
            f"No external address assigned. Run: kubectl port-forward "
            f"svc/{self.service} -n {self.namespace} {self.local_port}:80 "
            f"and open http://localhost:{self.local_port}"
        )


@dataclass
class LifecycleReport:
    operation: str
    state: LifecycleState
    region: str | None = None
    cloudspace_id: str | None = None
    server_class: str | None = None
    bid_price: float | None = None
    node_count: int | None = None
    endpoint: AccessEndpoint | None = None
    dry_run: bool = False
    planned: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "state": self.state.value,
            "region": self.region,
            "cloudspace_id": self.cloudspace_id,
            "server_class": self.server_class,
            "bid_price": self.bid_price,
            "node_count": self.node_count,
            "endpoint": self.endpoint.url if self.endpoint else None,
            "instructions": self.endpoint.instructions if self.endpoint else None,
            "dry_run": self.dry_run,
            "planned": list(self.planned),
        }


def extract_gpu_count(value: Any) -> int:
    """GPU count from a number, a string like ``"2x NVIDIA A100"`` or nothing."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, (list, tuple)):
        return len(value)
    text = str(value).strip()
    if not text or text == "null":
        return 0
    match = re.search(r"\d+", text)
    return int(match.group()) if match else 0


def _first(item: dict[str, Any], names: tuple[str, ...]) -> Any:
    for name in names:
        value = item.get(name)
        if value is not None and value != "":
            return value
    return None


def _parse_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    match = _NUMBER_RE.search(text)
    return float(match.group()) if match else None


def _required_number(item: dict[str, Any], names: tuple[str, ...], label: str, code: str) -> float:
    raw = _first(item, names)
    number = _parse_number(raw)
    if number is None:
        raise ValidationError(
            f"Server class '{code}' is missing required field '{label}' "
            f"(tried {', '.join(names)})"
        )
    if not math.isfinite(number) or number < 0:
        raise ValidationError(
            f"Server class '{code}' has invalid '{label}': {raw!r} (must be a non-negative number)"
        )
    return number


def extract_error_message(body: Any) -> str:
    """Human message from an error body, trying the known fields in order."""
    if isinstance(body, dict):
        message = body.get("message")
        if message:
            return str(message)
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict) and errors[0].get("message"):
            return str(errors[0]["message"])
    elif isinstance(body, str) and body.strip():
        return body.strip()[:200]
    return "unknown"
