"""Value types shared by the reconciler, sequencer and orchestrator."""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from .errors import UnknownRoleError

# =============================================================================
# Roles & status
# =============================================================================


class PodRole(StrEnum):
    """Which half of the dream pipeline a pod plays."""

    GENERATION = "generation"
    ORCHESTRATION = "orchestration"

    @property
    def label(self) -> str:
        return "Generation" if self is PodRole.GENERATION else "Orchestration"

    @classmethod
    def parse(cls, value: str | PodRole) -> PodRole:
        if isinstance(value, PodRole):
            return value
        aliases = {"comfyui": cls.GENERATION, "dreamgen": cls.ORCHESTRATION}
        normalized = value.strip().lower()
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError:
            raise UnknownRoleError(value) from None


type ErrorSubject = PodRole | Literal["general"]

GENERAL: Literal["general"] = "general"


class PodStatus(StrEnum):
    RUNNING = "RUNNING"
    EXITED = "EXITED"
    STOPPED = "STOPPED"
    CREATED = "CREATED"
    TERMINATED = "TERMINATED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: str | None) -> PodStatus:
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.upper())
        except ValueError:
            return cls.UNKNOWN


# =============================================================================
# Pod snapshot
# =============================================================================


@dataclass(frozen=True, slots=True)
class GpuInfo:
    display_name: str = ""
    type_id: str = ""
    count: int = 0


@dataclass(frozen=True, slots=True)
class PodRecord:
    """Observed state of a remote pod. Replaced wholesale on every refresh."""

    id: str
    name: str = ""
    status: PodStatus = PodStatus.UNKNOWN
    uptime_seconds: int = 0
    gpu: GpuInfo = field(default_factory=GpuInfo)
    public_ip: str | None = None
    port_mappings: Mapping[str, int] = field(default_factory=dict)
    cost_per_hr: float = 0.0
    image_name: str = ""
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def is_running(self) -> bool:
        return self.status is PodStatus.RUNNING

    @classmethod
    def from_response(cls, data: Mapping[str, Any]) -> PodRecord:
        """Build from a REST pod object or the GraphQL ``pod`` query result."""
        machine = data.get("machine") or {}
        runtime = data.get("runtime") or {}
        gpu = data.get("gpu") or {}
        gpu_type = machine.get("gpuType") or {}

        display = (
            machine.get("gpuDisplayName")
            or gpu_type.get("displayName")
            or gpu.get("displayName")
            or ""
        )
        type_id = machine.get("gpuTypeId") or gpu.get("id") or gpu.get("gpuType") or ""
        count = data.get("gpuCount") or gpu.get("count") or len(runtime.get("gpus") or ())

        ports: dict[str, int] = {}
        for port in runtime.get("ports") or ():
            if port.get("isIpPublic") and port.get("publicPort"):
                ports[str(port.get("privatePort"))] = int(port["publicPort"])
        ports.update({str(k): int(v) for k, v in (data.get("portMappings") or {}).items()})

        return cls(
            id=data["id"],
            name=data.get("name") or "",
            status=PodStatus.parse(data.get("desiredStatus")),
            uptime_seconds=int(runtime.get("uptimeInSeconds") or 0),
            gpu=GpuInfo(display_name=display, type_id=type_id, count=int(count or 0)),
            public_ip=data.get("publicIp"),
            port_mappings=ports,
            cost_per_hr=float(data.get("adjustedCostPerHr") or data.get("costPerHr") or 0.0),
            image_name=data.get("imageName") or "",
            raw=dict(data),
        )

    def with_status(self, status: PodStatus) -> PodRecord:
        return replace(self, status=status)


# =============================================================================
# Lifecycle outcome
# =============================================================================


class EnsureAction(StrEnum):
    ALREADY_RUNNING = "already_running"
    STARTED = "started"
    CREATED = "created"
    RECREATED = "recreated"
    VERIFIED = "verified"
    CREATED_VERIFIED = "created_verified"
    RECREATED_VERIFIED = "recreated_verified"

    def verified(self) -> EnsureAction:
        match self:
            case EnsureAction.CREATED:
                return EnsureAction.CREATED_VERIFIED
            case EnsureAction.RECREATED:
                return EnsureAction.RECREATED_VERIFIED
            case _:
                return EnsureAction.VERIFIED


@dataclass(slots=True)
class LifecycleResult:
    """Outcome of one ensure() call."""

    role: PodRole
    success: bool = False
    pod: PodRecord | None = None
    action: EnsureAction | None = None
    attempts: int = 0
    warnings: list[str] = field(default_factory=list)
    # Basic-auth password injected into a pod created by this call.
    auth_pass: str | None = field(default=None, repr=False)

    @property
    def pod_id(self) -> str | None:
        return self.pod.id if self.pod else None


# =============================================================================
# Sequencer report
# =============================================================================


class StepStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    OK = "ok"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass(slots=True)
class SequenceStep:
    name: str
    status: StepStatus = StepStatus.RUNNING
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SequenceReport:
    """Outcome of a start_pipeline() or stop_pipeline() run."""

    success: bool = True
    steps: list[SequenceStep] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    pods: dict[PodRole, LifecycleResult] = field(default_factory=dict)
    message: str = ""
    error: str | None = None

    def begin(self, name: str, **detail: Any) -> SequenceStep:
        step = SequenceStep(name=name, detail=dict(detail))
        self.steps.append(step)
        return step

    def step(self, name: str) -> SequenceStep | None:
        return next((s for s in self.steps if s.name == name), None)

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self.steps]


# =============================================================================
# Error ledger entry
# =============================================================================


@dataclass(frozen=True, slots=True)
class ErrorRecord:
    message: str
    detail: Mapping[str, Any]
    timestamp: float
    timestamp_iso: str

    @classmethod
    def now(cls, message: str, detail: Mapping[str, Any] | None = None) -> ErrorRecord:
        ts = time.time()
        return cls(
            message=message,
            detail=dict(detail or {}),
            timestamp=ts,
            timestamp_iso=datetime.fromtimestamp(ts, UTC).isoformat(),
        )


def format_uptime(seconds: float | None) -> str:
    """Render seconds as ``1h 2m 3s``; zero components are dropped."""
    if not seconds or seconds < 1:
        return "0s"
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)
