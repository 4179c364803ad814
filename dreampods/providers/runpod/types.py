"""RunPod API payload types.

TypedDicts for API requests and responses - no conversion needed at the
client layer; ``PodRecord.from_response`` turns them into value objects.
"""

from __future__ import annotations

from typing import NotRequired, TypedDict

# =============================================================================
# Response Types
# =============================================================================


class MachineInfo(TypedDict):
    """Machine/host info from pod response."""

    podHostId: NotRequired[str]
    dataCenterId: NotRequired[str]
    gpuDisplayName: NotRequired[str]
    gpuTypeId: NotRequired[str]
    gpuType: NotRequired[dict[str, str]]


class RuntimePort(TypedDict):
    ip: str
    isIpPublic: bool
    privatePort: int
    publicPort: int


class RuntimeGpu(TypedDict):
    id: str
    gpuUtilPercent: NotRequired[float]
    memoryUtilPercent: NotRequired[float]


class PodRuntime(TypedDict):
    uptimeInSeconds: int
    ports: NotRequired[list[RuntimePort] | None]
    gpus: NotRequired[list[RuntimeGpu] | None]


class PodResponse(TypedDict):
    """Pod from the REST API, or the GraphQL ``pod`` query."""

    id: str
    name: NotRequired[str]
    desiredStatus: str  # RUNNING, EXITED, TERMINATED
    lastStatusChange: NotRequired[str]
    publicIp: NotRequired[str | None]
    costPerHr: NotRequired[float]
    adjustedCostPerHr: NotRequired[float]
    machine: NotRequired[MachineInfo]
    machineId: NotRequired[str]
    gpuCount: NotRequired[int]
    portMappings: NotRequired[dict[str, int] | None]  # {"8188": 8188}
    imageName: NotRequired[str]
    runtime: NotRequired[PodRuntime | None]


class BillingRecord(TypedDict):
    """One bucket from GET /billing/pods grouped by pod."""

    podId: NotRequired[str]
    amount: NotRequired[float]
    timeBilledMs: NotRequired[int]
    time: NotRequired[str]


# =============================================================================
# Request Types
# =============================================================================


class PodCreateParams(TypedDict, total=False):
    """Parameters for creating a pod via REST API."""

    name: str
    imageName: str
    cloudType: str  # SECURE, COMMUNITY
    computeType: str  # GPU, CPU
    gpuTypeIds: list[str]
    gpuTypePriority: str  # custom = honour list order
    gpuCount: int
    containerDiskInGb: int
    volumeInGb: int
    volumeMountPath: str
    ports: list[str]
    env: dict[str, str]
    dataCenterIds: list[str]
    dataCenterPriority: str


class PodUpdateParams(TypedDict, total=False):
    """PATCH /pods/{id} - triggers a reset."""

    imageName: str
    env: dict[str, str]
    containerDiskInGb: int
    volumeInGb: int
    ports: list[str]


class BillingFilter(TypedDict, total=False):
    podId: str
    bucketSize: str  # hour, day, week, month, year
    startTime: str  # ISO-8601
    endTime: str  # ISO-8601
