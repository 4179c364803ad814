"""dreampods - lifecycle orchestration for the two-pod dream pipeline.

Example:

    from dreampods import DreamOrchestrator, PodRole, Settings

    async with DreamOrchestrator(Settings.from_env()) as dreams:
        result = await dreams.ensure(PodRole.GENERATION)
        report = await dreams.start_pipeline()
        status = await dreams.get_status()
"""

from loguru import logger

from dreampods.config import Settings
from dreampods.errors import (
    CapacityExhaustedError,
    ConfigurationError,
    ConsumerError,
    ConsumerUnreachable,
    DreamPodsError,
    ProviderError,
    ProviderErrorKind,
    UnknownRoleError,
)
from dreampods.ledger import ErrorLedger
from dreampods.models import (
    EnsureAction,
    ErrorRecord,
    LifecycleResult,
    PodRecord,
    PodRole,
    PodStatus,
    SequenceReport,
    SequenceStep,
    StepStatus,
    format_uptime,
)
from dreampods.orchestrator import DreamOrchestrator, PipelineState, PipelineStatus
from dreampods.reconciler import EnsureOptions
from dreampods.sequencer import StartOptions
from dreampods.templates import PodTemplate, SecretOverrides, TemplateRegistry

logger.disable("dreampods")

__version__ = "0.1.0"

__all__ = [
    "CapacityExhaustedError",
    "ConfigurationError",
    "ConsumerError",
    "ConsumerUnreachable",
    "DreamOrchestrator",
    "DreamPodsError",
    "EnsureAction",
    "EnsureOptions",
    "ErrorLedger",
    "ErrorRecord",
    "LifecycleResult",
    "PipelineState",
    "PipelineStatus",
    "PodRecord",
    "PodRole",
    "PodStatus",
    "PodTemplate",
    "ProviderError",
    "ProviderErrorKind",
    "SecretOverrides",
    "SequenceReport",
    "SequenceStep",
    "StartOptions",
    "Settings",
    "StepStatus",
    "TemplateRegistry",
    "UnknownRoleError",
    "format_uptime",
]
