"""RunPod GPU pods.

Environment Variables:
    RUNPOD_API_KEY: API key (required)
"""

from .client import RunPodClient, classify
from .types import BillingFilter, BillingRecord, PodCreateParams, PodResponse, PodUpdateParams

__all__ = [
    "BillingFilter",
    "BillingRecord",
    "PodCreateParams",
    "PodResponse",
    "PodUpdateParams",
    "RunPodClient",
    "classify",
]
