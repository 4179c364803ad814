"""Pod templates: the desired shape of each role's pod.

Built once from Settings when the orchestrator starts and never mutated.
``build_create_params`` renders a template plus secrets into the RunPod
create payload.

Secrets reach a pod in one of two ways:

* bootstrap mode - the pod gets ``ADMIN_PANEL_URL`` and ``POD_BOOTSTRAP_TOKEN``
  and fetches the full bundle from the admin panel on boot
  (see ``TemplateRegistry.pod_secrets``). Fallback values are still injected
  in case the fetch fails.
* direct mode - every secret is injected as an environment variable.
"""

from __future__ import annotations

import secrets
import string
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from loguru import logger

from .config import Settings
from .errors import UnknownRoleError
from .models import PodRole
from .providers.runpod.types import PodCreateParams

_SECRET_MARKERS = ("pass", "token", "secret")

# Basic-auth password the generation pod serves behind.
AUTH_PASS_ENV = "COMFYUI_AUTH_PASS"


@dataclass(frozen=True, slots=True)
class PodTemplate:
    role: PodRole
    name: str
    image_name: str
    gpu_type_ids: tuple[str, ...]
    cloud_type: str = "SECURE"
    compute_type: str = "GPU"
    gpu_count: int = 1
    container_disk_gb: int = 50
    volume_gb: int = 20
    volume_mount_path: str = "/workspace"
    ports: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    estimated_cost_per_hour: float = 0.0
    data_center_ids: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class SecretOverrides:
    """Per-call secret values; empty fields fall back to Settings."""

    generation_auth_pass: str = ""
    consumer_auth_token: str = ""
    extra_env: Mapping[str, str] = field(default_factory=dict)


def redact_env(env: Mapping[str, str]) -> dict[str, str]:
    """Mask values whose key looks secret, for logging."""
    return {
        k: ("***" if v else "(not set)") if any(m in k.lower() for m in _SECRET_MARKERS) else v
        for k, v in env.items()
    }


def generate_password(length: int = 24) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


class TemplateRegistry:
    def __init__(self, settings: Settings, templates: Mapping[PodRole, PodTemplate]) -> None:
        self._settings = settings
        self._templates = MappingProxyType(dict(templates))
        self._log = logger.bind(component="templates")

    @classmethod
    def from_settings(cls, settings: Settings) -> TemplateRegistry:
        generation = PodTemplate(
            role=PodRole.GENERATION,
            name=settings.generation_pod_name,
            image_name=settings.generation_image,
            gpu_type_ids=settings.generation_gpu_types,
            cloud_type=settings.cloud_type,
            container_disk_gb=50,
            volume_gb=20,
            ports=(f"{settings.generation_port}/http",),
            env=MappingProxyType({
                "COMFYUI_AUTH_USER": settings.generation_auth_user,
                "VPS_REGISTER_URL": settings.register_url,
                "ADMIN_PANEL_URL": settings.admin_url,
            }),
            estimated_cost_per_hour=settings.generation_cost_per_hour,
            data_center_ids=settings.data_center_ids,
        )
        orchestration = PodTemplate(
            role=PodRole.ORCHESTRATION,
            name=settings.orchestration_pod_name,
            image_name=settings.orchestration_image,
            gpu_type_ids=settings.orchestration_gpu_types,
            cloud_type=settings.cloud_type,
            container_disk_gb=30,
            volume_gb=10,
            env=MappingProxyType({
                "DREAMGEN_MODE": "pod",
                "VPS_WEBSOCKET_URL": settings.vps_websocket_url,
                "VPS_API_URL": settings.vps_base_url,
                "LOG_LEVEL": settings.orchestration_log_level,
                "ADMIN_PANEL_URL": settings.admin_url,
            }),
            estimated_cost_per_hour=settings.orchestration_cost_per_hour,
            data_center_ids=settings.data_center_ids,
        )
        return cls(settings, {PodRole.GENERATION: generation, PodRole.ORCHESTRATION: orchestration})

    def __getitem__(self, role: PodRole | str) -> PodTemplate:
        try:
            return self._templates[PodRole.parse(role)]
        except KeyError:
            raise UnknownRoleError(str(role)) from None

    def __iter__(self):
        return iter(self._templates.values())

    def __len__(self) -> int:
        return len(self._templates)

    def bootstrap_enabled(self, use_bootstrap: bool | None = None) -> bool:
        return use_bootstrap is not False and bool(self._settings.bootstrap_token)

    def render_env(
        self,
        role: PodRole,
        overrides: SecretOverrides | None = None,
        *,
        use_bootstrap: bool | None = None,
    ) -> dict[str, str]:
        template = self[role]
        overrides = overrides or SecretOverrides()
        s = self._settings
        env = dict(template.env)
        token = overrides.consumer_auth_token or s.consumer_auth_token

        if self.bootstrap_enabled(use_bootstrap):
            env["POD_BOOTSTRAP_TOKEN"] = s.bootstrap_token
            password = overrides.generation_auth_pass or s.generation_auth_pass
        else:
            password = overrides.generation_auth_pass or s.generation_auth_pass or generate_password()

        match role:
            case PodRole.GENERATION:
                env[AUTH_PASS_ENV] = password
                env["VPS_AUTH_TOKEN"] = token
            case PodRole.ORCHESTRATION:
                env["DREAM_GEN_AUTH_TOKEN"] = token

        env.update(overrides.extra_env)
        return env

    def build_create_params(
        self,
        role: PodRole,
        overrides: SecretOverrides | None = None,
        *,
        use_bootstrap: bool | None = None,
    ) -> PodCreateParams:
        template = self[role]
        env = self.render_env(role, overrides, use_bootstrap=use_bootstrap)

        params: PodCreateParams = {
            "name": template.name,
            "imageName": template.image_name,
            "cloudType": template.cloud_type,
            "computeType": template.compute_type,
            "gpuTypeIds": list(template.gpu_type_ids),
            "gpuTypePriority": "custom",
            "gpuCount": template.gpu_count,
            "containerDiskInGb": template.container_disk_gb,
            "volumeInGb": template.volume_gb,
            "volumeMountPath": template.volume_mount_path,
            "ports": list(template.ports),
            "env": env,
        }
        if template.data_center_ids:
            params["dataCenterIds"] = list(template.data_center_ids)
            params["dataCenterPriority"] = "custom"

        mode = "bootstrap" if self.bootstrap_enabled(use_bootstrap) else "direct"
        self._log.bind(role=role).info(
            "Rendering {role} pod ({mode} mode): {params}",
            role=role, mode=mode, params={**params, "env": redact_env(env)},
        )
        return params

    # =========================================================================
    # Secrets served to pods in bootstrap mode
    # =========================================================================

    def pod_secrets(self, role: PodRole | str, bootstrap_token: str) -> dict[str, str] | None:
        """Secret bundle for a pod, or None when the token does not match.

        Nothing is served while bootstrap mode is off (no token configured).
        """
        s = self._settings
        if not s.bootstrap_token or not secrets.compare_digest(bootstrap_token, s.bootstrap_token):
            self._log.warning("Invalid bootstrap token for {role} secrets request", role=role)
            return None

        bundle = {
            "vps_auth_token": s.consumer_auth_token,
            "vps_base_url": s.vps_base_url,
            "vps_websocket_url": s.vps_websocket_url,
        }
        match PodRole.parse(role):
            case PodRole.GENERATION:
                bundle["comfyui_auth_user"] = s.generation_auth_user
                bundle["comfyui_auth_pass"] = s.generation_auth_pass
                bundle["vps_register_url"] = s.register_url
            case PodRole.ORCHESTRATION:
                bundle["dream_gen_auth_token"] = s.consumer_auth_token
        return bundle

    def secret_config_status(self) -> dict[str, Any]:
        s = self._settings
        return {
            "has_api_key": bool(s.api_key),
            "has_consumer_auth_token": bool(s.consumer_auth_token),
            "has_generation_auth_pass": bool(s.generation_auth_pass),
            "has_bootstrap_token": bool(s.bootstrap_token),
            "vps_base_url": s.vps_base_url,
            "secrets_configured": bool(s.consumer_auth_token and s.generation_auth_pass),
        }
