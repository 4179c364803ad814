"""Orchestrator settings.

Read once at process start from an optional TOML file and the environment
(environment wins), then treated as immutable.

    # dreampods.toml
    [dreampods]
    cloud_type = "COMMUNITY"
    orchestration_gpu_types = ["NVIDIA RTX A4000", "NVIDIA RTX A5000"]
    health_timeout = 240
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from .errors import ConfigurationError

PROJECT_CONFIG_NAME = "dreampods.toml"
GLOBAL_CONFIG_PATH = Path.home() / ".dreampods" / "config.toml"
RUNPOD_CLI_CONFIG_PATH = Path.home() / ".runpod" / "config.toml"

type RawConfig = dict[str, Any]


@dataclass(frozen=True, slots=True)
class Settings:
    """Immutable orchestrator configuration.

    Args:
        api_key: RunPod API key.
        cloud_type: RunPod cloud (SECURE or COMMUNITY).
        generation_pod_id: Fallback pod id when discovery finds nothing.
        orchestration_pod_id: Fallback pod id when discovery finds nothing.
        generation_pod_name: Name prefix used to discover the generation pod.
        orchestration_pod_name: Name prefix used to discover the orchestration pod.
        generation_image: Container image for the generation pod.
        orchestration_image: Container image for the orchestration pod.
        generation_gpu_types: Ordered GPU preference list.
        orchestration_gpu_types: Ordered GPU preference list.
        data_center_ids: Ordered placement preference; empty lets RunPod pick.
        generation_cost_per_hour: Estimated hourly cost, for status reporting.
        orchestration_cost_per_hour: Estimated hourly cost, for status reporting.
        generation_auth_user: Basic-auth user the generation pod serves behind.
        generation_auth_pass: Basic-auth password; generated when missing in direct mode.
        consumer_auth_token: Token shared between pods and the consumer.
        bootstrap_token: Enables bootstrap mode: pods fetch secrets from the admin panel.
        vps_base_url: Public base URL of the consumer.
        vps_websocket_url: Websocket the orchestration pod streams frames to.
        vps_register_url: Where the generation pod self-registers.
        consumer_url: Internal URL of the consumer API.
        admin_url: Public URL of this admin panel, for bootstrap mode.
        orchestration_log_level: LOG_LEVEL injected into the orchestration pod.
    """

    api_key: str = ""
    cloud_type: str = "SECURE"

    generation_pod_id: str = ""
    orchestration_pod_id: str = ""
    generation_pod_name: str = "dreamgen-comfyui"
    orchestration_pod_name: str = "dreamgen-backend"
    generation_image: str = "luxiasl/dreamgen-comfyui:latest"
    orchestration_image: str = "luxiasl/dreamgen-backend:latest"
    generation_gpu_types: tuple[str, ...] = ("NVIDIA GeForce RTX 4090",)
    orchestration_gpu_types: tuple[str, ...] = (
        "NVIDIA RTX A4000",
        "NVIDIA RTX A5000",
        "NVIDIA GeForce RTX 3070",
    )
    data_center_ids: tuple[str, ...] = ()
    generation_cost_per_hour: float = 0.44
    orchestration_cost_per_hour: float = 0.20

    generation_auth_user: str = "dreamgen"
    generation_auth_pass: str = ""
    consumer_auth_token: str = ""
    bootstrap_token: str = ""

    vps_base_url: str = "https://aetherawi.red"
    vps_websocket_url: str = "wss://aetherawi.red/ws/gpu"
    vps_register_url: str = ""
    consumer_url: str = "http://localhost:8000"
    admin_url: str = "https://admin.aetherawi.red"
    orchestration_log_level: str = "INFO"

    request_timeout: float = 30.0
    pod_status_ttl: float = 10.0
    pod_list_ttl: float = 30.0
    consumer_status_ttl: float = 5.0
    consumer_health_ttl: float = 10.0

    recreate_grace: float = 3.0
    generation_port: int = 8188
    endpoint_template: str = "https://{pod_id}-{port}.proxy.runpod.net"
    health_path: str = "/system_stats"
    health_timeout: float = 180.0
    health_interval: float = 5.0
    verify_timeout: float = 120.0

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    @property
    def register_url(self) -> str:
        return self.vps_register_url or f"{self.vps_base_url}/api/dreams/comfyui/register"

    def require_api_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError(
                "RunPod API key not found. Set RUNPOD_API_KEY, add api_key to "
                f"{PROJECT_CONFIG_NAME}, or run `runpod config`."
            )
        return self.api_key

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        config_file: Path | None = None,
        project_dir: Path | None = None,
    ) -> Settings:
        """Layer environment variables over the TOML config file(s)."""
        env = os.environ if environ is None else environ
        raw = load_config_file(config_file=config_file, project_dir=project_dir)

        for name, (var, parse) in _ENV_FIELDS.items():
            value = env.get(var)
            if value is None or value == "":
                continue
            try:
                raw[name] = parse(value)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {var}: {value!r}") from e

        if "api_key" not in raw and (key := _read_runpod_cli_key()):
            raw["api_key"] = key

        return cls._build(raw)

    @classmethod
    def _build(cls, raw: RawConfig) -> Settings:
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(raw) - set(known))
        if unknown:
            raise ConfigurationError(f"Unknown setting(s): {', '.join(unknown)}")

        kwargs: dict[str, Any] = {}
        for name, value in raw.items():
            match known[name].default:
                case tuple():
                    kwargs[name] = tuple(value) if not isinstance(value, str) else _csv(value)
                case float():
                    kwargs[name] = _number(name, value, float)
                case int():
                    kwargs[name] = _number(name, value, int)
                case _:
                    kwargs[name] = str(value)
        return cls(**kwargs)


def _csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _number(name: str, value: Any, kind: type[int] | type[float]) -> int | float:
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Setting {name} must be numeric, got {value!r}") from e


_ENV_FIELDS: dict[str, tuple[str, Callable[[str], Any]]] = {
    "api_key": ("RUNPOD_API_KEY", str),
    "cloud_type": ("RUNPOD_CLOUD_TYPE", str.upper),
    "generation_pod_id": ("RUNPOD_COMFYUI_POD_ID", str),
    "orchestration_pod_id": ("RUNPOD_DREAMGEN_POD_ID", str),
    "generation_pod_name": ("COMFYUI_POD_NAME", str),
    "orchestration_pod_name": ("DREAMGEN_POD_NAME", str),
    "generation_image": ("COMFYUI_IMAGE", str),
    "orchestration_image": ("DREAMGEN_IMAGE", str),
    "generation_gpu_types": ("COMFYUI_GPU_TYPES", _csv),
    "orchestration_gpu_types": ("DREAMGEN_GPU_TYPES", _csv),
    "data_center_ids": ("RUNPOD_DATA_CENTER_IDS", _csv),
    "generation_cost_per_hour": ("COMFYUI_COST_PER_HOUR", float),
    "orchestration_cost_per_hour": ("DREAMGEN_COST_PER_HOUR", float),
    "generation_auth_user": ("COMFYUI_AUTH_USER", str),
    "generation_auth_pass": ("COMFYUI_AUTH_PASS", str),
    "consumer_auth_token": ("DREAM_GEN_AUTH_TOKEN", str),
    "bootstrap_token": ("POD_BOOTSTRAP_TOKEN", str),
    "vps_base_url": ("VPS_BASE_URL", str),
    "vps_websocket_url": ("VPS_WEBSOCKET_URL", str),
    "vps_register_url": ("VPS_REGISTER_URL", str),
    "consumer_url": ("AETHERA_API_URL", str),
    "admin_url": ("ADMIN_EXTERNAL_URL", str),
    "orchestration_log_level": ("DREAMGEN_LOG_LEVEL", str),
    "health_timeout": ("DREAMPODS_HEALTH_TIMEOUT", float),
}


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Malformed config file {path}: {e}") from e


def load_config_file(
    *,
    config_file: Path | None = None,
    project_dir: Path | None = None,
) -> RawConfig:
    """Return the ``[dreampods]`` table, project file over global file."""
    if config_file is not None:
        return dict(_read_toml(config_file).get("dreampods", {}))

    global_cfg = _read_toml(GLOBAL_CONFIG_PATH).get("dreampods", {})
    project_cfg = _read_toml((project_dir or Path.cwd()) / PROJECT_CONFIG_NAME).get("dreampods", {})
    return {**global_cfg, **project_cfg}


def _read_runpod_cli_key() -> str | None:
    """API key written by ``runpod config``, if any."""
    try:
        config = _read_toml(RUNPOD_CLI_CONFIG_PATH)
    except ConfigurationError:
        return None
    return config.get("default", {}).get("api_key")
