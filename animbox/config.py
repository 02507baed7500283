"""Runtime configuration for the sandbox layer.

Settings come from three layers, later ones winning: field defaults, an
optional YAML file (``SANDBOX_CONFIG``) whose keys mirror the field names, and
environment variables. Fields without a dedicated variable can still be set
through ``ANIMBOX_<FIELD>``.
"""

from __future__ import annotations

from contextvars import ContextVar
import os
from pathlib import Path
from typing import Any, Optional

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    SettingsError,
)
import yaml

PROVIDERS = ("docker", "e2b")
IMAGE_ENV_PREFIX = "SANDBOX_IMAGE_"
TEMPLATE_ENV_PREFIX = "E2B_TEMPLATE_ID_"

_config_path: ContextVar[Optional[Path]] = ContextVar("animbox_config_path", default=None)


class ConfigError(ValueError):
    pass


def _default_images() -> dict[str, str]:
    return {
        "theatre": "animbox/theatre-sandbox",
        "remotion": "animbox/remotion-sandbox",
    }


def _default_command_env() -> dict[str, str]:
    return {
        "REMOTION_CHROME_EXECUTABLE": "/usr/bin/chromium",
        "PUPPETEER_EXECUTABLE_PATH": "/usr/bin/chromium",
    }


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


class YamlConfigSource(PydanticBaseSettingsSource):
    """Values from the YAML file named by ``load_settings`` or ``SANDBOX_CONFIG``."""

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        path = _config_path.get()
        if path is None:
            raw = os.environ.get("SANDBOX_CONFIG", "").strip()
            if not raw:
                return {}
            path = Path(raw)
        data = _load_yaml(path)
        unknown = sorted(set(data) - set(self.settings_cls.model_fields))
        if unknown:
            raise ConfigError(f"Unknown config key(s) in {path}: {', '.join(map(str, unknown))}")
        return data


class TemplateEnvSource(PydanticBaseSettingsSource):
    """Per-template variables: ``SANDBOX_IMAGE_<T>`` and ``E2B_TEMPLATE_ID[_<T>]``.

    The bare ``E2B_TEMPLATE_ID`` names the remotion template; a specific
    ``E2B_TEMPLATE_ID_REMOTION`` wins over it.
    """

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        images: dict[str, str] = {}
        templates: dict[str, str] = {}
        generic = os.environ.get("E2B_TEMPLATE_ID", "").strip()
        if generic:
            templates["remotion"] = generic
        for name, value in os.environ.items():
            value = value.strip()
            if not value:
                continue
            if name.startswith(IMAGE_ENV_PREFIX):
                images[name[len(IMAGE_ENV_PREFIX):].lower()] = value
            elif name.startswith(TEMPLATE_ENV_PREFIX):
                templates[name[len(TEMPLATE_ENV_PREFIX):].lower()] = value

        values: dict[str, Any] = {}
        if images:
            values["docker_images"] = images
        if templates:
            values["e2b_templates"] = templates
        return values


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ANIMBOX_",
        env_ignore_empty=True,
        case_sensitive=False,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
        frozen=True,
    )

    provider: str = Field(default="docker", validation_alias="SANDBOX_PROVIDER")
    default_template: str = Field(default="remotion", validation_alias="SANDBOX_DEFAULT_TEMPLATE")

    docker_bin: str = Field(default="docker", validation_alias="SANDBOX_DOCKER_BIN")
    docker_images: dict[str, str] = Field(default_factory=_default_images)
    container_prefix: str = "animbox-sandbox-"
    network_name: str = Field(default="animbox-sandbox-net", validation_alias="SANDBOX_NETWORK")
    workdir: str = "/app"
    dev_server_port: int = 5173
    memory_limit: str = Field(default="2g", validation_alias="SANDBOX_MEMORY")
    memory_swap_limit: str = Field(default="2g", validation_alias="SANDBOX_MEMORY_SWAP")
    cpus: str = Field(default="2", validation_alias="SANDBOX_CPUS")
    port_range_start: int = Field(
        default=15173, ge=1, le=65535, validation_alias="SANDBOX_PORT_RANGE_START"
    )
    port_range_end: int = Field(
        default=15272, ge=1, le=65535, validation_alias="SANDBOX_PORT_RANGE_END"
    )
    health_probe: str = Field(default="bun --version", validation_alias="SANDBOX_HEALTH_PROBE")

    e2b_templates: dict[str, str] = Field(default_factory=dict)
    e2b_api_key: Optional[str] = Field(default=None, validation_alias="E2B_API_KEY")
    e2b_sandbox_lifetime_sec: int = Field(
        default=3600, gt=0, validation_alias="E2B_SANDBOX_LIFETIME_SEC"
    )

    path_prefix: tuple[str, ...] = ("/root/.bun/bin", "/home/user/.bun/bin")
    command_env: dict[str, str] = Field(default_factory=_default_command_env)
    command_timeout_sec: float = Field(
        default=30.0, gt=0, validation_alias="SANDBOX_COMMAND_TIMEOUT_SEC"
    )
    command_timeout_max_sec: float = Field(
        default=300.0, gt=0, validation_alias="SANDBOX_COMMAND_TIMEOUT_MAX_SEC"
    )
    media_timeout_sec: float = Field(default=60.0, gt=0)
    snapshot_timeout_sec: float = Field(default=30.0, gt=0)

    idle_timeout_sec: float = Field(default=1800.0, gt=0, validation_alias="SANDBOX_IDLE_TIMEOUT_SEC")
    sweep_interval_sec: float = Field(default=300.0, gt=0, validation_alias="SANDBOX_SWEEP_INTERVAL_SEC")
    reaper_enabled: bool = Field(default=True, validation_alias="SANDBOX_REAPER_ENABLED")

    snapshot_path: str = Field(default="./data/snapshots", validation_alias="SNAPSHOT_PATH")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: Optional[str] = Field(default=None, validation_alias="LOG_FILE")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            TemplateEnvSource(settings_cls),
            env_settings,
            YamlConfigSource(settings_cls),
        )

    @field_validator("provider", mode="before")
    @classmethod
    def normalise_provider(cls, v):
        name = str(v).strip().lower()
        if name not in PROVIDERS:
            raise ValueError(
                f"Unknown sandbox provider {v!r}; expected one of {', '.join(PROVIDERS)}"
            )
        return name

    @field_validator("docker_images", mode="before")
    @classmethod
    def merge_default_images(cls, v):
        """Configured images extend the defaults rather than replacing them."""
        if isinstance(v, dict):
            return {**_default_images(), **{str(k).lower(): val for k, val in v.items()}}
        return v

    @field_validator("command_env", mode="before")
    @classmethod
    def merge_default_command_env(cls, v):
        if isinstance(v, dict):
            return {**_default_command_env(), **v}
        return v

    @model_validator(mode="after")
    def check_ranges(self) -> "Settings":
        if self.port_range_start > self.port_range_end:
            raise ValueError(
                f"Port range start {self.port_range_start} exceeds end {self.port_range_end}"
            )
        if self.command_timeout_sec > self.command_timeout_max_sec:
            raise ValueError("Default command timeout exceeds the ceiling")
        return self


def load_settings(config_path: str | os.PathLike[str] | None = None) -> Settings:
    token = _config_path.set(Path(config_path) if config_path else None)
    try:
        return Settings()
    except (ValidationError, SettingsError) as exc:
        raise ConfigError(str(exc)) from exc
    finally:
        _config_path.reset(token)
