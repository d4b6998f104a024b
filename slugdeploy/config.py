"""
Settings for slugdeploy.

Configuration precedence:
1. Keyword overrides passed to load_settings (highest priority)
2. SLUGDEPLOY_<FIELD> environment variables
3. The YAML settings file
4. Default values in this class (lowest priority)
"""

import os
from contextvars import ContextVar
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional, Tuple, Type

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import (
    BaseSettings, NoDecode, PydanticBaseSettingsSource, SettingsConfigDict, YamlConfigSettingsSource,
)

from .errors import ConfigError

ENV_PREFIX = "SLUGDEPLOY_"
DEFAULT_CONFIG_FILE = "slugdeploy.yaml"

# AWS managed CloudFront policies
CACHING_DISABLED_POLICY_ID = "4135ea2d-6df8-44a3-9df3-4b5a84be39ad"
ALL_VIEWER_ORIGIN_REQUEST_POLICY_ID = "216adef6-5c7f-47e4-b989-5492eafa07d3"

# settings file used by the Settings instance being built in this context
_config_file: ContextVar[Optional[Path]] = ContextVar("slugdeploy_config_file", default=None)

IdList = Annotated[List[str], NoDecode]


class SettingsFileSource(YamlConfigSettingsSource):
    """YAML settings file; the top level must be a mapping of setting names."""

    def _read_file(self, file_path: Path) -> Dict[str, Any]:
        data = super()._read_file(file_path)
        if not isinstance(data, dict):
            raise ConfigError(f"{file_path}: expected a mapping at top level")
        return data


class Settings(BaseSettings):
    """
    Every tunable value of a deployment: shared infrastructure ids, sizing
    defaults, health-check thresholds and verification timeouts.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
        extra="forbid",
        frozen=True,
    )

    # Account and state
    region: str = "us-east-1"
    home: str = Field(".slugdeploy", description="Directory holding per-slug state and events")
    name_prefix: str = Field("sd", description="Prefix of every derived resource name")

    # Registry
    registry: Optional[str] = Field(None, description="<account>.dkr.ecr.<region>.amazonaws.com")
    repository: str = "student-apps"
    platform: str = "linux/amd64"
    docker_bin: str = "docker"

    # Compute
    cluster: str = "student-apps"
    container_port: int = 8501
    default_cpu: int = 512
    default_memory: int = 2048
    default_replicas: int = Field(1, ge=1)
    vpc_id: Optional[str] = None
    subnet_ids: IdList = Field(default_factory=list, description="Comma-separated in the environment")
    security_group_ids: IdList = Field(default_factory=list)
    assign_public_ip: bool = True
    execution_role_arn: Optional[str] = None
    task_role_arn: Optional[str] = None
    log_group_prefix: str = "/ecs/slugdeploy"
    log_retention_days: int = 14
    ssm_prefix: str = "/slugdeploy"
    health_check_grace_period: int = 60

    # Target group health check
    healthy_threshold: int = 2
    unhealthy_threshold: int = 3
    health_timeout: int = 5
    health_interval: int = 30
    health_matcher: str = "200"

    # Load balancer
    listener_arn: Optional[str] = None
    alb_dns_name: Optional[str] = None
    alb_scheme: str = "http"
    rule_priority_start: int = Field(1, ge=1, le=50000)

    # CDN
    distribution_id: Optional[str] = None
    cdn_domain: Optional[str] = None
    cdn_origin_id: Optional[str] = Field(None, description="Id of the distribution's load balancer origin")
    cache_policy_id: str = CACHING_DISABLED_POLICY_ID
    origin_request_policy_id: str = ALL_VIEWER_ORIGIN_REQUEST_POLICY_ID
    viewer_protocol_policy: str = "redirect-to-https"

    # Verification
    target_poll_interval: float = 5.0
    target_deadline: float = 600.0
    cdn_poll_interval: float = 30.0
    cdn_deploy_timeout: float = 900.0
    probe_timeout: float = 10.0
    probe_attempts: int = Field(6, ge=1)
    probe_retry_delay: float = 5.0
    deploy_timeout: float = 1800.0

    # Concurrency
    max_workers: int = Field(4, ge=1)
    routing_attempts: int = Field(5, ge=1)

    @field_validator("subnet_ids", "security_group_ids", mode="before")
    @classmethod
    def split_ids(cls, v):
        """Accept comma-separated strings as well as lists."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        sources: List[PydanticBaseSettingsSource] = [init_settings, env_settings]
        config_file = _config_file.get()
        if config_file is not None:
            sources.append(SettingsFileSource(settings_cls, yaml_file=config_file))
        return tuple(sources)

    def image_uri(self, slug: str) -> str:
        """Image reference for a slug: <registry>/<repo>:<slug>."""
        if not self.registry:
            raise ConfigError("registry is not configured (set SLUGDEPLOY_REGISTRY)")
        return f"{self.registry}/{self.repository}:{slug}"

    def public_url(self, slug: str) -> Optional[str]:
        if not self.cdn_domain:
            return None
        return f"https://{self.cdn_domain}/{slug}"

    def require(self, *names: str) -> None:
        """Fail fast if any of the named settings is unset."""
        missing = [n for n in names if getattr(self, n) in (None, "", [])]
        if missing:
            env_names = ", ".join(ENV_PREFIX + n.upper() for n in missing)
            raise ConfigError(f"Missing settings: {', '.join(missing)} (set {env_names})")


def _describe(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        name = ".".join(str(part) for part in item.get("loc", ()))
        if item.get("type") == "extra_forbidden":
            problems.append(f"Unknown setting: {name}")
        else:
            problems.append(f"Invalid value for {name}: {item.get('msg')}")
    return "; ".join(problems)


def load_settings(path: Optional[str] = None, **overrides) -> Settings:
    """
    Load settings from defaults, a YAML file and the environment.

    Args:
        path: Explicit config file; falls back to $SLUGDEPLOY_CONFIG, then ./slugdeploy.yaml
        overrides: Values that win over every other source

    Returns:
        Settings

    Raises:
        ConfigError: Missing file, unknown setting or a value of the wrong type
    """
    config_path = path or os.environ.get(ENV_PREFIX + "CONFIG")
    if config_path:
        if not Path(config_path).exists():
            raise ConfigError(f"Config file not found: {config_path}")
        config_file: Optional[Path] = Path(config_path)
    elif Path(DEFAULT_CONFIG_FILE).exists():
        config_file = Path(DEFAULT_CONFIG_FILE)
    else:
        config_file = None

    token = _config_file.set(config_file)
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigError(_describe(e)) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {config_file}: {e}") from e
    finally:
        _config_file.reset(token)
