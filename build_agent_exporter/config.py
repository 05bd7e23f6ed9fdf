import logging
import os
import tomllib
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError, field_validator, model_validator
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    InitSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from .errors import ConfigError

logger = logging.getLogger(__name__)

ACCESS_TOKEN_ENV = "TFSEX_{name}_ACCESSTOKEN"
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class ServerSettings(BaseModel):
    address: str
    default_collection: str = ""
    access_token: str = ""
    use_proxy: bool = False
    completed_request_count: int = 0
    request_timeout: float = 20.0


class ProxySettings(BaseModel):
    url: str = ""


class ExporterSettings(BaseModel):
    port: int = 8080
    endpoint: str = "/metrics"

    @field_validator("endpoint")
    @classmethod
    def _leading_slash(cls, value: str) -> str:
        if not value:
            return "/metrics"
        return value if value.startswith("/") else f"/{value}"


class AccessTokenEnvSource(PydanticBaseSettingsSource):
    """
    Supplies `servers.<name>.access_token` from `TFSEX_<NAME>_ACCESSTOKEN`.

    Server names are only known once the config file has been read, so the
    source looks them up in the init kwargs the file arrives as.
    """

    def __init__(self, settings_cls: type[BaseSettings], init_settings: InitSettingsSource) -> None:
        super().__init__(settings_cls)
        self._init_settings = init_settings

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        servers = self._init_settings.init_kwargs.get("servers")
        if not isinstance(servers, dict):
            return {}

        overrides = {}
        for name, server in servers.items():
            env_var = ACCESS_TOKEN_ENV.format(name=name.upper())
            token = os.environ.get(env_var, "")
            if not token:
                logger.debug(f"Environment variable {env_var} does not exist")
                continue
            if isinstance(server, BaseModel):
                server = server.model_dump()
            if not isinstance(server, dict):
                continue

            logger.info(
                f"Using AccessToken for servers.{name} from environment variable {env_var}",
                extra={"server_name": name, "env_var": env_var},
            )
            if server.get("access_token"):
                logger.warning(
                    f"AccessToken in config file for servers.{name} will be overridden by {env_var}",
                    extra={"server_name": name, "env_var": env_var},
                )
            # Whole entries, since a model instance would not be merged key by key.
            overrides[name] = {**server, "access_token": token}

        return {"servers": overrides} if overrides else {}


class AppConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TFSEX_", env_file=".env", env_nested_delimiter="__", extra="ignore"
    )

    servers: dict[str, ServerSettings] = {}
    proxy: ProxySettings = ProxySettings()
    exporter: ExporterSettings = ExporterSettings()
    ignore_hosted_pools: bool = True
    max_concurrent_pools: int | None = None
    cycle_timeout_seconds: float | None = None
    retry_max_elapsed_seconds: float = 30.0
    log_level: str = "INFO"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # The config file arrives as init kwargs; the environment wins over it.
        return (
            AccessTokenEnvSource(settings_cls, init_settings),
            env_settings,
            dotenv_settings,
            init_settings,
            file_secret_settings,
        )

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got {value!r}")
        return level

    @model_validator(mode="after")
    def _check_servers(self) -> "AppConfig":
        problems = []
        if not self.servers:
            problems.append("No servers configured")

        for name, server in self.servers.items():
            if not server.access_token:
                env_var = ACCESS_TOKEN_ENV.format(name=name.upper())
                problems.append(
                    f"servers.{name}: AccessToken not found in config file or environment variable {env_var}"
                )
            if server.use_proxy and not self.proxy.url:
                problems.append(f"servers.{name}: use_proxy is true but proxy url has not been set")

        if self.proxy.url:
            try:
                httpx.URL(self.proxy.url)
            except httpx.InvalidURL as exc:
                problems.append(f"proxy url {self.proxy.url!r} cannot be parsed: {exc}")

        if problems:
            raise ValueError("; ".join(problems))
        return self


def load_config(path: str | os.PathLike) -> AppConfig:
    """Read the TOML file at `path` and apply environment overrides."""
    config_path = Path(path)
    try:
        with config_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Failed to decode configuration file {config_path}: {exc}") from exc

    try:
        config = AppConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Errors found within config {config_path}: {exc}") from exc

    logger.debug(
        f"Configuration file {config_path} successfully decoded",
        extra={"path": str(config_path), "servers": sorted(config.servers)},
    )
    return config
