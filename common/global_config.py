import os
import warnings
import yaml
from pathlib import Path
from typing import Any

from dotenv import load_dotenv, dotenv_values
from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    SettingsConfigDict,
    PydanticBaseSettingsSource,
)

from .config_models import (
    ArgumentsConfig,
    ImagesConfig,
    LoggingConfig,
    MemeBackendConfig,
    ResolverConfig,
    ServerConfig,
    TemplateCacheConfig,
)

# Repository root (one level up from common)
root_dir = Path(__file__).parent.parent

BASE_CONFIG_PATH = root_dir / "common" / "global_config.yaml"
PROD_CONFIG_PATH = root_dir / "common" / "production_config.yaml"
LOCAL_CONFIG_PATH = root_dir / ".global_config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Merge `override` into `base` in place, descending into nested sections."""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as file:
            return yaml.safe_load(file) or {}
    except yaml.YAMLError as e:
        raise RuntimeError(f"Invalid YAML in {path}: {e}")


class YamlSettingsSource(PydanticBaseSettingsSource):
    """
    Settings source for the YAML layers, later layers overriding earlier ones:
    1. common/global_config.yaml (base, required)
    2. common/production_config.yaml (only when DEV_ENV=prod)
    3. .global_config.yaml (local overrides, git-ignored)
    """

    def __init__(self, settings_cls: type[BaseSettings]):
        super().__init__(settings_cls)
        self.yaml_data = self._load_layers()

    def _load_layers(self) -> dict[str, Any]:
        if not BASE_CONFIG_PATH.exists():
            raise RuntimeError(f"Required config file not found: {BASE_CONFIG_PATH}")
        config_data = _read_yaml(BASE_CONFIG_PATH)

        if os.getenv("DEV_ENV") == "prod" and PROD_CONFIG_PATH.exists():
            prod_data = _read_yaml(PROD_CONFIG_PATH)
            if prod_data:
                _deep_merge(config_data, prod_data)
                logger.warning(
                    "\033[33m❗️ Overriding common/global_config.yaml with common/production_config.yaml\033[0m"
                )

        if LOCAL_CONFIG_PATH.exists():
            local_data = _read_yaml(LOCAL_CONFIG_PATH)
            if local_data:
                _deep_merge(config_data, local_data)
                message = "\033[33m❗️ Overriding common/global_config.yaml with .global_config.yaml\033[0m"
                if config_data.get("logging", {}).get("verbose"):
                    dumped = yaml.dump(local_data, default_flow_style=False, allow_unicode=True)
                    message += f"\033[33m\nLocal values:\n---\n{dumped}\033[0m"
                logger.warning(message)

        return config_data

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        return self.yaml_data.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        return self.yaml_data


class Config(BaseSettings):
    """
    Service configuration.

    Every YAML value can be overridden from the environment, nested sections
    joined with a double underscore (MEME_BACKEND__BASE_URL,
    TEMPLATE_CACHE__EAGER_INFO, ...).
    """

    model_config = SettingsConfigDict(
        env_file=str(root_dir / ".env"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="allow",
    )

    service_name: str
    dot_global_config_health_check: bool
    meme_backend: MemeBackendConfig
    template_cache: TemplateCacheConfig
    arguments: ArgumentsConfig
    images: ImagesConfig
    resolver: ResolverConfig
    server: ServerConfig
    logging: LoggingConfig

    DEV_ENV: str = "dev"

    # Filled in from the runtime environment, never from YAML
    is_local: bool = Field(default=False)
    running_on: str = Field(default="")

    @field_validator("is_local", mode="before")
    @classmethod
    def set_is_local(cls, v: Any) -> bool:
        return os.getenv("GITHUB_ACTIONS") != "true"

    @field_validator("running_on", mode="before")
    @classmethod
    def set_running_on(cls, v: Any) -> str:
        return "🖥️  local" if os.getenv("GITHUB_ACTIONS") != "true" else "☁️  CI"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Environment, then .env, then the YAML layers, then constructor arguments."""
        return (
            env_settings,
            dotenv_settings,
            YamlSettingsSource(settings_cls),
            init_settings,
        )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()

    def snapshot_file(self) -> Path:
        """Absolute path of the template snapshot; relative paths start at the repo root."""
        path = Path(self.template_cache.snapshot_path)
        return path if path.is_absolute() else root_dir / path


# .env goes into os.environ first so DEV_ENV can select .prod.env
load_dotenv(dotenv_path=root_dir / ".env", override=True)
if os.getenv("DEV_ENV") == "prod":
    load_dotenv(dotenv_path=root_dir / ".prod.env", override=True)

if os.getenv("GITHUB_ACTIONS") != "true":
    env_file_name = ".prod.env" if os.getenv("DEV_ENV") == "prod" else ".env"
    if not dotenv_values(root_dir / env_file_name):
        warnings.warn(f"{env_file_name} file not found or empty", UserWarning)

global_config = Config()
