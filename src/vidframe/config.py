import os
from pathlib import Path
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from vidframe.dispatcher import DEFAULT_MAX_PROCESSES, DEFAULT_QUEUE_SIZE

DEFAULT_PORT = 3000
DEFAULT_THUMBNAIL_SIZE = 128


class ConfigError(Exception):
    pass


class ApiConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    is_prod: bool = False
    listen_port: int = DEFAULT_PORT
    thumbnail_width: int = DEFAULT_THUMBNAIL_SIZE
    thumbnail_height: int = DEFAULT_THUMBNAIL_SIZE

    @field_validator("listen_port", "thumbnail_width", "thumbnail_height")
    @classmethod
    def default_if_not_positive(cls, value: int, info: ValidationInfo) -> int:
        return value if value > 0 else cls.model_fields[info.field_name].default


class FramerConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    max_processes: int = DEFAULT_MAX_PROCESSES
    queue_size: int = DEFAULT_QUEUE_SIZE

    @field_validator("max_processes", "queue_size")
    @classmethod
    def default_if_not_positive(cls, value: int, info: ValidationInfo) -> int:
        return value if value > 0 else cls.model_fields[info.field_name].default


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    local_directory: Path = Path("videos")


class Config(BaseSettings):
    """Service settings: init kwargs > VIDFRAME_* env vars > TOML file > defaults."""

    model_config = SettingsConfigDict(
        env_prefix="VIDFRAME_",
        env_nested_delimiter="__",
        extra="ignore",
        nested_model_default_partial_update=True,
    )

    api: ApiConfig = Field(default_factory=ApiConfig)
    framer: FramerConfig = Field(default_factory=FramerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    _config_path: ClassVar[Path | None] = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        sources: list[PydanticBaseSettingsSource] = [init_settings, env_settings]
        if cls._config_path is not None:
            sources.append(TomlConfigSettingsSource(settings_cls, toml_file=cls._config_path))
        return tuple(sources)


def parse(data: dict) -> Config:
    try:
        return Config(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config: {exc}") from exc


def load(path: Path) -> Config:
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Can't load config file: {path}")
    Config._config_path = path
    try:
        return Config()
    except ValidationError as exc:
        raise ConfigError(f"Invalid config file: {path}: {exc}") from exc
    except ValueError as exc:
        # tomllib.TOMLDecodeError
        raise ConfigError(f"Invalid config file: {path}: {exc}") from exc
    finally:
        Config._config_path = None


def default_path() -> Path:
    env = os.environ.get("CONTAINER_ENVIRONMENT") or "local"
    return Path(f"config-{env}.toml")
