"""Settings for reelflow, read from config.yaml, .env and REELFLOW_* variables."""

import os
from pathlib import Path
from typing import ClassVar

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Reads nested settings sections from a YAML file.

    The file is config.yaml in the working directory unless REELFLOW_CONFIG
    names another path. A missing file contributes nothing.
    """

    def get_field_value(self, field, field_name: str):
        # Whole file is returned from __call__
        return None, field_name, False

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self) -> dict:
        path = Path(os.environ.get("REELFLOW_CONFIG", "config.yaml"))
        if not path.is_file():
            return {}
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        return loaded if isinstance(loaded, dict) else {}


class ProviderConfig(BaseModel):
    """Generation provider endpoint and credentials.

    api_key is normally supplied via REELFLOW_PROVIDER__API_KEY.
    """

    base_url: str = "https://gptproto.com"
    api_key: str = ""
    request_timeout: float = 120.0
    connect_timeout: float = 30.0
    submit_max_attempts: int = 3
    script_model: str = "gemini-3-pro-preview"
    image_model: str = "gemini-3-pro-image-preview"


class PollingConfig(BaseModel):
    """Per-kind job polling cadence (seconds) and attempt bounds."""

    image_interval: float = 3.0
    image_max_attempts: int = 120
    video_interval: float = 5.0
    video_max_attempts: int = 120
    task_interval: float = 3.0
    task_max_attempts: int = 60


class UpdaterConfig(BaseModel):
    """Optimistic-concurrency retry policy for document writes."""

    max_attempts: int = 5
    base_delay: float = 0.1
    max_jitter: float = 0.05


class BatchConfig(BaseModel):
    """Concurrency cap for the flat image batch feature."""

    image_batch_cap: int = Field(default=5, ge=1)


class StorageConfig(BaseModel):
    """Document database location (any SQLAlchemy async URL)."""

    database_url: str = "sqlite+aiosqlite:///./reelflow.db"


class MergeConfig(BaseModel):
    """Video merge service endpoint."""

    base_url: str = "http://localhost:3000"
    endpoint: str = "/api/merge-videos"
    timeout: float = 600.0


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000


class Settings(BaseSettings):
    """All reelflow settings, one nested model per concern.

    Nested fields are set from the environment with the REELFLOW_ prefix and
    a double-underscore delimiter, e.g. REELFLOW_POLLING__VIDEO_INTERVAL=10.
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="REELFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    provider: ProviderConfig = ProviderConfig()
    polling: PollingConfig = PollingConfig()
    updater: UpdaterConfig = UpdaterConfig()
    batch: BatchConfig = BatchConfig()
    storage: StorageConfig = StorageConfig()
    merge: MergeConfig = MergeConfig()
    server: ServerConfig = ServerConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Constructor arguments win over the environment, then .env, then YAML."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )


# Module-level singleton, imported as reelflow.config.settings
settings = Settings()
