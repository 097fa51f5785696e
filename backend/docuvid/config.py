"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with __call__
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class GoogleCloudConfig(BaseModel):
    """Google Cloud configuration for the Vertex AI text adapter."""

    project_id: str = ""
    location: str = "us-central1"
    use_vertex_ai: bool = True


class ModelsConfig(BaseModel):
    """AI model identifiers.

    text_llm is routed by prefix: "ollama/*" goes to Ollama, anything else
    to Vertex AI.
    """

    text_llm: str = "gemini-2.5-flash"


class OllamaConfig(BaseModel):
    """Ollama endpoint used when text_llm has the ollama/ prefix."""

    endpoint: str = "http://localhost:11434"
    api_key: Optional[str] = None


class RunwayConfig(BaseModel):
    """Runway text-to-video task API."""

    api_base: str = "https://api.dev.runwayml.com"
    api_version: str = "2024-11-06"
    api_key: Optional[str] = None
    model: str = "veo3.1"
    ratio: str = "1280:720"
    max_duration_seconds: int = 8
    max_prompt_chars: int = 1000
    request_timeout: float = 30.0


class NarrationConfig(BaseModel):
    """ElevenLabs text-to-speech. Audio is skipped when api_key or voice_id is unset."""

    api_base: str = "https://api.elevenlabs.io/v1"
    api_key: Optional[str] = None
    voice_id: Optional[str] = None
    model_id: str = "eleven_multilingual_v2"
    stability: float = 0.6
    similarity_boost: float = 0.75
    speed: float = 0.75
    request_timeout: float = 60.0


class PipelineConfig(BaseModel):
    """Pipeline execution parameters."""

    scene_count: int = 5
    max_input_chars: int = 1000
    scene_description_chars: int = 200
    video_poll_interval: float = 15.0
    video_poll_max_wait: float = 900.0
    video_gen_concurrency: int = Field(default=3, ge=1)
    min_ready_fraction: float = Field(default=0.6, gt=0.0, le=1.0)
    retry_max_attempts: int = Field(default=4, ge=1)
    retry_base_delay: float = 2.0
    stage_timeout_seconds: float = 90.0
    lease_seconds: int = Field(default=300, gt=0)
    assembly_retry_attempts: int = Field(default=2, ge=1)


class StorageConfig(BaseModel):
    """Storage and database configuration."""

    database_url: str = "sqlite+aiosqlite:///docuvid.db"
    media_dir: Path = Path("media")
    media_url_prefix: str = "/media"

    @field_validator("media_dir", mode="before")
    @classmethod
    def convert_media_dir_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class ServerConfig(BaseModel):
    """Server configuration.

    When api_token is set, POST /api/video requires
    ``Authorization: Bearer <api_token>``.
    """

    host: str = "0.0.0.0"
    port: int = 8000
    api_token: Optional[str] = None
    cors_origins: list[str] = ["http://localhost:3000"]


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: DOCUVID_, delimiter: __)
    2. YAML file (config.yaml)
    3. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="DOCUVID_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    google_cloud: GoogleCloudConfig = GoogleCloudConfig()
    models: ModelsConfig = ModelsConfig()
    ollama: OllamaConfig = OllamaConfig()
    runway: RunwayConfig = RunwayConfig()
    narration: NarrationConfig = NarrationConfig()
    pipeline: PipelineConfig = PipelineConfig()
    storage: StorageConfig = StorageConfig()
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
        """Environment first, then .env, then config.yaml, then init values."""
        return (
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            init_settings,
        )


# Singleton instance
settings = Settings()
