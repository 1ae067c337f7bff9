"""
Central configuration for the Consult Scribe Service
"""

from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import Field
from enum import Enum


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class STTProvider(str, Enum):
    ASSEMBLYAI = "assemblyai"
    HUGGINGFACE = "huggingface"


class NoteGeneratorName(str, Enum):
    OPENAI = "openai"
    TRANSCRIPT = "transcript"


class ModelName(str, Enum):
    GPT_4_1_NANO = "gpt-4.1-nano"
    GPT_4O_MINI = "gpt-4o-mini"
    GPT_4O = "gpt-4o"


class Settings(BaseSettings):
    # Environment
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # API Configuration
    api_title: str = Field(default="Consult Scribe API")
    api_description: str = Field(default="Consultation recording, transcription and SOAP notes")
    api_version: str = Field(default="1.0.0")
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=3001)

    # Auth provider: JWTs are signed with this secret
    api_secret_key: str = Field(...)
    token_algorithm: str = Field(default="HS256")
    jwt_audience: Optional[str] = Field(default=None)
    access_token_expire_minutes: int = Field(default=30)

    # Database
    database_url: str = Field(default="sqlite:///./consult_scribe.db")
    database_echo: bool = Field(default=False)

    # Recording storage
    data_encryption_key: str = Field(...)
    recording_storage_dir: str = Field(default="./recordings")
    recording_retention_hours: int = Field(default=24)
    recording_timeslice_seconds: float = Field(default=1.0)
    cleanup_interval_seconds: int = Field(default=3600)
    job_retention_seconds: int = Field(default=300)  # unread job streams are dropped after this

    # Speech-to-text
    stt_provider: STTProvider = STTProvider.ASSEMBLYAI
    assemblyai_api_key: Optional[str] = Field(default=None)
    assemblyai_base_url: str = Field(default="https://api.assemblyai.com")
    stt_language_code: str = Field(default="en_us")
    stt_poll_interval: float = Field(default=1.0)  # seconds
    stt_max_poll_attempts: int = Field(default=60)
    stt_timeout: int = Field(default=60)
    hf_space_api_url: Optional[str] = Field(default=None)
    hf_token: Optional[str] = Field(default=None)

    # Note generation
    note_generator: NoteGeneratorName = NoteGeneratorName.OPENAI
    openai_api_key: Optional[str] = Field(default=None)
    openai_base_url: Optional[str] = Field(default=None)
    default_llm_model: str = Field(default=ModelName.GPT_4O_MINI.value)
    llm_temperature: float = Field(default=0.0)
    llm_max_tokens: int = Field(default=2000)
    llm_timeout: int = Field(default=60)

    # Rate Limiting
    rate_limit_requests: int = Field(default=10)
    rate_limit_window: int = Field(default=60)  # seconds

    # Audio Processing Limits
    max_file_size_mb: int = Field(default=50)
    supported_audio_formats: List[str] = Field(
        default=["audio/mpeg", "audio/mp3", "audio/wav", "audio/mp4", "audio/m4a", "audio/ogg", "audio/webm"]
    )

    # CORS Configuration
    cors_origins: List[str] = Field(
        default=[
            "http://localhost:3000",
            "http://localhost:5173",
            "http://localhost:8080",
        ]
    )
    cors_allow_credentials: bool = Field(default=True)
    cors_allow_methods: List[str] = Field(default=["GET", "POST", "PUT", "PATCH"])
    cors_allow_headers: List[str] = Field(default=["*"])

    # Monitoring
    enable_metrics: bool = Field(default=True)
    metrics_path: str = Field(default="/metrics")

    # Audit Logging
    audit_log_enabled: bool = Field(default=True)

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = Settings()
