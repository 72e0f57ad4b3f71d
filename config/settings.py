"""
Configuration settings for stackctl.
"""
from typing import Optional
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AWSSettings(BaseSettings):
    """AWS credentials and region. Never read from declarations."""

    region: str = Field(default="us-east-1", validation_alias=AliasChoices("AWS_REGION", "AWS_DEFAULT_REGION"))
    access_key_id: Optional[str] = Field(default=None, validation_alias="AWS_ACCESS_KEY_ID")
    secret_access_key: Optional[str] = Field(default=None, validation_alias="AWS_SECRET_ACCESS_KEY")
    session_token: Optional[str] = Field(default=None, validation_alias="AWS_SESSION_TOKEN")
    profile: Optional[str] = Field(default=None, validation_alias="AWS_PROFILE")
    endpoint_url: Optional[str] = Field(default=None, validation_alias="STACKCTL_AWS_ENDPOINT_URL")

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")


class StateSettings(BaseSettings):
    """State Record backend settings."""

    backend: str = "local"
    path: str = "stackctl.state.json"
    bucket: Optional[str] = None
    prefix: str = "stacks/default"
    lock_timeout: float = 0.0

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v):
        valid_backends = ["local", "s3"]
        if v.lower() not in valid_backends:
            raise ValueError(f"STACKCTL_STATE_BACKEND must be one of {valid_backends}")
        return v.lower()

    model_config = SettingsConfigDict(env_prefix="STACKCTL_STATE_", extra="ignore")


class ExecutorSettings(BaseSettings):
    """Apply executor retry and concurrency settings."""

    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    parallelism: int = 1

    @field_validator("parallelism", "max_retries")
    @classmethod
    def validate_non_negative(cls, v, info):
        minimum = 1 if info.field_name == "parallelism" else 0
        if v < minimum:
            raise ValueError(f"{info.field_name} must be at least {minimum}")
        return v

    model_config = SettingsConfigDict(env_prefix="STACKCTL_EXECUTOR_", extra="ignore")


class RPCSettings(BaseSettings):
    """Settings for out-of-process provider plugins."""

    url: str = "http://localhost:8080"
    timeout: int = 30

    model_config = SettingsConfigDict(env_prefix="STACKCTL_RPC_", extra="ignore")


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    level: str = "WARNING"
    sample_rate: float = 0.0

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"STACKCTL_LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @field_validator("sample_rate")
    @classmethod
    def validate_sample_rate(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError("STACKCTL_LOG_SAMPLE_RATE must be between 0.0 and 1.0")
        return v

    model_config = SettingsConfigDict(env_prefix="STACKCTL_LOG_", extra="ignore")


class Settings(BaseSettings):
    """Main application settings."""

    app_name: str = "stackctl"
    app_version: str = "0.1.0"
    environment: str = "development"
    workdir: str = "."

    # Sub-settings
    aws: AWSSettings = Field(default_factory=AWSSettings)
    state: StateSettings = Field(default_factory=StateSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    rpc: RPCSettings = Field(default_factory=RPCSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        valid_envs = ["development", "testing", "production"]
        if v.lower() not in valid_envs:
            raise ValueError(f"STACKCTL_ENVIRONMENT must be one of {valid_envs}")
        return v.lower()

    model_config = SettingsConfigDict(
        env_prefix="STACKCTL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
settings = Settings()
