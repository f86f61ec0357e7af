"""Configuration management for the pdfdeck service."""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

from pdfdeck.errors import ConfigError


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Resolved once at process start by load_settings() and passed down to
    every component. The instance is frozen.
    """

    # Service configuration
    service_name: str = "pdfdeck"
    log_level: str = "INFO"
    api_prefix: str = Field(
        default="", description="Path prefix for the signed routes, e.g. /v1")

    # Request authentication
    hmac_secret_current: str | None = None
    hmac_secret_previous: str | None = Field(
        default=None, description="Previous secret kept valid during rotation")
    hmac_key_id_current: str = "current"
    hmac_key_id_previous: str = "previous"
    auth_max_skew_seconds: int = 300
    anti_replay_enabled: bool = True
    anti_replay_fail_open: bool = Field(
        default=True,
        description="Accept requests when the nonce store is unreachable",
    )
    nonce_ttl_seconds: int = 300

    # Upload limits
    pdf_max_bytes: int = Field(default=31457280, description="~30MB")
    pdf_max_pages: int = 150
    signed_url_ttl_seconds: int = 7200

    # AWS S3 settings (for local dev, can use MinIO)
    aws_region: str = "us-east-1"
    # Use S3_ prefix to avoid conflict with Lambda's reserved AWS_* env vars
    s3_access_key_id: str | None = Field(
        default=None, alias="S3_ACCESS_KEY_ID")
    s3_secret_access_key: str | None = Field(
        default=None, alias="S3_SECRET_ACCESS_KEY")
    s3_endpoint_url: str | None = Field(
        default=None, description="Custom S3 endpoint (for MinIO/LocalStack)"
    )
    uploads_bucket: str | None = None
    jobs_bucket: str | None = None

    # Job and nonce state
    state_backend: Literal["dynamodb", "memory"] = "dynamodb"
    jobs_table: str | None = None
    nonces_table: str | None = None
    dynamodb_endpoint_url: str | None = None

    # Job queue
    queue_backend: Literal["sqs", "memory"] = "sqs"
    jobs_queue_url: str | None = None
    sqs_endpoint_url: str | None = None
    queue_wait_seconds: int = Field(
        default=20, description="SQS long-poll wait time")
    run_worker_in_process: bool = Field(
        default=False,
        description="Run the job consumer inside the API process (local mode)",
    )

    # Page renderer
    renderer_url: str | None = Field(
        default=None, description="Unset runs the worker in text-only mode")
    render_dpi: int = 180
    renderer_timeout_seconds: float = 30.0
    renderer_max_attempts: int = 3
    renderer_backoff_base_ms: int = 200
    renderer_backoff_cap_ms: int = 2000

    # Structured generation
    generation_enabled: bool = Field(
        default=True,
        description="When false, decks are built from page text without the model",
    )
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    openai_max_tokens: int = 6000
    openai_timeout_seconds: float = 120.0
    openai_input_usd_per_1m_tokens: float | None = Field(
        default=None,
        ge=0,
        description="Prompt token price; with the output price, enables costUsd metrics",
    )
    openai_output_usd_per_1m_tokens: float | None = Field(default=None, ge=0)
    image_attachment: Literal["deterministic", "model"] = Field(
        default="deterministic",
        description="'model' keeps whitelisted images chosen by the model",
    )

    model_config = {
        "env_prefix": "",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
        "frozen": True,
    }

    def _missing(self, names: list[str]) -> list[str]:
        return [name.upper() for name in names if not getattr(self, name)]

    def _shared_missing(self) -> list[str]:
        missing = self._missing(["uploads_bucket", "jobs_bucket"])
        if self.state_backend == "dynamodb":
            missing += self._missing(["jobs_table"])
        if self.queue_backend == "sqs":
            missing += self._missing(["jobs_queue_url"])
        return missing

    def require_api(self) -> None:
        """Fail fast when the API cannot run with this configuration."""
        missing = self._missing(["hmac_secret_current"]) + self._shared_missing()
        if (
            self.anti_replay_enabled
            and self.state_backend == "dynamodb"
            and not self.nonces_table
        ):
            missing.append("NONCES_TABLE")
        if self.run_worker_in_process:
            missing += self._worker_missing()
        if missing:
            raise ConfigError(missing)

    def require_worker(self) -> None:
        """Fail fast when the worker cannot run with this configuration."""
        missing = self._shared_missing() + self._worker_missing()
        if missing:
            raise ConfigError(missing)

    def _worker_missing(self) -> list[str]:
        if self.generation_enabled:
            return self._missing(["openai_api_key"])
        return []


def load_settings() -> Settings:
    """Resolve settings from the environment once at startup."""
    return Settings()
