"""
Gateway Configuration

Typed options for the reliable delivery components, read from environment
variables. A `.env` file in the working directory is loaded first when
present.
"""

import os
from typing import Any, Dict, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .database.schema import validate_identifier

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class IdempotencyOptions(BaseModel):
    """Idempotency guard settings."""

    table_name: str = "idempotency_records"
    ttl_hours: int = Field(default=24, ge=1, le=8760)

    @field_validator("table_name")
    @classmethod
    def check_table_name(cls, value: str) -> str:
        return validate_identifier(value)

    @classmethod
    def from_env(cls) -> "IdempotencyOptions":
        return cls(
            table_name=os.getenv("IDEMPOTENCY_TABLE_NAME", "idempotency_records"),
            ttl_hours=int(os.getenv("IDEMPOTENCY_TTL_HOURS", "24")),
        )


class OutboxOptions(BaseModel):
    """Outbox store, dispatcher and sweeper settings."""

    table_name: str = "outbox_messages"
    message_type: str = "HL7Message"
    max_retries: int = Field(default=3, ge=0)
    base_retry_delay: float = Field(default=2.0, gt=1.0)
    retry_delay_unit_seconds: float = Field(default=15.0, gt=0)
    max_retry_delay_seconds: Optional[float] = Field(default=900.0, gt=0)
    message_retention_hours: int = Field(default=720, ge=1)
    batch_size: int = Field(default=100, ge=1)
    dispatch_timeout_seconds: float = Field(default=30.0, gt=0)
    sweep_interval_seconds: float = Field(default=30.0, gt=0)
    dead_letter_abandoned: bool = True

    @field_validator("table_name")
    @classmethod
    def check_table_name(cls, value: str) -> str:
        return validate_identifier(value)

    @classmethod
    def from_env(cls) -> "OutboxOptions":
        max_delay = os.getenv("OUTBOX_MAX_RETRY_DELAY_SECONDS", "900")
        return cls(
            table_name=os.getenv("OUTBOX_TABLE_NAME", "outbox_messages"),
            message_type=os.getenv("OUTBOX_MESSAGE_TYPE", "HL7Message"),
            max_retries=int(os.getenv("OUTBOX_MAX_RETRIES", "3")),
            base_retry_delay=float(os.getenv("OUTBOX_BASE_RETRY_DELAY", "2.0")),
            retry_delay_unit_seconds=float(os.getenv("OUTBOX_RETRY_DELAY_UNIT_SECONDS", "15")),
            max_retry_delay_seconds=float(max_delay) if max_delay else None,
            message_retention_hours=int(os.getenv("OUTBOX_MESSAGE_RETENTION_HOURS", "720")),
            batch_size=int(os.getenv("OUTBOX_BATCH_SIZE", "100")),
            dispatch_timeout_seconds=float(os.getenv("OUTBOX_DISPATCH_TIMEOUT_SECONDS", "30")),
            sweep_interval_seconds=float(os.getenv("OUTBOX_SWEEP_INTERVAL_SECONDS", "30")),
            dead_letter_abandoned=_env_bool("OUTBOX_DEAD_LETTER_ABANDONED", "true"),
        )


class PoisonQueueRetryOptions(BaseModel):
    """Processing/poison channel and dead-letter settings."""

    poison_queue_name: str = "poison"
    processing_queue_name: str = "processing"
    max_batch_size: int = Field(default=10, ge=1, le=32)
    max_retry_attempts: int = Field(default=3, ge=0)
    base_retry_delay_minutes: float = Field(default=2.0, gt=1.0)
    visibility_timeout_minutes: float = Field(default=5.0, gt=0)
    use_jitter: bool = True
    max_jitter_percentage: float = Field(default=0.3, ge=0.0, le=1.0)
    unparseable_policy: Literal["dead_letter", "drop"] = "dead_letter"
    sweep_interval_seconds: float = Field(default=300.0, gt=0)
    processing_max_dequeue_count: int = Field(default=5, ge=1)
    processing_poll_interval_seconds: float = Field(default=5.0, gt=0)
    dead_letter_table_name: str = "dead_letters"
    dead_letter_write_attempts: int = Field(default=3, ge=1)

    @field_validator("poison_queue_name", "processing_queue_name", "dead_letter_table_name")
    @classmethod
    def check_identifiers(cls, value: str) -> str:
        return validate_identifier(value)

    @classmethod
    def from_env(cls) -> "PoisonQueueRetryOptions":
        return cls(
            poison_queue_name=os.getenv("POISON_QUEUE_NAME", "poison"),
            processing_queue_name=os.getenv("PROCESSING_QUEUE_NAME", "processing"),
            max_batch_size=int(os.getenv("POISON_MAX_BATCH_SIZE", "10")),
            max_retry_attempts=int(os.getenv("POISON_MAX_RETRY_ATTEMPTS", "3")),
            base_retry_delay_minutes=float(os.getenv("POISON_BASE_RETRY_DELAY_MINUTES", "2.0")),
            visibility_timeout_minutes=float(os.getenv("POISON_VISIBILITY_TIMEOUT_MINUTES", "5.0")),
            use_jitter=_env_bool("POISON_USE_JITTER", "true"),
            max_jitter_percentage=float(os.getenv("POISON_MAX_JITTER_PERCENTAGE", "0.3")),
            unparseable_policy=os.getenv("POISON_UNPARSEABLE_POLICY", "dead_letter"),
            sweep_interval_seconds=float(os.getenv("POISON_SWEEP_INTERVAL_SECONDS", "300")),
            processing_max_dequeue_count=int(os.getenv("PROCESSING_MAX_DEQUEUE_COUNT", "5")),
            processing_poll_interval_seconds=float(os.getenv("PROCESSING_POLL_INTERVAL_SECONDS", "5")),
            dead_letter_table_name=os.getenv("DEAD_LETTER_TABLE_NAME", "dead_letters"),
            dead_letter_write_attempts=int(os.getenv("DEAD_LETTER_WRITE_ATTEMPTS", "3")),
        )


class EndpointOptions(BaseModel):
    """External HL7 endpoint settings."""

    url: str = "http://localhost:7071/api/SubmitHL7Message"
    timeout_seconds: float = Field(default=30.0, gt=0)
    api_key: str = ""
    content_type: str = "text/plain"

    @classmethod
    def from_env(cls) -> "EndpointOptions":
        return cls(
            url=os.getenv("EXTERNAL_ENDPOINT_URL", "http://localhost:7071/api/SubmitHL7Message"),
            timeout_seconds=float(os.getenv("EXTERNAL_ENDPOINT_TIMEOUT_SECONDS", "30")),
            api_key=os.getenv("EXTERNAL_ENDPOINT_API_KEY", ""),
        )


class GatewaySettings(BaseModel):
    """All option groups, as wired by the worker runner."""

    idempotency: IdempotencyOptions = Field(default_factory=IdempotencyOptions)
    outbox: OutboxOptions = Field(default_factory=OutboxOptions)
    poison: PoisonQueueRetryOptions = Field(default_factory=PoisonQueueRetryOptions)
    endpoint: EndpointOptions = Field(default_factory=EndpointOptions)
    log_level: str = "INFO"
    log_structured: bool = True
    otlp_endpoint: Optional[str] = None

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        return cls(
            idempotency=IdempotencyOptions.from_env(),
            outbox=OutboxOptions.from_env(),
            poison=PoisonQueueRetryOptions.from_env(),
            endpoint=EndpointOptions.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_structured=_env_bool("LOG_STRUCTURED", "true"),
            otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or None,
        )

    def schema_tables(self) -> Dict[str, Any]:
        """Keyword arguments for ensure_schema() / schema_statements()."""
        return {
            "idempotency_table": self.idempotency.table_name,
            "outbox_table": self.outbox.table_name,
            "dead_letter_table": self.poison.dead_letter_table_name,
            "queue_names": [self.poison.processing_queue_name, self.poison.poison_queue_name],
        }
