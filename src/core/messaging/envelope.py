"""
Queue Envelope

The unit of work carried on the processing and poison channels. Its
retry_count travels with the envelope: a scheduled retry enqueues a new
envelope with the incremented count and removes the old one.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, Field, ValidationError

from ..exceptions import EnvelopeFormatError


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class PoisonEnvelope(BaseModel):
    """An encoded HL7 message plus its delivery bookkeeping."""

    payload: str = Field(min_length=1)
    correlation_id: str
    retry_count: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=_utcnow)
    source_reference: str = ""

    def to_message(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_message(cls, body: str) -> "PoisonEnvelope":
        """
        Parse a channel message body.

        Raises:
            EnvelopeFormatError: If the body is not a valid envelope
        """
        try:
            return cls.model_validate_json(body)
        except ValidationError as e:
            raise EnvelopeFormatError(f"Unparseable envelope: {e.error_count()} error(s)") from e

    def next_attempt(self) -> "PoisonEnvelope":
        """A copy carrying the incremented retry count."""
        return self.model_copy(update={"retry_count": self.retry_count + 1})
