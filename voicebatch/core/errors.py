"""
Error taxonomy shared by the vendor client, the enrichment cache and the pollers.
"""
import enum
from typing import Optional


class TransportErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


class TransportError(Exception):
    """A vendor call failed. The kind is a classification, not a decision."""

    def __init__(
        self,
        kind: TransportErrorKind,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after

    def __str__(self):
        if self.status_code:
            return f"{self.kind.value} ({self.status_code}): {self.message}"
        return f"{self.kind.value}: {self.message}"


class EnrichmentFailure(Exception):
    """
    A conversation could not be enriched during this cycle. `final` means the
    cache has given up on it and later cycles will not fetch it again.
    """

    def __init__(self, conversation_id: str, cause: Exception, attempts: int = 1, final: bool = False):
        super().__init__(f"Enrichment failed for conversation {conversation_id}: {cause}")
        self.conversation_id = conversation_id
        self.cause = cause
        self.attempts = attempts
        self.final = final

    @property
    def rate_limited(self) -> bool:
        return isinstance(self.cause, TransportError) and self.cause.kind == TransportErrorKind.RATE_LIMITED

    @property
    def retry_after(self) -> Optional[float]:
        return self.cause.retry_after if isinstance(self.cause, TransportError) else None


class CampaignDegraded(Exception):
    """Status polling exhausted its retry budget."""

    def __init__(self, campaign_id: str, failures: int, last_error: Exception):
        super().__init__(
            f"Campaign {campaign_id} degraded after {failures} consecutive status failures: {last_error}"
        )
        self.campaign_id = campaign_id
        self.failures = failures
        self.last_error = last_error


class NotTracked(Exception):
    def __init__(self, campaign_id: str):
        super().__init__(f"Campaign {campaign_id} is not tracked")
        self.campaign_id = campaign_id
