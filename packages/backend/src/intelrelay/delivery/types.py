"""Value objects passed between the dispatcher and its collaborators.

Learn: The dispatcher never sees ORM rows. The job store converts each
report_deliveries row into a DeliveryJob, and the executor answers with
a DeliveryResult. Both are plain dataclasses so the dispatcher can be
tested with in-memory fakes and no database.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class DeliveryStatus:
    """Persisted delivery statuses.

    PROCESSING is never written to the store. It only exists as
    membership in a dispatcher's in-flight set.
    """

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class DeliveryMethod:
    DOWNLOAD = "DOWNLOAD"
    WEBEX = "WEBEX"


class ContentType:
    ATTACHMENT = "ATTACHMENT"
    SUMMARY_LINK = "SUMMARY_LINK"


STALE_ERROR_MESSAGE = "Delivery timed out after maximum retries"


@dataclass
class DeliveryJob:
    """One delivery job as the dispatcher sees it."""

    id: str
    status: str
    method: str
    destination: str
    content_type: str
    created_at: datetime
    retry_count: int = 0
    error: Optional[str] = None


@dataclass
class DeliveryResult:
    """Outcome of one delivery attempt.

    Learn: A business failure (Webex said no) comes back as
    success=False with an error. An exception raised by the executor
    is converted by the dispatcher into the same shape before auditing.
    """

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    delivered_at: Optional[datetime] = None

    @classmethod
    def failure(cls, error: str) -> "DeliveryResult":
        return cls(success=False, error=error)
