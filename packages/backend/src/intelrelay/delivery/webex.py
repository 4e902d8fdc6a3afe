"""Webex delivery executor — sends one report delivery through the Webex Messages API.

Learn: deliver(job_id) is the only entry point the dispatcher calls.
It owns the delivery row's fate after an attempt:

  success            → COMPLETED (message_id, delivered_at)
  retryable failure  → retry_count + 1, stays PENDING while under max_retries
  anything else      → retry_count + 1, FAILED

Precondition failures (row missing, not PENDING, not WEBEX, no bot token)
raise WebexDeliveryError without touching the row. The dispatcher logs
them and audits a failure.

Two content modes:
- ATTACHMENT: multipart POST with the exported PDF/DOCX from export_dir.
  The export pipeline may still be writing it, so we wait 5s, 10s, 15s
  before giving up with a retryable EXPORT_NOT_READY.
- SUMMARY_LINK: JSON POST with a markdown summary and a link to the report.
"""

import asyncio
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import httpx
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from intelrelay.config import settings
from intelrelay.db.models import ReportDelivery
from intelrelay.delivery.base import DeliveryExecutor
from intelrelay.delivery.messages import build_attachment_message, build_summary_message
from intelrelay.delivery.types import (
    ContentType,
    DeliveryMethod,
    DeliveryResult,
    DeliveryStatus,
)

logger = structlog.get_logger()

MIME_TYPES = {
    "PDF": "application/pdf",
    "DOCX": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


class WebexDeliveryError(Exception):
    """A classified delivery failure.

    code is one of: AUTH_FAILED, RATE_LIMITED, ROOM_NOT_FOUND, NETWORK_ERROR,
    API_ERROR, INVALID_DESTINATION, EXPORT_NOT_READY.
    """

    def __init__(
        self,
        message: str,
        code: str,
        retryable: bool = False,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable
        self.status_code = status_code


class DeliveryNotFoundError(WebexDeliveryError):
    def __init__(self, delivery_id: str):
        super().__init__(
            f"Delivery {delivery_id} not found", "INVALID_DESTINATION", False
        )


def api_error(status_code: int, body: str) -> WebexDeliveryError:
    """Map a non-2xx Webex response to a classified error."""
    code, retryable = "API_ERROR", False
    if status_code == 401:
        code = "AUTH_FAILED"
    elif status_code == 404:
        code = "ROOM_NOT_FOUND"
    elif status_code == 429:
        code, retryable = "RATE_LIMITED", True
    elif status_code in (500, 502, 503):
        retryable = True
    return WebexDeliveryError(
        f"Webex API error ({status_code}): {body}", code, retryable, status_code
    )


def classify_error(error: Exception) -> WebexDeliveryError:
    """Normalize any send-time exception to a WebexDeliveryError."""
    if isinstance(error, WebexDeliveryError):
        return error
    if isinstance(error, httpx.TransportError):
        # connect refused, DNS failure, timeouts
        return WebexDeliveryError(f"Network error: {error}", "NETWORK_ERROR", True)
    return WebexDeliveryError(str(error) or type(error).__name__, "API_ERROR", False)


def _attachment_filename(title: str, fmt: str) -> str:
    stem = re.sub(r"[^A-Za-z0-9]+", "-", title).strip("-").lower() or "report"
    return f"{stem[:80]}.{fmt.lower()}"


class WebexDeliveryService(DeliveryExecutor):
    """Delivery executor backed by the Webex REST API.

    Learn: The httpx client can be injected (tests pass one built on
    httpx.MockTransport). When we create it ourselves, aclose() closes it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        client: Optional[httpx.AsyncClient] = None,
        bot_token: Optional[str] = None,
        api_base_url: Optional[str] = None,
        frontend_url: Optional[str] = None,
        export_dir: Optional[str] = None,
        export_wait_seconds: float = 5.0,
        export_wait_attempts: int = 3,
    ):
        self.session_factory = session_factory
        self.bot_token = bot_token if bot_token is not None else settings.webex_bot_token
        self.api_base_url = (api_base_url or settings.webex_api_base_url).rstrip("/")
        self.frontend_url = frontend_url or settings.frontend_url
        self.export_dir = Path(export_dir or settings.export_dir)
        self.export_wait_seconds = export_wait_seconds
        self.export_wait_attempts = export_wait_attempts
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=settings.webex_request_timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # ─── Entry point ──────────────────────────────────────

    async def deliver(self, job_id: str) -> DeliveryResult:
        log = logger.bind(delivery_id=job_id)
        log.info("webex.delivery_attempt")

        delivery = await self._load_delivery(job_id)
        if not delivery:
            log.error("webex.delivery_not_found")
            raise DeliveryNotFoundError(job_id)

        if delivery.status != DeliveryStatus.PENDING:
            log.warning("webex.delivery_not_pending", status=delivery.status)
            raise WebexDeliveryError(
                "Delivery is not pending", "INVALID_DESTINATION", False
            )

        if delivery.method != DeliveryMethod.WEBEX:
            log.error("webex.delivery_wrong_method", method=delivery.method)
            raise WebexDeliveryError(
                "Delivery method is not WEBEX", "INVALID_DESTINATION", False
            )

        if not self.bot_token:
            log.error("webex.bot_token_missing")
            raise WebexDeliveryError(
                "Webex bot token not configured", "AUTH_FAILED", False
            )

        try:
            if delivery.content_type == ContentType.ATTACHMENT:
                message = await self._send_with_attachment(delivery)
            else:
                message = await self._send_with_summary_link(delivery)
        except Exception as e:
            error = classify_error(e)
            retry_count = delivery.retry_count + 1
            should_retry = error.retryable and retry_count < delivery.max_retries

            await self._record_failure(
                job_id, error.message, retry_count, retry=should_retry
            )
            log.error(
                "webex.delivery_failed",
                code=error.code,
                error=error.message,
                retry_count=retry_count,
                will_retry=should_retry,
            )
            return DeliveryResult.failure(error.message)

        delivered_at = datetime.now(timezone.utc)
        message_id = message.get("id")
        await self._record_success(job_id, message_id, delivered_at)
        log.info("webex.delivery_sent", message_id=message_id)

        return DeliveryResult(
            success=True, message_id=message_id, delivered_at=delivered_at
        )

    # ─── Sending ──────────────────────────────────────────

    def _destination_fields(self, delivery: ReportDelivery) -> dict[str, str]:
        if delivery.destination_type == "email":
            return {"toPersonEmail": delivery.destination}
        return {"roomId": delivery.destination}

    async def _post_message(self, **kwargs) -> dict:
        response = await self.client.post(
            f"{self.api_base_url}/messages",
            headers={"Authorization": f"Bearer {self.bot_token}"},
            **kwargs,
        )
        if not response.is_success:
            raise api_error(response.status_code, response.text)
        return response.json()

    async def _send_with_summary_link(self, delivery: ReportDelivery) -> dict:
        body = {
            **self._destination_fields(delivery),
            "markdown": build_summary_message(delivery.report, self.frontend_url),
        }
        return await self._post_message(json=body)

    async def _send_with_attachment(self, delivery: ReportDelivery) -> dict:
        fmt = (delivery.format or "PDF").upper()
        path = await self._wait_for_export(delivery.report_id, fmt)
        content = await asyncio.to_thread(path.read_bytes)

        files = {
            "files": (
                _attachment_filename(delivery.report.title, fmt),
                content,
                MIME_TYPES.get(fmt, "application/octet-stream"),
            )
        }
        data = {
            **self._destination_fields(delivery),
            "markdown": build_attachment_message(delivery.report),
        }
        return await self._post_message(data=data, files=files)

    def export_path(self, report_id, fmt: str) -> Path:
        return self.export_dir / f"{report_id}.{fmt.lower()}"

    async def _wait_for_export(self, report_id, fmt: str) -> Path:
        """Return the export file, waiting with linear backoff if it isn't there yet."""
        path = self.export_path(report_id, fmt)
        if path.is_file():
            return path

        for attempt in range(1, self.export_wait_attempts + 1):
            wait = self.export_wait_seconds * attempt
            logger.info(
                "webex.export_wait",
                report_id=str(report_id),
                format=fmt,
                attempt=attempt,
                wait_seconds=wait,
            )
            await asyncio.sleep(wait)
            if path.is_file():
                return path

        raise WebexDeliveryError(
            f"Export not ready after {self.export_wait_attempts} retries",
            "EXPORT_NOT_READY",
            True,
        )

    # ─── Persistence ──────────────────────────────────────

    async def _load_delivery(self, job_id: str) -> Optional[ReportDelivery]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ReportDelivery)
                .options(selectinload(ReportDelivery.report))
                .where(ReportDelivery.id == uuid.UUID(job_id))
            )
            return result.scalars().first()

    async def _record_success(
        self, job_id: str, message_id: Optional[str], delivered_at: datetime
    ) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(ReportDelivery)
                .where(
                    ReportDelivery.id == uuid.UUID(job_id),
                    ReportDelivery.status == DeliveryStatus.PENDING,
                )
                .values(
                    status=DeliveryStatus.COMPLETED,
                    message_id=message_id,
                    delivered_at=delivered_at,
                    error=None,
                )
            )
            await db.commit()

    async def _record_failure(
        self, job_id: str, error: str, retry_count: int, *, retry: bool
    ) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(ReportDelivery)
                .where(
                    ReportDelivery.id == uuid.UUID(job_id),
                    ReportDelivery.status == DeliveryStatus.PENDING,
                )
                .values(
                    status=DeliveryStatus.PENDING if retry else DeliveryStatus.FAILED,
                    error=error,
                    retry_count=retry_count,
                )
            )
            await db.commit()
