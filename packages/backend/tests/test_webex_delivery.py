"""Webex delivery executor tests.

Learn: The Webex API is replaced by httpx.MockTransport, and the three
persistence hooks (_load_delivery, _record_success, _record_failure) are
patched with AsyncMock, so these run without Postgres or network.

Tests cover:
1. SUMMARY_LINK and ATTACHMENT request shapes
2. Email vs room destinations
3. Retry bookkeeping: retryable errors stay PENDING until max_retries
4. Precondition failures raise without touching the row
5. HTTP status → error code mapping
"""

import json
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import ANY, AsyncMock

import httpx
import pytest

from intelrelay.delivery.types import ContentType, DeliveryStatus
from intelrelay.delivery.webex import (
    DeliveryNotFoundError,
    WebexDeliveryError,
    WebexDeliveryService,
    api_error,
    classify_error,
)


API = "https://webex.test/v1"


def _delivery(**overrides):
    report = SimpleNamespace(
        id=uuid.UUID("11111111-2222-3333-4444-555555555555"),
        title="Acme Corp Q3 Account Review",
        workflow_type="ACCOUNT_INTELLIGENCE",
        input_data={"companyName": "Acme Corp"},
        generated_content={
            "executive_summary": {"content": "Acme is expanding into EMEA."},
            "key_risks": {"content": "Supply chain."},
        },
        created_at=datetime(2026, 9, 1, 8, 0, tzinfo=timezone.utc),
        completed_at=datetime(2026, 9, 1, 8, 5, tzinfo=timezone.utc),
    )
    fields = dict(
        id=uuid.uuid4(),
        report_id=report.id,
        report=report,
        method="WEBEX",
        status=DeliveryStatus.PENDING,
        destination="pat@example.com",
        destination_type="email",
        content_type=ContentType.SUMMARY_LINK,
        format=None,
        retry_count=0,
        max_retries=3,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


class WebexRecorder:
    """MockTransport handler that records requests and replies with a canned response."""

    def __init__(self, status_code=200, body=None, exc=None):
        self.status_code = status_code
        self.body = body if body is not None else {"id": "msg-123", "roomId": "room-1"}
        self.exc = exc
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.exc is not None:
            raise self.exc
        if isinstance(self.body, str):
            return httpx.Response(self.status_code, text=self.body)
        return httpx.Response(self.status_code, json=self.body)


def _service(recorder, delivery, tmp_path, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    service = WebexDeliveryService(
        session_factory=None,
        client=client,
        bot_token=kwargs.pop("bot_token", "bot-token"),
        api_base_url=API,
        frontend_url="https://app.test",
        export_dir=str(tmp_path),
        export_wait_seconds=0,
        **kwargs,
    )
    service._load_delivery = AsyncMock(return_value=delivery)
    service._record_success = AsyncMock()
    service._record_failure = AsyncMock()
    return service


# ═══════════════════════════════════════════════════════════
# Successful sends
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_summary_link_to_email(tmp_path):
    delivery = _delivery()
    recorder = WebexRecorder()
    service = _service(recorder, delivery, tmp_path)

    result = await service.deliver(str(delivery.id))

    assert result.success is True
    assert result.message_id == "msg-123"
    assert result.delivered_at is not None

    request = recorder.requests[0]
    assert request.method == "POST"
    assert str(request.url) == f"{API}/messages"
    assert request.headers["Authorization"] == "Bearer bot-token"

    body = json.loads(request.content)
    assert body["toPersonEmail"] == "pat@example.com"
    assert "roomId" not in body
    assert "Acme Corp Q3 Account Review" in body["markdown"]
    assert (
        "[View Full Report](https://app.test/reports/11111111-2222-3333-4444-555555555555)"
        in body["markdown"]
    )

    service._record_success.assert_awaited_once_with(str(delivery.id), "msg-123", ANY)
    service._record_failure.assert_not_awaited()


@pytest.mark.asyncio
async def test_room_destination_uses_room_id(tmp_path):
    delivery = _delivery(destination="Y2lzY29zcGFyazovL3Jvb20", destination_type="room")
    recorder = WebexRecorder()
    service = _service(recorder, delivery, tmp_path)

    await service.deliver(str(delivery.id))

    body = json.loads(recorder.requests[0].content)
    assert body["roomId"] == "Y2lzY29zcGFyazovL3Jvb20"
    assert "toPersonEmail" not in body


@pytest.mark.asyncio
async def test_attachment_sends_exported_file(tmp_path):
    delivery = _delivery(content_type=ContentType.ATTACHMENT, format="PDF")
    (tmp_path / f"{delivery.report_id}.pdf").write_bytes(b"%PDF-1.7 fake report")
    recorder = WebexRecorder()
    service = _service(recorder, delivery, tmp_path)

    result = await service.deliver(str(delivery.id))

    assert result.success is True
    request = recorder.requests[0]
    assert request.headers["Content-Type"].startswith("multipart/form-data")
    content = request.content
    assert b"%PDF-1.7 fake report" in content
    assert b'filename="acme-corp-q3-account-review.pdf"' in content
    assert b"application/pdf" in content
    assert b"pat@example.com" in content
    assert b"Report attached below." in content


# ═══════════════════════════════════════════════════════════
# Failures + retry bookkeeping
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_missing_export_is_retryable(tmp_path):
    delivery = _delivery(content_type=ContentType.ATTACHMENT, format="DOCX")
    recorder = WebexRecorder()
    service = _service(recorder, delivery, tmp_path)

    result = await service.deliver(str(delivery.id))

    assert result.success is False
    assert "Export not ready after 3 retries" in result.error
    assert recorder.requests == []
    service._record_failure.assert_awaited_once_with(
        str(delivery.id), result.error, 1, retry=True
    )


@pytest.mark.asyncio
async def test_rate_limit_on_last_retry_fails_for_good(tmp_path):
    delivery = _delivery(retry_count=2, max_retries=3)
    recorder = WebexRecorder(status_code=429, body="slow down")
    service = _service(recorder, delivery, tmp_path)

    result = await service.deliver(str(delivery.id))

    assert result.success is False
    assert result.error == "Webex API error (429): slow down"
    service._record_failure.assert_awaited_once_with(
        str(delivery.id), result.error, 3, retry=False
    )


@pytest.mark.asyncio
async def test_server_error_is_retried(tmp_path):
    delivery = _delivery(retry_count=0)
    recorder = WebexRecorder(status_code=503, body="unavailable")
    service = _service(recorder, delivery, tmp_path)

    await service.deliver(str(delivery.id))

    service._record_failure.assert_awaited_once_with(str(delivery.id), ANY, 1, retry=True)


@pytest.mark.asyncio
async def test_auth_failure_is_not_retried(tmp_path):
    delivery = _delivery()
    recorder = WebexRecorder(status_code=401, body="bad token")
    service = _service(recorder, delivery, tmp_path)

    result = await service.deliver(str(delivery.id))

    assert result.success is False
    assert "401" in result.error
    service._record_failure.assert_awaited_once_with(str(delivery.id), ANY, 1, retry=False)
    service._record_success.assert_not_awaited()


@pytest.mark.asyncio
async def test_network_error_is_retryable(tmp_path):
    delivery = _delivery()
    recorder = WebexRecorder(exc=httpx.ConnectError("connection refused"))
    service = _service(recorder, delivery, tmp_path)

    result = await service.deliver(str(delivery.id))

    assert result.error.startswith("Network error:")
    service._record_failure.assert_awaited_once_with(str(delivery.id), ANY, 1, retry=True)


# ═══════════════════════════════════════════════════════════
# Preconditions
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_missing_delivery_raises(tmp_path):
    recorder = WebexRecorder()
    service = _service(recorder, None, tmp_path)

    with pytest.raises(DeliveryNotFoundError):
        await service.deliver(str(uuid.uuid4()))
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_non_pending_delivery_raises(tmp_path):
    delivery = _delivery(status=DeliveryStatus.COMPLETED)
    recorder = WebexRecorder()
    service = _service(recorder, delivery, tmp_path)

    with pytest.raises(WebexDeliveryError, match="not pending"):
        await service.deliver(str(delivery.id))

    assert recorder.requests == []
    service._record_failure.assert_not_awaited()


@pytest.mark.asyncio
async def test_non_webex_delivery_raises(tmp_path):
    delivery = _delivery(method="DOWNLOAD")
    service = _service(WebexRecorder(), delivery, tmp_path)

    with pytest.raises(WebexDeliveryError, match="not WEBEX"):
        await service.deliver(str(delivery.id))


@pytest.mark.asyncio
async def test_missing_bot_token_raises(tmp_path):
    delivery = _delivery()
    service = _service(WebexRecorder(), delivery, tmp_path, bot_token="")

    with pytest.raises(WebexDeliveryError) as exc_info:
        await service.deliver(str(delivery.id))

    assert exc_info.value.code == "AUTH_FAILED"
    assert exc_info.value.retryable is False


# ═══════════════════════════════════════════════════════════
# Error classification
# ═══════════════════════════════════════════════════════════


@pytest.mark.parametrize(
    "status_code,code,retryable",
    [
        (401, "AUTH_FAILED", False),
        (404, "ROOM_NOT_FOUND", False),
        (413, "API_ERROR", False),
        (429, "RATE_LIMITED", True),
        (500, "API_ERROR", True),
        (502, "API_ERROR", True),
        (503, "API_ERROR", True),
        (400, "API_ERROR", False),
    ],
)
def test_api_error_mapping(status_code, code, retryable):
    error = api_error(status_code, "body")

    assert error.code == code
    assert error.retryable is retryable
    assert error.status_code == status_code


def test_classify_passes_through_webex_errors():
    original = WebexDeliveryError("nope", "ROOM_NOT_FOUND")
    assert classify_error(original) is original


def test_classify_unknown_exception():
    error = classify_error(ValueError("weird payload"))

    assert error.code == "API_ERROR"
    assert error.retryable is False
    assert error.message == "weird payload"
