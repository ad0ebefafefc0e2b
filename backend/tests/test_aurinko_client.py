from datetime import datetime, timezone

import httpx
import pytest

from bizzybee.aurinko_service import (
    AurinkoClient,
    MailboxApiError,
    MailboxAuthError,
    RateLimitError,
    TransientUpstreamError,
    calculate_backoff_s,
    message_to_staging_row,
    parse_retry_after,
)


def _client(handler) -> AurinkoClient:
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return AurinkoClient("tok_123", base_url="https://aurinko.test", http=http)


def test_list_messages_sends_folder_limit_and_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"records": [{"id": "m1"}, {"id": "m2"}], "nextPageToken": "p2"})

    page = _client(handler).list_messages("SENT", 50, "p1")

    assert seen["path"] == "/v1/email/messages"
    assert seen["params"] == {"folder": "SENT", "limit": "50", "pageToken": "p1"}
    assert seen["auth"] == "Bearer tok_123"
    assert [m["id"] for m in page.records] == ["m1", "m2"]
    assert page.next_page_token == "p2"


def test_list_messages_last_page_has_no_token():
    page = _client(lambda r: httpx.Response(200, json={"messages": [{"id": "m9"}]})).list_messages("INBOX", 10)
    assert page.next_page_token is None
    assert len(page.records) == 1


def test_get_message_requests_full_body():
    def handler(request):
        assert request.url.params["bodyType"] == "full"
        return httpx.Response(200, json={"id": "m1", "textBody": "hi"})

    assert _client(handler).get_message("m1")["textBody"] == "hi"


def test_401_maps_to_auth_error():
    with pytest.raises(MailboxAuthError) as exc:
        _client(lambda r: httpx.Response(401)).list_messages("SENT", 10)
    assert "reconnect" in str(exc.value).lower()


def test_429_uses_retry_after_seconds():
    with pytest.raises(RateLimitError) as exc:
        _client(lambda r: httpx.Response(429, headers={"Retry-After": "12"})).list_messages("SENT", 10)
    assert exc.value.retry_after_s == 12


def test_429_without_header_defaults_to_thirty_seconds():
    with pytest.raises(RateLimitError) as exc:
        _client(lambda r: httpx.Response(429)).list_messages("SENT", 10)
    assert exc.value.retry_after_s == 30


def test_5xx_is_transient_and_4xx_is_not():
    with pytest.raises(TransientUpstreamError):
        _client(lambda r: httpx.Response(503)).list_messages("SENT", 10)
    with pytest.raises(MailboxApiError) as exc:
        _client(lambda r: httpx.Response(404, text="nope")).list_messages("SENT", 10)
    assert exc.value.status_code == 404


def test_transport_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("boom", request=request)

    with pytest.raises(TransientUpstreamError):
        _client(handler).list_messages("SENT", 10)


def test_parse_retry_after_http_date():
    now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    assert parse_retry_after("Thu, 01 Jan 2026 12:00:45 GMT", now=now) == 45
    assert parse_retry_after("Thu, 01 Jan 2026 11:00:00 GMT", now=now) == 0
    assert parse_retry_after("garbage") is None
    assert parse_retry_after(None) is None


def test_backoff_is_capped():
    assert calculate_backoff_s(0, base_s=1, max_s=30) < 2
    assert calculate_backoff_s(10, base_s=1, max_s=30) == 30


def test_staging_row_direction_and_html_fallback():
    message = {
        "id": "m1",
        "threadId": "t1",
        "from": {"address": "Jane@Example.com", "name": "Jane"},
        "to": [{"address": "owner@bizzy.example"}],
        "subject": "Quote",
        "htmlBody": "<p>Hello&nbsp;there</p><style>p{}</style>",
        "receivedAt": "2026-01-02T03:04:05Z",
    }
    row = message_to_staging_row(message, "ws_1", 1, "job_1", "INBOX")
    assert row["direction"] == "inbound"
    assert row["from_email"] == "jane@example.com"
    assert row["body"] == "Hello there"
    assert row["has_body"] is True
    assert row["received_at"] == datetime(2026, 1, 2, 3, 4, 5)

    assert message_to_staging_row(dict(message, id="m2"), "ws_1", 1, "job_1", "SENT")["direction"] == "outbound"
    assert message_to_staging_row({"subject": "no id"}, "ws_1", 1, None, "SENT") is None
