"""Tests for notification routing, rendering and delivery."""

from unittest.mock import MagicMock

import httpx
import paramiko

from ipunblock.config import NotificationConfig
from ipunblock.core.enums import NotificationKind
from ipunblock.core.exceptions import ConnectionFailed
from ipunblock.services.notification_service import (
    NotificationService,
    admin_alert_request,
    classify_connection_error,
    connection_error_requests,
    render,
    report_request,
)


def test_report_recipients_are_deduplicated():
    req = report_request(
        "r1", "10.0.0.1", "da1.example.net", "ops@example.com", True,
        admin_email="OPS@example.com", copy_to="boss@example.com",
    )
    assert req.recipients == ["ops@example.com", "boss@example.com"]
    assert "blocked and unblocked" in req.subject


def test_admin_alert_goes_to_admin_only():
    req = admin_alert_request("no_evidence", "10.0.0.1", "admin@example.com", context={"email": "x@y.z"})
    assert req.kind == NotificationKind.ADMIN_ALERT
    assert req.recipients == ["admin@example.com"]


def test_classify_publickey_failure():
    cause = paramiko.AuthenticationException("Permission denied (publickey)")
    exc = ConnectionFailed("SSH connection failed to da1")
    exc.__cause__ = cause
    info = classify_connection_error(exc)
    assert info["critical"] is True
    assert info["likely_cause"] == "SSH key authentication failed"
    assert info["error_type"] == "ConnectionFailed"


def test_classify_unknown_failure_is_not_critical():
    info = classify_connection_error(ConnectionFailed("something odd"))
    assert info["critical"] is False
    assert "likely_cause" not in info


def test_connection_error_is_dual():
    requests = connection_error_requests(
        ConnectionFailed("Connection refused"), "10.0.0.1", "da1.example.net",
        requester="ops@example.com", admin_email="admin@example.com",
    )
    admin, user = requests
    assert admin.kind == NotificationKind.CONNECTION_ERROR_ADMIN
    assert admin.recipients == ["admin@example.com"]
    assert admin.context["suggested_action"] == "Check SSH service status and firewall rules"
    assert user.kind == NotificationKind.SYSTEM_ERROR_USER
    assert user.recipients == ["ops@example.com"]
    # the requester never sees diagnostics
    assert "refused" not in render(user)


def test_deliver_sends_mail():
    smtp = MagicMock()
    factory = MagicMock(return_value=smtp)
    smtp.__enter__.return_value = smtp
    svc = NotificationService(NotificationConfig(smtp_host="mail.local"), smtp_factory=factory)

    req = admin_alert_request("no_evidence", "10.0.0.1", "admin@example.com")
    assert svc.deliver(req) is True
    factory.assert_called_once_with("mail.local", 25, timeout=30)
    msg = smtp.send_message.call_args.args[0]
    assert msg["To"] == "admin@example.com"
    assert "IP address: 10.0.0.1" in msg.get_content()


def test_deliver_without_recipients_is_a_noop():
    factory = MagicMock()
    svc = NotificationService(NotificationConfig(), smtp_factory=factory)
    assert svc.deliver(admin_alert_request("no_evidence", "10.0.0.1", None)) is False
    factory.assert_not_called()


def test_webhook_receives_json():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    smtp = MagicMock()
    smtp.__enter__.return_value = smtp
    svc = NotificationService(
        NotificationConfig(webhook_url="https://hooks.example.com/x"),
        smtp_factory=MagicMock(return_value=smtp),
        http_client=client,
    )
    assert svc.deliver(admin_alert_request("no_evidence", "10.0.0.1", "admin@example.com")) is True
    assert len(seen) == 1
    assert b'"kind":"admin_alert"' in seen[0].content.replace(b" ", b"")
