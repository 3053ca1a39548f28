"""Notification service — builds, renders and delivers NotificationRequests.

Mail goes out over SMTP; when a webhook URL is configured the same
request is POSTed as JSON. Rendering is plain text.
"""

from __future__ import annotations

import logging
import smtplib
import time
from email.message import EmailMessage
from typing import Any, Callable, Dict, List, Optional

import httpx

from ipunblock.config import NotificationConfig, get_config
from ipunblock.core.enums import NotificationKind
from ipunblock.core.protocols import NotificationRequest

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Substrings that mark an SSH failure as something an admin must fix by hand
_CRITICAL_PATTERNS = (
    "proc_open",
    "error in libcrypto",
    "Permission denied (publickey)",
    "Connection refused",
    "Connection timed out",
    "Host key verification failed",
)

_DIAGNOSTICS = (
    ("libcrypto", "SSH key format issue (line endings or corruption)",
     "Verify SSH key format and line endings"),
    ("Permission denied (publickey)", "SSH key authentication failed",
     "Verify SSH key is correctly installed on remote server"),
    ("Connection refused", "SSH service not running or port blocked",
     "Check SSH service status and firewall rules"),
    ("timed out", "Host unreachable or SSH port filtered",
     "Check network reachability and the configured SSH port"),
    ("Host key verification failed", "Remote host key changed or unknown",
     "Confirm the host identity and update known_hosts"),
)


def classify_connection_error(exc: BaseException) -> Dict[str, Any]:
    """Diagnostic summary for an SSH failure, attached to the admin alert."""
    message = str(exc)
    cause = exc.__cause__
    if cause is not None and str(cause) not in message:
        message = f"{message} ({cause})"

    info: Dict[str, Any] = {
        "error_type": type(exc).__name__,
        "error_message": message,
        "critical": any(p.lower() in message.lower() for p in _CRITICAL_PATTERNS),
    }
    for needle, cause_text, action in _DIAGNOSTICS:
        if needle.lower() in message.lower():
            info["likely_cause"] = cause_text
            info["suggested_action"] = action
            break
    return info


def _dedupe(addresses: List[Optional[str]]) -> List[str]:
    seen: List[str] = []
    for addr in addresses:
        if addr and addr.lower() not in (s.lower() for s in seen):
            seen.append(addr)
    return seen


# ── Request builders ──


def report_request(
    report_id: str,
    ip: str,
    host_fqdn: str,
    requester: str,
    was_blocked: bool,
    admin_email: str | None = None,
    copy_to: str | None = None,
    context: Dict[str, Any] | None = None,
) -> NotificationRequest:
    """Authenticated report: requester, admin copy, optional copy user."""
    status = "blocked and unblocked" if was_blocked else "not blocked"
    return NotificationRequest(
        kind=NotificationKind.REPORT,
        recipients=_dedupe([requester, admin_email, copy_to]),
        subject=f"Firewall report for {ip} on {host_fqdn}: {status}",
        report_id=report_id,
        ip=ip,
        host_fqdn=host_fqdn,
        context=context or {},
    )


def simple_success_request(
    report_id: str, ip: str, domain: str, email: str, host_fqdn: str,
    admin_email: str | None = None, context: Dict[str, Any] | None = None,
) -> NotificationRequest:
    return NotificationRequest(
        kind=NotificationKind.SIMPLE_UNBLOCK_SUCCESS,
        recipients=_dedupe([email, admin_email]),
        subject=f"Your IP {ip} has been unblocked for {domain}",
        report_id=report_id,
        reason="firewall_evidence",
        ip=ip,
        host_fqdn=host_fqdn,
        context={"domain": domain, **(context or {})},
    )


def admin_alert_request(
    reason: str, ip: str, admin_email: str | None = None,
    host_fqdn: str | None = None, report_id: str | None = None,
    context: Dict[str, Any] | None = None,
) -> NotificationRequest:
    """Silent alert: the requester is never told."""
    return NotificationRequest(
        kind=NotificationKind.ADMIN_ALERT,
        recipients=_dedupe([admin_email]),
        subject=f"[ipunblock] {reason} for {ip}",
        report_id=report_id,
        reason=reason,
        ip=ip,
        host_fqdn=host_fqdn,
        context=context or {},
    )


def connection_error_requests(
    exc: BaseException, ip: str, host_fqdn: str,
    requester: str | None = None, admin_email: str | None = None,
    critical_host: bool = False,
) -> List[NotificationRequest]:
    """The dual notification for a failed SSH connection.

    The admin gets the diagnostic; the requester gets a generic notice.
    """
    diagnostic = classify_connection_error(exc)
    diagnostic["critical"] = diagnostic["critical"] or critical_host
    requests = [
        NotificationRequest(
            kind=NotificationKind.CONNECTION_ERROR_ADMIN,
            recipients=_dedupe([admin_email]),
            subject=(
                f"[ipunblock]{' CRITICAL' if diagnostic['critical'] else ''} "
                f"SSH connection failed to {host_fqdn}"
            ),
            reason="connection_failed",
            ip=ip,
            host_fqdn=host_fqdn,
            context=diagnostic,
        )
    ]
    if requester:
        requests.append(
            NotificationRequest(
                kind=NotificationKind.SYSTEM_ERROR_USER,
                recipients=[requester],
                subject=f"We could not check {ip} right now",
                reason="system_error",
                ip=ip,
                host_fqdn=host_fqdn,
            )
        )
    return requests


# ── Rendering ──


def render(request: NotificationRequest) -> str:
    lines = [request.subject, ""]
    if request.kind == NotificationKind.SYSTEM_ERROR_USER:
        lines.append(
            "A temporary problem prevented us from checking the firewall. "
            "Our administrators have been notified; please try again later."
        )
        return "\n".join(lines) + "\n"

    if request.ip:
        lines.append(f"IP address: {request.ip}")
    if request.host_fqdn:
        lines.append(f"Server: {request.host_fqdn}")
    if request.reason:
        lines.append(f"Reason: {request.reason}")
    if request.report_id:
        lines.append(f"Report: {request.report_id}")
    if request.context:
        lines.append("")
        for key, value in request.context.items():
            if isinstance(value, (dict, list)):
                continue
            lines.append(f"{key.replace('_', ' ').capitalize()}: {value}")
    return "\n".join(lines) + "\n"


class NotificationService:
    def __init__(
        self,
        config: NotificationConfig | None = None,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
        http_client: httpx.Client | None = None,
    ):
        self._cfg = config or get_config().notifications
        self._smtp_factory = smtp_factory
        self._http = http_client

    @property
    def admin_email(self) -> Optional[str]:
        return self._cfg.admin_email

    def deliver(self, request: NotificationRequest) -> bool:
        """Send one request. Returns False when nothing was delivered."""
        if not self._cfg.enabled:
            logger.info("Notifications disabled; dropping %s", request.kind.value)
            return False
        if not request.recipients:
            logger.warning("Notification %s has no recipients", request.kind.value)
            return False

        delivered = self._send_mail(request)
        if self._cfg.webhook_url:
            delivered = self._post_webhook(request) or delivered
        return delivered

    def _send_mail(self, request: NotificationRequest) -> bool:
        msg = EmailMessage()
        msg["From"] = self._cfg.from_address
        msg["To"] = ", ".join(request.recipients)
        msg["Subject"] = request.subject
        msg.set_content(render(request))
        try:
            with self._smtp_factory(self._cfg.smtp_host, self._cfg.smtp_port, timeout=30) as smtp:
                if self._cfg.smtp_starttls:
                    smtp.starttls()
                if self._cfg.smtp_username:
                    smtp.login(self._cfg.smtp_username, self._cfg.smtp_password or "")
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send %s mail to %s: %s", request.kind.value, request.recipients, e)
            return False
        logger.info("Sent %s mail to %s", request.kind.value, request.recipients)
        return True

    def _post_webhook(self, request: NotificationRequest, max_retries: int = 3) -> bool:
        """POST the request as JSON, retrying transient failures with backoff."""
        client = self._http or httpx.Client(timeout=10.0)
        payload = request.model_dump(mode="json")
        try:
            for attempt in range(1, max_retries + 1):
                try:
                    resp = client.post(self._cfg.webhook_url, json=payload)
                    resp.raise_for_status()
                    return True
                except httpx.HTTPStatusError as e:
                    if e.response.status_code not in _RETRYABLE_STATUS_CODES:
                        logger.error("Webhook rejected %s: %s", request.kind.value, e)
                        return False
                    logger.warning(
                        "Webhook error %d (attempt %d/%d)",
                        e.response.status_code, attempt, max_retries,
                    )
                except httpx.TransportError as e:
                    logger.warning(
                        "Webhook network error (attempt %d/%d): %s", attempt, max_retries, e,
                    )
                if attempt < max_retries:
                    time.sleep(0.5 * (2 ** (attempt - 1)))
        finally:
            if self._http is None:
                client.close()
        logger.error("Webhook delivery failed for %s after %d attempts", request.kind.value, max_retries)
        return False
