"""Firewall orchestrator — the two check flows, end to end.

Authenticated:  VALIDATE_INPUT → ANALYZE → UNBLOCK (if blocked)
                → PERSIST_REPORT + AUDIT (one commit) → NOTIFY
Anonymous:      LOAD_HOST → LOCK_PRECHECK → VALIDATE_DOMAIN → ANALYZE + LOG_SEARCH
                → DECIDE → LOCK + UNBLOCK → PERSIST_REPORT + AUDIT → NOTIFY

The anonymous lock is released again when this unit claimed it and the
unblock then failed, so a retry starts from a clean slate.

Validation errors are raised before any SSH and leave no report. Remote
failures are audited on their own transaction and re-raised.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ipunblock import database
from ipunblock.config import get_config
from ipunblock.core.enums import AuditAction, CheckFlow, DecisionReason
from ipunblock.core.exceptions import (
    AccessDenied,
    ConnectionFailed,
    FirewallError,
    InvalidInput,
    LockUnavailable,
    ReportPersistenceFailed,
)
from ipunblock.core.protocols import (
    CheckOutcome,
    HealthStatus,
    NotificationRequest,
    SimpleUnblockJob,
)
from ipunblock.kernel.csf_parser import is_valid_ip
from ipunblock.kernel.decision_engine import Decision, decide
from ipunblock.kernel.registry import AnalyzerRegistry
from ipunblock.models.host import Host, User
from ipunblock.models.report import Report
from ipunblock.services.audit_service import AuditService
from ipunblock.services.domain_service import DomainService, normalize_domain
from ipunblock.services.lock_service import LockService
from ipunblock.services.notification_service import (
    NotificationService,
    admin_alert_request,
    connection_error_requests,
    report_request,
    simple_success_request,
)
from ipunblock.services.report_service import ReportService
from ipunblock.services.ssh_service import SshConnectionManager
from ipunblock.services.unblock_service import UnblockOutcome, UnblockService

logger = logging.getLogger(__name__)


class FirewallOrchestrator:
    """Runs one check unit. Not thread-safe: build one per worker."""

    def __init__(
        self,
        session: Session | None = None,
        registry: AnalyzerRegistry | None = None,
        ssh_manager: SshConnectionManager | None = None,
        lock: LockService | None = None,
        notifier: NotificationService | None = None,
        dispatch: Callable[[NotificationRequest], Any] | None = None,
        notify_connection_errors: bool | None = None,
    ):
        self._session = session
        self.registry = registry or AnalyzerRegistry.create_default()
        self._ssh_manager = ssh_manager
        self._lock = lock
        self._notifier = notifier
        self._dispatch = dispatch
        if notify_connection_errors is None:
            notify_connection_errors = get_config().notifications.notify_connection_failures
        self.notify_connection_errors = notify_connection_errors

    # ── Collaborators ──

    @property
    def session(self) -> Session:
        if self._session is None:
            self._session = database.get_session()
        return self._session

    @property
    def ssh_manager(self) -> SshConnectionManager:
        if self._ssh_manager is None:
            self._ssh_manager = SshConnectionManager()
        return self._ssh_manager

    @property
    def lock(self) -> LockService:
        if self._lock is None:
            self._lock = LockService()
        return self._lock

    @property
    def notifier(self) -> NotificationService:
        if self._notifier is None:
            self._notifier = NotificationService()
        return self._notifier

    @property
    def admin_email(self) -> Optional[str]:
        return get_config().notifications.admin_email

    def dispatch(self, request: NotificationRequest) -> None:
        """Hand a request to the notification collaborator. Delivery errors never fail a check."""
        send = self._dispatch or self.notifier.deliver
        try:
            send(request)
        except Exception:
            logger.exception("Notification %s could not be dispatched", request.kind.value)

    # ── Authenticated flow ──

    def check(
        self, ip: str, user_id: str, host_id: str, copy_user_id: str | None = None
    ) -> CheckOutcome:
        ip = (ip or "").strip()
        if not is_valid_ip(ip):
            raise InvalidInput(f"Invalid IP address format: {ip!r}")
        user = self.session.get(User, user_id)
        if user is None or not user.is_active:
            raise InvalidInput(f"Unknown or inactive user: {user_id}")
        host = self.session.get(Host, host_id)
        if host is None:
            raise InvalidInput(f"Unknown host: {host_id}")
        if not user.has_access_to_host(host.id):
            logger.warning("User %s denied access to host %s", user.email, host.fqdn)
            raise AccessDenied(f"User {user.email} has no access to {host.fqdn}")
        copy_user = self.session.get(User, copy_user_id) if copy_user_id else None
        analyzer = self.registry.create_for_host(host)

        logger.info("Firewall check %s on %s requested by %s", ip, host.fqdn, user.email)
        unblock = UnblockService(self.session, registry=self.registry)
        outcome: Optional[UnblockOutcome] = None
        try:
            with self.ssh_manager.session(host) as ssh:
                result = analyzer.analyze(ip, ssh)
                if result.blocked:
                    outcome = unblock.remediate(
                        ip, host, result, ssh, ttl=UnblockService.ttl_for(simple_mode=False)
                    )
        except Exception as e:
            raise self._remote_failure(e, user.email, host, ip, requester=user.email)

        reports = ReportService(self.session)
        audit = AuditService(self.session)
        try:
            report = reports.build(ip, host, result, CheckFlow.AUTHENTICATED, user=user, outcome=outcome)
            audit.log_firewall_check(user.email, host.id, ip, report.id, report.analysis)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            audit.discard()
            logger.error("Could not persist report for %s on %s: %s", ip, host.fqdn, e, exc_info=True)
            raise ReportPersistenceFailed(f"Report for {ip} on {host.fqdn} not saved: {e}") from e
        audit.publish()

        self.dispatch(report_request(
            report.id, ip, host.fqdn, user.email, result.blocked,
            admin_email=self.admin_email,
            copy_to=copy_user.email if copy_user else None,
            context={"block_sources": ", ".join(result.block_sources) or "none"},
        ))
        return self._summary(report, result.blocked, outcome, requester_notified=True)

    # ── Anonymous flow ──

    def request_simple_unblock(self, ip: str, domain: str, email: str) -> List[SimpleUnblockJob]:
        """Validate an anonymous request and fan it out, one job per candidate host."""
        if not get_config().simple_mode.enabled:
            raise AccessDenied("Simple unblock mode is disabled")
        ip = (ip or "").strip()
        if not is_valid_ip(ip):
            raise InvalidInput(f"Invalid IP address format: {ip!r}")
        domain = normalize_domain(domain)

        hosts = DomainService(self.session).candidate_hosts(domain)
        if not hosts:
            logger.info("Simple unblock for %s: domain %s not hosted here", ip, domain)
            AuditService(self.session).log_simple_unblock(
                AuditAction.SIMPLE_UNBLOCK_REJECTED, ip, domain, email,
                details={"reason": DecisionReason.DOMAIN_NOT_FOUND.value}, commit=True,
            )
            self.dispatch(admin_alert_request(
                DecisionReason.DOMAIN_NOT_FOUND.value, ip, self.admin_email,
                context={"domain": domain, "email": email},
            ))
            return []

        logger.info("Simple unblock for %s / %s dispatched to %d hosts", ip, domain, len(hosts))
        return [SimpleUnblockJob(ip=ip, domain=domain, email=email, host_id=h.id) for h in hosts]

    def simple_unblock(self, ip: str, domain: str, email: str, host_id: str) -> CheckOutcome:
        ip = (ip or "").strip()
        if not is_valid_ip(ip):
            raise InvalidInput(f"Invalid IP address format: {ip!r}")
        domain = normalize_domain(domain)
        audit = AuditService(self.session)
        host = self.session.get(Host, host_id)
        if host is None:
            raise InvalidInput(f"Unknown host: {host_id}")

        try:
            held = self.lock.is_held(ip, domain)
        except FirewallError as e:
            raise self._remote_failure(e, email, host, ip, requester=None)
        if held:
            logger.info("Simple unblock %s / %s already handled; skipping host %s", ip, domain, host.fqdn)
            audit.log_simple_unblock(
                AuditAction.SIMPLE_UNBLOCK_DUPLICATE, ip, domain, email,
                host_id=host.id, details={"stage": "precheck"}, commit=True,
            )
            return CheckOutcome(ip=ip, host_id=host.id)

        validation = DomainService(self.session).validate(domain, host.id)
        if not validation.exists:
            decision = Decision.abort(validation.reason)
            audit.log_simple_unblock(
                AuditAction.SIMPLE_UNBLOCK_REJECTED, ip, domain, email,
                host_id=host.id, details={"reason": decision.reason.value}, commit=True,
            )
            self.dispatch(admin_alert_request(
                decision.reason.value, ip, self.admin_email, host_fqdn=host.fqdn,
                context={"domain": domain, "email": email},
            ))
            return CheckOutcome(ip=ip, host_id=host.id, decision_reason=decision.reason.value)

        analyzer = self.registry.create_for_host(host)
        unblock = UnblockService(self.session, registry=self.registry)
        outcome: Optional[UnblockOutcome] = None
        won = False
        try:
            with self.ssh_manager.session(host) as ssh:
                result = analyzer.analyze(ip, ssh)
                found = DomainService(self.session).found_in_logs(ssh, ip, domain, host.panel)
                decision = decide(result.blocked, found)
                if decision.should_remediate:
                    won = self.lock.acquire(ip, domain)
                    if won:
                        outcome = unblock.remediate(
                            ip, host, result, ssh, ttl=UnblockService.ttl_for(simple_mode=True)
                        )
        except Exception as e:
            if won:
                self._release_quietly(ip, domain)
            raise self._remote_failure(e, email, host, ip, requester=None)
        if outcome is not None and not outcome.primary_success:
            # CSF lane failed: unclaim the pair
            self._release_quietly(ip, domain)

        if decision.should_remediate and not won:
            action = AuditAction.SIMPLE_UNBLOCK_DUPLICATE
        elif outcome is not None:
            action = AuditAction.SIMPLE_UNBLOCK_SUCCESS
        else:
            action = AuditAction.SIMPLE_UNBLOCK_NO_MATCH

        reports = ReportService(self.session)
        try:
            report = reports.build(
                ip, host, result, CheckFlow.SIMPLE, outcome=outcome,
                decision=decision, domain=domain, email=email,
            )
            audit.log_simple_unblock(
                action, ip, domain, email, host_id=host.id, report_id=report.id,
                details={
                    "decision_reason": decision.reason.value,
                    "was_blocked": result.blocked,
                    "unblock_success": outcome.overall_success if outcome else None,
                },
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            audit.discard()
            logger.error("Could not persist simple report for %s on %s: %s", ip, host.fqdn, e, exc_info=True)
            raise ReportPersistenceFailed(f"Report for {ip} on {host.fqdn} not saved: {e}") from e
        audit.publish()

        notified = False
        if action == AuditAction.SIMPLE_UNBLOCK_SUCCESS and outcome.primary_success:
            self.dispatch(simple_success_request(
                report.id, ip, domain, email, host.fqdn, admin_email=self.admin_email,
                context={"whitelist_hours": outcome.ttl // 3600},
            ))
            notified = True
        elif action != AuditAction.SIMPLE_UNBLOCK_DUPLICATE:
            reason = decision.reason.value if outcome is None else "unblock_failed"
            self.dispatch(admin_alert_request(
                reason, ip, self.admin_email, host_fqdn=host.fqdn, report_id=report.id,
                context={"domain": domain, "email": email},
            ))

        logger.info(
            "Simple unblock %s / %s on %s: %s", ip, domain, host.fqdn, action.value,
        )
        return self._summary(
            report, result.blocked, outcome, requester_notified=notified,
            decision_reason=decision.reason.value,
        )

    # ── Failure handling ──

    def _remote_failure(
        self, error: Exception, actor: str, host: Host, ip: str, requester: str | None
    ) -> Exception:
        """Audit a failed unit and return the exception the caller should raise."""
        if isinstance(error, (InvalidInput, AccessDenied)):
            return error
        if isinstance(error, FirewallError):
            exc = error
        else:
            logger.error("Unexpected error checking %s on %s", ip, host.fqdn, exc_info=True)
            exc = FirewallError(f"Firewall check failed for {ip} on {host.fqdn}: {error}")
            exc.__cause__ = error

        AuditService(self.session).log_firewall_check_failure(actor, host.id, ip, exc)
        if isinstance(exc, ConnectionFailed) and self.notify_connection_errors:
            self.notify_connection_failure(exc, ip, host, requester)
        elif isinstance(exc, LockUnavailable):
            self.dispatch(admin_alert_request(
                "lock_unavailable", ip, self.admin_email, host_fqdn=host.fqdn,
                context={"error": str(exc), "email": actor},
            ))
        return exc

    def _release_quietly(self, ip: str, domain: str) -> None:
        try:
            self.lock.release(ip, domain)
        except LockUnavailable as e:
            logger.error("Could not release lock for %s / %s: %s", ip, domain, e)

    def notify_connection_failure(
        self, error: ConnectionFailed, ip: str, host: Host, requester: str | None
    ) -> None:
        """Admin diagnostic plus, when there is a requester, a generic notice."""
        for request in connection_error_requests(
            error, ip, host.fqdn, requester=requester, admin_email=self.admin_email,
            critical_host=host.fqdn in get_config().notifications.critical_hosts,
        ):
            self.dispatch(request)

    # ── Health ──

    def health_status(self) -> HealthStatus:
        errors: List[str] = []
        try:
            db_ok = database.ping()
        except SQLAlchemyError as e:
            db_ok = False
            errors.append(f"database: {e}")
        lock_ok = self.lock.ping()
        if not lock_ok:
            errors.append("lock store unreachable")
        simple_enabled = get_config().simple_mode.enabled
        return HealthStatus(
            healthy=db_ok and (lock_ok or not simple_enabled),
            database=db_ok,
            lock_store=lock_ok,
            analyzers=self.registry.list_registered(),
            errors=errors,
        )

    @staticmethod
    def _summary(
        report: Report,
        blocked: bool,
        outcome: UnblockOutcome | None,
        requester_notified: bool,
        decision_reason: str | None = None,
    ) -> CheckOutcome:
        return CheckOutcome(
            ip=report.ip,
            host_id=report.host_id,
            report_id=report.id,
            blocked=blocked,
            unblocked=bool(outcome and outcome.overall_success),
            decision_reason=decision_reason,
            unblock_status=outcome.to_dict() if outcome else None,
            requester_notified=requester_notified,
        )
