"""Report service — snapshots one check into an immutable Report row."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ipunblock.core.enums import CheckFlow
from ipunblock.database import get_session
from ipunblock.kernel.analyzers import AnalysisResult
from ipunblock.kernel.decision_engine import Decision
from ipunblock.models.host import Host, User
from ipunblock.models.report import Report
from ipunblock.services.unblock_service import UnblockOutcome

logger = logging.getLogger(__name__)


class ReportService:
    def __init__(self, session: Session | None = None):
        self._session = session

    @property
    def session(self) -> Session:
        if self._session is None:
            self._session = get_session()
        return self._session

    def build(
        self,
        ip: str,
        host: Host,
        result: AnalysisResult,
        flow: CheckFlow = CheckFlow.AUTHENTICATED,
        user: User | None = None,
        outcome: UnblockOutcome | None = None,
        decision: Decision | None = None,
        domain: str | None = None,
        email: str | None = None,
    ) -> Report:
        """Add a Report to the session without committing.

        The caller commits it together with the matching audit event.
        """
        report = Report(
            ip=ip,
            host_id=host.id,
            user_id=user.id if user else None,
            flow=flow,
            logs=result.logs.as_dict(),
            analysis=self.snapshot(result, outcome, decision, domain, email),
            unblock_status=outcome.to_dict() if outcome else None,
        )
        self.session.add(report)
        self.session.flush()
        logger.debug("Report %s staged for %s on %s", report.id, ip, host.fqdn)
        return report

    @staticmethod
    def snapshot(
        result: AnalysisResult,
        outcome: UnblockOutcome | None = None,
        decision: Decision | None = None,
        domain: str | None = None,
        email: str | None = None,
    ) -> Dict[str, Any]:
        data = result.analysis_dict()
        data.update({
            "was_blocked": result.blocked,
            "block_sources": list(result.block_sources),
            "analysis_timestamp": datetime.now(timezone.utc).isoformat(),
            "unblock_performed": bool(outcome and outcome.overall_success),
        })
        if result.blocked:
            data["blocking_details"] = data.get("csf_summary") or {
                "blocked": True,
                "block_type": ",".join(result.block_sources),
            }
        if decision is not None:
            data["decision_reason"] = decision.reason.value
        if domain is not None:
            data["domain"] = domain
            data["email"] = email
            data["simple_mode"] = True
        return data

    def get(self, report_id: str) -> Optional[Report]:
        return self.session.get(Report, report_id)

    def list_for_ip(self, ip: str, limit: int = 20) -> List[Report]:
        return (
            self.session.query(Report)
            .filter(Report.ip == ip)
            .order_by(Report.created_at.desc())
            .limit(limit)
            .all()
        )
