"""Decision engine for anonymous unblock requests.

Pure function of (ip_blocked, domain_found_in_logs). Firewall evidence is
authoritative; log activity without a block is recorded for admins only.
Pre-validation failures never reach `decide`; they use `Decision.abort`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ipunblock.core.enums import DecisionReason

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    should_remediate: bool
    reason: DecisionReason
    notify_requester: bool
    notify_admin: bool = True

    @classmethod
    def remediate(cls, reason: DecisionReason) -> "Decision":
        return cls(should_remediate=True, reason=reason, notify_requester=True)

    @classmethod
    def record_only(cls, reason: DecisionReason) -> "Decision":
        return cls(should_remediate=False, reason=reason, notify_requester=False)

    @classmethod
    def abort(cls, reason: DecisionReason) -> "Decision":
        """Terminal state for a request that failed domain pre-validation."""
        return cls(should_remediate=False, reason=reason, notify_requester=False)


def decide(ip_blocked: bool, domain_found_in_logs: bool) -> Decision:
    if ip_blocked:
        decision = Decision.remediate(DecisionReason.FIREWALL_EVIDENCE)
    elif domain_found_in_logs:
        decision = Decision.record_only(DecisionReason.LOGS_NO_BLOCK)
    else:
        decision = Decision.record_only(DecisionReason.NO_EVIDENCE)

    logger.info(
        "Decision: blocked=%s domain_in_logs=%s -> %s",
        ip_blocked, domain_found_in_logs, decision.reason.value,
    )
    return decision
