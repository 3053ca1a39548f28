"""Unblock service — two independent remediation lanes.

The CSF lane always runs. The brute-force-monitor lane runs only for
panels that have one, and anything it raises is logged and recorded as a
failed operation; the CSF results already in the outcome stay as they are.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ipunblock.config import get_config
from ipunblock.core.exceptions import ConnectionFailed, FirewallError
from ipunblock.kernel.analyzers import AnalysisResult
from ipunblock.kernel.commands import build_command
from ipunblock.kernel.csf_parser import filter_list_lines
from ipunblock.kernel.registry import AnalyzerRegistry
from ipunblock.models.host import Host
from ipunblock.services.whitelist_service import WhitelistService

logger = logging.getLogger(__name__)

PRIMARY_OPERATIONS = ("csf_deny_removal", "csf_tempblock_removal", "csf_whitelist")
BLACKLIST_OPERATIONS = ("bfm_check", "bfm_removal", "bfm_whitelist", "whitelist_entry")


@dataclass
class OperationStatus:
    success: bool
    output: str = ""
    error: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        if self.output:
            data["output"] = self.output[:500]
        if self.error:
            data["error"] = self.error
        if self.skipped:
            data["skipped"] = True
        return data


@dataclass
class UnblockOutcome:
    """Per-operation status accumulated in execution order."""

    ip: str
    host_fqdn: str
    ttl: int
    operations: Dict[str, OperationStatus] = field(default_factory=dict)
    blacklist_lane: bool = False

    def record(self, name: str, status: OperationStatus) -> None:
        self.operations[name] = status

    def _lane_success(self, names: tuple[str, ...]) -> bool:
        ran = [self.operations[n] for n in names if n in self.operations]
        return bool(ran) and all(s.success for s in ran)

    @property
    def primary_success(self) -> bool:
        return self._lane_success(PRIMARY_OPERATIONS)

    @property
    def blacklist_success(self) -> Optional[bool]:
        if not self.blacklist_lane:
            return None
        return self._lane_success(BLACKLIST_OPERATIONS)

    @property
    def overall_success(self) -> bool:
        return self.primary_success and self.blacklist_success is not False

    @property
    def operations_performed(self) -> List[str]:
        return [n for n, s in self.operations.items() if s.success and not s.skipped]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "host": self.host_fqdn,
            "ttl": self.ttl,
            "overall_success": self.overall_success,
            "csf_success": self.primary_success,
            "bfm_success": self.blacklist_success,
            "operations_performed": self.operations_performed,
            "operations": {n: s.to_dict() for n, s in self.operations.items()},
        }


class UnblockService:
    def __init__(
        self,
        session: Session | None = None,
        registry: AnalyzerRegistry | None = None,
        whitelist: WhitelistService | None = None,
    ):
        self._session = session
        self._registry = registry or AnalyzerRegistry.create_default()
        self._whitelist = whitelist

    @property
    def whitelist(self) -> WhitelistService:
        if self._whitelist is None:
            self._whitelist = WhitelistService(self._session)
        return self._whitelist

    @staticmethod
    def ttl_for(simple_mode: bool) -> int:
        cfg = get_config().unblock
        ttl = cfg.simple_whitelist_ttl if simple_mode else cfg.whitelist_ttl
        return max(cfg.minimum_ttl, int(ttl))

    def remediate(
        self,
        ip: str,
        host: Host,
        analysis: AnalysisResult,
        ssh_session: Any,
        ttl: int | None = None,
    ) -> UnblockOutcome:
        """Remove every block for `ip` on `host` and whitelist it for `ttl` seconds."""
        ttl = ttl if ttl is not None else self.ttl_for(simple_mode=False)
        outcome = UnblockOutcome(ip=ip, host_fqdn=host.fqdn, ttl=ttl)
        logger.info(
            "Unblocking %s on %s (sources=%s, ttl=%ds)",
            ip, host.fqdn, list(analysis.block_sources), ttl,
        )

        # ── Lane 1: CSF ──
        self._run(outcome, ssh_session, "csf_deny_removal", build_command("csf_deny_remove", ip))
        self._run(outcome, ssh_session, "csf_tempblock_removal", build_command("csf_tempblock_remove", ip))
        self._run(outcome, ssh_session, "csf_whitelist", build_command("csf_whitelist", ip, ttl=ttl))

        # ── Lane 2: brute force monitor ──
        analyzer_cls = self._registry.get(host.panel)
        if analyzer_cls.supports_blacklist:
            outcome.blacklist_lane = True
            try:
                self._remediate_blacklist(outcome, ip, host, ssh_session, ttl)
            except ConnectionFailed:
                raise
            except Exception as e:
                logger.warning(
                    "Blacklist remediation failed for %s on %s: %s", ip, host.fqdn, e,
                    exc_info=True,
                )
                for name in BLACKLIST_OPERATIONS:
                    if name not in outcome.operations:
                        outcome.record(name, OperationStatus(success=False, error=str(e)))
                        break

        logger.info(
            "Unblock of %s on %s finished: csf=%s bfm=%s ops=%s",
            ip, host.fqdn, outcome.primary_success, outcome.blacklist_success,
            outcome.operations_performed,
        )
        return outcome

    def _run(self, outcome: UnblockOutcome, ssh_session: Any, name: str, command: str) -> None:
        """Run one CSF operation; a command failure is recorded, the lane continues."""
        try:
            output = ssh_session.execute_checked(command)
        except ConnectionFailed:
            raise
        except FirewallError as e:
            logger.error("Operation %s failed on %s: %s", name, outcome.host_fqdn, e)
            outcome.record(name, OperationStatus(success=False, error=str(e)))
            return
        outcome.record(name, OperationStatus(success=True, output=output))

    def _remediate_blacklist(
        self, outcome: UnblockOutcome, ip: str, host: Host, ssh_session: Any, ttl: int
    ) -> None:
        listed = filter_list_lines(ssh_session.execute(build_command("da_bfm_check", ip)), ip)
        outcome.record("bfm_check", OperationStatus(success=True, output=listed))

        if listed:
            output = ssh_session.execute_checked(build_command("da_bfm_remove", ip))
            outcome.record("bfm_removal", OperationStatus(success=True, output=output))
        else:
            outcome.record("bfm_removal", OperationStatus(success=True, skipped=True))

        # Whitelisted whether or not it was listed
        output = ssh_session.execute_checked(build_command("da_bfm_whitelist_add", ip))
        outcome.record("bfm_whitelist", OperationStatus(success=True, output=output))

        entry = self.whitelist.create(host.id, ip, ttl, notes="added by unblock")
        outcome.record(
            "whitelist_entry",
            OperationStatus(success=True, output=f"expires {entry.expires_at.isoformat()}"),
        )
