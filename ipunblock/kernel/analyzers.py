"""Per-panel firewall analyzers.

Each analyzer runs its ordered command catalog over one session and turns
the raw output into an immutable AnalysisResult. Only blocking-capable
sources (the CSF firewall and the brute-force-monitor blacklist) can set
`blocked`; mail, auth and ModSecurity output is kept as context.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Type, Union

from ipunblock.core.enums import BlockSource, PanelType
from ipunblock.core.exceptions import CommandExecutionFailed, InvalidInput
from ipunblock.kernel.commands import build_command
from ipunblock.kernel.csf_parser import (
    filter_auth_failures,
    filter_list_lines,
    find_primary_evidence,
    format_modsecurity,
    is_valid_ip,
    summarize_block,
)

logger = logging.getLogger(__name__)


# ── Fixed-shape log records ──


@dataclass(frozen=True)
class DirectAdminLogs:
    csf: str = ""
    csf_deny: str = ""
    csf_tempip: str = ""
    da_bfm: str = ""
    exim: str = ""
    dovecot: str = ""
    mod_security: str = ""

    def as_dict(self) -> Dict[str, str]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class CpanelLogs:
    csf: str = ""
    csf_specials: str = ""
    exim: str = ""
    dovecot: str = ""

    def as_dict(self) -> Dict[str, str]:
        return dataclasses.asdict(self)


PanelLogs = Union[DirectAdminLogs, CpanelLogs]


@dataclass(frozen=True)
class AnalysisResult:
    """Verdict for one IP on one host. Built once, never mutated."""

    blocked: bool
    logs: PanelLogs
    analysis: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "analysis", MappingProxyType(dict(self.analysis)))

    @property
    def block_sources(self) -> Tuple[str, ...]:
        return tuple(self.analysis.get("block_sources", ()))

    def has_source(self, source: BlockSource) -> bool:
        return source.value in self.block_sources

    def analysis_dict(self) -> Dict[str, Any]:
        """JSON-ready copy of the analysis mapping."""
        return {
            k: list(v) if isinstance(v, tuple) else (dict(v) if isinstance(v, Mapping) else v)
            for k, v in self.analysis.items()
        }


# ── Analyzer base ──


class FirewallAnalyzer:
    """Runs a panel's ordered check catalog and interprets the output.

    Subclasses declare `panel`, `logs_type`, `DEFAULT_CHECKS` (ordered,
    check name -> enabled) and implement `_interpret`.
    """

    panel: ClassVar[PanelType]
    logs_type: ClassVar[Type[PanelLogs]]
    supports_blacklist: ClassVar[bool] = False
    DEFAULT_CHECKS: ClassVar[Dict[str, bool]] = {}

    def __init__(self, checks: Optional[Mapping[str, bool]] = None) -> None:
        self._checks: Dict[str, bool] = dict(self.DEFAULT_CHECKS)
        for name, enabled in (checks or {}).items():
            if name not in self._checks:
                logger.warning("Ignoring unknown check '%s' for %s", name, self.panel.value)
                continue
            self._checks[name] = bool(enabled)

    def supports(self, panel: PanelType | str) -> bool:
        try:
            return PanelType.parse(panel) is self.panel
        except ValueError:
            return False

    def default_checks(self) -> Dict[str, bool]:
        return dict(self.DEFAULT_CHECKS)

    def enabled_checks(self) -> List[str]:
        return [name for name, enabled in self._checks.items() if enabled]

    def with_service_checks(self, checks: Mapping[str, bool]) -> "FirewallAnalyzer":
        """Return a copy with the given checks switched on or off."""
        merged = dict(self._checks)
        merged.update(checks)
        return type(self)(merged)

    def analyze(self, ip: str, session: Any) -> AnalysisResult:
        """Run every enabled check over `session` and interpret the output.

        A failing command leaves its log key empty and is listed in
        `failed_checks`; a lost connection propagates.
        """
        if not is_valid_ip(ip):
            raise InvalidInput(f"Invalid IP address format: {ip}")

        raw: Dict[str, str] = {}
        failed: List[str] = []
        for name in self.enabled_checks():
            command = build_command(name, ip)
            try:
                raw[name] = session.execute(command)
            except CommandExecutionFailed as e:
                logger.warning("Check %s failed for %s: %s", name, ip, e)
                failed.append(name)

        logs, sources, context = self._interpret(ip, raw)
        evidence = find_primary_evidence(raw.get("csf", ""), ip)

        analysis: Dict[str, Any] = {
            "panel": self.panel.value,
            "block_sources": tuple(s.value for s in sources),
            "primary_evidence": tuple(k.value for k in evidence.kinds),
            "evidence_lines": evidence.lines,
            "checks_run": tuple(raw),
            "failed_checks": tuple(failed),
        }
        analysis.update(context)
        if evidence.blocked:
            analysis["csf_summary"] = summarize_block(raw.get("csf", ""), ip)

        result = AnalysisResult(blocked=bool(sources), logs=logs, analysis=analysis)
        logger.info(
            "Analysis %s on %s: blocked=%s sources=%s",
            ip, self.panel.value, result.blocked, list(result.block_sources),
        )
        return result

    def _interpret(
        self, ip: str, raw: Dict[str, str]
    ) -> Tuple[PanelLogs, List[BlockSource], Dict[str, Any]]:
        raise NotImplementedError

    @staticmethod
    def _primary_sources(ip: str, raw: Dict[str, str]) -> List[BlockSource]:
        if find_primary_evidence(raw.get("csf", ""), ip).blocked:
            return [BlockSource.CSF_PRIMARY]
        return []


class DirectAdminAnalyzer(FirewallAnalyzer):
    panel = PanelType.DIRECTADMIN
    logs_type = DirectAdminLogs
    supports_blacklist = True
    DEFAULT_CHECKS = {
        "csf": True,
        "csf_deny_check": True,
        "csf_tempip_check": True,
        "exim_directadmin": True,
        "dovecot_directadmin": True,
        "mod_security_da": True,
        "da_bfm_check": True,
    }

    def _interpret(self, ip, raw):
        sources = self._primary_sources(ip, raw)

        csf_deny = filter_list_lines(raw.get("csf_deny_check", ""), ip)
        if csf_deny:
            sources.append(BlockSource.CSF_DENY)
        csf_tempip = filter_list_lines(raw.get("csf_tempip_check", ""), ip, r"\s|")
        if csf_tempip:
            sources.append(BlockSource.CSF_TEMPIP)
        # Blacklist evidence counts on its own, whatever CSF said
        da_bfm = filter_list_lines(raw.get("da_bfm_check", ""), ip)
        if da_bfm:
            sources.append(BlockSource.DA_BFM)

        exim = filter_auth_failures(raw.get("exim_directadmin", ""), ip, "authenticator failed")
        dovecot = filter_auth_failures(raw.get("dovecot_directadmin", ""), ip, "auth failed")
        mod_security = format_modsecurity(raw.get("mod_security_da", ""), ip)

        logs = DirectAdminLogs(
            csf=raw.get("csf", ""),
            csf_deny=csf_deny,
            csf_tempip=csf_tempip,
            da_bfm=da_bfm,
            exim=exim,
            dovecot=dovecot,
            mod_security=mod_security,
        )
        context = {
            "auth_failures": {
                "exim": _count_lines(exim),
                "dovecot": _count_lines(dovecot),
            },
            "mod_security_hits": _count_lines(mod_security),
        }
        return logs, sources, context


class CpanelAnalyzer(FirewallAnalyzer):
    panel = PanelType.CPANEL
    logs_type = CpanelLogs
    DEFAULT_CHECKS = {
        "csf": True,
        "csf_specials": True,
        "exim_cpanel": True,
        "dovecot_cpanel": True,
    }

    def _interpret(self, ip, raw):
        sources = self._primary_sources(ip, raw)

        specials = filter_list_lines(raw.get("csf_specials", ""), ip, r"\s|")
        if specials:
            sources.append(BlockSource.CSF_DENY)

        exim = filter_auth_failures(raw.get("exim_cpanel", ""), ip, "authenticator failed")
        dovecot = filter_auth_failures(raw.get("dovecot_cpanel", ""), ip, "auth failed")

        logs = CpanelLogs(
            csf=raw.get("csf", ""),
            csf_specials=specials,
            exim=exim,
            dovecot=dovecot,
        )
        context = {
            "auth_failures": {
                "exim": _count_lines(exim),
                "dovecot": _count_lines(dovecot),
            },
        }
        return logs, sources, context


def _count_lines(text: str) -> int:
    return len([line for line in text.splitlines() if line.strip()])
