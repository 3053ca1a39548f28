"""Parsers for CSF, brute-force-monitor, mail and ModSecurity output.

Remote tools print free text whose format drifts between versions, so
blocking is recognised only through a short whitelist of evidence shapes.
Every address comparison is anchored: `10.0.0.1` never matches
`10.0.0.100` or `192.168.10.0.1`. Nothing in this module raises on
malformed input; unrecognised text is simply "no evidence".
"""

from __future__ import annotations

import ipaddress
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ipunblock.core.enums import EvidenceKind

logger = logging.getLogger(__name__)


# ── Address matching ──


def _host_suffixes(ip: str) -> tuple[str, ...]:
    return (ip, f"{ip}/32", f"{ip}/128")


def same_address(token: str, ip: str) -> bool:
    """Token equality, tolerating a single-host CIDR suffix."""
    return token.strip() in _host_suffixes(ip)


def _anchored_pattern(ip: str) -> re.Pattern[str]:
    if ":" in ip:
        return re.compile(
            r"(?<![0-9A-Fa-f:])" + re.escape(ip) + r"(?![0-9A-Fa-f:])", re.IGNORECASE
        )
    return re.compile(r"(?<![\d.])" + re.escape(ip) + r"(?![\d.])")


def contains_ip(text: str, ip: str) -> bool:
    """True when the exact address appears in text as a whole token."""
    if not text or not ip:
        return False
    return _anchored_pattern(ip).search(text) is not None


def first_token_matches(line: str, ip: str, separators: str = r"\s") -> bool:
    parts = re.split(rf"[{separators}]+", line.strip(), maxsplit=1)
    return bool(parts) and same_address(parts[0], ip)


def is_valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


# ── Primary firewall (csf -g) ──

_CHAIN_RULE = re.compile(r"^\s*filter6?\s+(?P<chain>DENYIN|DENYOUT)\s+(?P<rest>.+)$")
_IPSET_MATCH = re.compile(r"^\s*IPSET:\s+Set:(?P<set>\S+)\s+Match:(?P<ip>\S+)")
_DENY_ECHO = re.compile(r"^\s*csf6?\.deny:\s+(?P<ip>\S+)")
_TEMP_BLOCK = re.compile(r"Temporary Blocks:\s+IP:(?P<ip>\S+)")


@dataclass(frozen=True)
class PrimaryEvidence:
    """Which blocking shapes were seen for the queried IP, with the matching lines."""
    kinds: tuple[EvidenceKind, ...] = ()
    lines: tuple[str, ...] = ()

    @property
    def blocked(self) -> bool:
        return bool(self.kinds)


def find_primary_evidence(output: str, ip: str) -> PrimaryEvidence:
    kinds: List[EvidenceKind] = []
    lines: List[str] = []

    def _hit(kind: EvidenceKind, line: str) -> None:
        if kind not in kinds:
            kinds.append(kind)
        lines.append(line.strip())

    for line in (output or "").splitlines():
        m = _CHAIN_RULE.match(line)
        if m and any(same_address(tok, ip) for tok in m.group("rest").split()):
            _hit(EvidenceKind.CHAIN_RULE, line)
            continue
        m = _IPSET_MATCH.match(line)
        if m and "DENY" in m.group("set").upper() and same_address(m.group("ip"), ip):
            _hit(EvidenceKind.IPSET_MATCH, line)
            continue
        m = _DENY_ECHO.match(line)
        if m and same_address(m.group("ip"), ip):
            _hit(EvidenceKind.DENY_LIST_ECHO, line)
            continue
        m = _TEMP_BLOCK.search(line)
        if m and same_address(m.group("ip"), ip):
            _hit(EvidenceKind.TEMPORARY_BLOCK, line)

    return PrimaryEvidence(kinds=tuple(kinds), lines=tuple(lines))


def filter_list_lines(output: str, ip: str, separators: str = r"\s") -> str:
    """Keep only lines whose leading token is exactly the IP.

    Used for csf.deny, csf.tempip (`ip|port|dir|expiry|comment`) and the
    brute-force-monitor blacklist (`ip timestamp [comment]`).
    """
    kept = [
        line.strip()
        for line in (output or "").splitlines()
        if line.strip() and first_token_matches(line, ip, separators)
    ]
    return "\n".join(kept)


def filter_auth_failures(output: str, ip: str, marker: str) -> str:
    """Keep auth-failure lines naming the IP. Context only, never a block."""
    marker = marker.lower()
    kept = [
        line.strip()
        for line in (output or "").splitlines()
        if marker in line.lower() and contains_ip(line, ip)
    ]
    return "\n".join(kept)


# ── ModSecurity JSON audit log ──


def _dig(data: Any, path: str) -> Any:
    for part in path.split("."):
        if not isinstance(data, dict):
            return None
        data = data.get(part)
    return data


def format_modsecurity(output: str, ip: str) -> str:
    """Render matching JSON audit entries as `[ts] IP: x | URI: y | Rules: ...`."""
    rendered: List[str] = []
    for raw in (output or "").splitlines():
        raw = raw.strip()
        if not raw:
            continue
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            continue
        client_ip = _dig(data, "transaction.client_ip")
        if client_ip != ip:
            continue
        messages = _dig(data, "messages") or _dig(data, "transaction.messages") or []
        if not isinstance(messages, list):
            continue
        rules = [
            f"[{_dig(msg, 'details.ruleId')}] {msg.get('message')}"
            for msg in messages
            if isinstance(msg, dict) and msg.get("message")
        ]
        if not rules:
            continue
        rendered.append(
            "[{}] IP: {} | URI: {} | Rules: {}".format(
                _dig(data, "transaction.time_stamp"),
                client_ip,
                _dig(data, "transaction.request.uri"),
                ", ".join(rules),
            )
        )
    return "\n".join(rendered)


# ── Human-readable summary of a CSF block ──

_DENY_IP = re.compile(r"^([0-9A-Fa-f.:]+)\s*#")
_DENY_REASON = re.compile(r"lfd:\s*\(([^)]+)\)")
_DENY_MANUAL = re.compile(r"#\s*(BFM|Manually)\b[^-(]*", re.IGNORECASE)
_DENY_LOCATION = re.compile(r"\(([A-Z]{2}/[^)]+)\)")
_DENY_ATTEMPTS = re.compile(r":?\s*(\d+)\s+in\s+the\s+last\s+(\d+)\s+secs")
_DENY_TIMESTAMP = re.compile(r"\s-\s+(\w{3}\s+\w{3}\s+\d{1,2}\s+[\d:]+\s+\d{4})\s*$")
_TEMP_TTL = re.compile(r"TTL:(\d+)")
_TEMP_COMMENT = re.compile(r"\((.*)\)\s*$")


@dataclass
class CsfDenyEntry:
    ip: str
    reason_type: Optional[str] = None
    location: Optional[str] = None
    attempts: Optional[int] = None
    timeframe: Optional[int] = None
    blocked_since: Optional[str] = None
    comment: str = ""


def parse_deny_line(line: str) -> Optional[CsfDenyEntry]:
    """Parse one csf.deny entry (with or without the `csf.deny:` prefix)."""
    text = line.strip()
    if text.startswith(("csf.deny:", "csf6.deny:")):
        text = text.split(":", 1)[1].strip()
    m = _DENY_IP.match(text)
    if not m:
        return None

    entry = CsfDenyEntry(ip=m.group(1), comment=text.split("#", 1)[1].strip())
    reason = _DENY_REASON.search(text)
    if reason:
        entry.reason_type = reason.group(1)
    else:
        manual = _DENY_MANUAL.search(text)
        if manual:
            entry.reason_type = manual.group(1)
    location = _DENY_LOCATION.search(text)
    if location:
        entry.location = location.group(1)
    attempts = _DENY_ATTEMPTS.search(text)
    if attempts:
        entry.attempts = int(attempts.group(1))
        entry.timeframe = int(attempts.group(2))
    stamp = _DENY_TIMESTAMP.search(text)
    if stamp:
        entry.blocked_since = stamp.group(1)
    return entry


def summarize_block(csf_output: str, ip: str) -> Dict[str, Any]:
    """Condense `csf -g` output into the fields shown to operators."""
    summary: Dict[str, Any] = {
        "blocked": False,
        "block_type": None,
        "reason_short": None,
        "attempts": None,
        "location": None,
        "blocked_since": None,
    }
    evidence = find_primary_evidence(csf_output, ip)
    if not evidence.blocked:
        return summary
    summary["blocked"] = True

    for line in evidence.lines:
        if _DENY_ECHO.match(line):
            entry = parse_deny_line(line)
            summary["block_type"] = "csf.deny"
            if entry is not None:
                summary["reason_short"] = entry.reason_type
                summary["attempts"] = entry.attempts
                summary["location"] = entry.location
                summary["blocked_since"] = entry.blocked_since
            return summary

    for line in evidence.lines:
        if _TEMP_BLOCK.search(line):
            summary["block_type"] = "temporary"
            ttl = _TEMP_TTL.search(line)
            comment = _TEMP_COMMENT.search(line)
            if comment:
                summary["reason_short"] = comment.group(1)
                location = _DENY_LOCATION.search(line)
                if location:
                    summary["location"] = location.group(1)
            if ttl:
                summary["ttl"] = int(ttl.group(1))
            return summary

    summary["block_type"] = "firewall_rules"
    return summary
