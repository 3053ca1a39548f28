"""Remote command allow-list.

Managed hosts run a restricted command wrapper that accepts exactly these
command shapes. Analyzers, the unblocker, the domain log search and the
whitelist sweep all build their commands here, never inline.
"""

from __future__ import annotations

import re
import shlex
from typing import Any, Dict

from ipunblock.core.exceptions import InvalidInput
from ipunblock.kernel.csf_parser import is_valid_ip

DA_BLACKLIST = "/usr/local/directadmin/data/admin/ip_blacklist"
DA_WHITELIST = "/usr/local/directadmin/data/admin/ip_whitelist"

_DOMAIN_RE = re.compile(r"^[a-z0-9.-]+\.[a-z]{2,}$")

COMMAND_CATALOG: Dict[str, str] = {
    # ── CSF queries ──
    "csf": "csf -g {ip}",
    "csf_deny_check": "cat /etc/csf/csf.deny | grep {ip} || true",
    "csf_tempip_check": "cat /var/lib/csf/csf.tempip | grep {ip} || true",
    "csf_specials": "cat /etc/csf/csf.deny /var/lib/csf/csf.tempip 2>/dev/null | grep {ip} || true",
    # ── Service logs ──
    "mod_security_da": "cat /var/log/nginx/modsec_audit.log | grep {ip} || true",
    "exim_directadmin": "cat /var/log/exim/mainlog | grep -Ea {ip} | grep 'authenticator failed' || true",
    "dovecot_directadmin": "cat /var/log/mail.log | grep -Ea {ip} | grep 'auth failed' || true",
    "exim_cpanel": "cat /var/log/exim_mainlog | grep -Ea {ip} | grep 'authenticator failed' || true",
    "dovecot_cpanel": "cat /var/log/maillog | grep -Ea {ip} | grep 'auth failed' || true",
    # ── DirectAdmin brute force monitor ──
    "da_bfm_check": "cat " + DA_BLACKLIST + " | grep -E '^{ip_re}(\\s|$)' || true",
    "da_bfm_remove": "sed -i -E '/^{ip_re}(\\s|$)/d' " + DA_BLACKLIST,
    "da_bfm_whitelist_add": (
        "grep -qxF '{ip}' " + DA_WHITELIST + " || echo '{ip}' >> " + DA_WHITELIST
    ),
    "da_bfm_whitelist_remove": "sed -i '/^{ip_re}$/d' " + DA_WHITELIST,
    # ── CSF remediation ──
    "csf_deny_remove": "csf -dr {ip}",
    "csf_tempblock_remove": "csf -tr {ip}",
    "csf_whitelist": "csf -ta {ip} {ttl}",
    # ── Domain activity search (last 7 days) ──
    "domain_search_apache": (
        "find /var/log/apache2 -name 'access.log*' -mtime -7 -type f "
        "-exec grep -lwF {ip_q} {{}} \\; 2>/dev/null | xargs -r grep -i {domain_q} 2>/dev/null | head -1"
    ),
    "domain_search_nginx": (
        "find /var/log/nginx -name 'access.log*' -mtime -7 -type f "
        "-exec grep -lwF {ip_q} {{}} \\; 2>/dev/null | xargs -r grep -i {domain_q} 2>/dev/null | head -1"
    ),
    "domain_search_exim": (
        "find /var/log/exim -name 'mainlog*' -mtime -7 -type f "
        "-exec grep -lwF {ip_q} {{}} \\; 2>/dev/null | xargs -r grep -i {domain_q} 2>/dev/null | head -1"
    ),
    "domain_search_cpanel_domlogs": (
        "find /usr/local/apache/domlogs -name {domain_glob_q} -mtime -7 -type f "
        "-exec grep -wF {ip_q} {{}} \\; 2>/dev/null | head -1"
    ),
}


def build_command(name: str, ip: str, **params: Any) -> str:
    """Render an allow-listed command for one IP.

    Raises InvalidInput for a malformed IP or domain and KeyError for a
    command that is not on the allow-list.
    """
    if name not in COMMAND_CATALOG:
        raise KeyError(f"Command '{name}' is not on the remote allow-list")
    if not is_valid_ip(ip):
        raise InvalidInput(f"Invalid IP address format: {ip}")

    values: Dict[str, Any] = {
        "ip": ip,
        "ip_re": re.escape(ip),
        "ip_q": shlex.quote(ip),
    }
    if "ttl" in params:
        values["ttl"] = int(params["ttl"])
    domain = params.get("domain")
    if domain is not None:
        if not _DOMAIN_RE.match(domain):
            raise InvalidInput(f"Invalid domain format: {domain}")
        values["domain_q"] = shlex.quote(domain)
        values["domain_glob_q"] = shlex.quote(f"*{domain}*")
    return COMMAND_CATALOG[name].format(**values)
