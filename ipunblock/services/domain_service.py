"""Domain service — pre-validates anonymous requests against the local account cache
and searches recent server logs for activity of an IP on a domain."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from ipunblock.core.enums import DecisionReason, PanelType
from ipunblock.core.exceptions import FirewallError, InvalidInput
from ipunblock.database import get_session
from ipunblock.kernel.commands import build_command
from ipunblock.models.account import Account, Domain
from ipunblock.models.host import Host

logger = logging.getLogger(__name__)

_DOMAIN_RE = re.compile(r"^[a-z0-9.-]+\.[a-z]{2,}$")

_SEARCH_COMMANDS = ("domain_search_apache", "domain_search_nginx", "domain_search_exim")
_CPANEL_SEARCH_COMMANDS = ("domain_search_cpanel_domlogs",)


def normalize_domain(raw: str) -> str:
    """Lowercase, trim and drop a leading `www.`; raise InvalidInput if malformed."""
    domain = (raw or "").strip().lower()
    domain = re.sub(r"^www\.", "", domain)
    if not _DOMAIN_RE.match(domain):
        raise InvalidInput(f"Invalid domain format: {raw!r}")
    return domain


@dataclass
class DomainValidation:
    exists: bool
    reason: Optional[DecisionReason] = None
    domain: Optional[Domain] = None
    host: Optional[Host] = None


class DomainService:
    def __init__(self, session: Session | None = None):
        self._session = session

    @property
    def session(self) -> Session:
        if self._session is None:
            self._session = get_session()
        return self._session

    def _lookup(self, domain: str, host_id: str | None = None) -> List[Domain]:
        query = (
            self.session.query(Domain)
            .join(Account, Domain.account_id == Account.id)
            .filter(Domain.domain_name == domain)
        )
        if host_id is not None:
            query = query.filter(Account.host_id == host_id)
        return query.all()

    def validate(self, domain: str, host_id: str | None = None) -> DomainValidation:
        """Check the domain exists (on host_id, when given) under a live account."""
        records = self._lookup(domain, host_id)
        if not records:
            logger.info("Domain validation failed: %s not found (host=%s)", domain, host_id)
            return DomainValidation(exists=False, reason=DecisionReason.DOMAIN_NOT_FOUND)

        record = records[0]
        account = record.account
        if account.suspended_at is not None:
            logger.info("Domain validation failed: account %s suspended", account.username)
            return DomainValidation(exists=False, reason=DecisionReason.ACCOUNT_SUSPENDED, domain=record)
        if account.deleted_at is not None:
            logger.info("Domain validation failed: account %s deleted", account.username)
            return DomainValidation(exists=False, reason=DecisionReason.ACCOUNT_DELETED, domain=record)

        return DomainValidation(exists=True, domain=record, host=account.host)

    def candidate_hosts(self, domain: str) -> List[Host]:
        """Every host with a live account holding the domain."""
        hosts: List[Host] = []
        for record in self._lookup(domain):
            account = record.account
            if account.is_active and account.host not in hosts:
                hosts.append(account.host)
        return hosts

    @staticmethod
    def search_commands(ip: str, domain: str, panel: PanelType) -> List[str]:
        names = list(_SEARCH_COMMANDS)
        if panel == PanelType.CPANEL:
            names.extend(_CPANEL_SEARCH_COMMANDS)
        return [build_command(name, ip, domain=domain) for name in names]

    def found_in_logs(self, ssh_session: Any, ip: str, domain: str, panel: PanelType) -> bool:
        """Search the last week of access and mail logs for the IP hitting the domain.

        A remote failure counts as "not found".
        """
        combined = "; ".join(self.search_commands(ip, domain, panel))
        try:
            output = ssh_session.execute(combined)
        except FirewallError as e:
            logger.warning("Could not search logs for %s / %s: %s", ip, domain, e)
            return False
        found = bool(output.strip())
        logger.info("Domain log search %s / %s: found=%s", ip, domain, found)
        return found
