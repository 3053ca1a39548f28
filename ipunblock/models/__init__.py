"""ORM models package — import all models so Base.metadata sees them."""

from ipunblock.models.host import Host, User, user_host_access
from ipunblock.models.account import Account, Domain
from ipunblock.models.report import AuditEvent, Report
from ipunblock.models.whitelist_entry import WhitelistEntry

__all__ = [
    "Host",
    "User",
    "user_host_access",
    "Account",
    "Domain",
    "Report",
    "AuditEvent",
    "WhitelistEntry",
]
