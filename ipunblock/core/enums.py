"""Enumerations shared by analyzers, services and models."""

from enum import Enum


class PanelType(str, Enum):
    DIRECTADMIN = "directadmin"
    CPANEL = "cpanel"
    NONE = "none"

    @classmethod
    def parse(cls, value: str) -> "PanelType":
        """Accept the short alias `da` used by some host inventories."""
        value = (value or "").strip().lower()
        if value == "da":
            return cls.DIRECTADMIN
        return cls(value)


class CheckFlow(str, Enum):
    AUTHENTICATED = "authenticated"
    SIMPLE = "simple"


class BlockSource(str, Enum):
    CSF_PRIMARY = "csf_primary"
    CSF_DENY = "csf_deny"
    CSF_TEMPIP = "csf_tempip"
    DA_BFM = "da_bfm"


class EvidenceKind(str, Enum):
    """Shapes of primary-firewall output that prove an active block."""
    CHAIN_RULE = "chain_rule"
    IPSET_MATCH = "ipset_match"
    DENY_LIST_ECHO = "deny_list_echo"
    TEMPORARY_BLOCK = "temporary_block"


class DecisionReason(str, Enum):
    FIREWALL_EVIDENCE = "firewall_evidence"
    LOGS_NO_BLOCK = "logs_no_block"
    NO_EVIDENCE = "no_evidence"
    # Pre-validation terminal states
    DOMAIN_NOT_FOUND = "domain_not_found"
    ACCOUNT_SUSPENDED = "account_suspended"
    ACCOUNT_DELETED = "account_deleted"


class AuditAction(str, Enum):
    FIREWALL_CHECK = "firewall_check"
    FIREWALL_CHECK_FAILURE = "firewall_check_failure"
    SIMPLE_UNBLOCK_SUCCESS = "simple_unblock_success"
    SIMPLE_UNBLOCK_NO_MATCH = "simple_unblock_no_match"
    SIMPLE_UNBLOCK_DUPLICATE = "simple_unblock_duplicate"
    SIMPLE_UNBLOCK_REJECTED = "simple_unblock_rejected"
    WHITELIST_SWEEP = "whitelist_sweep"


class NotificationKind(str, Enum):
    REPORT = "report"
    SIMPLE_UNBLOCK_SUCCESS = "simple_unblock_success"
    ADMIN_ALERT = "admin_alert"
    CONNECTION_ERROR_ADMIN = "connection_error_admin"
    SYSTEM_ERROR_USER = "system_error_user"
