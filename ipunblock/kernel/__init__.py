"""Kernel package — everything that turns remote output into a verdict.

- csf_parser: anchored evidence matching over raw tool output
- commands: the remote command allow-list
- analyzers: per-panel AnalysisResult producers
- registry: panel type -> analyzer
- decision_engine: anonymous-flow arbitration

The kernel performs no I/O of its own; sessions are passed in.
"""

from ipunblock.kernel.analyzers import (
    AnalysisResult,
    CpanelAnalyzer,
    CpanelLogs,
    DirectAdminAnalyzer,
    DirectAdminLogs,
    FirewallAnalyzer,
)
from ipunblock.kernel.commands import COMMAND_CATALOG, build_command
from ipunblock.kernel.decision_engine import Decision, decide
from ipunblock.kernel.registry import AnalyzerRegistry

__all__ = [
    "AnalysisResult",
    "CpanelAnalyzer",
    "CpanelLogs",
    "DirectAdminAnalyzer",
    "DirectAdminLogs",
    "FirewallAnalyzer",
    "COMMAND_CATALOG",
    "build_command",
    "Decision",
    "decide",
    "AnalyzerRegistry",
]
