"""AnalyzerRegistry — panel type to analyzer variant.

Adding a panel means registering one FirewallAnalyzer subclass with its
command catalog; the orchestrator never branches on panel type.
"""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional, Type

from ipunblock.core.enums import PanelType
from ipunblock.core.exceptions import UnsupportedPanel
from ipunblock.kernel.analyzers import CpanelAnalyzer, DirectAdminAnalyzer, FirewallAnalyzer

logger = logging.getLogger(__name__)


class AnalyzerRegistry:
    """Analyzer registration and lookup, keyed by PanelType."""

    def __init__(self) -> None:
        self._analyzers: Dict[PanelType, Type[FirewallAnalyzer]] = {}

    def register(self, panel: PanelType, analyzer_cls: Type[FirewallAnalyzer]) -> None:
        self._analyzers[panel] = analyzer_cls
        logger.debug("Registered analyzer: %s → %s", panel.value, analyzer_cls.__name__)

    def has(self, panel: PanelType | str) -> bool:
        try:
            return PanelType.parse(panel) in self._analyzers
        except ValueError:
            return False

    def get(self, panel: PanelType | str) -> Type[FirewallAnalyzer]:
        """Return the analyzer class for a panel.

        Raises UnsupportedPanel if nothing is registered for it.
        """
        try:
            key = PanelType.parse(panel)
        except ValueError:
            key = None
        if key is None or key not in self._analyzers:
            raise UnsupportedPanel(
                f"No analyzer registered for panel '{getattr(panel, 'value', panel)}'. "
                f"Registered: {[p.value for p in self._analyzers]}"
            )
        return self._analyzers[key]

    def list_registered(self) -> Dict[str, str]:
        return {panel.value: cls.__name__ for panel, cls in self._analyzers.items()}

    def create_for_host(
        self, host, checks: Optional[Mapping[str, bool]] = None
    ) -> FirewallAnalyzer:
        """Instantiate the analyzer for host.panel, optionally with a partial check map."""
        return self.get(host.panel)(checks)

    @classmethod
    def create_default(cls) -> "AnalyzerRegistry":
        registry = cls()
        registry.register(PanelType.DIRECTADMIN, DirectAdminAnalyzer)
        registry.register(PanelType.CPANEL, CpanelAnalyzer)
        return registry
