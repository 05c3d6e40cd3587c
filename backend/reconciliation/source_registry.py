"""
Reconciliation Source Registry

Central registry of all supported reconciliation sources.
Each source has:
- Unique identifier
- Display name
- Side (hardware sale pool or payment provider)
- Provider tag used when loading payment transactions

Supported Sources:
- HW: Vending-machine sales imported from spreadsheets or the API
- PAYME: Payme payment transactions
- CLICK: Click payment transactions
- UZUM: Uzum payment transactions
"""

from enum import Enum
from typing import Dict, Any, List, Optional, Iterable
from dataclasses import dataclass


class ReconciliationSource(str, Enum):
    """
    Recognised reconciliation sources.

    A run compares the hardware side against one or more payment sides.
    """
    HW = "hw"
    PAYME = "payme"
    CLICK = "click"
    UZUM = "uzum"


class SourceSide(str, Enum):
    """Which side of the comparison a source feeds."""
    HARDWARE = "hardware"
    PAYMENT = "payment"


@dataclass
class SourceConfig:
    """
    Configuration for a reconciliation source.
    """
    source: ReconciliationSource
    display_name: str
    side: SourceSide
    provider: Optional[str]  # payment_transactions.provider value, payment sources only
    enabled: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "display_name": self.display_name,
            "side": self.side.value,
            "provider": self.provider,
            "enabled": self.enabled
        }


class SourceRegistry:
    """
    Central registry for reconciliation sources.

    Splits a run's requested sources into the hardware side and the
    payment providers the Source Loader has to query.
    """

    _default_configs: Dict[ReconciliationSource, SourceConfig] = {
        ReconciliationSource.HW: SourceConfig(
            source=ReconciliationSource.HW,
            display_name="Vending Machine Sales",
            side=SourceSide.HARDWARE,
            provider=None,
            enabled=True
        ),
        ReconciliationSource.PAYME: SourceConfig(
            source=ReconciliationSource.PAYME,
            display_name="Payme",
            side=SourceSide.PAYMENT,
            provider="payme",
            enabled=True
        ),
        ReconciliationSource.CLICK: SourceConfig(
            source=ReconciliationSource.CLICK,
            display_name="Click",
            side=SourceSide.PAYMENT,
            provider="click",
            enabled=True
        ),
        ReconciliationSource.UZUM: SourceConfig(
            source=ReconciliationSource.UZUM,
            display_name="Uzum",
            side=SourceSide.PAYMENT,
            provider="uzum",
            enabled=True
        ),
    }

    def __init__(self):
        self._configs = {
            source: SourceConfig(**vars(cfg))
            for source, cfg in self._default_configs.items()
        }

    def get_config(self, source: ReconciliationSource) -> Optional[SourceConfig]:
        """Get configuration for a source."""
        return self._configs.get(source)

    def get_all_configs(self) -> List[SourceConfig]:
        """Get all source configurations."""
        return list(self._configs.values())

    def get_enabled_sources(self) -> List[ReconciliationSource]:
        """Get list of enabled sources."""
        return [
            cfg.source for cfg in self._configs.values()
            if cfg.enabled
        ]

    def is_source_enabled(self, source: ReconciliationSource) -> bool:
        """Check if a source is enabled."""
        cfg = self._configs.get(source)
        return cfg.enabled if cfg else False

    def includes_hardware(self, sources: Iterable[ReconciliationSource]) -> bool:
        """True if any requested source feeds the hardware side."""
        return any(
            self._configs[s].side == SourceSide.HARDWARE
            for s in sources if s in self._configs
        )

    def payment_providers(self, sources: Iterable[ReconciliationSource]) -> List[str]:
        """Provider tags for the requested payment-side sources, in request order."""
        providers = []
        for s in sources:
            cfg = self._configs.get(s)
            if cfg and cfg.side == SourceSide.PAYMENT and cfg.provider not in providers:
                providers.append(cfg.provider)
        return providers

    def parse_sources(self, values: Iterable[str]) -> List[ReconciliationSource]:
        """
        Parse source tags, collapsing duplicates and keeping request order.

        Raises:
            ValueError: unknown or disabled source tag
        """
        parsed: List[ReconciliationSource] = []
        for value in values:
            try:
                source = ReconciliationSource(str(value).strip().lower())
            except ValueError:
                raise ValueError(
                    f"Unknown source '{value}'. Valid values: {[s.value for s in ReconciliationSource]}"
                )
            if not self.is_source_enabled(source):
                raise ValueError(f"Source '{source.value}' is disabled")
            if source not in parsed:
                parsed.append(source)
        return parsed

    def update_config(self, source: ReconciliationSource, **kwargs):
        """Update configuration for a source."""
        if source not in self._configs:
            return

        cfg = self._configs[source]
        for key, value in kwargs.items():
            if hasattr(cfg, key):
                setattr(cfg, key, value)

    def to_dict(self) -> Dict[str, Any]:
        """Export registry as dictionary."""
        return {
            source.value: cfg.to_dict()
            for source, cfg in self._configs.items()
        }


# Global registry instance
source_registry = SourceRegistry()
