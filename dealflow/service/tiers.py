"""Subscription tiers and feature gating.

The tier table is loaded once into an immutable ``TierConfig`` and handed to
whatever needs it (the runtime, route guards, the migration script). Nothing
in this module keeps mutable module-level state, so tests can build their own
config and pass it in.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, List, Mapping, Optional

from dealflow.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TierCapabilities:
    can_import_leads: bool = True
    can_export_leads: bool = True
    can_manage_team: bool = False
    can_access_api: bool = False


@dataclass(frozen=True)
class TierDefinition:
    id: str
    name: str
    level: int
    price: int
    features: frozenset[str] = field(default_factory=frozenset)
    capabilities: TierCapabilities = field(default_factory=TierCapabilities)
    leads_included: int = 0
    seats: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "level": self.level,
            "price": self.price,
            "features": sorted(self.features),
            "capabilities": {
                "canImportLeads": self.capabilities.can_import_leads,
                "canExportLeads": self.capabilities.can_export_leads,
                "canManageTeam": self.capabilities.can_manage_team,
                "canAccessApi": self.capabilities.can_access_api,
            },
            "leadsIncluded": self.leads_included,
            "seats": self.seats,
        }


class TierConfig:
    """Ordered tier hierarchy plus the feature -> minimum tier map.

    Tier levels must be strictly increasing in declaration order and every
    feature requirement must name a declared tier. Access is monotonic in
    level: a tier with a higher level can reach everything a lower one can.
    """

    __slots__ = ("_tiers", "_by_id", "_requirements")

    def __init__(
        self,
        tiers: Iterable[TierDefinition],
        feature_requirements: Mapping[str, str],
    ) -> None:
        ordered = tuple(tiers)
        if not ordered:
            raise ValueError("tier config must declare at least one tier")
        levels = [t.level for t in ordered]
        if any(b <= a for a, b in zip(levels, levels[1:])):
            raise ValueError("tier levels must be strictly increasing")
        by_id = {t.id.lower(): t for t in ordered}
        if len(by_id) != len(ordered):
            raise ValueError("tier ids must be unique")
        requirements = {}
        for feature, tier_id in feature_requirements.items():
            key = tier_id.lower()
            if key not in by_id:
                raise ValueError(f"feature '{feature}' requires unknown tier '{tier_id}'")
            requirements[feature] = key
        self._tiers = ordered
        self._by_id = MappingProxyType(by_id)
        self._requirements = MappingProxyType(requirements)

    @property
    def tiers(self) -> tuple[TierDefinition, ...]:
        return self._tiers

    @property
    def feature_requirements(self) -> Mapping[str, str]:
        return self._requirements

    @property
    def lowest(self) -> TierDefinition:
        return self._tiers[0]

    def tier(self, name: Optional[str]) -> Optional[TierDefinition]:
        if not name:
            return None
        return self._by_id.get(name.strip().lower())

    def level(self, name: Optional[str]) -> Optional[int]:
        tier = self.tier(name)
        return tier.level if tier else None

    def is_known(self, name: Optional[str]) -> bool:
        return self.tier(name) is not None

    def has_access(
        self, tier: Optional[str], feature: str, *, internal_account: bool = False
    ) -> bool:
        if internal_account:
            return True
        current = self.tier(tier)
        if current is None:
            # unknown tiers fail closed; legacy spellings are fixed by migration
            return False
        required = self.required_tier(feature)
        if required is None:
            return True
        return current.level >= required.level

    def meets(
        self, tier: Optional[str], minimum: str, *, internal_account: bool = False
    ) -> bool:
        """True when ``tier`` is at or above ``minimum`` in the hierarchy."""
        required = self.tier(minimum)
        if required is None:
            raise ValueError(f"unknown tier '{minimum}'")
        if internal_account:
            return True
        current = self.tier(tier)
        return current is not None and current.level >= required.level

    def required_tier(self, feature: str) -> Optional[TierDefinition]:
        tier_id = self._requirements.get(feature)
        return self._by_id[tier_id] if tier_id else None

    def upgrade_options(self, current_tier: Optional[str]) -> List[TierDefinition]:
        current = self.tier(current_tier)
        current_level = current.level if current else self.lowest.level
        return sorted(
            (t for t in self._tiers if t.level > current_level), key=lambda t: t.level
        )

    def canonical_legacy_tier(self, raw: Optional[str]) -> Optional[str]:
        """Map a historical tier spelling onto a canonical tier id.

        Only the one-off data migration calls this; access checks never
        guess. Returns None when ``raw`` is already canonical.
        """
        if self.is_known(raw):
            return None
        normalized = (raw or "").strip().lower()
        if "enterprise" in normalized and self.is_known("enterprise"):
            return "enterprise"
        if ("pro" in normalized or "premium" in normalized) and self.is_known("pro"):
            return "pro"
        return self.lowest.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "tiers": [t.to_dict() for t in self._tiers],
            "featureRequirements": dict(self._requirements),
        }


_BASIC_FEATURES = frozenset({"dashboard", "leads", "deals", "deal-calculator", "settings"})
_PRO_FEATURES = _BASIC_FEATURES | {"communication", "analytics", "buyers-list"}
_ENTERPRISE_FEATURES = _PRO_FEATURES | {"contracts", "api-access", "white-label"}


def default_tier_config() -> TierConfig:
    """Build the standard basic / pro / enterprise hierarchy."""
    tiers = (
        TierDefinition(
            id="basic",
            name="Basic",
            level=1,
            price=50,
            features=_BASIC_FEATURES,
            capabilities=TierCapabilities(can_manage_team=False, can_access_api=False),
            leads_included=400,
            seats=1,
        ),
        TierDefinition(
            id="pro",
            name="Pro",
            level=2,
            price=100,
            features=_PRO_FEATURES,
            capabilities=TierCapabilities(can_manage_team=True, can_access_api=False),
            leads_included=700,
            seats=5,
        ),
        TierDefinition(
            id="enterprise",
            name="Enterprise",
            level=3,
            # custom pricing
            price=0,
            features=_ENTERPRISE_FEATURES,
            capabilities=TierCapabilities(can_manage_team=True, can_access_api=True),
            leads_included=1200,
            seats=999,
        ),
    )
    requirements = {
        "dashboard": "basic",
        "leads": "basic",
        "deals": "basic",
        "deal-calculator": "basic",
        "settings": "basic",
        "communication": "pro",
        "analytics": "pro",
        "buyers-list": "pro",
        "contracts": "enterprise",
        "api-access": "enterprise",
        "white-label": "enterprise",
    }
    return TierConfig(tiers, requirements)


def _tier_from_dict(raw: dict) -> TierDefinition:
    caps = raw.get("capabilities") or {}
    return TierDefinition(
        id=str(raw["id"]).lower(),
        name=str(raw.get("name") or raw["id"]),
        level=int(raw["level"]),
        price=int(raw.get("price", 0)),
        features=frozenset(raw.get("features") or ()),
        capabilities=TierCapabilities(
            can_import_leads=bool(caps.get("canImportLeads", True)),
            can_export_leads=bool(caps.get("canExportLeads", True)),
            can_manage_team=bool(caps.get("canManageTeam", False)),
            can_access_api=bool(caps.get("canAccessApi", False)),
        ),
        leads_included=int(raw.get("leadsIncluded", 0)),
        seats=int(raw.get("seats", 1)),
    )


def load_tier_config(path: Optional[str] = None) -> TierConfig:
    """Load the tier table from a JSON file, or the defaults when no path is set.

    The file holds ``{"tiers": [...], "featureRequirements": {...}}`` in the
    same shape ``TierConfig.to_dict`` produces.

    Raises:
        ValueError: If the file is malformed or violates the ordering rules
    """
    if not path:
        return default_tier_config()
    try:
        raw = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("tier_config_load_failed", path=path, error=str(exc))
        raise ValueError(f"unable to read tier config at {path}") from exc
    try:
        tiers = sorted(
            (_tier_from_dict(t) for t in raw["tiers"]), key=lambda t: t.level
        )
        config = TierConfig(tiers, raw.get("featureRequirements") or {})
    except (KeyError, TypeError) as exc:
        raise ValueError(f"malformed tier config at {path}: {exc}") from exc
    logger.info("tier_config_loaded", path=path, tiers=[t.id for t in config.tiers])
    return config
