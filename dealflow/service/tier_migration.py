from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

from dealflow.logging import get_logger
from dealflow.service.audit import AuditAction, AuditSink
from dealflow.service.tiers import TierConfig
from dealflow.storage.models import Account

logger = get_logger(__name__)


class TierMigrationStore(Protocol):
    def list_accounts(self, limit: int = 1000) -> List[Account]: ...

    def set_subscription_tier(self, account_id: str, tier: str) -> Account: ...


@dataclass
class TierChange:
    account_id: str
    previous: str
    tier: str


def migrate_legacy_tiers(
    store: TierMigrationStore,
    tiers: TierConfig,
    *,
    audit: Optional[AuditSink] = None,
    dry_run: bool = False,
    limit: int = 100_000,
) -> List[TierChange]:
    """Rewrite non-canonical ``subscription_tier`` values to canonical tier ids.

    Access checks fail closed on unknown tiers, so this must run once before
    deploying against data written with older tier spellings.
    """
    changes: List[TierChange] = []
    for account in store.list_accounts(limit=limit):
        target = tiers.canonical_legacy_tier(account.subscription_tier)
        if target is None:
            continue
        change = TierChange(account.id, account.subscription_tier, target)
        changes.append(change)
        if dry_run:
            continue
        store.set_subscription_tier(account.id, target)
        if audit is not None:
            audit.emit(
                AuditAction.TIER_CHANGE,
                account_id=account.id,
                resource="migration",
                details={"from": change.previous, "to": target},
            )
    logger.info("legacy_tier_migration", changed=len(changes), dry_run=dry_run)
    return changes
