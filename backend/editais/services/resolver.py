"""Effective-entitlement resolution.

This is the single place that decides which tier a set of grants amounts to.
Everything that mutates ``active_grants`` goes through ``refresh_effective_tier``
before the record is persisted.
"""

from collections.abc import Iterable

from editais.models.entitlements import EntitlementRecord, Grant, Tier


def resolve(active_grants: Iterable[Grant]) -> Tier | None:
    """Return the highest tier among access-bearing grants, or None."""
    best: Tier | None = None
    for grant in active_grants:
        if not grant.grants_access:
            continue
        if best is None or grant.tier.rank > best.rank:
            best = grant.tier
    return best


def refresh_effective_tier(record: EntitlementRecord) -> Tier | None:
    record.effective_tier = resolve(record.active_grants)
    return record.effective_tier
