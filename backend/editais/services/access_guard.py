"""Content access checks against an already-loaded entitlement record."""

from editais.models.entitlements import EntitlementRecord, GrantScope, Tier


def can_access(record: EntitlementRecord | None, requested: GrantScope) -> bool:
    """
    Decide whether the record allows reading content under ``requested``.

    Unlimited and Trial tiers see everything. Scoped tiers need some
    access-bearing grant whose scope covers the request: a document grant
    covers every role in it, a role grant covers only that role.
    """
    if record is None or record.effective_tier is None:
        return False
    if record.effective_tier in {Tier.UNLIMITED, Tier.TRIAL}:
        return True

    return any(
        grant.grants_access and grant.scope is not None and grant.scope.covers(requested)
        for grant in record.active_grants
    )
