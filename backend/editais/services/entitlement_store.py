"""Entitlement record repositories and the per-user atomic update cycle."""

import asyncio
import weakref
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol, TypeVar

import structlog

from editais.errors import StorageError
from editais.models.entitlements import EntitlementRecord
from editais.services.resolver import refresh_effective_tier

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Mutator = Callable[[EntitlementRecord], T]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class VersionConflict(Exception):
    """Raised by a repository when the stored version moved under a writer."""


class EntitlementRepository(Protocol):
    """Storage contract for entitlement records."""

    async def get_record(self, user_id: str) -> EntitlementRecord | None:
        """Fetch a user's record."""

    async def save_record(self, record: EntitlementRecord, *, expected_version: int) -> EntitlementRecord:
        """Persist a record if the stored version still equals ``expected_version``.

        Raises VersionConflict otherwise.
        """

    async def list_records(self) -> list[EntitlementRecord]:
        """Point-in-time snapshot of every record."""

    async def link_subscription(self, subscription_id: str, user_id: str) -> None:
        """Index a provider subscription id to its owning user."""

    async def get_user_id_for_subscription(self, subscription_id: str) -> str | None:
        """Resolve the user owning a provider subscription id."""


class InMemoryEntitlementRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.records: dict[str, EntitlementRecord] = {}
        self.subscription_owners: dict[str, str] = {}

    async def get_record(self, user_id: str) -> EntitlementRecord | None:
        record = self.records.get(user_id)
        return record.model_copy(deep=True) if record else None

    async def save_record(self, record: EntitlementRecord, *, expected_version: int) -> EntitlementRecord:
        current = self.records.get(record.user_id)
        current_version = current.version if current else 0
        if current_version != expected_version:
            raise VersionConflict(record.user_id)
        stored = record.model_copy(deep=True)
        stored.version = expected_version + 1
        self.records[stored.user_id] = stored
        return stored.model_copy(deep=True)

    async def list_records(self) -> list[EntitlementRecord]:
        return [record.model_copy(deep=True) for record in self.records.values()]

    async def link_subscription(self, subscription_id: str, user_id: str) -> None:
        self.subscription_owners[subscription_id] = user_id

    async def get_user_id_for_subscription(self, subscription_id: str) -> str | None:
        return self.subscription_owners.get(subscription_id)


class SupabaseEntitlementRepository:
    """Supabase-backed repository storing one JSON document per user.

    Expected tables:
        entitlements(user_id text primary key, record jsonb, version int, updated_at timestamptz)
        subscription_owners(subscription_id text primary key, user_id text)
    """

    def __init__(self, client, records_table: str, subscription_owners_table: str):
        self.client = client
        self.records_table = records_table
        self.subscription_owners_table = subscription_owners_table

    def _to_record(self, row: dict) -> EntitlementRecord:
        record = EntitlementRecord.model_validate(row["record"])
        record.version = row.get("version") or 0
        return record

    async def get_record(self, user_id: str) -> EntitlementRecord | None:
        response = (
            await self.client.table(self.records_table)
            .select("record, version")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return self._to_record(rows[0])

    async def save_record(self, record: EntitlementRecord, *, expected_version: int) -> EntitlementRecord:
        new_version = expected_version + 1
        payload = {
            "record": record.model_dump(mode="json", exclude={"version"}),
            "version": new_version,
            "updated_at": _utcnow().isoformat(),
        }

        if expected_version == 0:
            # First write; the primary key rejects a concurrent insert.
            try:
                response = (
                    await self.client.table(self.records_table)
                    .insert({"user_id": record.user_id, **payload})
                    .execute()
                )
            except Exception as e:
                if "duplicate key" in str(e) or "23505" in str(e):
                    raise VersionConflict(record.user_id) from e
                raise
        else:
            response = (
                await self.client.table(self.records_table)
                .update(payload)
                .eq("user_id", record.user_id)
                .eq("version", expected_version)
                .execute()
            )
            if not response.data:
                raise VersionConflict(record.user_id)

        stored = record.model_copy(deep=True)
        stored.version = new_version
        return stored

    async def list_records(self) -> list[EntitlementRecord]:
        response = await self.client.table(self.records_table).select("record, version").execute()
        return [self._to_record(row) for row in response.data or []]

    async def link_subscription(self, subscription_id: str, user_id: str) -> None:
        await self.client.table(self.subscription_owners_table).upsert(
            {"subscription_id": subscription_id, "user_id": user_id},
            on_conflict="subscription_id",
        ).execute()

    async def get_user_id_for_subscription(self, subscription_id: str) -> str | None:
        response = (
            await self.client.table(self.subscription_owners_table)
            .select("user_id")
            .eq("subscription_id", subscription_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return rows[0]["user_id"] if rows else None


class EntitlementStore:
    """Serializes writers per user and keeps ``effective_tier`` in step with grants.

    Every mutation runs as one cycle: fresh read, mutator, resolver, conditional
    write. Writers in this process queue on a per-user lock; writers in other
    processes are caught by the repository's version check, in which case the
    cycle is replayed against a fresh read.
    """

    def __init__(
        self,
        repository: EntitlementRepository,
        *,
        max_conflict_retries: int = 3,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.max_conflict_retries = max_conflict_retries
        self.now_provider = now_provider
        # Entries vanish once no writer holds or awaits the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def get(self, user_id: str) -> EntitlementRecord | None:
        try:
            return await self.repository.get_record(user_id)
        except Exception as e:
            raise StorageError(f"Failed to read entitlements for {user_id}: {e}") from e

    async def get_or_empty(self, user_id: str) -> EntitlementRecord:
        record = await self.get(user_id)
        return record if record is not None else EntitlementRecord(user_id=user_id)

    async def list_records(self) -> list[EntitlementRecord]:
        try:
            return await self.repository.list_records()
        except Exception as e:
            raise StorageError(f"Failed to list entitlements: {e}") from e

    async def find_user_for_subscription(self, subscription_id: str) -> str | None:
        try:
            return await self.repository.get_user_id_for_subscription(subscription_id)
        except Exception as e:
            raise StorageError(f"Failed to resolve subscription {subscription_id}: {e}") from e

    async def link_subscription(self, subscription_id: str, user_id: str) -> None:
        try:
            await self.repository.link_subscription(subscription_id, user_id)
        except Exception as e:
            raise StorageError(f"Failed to index subscription {subscription_id}: {e}") from e

    async def update(self, user_id: str, mutator: Mutator[T]) -> tuple[EntitlementRecord, T]:
        """
        Apply ``mutator`` to the user's record atomically.

        The mutator receives a fresh copy and may raise to abort; nothing is
        written in that case. A mutator that leaves the record unchanged causes
        no write.

        Returns:
            The persisted record and whatever the mutator returned.
        """
        async with self._lock_for(user_id):
            for attempt in range(self.max_conflict_retries + 1):
                record = await self.get_or_empty(user_id)
                expected_version = record.version
                before = record.model_dump(mode="json")

                result = mutator(record)

                refresh_effective_tier(record)
                if record.model_dump(mode="json") == before:
                    return record, result

                record.updated_at = self.now_provider()
                try:
                    stored = await self.repository.save_record(record, expected_version=expected_version)
                except VersionConflict:
                    logger.warning(
                        "entitlement_version_conflict",
                        user_id=user_id,
                        attempt=attempt + 1,
                    )
                    continue
                except Exception as e:
                    raise StorageError(f"Failed to write entitlements for {user_id}: {e}") from e
                return stored, result

        raise StorageError(f"Gave up writing entitlements for {user_id} after repeated conflicts")
