"""
Database Resource Store - PostgreSQL implementation of the resource store.

Resources are stored one row per (kind, namespace, name) with JSONB
columns for labels, owner references, spec, data and status. Optimistic
concurrency uses the resource_version column.
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Optional

import asyncpg

from events import EventBus, EventType, ResourceEvent
from migrate import run_migrations
from resources import OwnerReference, Resource
from store import (
    LabelSelector,
    ResourceConflictError,
    ResourceNotFoundError,
    ResourceStore,
    merge_patch,
)

logger = logging.getLogger(__name__)


def _ns(namespace: Optional[str]) -> str:
    # The primary key cannot hold NULL; cluster-scoped resources use ''
    return namespace or ""


class DatabaseResourceStore(ResourceStore):
    """Resource store backed by a PostgreSQL connection pool."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
        event_bus: Optional[EventBus] = None,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None
        self._event_bus = event_bus

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Resource store schema initialized")

    async def _publish(self, event_type: EventType, resource: Resource) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(ResourceEvent.from_resource(event_type, resource))

    # ==================== Reads ====================

    async def get(
        self, kind: str, name: str, namespace: Optional[str] = None
    ) -> Optional[Resource]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM resources WHERE kind = $1 AND namespace = $2 AND name = $3",
                kind,
                _ns(namespace),
                name,
            )
            if not row:
                return None
            return self._parse_resource_row(row)

    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> List[Resource]:
        self._ensure_connected()
        selector = LabelSelector.parse(label_selector)
        async with self.pool.acquire() as conn:
            if namespace is None:
                rows = await conn.fetch(
                    "SELECT * FROM resources WHERE kind = $1 ORDER BY namespace, name",
                    kind,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM resources WHERE kind = $1 AND namespace = $2 "
                    "ORDER BY name",
                    kind,
                    _ns(namespace),
                )
        resources = [self._parse_resource_row(row) for row in rows]
        return [r for r in resources if selector.matches(r.labels)]

    # ==================== Writes ====================

    async def create(self, resource: Resource) -> Resource:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO resources (
                        kind, namespace, name, uid, resource_version,
                        labels, owner_references, spec, data, status
                    )
                    VALUES ($1, $2, $3, $4, 1, $5, $6, $7, $8, $9)
                    RETURNING *
                    """,
                    resource.kind,
                    _ns(resource.namespace),
                    resource.name,
                    uuid.uuid4(),
                    json.dumps(resource.labels),
                    json.dumps([ref.to_dict() for ref in resource.owner_references]),
                    json.dumps(resource.spec),
                    json.dumps(resource.data),
                    json.dumps(resource.status),
                )
            except asyncpg.UniqueViolationError as e:
                raise ResourceConflictError(
                    f"{resource.kind} {resource.resource_id} already exists"
                ) from e

        created = self._parse_resource_row(row)
        logger.info(f"Created {created.kind} {created.resource_id}")
        await self._publish(EventType.CREATED, created)
        return created

    async def update(self, resource: Resource) -> Resource:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE resources
                SET labels = $4,
                    owner_references = $5,
                    spec = $6,
                    data = $7,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE kind = $1 AND namespace = $2 AND name = $3
                  AND ($8::BIGINT IS NULL OR resource_version = $8)
                RETURNING *
                """,
                resource.kind,
                _ns(resource.namespace),
                resource.name,
                json.dumps(resource.labels),
                json.dumps([ref.to_dict() for ref in resource.owner_references]),
                json.dumps(resource.spec),
                json.dumps(resource.data),
                resource.resource_version,
            )
            if not row:
                await self._raise_write_failure(conn, resource)

        updated = self._parse_resource_row(row)
        await self._publish(EventType.MODIFIED, updated)
        return updated

    async def update_status(self, resource: Resource) -> Resource:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE resources
                SET status = $4,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE kind = $1 AND namespace = $2 AND name = $3
                  AND ($5::BIGINT IS NULL OR resource_version = $5)
                RETURNING *
                """,
                resource.kind,
                _ns(resource.namespace),
                resource.name,
                json.dumps(resource.status),
                resource.resource_version,
            )
            if not row:
                await self._raise_write_failure(conn, resource)

        updated = self._parse_resource_row(row)
        await self._publish(EventType.MODIFIED, updated)
        return updated

    async def patch(self, resource: Resource) -> Resource:
        return await self._patch(resource, status_only=False)

    async def patch_status(self, resource: Resource) -> Resource:
        return await self._patch(resource, status_only=True)

    async def _patch(self, resource: Resource, status_only: bool) -> Resource:
        """Read-modify-write under a row lock, merging the supplied fields."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM resources "
                    "WHERE kind = $1 AND namespace = $2 AND name = $3 FOR UPDATE",
                    resource.kind,
                    _ns(resource.namespace),
                    resource.name,
                )
                if not row:
                    raise ResourceNotFoundError(
                        f"{resource.kind} {resource.resource_id} not found"
                    )
                current = self._parse_resource_row(row)
                if (
                    resource.resource_version is not None
                    and resource.resource_version != current.resource_version
                ):
                    raise ResourceConflictError(
                        f"{resource.kind} {resource.resource_id} was modified"
                    )

                if status_only:
                    current.status = merge_patch(current.status, resource.status)
                else:
                    current.spec = merge_patch(current.spec, resource.spec)
                    current.data = merge_patch(current.data, resource.data)
                    current.labels = merge_patch(current.labels, resource.labels)
                    if resource.owner_references:
                        current.owner_references = list(resource.owner_references)

                row = await conn.fetchrow(
                    """
                    UPDATE resources
                    SET labels = $4,
                        owner_references = $5,
                        spec = $6,
                        data = $7,
                        status = $8,
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE kind = $1 AND namespace = $2 AND name = $3
                    RETURNING *
                    """,
                    current.kind,
                    _ns(current.namespace),
                    current.name,
                    json.dumps(current.labels),
                    json.dumps([ref.to_dict() for ref in current.owner_references]),
                    json.dumps(current.spec),
                    json.dumps(current.data),
                    json.dumps(current.status),
                )

        patched = self._parse_resource_row(row)
        await self._publish(EventType.MODIFIED, patched)
        return patched

    async def delete(self, kind: str, name: str, namespace: Optional[str] = None) -> bool:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "DELETE FROM resources WHERE kind = $1 AND namespace = $2 AND name = $3 "
                "RETURNING *",
                kind,
                _ns(namespace),
                name,
            )
        if not row:
            return False
        deleted = self._parse_resource_row(row)
        logger.info(f"Deleted {kind} {deleted.resource_id}")
        await self._publish(EventType.DELETED, deleted)
        return True

    async def delete_by_selector(
        self, kind: str, namespace: Optional[str], label_selector: str
    ) -> int:
        self._ensure_connected()
        selector = LabelSelector.parse(label_selector)
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    "SELECT * FROM resources WHERE kind = $1 AND namespace = $2 "
                    "FOR UPDATE",
                    kind,
                    _ns(namespace),
                )
                names = [
                    r.name
                    for r in (self._parse_resource_row(row) for row in rows)
                    if selector.matches(r.labels)
                ]
                if not names:
                    return 0
                deleted_rows = await conn.fetch(
                    "DELETE FROM resources WHERE kind = $1 AND namespace = $2 "
                    "AND name = ANY($3::TEXT[]) RETURNING *",
                    kind,
                    _ns(namespace),
                    names,
                )

        for row in deleted_rows:
            await self._publish(EventType.DELETED, self._parse_resource_row(row))
        logger.info(
            f"Deleted {len(deleted_rows)} {kind} resource(s) in "
            f"{namespace or '<cluster>'} matching '{label_selector}'"
        )
        return len(deleted_rows)

    # ==================== Helpers ====================

    async def _raise_write_failure(
        self, conn: asyncpg.Connection, resource: Resource
    ) -> None:
        """Distinguish a missing row from a stale resource_version."""
        exists = await conn.fetchval(
            "SELECT 1 FROM resources WHERE kind = $1 AND namespace = $2 AND name = $3",
            resource.kind,
            _ns(resource.namespace),
            resource.name,
        )
        if exists:
            raise ResourceConflictError(
                f"{resource.kind} {resource.resource_id} was modified "
                f"(stale version {resource.resource_version})"
            )
        raise ResourceNotFoundError(f"{resource.kind} {resource.resource_id} not found")

    def _parse_resource_row(self, row: asyncpg.Record) -> Resource:
        """
        Convert a resources row into a Resource.

        JSONB columns arrive as JSON text from asyncpg and are decoded
        here; an empty namespace maps back to None.
        """
        result: Dict[str, Any] = dict(row)
        for column, default in (
            ("labels", {}),
            ("owner_references", []),
            ("spec", {}),
            ("data", {}),
            ("status", {}),
        ):
            value = result.get(column)
            if isinstance(value, str):
                value = json.loads(value)
            result[column] = value if value is not None else default

        return Resource(
            kind=result["kind"],
            name=result["name"],
            namespace=result.get("namespace") or None,
            labels=result["labels"],
            owner_references=[
                OwnerReference.from_dict(ref) for ref in result["owner_references"]
            ],
            spec=result["spec"],
            data=result["data"],
            status=result["status"],
            uid=str(result["uid"]) if result.get("uid") is not None else None,
            resource_version=result.get("resource_version"),
        )
