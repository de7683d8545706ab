"""
Database Manager - PostgreSQL storage for mapping resources.

Stores desired mapping resources with their status, finalizers and
scheduling bookkeeping, plus the secrets and config maps that mapping
resources reference. Writes to mapping resources are guarded by an
optimistic-concurrency check on ``resource_version``.
"""

import asyncpg
import json
import logging
from typing import Any, Dict, List, Optional

from migrate import run_migrations
from models import MappingResource, MappingSpec, MappingStatus, NamespacedName

logger = logging.getLogger(__name__)

# Tables holding plain namespaced key/value objects
SECRETS_TABLE = "secrets"
CONFIG_MAPS_TABLE = "config_maps"


class ConflictError(Exception):
    """Raised when a write is based on a stale resource version."""


class AlreadyExistsError(Exception):
    """Raised when creating a resource whose name is already taken."""


def _load_json(value: Any, default: Any) -> Any:
    """Decode a JSONB column that asyncpg may hand back as text."""
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


class DatabaseManager:
    """Manages PostgreSQL database operations for the operator."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

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
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Mapping Resource Methods ====================

    async def create_mapping(
        self, namespace: str, name: str, spec: MappingSpec
    ) -> MappingResource:
        """
        Create a new mapping resource.

        The resource starts without finalizers and without status; the
        reconciler attaches both on its first pass.

        Raises:
            AlreadyExistsError: If a mapping with this namespace/name exists.
        """
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO mappings (namespace, name, spec, next_reconcile_time)
                    VALUES ($1, $2, $3, NOW())
                    RETURNING *
                    """,
                    namespace,
                    name,
                    json.dumps(spec.to_dict()),
                )
            except asyncpg.UniqueViolationError:
                raise AlreadyExistsError(f"mapping {namespace}/{name} already exists")

            logger.info(f"Created mapping {namespace}/{name}")
            return self._parse_mapping_row(row)

    async def get_mapping(self, namespace: str, name: str) -> Optional[MappingResource]:
        """Get a mapping resource, or None if it does not exist."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM mappings WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None
            return self._parse_mapping_row(row)

    async def list_mappings(
        self, namespace: Optional[str] = None, limit: int = 100
    ) -> List[MappingResource]:
        """List mapping resources, optionally restricted to one namespace."""
        async with self.pool.acquire() as conn:
            if namespace:
                rows = await conn.fetch(
                    """
                    SELECT * FROM mappings
                    WHERE namespace = $1
                    ORDER BY name
                    LIMIT $2
                    """,
                    namespace,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM mappings ORDER BY namespace, name LIMIT $1",
                    limit,
                )
            return [self._parse_mapping_row(row) for row in rows]

    async def update_mapping(
        self, resource: MappingResource
    ) -> Optional[MappingResource]:
        """
        Persist spec and finalizers of a mapping resource.

        A spec change bumps the generation and makes the resource due for
        reconciliation. Once deletion has been requested and no finalizers
        remain, the resource is purged and None is returned.

        Raises:
            ConflictError: If the resource changed since it was read.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE mappings
                    SET generation = CASE
                            WHEN spec = $1::jsonb THEN generation
                            ELSE generation + 1
                        END,
                        next_reconcile_time = CASE
                            WHEN spec = $1::jsonb THEN next_reconcile_time
                            ELSE NOW()
                        END,
                        spec = $1::jsonb,
                        finalizers = $2::jsonb,
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE namespace = $3 AND name = $4 AND resource_version = $5
                    RETURNING *
                    """,
                    json.dumps(resource.spec.to_dict()),
                    json.dumps(resource.finalizers),
                    resource.namespace,
                    resource.name,
                    resource.resource_version,
                )
                if not row:
                    raise ConflictError(
                        f"mapping {resource.key} has been modified or deleted; "
                        f"resource version {resource.resource_version} is stale"
                    )

                updated = self._parse_mapping_row(row)
                if updated.deletion_requested and not updated.finalizers:
                    await conn.execute(
                        "DELETE FROM mappings WHERE namespace = $1 AND name = $2",
                        resource.namespace,
                        resource.name,
                    )
                    logger.info(f"Purged mapping {resource.key}")
                    return None

            resource.generation = updated.generation
            resource.resource_version = updated.resource_version
            return updated

    async def update_mapping_status(self, resource: MappingResource) -> MappingResource:
        """
        Persist the status of a mapping resource.

        Raises:
            ConflictError: If the resource changed since it was read.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE mappings
                SET status = $1::jsonb,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE namespace = $2 AND name = $3 AND resource_version = $4
                RETURNING *
                """,
                json.dumps(resource.status.to_dict()),
                resource.namespace,
                resource.name,
                resource.resource_version,
            )
            if not row:
                raise ConflictError(
                    f"status of mapping {resource.key} has been modified or deleted; "
                    f"resource version {resource.resource_version} is stale"
                )

            updated = self._parse_mapping_row(row)
            resource.resource_version = updated.resource_version
            return updated

    async def replace_mapping_spec(
        self,
        namespace: str,
        name: str,
        spec: MappingSpec,
        resource_version: Optional[int] = None,
    ) -> Optional[MappingResource]:
        """
        Replace the spec of a mapping resource (user edit).

        Args:
            namespace: Resource namespace
            name: Resource name
            spec: The new desired spec
            resource_version: Optional precondition; the write fails with
                ConflictError if the stored version differs.

        Returns:
            The updated resource, or None if it does not exist.
        """
        async with self.pool.acquire() as conn:
            current = await conn.fetchrow(
                "SELECT * FROM mappings WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not current:
                return None

            expected_version = (
                resource_version
                if resource_version is not None
                else current["resource_version"]
            )

            row = await conn.fetchrow(
                """
                UPDATE mappings
                SET generation = CASE
                        WHEN spec = $1::jsonb THEN generation
                        ELSE generation + 1
                    END,
                    spec = $1::jsonb,
                    resource_version = resource_version + 1,
                    next_reconcile_time = NOW(),
                    retry_count = 0,
                    updated_at = NOW()
                WHERE namespace = $2 AND name = $3 AND resource_version = $4
                RETURNING *
                """,
                json.dumps(spec.to_dict()),
                namespace,
                name,
                expected_version,
            )
            if not row:
                raise ConflictError(
                    f"mapping {namespace}/{name} has been modified; "
                    f"resource version {expected_version} is stale"
                )

            updated = self._parse_mapping_row(row)
            logger.info(
                f"Updated mapping {namespace}/{name} to generation {updated.generation}"
            )
            return updated

    async def request_mapping_deletion(
        self, namespace: str, name: str
    ) -> Optional[MappingResource]:
        """
        Mark a mapping resource for deletion.

        The resource is purged right away if it carries no finalizers;
        otherwise it stays until the reconciler has removed them.

        Returns:
            The resource still awaiting cleanup, or None if it was purged
            or did not exist.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE mappings
                    SET deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                        resource_version = resource_version + 1,
                        next_reconcile_time = NOW(),
                        retry_count = 0,
                        updated_at = NOW()
                    WHERE namespace = $1 AND name = $2
                    RETURNING *
                    """,
                    namespace,
                    name,
                )
                if not row:
                    return None

                resource = self._parse_mapping_row(row)
                if not resource.finalizers:
                    await conn.execute(
                        "DELETE FROM mappings WHERE namespace = $1 AND name = $2",
                        namespace,
                        name,
                    )
                    logger.info(f"Purged mapping {namespace}/{name} (no finalizers)")
                    return None

        logger.info(
            f"Marked mapping {namespace}/{name} for deletion, "
            f"waiting on: {resource.finalizers}"
        )
        return resource

    # ==================== Scheduling Methods ====================

    async def get_mappings_needing_reconciliation(
        self, limit: int = 10
    ) -> List[NamespacedName]:
        """
        Get identities of mapping resources that are due for reconciliation.

        A resource is due when its scheduled time has passed, or when its
        spec moved past the last observed generation and it is not backing
        off after a failure. Resources pending deletion come first.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT namespace, name
                FROM mappings
                WHERE next_reconcile_time <= NOW()
                   OR (generation > observed_generation AND retry_count = 0)
                ORDER BY
                    CASE WHEN deletion_timestamp IS NOT NULL THEN 0 ELSE 1 END,
                    next_reconcile_time ASC NULLS FIRST
                LIMIT $1
                """,
                limit,
            )
            return [
                NamespacedName(namespace=row["namespace"], name=row["name"])
                for row in rows
            ]

    async def schedule_reconciliation(
        self,
        namespace: str,
        name: str,
        delay_seconds: int = 0,
        observed_generation: Optional[int] = None,
    ) -> None:
        """
        Schedule the next reconciliation after a completed attempt.

        Args:
            namespace: Resource namespace
            name: Resource name
            delay_seconds: Seconds from now until the resource is due again
            observed_generation: Generation the attempt converged on; when
                given, the retry counter is reset as well.
        """
        async with self.pool.acquire() as conn:
            if observed_generation is None:
                await conn.execute(
                    """
                    UPDATE mappings
                    SET next_reconcile_time = NOW() + INTERVAL '1 second' * $3,
                        last_reconcile_time = NOW()
                    WHERE namespace = $1 AND name = $2
                    """,
                    namespace,
                    name,
                    delay_seconds,
                )
            else:
                await conn.execute(
                    """
                    UPDATE mappings
                    SET next_reconcile_time = NOW() + INTERVAL '1 second' * $3,
                        last_reconcile_time = NOW(),
                        observed_generation = GREATEST(observed_generation, $4),
                        retry_count = 0
                    WHERE namespace = $1 AND name = $2
                    """,
                    namespace,
                    name,
                    delay_seconds,
                    observed_generation,
                )

    async def requeue_failed_mapping(
        self,
        namespace: str,
        name: str,
        base_delay: int = 60,
        max_delay: int = 3600,
        jitter_factor: float = 0.1,
    ) -> None:
        """
        Requeue a failed mapping with exponential backoff and jitter.

        Args:
            namespace: Resource namespace
            name: Resource name
            base_delay: Base delay in seconds (default 60)
            max_delay: Maximum delay in seconds (default 3600 = 1 hour)
            jitter_factor: Jitter factor ±X (default 0.1 = ±10%)
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE mappings
                SET next_reconcile_time = NOW() + (
                        INTERVAL '1 second' * LEAST(
                            $3 * POWER(2, LEAST(retry_count, 10)),
                            $4
                        ) * (1 + (random() * 2 - 1) * $5)
                    ),
                    last_reconcile_time = NOW(),
                    retry_count = retry_count + 1
                WHERE namespace = $1 AND name = $2
                """,
                namespace,
                name,
                base_delay,
                max_delay,
                jitter_factor,
            )

    async def mark_mapping_for_reconciliation(self, namespace: str, name: str) -> bool:
        """Manually make a mapping due for reconciliation now."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE mappings
                SET next_reconcile_time = NOW(), retry_count = 0
                WHERE namespace = $1 AND name = $2
                """,
                namespace,
                name,
            )
            return result != "UPDATE 0"

    # ==================== Secret / ConfigMap Methods ====================

    async def put_secret(self, namespace: str, name: str, data: Dict[str, str]) -> None:
        """Create or replace a secret."""
        await self._put_object(SECRETS_TABLE, namespace, name, data)
        logger.info(f"Stored secret {namespace}/{name} (keys: {sorted(data)})")

    async def get_secret(self, namespace: str, name: str) -> Optional[Dict[str, str]]:
        """Get the data of a secret, or None if it does not exist."""
        return await self._get_object(SECRETS_TABLE, namespace, name)

    async def delete_secret(self, namespace: str, name: str) -> bool:
        """Delete a secret. Returns False if it did not exist."""
        return await self._delete_object(SECRETS_TABLE, namespace, name)

    async def list_secrets(self, namespace: str) -> List[Dict[str, Any]]:
        """List secrets in a namespace (names and key names only)."""
        return await self._list_objects(SECRETS_TABLE, namespace)

    async def put_config_map(
        self, namespace: str, name: str, data: Dict[str, str]
    ) -> None:
        """Create or replace a config map."""
        await self._put_object(CONFIG_MAPS_TABLE, namespace, name, data)
        logger.info(f"Stored config map {namespace}/{name}")

    async def get_config_map(
        self, namespace: str, name: str
    ) -> Optional[Dict[str, str]]:
        """Get the data of a config map, or None if it does not exist."""
        return await self._get_object(CONFIG_MAPS_TABLE, namespace, name)

    async def delete_config_map(self, namespace: str, name: str) -> bool:
        """Delete a config map. Returns False if it did not exist."""
        return await self._delete_object(CONFIG_MAPS_TABLE, namespace, name)

    async def list_config_maps(self, namespace: str) -> List[Dict[str, Any]]:
        """List config maps in a namespace (names and key names only)."""
        return await self._list_objects(CONFIG_MAPS_TABLE, namespace)

    async def _put_object(
        self, table: str, namespace: str, name: str, data: Dict[str, str]
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {table} (namespace, name, data)
                VALUES ($1, $2, $3)
                ON CONFLICT (namespace, name)
                DO UPDATE SET data = EXCLUDED.data, updated_at = NOW()
                """,
                namespace,
                name,
                json.dumps(data),
            )

    async def _get_object(
        self, table: str, namespace: str, name: str
    ) -> Optional[Dict[str, str]]:
        async with self.pool.acquire() as conn:
            data = await conn.fetchval(
                f"SELECT data FROM {table} WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if data is None:
                return None
            return _load_json(data, {})

    async def _delete_object(self, table: str, namespace: str, name: str) -> bool:
        async with self.pool.acquire() as conn:
            deleted = await conn.fetchval(
                f"""
                DELETE FROM {table}
                WHERE namespace = $1 AND name = $2
                RETURNING name
                """,
                namespace,
                name,
            )
            return deleted is not None

    async def _list_objects(self, table: str, namespace: str) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT namespace, name, data, updated_at FROM {table}
                WHERE namespace = $1
                ORDER BY name
                """,
                namespace,
            )
            return [
                {
                    "namespace": row["namespace"],
                    "name": row["name"],
                    "keys": sorted(_load_json(row["data"], {})),
                    "updated_at": row["updated_at"],
                }
                for row in rows
            ]

    def _parse_mapping_row(self, row: asyncpg.Record) -> MappingResource:
        """
        Parse a mappings row into a MappingResource.

        JSONB columns may arrive as text (asyncpg's default codec) and are
        decoded here.
        """
        return MappingResource(
            namespace=row["namespace"],
            name=row["name"],
            spec=MappingSpec.from_dict(_load_json(row["spec"], {})),
            status=MappingStatus.from_dict(_load_json(row["status"], {})),
            finalizers=list(_load_json(row["finalizers"], [])),
            generation=row["generation"],
            resource_version=row["resource_version"],
            deletion_timestamp=row["deletion_timestamp"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_reconcile_time=row["last_reconcile_time"],
            retry_count=row["retry_count"],
        )
