"""Pytest configuration and fixtures."""

import copy
import json
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from db import ConflictError
from inventory import (
    InventoryMapping,
    MappingAlreadyExistsError,
    MappingNotFoundError,
)
from models import Mapping, MappingResource, MappingSpec, NamespacedName
from reconciler import MappingReconciler

ADMIN_SECRET = NamespacedName(namespace="default", name="admin-api-access")
UAA_JSON = json.dumps(
    {
        "url": "https://uaa.example.com",
        "clientid": "client-id",
        "clientsecret": "client-secret",
    }
)


def make_spec(
    service_instance_id: str = "svc-1", target_namespace: str = "ns-a"
) -> MappingSpec:
    return MappingSpec(
        mapping=Mapping(
            service_instance_id=service_instance_id,
            target_namespace=target_namespace,
        ),
        admin_api_access_secret=ADMIN_SECRET,
    )


class FakeStore:
    """
    In-memory stand-in for DatabaseManager.

    Keeps resource_version optimistic concurrency and purges a resource
    once deletion is requested and its last finalizer is gone.
    """

    def __init__(self):
        self.mappings: Dict[Tuple[str, str], MappingResource] = {}
        self.secrets: Dict[Tuple[str, str], Dict[str, str]] = {}
        self.config_maps: Dict[Tuple[str, str], Dict[str, str]] = {}
        self.status_error: Optional[Exception] = None
        self.status_writes = 0

    def add_mapping(self, namespace: str, name: str, spec: MappingSpec, **kwargs):
        resource = MappingResource(namespace=namespace, name=name, spec=spec, **kwargs)
        self.mappings[(namespace, name)] = resource
        return resource.deep_copy()

    def stored(self, namespace: str, name: str) -> Optional[MappingResource]:
        return self.mappings.get((namespace, name))

    def request_deletion(self, namespace: str, name: str) -> None:
        resource = self.mappings[(namespace, name)]
        resource.deletion_timestamp = datetime.now(timezone.utc)
        resource.resource_version += 1
        if not resource.finalizers:
            del self.mappings[(namespace, name)]

    def _current(self, resource: MappingResource) -> MappingResource:
        stored = self.mappings.get((resource.namespace, resource.name))
        if stored is None or stored.resource_version != resource.resource_version:
            raise ConflictError(f"mapping {resource.key} has been modified")
        return stored

    async def get_mapping(self, namespace: str, name: str):
        stored = self.mappings.get((namespace, name))
        return stored.deep_copy() if stored else None

    async def update_mapping(self, resource: MappingResource):
        stored = self._current(resource)
        if stored.spec.to_dict() != resource.spec.to_dict():
            stored.generation += 1
        stored.spec = copy.deepcopy(resource.spec)
        stored.finalizers = list(resource.finalizers)
        stored.resource_version += 1

        resource.generation = stored.generation
        resource.resource_version = stored.resource_version
        if stored.deletion_requested and not stored.finalizers:
            del self.mappings[(resource.namespace, resource.name)]
            return None
        return stored.deep_copy()

    async def update_mapping_status(self, resource: MappingResource):
        if self.status_error is not None:
            raise self.status_error
        stored = self._current(resource)
        stored.status = copy.deepcopy(resource.status)
        stored.resource_version += 1
        self.status_writes += 1

        resource.resource_version = stored.resource_version
        return stored.deep_copy()

    async def get_secret(self, namespace: str, name: str):
        data = self.secrets.get((namespace, name))
        return dict(data) if data is not None else None

    async def get_config_map(self, namespace: str, name: str):
        data = self.config_maps.get((namespace, name))
        return dict(data) if data is not None else None


class FakeInventory:
    """In-memory inventory service; records every call made through it."""

    def __init__(self):
        self.records: Dict[str, List[Tuple[str, str]]] = {}
        self.calls: List[Tuple[str, str, str, str]] = []
        self.bindings = []
        self.create_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None

    def client(self, binding, timeout=None):
        self.bindings.append(binding)
        return FakeInventoryClient(self)

    def has(self, service_instance_id: str, primary_id: str, secondary_id: str):
        return (primary_id, secondary_id) in self.records.get(service_instance_id, [])


class FakeInventoryClient:
    def __init__(self, inventory: FakeInventory):
        self.inventory = inventory

    async def create_mapping(self, service_instance_id: str, mapping: InventoryMapping):
        inv = self.inventory
        inv.calls.append(
            ("create", service_instance_id, mapping.primary_id, mapping.secondary_id)
        )
        if inv.create_error is not None:
            raise inv.create_error
        records = inv.records.setdefault(service_instance_id, [])
        key = (mapping.primary_id, mapping.secondary_id)
        if key in records:
            raise MappingAlreadyExistsError()
        records.append(key)

    async def delete_mapping(
        self, service_instance_id: str, primary_id: str, secondary_id: str
    ):
        inv = self.inventory
        inv.calls.append(("delete", service_instance_id, primary_id, secondary_id))
        if inv.delete_error is not None:
            raise inv.delete_error
        records = inv.records.get(service_instance_id, [])
        if (primary_id, secondary_id) not in records:
            raise MappingNotFoundError()
        records.remove((primary_id, secondary_id))

    async def list_mappings(self, service_instance_id: str):
        return [
            InventoryMapping(platform="kubernetes", primary_id=p, secondary_id=s)
            for p, s in self.inventory.records.get(service_instance_id, [])
        ]


@pytest.fixture
def store():
    """Fake store seeded with the admin API secret and cluster config map."""
    fake = FakeStore()
    fake.secrets[(ADMIN_SECRET.namespace, ADMIN_SECRET.name)] = {
        "baseurl": "inventory.example.com",
        "uaa": UAA_JSON,
    }
    fake.config_maps[("kyma-system", "sap-btp-operator-config")] = {
        "CLUSTER_ID": "cluster-42"
    }
    return fake


@pytest.fixture
def inventory():
    return FakeInventory()


@pytest.fixture
def reconciler(store, inventory):
    return MappingReconciler(store, client_factory=inventory.client)


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_transaction():
    """Async context manager standing in for conn.transaction()."""
    transaction = AsyncMock()
    transaction.__aenter__ = AsyncMock(return_value=transaction)
    transaction.__aexit__ = AsyncMock(return_value=False)
    return transaction


@pytest.fixture
def sample_row():
    """A mappings row as returned by asyncpg (JSONB columns as text)."""
    now = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
    return {
        "id": 1,
        "namespace": "default",
        "name": "svc-1-mapping",
        "spec": json.dumps(make_spec().to_dict()),
        "status": "{}",
        "finalizers": "[]",
        "generation": 1,
        "observed_generation": 0,
        "resource_version": 1,
        "deletion_timestamp": None,
        "next_reconcile_time": now,
        "last_reconcile_time": None,
        "retry_count": 0,
        "created_at": now,
        "updated_at": now,
    }
