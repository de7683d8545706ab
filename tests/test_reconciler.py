"""Unit tests for reconciler.py - Mapping reconciliation state machine."""

import json
import logging
from datetime import datetime, timezone

import pytest

from conftest import ADMIN_SECRET, make_spec
from db import ConflictError
from inventory import InventoryHTTPError, MappingAlreadyExistsError
from models import (
    CONDITION_TYPE_READY,
    FINALIZER_NAME,
    Condition,
    MappingID,
    MappingStatus,
    NamespacedName,
    find_status_condition,
)
from reconciler import (
    ConfigurationError,
    MappingReconciler,
    ReconcileResult,
    get_admin_api_access_binding,
    get_cluster_id,
)

KEY = NamespacedName(namespace="default", name="svc-1-mapping")


def ready(store, key=KEY) -> Condition:
    resource = store.stored(key.namespace, key.name)
    return find_status_condition(resource.status.conditions, CONDITION_TYPE_READY)


def ready_conditions(store, key=KEY):
    resource = store.stored(key.namespace, key.name)
    return [c for c in resource.status.conditions if c.type == CONDITION_TYPE_READY]


def retarget(store, target_namespace, key=KEY):
    """Simulate a user edit of the target namespace."""
    resource = store.stored(key.namespace, key.name)
    resource.spec.mapping.target_namespace = target_namespace
    resource.generation += 1
    resource.resource_version += 1


class TestReconcileResult:
    """Tests for ReconcileResult dataclass."""

    def test_default_values(self):
        result = ReconcileResult()
        assert result.requeue is False
        assert result.requeue_after is None
        assert result.observed_generation is None


@pytest.mark.asyncio
class TestGetAdminAPIAccessBinding:
    """Tests for reading the inventory binding from a secret."""

    async def test_reads_binding(self, store):
        binding = await get_admin_api_access_binding(store, ADMIN_SECRET)

        assert binding.base_url == "inventory.example.com"
        assert binding.uaa.url == "https://uaa.example.com"
        assert binding.uaa.client_id == "client-id"
        assert binding.uaa.client_secret == "client-secret"

    async def test_missing_secret(self, store):
        ref = NamespacedName(namespace="default", name="missing")

        with pytest.raises(ConfigurationError, match="default/missing not found"):
            await get_admin_api_access_binding(store, ref)

    async def test_missing_baseurl(self, store):
        store.secrets[("default", "admin-api-access")].pop("baseurl")

        with pytest.raises(ConfigurationError, match="baseurl"):
            await get_admin_api_access_binding(store, ADMIN_SECRET)

    async def test_missing_uaa(self, store):
        store.secrets[("default", "admin-api-access")].pop("uaa")

        with pytest.raises(ConfigurationError, match="uaa"):
            await get_admin_api_access_binding(store, ADMIN_SECRET)

    async def test_invalid_uaa_json(self, store):
        store.secrets[("default", "admin-api-access")]["uaa"] = "{not json"

        with pytest.raises(ConfigurationError, match="invalid 'uaa' credentials"):
            await get_admin_api_access_binding(store, ADMIN_SECRET)

    async def test_uaa_missing_field(self, store):
        store.secrets[("default", "admin-api-access")]["uaa"] = json.dumps(
            {"url": "https://uaa.example.com", "clientid": "id"}
        )

        with pytest.raises(ConfigurationError, match="clientsecret"):
            await get_admin_api_access_binding(store, ADMIN_SECRET)

    async def test_secret_values_not_in_repr(self, store):
        binding = await get_admin_api_access_binding(store, ADMIN_SECRET)

        assert "client-secret" not in repr(binding)


@pytest.mark.asyncio
class TestGetClusterID:
    """Tests for reading the cluster identity from a config map."""

    async def test_defaults_when_ref_empty(self, store):
        cluster_id = await get_cluster_id(store, NamespacedName())
        assert cluster_id == "cluster-42"

    async def test_defaults_each_part_separately(self, store):
        store.config_maps[("kyma-system", "custom")] = {"CLUSTER_ID": "cluster-7"}

        cluster_id = await get_cluster_id(store, NamespacedName(name="custom"))

        assert cluster_id == "cluster-7"

    async def test_explicit_ref(self, store):
        store.config_maps[("ops", "btp-config")] = {"CLUSTER_ID": "cluster-9"}

        cluster_id = await get_cluster_id(
            store, NamespacedName(namespace="ops", name="btp-config")
        )

        assert cluster_id == "cluster-9"

    async def test_custom_defaults(self, store):
        store.config_maps[("platform", "cluster-info")] = {"CLUSTER_ID": "c-1"}

        cluster_id = await get_cluster_id(
            store,
            NamespacedName(),
            default_namespace="platform",
            default_name="cluster-info",
        )

        assert cluster_id == "c-1"

    async def test_missing_config_map(self, store):
        store.config_maps.clear()

        with pytest.raises(ConfigurationError, match="not found"):
            await get_cluster_id(store, NamespacedName())

    async def test_empty_cluster_id(self, store):
        store.config_maps[("kyma-system", "sap-btp-operator-config")] = {
            "CLUSTER_ID": ""
        }

        with pytest.raises(ConfigurationError, match="CLUSTER_ID"):
            await get_cluster_id(store, NamespacedName())


@pytest.mark.asyncio
class TestReconcileCreate:
    """Tests for the create path of a mapping resource."""

    async def test_not_found_is_noop(self, reconciler, inventory):
        result = await reconciler.reconcile(KEY)

        assert result == ReconcileResult()
        assert inventory.calls == []

    async def test_first_reconcile_creates_mapping(self, reconciler, store, inventory):
        store.add_mapping(KEY.namespace, KEY.name, make_spec("svc-1", "ns-a"))

        result = await reconciler.reconcile(KEY)

        assert result.requeue is False
        assert result.observed_generation == 1
        assert inventory.calls == [("create", "svc-1", "cluster-42", "ns-a")]

        resource = store.stored(KEY.namespace, KEY.name)
        assert resource.finalizers == [FINALIZER_NAME]
        assert resource.status.mapping_id == MappingID("svc-1", "cluster-42", "ns-a")
        condition = ready(store)
        assert condition.status == "True"
        assert condition.reason == "Succeeded"

    async def test_client_built_from_admin_secret(self, reconciler, store, inventory):
        store.add_mapping(KEY.namespace, KEY.name, make_spec())

        await reconciler.reconcile(KEY)

        assert len(inventory.bindings) == 1
        assert inventory.bindings[0].base_url == "inventory.example.com"
        assert inventory.bindings[0].uaa.client_id == "client-id"

    async def test_idempotent_create(self, reconciler, store, inventory):
        store.add_mapping(KEY.namespace, KEY.name, make_spec())

        await reconciler.reconcile(KEY)
        await reconciler.reconcile(KEY)

        assert inventory.records == {"svc-1": [("cluster-42", "ns-a")]}
        assert [c[0] for c in inventory.calls] == ["create", "create"]
        assert ready(store).reason == "Succeeded"
        assert store.stored(KEY.namespace, KEY.name).status.mapping_id == MappingID(
            "svc-1", "cluster-42", "ns-a"
        )

    async def test_create_already_exists_without_observed_id_fails(
        self, reconciler, store, inventory
    ):
        inventory.records["svc-1"] = [("cluster-42", "ns-a")]
        store.add_mapping(KEY.namespace, KEY.name, make_spec())

        with pytest.raises(MappingAlreadyExistsError):
            await reconciler.reconcile(KEY)

        condition = ready(store)
        assert condition.status == "False"
        assert condition.reason == "Failed"
        assert condition.message == "mapping already exists"
        assert store.stored(KEY.namespace, KEY.name).status.mapping_id is None

    async def test_http_500_marks_failed(self, reconciler, store, inventory):
        store.add_mapping(KEY.namespace, KEY.name, make_spec())
        inventory.create_error = InventoryHTTPError(
            "failed to create mapping, HTTP 500", 500
        )

        with pytest.raises(InventoryHTTPError):
            await reconciler.reconcile(KEY)

        condition = ready(store)
        assert condition.reason == "Failed"
        assert "HTTP 500" in condition.message
        assert store.stored(KEY.namespace, KEY.name).status.mapping_id is None

    async def test_http_500_keeps_previous_mapping_id(
        self, reconciler, store, inventory
    ):
        store.add_mapping(KEY.namespace, KEY.name, make_spec())
        await reconciler.reconcile(KEY)
        inventory.create_error = InventoryHTTPError(
            "failed to create mapping, HTTP 500", 500
        )

        with pytest.raises(InventoryHTTPError):
            await reconciler.reconcile(KEY)

        resource = store.stored(KEY.namespace, KEY.name)
        assert resource.status.mapping_id == MappingID("svc-1", "cluster-42", "ns-a")
        assert "HTTP 500" in ready(store).message

    async def test_finalizer_persisted_before_sync(self, reconciler, store, inventory):
        store.add_mapping(KEY.namespace, KEY.name, make_spec())
        inventory.create_error = InventoryHTTPError(
            "failed to create mapping, HTTP 503", 503
        )

        with pytest.raises(InventoryHTTPError):
            await reconciler.reconcile(KEY)

        assert store.stored(KEY.namespace, KEY.name).finalizers == [FINALIZER_NAME]

    async def test_configuration_error_marks_failed(self, reconciler, store, inventory):
        store.add_mapping(KEY.namespace, KEY.name, make_spec())
        store.secrets.clear()

        with pytest.raises(ConfigurationError):
            await reconciler.reconcile(KEY)

        condition = ready(store)
        assert condition.reason == "Failed"
        assert "default/admin-api-access" in condition.message
        assert inventory.calls == []

    async def test_missing_cluster_id_marks_failed(self, reconciler, store, inventory):
        store.add_mapping(KEY.namespace, KEY.name, make_spec())
        store.config_maps.clear()

        with pytest.raises(ConfigurationError):
            await reconciler.reconcile(KEY)

        assert "kyma-system/sap-btp-operator-config" in ready(store).message
        assert inventory.calls == []

    async def test_uses_configured_cluster_config_map_defaults(self, store, inventory):
        from config import InventoryConfig

        store.config_maps[("platform", "cluster-info")] = {"CLUSTER_ID": "c-77"}
        reconciler = MappingReconciler(
            store,
            inventory_config=InventoryConfig(
                cluster_configmap_namespace="platform",
                cluster_configmap_name="cluster-info",
            ),
            client_factory=inventory.client,
        )
        store.add_mapping(KEY.namespace, KEY.name, make_spec())

        await reconciler.reconcile(KEY)

        assert inventory.calls == [("create", "svc-1", "c-77", "ns-a")]


@pytest.mark.asyncio
class TestReconcileDefaultResolution:
    """Tests for defaulting an empty target namespace."""

    async def test_defaults_target_namespace_and_requeues(
        self, reconciler, store, inventory
    ):
        store.add_mapping(KEY.namespace, KEY.name, make_spec("svc-1", ""))

        result = await reconciler.reconcile(KEY)

        assert result.requeue is True
        assert inventory.calls == []
        resource = store.stored(KEY.namespace, KEY.name)
        assert resource.spec.mapping.target_namespace == "default"
        assert resource.generation == 2
        condition = ready(store)
        assert condition.status == "False"
        assert condition.reason == "InProgress"

    async def test_second_pass_syncs_resolved_namespace(
        self, reconciler, store, inventory
    ):
        store.add_mapping(KEY.namespace, KEY.name, make_spec("svc-1", ""))

        first = await reconciler.reconcile(KEY)
        second = await reconciler.reconcile(KEY)

        assert first.requeue is True
        assert second.requeue is False
        assert second.observed_generation == 2
        assert inventory.calls == [("create", "svc-1", "cluster-42", "default")]
        assert store.stored(KEY.namespace, KEY.name).status.mapping_id == MappingID(
            "svc-1", "cluster-42", "default"
        )


@pytest.mark.asyncio
class TestReconcileMigration:
    """Tests for re-keying the external record when the identity moves."""

    async def test_retarget_deletes_then_creates(self, reconciler, store, inventory):
        store.add_mapping(KEY.namespace, KEY.name, make_spec("svc-1", "ns-a"))
        await reconciler.reconcile(KEY)
        retarget(store, "ns-b")

        await reconciler.reconcile(KEY)

        assert inventory.calls == [
            ("create", "svc-1", "cluster-42", "ns-a"),
            ("delete", "svc-1", "cluster-42", "ns-a"),
            ("create", "svc-1", "cluster-42", "ns-b"),
        ]
        assert inventory.records == {"svc-1": [("cluster-42", "ns-b")]}
        assert store.stored(KEY.namespace, KEY.name).status.mapping_id == MappingID(
            "svc-1", "cluster-42", "ns-b"
        )
        assert ready(store).reason == "Succeeded"

    async def test_old_record_already_gone(self, reconciler, store, inventory):
        store.add_mapping(
            KEY.namespace,
            KEY.name,
            make_spec("svc-1", "ns-b"),
            finalizers=[FINALIZER_NAME],
            status=MappingStatus(mapping_id=MappingID("svc-1", "cluster-42", "ns-a")),
        )

        await reconciler.reconcile(KEY)

        assert inventory.calls == [
            ("delete", "svc-1", "cluster-42", "ns-a"),
            ("create", "svc-1", "cluster-42", "ns-b"),
        ]
        assert ready(store).reason == "Succeeded"

    async def test_already_exists_after_migration_fails(
        self, reconciler, store, inventory
    ):
        store.add_mapping(KEY.namespace, KEY.name, make_spec("svc-1", "ns-a"))
        await reconciler.reconcile(KEY)
        inventory.records["svc-1"].append(("cluster-42", "ns-b"))
        retarget(store, "ns-b")

        with pytest.raises(MappingAlreadyExistsError):
            await reconciler.reconcile(KEY)

        resource = store.stored(KEY.namespace, KEY.name)
        assert resource.status.mapping_id == MappingID("svc-1", "cluster-42", "ns-a")
        assert ready(store).message == "mapping already exists"

    async def test_create_failure_after_delete_keeps_old_id(
        self, reconciler, store, inventory
    ):
        store.add_mapping(KEY.namespace, KEY.name, make_spec("svc-1", "ns-a"))
        await reconciler.reconcile(KEY)
        retarget(store, "ns-b")
        inventory.create_error = InventoryHTTPError(
            "failed to create mapping, HTTP 500", 500
        )

        with pytest.raises(InventoryHTTPError):
            await reconciler.reconcile(KEY)

        assert ("delete", "svc-1", "cluster-42", "ns-a") in inventory.calls
        resource = store.stored(KEY.namespace, KEY.name)
        assert resource.status.mapping_id == MappingID("svc-1", "cluster-42", "ns-a")
        assert "HTTP 500" in ready(store).message

    async def test_retry_after_failed_migration_converges(
        self, reconciler, store, inventory
    ):
        store.add_mapping(KEY.namespace, KEY.name, make_spec("svc-1", "ns-a"))
        await reconciler.reconcile(KEY)
        retarget(store, "ns-b")
        inventory.create_error = InventoryHTTPError(
            "failed to create mapping, HTTP 500", 500
        )
        with pytest.raises(InventoryHTTPError):
            await reconciler.reconcile(KEY)

        inventory.create_error = None
        await reconciler.reconcile(KEY)

        assert inventory.records == {"svc-1": [("cluster-42", "ns-b")]}
        assert store.stored(KEY.namespace, KEY.name).status.mapping_id == MappingID(
            "svc-1", "cluster-42", "ns-b"
        )

    async def test_cluster_change_rekeys_mapping(self, reconciler, store, inventory):
        store.add_mapping(KEY.namespace, KEY.name, make_spec("svc-1", "ns-a"))
        await reconciler.reconcile(KEY)
        store.config_maps[("kyma-system", "sap-btp-operator-config")] = {
            "CLUSTER_ID": "cluster-43"
        }

        await reconciler.reconcile(KEY)

        assert inventory.records == {"svc-1": [("cluster-43", "ns-a")]}


@pytest.mark.asyncio
class TestReconcileDeletion:
    """Tests for the finalizer-gated deletion protocol."""

    async def test_deletes_mapping_and_purges(self, reconciler, store, inventory):
        store.add_mapping(KEY.namespace, KEY.name, make_spec())
        await reconciler.reconcile(KEY)
        store.request_deletion(KEY.namespace, KEY.name)

        result = await reconciler.reconcile(KEY)

        assert result == ReconcileResult()
        assert inventory.calls[-1] == ("delete", "svc-1", "cluster-42", "ns-a")
        assert inventory.records == {"svc-1": []}
        assert store.stored(KEY.namespace, KEY.name) is None

    async def test_delete_not_found_still_removes_finalizer(
        self, reconciler, store, inventory
    ):
        store.add_mapping(KEY.namespace, KEY.name, make_spec())
        await reconciler.reconcile(KEY)
        inventory.records.clear()
        store.request_deletion(KEY.namespace, KEY.name)

        await reconciler.reconcile(KEY)

        assert store.stored(KEY.namespace, KEY.name) is None

    async def test_delete_failure_keeps_finalizer(self, reconciler, store, inventory):
        store.add_mapping(KEY.namespace, KEY.name, make_spec())
        await reconciler.reconcile(KEY)
        store.request_deletion(KEY.namespace, KEY.name)
        inventory.delete_error = InventoryHTTPError(
            "failed to delete mapping, HTTP 500", 500
        )

        for _ in range(3):
            with pytest.raises(InventoryHTTPError):
                await reconciler.reconcile(KEY)

        resource = store.stored(KEY.namespace, KEY.name)
        assert resource is not None
        assert resource.finalizers == [FINALIZER_NAME]
        condition = ready(store)
        assert condition.reason == "Failed"
        assert condition.message == "failed to delete mapping, HTTP 500"

    async def test_without_mapping_id_skips_inventory(
        self, reconciler, store, inventory
    ):
        store.add_mapping(
            KEY.namespace, KEY.name, make_spec(), finalizers=[FINALIZER_NAME]
        )
        store.secrets.clear()
        store.request_deletion(KEY.namespace, KEY.name)

        await reconciler.reconcile(KEY)

        assert inventory.calls == []
        assert store.stored(KEY.namespace, KEY.name) is None

    async def test_without_finalizer_is_noop(self, reconciler, store, inventory):
        store.add_mapping(
            KEY.namespace,
            KEY.name,
            make_spec(),
            finalizers=["other.example.com/finalizer"],
            deletion_timestamp=datetime.now(timezone.utc),
        )

        result = await reconciler.reconcile(KEY)

        assert result == ReconcileResult()
        assert inventory.calls == []
        resource = store.stored(KEY.namespace, KEY.name)
        assert resource.finalizers == ["other.example.com/finalizer"]

    async def test_foreign_finalizer_keeps_resource(self, reconciler, store, inventory):
        store.add_mapping(KEY.namespace, KEY.name, make_spec())
        await reconciler.reconcile(KEY)
        store.stored(KEY.namespace, KEY.name).finalizers.append("other/finalizer")
        store.request_deletion(KEY.namespace, KEY.name)

        await reconciler.reconcile(KEY)

        resource = store.stored(KEY.namespace, KEY.name)
        assert resource.finalizers == ["other/finalizer"]
        assert inventory.records == {"svc-1": []}


@pytest.mark.asyncio
class TestReconcileStatus:
    """Tests for status reporting."""

    async def test_single_ready_condition(self, reconciler, store, inventory):
        store.add_mapping(KEY.namespace, KEY.name, make_spec("svc-1", ""))

        await reconciler.reconcile(KEY)
        await reconciler.reconcile(KEY)
        inventory.create_error = InventoryHTTPError(
            "failed to create mapping, HTTP 502", 502
        )
        with pytest.raises(InventoryHTTPError):
            await reconciler.reconcile(KEY)
        inventory.create_error = None
        await reconciler.reconcile(KEY)

        assert len(ready_conditions(store)) == 1
        assert ready(store).reason == "Succeeded"

    async def test_transition_time_kept_while_status_unchanged(
        self, reconciler, store, inventory
    ):
        store.add_mapping(KEY.namespace, KEY.name, make_spec())
        await reconciler.reconcile(KEY)
        ready(store).last_transition_time = "2000-01-01T00:00:00Z"

        await reconciler.reconcile(KEY)

        assert ready(store).last_transition_time == "2000-01-01T00:00:00Z"

    async def test_transition_time_bumped_on_status_change(
        self, reconciler, store, inventory
    ):
        store.add_mapping(KEY.namespace, KEY.name, make_spec())
        await reconciler.reconcile(KEY)
        ready(store).last_transition_time = "2000-01-01T00:00:00Z"
        inventory.create_error = InventoryHTTPError(
            "failed to create mapping, HTTP 500", 500
        )

        with pytest.raises(InventoryHTTPError):
            await reconciler.reconcile(KEY)

        assert ready(store).last_transition_time != "2000-01-01T00:00:00Z"

    async def test_status_write_failure_takes_precedence(
        self, reconciler, store, inventory
    ):
        store.add_mapping(KEY.namespace, KEY.name, make_spec())
        await reconciler.reconcile(KEY)
        inventory.create_error = InventoryHTTPError(
            "failed to create mapping, HTTP 500", 500
        )
        store.status_error = ConflictError("status is stale")

        with pytest.raises(ConflictError) as exc_info:
            await reconciler.reconcile(KEY)

        assert isinstance(exc_info.value.__cause__, InventoryHTTPError)

    async def test_stale_resource_version_conflicts(self, reconciler, store):
        store.add_mapping(KEY.namespace, KEY.name, make_spec())
        original = store.get_mapping

        async def get_then_bump(namespace, name):
            resource = await original(namespace, name)
            store.stored(namespace, name).resource_version += 1
            return resource

        store.get_mapping = get_then_bump

        with pytest.raises(ConflictError):
            await reconciler.reconcile(KEY)

    async def test_logs_correlation_id(self, reconciler, store, caplog):
        store.add_mapping(KEY.namespace, KEY.name, make_spec())

        with caplog.at_level(logging.INFO, logger="reconciler"):
            await reconciler.reconcile(KEY)

        messages = [r.getMessage() for r in caplog.records if r.name == "reconciler"]
        assert messages
        assert all(m.startswith("[default/svc-1-mapping correlation_id=") for m in messages)
