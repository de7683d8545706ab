"""
Mapping Reconciler - converges one mapping resource onto the inventory.

One call to ``MappingReconciler.reconcile`` performs a single convergence
attempt for one resource identity:

1. fetch the resource (gone means nothing to do)
2. if deletion was requested, remove the external record and then the
   finalizer so the store can purge the resource
3. attach the finalizer
4. report ``Ready=False/InProgress`` when no condition exists yet
5. persist a defaulted target namespace and ask for a requeue
6. create the external record, re-keying it first if the desired identity
   moved away from the one recorded in status

Failures are written to the ``Ready`` condition and then raised so the
scheduler can retry with backoff. Calls for the same identity must be
serialized by the caller.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from config import InventoryConfig
from inventory import (
    Binding,
    InventoryClient,
    InventoryMapping,
    MappingAlreadyExistsError,
    MappingNotFoundError,
    PLATFORM_KUBERNETES,
    UAACredentials,
)
from models import (
    CONDITION_FALSE,
    CONDITION_REASON_FAILED,
    CONDITION_REASON_IN_PROGRESS,
    CONDITION_REASON_SUCCEEDED,
    CONDITION_TRUE,
    CONDITION_TYPE_READY,
    FINALIZER_NAME,
    Condition,
    MappingID,
    MappingResource,
    NamespacedName,
    set_status_condition,
)

logger = logging.getLogger(__name__)

CLUSTER_ID_KEY = "CLUSTER_ID"
BASE_URL_KEY = "baseurl"
UAA_KEY = "uaa"


class ConfigurationError(Exception):
    """A referenced secret or config map is missing or malformed."""


@dataclass
class ReconcileResult:
    """Outcome of one successful reconcile call."""

    requeue: bool = False
    requeue_after: Optional[int] = None
    observed_generation: Optional[int] = None


class ReconcileLogAdapter(logging.LoggerAdapter):
    """Prefixes every message with the resource key and correlation id."""

    def process(self, msg, kwargs):
        return (
            f"[{self.extra['resource']} "
            f"correlation_id={self.extra['correlation_id']}] {msg}",
            kwargs,
        )


async def get_admin_api_access_binding(db: Any, ref: NamespacedName) -> Binding:
    """
    Read the inventory binding from the admin API access secret.

    The secret holds the inventory host under ``baseurl`` and the OAuth2
    client credentials as a JSON document under ``uaa``.

    Raises:
        ConfigurationError: If the secret, a key, or the credentials are
            missing or invalid.
    """
    data = await db.get_secret(ref.namespace, ref.name)
    if data is None:
        raise ConfigurationError(f"admin API access secret {ref} not found")

    base_url = data.get(BASE_URL_KEY)
    if not base_url:
        raise ConfigurationError(f"secret {ref} has no '{BASE_URL_KEY}' key")

    raw_uaa = data.get(UAA_KEY)
    if not raw_uaa:
        raise ConfigurationError(f"secret {ref} has no '{UAA_KEY}' key")

    try:
        uaa = UAACredentials.from_dict(json.loads(raw_uaa))
    except (ValueError, TypeError, KeyError) as e:
        raise ConfigurationError(
            f"secret {ref} has invalid '{UAA_KEY}' credentials: {e}"
        ) from e

    return Binding(base_url=base_url, uaa=uaa)


async def get_cluster_id(
    db: Any,
    ref: NamespacedName,
    default_namespace: str = "kyma-system",
    default_name: str = "sap-btp-operator-config",
) -> str:
    """
    Read the cluster identity from the BTP operator config map.

    An empty namespace or name in ``ref`` falls back to the defaults.

    Raises:
        ConfigurationError: If the config map is missing or has no
            non-empty ``CLUSTER_ID``.
    """
    ref = NamespacedName(
        namespace=ref.namespace or default_namespace,
        name=ref.name or default_name,
    )
    data = await db.get_config_map(ref.namespace, ref.name)
    if data is None:
        raise ConfigurationError(f"cluster config map {ref} not found")

    cluster_id = data.get(CLUSTER_ID_KEY, "")
    if not cluster_id:
        raise ConfigurationError(f"config map {ref} has no '{CLUSTER_ID_KEY}' value")
    return cluster_id


class MappingReconciler:
    """
    Reconciles mapping resources against the inventory service.

    Args:
        db: Store exposing get_mapping, update_mapping, update_mapping_status,
            get_secret and get_config_map. Writes advance the passed
            resource's ``resource_version`` in place.
        inventory_config: Cluster config map defaults and HTTP timeout.
        client_factory: Builds an inventory client from a binding; called
            once per reconcile.
    """

    def __init__(
        self,
        db: Any,
        inventory_config: Optional[InventoryConfig] = None,
        client_factory: Callable[..., Any] = InventoryClient,
    ):
        self.db = db
        self.inventory_config = inventory_config or InventoryConfig()
        self.client_factory = client_factory

    async def reconcile(self, key: NamespacedName) -> ReconcileResult:
        log = ReconcileLogAdapter(
            logger, {"resource": str(key), "correlation_id": uuid.uuid4().hex}
        )
        log.debug("Reconciling mapping")

        resource = await self.db.get_mapping(key.namespace, key.name)
        if resource is None:
            log.info("Mapping resource not found, assuming it was deleted")
            return ReconcileResult()

        try:
            if resource.deletion_requested:
                return await self._finalize(resource, log)
            return await self._reconcile_mapping(resource, log)
        except Exception as e:
            await self._set_status_failed(resource, e, log)
            raise

    async def _finalize(
        self, resource: MappingResource, log: logging.LoggerAdapter
    ) -> ReconcileResult:
        if not resource.has_finalizer(FINALIZER_NAME):
            return ReconcileResult()

        mapping_id = resource.status.mapping_id
        if mapping_id is not None:
            client = await self._inventory_client(resource)
            await self._delete_mapping(client, mapping_id, log)

        resource.remove_finalizer(FINALIZER_NAME)
        await self.db.update_mapping(resource)
        log.info("Finalizer removed")
        return ReconcileResult()

    async def _reconcile_mapping(
        self, resource: MappingResource, log: logging.LoggerAdapter
    ) -> ReconcileResult:
        if not resource.has_finalizer(FINALIZER_NAME):
            resource.add_finalizer(FINALIZER_NAME)
            await self.db.update_mapping(resource)
            log.info("Finalizer added")

        if not resource.status.conditions:
            self._set_condition(
                resource, CONDITION_FALSE, CONDITION_REASON_IN_PROGRESS, "Reconciling"
            )
            await self.db.update_mapping_status(resource)

        mapping = resource.spec.mapping
        if not mapping.target_namespace:
            mapping.target_namespace = resource.namespace
            await self.db.update_mapping(resource)
            log.info(f"Defaulted target namespace to {resource.namespace}")
            return ReconcileResult(requeue=True)

        mapping_id = await self._sync_mapping(resource, log)

        resource.status.mapping_id = mapping_id
        self._set_condition(
            resource, CONDITION_TRUE, CONDITION_REASON_SUCCEEDED, "Mapping created"
        )
        await self.db.update_mapping_status(resource)
        log.info(
            f"Mapping {mapping_id.service_instance_id} -> "
            f"{mapping_id.primary_id}/{mapping_id.secondary_id} is in sync"
        )
        return ReconcileResult(observed_generation=resource.generation)

    async def _sync_mapping(
        self, resource: MappingResource, log: logging.LoggerAdapter
    ) -> MappingID:
        cluster_id = await get_cluster_id(
            self.db,
            resource.spec.btp_operator_configmap,
            default_namespace=self.inventory_config.cluster_configmap_namespace,
            default_name=self.inventory_config.cluster_configmap_name,
        )
        client = await self._inventory_client(resource)

        desired = MappingID(
            service_instance_id=resource.spec.mapping.service_instance_id,
            primary_id=cluster_id,
            secondary_id=resource.spec.mapping.target_namespace,
        )
        observed = resource.status.mapping_id
        overwrite = observed == desired

        if observed is not None and not overwrite:
            log.info(
                f"Mapping identity moved from {observed.primary_id}/"
                f"{observed.secondary_id} to {desired.primary_id}/"
                f"{desired.secondary_id}, removing the old record"
            )
            await self._delete_mapping(client, observed, log)

        try:
            await client.create_mapping(
                desired.service_instance_id,
                InventoryMapping(
                    platform=PLATFORM_KUBERNETES,
                    primary_id=desired.primary_id,
                    secondary_id=desired.secondary_id,
                ),
            )
        except MappingAlreadyExistsError:
            if not overwrite:
                raise
            # Record contents are not compared against the desired mapping
            log.info("Mapping already present in inventory")

        return desired

    async def _delete_mapping(
        self, client: Any, mapping_id: MappingID, log: logging.LoggerAdapter
    ) -> None:
        try:
            await client.delete_mapping(
                mapping_id.service_instance_id,
                mapping_id.primary_id,
                mapping_id.secondary_id,
            )
            log.info(
                f"Deleted mapping {mapping_id.service_instance_id} -> "
                f"{mapping_id.primary_id}/{mapping_id.secondary_id}"
            )
        except MappingNotFoundError:
            log.info("Mapping already absent from inventory")

    async def _inventory_client(self, resource: MappingResource) -> Any:
        binding = await get_admin_api_access_binding(
            self.db, resource.spec.admin_api_access_secret
        )
        return self.client_factory(
            binding, timeout=self.inventory_config.request_timeout
        )

    def _set_condition(
        self, resource: MappingResource, status: str, reason: str, message: str
    ) -> None:
        if resource.status.conditions is None:
            resource.status.conditions = []
        set_status_condition(
            resource.status.conditions,
            Condition(
                type=CONDITION_TYPE_READY,
                status=status,
                reason=reason,
                message=message,
            ),
        )

    async def _set_status_failed(
        self,
        resource: MappingResource,
        error: Exception,
        log: logging.LoggerAdapter,
    ) -> None:
        """Record ``error`` in the Ready condition; a failing write wins."""
        log.error(f"Reconcile failed: {error}")
        self._set_condition(
            resource, CONDITION_FALSE, CONDITION_REASON_FAILED, str(error)
        )
        try:
            await self.db.update_mapping_status(resource)
        except Exception as status_error:
            log.error(f"Failed to record failure in status: {status_error}")
            raise status_error from error
