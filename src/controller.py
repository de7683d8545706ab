"""
Operator Controller - schedules reconciliation of mapping resources.

Similar to a Kubernetes controller manager: it polls the store for mapping
resources that are due, reacts to change events from the API right away,
and turns each reconcile outcome into the resource's next due time.
"""

import asyncio
import logging
import time
from typing import Optional, Set

from config import ControllerConfig
from db import DatabaseManager
from events import EventBus, EventType, ResourceEvent
from models import NamespacedName
from reconciler import MappingReconciler, ReconcileResult

logger = logging.getLogger(__name__)

# Events that make a resource due immediately
TRIGGER_EVENTS = {EventType.CREATED, EventType.MODIFIED, EventType.DELETED}


class Controller:
    """
    Drives MappingReconciler for every mapping resource.

    Different resources are reconciled concurrently, bounded by
    ``max_concurrent_reconciles``. The same resource is never reconciled
    twice at once: a trigger that arrives while it is in flight marks it
    dirty and it runs again as soon as the current run ends.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        reconciler: MappingReconciler,
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.db = db_manager
        self.reconciler = reconciler
        self.config = config or ControllerConfig()
        self.reconcile_interval = self.config.reconcile_interval
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.semaphore = asyncio.Semaphore(self.max_concurrent_reconciles)
        self.running = False
        self._event_bus = event_bus
        self._subscriber_id: Optional[str] = None
        self._shutdown_event = asyncio.Event()

        self._in_flight: Set[NamespacedName] = set()
        self._dirty: Set[NamespacedName] = set()
        self._tasks: Set[asyncio.Task] = set()

    async def start(self):
        """Run the poll loop and, with an event bus, the watch loop."""
        logger.info("Starting mapping controller")
        self.running = True
        self._shutdown_event.clear()

        tasks = [asyncio.create_task(self._reconciliation_loop())]
        if self._event_bus is not None:
            self._subscriber_id, subscription = await self._event_bus.subscribe(
                lambda event: event.event_type in TRIGGER_EVENTS
            )
            tasks.append(asyncio.create_task(self._watch_loop(subscription)))

        try:
            await asyncio.gather(*tasks)
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop the loops and wait for in-flight reconciles to finish."""
        logger.info("Stopping mapping controller")
        self.running = False
        self._shutdown_event.set()

        if self._event_bus is not None and self._subscriber_id is not None:
            await self._event_bus.unsubscribe(self._subscriber_id)
            self._subscriber_id = None

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _reconciliation_loop(self):
        """Poll the store for due resources."""
        while self.running:
            try:
                keys = await self.db.get_mappings_needing_reconciliation(
                    limit=self.max_concurrent_reconciles * 2
                )
                if keys:
                    logger.info(f"Found {len(keys)} mappings needing reconciliation")
                for key in keys:
                    self.enqueue(key, force=False)
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)

            await self._sleep(self.reconcile_interval)

    async def _watch_loop(self, subscription):
        """Make resources due as soon as the API reports a change."""
        async for event in subscription:
            if not self.running:
                break
            logger.debug(f"{event.event_type.value} event for {event.key}")
            self.enqueue(event.key)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def enqueue(self, key: NamespacedName, force: bool = True) -> None:
        """
        Start reconciling ``key`` unless it is already in flight.

        With ``force``, a key that is in flight is marked dirty instead and
        reconciled again right after. Poll results pass ``force=False``
        since an in-flight key is still due until its run records an outcome.
        """
        if key in self._in_flight:
            if force:
                self._dirty.add(key)
            return

        self._in_flight.add(key)
        task = asyncio.create_task(self._run(key))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, key: NamespacedName) -> None:
        try:
            while True:
                self._dirty.discard(key)
                requeue = await self._reconcile_resource(key)
                if not self.running:
                    break
                if not requeue and key not in self._dirty:
                    break
        except Exception as e:
            logger.error(f"Error scheduling {key}: {e}", exc_info=True)
        finally:
            self._in_flight.discard(key)
            self._dirty.discard(key)

    async def _reconcile_resource(self, key: NamespacedName) -> bool:
        """
        Reconcile one resource and record when it is due next.

        Returns:
            True when the reconciler asked to be called again immediately.
        """
        async with self.semaphore:
            start_time = time.monotonic()
            try:
                result = await self.reconciler.reconcile(key)
            except Exception as e:
                duration = time.monotonic() - start_time
                logger.error(f"Failed to reconcile {key} after {duration:.2f}s: {e}")
                await self.db.requeue_failed_mapping(
                    key.namespace,
                    key.name,
                    base_delay=self.config.backoff_base_delay,
                    max_delay=self.config.backoff_max_delay,
                    jitter_factor=self.config.backoff_jitter_factor,
                )
                await self._publish_reconciled(key)
                return False

            duration = time.monotonic() - start_time
            await self._schedule_next(key, result)
            logger.info(f"Reconciled {key} in {duration:.2f}s")
            await self._publish_reconciled(key)
            return result.requeue

    async def _schedule_next(self, key: NamespacedName, result: ReconcileResult):
        if result.requeue:
            delay = 0
        elif result.requeue_after is not None:
            delay = result.requeue_after
        else:
            delay = self.config.resync_interval

        await self.db.schedule_reconciliation(
            key.namespace,
            key.name,
            delay_seconds=delay,
            observed_generation=result.observed_generation,
        )

    async def _publish_reconciled(self, key: NamespacedName) -> None:
        if self._event_bus is None:
            return
        resource = await self.db.get_mapping(key.namespace, key.name)
        if resource is not None:
            event = ResourceEvent.for_resource(EventType.RECONCILED, resource)
        else:
            event = ResourceEvent.for_key(EventType.RECONCILED, key)
        await self._event_bus.publish(event)

    async def trigger_reconciliation(self, namespace: str, name: str) -> bool:
        """Manually trigger reconciliation. Returns False if not found."""
        logger.info(f"Manually triggering reconciliation for {namespace}/{name}")
        found = await self.db.mark_mapping_for_reconciliation(namespace, name)
        if found and self.running:
            self.enqueue(NamespacedName(namespace=namespace, name=name))
        return found
