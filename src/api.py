"""
REST API for mapping resources and the objects they reference.

Built with FastAPI and served by uvicorn. Writes go to the store and are
announced on the event bus so the controller reconciles right away;
reconciliation itself never happens inside a request.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import aiohttp
import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from config import APIConfig, InventoryConfig
from db import AlreadyExistsError, ConflictError, DatabaseManager
from events import EventBus, EventType, ResourceEvent, namespace_filter
from inventory import InventoryClient, InventoryError
from models import MappingResource, MappingSpec, NamespacedName
from reconciler import ConfigurationError, get_admin_api_access_binding
from validation import validate_mapping_spec, validate_name, validate_namespace

logger = logging.getLogger(__name__)

MAX_SPEC_SIZE = 64 * 1024


def validate_spec_size(spec: Dict[str, Any]) -> Dict[str, Any]:
    if len(json.dumps(spec)) > MAX_SPEC_SIZE:
        raise ValueError(f"spec exceeds maximum size of {MAX_SPEC_SIZE // 1024}KB")
    return spec


def _require_valid_spec(spec: Dict[str, Any]) -> None:
    is_valid, error = validate_mapping_spec(spec)
    if not is_valid:
        raise HTTPException(
            status_code=400, detail=f"Spec validation failed: {error}"
        )


class MappingCreate(BaseModel):
    """Request model for creating a mapping resource."""

    name: str = Field(..., description="Resource name")
    spec: Dict[str, Any] = Field(..., description="Desired mapping")

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        is_valid, error = validate_name(v)
        if not is_valid:
            raise ValueError(error)
        return v

    @field_validator("spec")
    @classmethod
    def check_spec_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_spec_size(v)


class MappingUpdate(BaseModel):
    """Request model for replacing the spec of a mapping resource."""

    spec: Dict[str, Any] = Field(..., description="Desired mapping")
    resource_version: Optional[int] = Field(
        None, description="Fail with 409 unless this is the stored version"
    )

    @field_validator("spec")
    @classmethod
    def check_spec_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_spec_size(v)


class MappingResponse(BaseModel):
    """Response model for a mapping resource."""

    namespace: str
    name: str
    spec: Dict[str, Any]
    status: Dict[str, Any] = {}
    finalizers: List[str] = []
    generation: int
    resource_version: int
    deletion_timestamp: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_reconcile_time: Optional[datetime] = None


class ObjectData(BaseModel):
    """Request model for secrets and config maps."""

    data: Dict[str, str] = Field(default_factory=dict)


class SecretResponse(BaseModel):
    """A secret as returned by the API; values are never included."""

    namespace: str
    name: str
    keys: List[str]


class ConfigMapResponse(BaseModel):
    namespace: str
    name: str
    data: Dict[str, str]


class InventoryMappingResponse(BaseModel):
    platform: str
    primary_id: str
    secondary_id: str
    is_default: bool = False


def _require_namespace(namespace: str) -> None:
    is_valid, error = validate_namespace(namespace)
    if not is_valid:
        raise HTTPException(status_code=400, detail=error)


def _response(resource: MappingResource) -> MappingResponse:
    return MappingResponse(**resource.to_dict())


def create_app(
    db_manager: DatabaseManager,
    event_bus: Optional[EventBus] = None,
    controller: Optional[Any] = None,
    api_config: Optional[APIConfig] = None,
    inventory_config: Optional[InventoryConfig] = None,
    client_factory: Callable[..., Any] = InventoryClient,
) -> FastAPI:
    """
    Build the FastAPI application.

    Endpoint groups:
    - Health check: GET /
    - Mappings: /api/v1/mappings, /api/v1/namespaces/{ns}/mappings
    - Reconcile trigger and inventory view per mapping
    - Secrets and config maps: /api/v1/namespaces/{ns}/{secrets,configmaps}
    - Watch: GET /api/v1/watch (Server-Sent Events)
    """
    api_config = api_config or APIConfig()
    inventory_config = inventory_config or InventoryConfig()

    app = FastAPI(
        title="Instance Mapping Operator API",
        description="Declare service instance mappings and watch them converge",
        version="1.0.0",
    )
    if api_config.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=api_config.cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    async def publish(event: ResourceEvent) -> None:
        if event_bus:
            await event_bus.publish(event)

    async def get_or_404(namespace: str, name: str) -> MappingResource:
        resource = await db_manager.get_mapping(namespace, name)
        if resource is None:
            raise HTTPException(
                status_code=404, detail=f"Mapping {namespace}/{name} not found"
            )
        return resource

    @app.get("/")
    async def health_check():
        """Health check endpoint."""
        return {"status": "ok", "service": "instance-mapping-operator"}

    # ==================== Mapping Endpoints ====================

    @app.post(
        "/api/v1/namespaces/{namespace}/mappings",
        response_model=MappingResponse,
        status_code=201,
    )
    async def create_mapping(namespace: str, body: MappingCreate):
        """Create a mapping resource."""
        _require_namespace(namespace)
        _require_valid_spec(body.spec)
        try:
            created = await db_manager.create_mapping(
                namespace, body.name, MappingSpec.from_dict(body.spec)
            )
        except AlreadyExistsError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except Exception as e:
            logger.error(f"Error creating mapping {namespace}/{body.name}: {e}")
            raise HTTPException(status_code=500, detail=str(e))

        await publish(ResourceEvent.for_resource(EventType.CREATED, created))
        return _response(created)

    @app.get("/api/v1/mappings", response_model=List[MappingResponse])
    async def list_all_mappings(limit: int = 100):
        """List mapping resources in all namespaces."""
        resources = await db_manager.list_mappings(limit=limit)
        return [_response(r) for r in resources]

    @app.get(
        "/api/v1/namespaces/{namespace}/mappings",
        response_model=List[MappingResponse],
    )
    async def list_mappings(namespace: str, limit: int = 100):
        """List mapping resources in a namespace."""
        resources = await db_manager.list_mappings(namespace=namespace, limit=limit)
        return [_response(r) for r in resources]

    @app.get(
        "/api/v1/namespaces/{namespace}/mappings/{name}",
        response_model=MappingResponse,
    )
    async def get_mapping(namespace: str, name: str):
        """Get a mapping resource."""
        return _response(await get_or_404(namespace, name))

    @app.put(
        "/api/v1/namespaces/{namespace}/mappings/{name}",
        response_model=MappingResponse,
    )
    async def update_mapping(namespace: str, name: str, body: MappingUpdate):
        """Replace the spec of a mapping resource."""
        _require_valid_spec(body.spec)
        try:
            updated = await db_manager.replace_mapping_spec(
                namespace,
                name,
                MappingSpec.from_dict(body.spec),
                resource_version=body.resource_version,
            )
        except ConflictError as e:
            raise HTTPException(status_code=409, detail=str(e))

        if updated is None:
            raise HTTPException(
                status_code=404, detail=f"Mapping {namespace}/{name} not found"
            )
        await publish(ResourceEvent.for_resource(EventType.MODIFIED, updated))
        return _response(updated)

    @app.delete("/api/v1/namespaces/{namespace}/mappings/{name}", status_code=202)
    async def delete_mapping(namespace: str, name: str):
        """
        Request deletion of a mapping resource.

        The resource stays visible until its finalizer is removed, i.e.
        until the external mapping has been deleted.
        """
        await get_or_404(namespace, name)
        remaining = await db_manager.request_mapping_deletion(namespace, name)

        key = NamespacedName(namespace=namespace, name=name)
        if remaining is None:
            await publish(ResourceEvent.for_key(EventType.DELETED, key))
            return {"status": "deleted", "namespace": namespace, "name": name}

        await publish(ResourceEvent.for_resource(EventType.DELETED, remaining))
        return {
            "status": "deleting",
            "namespace": namespace,
            "name": name,
            "finalizers": remaining.finalizers,
        }

    @app.post(
        "/api/v1/namespaces/{namespace}/mappings/{name}/reconcile",
        status_code=202,
    )
    async def trigger_reconcile(namespace: str, name: str):
        """Make a mapping resource due for reconciliation now."""
        if controller is not None:
            found = await controller.trigger_reconciliation(namespace, name)
        else:
            found = await db_manager.mark_mapping_for_reconciliation(namespace, name)
        if not found:
            raise HTTPException(
                status_code=404, detail=f"Mapping {namespace}/{name} not found"
            )
        return {"status": "reconciliation triggered"}

    @app.get(
        "/api/v1/namespaces/{namespace}/mappings/{name}/inventory",
        response_model=List[InventoryMappingResponse],
    )
    async def get_inventory(namespace: str, name: str):
        """List the inventory records of the mapping's service instance."""
        resource = await get_or_404(namespace, name)
        try:
            binding = await get_admin_api_access_binding(
                db_manager, resource.spec.admin_api_access_secret
            )
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))

        client = client_factory(binding, timeout=inventory_config.request_timeout)
        try:
            records = await client.list_mappings(
                resource.spec.mapping.service_instance_id
            )
        except (InventoryError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Inventory lookup for {namespace}/{name} failed: {e}")
            raise HTTPException(status_code=502, detail=f"Inventory error: {e}")

        return [
            InventoryMappingResponse(
                platform=r.platform,
                primary_id=r.primary_id,
                secondary_id=r.secondary_id,
                is_default=r.is_default,
            )
            for r in records
        ]

    # ==================== Secret / ConfigMap Endpoints ====================

    @app.put(
        "/api/v1/namespaces/{namespace}/secrets/{name}",
        response_model=SecretResponse,
    )
    async def put_secret(namespace: str, name: str, body: ObjectData):
        """Create or replace a secret."""
        _require_namespace(namespace)
        await db_manager.put_secret(namespace, name, body.data)
        return SecretResponse(namespace=namespace, name=name, keys=sorted(body.data))

    @app.get(
        "/api/v1/namespaces/{namespace}/secrets/{name}",
        response_model=SecretResponse,
    )
    async def get_secret(namespace: str, name: str):
        """Get a secret's key names."""
        data = await db_manager.get_secret(namespace, name)
        if data is None:
            raise HTTPException(
                status_code=404, detail=f"Secret {namespace}/{name} not found"
            )
        return SecretResponse(namespace=namespace, name=name, keys=sorted(data))

    @app.delete("/api/v1/namespaces/{namespace}/secrets/{name}")
    async def delete_secret(namespace: str, name: str):
        if not await db_manager.delete_secret(namespace, name):
            raise HTTPException(
                status_code=404, detail=f"Secret {namespace}/{name} not found"
            )
        return {"status": "deleted"}

    @app.put(
        "/api/v1/namespaces/{namespace}/configmaps/{name}",
        response_model=ConfigMapResponse,
    )
    async def put_config_map(namespace: str, name: str, body: ObjectData):
        """Create or replace a config map."""
        _require_namespace(namespace)
        await db_manager.put_config_map(namespace, name, body.data)
        return ConfigMapResponse(namespace=namespace, name=name, data=body.data)

    @app.get(
        "/api/v1/namespaces/{namespace}/configmaps/{name}",
        response_model=ConfigMapResponse,
    )
    async def get_config_map(namespace: str, name: str):
        data = await db_manager.get_config_map(namespace, name)
        if data is None:
            raise HTTPException(
                status_code=404, detail=f"ConfigMap {namespace}/{name} not found"
            )
        return ConfigMapResponse(namespace=namespace, name=name, data=data)

    @app.delete("/api/v1/namespaces/{namespace}/configmaps/{name}")
    async def delete_config_map(namespace: str, name: str):
        if not await db_manager.delete_config_map(namespace, name):
            raise HTTPException(
                status_code=404, detail=f"ConfigMap {namespace}/{name} not found"
            )
        return {"status": "deleted"}

    # ==================== Watch ====================

    @app.get("/api/v1/watch")
    async def watch(namespace: Optional[str] = None):
        """SSE stream of mapping resource events, optionally for one namespace."""
        if not event_bus:
            raise HTTPException(
                status_code=503, detail="Event streaming not available"
            )

        subscriber_id, subscription = await event_bus.subscribe(
            namespace_filter(namespace)
        )

        async def event_generator():
            try:
                async for event in subscription:
                    yield event.to_sse()
            except asyncio.CancelledError:
                pass
            finally:
                await event_bus.unsubscribe(subscriber_id)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    return app


class APIServer:
    """Runs the REST API with uvicorn inside the operator's event loop."""

    def __init__(self, app: FastAPI, config: Optional[APIConfig] = None):
        self.app = app
        self.config = config or APIConfig()
        self.server: Optional[uvicorn.Server] = None

    async def start(self) -> None:
        server_config = uvicorn.Config(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )
        self.server = uvicorn.Server(server_config)

        logger.info(f"Starting API server on {self.config.host}:{self.config.port}")
        await self.server.serve()

    async def stop(self) -> None:
        logger.info("Stopping API server")
        if self.server:
            self.server.should_exit = True
