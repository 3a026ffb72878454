"""Device registry endpoints.

- POST   /api/v1/devices
- GET    /api/v1/devices
- GET    /api/v1/devices/{device_id}
- DELETE /api/v1/devices/{device_id}
- POST   /api/v1/devices/{device_id}/heartbeat
"""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, Query, status

from openflash_server.api.schemas import (
    DeviceListResponse,
    DeviceRegisterRequest,
    DeviceResponse,
    HeartbeatRequest,
)
from openflash_server.models.device import (
    Device,
    DeviceCapabilities,
    DevicePlatform,
    DeviceStatus,
)
from openflash_server.services.orchestrator import Orchestrator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["devices"])


# Dependency placeholder (to be configured in main app)
async def get_orchestrator() -> Orchestrator:
    """Get orchestrator instance."""
    raise NotImplementedError("Orchestrator dependency not configured")


def _to_response(device: Device) -> DeviceResponse:
    return DeviceResponse(**device.to_dict())


@router.post(
    "/devices",
    response_model=DeviceResponse,
    status_code=status.HTTP_201_CREATED,
    responses={503: {"description": "Device pool is full"}},
)
async def register_device(
    request: DeviceRegisterRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> Any:
    """
    Register a programmer device.

    Registering an id that already exists replaces the previous record.
    """
    device = Device(
        id=request.id,
        name=request.name,
        uri=request.uri,
        platform=DevicePlatform.from_str(request.platform),
        firmware_version=request.firmware_version,
        status=DeviceStatus(request.status),
        capabilities=DeviceCapabilities(**request.capabilities.model_dump()),
        tags=list(request.tags),
        metadata=dict(request.metadata),
    )
    await orchestrator.register_device(device)

    return _to_response(device)


@router.get("/devices", response_model=DeviceListResponse)
async def list_devices(
    status_filter: Optional[str] = Query(None, alias="status", examples=["available"]),
    tag: Optional[str] = Query(None, examples=["lab-a"]),
    platform: Optional[str] = Query(None, examples=["rp2040"]),
    orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> Any:
    """
    List registered devices, sorted by id.

    Optional filters: status, tag, platform.
    """
    pool = orchestrator.device_pool
    devices = pool.list_by_platform(platform) if platform is not None else pool.list_all()

    if tag is not None:
        devices = [d for d in devices if tag in d.tags]
    if status_filter is not None:
        devices = [d for d in devices if d.status.value == status_filter.lower()]

    return DeviceListResponse(
        devices=[_to_response(d) for d in devices],
        total=len(devices),
    )


@router.get(
    "/devices/{device_id}",
    response_model=DeviceResponse,
    responses={404: {"description": "Device not found"}},
)
async def get_device(
    device_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> Any:
    return _to_response(orchestrator.get_device(device_id))


@router.delete(
    "/devices/{device_id}",
    response_model=DeviceResponse,
    responses={404: {"description": "Device not found"}},
)
async def deregister_device(
    device_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> Any:
    """
    Remove a device from the pool.

    A job running on the device is not cancelled; its result can still be
    reported.
    """
    device = await orchestrator.deregister_device(device_id)
    return _to_response(device)


@router.post(
    "/devices/{device_id}/heartbeat",
    response_model=DeviceResponse,
    responses={
        404: {"description": "Device not found"},
        409: {"description": "Device is busy; its status cannot change"},
    },
)
async def device_heartbeat(
    device_id: str,
    request: Optional[HeartbeatRequest] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> Any:
    """
    Record a device heartbeat.

    Refreshes last_seen and optionally reports a new status. A device only
    receives jobs once it reports itself available.
    """
    new_status = None
    if request is not None and request.status is not None:
        new_status = DeviceStatus(request.status)

    device = await orchestrator.heartbeat(device_id, new_status)
    logger.debug("device_heartbeat", device_id=device_id, status=device.status.value)

    return _to_response(device)
