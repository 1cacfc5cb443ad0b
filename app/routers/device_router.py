# app/routers/device_router.py
from typing import List

from fastapi import APIRouter, Body, Depends, Path, status

from app.dependencies import ensure_same_device, get_current_device, get_current_parent_id, get_services
from app.models.device_models import (
    DeviceBlockRequest,
    DeviceInDB,
    DeviceLinkRequest,
    DeviceLinkResponse,
    DevicePublic,
    DeviceSettingsUpdate,
    HeartbeatRequest,
    HeartbeatResponse,
)
from app.services.container import Services

router = APIRouter()


# --- Device side ---

@router.post("/heartbeat", response_model=HeartbeatResponse, summary="Device heartbeat")
async def receive_heartbeat(
    request_body: HeartbeatRequest,
    device: DeviceInDB = Depends(get_current_device),
    services: Services = Depends(get_services),
):
    ensure_same_device(device, request_body.deviceId)
    return await services.presence.record_heartbeat(
        request_body.deviceId,
        request_body.batteryLevel,
        request_body.isCharging,
        request_body.telemetry(),
    )


# --- Parent side ---

@router.post("/link", response_model=DeviceLinkResponse, status_code=status.HTTP_201_CREATED, summary="Link a child device")
async def link_device(
    request_body: DeviceLinkRequest,
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    return await services.devices.link(parent_id, request_body)


@router.get("", response_model=List[DevicePublic], summary="List linked devices")
async def list_devices(
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    return await services.devices.list_devices(parent_id)


@router.get("/{device_id}", response_model=DevicePublic, summary="Get device details")
async def read_device(
    device_id: str = Path(...),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    device = await services.devices.get_device(device_id, parent_id)
    return DevicePublic.from_device(device, services.clock())


@router.put("/{device_id}/settings", response_model=DevicePublic, summary="Update device settings")
async def update_device_settings(
    device_id: str = Path(...),
    request_body: DeviceSettingsUpdate = Body(...),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    device = await services.devices.update_settings(device_id, parent_id, request_body)
    return DevicePublic.from_device(device, services.clock())


@router.put("/{device_id}/block", response_model=DevicePublic, summary="Block or unblock a device")
async def block_device(
    device_id: str = Path(...),
    request_body: DeviceBlockRequest = Body(...),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    device = await services.devices.set_blocked(device_id, parent_id, request_body.blocked)
    return DevicePublic.from_device(device, services.clock())


@router.delete("/{device_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Remove a device")
async def delete_device(
    device_id: str = Path(...),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    await services.devices.delete(device_id, parent_id)
    return None
