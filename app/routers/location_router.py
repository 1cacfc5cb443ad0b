# app/routers/location_router.py
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Path, Query

from app.dependencies import ensure_same_device, get_current_device, get_current_parent_id, get_services
from app.models.device_models import DeviceInDB
from app.models.location_models import LocationHistory, LocationPublic, LocationReport, LocationStats
from app.services.container import Services

router = APIRouter()


@router.post("/report", summary="Device location report")
async def report_location(
    report: LocationReport,
    device: DeviceInDB = Depends(get_current_device),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    ensure_same_device(device, report.deviceId)
    location = await services.locations.report(device, report)
    return {"success": True, "message": "Location reported successfully", "locationId": location.id}


@router.get("/device/{device_id}/history", response_model=LocationHistory, summary="Location history")
async def location_history(
    device_id: str = Path(...),
    hours: int = Query(24, ge=1, le=24 * 30),
    limit: int = Query(100, ge=1, le=1000),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    return await services.locations.history(device_id, parent_id, hours, limit)


@router.get("/device/{device_id}/current", response_model=LocationPublic, summary="Latest known location")
async def current_location(
    device_id: str = Path(...),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    return await services.locations.current(device_id, parent_id)


@router.get("/device/{device_id}/stats", response_model=LocationStats, summary="Daily location statistics")
async def location_stats(
    device_id: str = Path(...),
    days: int = Query(7, ge=1, le=365),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    return await services.locations.stats(device_id, parent_id, days)


@router.delete("/device/{device_id}/history", summary="Delete location history")
async def delete_location_history(
    device_id: str = Path(...),
    older_than: Optional[int] = Query(None, alias="olderThan", ge=0, description="only records older than this many days"),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
) -> Dict[str, int]:
    return {"deleted": await services.locations.delete_history(device_id, parent_id, older_than)}
