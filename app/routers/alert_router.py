# app/routers/alert_router.py
from typing import Dict, Optional

from fastapi import APIRouter, Body, Depends, Path, Query, status

from app.core.errors import TransientStoreFailure
from app.dependencies import ensure_same_device, get_current_device, get_current_parent_id, get_services
from app.models.alert_models import (
    AlertPage,
    AlertPublic,
    AlertSeverity,
    AlertStats,
    AlertType,
    DeviceAlertReport,
    MarkAlertsReadRequest,
)
from app.models.device_models import DeviceInDB
from app.services.container import Services

router = APIRouter()


@router.post("", response_model=AlertPublic, status_code=status.HTTP_201_CREATED, summary="Device-reported alert")
async def create_device_alert(
    report: DeviceAlertReport,
    device: DeviceInDB = Depends(get_current_device),
    services: Services = Depends(get_services),
):
    ensure_same_device(device, report.deviceId)
    alert = await services.alert_emitter.device_reported(device, report)
    if alert is None:
        raise TransientStoreFailure("Alert could not be stored, try again")
    return AlertPublic.from_alert(alert)


@router.get("", response_model=AlertPage, summary="List alerts")
async def list_alerts(
    alert_type: Optional[AlertType] = Query(None, alias="type"),
    severity: Optional[AlertSeverity] = Query(None),
    is_read: Optional[bool] = Query(None, alias="isRead"),
    device_id: Optional[str] = Query(None, alias="deviceId"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    return await services.alert_service.list_alerts(
        parent_id,
        alert_type=alert_type.value if alert_type else None,
        severity=severity.value if severity else None,
        is_read=is_read,
        device_id=device_id,
        page=page,
        limit=limit,
    )


@router.get("/stats", response_model=AlertStats, summary="Alert statistics")
async def alert_stats(
    days: int = Query(7, ge=1, le=365),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    return await services.alert_service.stats(parent_id, days)


@router.get("/unread-count", summary="Number of unread alerts")
async def unread_count(
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
) -> Dict[str, int]:
    return {"count": await services.alert_service.unread_count(parent_id)}


@router.put("/read", summary="Mark several alerts as read")
async def mark_alerts_read(
    request_body: MarkAlertsReadRequest = Body(...),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
) -> Dict[str, int]:
    return {"modified": await services.alert_service.mark_many_read(request_body.alertIds, parent_id)}


@router.get("/{alert_id}", response_model=AlertPublic, summary="Get an alert")
async def read_alert(
    alert_id: str = Path(...),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    return AlertPublic.from_alert(await services.alert_service.get_alert(alert_id, parent_id))


@router.put("/{alert_id}/read", response_model=AlertPublic, summary="Mark an alert as read")
async def mark_alert_read(
    alert_id: str = Path(...),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    return AlertPublic.from_alert(await services.alert_service.mark_read(alert_id, parent_id))


@router.put("/{alert_id}/resolve", response_model=AlertPublic, summary="Resolve an alert")
async def resolve_alert(
    alert_id: str = Path(...),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    return AlertPublic.from_alert(await services.alert_service.resolve(alert_id, parent_id))


@router.put("/{alert_id}/acknowledge", response_model=AlertPublic, summary="Acknowledge an alert")
async def acknowledge_alert(
    alert_id: str = Path(...),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    return AlertPublic.from_alert(await services.alert_service.acknowledge(alert_id, parent_id))


@router.delete("/{alert_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete an alert")
async def delete_alert(
    alert_id: str = Path(...),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    await services.alert_service.delete(alert_id, parent_id)
    return None
