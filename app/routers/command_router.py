# app/routers/command_router.py
from typing import Optional

from fastapi import APIRouter, Body, Depends, Path, Query, status

from app.dependencies import ensure_same_device, get_current_device, get_current_parent_id, get_services
from app.models.command_models import (
    CommandHistoryPage,
    CommandIssueRequest,
    CommandPublic,
    CommandResultOutcome,
    CommandResultReport,
    CommandStatus,
    CommandSummary,
    PendingCommandsResponse,
)
from app.models.device_models import DeviceInDB
from app.services.container import Services

router = APIRouter()


# --- Parent side ---

@router.post("", response_model=CommandPublic, status_code=status.HTTP_201_CREATED, summary="Issue a command to a device")
async def issue_command(
    request_body: CommandIssueRequest,
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    command = await services.dispatch.issue(
        request_body.deviceId, parent_id, request_body.type.value, request_body.data, request_body.priority.value
    )
    return CommandPublic.model_validate(command)


@router.get("/device/{device_id}/history", response_model=CommandHistoryPage, summary="Command history for a device")
async def command_history(
    device_id: str = Path(...),
    status_filter: Optional[CommandStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    return await services.dispatch.history(
        device_id, parent_id, status_filter.value if status_filter else None, page, limit
    )


@router.delete("/{command_id}", response_model=CommandPublic, summary="Cancel a pending or sent command")
async def cancel_command(
    command_id: str = Path(...),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    command = await services.dispatch.cancel(command_id, parent_id)
    return CommandPublic.model_validate(command)


@router.post("/{command_id}/retry", response_model=CommandPublic, status_code=status.HTTP_201_CREATED,
             summary="Re-issue a failed command as a new command")
async def retry_command(
    command_id: str = Path(...),
    parent_id: str = Depends(get_current_parent_id),
    services: Services = Depends(get_services),
):
    command = await services.dispatch.retry(command_id, parent_id)
    return CommandPublic.model_validate(command)


# --- Device side ---

@router.get("/device/{device_id}/pending", response_model=PendingCommandsResponse, summary="Pull pending commands")
async def pull_pending_commands(
    device_id: str = Path(...),
    device: DeviceInDB = Depends(get_current_device),
    services: Services = Depends(get_services),
):
    ensure_same_device(device, device_id)
    commands = await services.dispatch.pull_pending(device_id)
    return PendingCommandsResponse(commands=[CommandSummary.from_command(c) for c in commands])


@router.post("/{command_id}/acknowledge", response_model=CommandResultOutcome, summary="Acknowledge receipt")
async def acknowledge_command(
    command_id: str = Path(...),
    device: DeviceInDB = Depends(get_current_device),
    services: Services = Depends(get_services),
):
    command = await services.dispatch.acknowledge(command_id, device_id=device.deviceId)
    return CommandResultOutcome(commandId=command.id, status=command.status, retryCount=command.retryCount)


@router.post("/{command_id}/executing", response_model=CommandResultOutcome, summary="Report execution started")
async def command_executing(
    command_id: str = Path(...),
    device: DeviceInDB = Depends(get_current_device),
    services: Services = Depends(get_services),
):
    command = await services.dispatch.mark_executing(command_id, device_id=device.deviceId)
    return CommandResultOutcome(commandId=command.id, status=command.status, retryCount=command.retryCount)


@router.post("/{command_id}/result", response_model=CommandResultOutcome, summary="Report execution result")
async def report_command_result(
    command_id: str = Path(...),
    report: CommandResultReport = Body(...),
    device: DeviceInDB = Depends(get_current_device),
    services: Services = Depends(get_services),
):
    return await services.dispatch.report_result(
        command_id, report.success, report.message, report.errorCode, report.data, device_id=device.deviceId
    )
