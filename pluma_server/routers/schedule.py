from fastapi import APIRouter, HTTPException, Request  # type: ignore[import-not-found]
from fastapi.responses import StreamingResponse  # type: ignore[import-not-found]

from ..models import (
    AutoUpdateConfig,
    AutoUpdateStatus,
    ControlStatusResponse,
    RegistrationResult,
    RunFlowResponse,
    ScheduleExecuteRequest,
    ScheduleExecutionStatus,
    ScheduleRequest,
    ScheduleStatusResponse,
)
from ..services.orchestration.control_service import control_service
from ..services.orchestration.flow_orchestrator import flow_orchestrator
from ..services.orchestration.progress_broker import format_sse_frame, progress_broker
from ..services.orchestration.schedule_manager import schedule_manager


router = APIRouter(prefix="/schedule", tags=["schedule"])


@router.post("", response_model=RegistrationResult)
async def create_schedule(request: ScheduleRequest):
    return schedule_manager.schedule(request.schedule_id, request.times, request.task_flow)


@router.get("/status", response_model=ScheduleStatusResponse)
async def get_schedule_status():
    return ScheduleStatusResponse(schedules=schedule_manager.list_schedules())


@router.get("/execution-status", response_model=ScheduleExecutionStatus)
async def get_execution_status():
    return flow_orchestrator.get_execution_status()


@router.get("/control/status", response_model=ControlStatusResponse)
async def get_control_status():
    return control_service.get_status()


@router.get("/progress")
async def stream_progress(request: Request):
    async def _event_stream():
        async for event in progress_broker.stream():
            if await request.is_disconnected():
                break
            yield format_sse_frame("progress", event.model_dump(mode="json"))

    return StreamingResponse(
        _event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/auto-update", response_model=RegistrationResult)
async def setup_auto_update(request: AutoUpdateConfig):
    return schedule_manager.setup_auto_update(request)


@router.get("/auto-update/status", response_model=AutoUpdateStatus)
async def get_auto_update_status():
    return schedule_manager.auto_update_status()


@router.post("/flows/{flow_id}/run", response_model=RunFlowResponse)
async def run_saved_flow(flow_id: str):
    result = control_service.run_flow(flow_id)
    if result.reason == "busy":
        raise HTTPException(status_code=409, detail=result.message)
    if result.reason == "not_found":
        raise HTTPException(status_code=404, detail=result.message)
    return result


@router.delete("/{schedule_id}", response_model=RegistrationResult)
async def delete_schedule(schedule_id: str):
    result = schedule_manager.unschedule(schedule_id)
    if not result.success:
        raise HTTPException(status_code=404, detail=result.message)
    return result


@router.post("/{schedule_id}/execute", response_model=RunFlowResponse, status_code=202)
async def execute_schedule_now(schedule_id: str, request: ScheduleExecuteRequest):
    if not schedule_manager.trigger_in_background(schedule_id, request.task_flow):
        raise HTTPException(status_code=409, detail="Another task is already running")
    return RunFlowResponse(accepted=True, message=f"Schedule {schedule_id} started")
