from typing import Optional

from fastapi import APIRouter, HTTPException, Query  # type: ignore[import-not-found]

from ..errors import (
    ClassifiedRuntimeError,
    FlowRejectedError,
    ProcessSpawnError,
    ScreenshotError,
    TaskAlreadyRunningError,
)
from ..models import (
    ActivityInfo,
    ConfigDirResponse,
    ConnectionTestResponse,
    DebugScreenshotListResponse,
    DeviceRequest,
    ExecuteTaskRequest,
    LogCleanupRequest,
    LogCleanupResult,
    LogFileContent,
    LogFileListResponse,
    MaaUpdateResponse,
    RealtimeLogsResponse,
    RunFlowResponse,
    ScreenshotResponse,
    StopTaskResponse,
    TaskDescriptor,
    TaskStateSnapshot,
    VersionResponse,
)
from ..services.maa_file_browser import maa_file_browser
from ..services.orchestration.activity_resolver import activity_resolver
from ..services.orchestration.adb_client import AdbTarget, adb_client
from ..services.orchestration.control_service import control_service
from ..services.orchestration.flow_orchestrator import flow_orchestrator
from ..services.orchestration.maa_cli import maa_cli
from ..services.orchestration.schedule_manager import schedule_manager
from ..services.platform.task_state import task_state


router = APIRouter(prefix="/maa", tags=["maa"])


@router.get("/task-status", response_model=TaskStateSnapshot)
async def get_task_status():
    return task_state.snapshot()


@router.get("/realtime-logs", response_model=RealtimeLogsResponse)
async def get_realtime_logs(lines: int = Query(default=100, ge=1, le=5000)):
    snapshot = task_state.snapshot()
    return RealtimeLogsResponse(
        running=snapshot.running,
        name=snapshot.name,
        logs=task_state.recent_logs(lines),
    )


@router.post("/realtime-logs/clear")
async def clear_realtime_logs():
    task_state.clear_logs()
    return {"success": True}


@router.post("/stop-task", response_model=StopTaskResponse)
async def stop_task():
    stopped = await control_service.stop()
    if not stopped:
        return StopTaskResponse(success=False, message="No task is running")
    return StopTaskResponse(success=True, message="Task stopped")


@router.get("/version", response_model=VersionResponse)
async def get_version():
    try:
        version = await maa_cli.version()
    except (ClassifiedRuntimeError, ProcessSpawnError) as exc:
        raise HTTPException(status_code=500, detail=exc.message)
    return VersionResponse(version=version)


@router.get("/config-dir", response_model=ConfigDirResponse)
async def get_config_dir():
    try:
        config_dir = await maa_cli.config_dir()
    except (ClassifiedRuntimeError, ProcessSpawnError) as exc:
        raise HTTPException(status_code=500, detail=exc.message)
    return ConfigDirResponse(config_dir=config_dir)


@router.post("/execute", response_model=RunFlowResponse, status_code=202)
async def execute_task(request: ExecuteTaskRequest):
    task = TaskDescriptor(
        id=request.command,
        command_id=request.command,
        name=request.name or request.command,
        params=request.params,
        task_type=request.task_type,
        kind=request.kind,
    )
    if not flow_orchestrator.start_flow([task], f"manual-{request.command}"):
        raise HTTPException(status_code=409, detail="Another task is already running")
    return RunFlowResponse(accepted=True, message=f"{task.display_name} started")


@router.get("/activity", response_model=ActivityInfo)
async def get_activity(client_type: Optional[str] = Query(default=None, alias="clientType")):
    return await activity_resolver.get_current_activity(client_type)


@router.post("/screenshot", response_model=ScreenshotResponse)
async def capture_screenshot(request: Optional[DeviceRequest] = None):
    request = request or DeviceRequest()
    try:
        shot = await adb_client.capture_screen(AdbTarget.from_params(request.adb_path, request.address))
    except ScreenshotError as exc:
        raise HTTPException(status_code=500, detail=exc.message)
    return ScreenshotResponse(image=shot.image, captured_at=shot.captured_at)


@router.post("/test-connection", response_model=ConnectionTestResponse)
async def test_connection(request: Optional[DeviceRequest] = None):
    request = request or DeviceRequest()
    return await adb_client.test_connection(AdbTarget.from_params(request.adb_path, request.address))


@router.get("/debug-screenshots", response_model=DebugScreenshotListResponse)
async def list_debug_screenshots():
    try:
        screenshots = await maa_file_browser.debug_screenshots()
    except (ClassifiedRuntimeError, ProcessSpawnError) as exc:
        raise HTTPException(status_code=500, detail=exc.message)
    return DebugScreenshotListResponse(screenshots=screenshots)


@router.get("/logs", response_model=LogFileListResponse)
async def list_log_files():
    try:
        files = await maa_file_browser.list_logs()
    except (ClassifiedRuntimeError, ProcessSpawnError) as exc:
        raise HTTPException(status_code=500, detail=exc.message)
    return LogFileListResponse(files=files)


@router.post("/logs/cleanup", response_model=LogCleanupResult)
async def cleanup_log_files(request: Optional[LogCleanupRequest] = None):
    request = request or LogCleanupRequest()
    try:
        return await maa_file_browser.cleanup_logs(request.max_size_mb)
    except (ClassifiedRuntimeError, ProcessSpawnError) as exc:
        raise HTTPException(status_code=500, detail=exc.message)


@router.get("/logs/{file_path:path}", response_model=LogFileContent)
async def read_log_file(file_path: str, lines: Optional[int] = Query(default=None, ge=1, le=100000)):
    try:
        return await maa_file_browser.read_log(file_path, lines)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Log file not found")
    except (ClassifiedRuntimeError, ProcessSpawnError) as exc:
        raise HTTPException(status_code=500, detail=exc.message)


@router.post("/update-core", response_model=MaaUpdateResponse)
async def update_core():
    return await _run_update(update_core=True, update_cli=False)


@router.post("/update-cli", response_model=MaaUpdateResponse)
async def update_cli():
    return await _run_update(update_core=False, update_cli=True)


async def _run_update(*, update_core: bool, update_cli: bool) -> MaaUpdateResponse:
    try:
        results = await schedule_manager.run_update(update_core=update_core, update_cli=update_cli)
    except (FlowRejectedError, TaskAlreadyRunningError) as exc:
        raise HTTPException(status_code=409, detail=exc.message)
    except (ClassifiedRuntimeError, ProcessSpawnError) as exc:
        raise HTTPException(status_code=500, detail=exc.message)
    return MaaUpdateResponse(
        success=True,
        message="Update finished",
        output="\n".join(result.output for result in results),
    )
