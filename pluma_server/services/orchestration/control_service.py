import logging
from typing import Optional

from ...models import ControlStatusResponse, RunFlowResponse, TaskKind
from ...runtime.process import ProcessHandle, ProcessRunner, process_runner
from ..flow_store import FlowNotFoundError, FlowStore, flow_store
from ..platform.task_state import TaskStateTracker, task_state
from .flow_orchestrator import FlowOrchestrator, flow_orchestrator

# Saved flows named after a task category tag their plain steps with it.
_FLOW_KINDS = {
    "automation": TaskKind.AUTOMATION,
    "combat": TaskKind.COMBAT,
    "roguelike": TaskKind.ROGUELIKE,
}


class ControlService:
    """Status, stop and run-by-id operations shared by the HTTP API and the chat bot."""

    def __init__(
        self,
        orchestrator: Optional[FlowOrchestrator] = None,
        tracker: Optional[TaskStateTracker] = None,
        runner: Optional[ProcessRunner] = None,
        store: Optional[FlowStore] = None,
    ) -> None:
        self.orchestrator = orchestrator or flow_orchestrator
        self.tracker = tracker or task_state
        self.runner = runner or process_runner
        self.store = store or flow_store

    def get_status(self) -> ControlStatusResponse:
        return ControlStatusResponse(
            task=self.tracker.snapshot(),
            execution=self.orchestrator.get_execution_status(),
        )

    async def stop(self) -> bool:
        handle = self.tracker.handle
        if not isinstance(handle, ProcessHandle):
            return False
        logger.info("Stopping task pid=%s", handle.pid)
        await self.runner.kill(handle, graceful=True)
        return True

    def run_flow(self, flow_id: str) -> RunFlowResponse:
        try:
            flow = self.store.load_flow(flow_id)
        except FlowNotFoundError as exc:
            return RunFlowResponse(accepted=False, message=str(exc), reason="not_found")
        if not any(task.enabled for task in flow):
            return RunFlowResponse(accepted=False, message=f"Flow '{flow_id}' has no enabled tasks", reason="empty")
        flow_kind = _FLOW_KINDS.get(flow_id)
        if flow_kind is not None:
            flow = [task if task.kind else task.model_copy(update={"kind": flow_kind}) for task in flow]
        if not self.orchestrator.start_flow(flow, flow_id):
            return RunFlowResponse(accepted=False, message="Another task is already running", reason="busy")
        return RunFlowResponse(accepted=True, message=f"Flow '{flow_id}' started")


control_service = ControlService()

logger = logging.getLogger(__name__)
