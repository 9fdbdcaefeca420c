from autoflow.automation.engine import AutomationEngine, automation_engine
from autoflow.automation.executor import AutomationExecutor, ExecutionMode, RunResult
from autoflow.automation.ledger import RunLedger, run_ledger
from autoflow.automation.models import Automation, AutomationRun
from autoflow.automation.service import AutomationService, automation_service
from autoflow.automation.triggers import compute_next_run

__all__ = [
    "Automation",
    "AutomationEngine",
    "AutomationExecutor",
    "AutomationRun",
    "AutomationService",
    "ExecutionMode",
    "RunLedger",
    "RunResult",
    "automation_engine",
    "automation_service",
    "compute_next_run",
    "run_ledger",
]
