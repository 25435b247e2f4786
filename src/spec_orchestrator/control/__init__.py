from spec_orchestrator.control.registry import ControlService, RunOptions, RunRecord, RunRegistry
from spec_orchestrator.control.server import build_server

__all__ = ["ControlService", "RunOptions", "RunRecord", "RunRegistry", "build_server"]
