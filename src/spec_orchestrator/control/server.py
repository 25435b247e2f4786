from __future__ import annotations

from typing import Any

from mcp.server.fastmcp import FastMCP

from spec_orchestrator.control.registry import ControlService

SERVER_NAME = "orchestrator"


def build_server(service: ControlService) -> FastMCP:
    """Expose the control operations as MCP tools on a stdio-capable server."""
    server = FastMCP(SERVER_NAME)

    @server.tool(name="run")
    def run(
        spec_path: str,
        fail_fast: bool = False,
        from_phase: int | None = None,
        from_step: int | None = None,
    ) -> dict[str, Any]:
        """Start an orchestration run for a spec file and return its run id."""
        return service.run(
            spec_path,
            {"fail_fast": fail_fast, "from_phase": from_phase, "from_step": from_step},
        )

    @server.tool(name="status")
    def status(run_id: str) -> dict[str, Any]:
        """Current status of a run: progress, last output and log files."""
        return service.status(run_id)

    @server.tool(name="retry")
    def retry(run_id: str, additional_context: str | None = None) -> dict[str, Any]:
        """Retry a failed or paused run from its checkpoint."""
        return service.retry(run_id, additional_context)

    @server.tool(name="skip")
    def skip(run_id: str, reason: str) -> dict[str, Any]:
        """Skip the current step; the reason is written to the audit log."""
        return service.skip(run_id, reason)

    @server.tool(name="abort")
    def abort(run_id: str, reason: str) -> dict[str, Any]:
        """Terminate a run, keeping its checkpoint for a later retry."""
        return service.abort(run_id, reason)

    return server
