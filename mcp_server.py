#!/usr/bin/env python3
"""
MCP Server for the workbench.

IMPORTANT: Never print to stdout - it breaks JSON-RPC communication.
All logging must go to stderr.

This server exposes the workbench via MCP tools:
- workbench_run: Run a command against the saved project
- workbench_stop: Stop the running command
- workbench_import: Import a public GitHub repository as the project
- workbench_files: List project files
- workbench_read / workbench_write / workbench_delete: Edit single files
- workbench_search: Search file contents
- workbench_save: Save the project (adds a snapshot)
- workbench_rollback: Restore the previous snapshot
- workbench_history: List saved snapshots

One execution controller lives for the whole server, so workbench_stop
can reach a command started by workbench_run.

To run:
    python mcp_server.py
"""

import sys
import json
import logging
from dataclasses import asdict

# CRITICAL: Configure logging to stderr BEFORE any other imports
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stderr
)
logger = logging.getLogger("workbench-mcp")

# MCP imports
from mcp.server.fastmcp import FastMCP

from config import Config, get_default_config, load_config
from errors import WorkbenchError
from execution import ExecutionController, create_controller
from importer import import_project
from persistence import WorkspaceStore, create_store
from project import create_default_project, sanitize_path, search_files
from schemas import ProjectState

# Create MCP server
mcp = FastMCP("workbench")


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

_config: Config = None
_store: WorkspaceStore = None
_controller: ExecutionController = None


def _get_config() -> Config:
    """Load workbench configuration once."""
    global _config
    if _config is None:
        try:
            _config = load_config()
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load config, using defaults: {e}")
            _config = get_default_config()
    return _config


def _get_store() -> WorkspaceStore:
    global _store
    if _store is None:
        config = _get_config()
        _store = create_store(
            config.persistence.directory_path,
            config.persistence.fallback_path,
            history_limit=config.persistence.history_limit,
        )
    return _store


def _get_controller() -> ExecutionController:
    global _controller
    if _controller is None:
        _controller = create_controller(_get_config().runtime)
    return _controller


def _load_state() -> ProjectState:
    state = _get_store().load()
    return create_default_project() if state is None else state


def _error(e: WorkbenchError) -> str:
    return json.dumps({"error": e.message, "kind": e.kind})


def _save(state: ProjectState) -> dict:
    store = _get_store()
    snapshot = store.save(state)
    response = {
        "saved": True,
        "new_snapshot": snapshot is not None,
        "files": len(state.file_records()),
    }
    if store.last_mirror_error:
        response["warning"] = store.last_mirror_error.message
    return response


# =============================================================================
# MCP TOOLS
# =============================================================================

@mcp.tool()
async def workbench_run(
    command: str,
    timeout: float = 0
) -> str:
    """
    Run a shell command against the saved project.

    The project's files are synced into the sandbox first. A command that is
    stopped or times out finishes with exit code 130 rather than an error.

    Args:
        command: Shell command line (e.g., "python main.py")
        timeout: Seconds before the command is stopped (0 = configured default)

    Returns:
        JSON with exit_code, stdout, stderr, cancelled_by and duration_ms.
    """
    logger.info(f"workbench_run: {command[:80]}")

    try:
        result = await _get_controller().run(
            command,
            _load_state(),
            timeout=timeout or None,
        )
        return result.model_dump_json(indent=2)
    except WorkbenchError as e:
        logger.error(f"workbench_run failed: {e.message}")
        return _error(e)


@mcp.tool()
async def workbench_stop() -> str:
    """
    Stop the running command, if any.

    Returns:
        JSON with the controller state after stopping.
    """
    logger.info("workbench_stop")
    controller = _get_controller()
    await controller.stop()
    return json.dumps({"stopped": True, "state": controller.state.value})


@mcp.tool()
async def workbench_import(
    url: str
) -> str:
    """
    Import a public GitHub repository as the project and save it.

    Accepts https://github.com/owner/repo, .../tree/<ref>/<subpath>,
    ?ref=<ref>&path=<subpath> and #<ref>:<subpath> forms.

    Args:
        url: Repository reference

    Returns:
        JSON with revision, imported file paths and skipped entries.
    """
    logger.info(f"workbench_import: {url}")

    try:
        result = await import_project(url, _get_config().importer)
        saved = _save(result.to_state())
        return json.dumps({
            "reference": str(result.reference),
            "revision": result.revision,
            "files": [r.path for r in result.files],
            "skipped": [s.model_dump(exclude_none=True) for s in result.skipped],
            **saved,
        }, indent=2)
    except WorkbenchError as e:
        logger.error(f"workbench_import failed: {e.message}")
        return _error(e)


@mcp.tool()
async def workbench_files() -> str:
    """
    List the project's files.

    Returns:
        JSON array of {path, size} objects.
    """
    state = _load_state()
    return json.dumps(
        [{"path": r.path, "size": len(r.content or "")} for r in state.file_records()],
        indent=2,
    )


@mcp.tool()
async def workbench_read(
    path: str
) -> str:
    """
    Read one project file.

    Args:
        path: Project path (e.g., "/main.py")

    Returns:
        The file's content, or JSON with an error.
    """
    clean = sanitize_path(path)
    record = _load_state().get(clean) if clean else None
    if record is None or not record.is_file:
        return json.dumps({"error": f"File not found: {path}"})
    return record.content or ""


@mcp.tool()
async def workbench_write(
    path: str,
    content: str
) -> str:
    """
    Create or replace one project file and save the project.

    Args:
        path: Project path (e.g., "/src/app.py")
        content: Full new file content

    Returns:
        JSON with the saved path and snapshot info.
    """
    clean = sanitize_path(path)
    if clean is None:
        return json.dumps({"error": f"Invalid path: {path}"})

    logger.info(f"workbench_write: {clean} ({len(content)} chars)")
    try:
        return json.dumps({"path": clean, **_save(_load_state().with_file(clean, content))})
    except WorkbenchError as e:
        return _error(e)


@mcp.tool()
async def workbench_delete(
    path: str
) -> str:
    """
    Delete one project file and save the project.

    Args:
        path: Project path

    Returns:
        JSON with the deleted path and snapshot info.
    """
    clean = sanitize_path(path)
    state = _load_state()
    if clean is None or state.get(clean) is None:
        return json.dumps({"error": f"File not found: {path}"})

    logger.info(f"workbench_delete: {clean}")
    try:
        return json.dumps({"path": clean, **_save(state.without(clean))})
    except WorkbenchError as e:
        return _error(e)


@mcp.tool()
async def workbench_search(
    query: str
) -> str:
    """
    Case-insensitive search across project files.

    Args:
        query: Text to look for

    Returns:
        JSON array of {path, line, column, preview} matches.
    """
    matches = search_files(_load_state(), query)
    return json.dumps([asdict(m) for m in matches], indent=2)


@mcp.tool()
async def workbench_save() -> str:
    """
    Save the current project, adding a snapshot if it changed.

    Returns:
        JSON with snapshot info.
    """
    try:
        return json.dumps(_save(_load_state()))
    except WorkbenchError as e:
        return _error(e)


@mcp.tool()
async def workbench_rollback() -> str:
    """
    Restore the snapshot saved before the newest one.

    Returns:
        JSON with the restored file count, or an error when there is no
        previous snapshot.
    """
    logger.info("workbench_rollback")
    previous = _get_store().load_previous()
    if previous is None:
        return json.dumps({"error": "No previous snapshot available."})

    try:
        return json.dumps({"rolled_back": True, **_save(previous)})
    except WorkbenchError as e:
        return _error(e)


@mcp.tool()
async def workbench_history() -> str:
    """
    List saved snapshots, oldest first.

    Returns:
        JSON array of {timestamp, files} objects.
    """
    return json.dumps([
        {"timestamp": s.timestamp.isoformat(), "files": len(s.state.file_records())}
        for s in _get_store().history()
    ], indent=2)


# =============================================================================
# ENTRY POINT
# =============================================================================

def main() -> None:
    logger.info("Starting Workbench MCP Server")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
