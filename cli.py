#!/usr/bin/env python3
"""
Workbench CLI - edit, run, save and import small projects.

This is the main entry point for the workbench command-line interface.
It wraps the execution controller, the importer and the workspace store
with a rich terminal UI.

USAGE:
------
  workbench "python main.py"              - Run a command against the project
  workbench --import URL                  - Import a public GitHub repository
  workbench --import-json FILE            - Replace the project with a JSON export
  workbench --export-json FILE            - Export the project as JSON
  workbench --export-zip FILE             - Export the project as a zip archive
  workbench --from-dir DIR                - Load a local folder as the project
  workbench --to-dir DIR                  - Write the project into a folder
  workbench --save | --rollback | --history | --tree | --search TEXT

Every command that changes the project saves it, which adds a snapshot to
history. --rollback restores the snapshot before the newest one and saves it.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from config import Config, load_config
from errors import WorkbenchError
from execution import ControllerState, ExecutionController, create_controller
from importer import import_project, is_supported_reference
from persistence import WorkspaceStore, create_store
from project import (
    create_default_project,
    export_project_json,
    export_project_zip,
    import_project_json,
    search_files,
    state_from_directory,
    write_state_to_directory,
)
from schemas import ProjectState
import ui

logger = logging.getLogger("workbench.cli")


# =============================================================================
# CLI ARGUMENT PARSING
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="workbench",
        description="Edit, run, save and import small projects",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  workbench "python main.py"
  workbench --import https://github.com/octocat/Hello-World
  workbench --import "https://github.com/owner/repo/tree/dev/src"
  workbench --history
  workbench --rollback
        """
    )

    # Positional argument for the command to run
    parser.add_argument(
        "command",
        nargs="?",
        help="Shell command to run against the current project"
    )

    parser.add_argument(
        "--timeout",
        type=float,
        help="Seconds before the command is stopped (default: from config)"
    )

    parser.add_argument(
        "--input",
        action="append",
        default=[],
        metavar="LINE",
        help="Line to send to the command's stdin once it runs (repeatable)"
    )

    # Project sources
    parser.add_argument(
        "-i", "--import",
        dest="import_url",
        metavar="URL",
        help="Import a public GitHub repository as the project"
    )

    parser.add_argument(
        "--import-json",
        type=Path,
        metavar="FILE",
        help="Replace the project with a JSON export"
    )

    parser.add_argument(
        "--from-dir",
        type=Path,
        metavar="DIR",
        help="Replace the project with the text files of a local folder"
    )

    # Project outputs
    parser.add_argument(
        "--export-json",
        type=Path,
        metavar="FILE",
        help="Write the project as JSON"
    )

    parser.add_argument(
        "--export-zip",
        type=Path,
        metavar="FILE",
        help="Write the project as a zip archive"
    )

    parser.add_argument(
        "--to-dir",
        type=Path,
        metavar="DIR",
        help="Write the project's files into a folder"
    )

    # History and inspection
    parser.add_argument(
        "--save",
        action="store_true",
        help="Save the current project as a snapshot"
    )

    parser.add_argument(
        "--rollback",
        action="store_true",
        help="Restore the snapshot saved before the newest one"
    )

    parser.add_argument(
        "--history",
        action="store_true",
        help="List saved snapshots"
    )

    parser.add_argument(
        "--tree",
        action="store_true",
        help="Show the project's files"
    )

    parser.add_argument(
        "-s", "--search",
        metavar="TEXT",
        help="Search file contents (case-insensitive)"
    )

    # Configuration
    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Config file (default: ~/.workbench/config.yaml)"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show debug logging"
    )

    parser.add_argument(
        "--version",
        action="version",
        version="workbench 0.1.0"
    )

    return parser


# =============================================================================
# WORKSPACE HELPERS
# =============================================================================

def open_store(config: Config) -> WorkspaceStore:
    return create_store(
        config.persistence.directory_path,
        config.persistence.fallback_path,
        history_limit=config.persistence.history_limit,
    )


def load_workspace(store: WorkspaceStore) -> ProjectState:
    """Saved project, or the seed project when nothing is saved."""
    state = store.load()
    if state is None:
        return create_default_project()
    return state


def replace_workspace(store: WorkspaceStore, state: ProjectState, source: str) -> None:
    store.save(state)
    if store.last_mirror_error:
        ui.show_warning("Saved, but the fallback copy could not be written.")
    ui.show_success(f"Project replaced from {source} ({len(state.file_records())} files)")


# =============================================================================
# COMMAND RUNNER
# =============================================================================

async def _feed_input(controller: ExecutionController, lines: list[str]) -> None:
    """Send `lines` to the command once it is running."""
    while controller.state is not ControllerState.RUNNING:
        await asyncio.sleep(0.05)
    for line in lines:
        await controller.send_input(f"{line}\n")


async def run_command(
    command: str,
    state: ProjectState,
    config: Config,
    timeout: Optional[float] = None,
    input_lines: Optional[list[str]] = None,
) -> int:
    """
    Run one command against the project and stream its output.

    Ctrl-C stops the command (exit code 130) instead of killing the CLI.

    Returns:
        The command's exit code
    """
    controller = create_controller(config.runtime)
    on_stdout, on_stderr = ui.output_sinks()

    loop = asyncio.get_running_loop()
    handles_sigint = True
    try:
        loop.add_signal_handler(signal.SIGINT, lambda: asyncio.ensure_future(controller.stop()))
    except (NotImplementedError, RuntimeError):
        handles_sigint = False

    feeder = asyncio.ensure_future(_feed_input(controller, input_lines)) if input_lines else None

    ui.show_command_start(command)
    try:
        result = await controller.run(
            command,
            state,
            on_stdout=on_stdout,
            on_stderr=on_stderr,
            timeout=timeout,
        )
    finally:
        if feeder:
            feeder.cancel()
        if handles_sigint:
            loop.remove_signal_handler(signal.SIGINT)
        await controller.shutdown()

    ui.console.print()
    ui.show_command_result(result)
    return result.exit_code


# =============================================================================
# ACTIONS
# =============================================================================

async def run_import(url: str, store: WorkspaceStore, config: Config) -> int:
    if not is_supported_reference(url, config.importer.host):
        ui.show_error("Import failed: enter a valid GitHub repo URL.")
        return 1

    with ui.show_thinking(f"Importing {url} ...") as status:
        result = await import_project(
            url,
            config.importer,
            on_progress=lambda message: status.update(f"[bold blue]{message}[/bold blue]"),
        )

    store.save(result.to_state())
    ui.show_import_result(result)
    ui.show_success("Repository import complete.")
    return 0


def run_rollback(store: WorkspaceStore) -> int:
    previous = store.load_previous()
    if previous is None:
        ui.show_warning("No previous snapshot available.")
        return 1

    store.save(previous)
    ui.show_success(f"Rolled back to previous snapshot ({len(previous.file_records())} files).")
    return 0


async def async_main(args: argparse.Namespace) -> int:
    """
    Async main function that handles all commands.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    config = load_config(args.config)
    store = open_store(config)

    # Handlers that replace the project
    if args.import_url:
        return await run_import(args.import_url, store, config)

    if args.import_json:
        state = import_project_json(args.import_json.read_text(encoding="utf-8"))
        replace_workspace(store, state, str(args.import_json))
        return 0

    if args.from_dir:
        state = state_from_directory(args.from_dir)
        if not state.files:
            ui.show_error(f"No text files found in {args.from_dir}")
            return 1
        replace_workspace(store, state, str(args.from_dir))
        return 0

    if args.rollback:
        return run_rollback(store)

    if args.history:
        ui.show_history(store.history())
        return 0

    state = load_workspace(store)

    if args.save:
        if store.save(state) is None:
            ui.show_info("No changes since the last snapshot.")
        else:
            ui.show_success(f"Snapshot saved ({len(state.file_records())} files)")
        return 0

    # Handlers that read the project
    if args.export_json:
        args.export_json.write_text(export_project_json(state), encoding="utf-8")
        ui.show_success(f"Project exported as {args.export_json}")
        return 0

    if args.export_zip:
        path = export_project_zip(state, args.export_zip, project_name=args.export_zip.stem)
        ui.show_success(f"Project exported as {path}")
        return 0

    if args.to_dir:
        written = write_state_to_directory(state, args.to_dir)
        ui.show_success(f"Wrote {len(written)} entries to {args.to_dir}")
        return 0

    if args.tree:
        ui.show_project_tree(state)
        return 0

    if args.search:
        ui.show_search_results(search_files(state, args.search), args.search)
        return 0

    if args.command:
        return await run_command(
            args.command,
            state,
            config,
            timeout=args.timeout,
            input_lines=args.input,
        )

    ui.show_welcome()
    ui.show_quick_help()
    return 0


def main() -> None:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        exit_code = asyncio.run(async_main(args))
    except WorkbenchError as e:
        ui.show_error(e.message)
        exit_code = 1
    except FileNotFoundError as e:
        ui.show_error(str(e))
        exit_code = 1
    except KeyboardInterrupt:
        ui.console.print("\n")
        exit_code = 130

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
