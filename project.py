"""
Project State Utilities for the workbench.

WHAT THIS FILE DOES:
-------------------
Everything that works on a ProjectState as a whole but is not execution,
import or persistence:

- the seed project shown when nothing has been saved yet
- path sanitizing for externally supplied paths
- JSON export/import and zip export of a project
- loading a project from a local folder and writing one out to a folder
- text search across files and an ASCII tree view for the UI

DIRECTORY ROUND TRIP:
--------------------
    state_from_directory("./my-app")      ->  ProjectState(/src/app.py, ...)
    write_state_to_directory(state, out)  ->  out/src/app.py, ...

Writes are confined to the target directory; a record can never escape it.
"""

import json
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from errors import InvalidProjectPayload, NoImportableContent
from schemas import FileRecord, ProjectState

logger = logging.getLogger("workbench.project")


# Version-control metadata directories; never part of a project.
VCS_DIRS = {".git", ".hg", ".svn"}

MAX_SEARCH_RESULTS = 200

DEFAULT_FILES = {
    "/README.md": (
        "# Sample project\n"
        "\n"
        "Edit files, then run a command such as `python main.py`.\n"
    ),
    "/main.py": "print('Workbench ready')\n",
}


def create_default_project() -> ProjectState:
    """The seed project used when no saved workspace exists."""
    return ProjectState.from_mapping(DEFAULT_FILES)


# =============================================================================
# PATHS
# =============================================================================

def sanitize_path(raw: str) -> Optional[str]:
    """
    Normalize an externally supplied path to the project convention.

    "src/app.py" -> "/src/app.py", "/a//b/./c" -> "/a/b/c".
    Returns None for paths with ".." segments or no segments at all.
    """
    segments = [s for s in raw.strip().replace("\\", "/").split("/") if s and s != "."]
    if not segments or ".." in segments:
        return None
    return "/" + "/".join(segments)


def is_vcs_path(path: str) -> bool:
    """True when any segment of `path` is a version-control metadata dir."""
    return any(segment in VCS_DIRS for segment in path.split("/"))


# =============================================================================
# EXPORT / IMPORT
# =============================================================================

def export_project_json(state: ProjectState) -> str:
    """Pretty JSON array of the project's records."""
    return json.dumps(
        [r.model_dump(by_alias=True, exclude_none=True) for r in state.files],
        indent=2,
        ensure_ascii=False,
    )


def import_project_json(serialized: str) -> ProjectState:
    """
    Parse a JSON project export.

    Entries that are not file objects or whose path is unsafe are skipped.

    Raises:
        InvalidProjectPayload: If the text is not a JSON array
        NoImportableContent: If no valid file entries remain
    """
    try:
        parsed = json.loads(serialized)
    except json.JSONDecodeError:
        raise InvalidProjectPayload("Invalid import format. The file is not valid JSON.")

    if not isinstance(parsed, list):
        raise InvalidProjectPayload()

    records: dict[str, FileRecord] = {}
    for item in parsed:
        if not isinstance(item, dict):
            continue
        if item.get("type", "file") != "file" or not isinstance(item.get("path"), str):
            continue

        path = sanitize_path(item["path"])
        if not path:
            continue

        content = item.get("content")
        records[path] = FileRecord(
            path=path,
            content=content if isinstance(content, str) else "",
        )

    if not records:
        raise NoImportableContent("No valid files found in imported payload.")

    return ProjectState.from_records(records.values())


def export_project_zip(state: ProjectState, destination: Path, project_name: str = "workbench-project") -> Path:
    """
    Write the project's files into a zip archive.

    Args:
        state: Project to export
        destination: Path of the .zip file to create
        project_name: Stored in the archive comment

    Returns:
        The destination path
    """
    destination = Path(destination).expanduser()
    destination.parent.mkdir(parents=True, exist_ok=True)

    with zipfile.ZipFile(destination, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=6) as archive:
        archive.comment = f"{project_name} export".encode("utf-8")
        for record in state.file_records():
            archive.writestr(record.path.lstrip("/"), record.content or "")

    return destination


# =============================================================================
# LOCAL DIRECTORIES
# =============================================================================

def _resolve_inside(root: Path, path: str) -> Path:
    """
    Resolve a project path within `root`, preventing directory traversal.

    Raises:
        ValueError: If path attempts to escape root
    """
    full_path = (root / path.lstrip("/")).resolve()
    try:
        full_path.relative_to(root.resolve())
    except ValueError:
        raise ValueError(f"Path '{path}' attempts to escape {root}")
    return full_path


def state_from_directory(root: Path) -> ProjectState:
    """
    Load every text file under `root` into a ProjectState.

    Skips VCS metadata directories and files that are not valid UTF-8.
    """
    root = Path(root).expanduser().resolve()
    if not root.is_dir():
        raise FileNotFoundError(f"Directory not found: {root}")

    records = []
    for file_path in sorted(root.rglob("*")):
        if not file_path.is_file() or file_path.is_symlink():
            continue
        rel_path = "/" + file_path.relative_to(root).as_posix()
        if is_vcs_path(rel_path):
            continue
        try:
            content = file_path.read_bytes().decode("utf-8")
        except (UnicodeDecodeError, PermissionError):
            logger.debug("Skipping non-text file %s", rel_path)
            continue
        records.append(FileRecord(path=rel_path, content=content))

    return ProjectState.from_records(records)


def write_state_to_directory(state: ProjectState, root: Path) -> list[str]:
    """
    Write the project into `root`, creating parent directories.

    Returns:
        Project paths that were written
    """
    root = Path(root).expanduser()
    root.mkdir(parents=True, exist_ok=True)

    written = []
    for record in state.files:
        full_path = _resolve_inside(root, record.path)
        if record.is_file:
            full_path.parent.mkdir(parents=True, exist_ok=True)
            full_path.write_text(record.content or "", encoding="utf-8")
        else:
            full_path.mkdir(parents=True, exist_ok=True)
        written.append(record.path)

    return written


# =============================================================================
# SEARCH / TREE
# =============================================================================

@dataclass
class SearchMatch:
    """A single line matching a search query."""
    path: str
    line: int
    column: int
    preview: str


def search_files(state: ProjectState, query: str, max_results: int = MAX_SEARCH_RESULTS) -> list[SearchMatch]:
    """
    Case-insensitive substring search over every file line.

    Stops after `max_results` matches; an empty query matches nothing.
    """
    needle = query.strip().lower()
    if not needle:
        return []

    matches = []
    for record in state.file_records():
        for index, line_text in enumerate((record.content or "").splitlines(), 1):
            column = line_text.lower().find(needle)
            if column == -1:
                continue

            matches.append(SearchMatch(
                path=record.path,
                line=index,
                column=column + 1,
                preview=line_text.strip() or "(empty line)",
            ))
            if len(matches) >= max_results:
                return matches

    return matches


def render_tree(state: ProjectState, root_label: str = "/", max_depth: int = 8) -> str:
    """
    Get a tree view of the project structure.

    Returns:
        ASCII tree representation
    """
    tree: dict = {}
    for record in state.files:
        node = tree
        parts = record.path.strip("/").split("/")
        for part in parts[:-1]:
            node = node.setdefault(part + "/", {})
        leaf = parts[-1] + ("/" if not record.is_file else "")
        if leaf.endswith("/"):
            node.setdefault(leaf, {})
        else:
            node[leaf] = None

    lines = [root_label]
    _build_tree(tree, "", lines, 0, max_depth)
    return "\n".join(lines)


def _build_tree(node: dict, prefix: str, lines: list[str], depth: int, max_depth: int) -> None:
    """Build tree representation recursively, directories first."""
    if depth >= max_depth:
        return

    children = sorted(node.items(), key=lambda item: (not item[0].endswith("/"), item[0].lower()))

    for i, (name, child) in enumerate(children):
        is_last = i == len(children) - 1
        connector = "└── " if is_last else "├── "
        lines.append(f"{prefix}{connector}{name}")
        if child is not None:
            new_prefix = prefix + ("    " if is_last else "│   ")
            _build_tree(child, new_prefix, lines, depth + 1, max_depth)
