"""
Pydantic schemas shared by the workbench components.

WHY THIS FILE EXISTS:
--------------------
Three components pass project files around: the execution controller syncs
them into the engine, the import pipeline produces them, and the workspace
store persists them. They all have to agree on ONE shape, otherwise an imported
project would not survive a save/load round trip or would be materialized
differently than it was saved.

So this file defines:
1. FileRecord   - one file (or directory) with an absolute "/"-rooted path
2. ProjectState - the set of records that makes up a project
3. Snapshot     - a timestamped, immutable copy of a ProjectState
4. CommandResult and the import models (ImportReference, TreeEntry, ...)

PATH CONVENTION:
---------------
Every path is absolute inside the project: "/src/main.py", never "src/main.py"
and never "/src/../etc/passwd". The validators below enforce it, so any code
holding a FileRecord can trust its path.
"""

import json
from datetime import datetime
from typing import Iterable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Exit code reported for a command that was stopped or timed out
# (same as a shell reports for SIGINT).
CANCELLED_EXIT_CODE = 130


# =============================================================================
# PROJECT SCHEMAS
# =============================================================================

class FileRecord(BaseModel):
    """
    A single entry of a project.

    Serialized with the key "type" for the kind, so exported projects look like:
        [{"path": "/main.py", "type": "file", "content": "print('hi')"}]

    Example:
        FileRecord(path="/main.py", content="print('hi')")
        FileRecord(path="/src", kind="directory")
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    path: str = Field(
        description="Absolute '/'-rooted path with no '..' segments"
    )
    kind: Literal["file", "directory"] = Field(
        default="file",
        alias="type",
        description="Whether this entry is a file or a directory"
    )
    content: Optional[str] = Field(
        default=None,
        description="Text content; always present for files, absent for directories"
    )

    @model_validator(mode="before")
    @classmethod
    def content_matches_kind(cls, data):
        """Files always carry text, directories never do."""
        if isinstance(data, dict):
            kind = data.get("type", data.get("kind", "file"))
            if kind == "file" and data.get("content") is None:
                data = {**data, "content": ""}
            elif kind == "directory" and data.get("content") is not None:
                raise ValueError("Directories cannot have content")
        return data

    @field_validator("path")
    @classmethod
    def path_is_absolute(cls, v: str) -> str:
        if not v.startswith("/") or v == "/":
            raise ValueError(f"Path must be absolute and '/'-rooted: {v!r}")
        if ".." in v.split("/"):
            raise ValueError(f"Path must not contain '..': {v!r}")
        return v

    @property
    def is_file(self) -> bool:
        return self.kind == "file"


class ProjectState(BaseModel):
    """
    The complete set of files that makes up a project.

    Paths are unique. Records are kept sorted by path, so two states holding
    the same files compare equal and serialize to the same text regardless of
    the order they were built in. That canonical text is what the workspace
    store persists and compares for snapshot deduplication.
    """
    model_config = ConfigDict(frozen=True)

    files: list[FileRecord] = Field(default_factory=list)

    @field_validator("files")
    @classmethod
    def unique_sorted_paths(cls, v: list[FileRecord]) -> list[FileRecord]:
        seen: set[str] = set()
        for record in v:
            if record.path in seen:
                raise ValueError(f"Duplicate path in project: {record.path}")
            seen.add(record.path)
        return sorted(v, key=lambda r: r.path)

    @classmethod
    def from_records(cls, records: Iterable[FileRecord]) -> "ProjectState":
        return cls(files=list(records))

    @classmethod
    def from_mapping(cls, files: dict[str, str]) -> "ProjectState":
        """Build a state from a {path: content} dict."""
        return cls(files=[FileRecord(path=p, content=c) for p, c in files.items()])

    def serialize(self) -> str:
        """Canonical JSON text of this state, ASCII only."""
        return json.dumps(
            [r.model_dump(by_alias=True, exclude_none=True) for r in self.files],
            separators=(",", ":"),
        )

    @classmethod
    def deserialize(cls, text: str) -> "ProjectState":
        """
        Parse text produced by serialize().

        Raises:
            json.JSONDecodeError / pydantic.ValidationError on bad input
        """
        return cls(files=json.loads(text))

    def file_records(self) -> list[FileRecord]:
        """Only the file entries (directories are implied by file paths)."""
        return [r for r in self.files if r.is_file]

    def paths(self) -> set[str]:
        return {r.path for r in self.files}

    def get(self, path: str) -> Optional[FileRecord]:
        for record in self.files:
            if record.path == path:
                return record
        return None

    def as_mapping(self) -> dict[str, str]:
        """{path: content} for the file entries."""
        return {r.path: r.content or "" for r in self.file_records()}

    def with_file(self, path: str, content: str) -> "ProjectState":
        """Return a new state with `path` added or replaced."""
        others = [r for r in self.files if r.path != path]
        return ProjectState(files=others + [FileRecord(path=path, content=content)])

    def without(self, path: str) -> "ProjectState":
        """Return a new state with `path` removed."""
        return ProjectState(files=[r for r in self.files if r.path != path])

    def __len__(self) -> int:
        return len(self.files)


class Snapshot(BaseModel):
    """One timestamped copy of a project state. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    state: ProjectState


# =============================================================================
# EXECUTION SCHEMAS
# =============================================================================

class CommandResult(BaseModel):
    """
    Outcome of one command run.

    A stopped or timed-out command is NOT an error: it finishes with
    exit_code 130 and `cancelled_by` says which path stopped it.
    """
    command: str = ""
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    cancelled_by: Optional[Literal["user", "timeout"]] = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def cancelled(self) -> bool:
        return self.cancelled_by is not None


# =============================================================================
# IMPORT SCHEMAS
# =============================================================================

class ImportReference(BaseModel):
    """
    A parsed remote project reference.

    Example:
        "https://github.com/octocat/hello-world/tree/dev/src" ->
        ImportReference(owner="octocat", name="hello-world", ref="dev", subpath="src")
    """
    host: str = "github.com"
    owner: str
    name: str
    ref: Optional[str] = None
    subpath: Optional[str] = None

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.name}"

    def __str__(self) -> str:
        text = f"{self.host}/{self.slug}"
        if self.ref:
            text += f"@{self.ref}"
        if self.subpath:
            text += f":{self.subpath}"
        return text


class ProjectMetadata(BaseModel):
    """What the host reports about a project before we look at its files."""
    owner: str
    name: str
    default_branch: str = "main"
    private: bool = False
    description: Optional[str] = None


class TreeEntry(BaseModel):
    """One entry of a revision's recursive listing."""
    path: str = Field(description="Path relative to the repository root")
    kind: Literal["blob", "tree", "commit"] = "blob"
    size: int = 0
    sha: str = ""


class SkippedEntry(BaseModel):
    """An entry the import left out, and why."""
    path: str
    reason: Literal[
        "excluded",      # VCS metadata, unsafe path, outside subpath
        "binary",        # extension on the denylist
        "too_large",     # over the per-file cap
        "file_cap",      # file-count cap reached
        "byte_cap",      # cumulative-byte cap reached
        "fetch_failed",  # host refused or failed this entry
        "not_text",      # content is not valid UTF-8 text
    ]
    detail: Optional[str] = None


class ImportResult(BaseModel):
    """
    Output of a successful import.

    `files` keeps admission order (listing order), which is not necessarily
    the order fetches completed in.
    """
    reference: ImportReference
    revision: str
    files: list[FileRecord]
    skipped: list[SkippedEntry] = Field(default_factory=list)

    def to_state(self) -> ProjectState:
        return ProjectState.from_records(self.files)
