"""
Project State Tests

Covers the shared schemas and the project utilities:
1. test_file_record_validation
2. test_project_state_canonical
3. test_project_state_edits
4. test_default_project
5. test_sanitize_path
6. test_json_export_import
7. test_json_import_rejects
8. test_zip_export
9. test_directory_round_trip
10. test_search_files
11. test_render_tree
12. test_config_loading
"""

import json
import sys
import zipfile
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

# Add project directory to path
sys.path.insert(0, str(Path(__file__).parent))

from config import Config, load_config, save_config
from errors import InvalidProjectPayload, NoImportableContent
from project import (
    create_default_project,
    export_project_json,
    export_project_zip,
    import_project_json,
    render_tree,
    sanitize_path,
    search_files,
    state_from_directory,
    write_state_to_directory,
)
from schemas import CommandResult, FileRecord, ProjectState


@pytest.fixture
def sample_state():
    return ProjectState.from_mapping({
        "/README.md": "# Demo\n\nRun main.py\n",
        "/main.py": "import util\n\nprint(util.greet('World'))\n",
        "/src/util.py": "def greet(name):\n    return f'Hello {name}'\n",
        "/src/data/empty.txt": "",
    })


# =============================================================================
# SCHEMAS
# =============================================================================

def test_file_record_validation():
    """
    Test 1: FileRecord enforces the path convention.

    Verifies:
    - Files always have content, directories never do
    - Relative paths, "/" alone and ".." segments are rejected
    - "type" is the serialized key for the kind
    """
    record = FileRecord(path="/a.txt")
    assert record.content == ""
    assert record.is_file

    directory = FileRecord(path="/src", type="directory")
    assert directory.content is None
    assert not directory.is_file

    for bad in ["a.txt", "/", "/src/../etc/passwd", ""]:
        with pytest.raises(ValidationError):
            FileRecord(path=bad)

    with pytest.raises(ValidationError):
        FileRecord(path="/src", kind="directory", content="nope")

    assert record.model_dump(by_alias=True) == {"path": "/a.txt", "type": "file", "content": ""}

    print("✓ Test 1 passed: FileRecord validation")


def test_project_state_canonical(sample_state):
    """
    Test 2: Equal file sets give equal states and identical serialization.
    """
    shuffled = ProjectState.from_records(reversed(sample_state.files))

    assert shuffled == sample_state
    assert shuffled.serialize() == sample_state.serialize()
    assert [r.path for r in shuffled.files] == sorted(r.path for r in shuffled.files)
    assert ProjectState.deserialize(sample_state.serialize()) == sample_state

    with pytest.raises(ValidationError):
        ProjectState(files=[FileRecord(path="/a"), FileRecord(path="/a", content="x")])

    print("✓ Test 2 passed: canonical states")


def test_project_state_edits(sample_state):
    """
    Test 3: Edits return new states and leave the original alone.
    """
    edited = sample_state.with_file("/main.py", "print('changed')\n")
    removed = edited.without("/src/util.py")

    assert sample_state.get("/main.py").content.startswith("import util")
    assert edited.get("/main.py").content == "print('changed')\n"
    assert removed.get("/src/util.py") is None
    assert len(removed) == len(sample_state) - 1
    assert removed.as_mapping()["/main.py"] == "print('changed')\n"

    result = CommandResult(command="x", exit_code=130, cancelled_by="user")
    assert result.cancelled and not result.ok

    print("✓ Test 3 passed: state edits")


def test_default_project():
    state = create_default_project()
    assert state.paths() == {"/README.md", "/main.py"}
    assert "print" in state.get("/main.py").content


def test_sanitize_path():
    assert sanitize_path("src/app.py") == "/src/app.py"
    assert sanitize_path("/a//b/./c") == "/a/b/c"
    assert sanitize_path("  dir\\file.txt ") == "/dir/file.txt"
    assert sanitize_path("../etc/passwd") is None
    assert sanitize_path("///") is None


# =============================================================================
# EXPORT / IMPORT
# =============================================================================

def test_json_export_import(sample_state):
    """
    Test 6: A JSON export imports back to the same project.

    Verifies:
    - The export is an array of {path, type, content}
    - Entries with unsafe paths or wrong shapes are skipped
    - Relative paths are normalized
    """
    exported = export_project_json(sample_state)
    parsed = json.loads(exported)

    assert isinstance(parsed, list)
    assert parsed[0] == {"path": "/README.md", "type": "file", "content": "# Demo\n\nRun main.py\n"}
    assert import_project_json(exported) == sample_state

    messy = json.dumps([
        {"path": "notes.txt", "content": "kept"},
        {"path": "/../escape.txt", "content": "dropped"},
        {"path": "/dir", "type": "directory"},
        {"path": 42, "content": "dropped"},
        "not an object",
        {"path": "/no-content.txt"},
    ])
    state = import_project_json(messy)
    assert state.as_mapping() == {"/notes.txt": "kept", "/no-content.txt": ""}

    print("✓ Test 6 passed: JSON export/import")


def test_json_import_rejects():
    """
    Test 7: Payloads that are not a file array are refused.
    """
    with pytest.raises(InvalidProjectPayload):
        import_project_json("{not json")

    with pytest.raises(InvalidProjectPayload) as exc_info:
        import_project_json('{"path": "/a"}')
    assert "Expected an array of files" in exc_info.value.message

    with pytest.raises(NoImportableContent):
        import_project_json('[{"path": "../x"}, 1, null]')

    print("✓ Test 7 passed: bad payloads refused")


def test_zip_export(sample_state, tmp_path):
    """
    Test 8: The zip holds every file at its relative path.
    """
    path = export_project_zip(sample_state, tmp_path / "out" / "demo.zip", project_name="demo")

    with zipfile.ZipFile(path) as archive:
        assert sorted(archive.namelist()) == ["README.md", "main.py", "src/data/empty.txt", "src/util.py"]
        assert archive.read("src/util.py").decode() == sample_state.get("/src/util.py").content
        assert archive.comment == b"demo export"

    print("✓ Test 8 passed: zip export")


def test_directory_round_trip(sample_state, tmp_path):
    """
    Test 9: Writing a project to disk and reading it back is lossless.

    Verifies:
    - Nested folders are created
    - VCS metadata and binary files are skipped on load
    """
    written = write_state_to_directory(sample_state, tmp_path / "project")
    assert sorted(written) == sorted(sample_state.paths())

    (tmp_path / "project" / ".git").mkdir()
    (tmp_path / "project" / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    (tmp_path / "project" / "image.bin").write_bytes(b"\xff\xd8\xff\x00")

    loaded = state_from_directory(tmp_path / "project")
    assert loaded == sample_state

    with pytest.raises(FileNotFoundError):
        state_from_directory(tmp_path / "missing")

    print("✓ Test 9 passed: directory round trip")


# =============================================================================
# SEARCH / TREE
# =============================================================================

def test_search_files(sample_state):
    """
    Test 10: Search is a case-insensitive substring match per line.
    """
    matches = search_files(sample_state, "GREET")

    assert [(m.path, m.line, m.column) for m in matches] == [
        ("/main.py", 3, 12),
        ("/src/util.py", 1, 5),
    ]
    assert matches[1].preview == "def greet(name):"

    assert search_files(sample_state, "   ") == []
    assert len(search_files(sample_state, "e", max_results=2)) == 2

    print("✓ Test 10 passed: search")


def test_render_tree(sample_state):
    """
    Test 11: The tree lists directories before files.
    """
    tree = render_tree(sample_state)

    assert tree.splitlines() == [
        "/",
        "├── src/",
        "│   ├── data/",
        "│   │   └── empty.txt",
        "│   └── util.py",
        "├── main.py",
        "└── README.md",
    ]

    print("✓ Test 11 passed: tree rendering")


# =============================================================================
# CONFIG
# =============================================================================

def test_config_loading(tmp_path):
    """
    Test 12: YAML config overrides defaults section by section.

    Verifies:
    - Missing keys keep their defaults
    - "import" is accepted as an alias of "importer"
    - save_config output loads back to the same values
    - An explicit missing path is an error
    """
    path = tmp_path / "workbench.yaml"
    path.write_text(yaml.safe_dump({
        "runtime": {"command_timeout": 5},
        "import": {"workers": 2, "binary_extensions": ["PNG", ".svg"]},
        "persistence": {"directory": str(tmp_path / "store"), "history_limit": 3},
    }))

    config = load_config(path)
    assert config.runtime.command_timeout == 5.0
    assert config.runtime.boot_timeout == Config().runtime.boot_timeout
    assert config.importer.workers == 2
    assert config.importer.binary_extensions == [".png", ".svg"]
    assert config.persistence.directory_path == tmp_path / "store"
    assert config.persistence.history_limit == 3

    saved = tmp_path / "saved.yaml"
    save_config(config, saved)
    assert load_config(saved) == config

    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")

    print("✓ Test 12 passed: config loading")


# =============================================================================
# RUN TESTS
# =============================================================================

if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
