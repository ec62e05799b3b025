"""
Import Pipeline Tests

These tests verify the importer can:
1. Parse every supported reference format and reject the rest
2. Admit only files worth fetching, before fetching anything
3. Fetch with a bounded worker pool while keeping listing order
4. Drop undecodable or failed entries without failing the import
5. Translate GitHub responses into import error kinds

Test list:
1. test_parse_reference_formats
2. test_parse_reference_rejects
3. test_normalize_import_path
4. test_admission_filter_basic
5. test_admission_caps
6. test_pipeline_fetches_only_admitted
7. test_pipeline_subpath_and_vcs
8. test_pipeline_no_importable_content
9. test_pipeline_keeps_listing_order
10. test_pipeline_bounded_workers
11. test_pipeline_drops_undecodable
12. test_pipeline_fetch_failures
13. test_pipeline_listing_limits
14. test_pipeline_time_budget
15. test_github_host_import
16. test_github_host_error_mapping
17. test_github_host_private_repo
18. test_github_host_network_error
"""

import asyncio
import base64
import sys
from pathlib import Path

import httpx
import pytest

# Add project directory to path
sys.path.insert(0, str(Path(__file__).parent))

from config import ImportConfig
from errors import (
    ArchiveTooLargeOrTruncated,
    HostUnreachable,
    InvalidReference,
    NoImportableContent,
    PrivateUnsupported,
    ProjectNotFound,
    RateLimited,
    Unauthorized,
)
from hosts import GitHubHost, ProjectHost, get_host
from importer import (
    AdmissionFilter,
    ImportPipeline,
    decode_text,
    is_supported_reference,
    normalize_import_path,
    parse_reference,
)
from schemas import ImportReference, ProjectMetadata, TreeEntry


# =============================================================================
# TEST DOUBLES
# =============================================================================

class FakeHost(ProjectHost):
    """Host serving a fixed listing and blob contents from memory."""

    def __init__(self, blobs: dict, truncated=False, delays=None, failures=None, extra_entries=None):
        self.blobs = blobs
        self.truncated = truncated
        self.delays = delays or {}
        self.failures = failures or set()
        self.extra_entries = extra_entries or []
        self.fetched: list[str] = []
        self.active = 0
        self.max_active = 0

    async def get_project(self, reference):
        return ProjectMetadata(owner=reference.owner, name=reference.name)

    async def resolve_revision(self, reference, metadata):
        return "0123456789abcdef0123456789abcdef01234567"

    async def list_tree(self, reference, revision):
        entries = [
            TreeEntry(path=path, kind="blob", size=len(payload), sha=f"sha-{path}")
            for path, payload in self.blobs.items()
        ]
        return self.extra_entries + entries, self.truncated

    async def fetch_blob(self, reference, entry):
        self.fetched.append(entry.path)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delays.get(entry.path, 0))
            if entry.path in self.failures:
                raise HostUnreachable(f"could not fetch {entry.path}")
            return self.blobs[entry.path]
        finally:
            self.active -= 1


def entry(path, size=10, kind="blob"):
    return TreeEntry(path=path, kind=kind, size=size, sha=f"sha-{path}")


URL = "https://github.com/octo/demo"


# =============================================================================
# TEST 1-3: Reference parsing
# =============================================================================

@pytest.mark.parametrize("text, expected", [
    ("https://github.com/octo/demo", ("octo", "demo", None, None)),
    ("https://github.com/octo/demo.git", ("octo", "demo", None, None)),
    ("github.com/octo/demo", ("octo", "demo", None, None)),
    ("http://www.github.com/octo/demo/", ("octo", "demo", None, None)),
    ("https://github.com/octo/demo/tree/dev", ("octo", "demo", "dev", None)),
    ("https://github.com/octo/demo/tree/dev/src/lib", ("octo", "demo", "dev", "src/lib")),
    ("https://github.com/octo/demo/blob/v1.0/README.md", ("octo", "demo", "v1.0", "README.md")),
    ("https://github.com/octo/demo?ref=feature/x&path=pkg", ("octo", "demo", "feature/x", "pkg")),
    ("https://github.com/octo/demo#main", ("octo", "demo", "main", None)),
    ("https://github.com/octo/demo#main:pkg/sub", ("octo", "demo", "main", "pkg/sub")),
    ("https://github.com/octo/demo/tree/a/x?ref=b#c", ("octo", "demo", "c", "x")),
    ("  https://github.com/octo/demo/tree/dev/./src/  ", ("octo", "demo", "dev", "src")),
])
def test_parse_reference_formats(text, expected):
    """
    Test 1: Every supported reference format parses.

    Verifies:
    - Scheme, www. and .git are normalized away
    - /tree/ and /blob/ carry ref and subpath
    - The fragment overrides the query, which overrides the path
    """
    ref = parse_reference(text)

    assert (ref.owner, ref.name, ref.ref, ref.subpath) == expected
    assert ref.host == "github.com"
    assert is_supported_reference(text)


@pytest.mark.parametrize("text", [
    "",
    "octo/demo",
    "https://gitlab.com/octo/demo",
    "https://github.com/octo",
    "https://github.com/octo/demo/tree",
    "https://github.com/octo/demo/issues/1",
    "https://github.com/octo/de mo",
    "https://github.com/octo/demo/tree/main/../etc",
])
def test_parse_reference_rejects(text):
    """
    Test 2: Anything else is an InvalidReference.
    """
    with pytest.raises(InvalidReference):
        parse_reference(text)
    assert not is_supported_reference(text)


def test_normalize_import_path():
    """
    Test 3: Host paths map onto the "/"-rooted project convention.

    Verifies:
    - The root wrapper is stripped
    - Paths outside the wrapper, with "..", or under VCS dirs are rejected
    """
    assert normalize_import_path("src/app.py") == "/src/app.py"
    assert normalize_import_path("src/app.py", "src") == "/app.py"
    assert normalize_import_path("src/pkg/app.py", "src/pkg") == "/app.py"
    assert normalize_import_path("srcx/app.py", "src") is None
    assert normalize_import_path("src", "src") is None
    assert normalize_import_path(".git/HEAD") is None
    assert normalize_import_path("vendor/.svn/entries") is None
    assert normalize_import_path("a/../b.txt") is None
    assert normalize_import_path("./a//b.txt") == "/a/b.txt"

    print("✓ Test 3 passed: import paths normalized")


# =============================================================================
# TEST 4-5: Admission
# =============================================================================

def test_admission_filter_basic():
    """
    Test 4: Binary and oversized entries are never admitted.

    Verifies:
    - {a.png, b.txt (5 bytes), c.txt (over cap)} admits exactly /b.txt
    - Each rejected entry is reported with its reason
    - Directory entries are ignored
    """
    config = ImportConfig(max_file_bytes=1_000)
    admitted, skipped = AdmissionFilter(config).admit([
        entry("assets", kind="tree"),
        entry("a.png", size=10),
        entry("b.txt", size=5),
        entry("c.txt", size=1_001),
    ])

    assert [a.path for a in admitted] == ["/b.txt"]
    assert {(s.path, s.reason) for s in skipped} == {
        ("/a.png", "binary"),
        ("/c.txt", "too_large"),
    }

    print("✓ Test 4 passed: admission filter")


def test_admission_caps():
    """
    Test 5: Caps stop admission for good once reached.

    Verifies:
    - The file-count cap admits the first N files
    - The byte cap stops at the first entry that would exceed it,
      even if a later, smaller entry would still fit
    - Entries after the cap keep their own reason when they would have
      been dropped anyway, and are reported by project path
    """
    admitted, skipped = AdmissionFilter(ImportConfig(max_files=2)).admit(
        [entry(f"f{i}.txt") for i in range(4)]
    )
    assert [a.path for a in admitted] == ["/f0.txt", "/f1.txt"]
    assert [s.reason for s in skipped] == ["file_cap", "file_cap"]

    admitted, skipped = AdmissionFilter(ImportConfig(max_total_bytes=10)).admit([
        entry("a.txt", size=6),
        entry("b.txt", size=6),
        entry("c.txt", size=1),
    ])
    assert [a.path for a in admitted] == ["/a.txt"]
    assert [(s.path, s.reason) for s in skipped] == [("/b.txt", "byte_cap"), ("/c.txt", "byte_cap")]

    admitted, skipped = AdmissionFilter(ImportConfig(max_files=1, max_file_bytes=100)).admit([
        entry("a.txt"),
        entry("src/b.txt"),
        entry(".git/config"),
        entry("logo.png"),
        entry("big.txt", size=500),
        entry("c.txt"),
    ])
    assert [a.path for a in admitted] == ["/a.txt"]
    assert [(s.path, s.reason) for s in skipped] == [
        ("/src/b.txt", "file_cap"),
        (".git/config", "excluded"),
        ("/logo.png", "binary"),
        ("/big.txt", "too_large"),
        ("/c.txt", "file_cap"),
    ]

    print("✓ Test 5 passed: admission caps")


# =============================================================================
# TEST 6-14: Pipeline
# =============================================================================

@pytest.mark.asyncio
async def test_pipeline_fetches_only_admitted():
    """
    Test 6: Rejected entries are never fetched.
    """
    host = FakeHost({
        "a.png": b"\x89PNG",
        "b.txt": b"hello",
        "c.txt": b"x" * 2_000,
    })
    result = await ImportPipeline(host, ImportConfig(max_file_bytes=1_000)).run(URL)

    assert [r.path for r in result.files] == ["/b.txt"]
    assert result.files[0].content == "hello"
    assert host.fetched == ["b.txt"]
    assert result.revision.startswith("0123")
    assert result.to_state().paths() == {"/b.txt"}

    print("✓ Test 6 passed: only admitted entries fetched")


@pytest.mark.asyncio
async def test_pipeline_subpath_and_vcs():
    """
    Test 7: A subpath import keeps only that folder, re-rooted at "/".
    """
    host = FakeHost({
        ".git/config": b"[core]",
        "src/app.py": b"print('app')",
        "src/.git/HEAD": b"ref",
        "docs/index.md": b"# docs",
    })
    result = await ImportPipeline(host).run(f"{URL}/tree/main/src")

    assert [r.path for r in result.files] == ["/app.py"]
    assert sorted(host.fetched) == ["src/app.py"]
    assert all(s.reason == "excluded" for s in result.skipped)

    print("✓ Test 7 passed: subpath and VCS filtering")


@pytest.mark.asyncio
async def test_pipeline_no_importable_content():
    """
    Test 8: Nothing admissible fails the import with NoImportableContent.
    """
    host = FakeHost({"logo.png": b"\x89PNG", "font.woff2": b"wOF2"})

    with pytest.raises(NoImportableContent) as exc_info:
        await ImportPipeline(host).run(URL)

    assert "No importable files found" in exc_info.value.message
    assert host.fetched == []

    print("✓ Test 8 passed: empty import rejected")


@pytest.mark.asyncio
async def test_pipeline_keeps_listing_order():
    """
    Test 9: Files come back in listing order whatever order fetches finish in.
    """
    names = [f"file{i}.txt" for i in range(8)]
    host = FakeHost(
        {name: name.encode() for name in names},
        delays={name: 0.01 * (8 - i) for i, name in enumerate(names)},
    )
    result = await ImportPipeline(host, ImportConfig(workers=4)).run(URL)

    assert [r.path for r in result.files] == [f"/{name}" for name in names]
    assert [r.content for r in result.files] == names

    print("✓ Test 9 passed: listing order kept")


@pytest.mark.asyncio
async def test_pipeline_bounded_workers():
    """
    Test 10: No more than `workers` fetches are in flight at once.
    """
    blobs = {f"f{i}.txt": b"x" for i in range(20)}
    host = FakeHost(blobs, delays={name: 0.01 for name in blobs})

    result = await ImportPipeline(host, ImportConfig(workers=3)).run(URL)

    assert len(result.files) == 20
    assert host.max_active == 3

    print("✓ Test 10 passed: worker pool bounded")


def test_decode_text():
    assert decode_text("héllo".encode("utf-8")) == "héllo"
    assert decode_text(b"\xff\xfe\x00") is None
    assert decode_text(b"a\x00b") is None
    assert decode_text(b"") == ""


@pytest.mark.asyncio
async def test_pipeline_drops_undecodable():
    """
    Test 11: Entries that are not UTF-8 text are dropped and reported.
    """
    host = FakeHost({
        "good.txt": b"ok",
        "latin1.txt": "caf\xe9".encode("latin-1"),
        "nul.dat2": b"a\x00b",
    })
    result = await ImportPipeline(host).run(URL)

    assert [r.path for r in result.files] == ["/good.txt"]
    assert {(s.path, s.reason) for s in result.skipped} == {
        ("/latin1.txt", "not_text"),
        ("/nul.dat2", "not_text"),
    }

    print("✓ Test 11 passed: undecodable entries dropped")


@pytest.mark.asyncio
async def test_pipeline_fetch_failures():
    """
    Test 12: A failed fetch drops that entry only.

    Verifies:
    - Other files still import
    - When every fetch fails, the last error is part of the message
    """
    host = FakeHost({"a.txt": b"a", "b.txt": b"b"}, failures={"a.txt"})
    result = await ImportPipeline(host).run(URL)

    assert [r.path for r in result.files] == ["/b.txt"]
    failed = [s for s in result.skipped if s.reason == "fetch_failed"]
    assert [s.path for s in failed] == ["/a.txt"]
    assert "could not fetch a.txt" in failed[0].detail

    host = FakeHost({"a.txt": b"a", "b.txt": b"b"}, failures={"a.txt", "b.txt"})
    with pytest.raises(NoImportableContent) as exc_info:
        await ImportPipeline(host).run(URL)
    assert "Last error" in exc_info.value.message

    print("✓ Test 12 passed: fetch failures absorbed")


@pytest.mark.asyncio
async def test_pipeline_listing_limits():
    """
    Test 13: Truncated or oversized listings fail before any fetch.
    """
    host = FakeHost({"a.txt": b"a"}, truncated=True)
    with pytest.raises(ArchiveTooLargeOrTruncated):
        await ImportPipeline(host).run(URL)
    assert host.fetched == []

    host = FakeHost({f"f{i}.txt": b"x" for i in range(5)})
    with pytest.raises(ArchiveTooLargeOrTruncated):
        await ImportPipeline(host, ImportConfig(max_listing_entries=4)).run(URL)

    print("✓ Test 13 passed: listing limits")


@pytest.mark.asyncio
async def test_pipeline_time_budget():
    """
    Test 14: An import over its time budget is abandoned.
    """
    host = FakeHost({"slow.txt": b"x"}, delays={"slow.txt": 5})

    with pytest.raises(HostUnreachable) as exc_info:
        await ImportPipeline(host, ImportConfig(import_timeout=0.05)).run(URL)
    assert "abandoned" in exc_info.value.message

    print("✓ Test 14 passed: time budget enforced")


# =============================================================================
# TEST 15-18: GitHub host
# =============================================================================

SHA = "c0ffee" * 6 + "abcd"


def github_handler(repo=None, tree=None, blobs=None, truncated=False):
    """Build a MockTransport handler for one repository."""
    repo = repo or {
        "name": "demo",
        "owner": {"login": "octo"},
        "default_branch": "main",
        "private": False,
        "visibility": "public",
    }
    tree = tree or []
    blobs = blobs or {}

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/repos/octo/demo":
            return httpx.Response(200, json=repo)
        if path == "/repos/octo/demo/commits/main":
            return httpx.Response(200, json={"sha": SHA})
        if path == f"/repos/octo/demo/git/trees/{SHA}":
            assert request.url.params.get("recursive") == "1"
            return httpx.Response(200, json={"sha": SHA, "tree": tree, "truncated": truncated})
        if path.startswith("/repos/octo/demo/git/blobs/"):
            sha = path.rsplit("/", 1)[-1]
            content = base64.b64encode(blobs[sha]).decode()
            return httpx.Response(200, json={"content": content, "encoding": "base64"})
        return httpx.Response(404, json={"message": "Not Found"})

    return handler


@pytest.mark.asyncio
async def test_github_host_import():
    """
    Test 15: End-to-end import against a mocked GitHub API.

    Verifies:
    - The default branch is resolved to a commit
    - Blobs are base64-decoded
    - Tree entries and binaries are not fetched
    """
    tree = [
        {"path": "src", "type": "tree", "sha": "t1"},
        {"path": "src/main.py", "type": "blob", "size": 12, "sha": "b1"},
        {"path": "README.md", "type": "blob", "size": 7, "sha": "b2"},
        {"path": "logo.png", "type": "blob", "size": 100, "sha": "b3"},
    ]
    blobs = {"b1": b"print('hi')\n", "b2": b"# demo\n"}
    transport = httpx.MockTransport(github_handler(tree=tree, blobs=blobs))

    async with get_host(ImportConfig(), transport=transport) as host:
        result = await ImportPipeline(host).run(URL)

    assert result.revision == SHA
    assert [(r.path, r.content) for r in result.files] == [
        ("/src/main.py", "print('hi')\n"),
        ("/README.md", "# demo\n"),
    ]
    assert [(s.path, s.reason) for s in result.skipped] == [("/logo.png", "binary")]

    print("✓ Test 15 passed: GitHub import")


@pytest.mark.asyncio
@pytest.mark.parametrize("status, headers, expected", [
    (404, {}, ProjectNotFound),
    (422, {}, ProjectNotFound),
    (401, {}, Unauthorized),
    (403, {}, Unauthorized),
    (403, {"x-ratelimit-remaining": "0", "x-ratelimit-reset": "1700000000"}, RateLimited),
    (429, {}, RateLimited),
    (502, {}, HostUnreachable),
])
async def test_github_host_error_mapping(status, headers, expected):
    """
    Test 16: Error responses become import error kinds, never status codes.
    """
    transport = httpx.MockTransport(
        lambda request: httpx.Response(status, headers=headers, json={"message": "nope"})
    )
    host = GitHubHost(transport=transport)
    try:
        with pytest.raises(expected) as exc_info:
            await host.get_project(ImportReference(owner="octo", name="demo"))
    finally:
        await host.aclose()

    assert str(status) not in exc_info.value.message


@pytest.mark.asyncio
async def test_github_host_private_repo():
    """
    Test 17: Private repositories are refused up front.
    """
    transport = httpx.MockTransport(github_handler(repo={
        "name": "demo",
        "owner": {"login": "octo"},
        "private": True,
        "visibility": "private",
    }))

    async with GitHubHost(transport=transport) as host:
        with pytest.raises(PrivateUnsupported):
            await ImportPipeline(host).run(URL)

    print("✓ Test 17 passed: private repositories refused")


@pytest.mark.asyncio
async def test_github_host_network_error():
    """
    Test 18: Connection failures are HostUnreachable.
    """
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with GitHubHost(transport=httpx.MockTransport(handler)) as host:
        with pytest.raises(HostUnreachable):
            await host.get_project(ImportReference(owner="octo", name="demo"))

    with pytest.raises(InvalidReference):
        get_host(ImportConfig(host="gitlab.com"))

    print("✓ Test 18 passed: network errors mapped")


# =============================================================================
# RUN TESTS
# =============================================================================

if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
