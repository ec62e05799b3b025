"""
Remote project import for the workbench.

WHAT THIS FILE DOES:
-------------------
Turns a reference like "https://github.com/owner/repo/tree/dev/src" into a
list of text FileRecords that can become the new project state.

HOW IT WORKS:
------------
    reference string
           │
           ▼
    1. parse_reference()      -> ImportReference       (InvalidReference)
    2. host.get_project()     -> ProjectMetadata       (ProjectNotFound, PrivateUnsupported)
    3. host.resolve_revision()-> exact commit sha      (ProjectNotFound)
    4. host.list_tree()       -> [TreeEntry, ...]      (ArchiveTooLargeOrTruncated)
    5. AdmissionFilter.admit()-> entries worth fetching (nothing fetched yet)
    6. worker pool fetches    -> bytes, by position
    7. decode_text()          -> text, or dropped
    8. paths normalized to "/..." (done with admission, see below)
           │
           ▼
    ImportResult(files in admission order, skipped entries)

Path normalization (stage 8) runs together with admission: an entry whose path
would be rejected later is never fetched, and never counts against the caps.

FAILURE POLICY:
--------------
Stages 1-4 fail the whole import with a specific error. From stage 5 on,
single entries that cannot be used are dropped and recorded in
ImportResult.skipped. Only when nothing at all survives does the import fail,
with NoImportableContent.

REFERENCE FORMATS:
-----------------
    https://github.com/owner/repo
    github.com/owner/repo.git
    https://github.com/owner/repo/tree/<ref>/<subpath>
    https://github.com/owner/repo?ref=<ref>&path=<subpath>
    https://github.com/owner/repo#<ref>  or  #<ref>:<subpath>

When several are combined, the fragment wins over the query, which wins over
the path. In the /tree/ form the first segment after "tree" is the ref, so
refs containing "/" need the query or fragment form.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Callable, Optional, Union
from urllib.parse import parse_qs, unquote, urlsplit

from config import ImportConfig
from errors import (
    ArchiveTooLargeOrTruncated,
    HostUnreachable,
    ImportFailure,
    InvalidReference,
    NoImportableContent,
)
from hosts import ProjectHost, get_host
from project import VCS_DIRS
from schemas import FileRecord, ImportReference, ImportResult, SkippedEntry, TreeEntry

logger = logging.getLogger("workbench.importer")

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


# =============================================================================
# STAGE 1: REFERENCE PARSING
# =============================================================================

def _split_subpath(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    segments = [s for s in raw.split("/") if s and s != "."]
    if ".." in segments:
        raise InvalidReference("Subpath must not contain '..'.")
    return "/".join(segments) or None


def parse_reference(text: str, supported_host: str = "github.com") -> ImportReference:
    """
    Parse and validate a remote project reference.

    Raises:
        InvalidReference: If the text is not a repository reference on the
            supported host
    """
    value = text.strip()
    if not value:
        raise InvalidReference()

    if value.startswith("http://"):
        value = "https://" + value[len("http://"):]
    elif not value.startswith("https://"):
        value = "https://" + value

    parsed = urlsplit(value)
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[len("www."):]
    if host != supported_host:
        raise InvalidReference(
            f"Only {supported_host} repositories can be imported (got '{host or text.strip()}')."
        )

    parts = [unquote(p) for p in parsed.path.split("/") if p]
    if len(parts) < 2:
        raise InvalidReference()

    owner, name = parts[0], parts[1]
    if name.endswith(".git"):
        name = name[:-len(".git")]
    if not _NAME_PATTERN.match(owner) or not _NAME_PATTERN.match(name):
        raise InvalidReference()

    ref: Optional[str] = None
    subpath: Optional[str] = None

    rest = parts[2:]
    if rest:
        if rest[0] not in ("tree", "blob") or len(rest) < 2:
            raise InvalidReference(f"Unrecognized repository URL: {text.strip()}")
        ref = rest[1]
        subpath = "/".join(rest[2:]) or None

    query = parse_qs(parsed.query)
    if query.get("ref"):
        ref = query["ref"][0]
    for key in ("path", "subpath"):
        if query.get(key):
            subpath = query[key][0]

    if parsed.fragment:
        fragment = unquote(parsed.fragment)
        fragment_ref, _, fragment_path = fragment.partition(":")
        ref = fragment_ref or ref
        subpath = fragment_path or subpath

    return ImportReference(
        host=supported_host,
        owner=owner,
        name=name,
        ref=ref or None,
        subpath=_split_subpath(subpath),
    )


def is_supported_reference(text: str, supported_host: str = "github.com") -> bool:
    """Cheap pre-check for UIs: would parse_reference() accept this?"""
    try:
        parse_reference(text, supported_host)
    except InvalidReference:
        return False
    return True


# =============================================================================
# STAGES 5 + 8: ADMISSION AND PATH NORMALIZATION
# =============================================================================

def normalize_import_path(raw: str, root_prefix: Optional[str] = None) -> Optional[str]:
    """
    Map a host path to the project's "/"-rooted convention.

    Strips the root wrapper (`root_prefix`, e.g. the requested subpath or an
    archive's top-level folder). Returns None for paths outside the wrapper,
    paths with ".." segments and version-control metadata.
    """
    segments = [s for s in raw.split("/") if s and s != "."]

    if root_prefix:
        prefix = [s for s in root_prefix.split("/") if s]
        if segments[:len(prefix)] != prefix:
            return None
        segments = segments[len(prefix):]

    if not segments or ".." in segments:
        return None
    if any(segment in VCS_DIRS for segment in segments):
        return None

    return "/" + "/".join(segments)


@dataclass
class AdmittedEntry:
    """A listing entry cleared for fetching, with its project path."""
    entry: TreeEntry
    path: str


class AdmissionFilter:
    """
    Decides which listing entries are fetched at all.

    Applied in listing order:
    1. only blobs; excluded paths dropped (see normalize_import_path)
    2. binary extensions dropped
    3. entries over the per-file byte cap dropped
    4. admission stops for good once the file-count or total-byte cap
       would be exceeded; later entries that pass 1-3 are reported under
       that cap
    """

    def __init__(self, config: ImportConfig):
        self.config = config
        self.binary_extensions = {ext.lower() for ext in config.binary_extensions}

    def is_binary(self, path: str) -> bool:
        return PurePosixPath(path).suffix.lower() in self.binary_extensions

    def admit(
        self,
        entries: list[TreeEntry],
        root_prefix: Optional[str] = None,
    ) -> tuple[list[AdmittedEntry], list[SkippedEntry]]:
        admitted: list[AdmittedEntry] = []
        skipped: list[SkippedEntry] = []
        total_bytes = 0
        cap_reason: Optional[str] = None
        capped = 0

        blobs = [e for e in entries if e.kind == "blob"]
        for entry in blobs:
            path = normalize_import_path(entry.path, root_prefix)
            if path is None:
                skipped.append(SkippedEntry(path=entry.path, reason="excluded"))
                continue
            if self.is_binary(path):
                skipped.append(SkippedEntry(path=path, reason="binary"))
                continue
            if entry.size > self.config.max_file_bytes:
                skipped.append(SkippedEntry(
                    path=path,
                    reason="too_large",
                    detail=f"{entry.size} bytes",
                ))
                continue

            if cap_reason is None:
                if len(admitted) >= self.config.max_files:
                    cap_reason = "file_cap"
                elif total_bytes + entry.size > self.config.max_total_bytes:
                    cap_reason = "byte_cap"

            if cap_reason:
                skipped.append(SkippedEntry(path=path, reason=cap_reason))
                capped += 1
                continue

            admitted.append(AdmittedEntry(entry=entry, path=path))
            total_bytes += entry.size

        if cap_reason:
            logger.info(
                "Import cap reached (%s) after %d files; %d entries not admitted",
                cap_reason, len(admitted), capped,
            )
        return admitted, skipped


# =============================================================================
# STAGE 7: DECODING
# =============================================================================

def decode_text(payload: bytes) -> Optional[str]:
    """UTF-8 text, or None when the bytes are not text."""
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError:
        return None
    if "\x00" in text:
        return None
    return text


# =============================================================================
# PIPELINE
# =============================================================================

class ImportPipeline:
    """
    Imports a remote project as a list of text files.

    Holds no state between runs; each run() is independent.

    Usage:
        async with get_host(config.importer) as host:
            result = await ImportPipeline(host, config.importer).run(url)
        state = result.to_state()
    """

    def __init__(
        self,
        host: ProjectHost,
        config: Optional[ImportConfig] = None,
        on_progress: Optional[Callable[[str], None]] = None,
    ):
        self.host = host
        self.config = config or ImportConfig()
        self.admission = AdmissionFilter(self.config)
        self._on_progress = on_progress

    def _progress(self, message: str) -> None:
        logger.info(message)
        if self._on_progress:
            self._on_progress(message)

    async def run(self, reference: Union[str, ImportReference]) -> ImportResult:
        """
        Run the whole pipeline under the configured time budget.

        Raises:
            ImportFailure: One of its subclasses, see module docstring
        """
        try:
            return await asyncio.wait_for(self._run(reference), timeout=self.config.import_timeout)
        except asyncio.TimeoutError:
            raise HostUnreachable(
                f"Import took longer than {self.config.import_timeout:g}s and was abandoned."
            ) from None

    async def _run(self, reference: Union[str, ImportReference]) -> ImportResult:
        if isinstance(reference, ImportReference):
            ref = reference
        else:
            ref = parse_reference(reference, self.config.host)

        self._progress(f"Resolving {ref}")
        metadata = await self.host.get_project(ref)
        revision = await self.host.resolve_revision(ref, metadata)

        self._progress(f"Listing {ref.slug} at {revision[:12]}")
        entries, truncated = await self.host.list_tree(ref, revision)
        if truncated:
            raise ArchiveTooLargeOrTruncated(
                f"{ref.slug} is too large: the host could not list all of its files."
            )
        if len(entries) > self.config.max_listing_entries:
            raise ArchiveTooLargeOrTruncated(
                f"{ref.slug} has {len(entries)} entries; the limit is {self.config.max_listing_entries}."
            )

        admitted, skipped = self.admission.admit(entries, ref.subpath)
        self._progress(f"Fetching {len(admitted)} files")

        outcomes = await self._fetch_all(ref, admitted)

        files: list[FileRecord] = []
        for outcome in outcomes:
            if isinstance(outcome, FileRecord):
                files.append(outcome)
            else:
                skipped.append(outcome)

        if not files:
            failures = [s.detail for s in skipped if s.reason == "fetch_failed" and s.detail]
            if failures:
                raise NoImportableContent(f"{NoImportableContent.default_message} Last error: {failures[-1]}")
            raise NoImportableContent()

        logger.debug("Imported %d files, skipped %d entries", len(files), len(skipped))
        return ImportResult(reference=ref, revision=revision, files=files, skipped=skipped)

    async def _fetch_one(self, ref: ImportReference, item: AdmittedEntry) -> Union[FileRecord, SkippedEntry]:
        try:
            payload = await self.host.fetch_blob(ref, item.entry)
        except ImportFailure as e:
            logger.debug("Fetch failed for %s: %s", item.path, e.message)
            return SkippedEntry(path=item.path, reason="fetch_failed", detail=e.message)

        text = decode_text(payload)
        if text is None:
            return SkippedEntry(path=item.path, reason="not_text")
        return FileRecord(path=item.path, content=text)

    async def _fetch_all(
        self,
        ref: ImportReference,
        admitted: list[AdmittedEntry],
    ) -> list[Union[FileRecord, SkippedEntry]]:
        """
        Fetch admitted entries with a fixed number of workers.

        Workers drain a shared queue of (index, entry) pairs and write each
        outcome into its slot, so the result order is the admission order
        whatever order fetches complete in.
        """
        results: list = [None] * len(admitted)
        queue: asyncio.Queue = asyncio.Queue()
        for index, item in enumerate(admitted):
            queue.put_nowait((index, item))

        async def worker() -> None:
            while True:
                try:
                    index, item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                results[index] = await self._fetch_one(ref, item)

        pool_size = min(self.config.workers, len(admitted))
        tasks = [asyncio.ensure_future(worker()) for _ in range(pool_size)]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        return results


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

async def import_project(
    reference: str,
    config: Optional[ImportConfig] = None,
    on_progress: Optional[Callable[[str], None]] = None,
) -> ImportResult:
    """
    Quick way to import a project with a fresh host client.

    Args:
        reference: Repository URL
        config: Import settings (defaults if None)
        on_progress: Called with short status lines

    Returns:
        ImportResult
    """
    config = config or ImportConfig()
    async with get_host(config) as host:
        pipeline = ImportPipeline(host, config, on_progress=on_progress)
        return await pipeline.run(reference)
