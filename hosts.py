"""
Remote project hosts for the workbench importer.

WHAT THIS FILE DOES:
-------------------
Talks to the service a project is imported from. The import pipeline only
needs four things from a host:

    get_project()       -> ProjectMetadata   (does it exist, is it public)
    resolve_revision()  -> "3f2a..."         (branch/tag/sha -> exact commit)
    list_tree()         -> [TreeEntry, ...]  (full recursive listing)
    fetch_blob()        -> b"..."            (content of one entry)

ERROR TRANSLATION:
-----------------
Status codes never leave this module. Each response is mapped to one of the
import error kinds, so the user sees "GitHub API rate limit reached" instead
of "HTTP 403":

    404 / 422                      -> ProjectNotFound
    401                            -> Unauthorized
    429, 403 + rate limit spent    -> RateLimited
    other 403                      -> Unauthorized
    5xx, timeouts, network errors  -> HostUnreachable
"""

import base64
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from urllib.parse import quote

import httpx

from config import ImportConfig
from errors import (
    HostUnreachable,
    ImportFailure,
    InvalidReference,
    PrivateUnsupported,
    ProjectNotFound,
    RateLimited,
    Unauthorized,
)
from schemas import ImportReference, ProjectMetadata, TreeEntry

logger = logging.getLogger("workbench.hosts")


# =============================================================================
# BASE CLASS
# =============================================================================

class ProjectHost(ABC):
    """
    Base class for remote project hosts.

    Implementations raise ImportFailure subclasses only. Hosts hold network
    resources; use them as async context managers or call aclose().
    """

    name = "host"

    @abstractmethod
    async def get_project(self, reference: ImportReference) -> ProjectMetadata:
        pass

    @abstractmethod
    async def resolve_revision(self, reference: ImportReference, metadata: ProjectMetadata) -> str:
        """Resolve reference.ref (or the default branch) to a commit sha."""
        pass

    @abstractmethod
    async def list_tree(self, reference: ImportReference, revision: str) -> tuple[list[TreeEntry], bool]:
        """
        Full recursive listing of a revision.

        Returns:
            (entries, truncated) - truncated is True when the host could not
            list everything
        """
        pass

    @abstractmethod
    async def fetch_blob(self, reference: ImportReference, entry: TreeEntry) -> bytes:
        pass

    async def aclose(self) -> None:
        pass

    async def __aenter__(self) -> "ProjectHost":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


# =============================================================================
# GITHUB
# =============================================================================

class GitHubHost(ProjectHost):
    """
    Public GitHub repositories over the REST API.

    Unauthenticated: private repositories are out of scope, and the anonymous
    rate limit applies (60 requests/hour per IP at the time of writing).
    """

    name = "github.com"

    def __init__(
        self,
        api_base: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.api_base,
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "workbench-importer",
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # -------------------------------------------------------------------------
    # HTTP helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _rate_limit_message(response: httpx.Response) -> str:
        reset = response.headers.get("x-ratelimit-reset")
        if reset and reset.isdigit():
            at = datetime.fromtimestamp(int(reset)).strftime("%H:%M")
            return f"GitHub API rate limit reached. Try again after {at}."
        return RateLimited.default_message

    @classmethod
    def _raise_for_status(cls, response: httpx.Response, not_found: str) -> None:
        """Translate an error response into an import error kind."""
        status = response.status_code
        if status < 400:
            return

        logger.debug("GitHub %s %s -> %s", response.request.method, response.request.url, status)

        if status in (404, 422):
            raise ProjectNotFound(not_found)
        if status == 429 or (status == 403 and response.headers.get("x-ratelimit-remaining") == "0"):
            raise RateLimited(cls._rate_limit_message(response))
        if status in (401, 403):
            raise Unauthorized()
        if status >= 500:
            raise HostUnreachable("GitHub is having trouble right now. Try again later.")
        raise ImportFailure("GitHub rejected the request.")

    async def _get_json(self, url: str, not_found: str, params: Optional[dict] = None):
        try:
            response = await self._client.get(url, params=params)
        except httpx.TimeoutException:
            raise HostUnreachable("GitHub did not respond in time. Try again.") from None
        except httpx.TransportError as e:
            raise HostUnreachable() from e

        self._raise_for_status(response, not_found)

        try:
            return response.json()
        except ValueError:
            raise HostUnreachable("GitHub returned an unexpected response.") from None

    @staticmethod
    def _repo_path(reference: ImportReference) -> str:
        return f"/repos/{quote(reference.owner, safe='')}/{quote(reference.name, safe='')}"

    # -------------------------------------------------------------------------
    # ProjectHost
    # -------------------------------------------------------------------------

    async def get_project(self, reference: ImportReference) -> ProjectMetadata:
        data = await self._get_json(
            self._repo_path(reference),
            not_found=f"Repository {reference.slug} not found or not accessible.",
        )

        if data.get("private") or data.get("visibility", "public") != "public":
            raise PrivateUnsupported()

        owner = data.get("owner") or {}
        return ProjectMetadata(
            owner=owner.get("login", reference.owner),
            name=data.get("name", reference.name),
            default_branch=data.get("default_branch") or "main",
            private=False,
            description=data.get("description"),
        )

    async def resolve_revision(self, reference: ImportReference, metadata: ProjectMetadata) -> str:
        ref = reference.ref or metadata.default_branch
        data = await self._get_json(
            f"{self._repo_path(reference)}/commits/{quote(ref, safe='')}",
            not_found=f"Ref '{ref}' not found in {reference.slug}.",
        )

        sha = data.get("sha")
        if not sha:
            raise ProjectNotFound(f"Ref '{ref}' not found in {reference.slug}.")
        return sha

    async def list_tree(self, reference: ImportReference, revision: str) -> tuple[list[TreeEntry], bool]:
        data = await self._get_json(
            f"{self._repo_path(reference)}/git/trees/{revision}",
            params={"recursive": "1"},
            not_found=f"Revision {revision[:12]} not found in {reference.slug}.",
        )

        entries = [
            TreeEntry(
                path=item["path"],
                kind=item.get("type", "blob"),
                size=item.get("size") or 0,
                sha=item.get("sha", ""),
            )
            for item in data.get("tree", [])
            if item.get("path")
        ]
        return entries, bool(data.get("truncated"))

    async def fetch_blob(self, reference: ImportReference, entry: TreeEntry) -> bytes:
        data = await self._get_json(
            f"{self._repo_path(reference)}/git/blobs/{entry.sha}",
            not_found=f"File {entry.path} not found.",
        )

        content = data.get("content") or ""
        encoding = data.get("encoding")
        if encoding == "base64":
            return base64.b64decode(content.replace("\n", ""))
        if encoding == "utf-8":
            return content.encode("utf-8")
        raise ImportFailure(f"Unsupported content encoding for {entry.path}.")


# =============================================================================
# FACTORY
# =============================================================================

SUPPORTED_HOSTS = {"github.com", "www.github.com"}


def get_host(config: Optional[ImportConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> ProjectHost:
    """
    Create the host client for the configured host.

    Raises:
        InvalidReference: If the configured host is not supported
    """
    config = config or ImportConfig()

    if config.host not in SUPPORTED_HOSTS:
        raise InvalidReference(f"Unsupported host '{config.host}'. Only github.com is supported.")

    return GitHubHost(
        api_base=config.api_base,
        timeout=config.request_timeout,
        transport=transport,
    )
