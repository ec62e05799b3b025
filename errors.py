"""
Error kinds for the workbench.

WHY THIS FILE EXISTS:
--------------------
Every failure a user can see has to be a short, actionable message, and the
caller has to be able to tell failures apart without parsing text or looking at
HTTP status codes. So each failure mode gets its own exception class.

HIERARCHY:
---------
    WorkbenchError
    ├── BootTimeout, BusyExecution
    ├── CommandCancelled
    │   ├── CancelledByUser
    │   └── CancelledByTimeout
    ├── ImportFailure
    │   ├── InvalidReference, HostUnreachable, ProjectNotFound
    │   ├── RateLimited, Unauthorized, PrivateUnsupported
    │   ├── ArchiveTooLargeOrTruncated
    │   └── NoImportableContent
    ├── PersistenceError
    │   ├── CorruptPersistedState    (caught internally, never surfaced)
    │   └── StorageWriteFailure
    └── InvalidProjectPayload

Cancellation "errors" are not raised to callers of ExecutionController.run().
They are the reason carried by a CancellationToken; an engine may raise that
reason to unwind, and the controller turns it into exit code 130.
"""

from typing import Optional


class WorkbenchError(Exception):
    """Base class. `message` is what the user sees."""

    default_message = "Workbench operation failed."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        return type(self).__name__


# =============================================================================
# EXECUTION
# =============================================================================

class BootTimeout(WorkbenchError):
    default_message = "Execution engine did not start in time. Try again."


class BusyExecution(WorkbenchError):
    default_message = "A command is already running. Stop it or wait for it to finish."


class CommandCancelled(WorkbenchError):
    default_message = "Command cancelled."
    source = "unknown"


class CancelledByUser(CommandCancelled):
    default_message = "Command stopped by user."
    source = "user"


class CancelledByTimeout(CommandCancelled):
    default_message = "Command timed out."
    source = "timeout"


# =============================================================================
# IMPORT
# =============================================================================

class ImportFailure(WorkbenchError):
    default_message = "Import failed."


class InvalidReference(ImportFailure):
    default_message = "Enter a valid GitHub repository URL, e.g. https://github.com/owner/repo"


class HostUnreachable(ImportFailure):
    default_message = "Could not reach GitHub. Check your connection and try again."


class ProjectNotFound(ImportFailure):
    default_message = "Repository not found. Check the owner, name and ref."


class RateLimited(ImportFailure):
    default_message = "GitHub API rate limit reached. Wait a few minutes and try again."


class Unauthorized(ImportFailure):
    default_message = "GitHub refused access to this repository."


class PrivateUnsupported(ImportFailure):
    default_message = "Private repositories are not supported. Use a public repository."


class ArchiveTooLargeOrTruncated(ImportFailure):
    default_message = "Repository is too large to import completely."


class NoImportableContent(ImportFailure):
    default_message = "No importable files found. Repository may be empty or API-limited."


# =============================================================================
# PERSISTENCE
# =============================================================================

class PersistenceError(WorkbenchError):
    default_message = "Workspace storage failed."


class CorruptPersistedState(PersistenceError):
    default_message = "Stored workspace data is unreadable."


class StorageWriteFailure(PersistenceError):
    default_message = "Could not write workspace data."


# =============================================================================
# PROJECT PAYLOADS
# =============================================================================

class InvalidProjectPayload(WorkbenchError):
    default_message = "Invalid import format. Expected an array of files."
