"""Error taxonomy for the reconciliation engine.

Repositories and mappers raise these to tell the engine how a failure
must be treated:

- ``TransientError`` (timeout, rate limit, temporary auth failure):
  retried with bounded backoff, then skipped until the next run.
- ``VersionConflictError``: the target changed between read and write;
  the relation is re-evaluated.
- ``EntityNotFoundError``: the entity disappeared; deletes treat it as
  success, updates re-evaluate it as a removal.
- ``PermanentError`` (validation, mapping): recorded as a failure, the
  relation is left untouched for the next run.
- ``FatalSyncError`` (relation store unreachable, enumeration broken):
  aborts the whole run.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all engine errors."""


# ---------------------------------------------------------------------------
# Transient
# ---------------------------------------------------------------------------


class TransientError(SyncError):
    """A failure that may succeed when retried without external change."""


class RepositoryTimeoutError(TransientError):
    """A repository call did not complete within its timeout."""


class RateLimitedError(TransientError):
    """The store asked the caller to slow down.

    Args:
        message: Error description.
        retry_after: Seconds the store asked to wait, if it said so.
    """

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class TemporaryAuthError(TransientError):
    """Credentials were rejected in a way expected to clear up (token refresh)."""


# ---------------------------------------------------------------------------
# Entity-level
# ---------------------------------------------------------------------------


class VersionConflictError(SyncError):
    """The stored version no longer matches the expected version.

    Args:
        entity_id: Id of the entity being written.
        expected: Version the writer expected.
        actual: Version the store reported, if known.
    """

    def __init__(self, entity_id, expected, actual=None):
        super().__init__(
            f"Version conflict on {entity_id!r}: "
            f"expected {expected!r}, found {actual!r}"
        )
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual


class EntityNotFoundError(SyncError):
    """The entity does not exist (any more) in the repository."""

    def __init__(self, entity_id):
        super().__init__(f"Entity {entity_id!r} not found")
        self.entity_id = entity_id


class PermanentError(SyncError):
    """A failure that will repeat until something changes externally."""


class ValidationError(PermanentError):
    """The target store rejected the entity as malformed."""


class MappingError(PermanentError):
    """An entity could not be translated to the other side's format."""


# ---------------------------------------------------------------------------
# Run-level
# ---------------------------------------------------------------------------


class FatalSyncError(SyncError):
    """A precondition failure that aborts the whole run."""


class RelationStoreError(FatalSyncError):
    """The relation store could not be read or written."""


def is_transient(exc: BaseException) -> bool:
    """Return ``True`` if *exc* should be retried."""
    return isinstance(exc, TransientError)
