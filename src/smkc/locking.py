"""
Optimistic concurrency control for match writes.

Every write to a match goes through ``update_match``. The store's
``conditional_update`` only applies when the row is still at the version the
writer read; a writer that lost the race gets ``OptimisticLockConflict`` with
the version that beat it. Transient storage failures are retried a few times
with a fixed backoff.
"""
import logging
import time
from typing import Callable, Optional

from .errors import InternalStorageError, OptimisticLockConflict, StorageUnavailable
from .models import Match

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF = 0.05


def update_with_retry(read_version: Callable[[], int], mutation: Callable[[int], Optional[object]],
                      attempts: int = DEFAULT_ATTEMPTS, backoff: float = DEFAULT_BACKOFF,
                      retry_conflicts: bool = False,
                      current_version: Optional[Callable[[], int]] = None):
    """Run a version-conditioned mutation.

    Args:
        read_version: Returns the version the mutation should be conditioned on.
        mutation: Compare-and-swap against that version. Returns the updated
            entity, or None when zero rows matched.
        attempts: Total attempts for transient failures.
        backoff: Seconds to sleep between attempts.
        retry_conflicts: Re-read and retry on conflict instead of raising.
            Only for writes whose intent does not depend on what the caller saw.
        current_version: Reads the stored version for the conflict error.
            Defaults to ``read_version``.

    Raises:
        OptimisticLockConflict: the row moved on; carries the current version.
        InternalStorageError: storage stayed unavailable for every attempt.
    """
    current_version = current_version or read_version

    for attempt in range(1, attempts + 1):
        try:
            version = read_version()
            result = mutation(version)
        except StorageUnavailable as e:
            logger.warning(f'Storage unavailable (attempt {attempt}/{attempts}): {e}')
            if attempt < attempts:
                time.sleep(backoff)
            continue

        if result is not None:
            return result

        if retry_conflicts and attempt < attempts:
            logger.debug(f'Version {version} is stale, retrying (attempt {attempt}/{attempts})')
            time.sleep(backoff)
            continue

        try:
            stored = current_version()
        except StorageUnavailable as e:
            raise InternalStorageError() from e
        raise OptimisticLockConflict(stored)

    logger.error(f'Storage still unavailable after {attempts} attempts')
    raise InternalStorageError()


def update_match(store, tournament_id: str, match_id: str, expected_version: Optional[int],
                 change: Callable[[Match], Optional[Match]], attempts: int = DEFAULT_ATTEMPTS,
                 backoff: float = DEFAULT_BACKOFF, retry_conflicts: bool = False) -> Match:
    """Apply ``change`` to a match under optimistic locking and return the stored match.

    ``expected_version`` is the version the client last saw; pass None for
    internal writes that condition on whatever version is stored now.
    ``change`` receives a fresh copy of the stored match and may mutate it in
    place or return a replacement. Errors it raises abort the write.
    """
    def stored_version():
        return store.get_match(tournament_id, match_id).version

    def read_version():
        if expected_version is None:
            return stored_version()
        return expected_version

    def apply(match):
        result = change(match)
        return match if result is None else result

    def mutation(version):
        return store.conditional_update(tournament_id, match_id, version, apply)

    # Conflicts against a client-supplied version are never retried.
    return update_with_retry(read_version, mutation, attempts=attempts, backoff=backoff,
                             retry_conflicts=retry_conflicts and expected_version is None,
                             current_version=stored_version)
