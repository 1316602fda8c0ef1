"""Optimistic-concurrency document updates.

Every document mutation goes through apply_with_optimistic_retry: read the
document and its version, apply a mutation in memory, write back only if the
version is unchanged. A lost race re-reads and re-applies, with exponential
backoff plus jitter between attempts. No lock is held across an await.
"""

import asyncio
import logging
import uuid
from typing import Callable, Iterable, Optional, Union

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from reelflow.config import settings
from reelflow.db.store import DocumentStore
from reelflow.errors import ConflictError
from reelflow.schemas.workflow import ItemPatch, WorkflowDocument, apply_item_patch, check_kind

logger = logging.getLogger(__name__)

# A mutation edits the document in place; returning False skips the write.
Mutation = Callable[[WorkflowDocument], Optional[bool]]


class _VersionConflict(Exception):
    """Stored version moved between read and conditional write."""


async def backoff_sleep(seconds: float) -> None:
    """Pause between compare-and-set attempts."""
    await asyncio.sleep(seconds)


async def apply_with_optimistic_retry(
    store: DocumentStore,
    doc_id: uuid.UUID,
    mutate: Mutation,
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_jitter: Optional[float] = None,
) -> Optional[WorkflowDocument]:
    """Apply mutate to the latest document under compare-and-set.

    Returns the written document, or None when mutate declined to write.

    Raises:
        ConflictError: if every attempt lost the version race
        NotFoundError: if the document does not exist
    """
    policy = settings.updater
    max_attempts = max_attempts or policy.max_attempts
    base_delay = policy.base_delay if base_delay is None else base_delay
    max_jitter = policy.max_jitter if max_jitter is None else max_jitter

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=base_delay) + wait_random(0, max_jitter),
            retry=retry_if_exception_type(_VersionConflict),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            sleep=backoff_sleep,
            reraise=True,
        ):
            with attempt:
                doc = await store.read(doc_id)
                if mutate(doc) is False:
                    return None
                written = await store.write_if_version(doc, doc.version)
                if written is None:
                    raise _VersionConflict(doc.version)
                return written
    except _VersionConflict as e:
        logger.warning(f"Workflow {doc_id}: update conflict after {max_attempts} attempts")
        raise ConflictError("Update conflict, please retry") from e


class DocumentUpdater:
    """Applies item patches and whole-document mutations for one store."""

    def __init__(
        self,
        store: DocumentStore,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_jitter: Optional[float] = None,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_jitter = max_jitter

    async def mutate(self, doc_id: uuid.UUID, mutate: Mutation) -> Optional[WorkflowDocument]:
        return await apply_with_optimistic_retry(
            self.store,
            doc_id,
            mutate,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_jitter=self.max_jitter,
        )

    async def apply_patch(
        self,
        doc_id: uuid.UUID,
        kind: str,
        index: int,
        patch: Union[ItemPatch, dict],
        expect_in: Optional[Iterable[str]] = None,
        item_id: Optional[str] = None,
        guard: Optional[Callable[[], bool]] = None,
    ) -> Optional[WorkflowDocument]:
        """Patch the item at index.

        With expect_in, the patch applies only while the item's status is one
        of the given values; with item_id, only while the slot still holds
        that item; with guard, only while guard() is true at write time.
        Otherwise the write is skipped and None returned.

        Raises:
            ValidationError: bad kind, bad index or invalid patch
            ConflictError: version race lost on every attempt
        """
        check_kind(kind)
        if isinstance(patch, dict):
            patch = ItemPatch(**patch)
        expected = set(expect_in) if expect_in is not None else None

        def _apply(doc: WorkflowDocument) -> bool:
            if guard is not None and not guard():
                return False
            item = doc.item_at(kind, index)
            if item_id is not None and item.id != item_id:
                logger.info(f"Workflow {doc_id}: {kind} {index} is no longer {item_id}, skipping patch")
                return False
            if expected is not None and item.state not in expected:
                logger.info(
                    f"Workflow {doc_id}: {kind} {index} is {item.state}, "
                    f"not in {sorted(expected)}, skipping patch"
                )
                return False
            doc.replace_item(kind, index, apply_item_patch(item, patch))
            return True

        return await self.mutate(doc_id, _apply)
