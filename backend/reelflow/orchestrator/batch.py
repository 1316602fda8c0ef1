"""Runs an item function over many items, unbounded or in capped groups."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class ItemResult:
    index: int
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None
    skipped: bool = False


async def run_batch(
    items: Sequence[Any],
    fn: Callable[[Any], Awaitable[Any]],
    cap: Optional[int] = None,
    should_continue: Optional[Callable[[], bool]] = None,
) -> list[ItemResult]:
    """Run fn over items with per-item failure isolation.

    With cap=None every item runs concurrently. With a cap, items run in
    groups of at most cap: groups run one after another, items within a group
    concurrently, and should_continue is checked before each group; once it
    returns False the remaining items are reported as skipped.
    """
    if cap is not None and cap < 1:
        raise ValueError(f"cap must be >= 1, got {cap}")

    indexed = list(enumerate(items))
    size = cap or max(len(indexed), 1)
    groups = [indexed[i:i + size] for i in range(0, len(indexed), size)]

    results: list[ItemResult] = []
    for group_no, group in enumerate(groups):
        if should_continue is not None and not should_continue():
            remaining = [i for g in groups[group_no:] for i, _ in g]
            logger.info(f"Batch stopped before group {group_no + 1}/{len(groups)}, skipping {len(remaining)} items")
            results.extend(ItemResult(index=i, ok=False, skipped=True) for i in remaining)
            break

        if cap is not None:
            logger.info(f"Running group {group_no + 1}/{len(groups)} ({len(group)} items)")
        outcomes = await asyncio.gather(*(fn(item) for _, item in group), return_exceptions=True)
        for (i, _), outcome in zip(group, outcomes):
            if isinstance(outcome, Exception):
                logger.error(f"Batch item {i} failed: {outcome}", exc_info=outcome)
                results.append(ItemResult(index=i, ok=False, error=outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(ItemResult(index=i, ok=True, value=outcome))
    return results
