from __future__ import annotations

import concurrent.futures
import logging
import time
from abc import ABC, abstractmethod
from typing import List

from ..errors import IdServiceUnavailable
from ..models.common import JobContext

LOGGER = logging.getLogger("cityindex.ids")


class IdAssigner(ABC):
    """Source of unique, time-ordered unsigned 64-bit identifiers."""

    @abstractmethod
    def next_id(self) -> int:
        raise NotImplementedError

    def next_ids(self, count: int) -> List[int]:
        return [self.next_id() for _ in range(count)]


def acquire_ids(
    assigner: IdAssigner,
    count: int,
    *,
    block_size: int = 1000,
    max_workers: int = 4,
    timeout: float | None = None,
    context: JobContext | None = None,
) -> List[int]:
    """Request ``count`` ids as concurrent blocks and return them ascending.

    Either every id is returned or ``IdServiceUnavailable`` is raised; a
    partially filled list never leaves this function. ``timeout`` is one
    budget for the whole request, not a per-block allowance, and a hung
    backend call is abandoned rather than waited for.
    """
    if count <= 0:
        return []
    if block_size <= 0:
        raise ValueError("block_size must be positive")
    blocks = [min(block_size, count - offset) for offset in range(0, count, block_size)]
    if context is not None:
        context.check()
    deadline = None if timeout is None else time.monotonic() + timeout
    ids: List[int] = []
    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=max(1, min(max_workers, len(blocks))),
        thread_name_prefix="id-blocks",
    )
    try:
        futures = [executor.submit(_request_block, assigner, size) for size in blocks]
        for future in futures:
            ids.extend(future.result(timeout=_remaining(deadline, context)))
    except concurrent.futures.TimeoutError as exc:
        executor.shutdown(wait=False, cancel_futures=True)
        raise IdServiceUnavailable(f"timed out acquiring {count} ids") from exc
    except BaseException:
        executor.shutdown(wait=False, cancel_futures=True)
        raise
    executor.shutdown(wait=True)
    ids.sort()
    if len(ids) != count or len(set(ids)) != count:
        raise IdServiceUnavailable(f"id backend returned {len(ids)} ids ({len(set(ids))} distinct) for {count} requested")
    LOGGER.debug("ids.acquired", extra={"count": count, "blocks": len(blocks)})
    return ids


def _remaining(deadline: float | None, context: JobContext | None) -> float | None:
    wait = None if deadline is None else max(0.0, deadline - time.monotonic())
    if context is not None:
        context.check()
        remaining = context.remaining()
        if remaining is not None:
            wait = remaining if wait is None else min(wait, remaining)
    return wait


def _request_block(assigner: IdAssigner, size: int) -> List[int]:
    try:
        block = assigner.next_ids(size)
    except IdServiceUnavailable:
        raise
    except Exception as exc:
        raise IdServiceUnavailable(f"id backend failed: {exc}") from exc
    if len(block) != size:
        raise IdServiceUnavailable(f"id backend returned {len(block)} ids for a block of {size}")
    return list(block)


__all__ = ["IdAssigner", "acquire_ids"]
