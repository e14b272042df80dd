from __future__ import annotations

import logging
from typing import List

from redis.exceptions import RedisError

from ..errors import IdServiceUnavailable
from .base import IdAssigner

LOGGER = logging.getLogger("cityindex.ids")


class RedisCounterIdAssigner(IdAssigner):
    """Fleet-wide ids reserved in blocks with a single ``INCRBY`` per request.

    ``next_ids(n)`` costs one round trip regardless of ``n``; the returned block
    is contiguous and ascending.
    """

    def __init__(self, client, *, key: str = "cityindex:ids") -> None:
        self._client = client
        self._key = key

    def next_id(self) -> int:
        return self.next_ids(1)[0]

    def next_ids(self, count: int) -> List[int]:
        if count <= 0:
            return []
        try:
            upper = int(self._client.incrby(self._key, count))
        except RedisError as exc:
            LOGGER.warning("ids.redis_unavailable", extra={"key": self._key, "error": str(exc)})
            raise IdServiceUnavailable(f"redis id counter unavailable: {exc}") from exc
        return list(range(upper - count + 1, upper + 1))


__all__ = ["RedisCounterIdAssigner"]
