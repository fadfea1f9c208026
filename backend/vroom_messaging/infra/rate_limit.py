"""Fixed-window rate limiting on Redis counters."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

from vroom_messaging.infra.redis import redis_client


@dataclass(slots=True)
class WindowUsage:
	count: int
	limit: int
	reset_in: int

	@property
	def allowed(self) -> bool:
		return 0 < self.limit and self.count <= self.limit


def window_key(kind: str, actor_id: str, window: int, now: float) -> str:
	return f"rl:{kind}:{actor_id}:{int(now // window)}:{window}"


async def hit(
	kind: str,
	actor_id: str,
	*,
	limit: int,
	window_seconds: int = 60,
	now: Optional[float] = None,
) -> WindowUsage:
	"""Count one attempt against the actor's current window."""
	now = time.time() if now is None else now
	window = max(1, int(window_seconds))
	if limit <= 0:
		return WindowUsage(count=0, limit=limit, reset_in=window)
	key = window_key(kind, actor_id, window, now)
	async with redis_client.pipeline(transaction=True) as pipe:
		pipe.incr(key)
		pipe.expire(key, window)
		count, _ = await pipe.execute()
	return WindowUsage(count=int(count), limit=limit, reset_in=window - int(now % window))
