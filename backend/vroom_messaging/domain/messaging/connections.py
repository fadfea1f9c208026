"""Connection manager: which users currently hold a live channel.

One slot per user id. A newer connection replaces the tracked handle
(last-write-wins); multiple simultaneous connections are not multiplexed. The
map lives for the lifetime of the process and starts empty, reconnecting
clients register again.
"""

from __future__ import annotations

import logging
from typing import Dict, Generic, Optional, TypeVar

from vroom_messaging.obs import metrics as obs_metrics

from .exceptions import MissingIdentity

logger = logging.getLogger(__name__)

H = TypeVar("H")


class ConnectionManager(Generic[H]):
	"""Process-wide ``user_id -> handle`` map.

	Every operation is a single dict access on the event loop thread, so no lock
	is taken.
	"""

	def __init__(self) -> None:
		self._handles: Dict[str, H] = {}

	def register(self, user_id: Optional[str], handle: H) -> Optional[H]:
		"""Track ``handle`` for the user and return the handle it displaced, if any."""
		key = str(user_id or "").strip()
		if not key:
			raise MissingIdentity("missing user id")
		previous = self._handles.get(key)
		self._handles[key] = handle
		if previous is not None and previous != handle:
			obs_metrics.inc_connection_replaced()
			logger.info("connection_replaced", extra={"user_id": key})
			return previous
		return None

	def unregister(self, user_id: Optional[str], handle: Optional[H] = None) -> bool:
		"""Drop the user's mapping; with ``handle`` only if it is still the tracked one."""
		key = str(user_id or "").strip()
		current = self._handles.get(key)
		if current is None:
			return False
		if handle is not None and current != handle:
			return False
		del self._handles[key]
		return True

	def lookup(self, user_id: Optional[str]) -> Optional[H]:
		return self._handles.get(str(user_id or "").strip())

	def is_connected(self, user_id: Optional[str]) -> bool:
		return self.lookup(user_id) is not None

	def clear(self) -> None:
		self._handles.clear()

	def __len__(self) -> int:
		return len(self._handles)


connections: ConnectionManager[str] = ConnectionManager()
