"""Socket.IO namespace for the live messaging channel."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import socketio
from socketio.exceptions import ConnectionRefusedError

from vroom_messaging.infra.auth import resolve_socket_user
from vroom_messaging.obs import logging as obs_logging
from vroom_messaging.obs import metrics as obs_metrics

from .connections import ConnectionManager, connections
from .dispatcher import RealtimeDispatcher
from .exceptions import MissingIdentity
from .service import MessagingService

logger = logging.getLogger(__name__)


class NamespaceTransport:
	"""Delivers dispatcher frames to Socket.IO sids of one namespace."""

	def __init__(self, namespace: "MessagesNamespace") -> None:
		self._namespace = namespace

	async def send(self, handle: str, event: str, payload: dict) -> None:
		obs_metrics.socket_event(self._namespace.namespace, event)
		await self._namespace.emit(event, payload, room=handle)

	def is_open(self, handle: str) -> bool:
		return self._namespace.has_session(handle)


class MessagesNamespace(socketio.AsyncNamespace):
	"""One live connection per user; inbound frames go through the dispatcher."""

	def __init__(
		self,
		*,
		manager: ConnectionManager[str] | None = None,
		service: MessagingService | None = None,
	) -> None:
		super().__init__("/messages")
		self._sessions: Dict[str, str] = {}
		self.manager = manager if manager is not None else connections
		self.dispatcher: RealtimeDispatcher[str] = RealtimeDispatcher(
			NamespaceTransport(self),
			service=service,
			manager=self.manager,
		)

	def has_session(self, sid: str) -> bool:
		return sid in self._sessions

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		user = resolve_socket_user(environ, auth)
		try:
			if user is None:
				raise MissingIdentity("missing user id")
			self.manager.register(user.id, sid)
		except MissingIdentity:
			logger.info("socket_connect_refused", extra={"sid": sid})
			raise ConnectionRefusedError("policy_violation")
		obs_metrics.socket_connected(self.namespace)
		self._sessions[sid] = user.id
		await self.emit("messages:ack", {"ok": True, "userId": user.id}, room=sid)

	async def on_disconnect(self, sid: str, *args: Any) -> None:
		user_id = self._sessions.pop(sid, None)
		if user_id is None:
			return
		obs_metrics.socket_disconnected(self.namespace)
		self.manager.unregister(user_id, sid)

	async def on_message(self, sid: str, payload: Any) -> None:
		obs_metrics.socket_event(self.namespace, "message:in")
		user_id = self._sessions.get(sid)
		if not user_id:
			raise ConnectionRefusedError("unauthenticated")
		tokens = obs_logging.bind_context(user_id=user_id, sid=sid)
		try:
			await self.dispatcher.handle_message(user_id, payload, reply_to=sid)
		finally:
			obs_logging.reset_context(tokens)

	async def on_typing(self, sid: str, payload: Any) -> None:
		obs_metrics.socket_event(self.namespace, "typing:in")
		user_id = self._sessions.get(sid)
		if not user_id:
			raise ConnectionRefusedError("unauthenticated")
		await self.dispatcher.handle_typing(user_id, payload)
