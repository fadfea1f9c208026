"""Real-time dispatcher: turns inbound live frames into sends and fans them out."""

from __future__ import annotations

import logging
from typing import Any, Generic, Optional, Protocol, TypeVar

from pydantic import ValidationError as SchemaValidationError

from vroom_messaging.obs import metrics as obs_metrics

from .connections import ConnectionManager, connections
from .exceptions import MessagingError, PersistenceError
from .schemas import ErrorFrame, MessageFrame, MessageIntent, SendMessageResponse, TypingFrame, TypingIntent
from .service import MessagingService, get_service

logger = logging.getLogger(__name__)

H = TypeVar("H")

INVALID_MESSAGE_DATA = "Invalid message data"


class Transport(Protocol[H]):
	async def send(self, handle: H, event: str, payload: dict) -> None:
		...

	def is_open(self, handle: H) -> bool:
		...


class RealtimeDispatcher(Generic[H]):
	"""Drives one inbound ``message``/``typing`` frame to completion.

	Errors never close the channel: they are reported to the originating
	connection as an ``error`` frame and the dispatcher returns.
	"""

	def __init__(
		self,
		transport: Transport[H],
		*,
		service: MessagingService | None = None,
		manager: ConnectionManager[H] | None = None,
	) -> None:
		self.transport = transport
		self.service = service or get_service()
		self.manager = manager if manager is not None else connections

	async def handle_message(
		self,
		sender_id: str,
		payload: Any,
		*,
		reply_to: Optional[H] = None,
	) -> Optional[SendMessageResponse]:
		reply_to = reply_to if reply_to is not None else self.manager.lookup(sender_id)
		if not isinstance(payload, dict):
			await self._send_error(reply_to, INVALID_MESSAGE_DATA, reason="validation_error")
			return None
		try:
			intent = MessageIntent.model_validate(payload)
		except SchemaValidationError:
			await self._send_error(reply_to, INVALID_MESSAGE_DATA, reason="validation_error")
			return None

		try:
			result = await self.service.send(sender_id, intent, channel="socket")
		except MessagingError as exc:
			await self._send_error(reply_to, exc.message, reason=exc.reason)
			return None
		except Exception:
			logger.exception("realtime_message_failed", extra={"user_id": sender_id})
			await self._send_error(reply_to, PersistenceError.default_message, reason="internal_error")
			return None

		frame = MessageFrame(data=result.message, conversation=result.conversation).to_payload()
		receiver_handle = self.manager.lookup(result.message.receiver_id)
		if receiver_handle is not None and receiver_handle != reply_to and self.transport.is_open(receiver_handle):
			await self.transport.send(receiver_handle, "message", frame)
			obs_metrics.inc_message_pushed("receiver")
		if reply_to is not None and self.transport.is_open(reply_to):
			await self.transport.send(reply_to, "message", frame)
			obs_metrics.inc_message_pushed("sender")
		return result

	async def handle_typing(self, sender_id: str, payload: Any) -> bool:
		"""Relay a typing indicator to the target's live connection. Not persisted."""
		if not isinstance(payload, dict):
			return False
		try:
			intent = TypingIntent.model_validate(payload)
		except SchemaValidationError:
			return False
		target = (intent.target_user_id or "").strip()
		if not target or target == sender_id:
			return False
		handle = self.manager.lookup(target)
		if handle is None or not self.transport.is_open(handle):
			return False
		frame = TypingFrame(user_id=sender_id, is_typing=intent.is_typing).to_payload()
		await self.transport.send(handle, "typing", frame)
		return True

	async def _send_error(self, handle: Optional[H], message: str, *, reason: str) -> None:
		obs_metrics.socket_event("/messages", "error")
		logger.info("realtime_message_rejected", extra={"reason": reason})
		if handle is None or not self.transport.is_open(handle):
			return
		await self.transport.send(handle, "error", ErrorFrame(message=message).to_payload())
