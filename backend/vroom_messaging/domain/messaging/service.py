"""Messaging service: the send pipeline and the read-side flows behind the API."""

from __future__ import annotations

import logging
from typing import List

import asyncpg
from redis.exceptions import RedisError

from vroom_messaging.infra import rate_limit
from vroom_messaging.infra.auth import AuthenticatedUser
from vroom_messaging.obs import metrics as obs_metrics
from vroom_messaging.settings import settings

from .exceptions import (
	AccessDenied,
	ClientTokenReused,
	ConversationNotFound,
	MessagingError,
	MissingFields,
	PersistenceError,
	RateLimited,
	ReceiverMismatch,
	SelfMessageDenied,
	UserNotFound,
)
from .models import Conversation, Message, MessageDraft, UserSummary
from .registry import ConversationRegistry
from .repo import MessagingRepository
from .schemas import (
	ConversationHistoryResponse,
	ConversationOut,
	ConversationSummary,
	MessageIntent,
	MessageOut,
	SendMessageResponse,
	UserConversationResponse,
	UserOut,
)
from .store import MessageStore, normalize_content

logger = logging.getLogger(__name__)

_PERSISTENCE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class MessagingService:
	def __init__(
		self,
		repository: MessagingRepository | None = None,
		*,
		registry: ConversationRegistry | None = None,
		store: MessageStore | None = None,
	) -> None:
		self._repo = repository or MessagingRepository()
		self.registry = registry or ConversationRegistry(self._repo)
		self.store = store or MessageStore(self._repo)

	async def send(self, sender_id: str, intent: MessageIntent, *, channel: str = "rest") -> SendMessageResponse:
		"""Validate, resolve the conversation and persist one message.

		Writes for one send share a unit of work, so a rejection or failure leaves
		no partial state behind. Storage failures are logged and surfaced as a
		generic PersistenceError; they are not retried because a retry could
		double-send.
		"""
		try:
			response = await self._send(str(sender_id), intent)
		except MessagingError as exc:
			obs_metrics.inc_message_rejected(channel, exc.reason)
			raise
		except _PERSISTENCE_ERRORS as exc:
			logger.exception("message_send_failed", extra={"channel": channel})
			raise PersistenceError() from exc
		obs_metrics.inc_message_sent(channel)
		return response

	async def _send(self, sender_id: str, intent: MessageIntent) -> SendMessageResponse:
		receiver_id = (intent.receiver_id or "").strip()
		if not receiver_id or intent.content is None or intent.content == "":
			raise MissingFields()
		if sender_id == receiver_id:
			raise SelfMessageDenied()
		content = normalize_content(intent.content)
		if intent.client_msg_id:
			replayed = await self._replay(sender_id, receiver_id, content, intent)
			if replayed is not None:
				return replayed
		await self._enforce_send_limit(sender_id)

		# A first message and the conversation it creates commit together.
		async with self._repo.unit_of_work():
			if intent.conversation_id:
				conversation = await self.registry.get_conversation(intent.conversation_id)
				if conversation is None:
					raise ConversationNotFound()
				if not self.registry.is_participant(conversation, sender_id):
					raise AccessDenied()
				if self.registry.other_participant(conversation, sender_id) != receiver_id:
					raise ReceiverMismatch()
			else:
				conversation = await self.registry.get_or_create(sender_id, receiver_id)
				if intent.product_id:
					await self._link_product(conversation, intent.product_id)

			message = await self.store.send_message(
				sender_id,
				MessageDraft(
					receiver_id=receiver_id,
					conversation_id=conversation.id,
					content=content,
					message_type=intent.message_type,
					order_id=intent.order_id,
					metadata=dict(intent.metadata or {}),
					client_msg_id=intent.client_msg_id,
				),
			)
		return await self._respond(message, conversation)

	async def _replay(
		self,
		sender_id: str,
		receiver_id: str,
		content: str,
		intent: MessageIntent,
	) -> SendMessageResponse | None:
		"""Answer a retried send with the message its ``clientMsgId`` already stored."""
		existing = await self._repo.find_message_by_client_id(sender_id, intent.client_msg_id)
		if existing is None:
			return None
		if (
			existing.receiver_id != receiver_id
			or existing.content != content
			or (intent.conversation_id and existing.conversation_id != intent.conversation_id)
		):
			raise ClientTokenReused()
		conversation = await self.registry.get_conversation(existing.conversation_id)
		if conversation is None:
			raise ConversationNotFound()
		logger.info("message_send_replayed", extra={"message_id": existing.id})
		return await self._respond(existing, conversation)

	async def _respond(self, message: Message, conversation: Conversation) -> SendMessageResponse:
		refreshed = await self.registry.get_conversation(conversation.id) or conversation
		# The conversation counter reflects what the receiver has not read yet.
		refreshed.unread_count = await self.store.get_unread_count(message.receiver_id, refreshed.id)
		return SendMessageResponse(
			message=MessageOut.from_model(message),
			conversation=ConversationOut.from_model(refreshed),
		)

	async def _enforce_send_limit(self, sender_id: str) -> None:
		if not settings.rate_limit_enabled:
			return
		try:
			usage = await rate_limit.hit(
				"message_send",
				sender_id,
				limit=settings.message_send_limit,
				window_seconds=settings.message_send_window_seconds,
			)
		except RedisError:
			logger.warning("message_rate_limit_unavailable", exc_info=True)
			return
		if not usage.allowed:
			logger.info("message_send_rate_limited", extra={"user_id": sender_id, "reset_in": usage.reset_in})
			raise RateLimited()

	async def _link_product(self, conversation: Conversation, product_id: str) -> None:
		try:
			await self.registry.link_to_product(conversation.id, product_id)
		except Exception:
			logger.warning(
				"conversation_product_link_failed",
				exc_info=True,
				extra={"conversation_id": conversation.id, "product_id": product_id},
			)

	async def _user_or_stub(self, user_id: str) -> UserSummary:
		return await self._repo.get_user(user_id) or UserSummary(id=user_id)

	async def _history(
		self,
		viewer_id: str,
		conversation: Conversation,
		*,
		limit: int | None,
		offset: int,
	) -> List[MessageOut]:
		await self.store.mark_conversation_read(viewer_id, conversation.id)
		messages = await self.store.get_messages_by_conversation(conversation.id, limit, offset)
		return [MessageOut.from_model(message) for message in messages]

	async def list_conversations(self, user: AuthenticatedUser) -> List[ConversationSummary]:
		conversations = await self.registry.list_for_user(user.id)
		unread = await self.store.get_unread_counts(user.id)
		summaries: List[ConversationSummary] = []
		for conversation in conversations:
			other_id = conversation.other_participant(user.id)
			if other_id is None:
				continue
			conversation.unread_count = unread.get(conversation.id, 0)
			last = await self.store.get_last_message(conversation.id)
			summaries.append(
				ConversationSummary(
					conversation=ConversationOut.from_model(conversation),
					other_user=UserOut.from_model(await self._user_or_stub(other_id)),
					last_message=MessageOut.from_model(last) if last else None,
					unread_count=conversation.unread_count,
				)
			)
		return summaries

	async def conversation_history(
		self,
		user: AuthenticatedUser,
		conversation_id: str,
		*,
		limit: int | None = None,
		offset: int = 0,
	) -> ConversationHistoryResponse:
		conversation = await self.registry.get_conversation(conversation_id)
		if conversation is None:
			raise ConversationNotFound()
		if not self.registry.is_participant(conversation, user.id):
			raise AccessDenied()
		messages = await self._history(user.id, conversation, limit=limit, offset=offset)
		conversation.unread_count = 0
		return ConversationHistoryResponse(
			conversation=ConversationOut.from_model(conversation),
			messages=messages,
			limit=self.store.page_size(limit),
			offset=max(0, offset),
		)

	async def conversation_with_user(
		self,
		user: AuthenticatedUser,
		other_user_id: str,
		*,
		limit: int | None = None,
		offset: int = 0,
	) -> UserConversationResponse:
		"""Resolve the conversation with another user without creating one.

		A conversation only comes into existence with its first message, so an
		unknown pair answers with ``conversation=None`` and an empty history.
		"""
		other_user_id = str(other_user_id).strip()
		if other_user_id == user.id:
			raise SelfMessageDenied()
		other = await self._repo.get_user(other_user_id)
		if other is None:
			raise UserNotFound()
		conversation = await self.registry.find_conversation(user.id, other_user_id)
		if conversation is None:
			return UserConversationResponse(conversation=None, other_user=UserOut.from_model(other), messages=[])
		if not self.registry.is_participant(conversation, user.id):
			raise AccessDenied()
		messages = await self._history(user.id, conversation, limit=limit, offset=offset)
		return UserConversationResponse(
			conversation=ConversationOut.from_model(conversation),
			other_user=UserOut.from_model(other),
			messages=messages,
		)

	async def conversation_for_product(
		self,
		user: AuthenticatedUser,
		product_id: str,
		*,
		limit: int | None = None,
		offset: int = 0,
	) -> ConversationHistoryResponse:
		conversation = await self.registry.find_by_product(user.id, product_id)
		if conversation is None:
			raise ConversationNotFound("No conversation for this product")
		if not self.registry.is_participant(conversation, user.id):
			raise AccessDenied()
		messages = await self._history(user.id, conversation, limit=limit, offset=offset)
		return ConversationHistoryResponse(
			conversation=ConversationOut.from_model(conversation),
			messages=messages,
			limit=self.store.page_size(limit),
			offset=max(0, offset),
		)

	async def unread_count(self, user: AuthenticatedUser) -> int:
		return await self.store.get_total_unread_count(user.id)


_SERVICE = MessagingService()


def get_service() -> MessagingService:
	return _SERVICE
