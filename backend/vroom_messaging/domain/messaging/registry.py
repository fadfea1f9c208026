"""Conversation registry: the single source of truth for 1:1 conversations."""

from __future__ import annotations

import logging
from typing import List, Optional

from vroom_messaging.obs import metrics as obs_metrics

from .exceptions import AccessDenied, ConversationConflict, InvalidParticipants, UserNotFound
from .models import Conversation
from .repo import MessagingRepository

logger = logging.getLogger(__name__)


class ConversationRegistry:
	"""Resolve, create and authorize conversations between two users."""

	def __init__(self, repository: MessagingRepository | None = None) -> None:
		self._repo = repository or MessagingRepository()

	async def find_conversation(self, user_a: str, user_b: str) -> Optional[Conversation]:
		return await self._repo.find_conversation(str(user_a), str(user_b))

	async def create_conversation(self, user_a: str, user_b: str) -> Conversation:
		"""Create the conversation for the pair, or return the row a racing writer created.

		The pair constraint in the store is the only guard against duplicates; a
		conflicting insert is answered by re-reading the existing row.
		"""
		user_a = str(user_a or "").strip()
		user_b = str(user_b or "").strip()
		if not user_a or not user_b or user_a == user_b:
			raise InvalidParticipants()
		try:
			conversation = await self._repo.insert_conversation(user_a, user_b)
		except ConversationConflict:
			obs_metrics.inc_conversation_conflict()
			existing = await self._repo.find_conversation(user_a, user_b)
			if existing is None:
				raise
			logger.info("conversation_create_conflict", extra={"conversation_id": existing.id})
			return existing
		obs_metrics.inc_conversation_created()
		logger.info("conversation_created", extra={"conversation_id": conversation.id})
		return conversation

	async def get_or_create(self, user_a: str, user_b: str) -> Conversation:
		"""Return the pair's conversation, creating it when ``user_b`` exists."""
		existing = await self.find_conversation(user_a, user_b)
		if existing is not None:
			return existing
		if await self._repo.get_user(str(user_b)) is None:
			raise UserNotFound("Receiver not found")
		return await self.create_conversation(user_a, user_b)

	async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
		if not conversation_id:
			return None
		return await self._repo.get_conversation(str(conversation_id))

	@staticmethod
	def is_participant(conversation: Conversation, user_id: str) -> bool:
		return conversation.has_participant(user_id)

	@staticmethod
	def other_participant(conversation: Conversation, user_id: str) -> str:
		other = conversation.other_participant(user_id)
		if other is None:
			raise AccessDenied()
		return other

	async def link_to_product(self, conversation_id: str, product_id: str) -> None:
		await self._repo.link_product(str(conversation_id), str(product_id))

	async def find_by_product(self, user_id: str, product_id: str) -> Optional[Conversation]:
		return await self._repo.find_conversation_by_product(str(user_id), str(product_id))

	async def list_for_user(self, user_id: str) -> List[Conversation]:
		return await self._repo.list_conversations(str(user_id))
