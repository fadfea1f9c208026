"""Message store: durable history and read-state for conversations."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from vroom_messaging.obs import metrics as obs_metrics
from vroom_messaging.settings import settings

from .exceptions import ClientTokenReused, ValidationError
from .models import Message, MessageDraft, MessageType
from .repo import MessagingRepository

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200


def normalize_content(content: object) -> str:
	"""Trim message content and enforce the 1..max length window."""
	if not isinstance(content, str):
		raise ValidationError("Message content must be text")
	text = content.strip()
	if not text:
		raise ValidationError("Message content cannot be empty")
	if len(text) > settings.message_max_length:
		raise ValidationError(f"Message content cannot exceed {settings.message_max_length} characters")
	return text


def _check_same_send(message: Message, draft: MessageDraft) -> None:
	if (
		message.conversation_id != draft.conversation_id
		or message.receiver_id != draft.receiver_id
		or message.content != draft.content
	):
		raise ClientTokenReused()


class MessageStore:
	def __init__(self, repository: MessagingRepository | None = None) -> None:
		self._repo = repository or MessagingRepository()

	async def send_message(self, sender_id: str, draft: MessageDraft) -> Message:
		"""Persist a message; participant checks are the caller's job."""
		draft.content = normalize_content(draft.content)
		try:
			draft.message_type = MessageType(draft.message_type)
		except ValueError:
			raise ValidationError("Unknown message type") from None
		if draft.client_msg_id:
			existing = await self._repo.find_message_by_client_id(sender_id, draft.client_msg_id)
			if existing is not None:
				_check_same_send(existing, draft)
				logger.info("message_send_deduplicated", extra={"message_id": existing.id})
				return existing
		message = await self._repo.insert_message(sender_id, draft, datetime.now(timezone.utc))
		if draft.client_msg_id:
			# A concurrent send with the same token may have won the insert.
			_check_same_send(message, draft)
		logger.info(
			"message_persisted",
			extra={"message_id": message.id, "conversation_id": message.conversation_id},
		)
		return message

	async def get_messages_by_conversation(
		self,
		conversation_id: str,
		limit: int | None = None,
		offset: int = 0,
	) -> List[Message]:
		bounded_offset = max(0, int(offset))
		return await self._repo.list_messages(conversation_id, limit=self.page_size(limit), offset=bounded_offset)

	@staticmethod
	def page_size(limit: int | None) -> int:
		page_size = settings.message_page_size if limit is None else limit
		return max(1, min(int(page_size), MAX_PAGE_SIZE))

	async def mark_conversation_read(self, user_id: str, conversation_id: str) -> int:
		changed = await self._repo.mark_read(user_id, conversation_id)
		obs_metrics.inc_messages_read(changed)
		return changed

	async def get_unread_count(self, user_id: str, conversation_id: str) -> int:
		return await self._repo.count_unread(user_id, conversation_id)

	async def get_total_unread_count(self, user_id: str) -> int:
		counts = await self._repo.unread_counts(user_id)
		return sum(counts.values())

	async def get_unread_counts(self, user_id: str) -> dict[str, int]:
		return await self._repo.unread_counts(user_id)

	async def get_last_message(self, conversation_id: str) -> Optional[Message]:
		return await self._repo.last_message(conversation_id)
