"""Pydantic schemas for the messaging REST API and real-time frames."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import Conversation, Message, MessageType, UserSummary


class CamelModel(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

	def to_payload(self) -> dict:
		return self.model_dump(mode="json", by_alias=True)


class MessageIntent(CamelModel):
	"""Send request shared by ``POST /api/messages`` and the live channel.

	Presence of ``receiverId``/``content`` is checked by the send pipeline so
	both surfaces report the same error.
	"""

	receiver_id: Optional[str] = None
	content: Optional[str] = None
	conversation_id: Optional[str] = None
	product_id: Optional[str] = None
	order_id: Optional[str] = None
	message_type: MessageType = MessageType.DIRECT_MESSAGE
	metadata: Optional[Dict[str, Any]] = None
	client_msg_id: Optional[str] = Field(default=None, max_length=64, description="Client-generated dedup token")


class StartConversationRequest(CamelModel):
	receiver_id: Optional[str] = None
	content: Optional[str] = None
	product_id: Optional[str] = None
	client_msg_id: Optional[str] = Field(default=None, max_length=64)

	def to_intent(self) -> MessageIntent:
		return MessageIntent(
			receiver_id=self.receiver_id,
			content=self.content,
			product_id=self.product_id,
			client_msg_id=self.client_msg_id,
		)


class TypingIntent(CamelModel):
	target_user_id: Optional[str] = None
	is_typing: bool = True


class UserOut(CamelModel):
	id: str
	handle: Optional[str] = None
	first_name: Optional[str] = None
	last_name: Optional[str] = None
	profile_image_url: Optional[str] = None

	@classmethod
	def from_model(cls, user: UserSummary) -> "UserOut":
		return cls(
			id=user.id,
			handle=user.handle,
			first_name=user.first_name,
			last_name=user.last_name,
			profile_image_url=user.profile_image_url,
		)


class MessageOut(CamelModel):
	id: str
	sender_id: str
	receiver_id: str
	conversation_id: str
	order_id: Optional[str] = None
	content: str
	message_type: MessageType
	is_read: bool
	is_private: bool
	metadata: Dict[str, Any] = Field(default_factory=dict)
	client_msg_id: Optional[str] = None
	created_at: datetime

	@classmethod
	def from_model(cls, message: Message) -> "MessageOut":
		return cls(
			id=message.id,
			sender_id=message.sender_id,
			receiver_id=message.receiver_id,
			conversation_id=message.conversation_id,
			order_id=message.order_id,
			content=message.content,
			message_type=message.message_type,
			is_read=message.is_read,
			is_private=message.is_private,
			metadata=dict(message.metadata),
			client_msg_id=message.client_msg_id,
			created_at=message.created_at,
		)


class ConversationOut(CamelModel):
	id: str
	user1_id: str
	user2_id: str
	last_message_id: Optional[str] = None
	unread_count: int = 0
	created_at: datetime
	updated_at: datetime

	@classmethod
	def from_model(cls, conversation: Conversation) -> "ConversationOut":
		return cls(
			id=conversation.id,
			user1_id=conversation.user1_id,
			user2_id=conversation.user2_id,
			last_message_id=conversation.last_message_id,
			unread_count=conversation.unread_count,
			created_at=conversation.created_at,
			updated_at=conversation.updated_at,
		)


class SendMessageResponse(CamelModel):
	message: MessageOut
	conversation: ConversationOut


class ConversationSummary(CamelModel):
	conversation: ConversationOut
	other_user: UserOut
	last_message: Optional[MessageOut] = None
	unread_count: int = 0


class ConversationHistoryResponse(CamelModel):
	conversation: ConversationOut
	messages: List[MessageOut]
	limit: int
	offset: int


class UserConversationResponse(CamelModel):
	conversation: Optional[ConversationOut] = None
	other_user: UserOut
	messages: List[MessageOut]


class UnreadCountResponse(CamelModel):
	count: int


class MessageFrame(CamelModel):
	type: Literal["message"] = "message"
	data: MessageOut
	conversation: ConversationOut


class ErrorFrame(CamelModel):
	type: Literal["error"] = "error"
	message: str


class TypingFrame(CamelModel):
	type: Literal["typing"] = "typing"
	user_id: str
	is_typing: bool
