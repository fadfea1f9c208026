"""Domain models for conversations and messages."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class MessageType(str, Enum):
	DIRECT_MESSAGE = "direct_message"
	ORDER_NOTIFICATION = "order_notification"
	ORDER_CONFIRMATION = "order_confirmation"
	SYSTEM = "system"


def canonical_pair(user_one: str, user_two: str) -> Tuple[str, str]:
	"""Return the pair in the slot order new conversation rows are written with."""
	ordered = tuple(sorted((str(user_one), str(user_two))))
	return ordered[0], ordered[1]


@dataclass(slots=True)
class UserSummary:
	id: str
	handle: Optional[str] = None
	first_name: Optional[str] = None
	last_name: Optional[str] = None
	profile_image_url: Optional[str] = None

	@classmethod
	def from_record(cls, row) -> "UserSummary":
		return cls(
			id=str(row["id"]),
			handle=row.get("handle"),
			first_name=row.get("first_name"),
			last_name=row.get("last_name"),
			profile_image_url=row.get("profile_image_url"),
		)


@dataclass(slots=True)
class Conversation:
	id: str
	user1_id: str
	user2_id: str
	created_at: datetime
	updated_at: datetime
	last_message_id: Optional[str] = None
	# Filled per viewer by the read side; never persisted.
	unread_count: int = 0

	def participants(self) -> Tuple[str, str]:
		return (self.user1_id, self.user2_id)

	def has_participant(self, user_id: str) -> bool:
		return str(user_id) in (self.user1_id, self.user2_id)

	def other_participant(self, user_id: str) -> Optional[str]:
		if str(user_id) == self.user1_id:
			return self.user2_id
		if str(user_id) == self.user2_id:
			return self.user1_id
		return None

	@classmethod
	def from_record(cls, row) -> "Conversation":
		return cls(
			id=str(row["id"]),
			user1_id=str(row["user1_id"]),
			user2_id=str(row["user2_id"]),
			last_message_id=str(row["last_message_id"]) if row["last_message_id"] else None,
			created_at=row["created_at"],
			updated_at=row["updated_at"],
		)


@dataclass(slots=True)
class MessageDraft:
	"""A validated send request, ready for the message store."""

	receiver_id: str
	conversation_id: str
	content: str
	message_type: MessageType = MessageType.DIRECT_MESSAGE
	order_id: Optional[str] = None
	metadata: Dict[str, Any] = field(default_factory=dict)
	client_msg_id: Optional[str] = None
	is_private: bool = True


@dataclass(slots=True)
class Message:
	id: str
	sender_id: str
	receiver_id: str
	conversation_id: str
	content: str
	message_type: MessageType
	created_at: datetime
	order_id: Optional[str] = None
	is_read: bool = False
	is_private: bool = True
	metadata: Dict[str, Any] = field(default_factory=dict)
	client_msg_id: Optional[str] = None

	@classmethod
	def from_record(cls, row) -> "Message":
		metadata = row["metadata"]
		if isinstance(metadata, str):
			metadata = json.loads(metadata) if metadata else {}
		return cls(
			id=str(row["id"]),
			sender_id=str(row["sender_id"]),
			receiver_id=str(row["receiver_id"]),
			conversation_id=str(row["conversation_id"]),
			order_id=str(row["order_id"]) if row["order_id"] else None,
			content=row["content"],
			message_type=MessageType(row["message_type"]),
			is_read=bool(row["is_read"]),
			is_private=bool(row["is_private"]),
			metadata=dict(metadata or {}),
			client_msg_id=row["client_msg_id"],
			created_at=row["created_at"],
		)
