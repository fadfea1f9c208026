"""Domain-level exceptions for conversations and messages."""

from __future__ import annotations


class MessagingError(Exception):
	"""Base class for messaging errors surfaced to callers.

	``reason`` is a stable machine code, ``message`` is shown to users and
	``status_code`` is the HTTP status the REST surface answers with.
	"""

	reason: str = "messaging_error"
	status_code: int = 400
	default_message: str = "Message could not be sent"

	def __init__(self, message: str | None = None, *, reason: str | None = None) -> None:
		self.message = message or self.default_message
		super().__init__(self.message)
		if reason:
			self.reason = reason


class ValidationError(MessagingError):
	reason = "validation_error"
	default_message = "Invalid message data"


class MissingFields(ValidationError):
	reason = "missing_fields"
	default_message = "receiverId and content are required"


class InvalidParticipants(ValidationError):
	reason = "invalid_participants"
	default_message = "A conversation needs two different users"


class ClientTokenReused(ValidationError):
	"""A ``clientMsgId`` already names a different message from the same sender."""

	reason = "client_msg_id_reused"
	default_message = "clientMsgId already used"


class SelfMessageDenied(MessagingError):
	reason = "self_message"
	default_message = "You cannot message yourself"


class AccessDenied(MessagingError):
	reason = "access_denied"
	status_code = 403
	default_message = "You are not a participant in this conversation"


class ReceiverMismatch(AccessDenied):
	reason = "receiver_mismatch"
	default_message = "Receiver is not the other participant of this conversation"


class NotFound(MessagingError):
	reason = "not_found"
	status_code = 404
	default_message = "Not found"


class ConversationNotFound(NotFound):
	reason = "conversation_not_found"
	default_message = "Conversation not found"


class UserNotFound(NotFound):
	reason = "user_not_found"
	default_message = "User not found"


class RateLimited(MessagingError):
	reason = "rate_limited"
	status_code = 429
	default_message = "You are sending messages too quickly"


class PersistenceError(MessagingError):
	reason = "persistence_error"
	status_code = 500
	default_message = "Failed to send message"


class ConversationConflict(Exception):
	"""Raised by repositories when a conversation insert hits the pair constraint."""


class MissingIdentity(ValueError):
	"""Raised when a live connection arrives without a user id."""
