"""Messaging domain exports."""

from .connections import ConnectionManager, connections
from .dispatcher import RealtimeDispatcher
from .registry import ConversationRegistry
from .service import MessagingService, get_service
from .store import MessageStore, normalize_content

__all__ = [
	"ConnectionManager",
	"ConversationRegistry",
	"MessageStore",
	"MessagingService",
	"RealtimeDispatcher",
	"connections",
	"get_service",
	"normalize_content",
]
