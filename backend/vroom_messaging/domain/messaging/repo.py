"""Persistence for conversations and messages.

``MessagingRepository`` talks to Postgres through the shared asyncpg pool and
falls back to a process-local store when no pool can be obtained (tests, local
tooling without a database).
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import replace
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, List, Optional

import asyncpg
import ulid

from vroom_messaging.infra.postgres import get_pool

from .exceptions import ConversationConflict
from .models import Conversation, Message, MessageDraft, UserSummary, canonical_pair

logger = logging.getLogger(__name__)

# Connection holding the open unit-of-work transaction for the current task.
_BOUND_CONN: ContextVar[Optional[asyncpg.Connection]] = ContextVar("messaging_bound_conn", default=None)
# Undo steps recorded by the in-memory store while a unit of work is open.
_MEMORY_JOURNAL: ContextVar[Optional[List[Callable[[], None]]]] = ContextVar("messaging_memory_journal", default=None)

_CONVERSATION_COLUMNS = "id, user1_id, user2_id, last_message_id, created_at, updated_at"
_MESSAGE_COLUMNS = (
	"id, sender_id, receiver_id, conversation_id, order_id, content, message_type, "
	"is_read, is_private, metadata, client_msg_id, created_at"
)


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def _rowcount(status: str) -> int:
	# asyncpg returns the command tag, e.g. "UPDATE 3"
	try:
		return int(status.rsplit(" ", 1)[-1])
	except (ValueError, AttributeError):
		return 0


@asynccontextmanager
async def _connection(pool: asyncpg.Pool) -> AsyncIterator[asyncpg.Connection]:
	bound = _BOUND_CONN.get()
	if bound is not None:
		yield bound
		return
	async with pool.acquire() as conn:
		yield conn


def _record_undo(undo: Callable[[], None]) -> None:
	journal = _MEMORY_JOURNAL.get()
	if journal is not None:
		journal.append(undo)


class _InMemoryStore:
	"""Fallback store used in tests when Postgres is unavailable."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self.users: Dict[str, UserSummary] = {}
		self.conversations: Dict[str, Conversation] = {}
		self.pairs: Dict[tuple[str, str], str] = {}
		self.messages: Dict[str, List[Message]] = {}
		self.client_index: Dict[tuple[str, str], Message] = {}
		self.product_links: Dict[str, Dict[str, datetime]] = {}

	def clear(self) -> None:
		self._lock = asyncio.Lock()
		self.users.clear()
		self.conversations.clear()
		self.pairs.clear()
		self.messages.clear()
		self.client_index.clear()
		self.product_links.clear()

	def add_user(self, user: UserSummary) -> None:
		self.users[user.id] = user

	@asynccontextmanager
	async def journal(self) -> AsyncIterator[None]:
		"""Undo the writes made inside the block if it raises."""
		if _MEMORY_JOURNAL.get() is not None:
			yield
			return
		steps: List[Callable[[], None]] = []
		token = _MEMORY_JOURNAL.set(steps)
		try:
			yield
		except BaseException:
			async with self._lock:
				for undo in reversed(steps):
					undo()
			raise
		finally:
			_MEMORY_JOURNAL.reset(token)

	async def get_user(self, user_id: str) -> Optional[UserSummary]:
		async with self._lock:
			return self.users.get(str(user_id))

	async def find_conversation(self, user_a: str, user_b: str) -> Optional[Conversation]:
		async with self._lock:
			for key in ((user_a, user_b), (user_b, user_a)):
				conversation_id = self.pairs.get(key)
				if conversation_id:
					return replace(self.conversations[conversation_id])
			return None

	async def insert_conversation(self, user1_id: str, user2_id: str) -> Conversation:
		async with self._lock:
			if (user1_id, user2_id) in self.pairs or (user2_id, user1_id) in self.pairs:
				raise ConversationConflict(f"{user1_id}:{user2_id}")
			now = _utcnow()
			conversation = Conversation(
				id=str(ulid.new()),
				user1_id=user1_id,
				user2_id=user2_id,
				created_at=now,
				updated_at=now,
			)
			self.conversations[conversation.id] = conversation
			self.pairs[(user1_id, user2_id)] = conversation.id
			self.messages[conversation.id] = []

			def _drop() -> None:
				self.conversations.pop(conversation.id, None)
				self.pairs.pop((user1_id, user2_id), None)
				self.messages.pop(conversation.id, None)
				for links in self.product_links.values():
					links.pop(conversation.id, None)

			_record_undo(_drop)
			return replace(conversation)

	async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
		async with self._lock:
			conversation = self.conversations.get(str(conversation_id))
			return replace(conversation) if conversation else None

	async def list_conversations(self, user_id: str) -> List[Conversation]:
		async with self._lock:
			owned = [c for c in self.conversations.values() if c.has_participant(user_id)]
			owned.sort(key=lambda c: (c.updated_at, c.id), reverse=True)
			return [replace(c) for c in owned]

	async def link_product(self, conversation_id: str, product_id: str) -> None:
		async with self._lock:
			if conversation_id not in self.conversations:
				raise KeyError(conversation_id)
			links = self.product_links.setdefault(product_id, {})
			if conversation_id not in links:
				links[conversation_id] = _utcnow()
				_record_undo(lambda: links.pop(conversation_id, None))

	async def find_conversation_by_product(self, user_id: str, product_id: str) -> Optional[Conversation]:
		async with self._lock:
			links = self.product_links.get(product_id, {})
			candidates = [
				self.conversations[cid]
				for cid in links
				if self.conversations[cid].has_participant(user_id)
			]
			if not candidates:
				return None
			return replace(max(candidates, key=lambda c: (c.updated_at, c.id)))

	async def find_message_by_client_id(self, sender_id: str, client_msg_id: str) -> Optional[Message]:
		async with self._lock:
			message = self.client_index.get((sender_id, client_msg_id))
			return replace(message) if message else None

	async def insert_message(self, sender_id: str, draft: MessageDraft, created_at: datetime) -> Message:
		async with self._lock:
			if draft.client_msg_id:
				existing = self.client_index.get((sender_id, draft.client_msg_id))
				if existing is not None:
					return replace(existing)
			conversation = self.conversations.get(draft.conversation_id)
			if conversation is None:
				raise KeyError(draft.conversation_id)
			message = Message(
				id=str(ulid.new()),
				sender_id=sender_id,
				receiver_id=draft.receiver_id,
				conversation_id=draft.conversation_id,
				order_id=draft.order_id,
				content=draft.content,
				message_type=draft.message_type,
				is_private=draft.is_private,
				metadata=dict(draft.metadata),
				client_msg_id=draft.client_msg_id,
				created_at=created_at,
			)
			bucket = self.messages.setdefault(draft.conversation_id, [])
			bucket.append(message)
			if draft.client_msg_id:
				self.client_index[(sender_id, draft.client_msg_id)] = message
			previous = (conversation.last_message_id, conversation.updated_at)
			conversation.last_message_id = message.id
			conversation.updated_at = created_at

			def _drop() -> None:
				bucket[:] = [m for m in bucket if m is not message]
				if draft.client_msg_id and self.client_index.get((sender_id, draft.client_msg_id)) is message:
					del self.client_index[(sender_id, draft.client_msg_id)]
				conversation.last_message_id, conversation.updated_at = previous

			_record_undo(_drop)
			return replace(message)

	async def list_messages(self, conversation_id: str, *, limit: int, offset: int) -> List[Message]:
		async with self._lock:
			# Stable sort keeps insertion order for identical timestamps.
			ordered = sorted(self.messages.get(conversation_id, []), key=lambda m: m.created_at)
			return [replace(m) for m in ordered[offset : offset + limit]]

	async def mark_read(self, user_id: str, conversation_id: str) -> int:
		async with self._lock:
			changed = 0
			for message in self.messages.get(conversation_id, []):
				if message.receiver_id == user_id and not message.is_read:
					message.is_read = True
					changed += 1
			return changed

	async def count_unread(self, user_id: str, conversation_id: str) -> int:
		async with self._lock:
			return sum(
				1
				for m in self.messages.get(conversation_id, [])
				if m.receiver_id == user_id and not m.is_read
			)

	async def unread_counts(self, user_id: str) -> Dict[str, int]:
		async with self._lock:
			counts: Dict[str, int] = {}
			for conversation_id, messages in self.messages.items():
				unread = sum(1 for m in messages if m.receiver_id == user_id and not m.is_read)
				if unread:
					counts[conversation_id] = unread
			return counts

	async def last_message(self, conversation_id: str) -> Optional[Message]:
		async with self._lock:
			messages = self.messages.get(conversation_id, [])
			if not messages:
				return None
			return replace(max(enumerate(messages), key=lambda item: (item[1].created_at, item[0]))[1])


_MEMORY_STORE = _InMemoryStore()


def memory_store() -> _InMemoryStore:
	return _MEMORY_STORE


class MessagingRepository:
	"""Repository backed by asyncpg with an in-memory fallback."""

	def __init__(self) -> None:
		self._pool_checked = False
		self._pool: Optional[asyncpg.Pool] = None

	async def _pool_or_none(self) -> Optional[asyncpg.Pool]:
		if self._pool_checked:
			return self._pool
		self._pool_checked = True
		try:
			pool = await get_pool()
		except AssertionError:
			pool = None
		except (OSError, asyncpg.PostgresError):
			logger.warning("postgres_unavailable_using_memory_store", exc_info=True)
			pool = None
		self._pool = pool
		return pool

	@asynccontextmanager
	async def unit_of_work(self) -> AsyncIterator[None]:
		"""Run every repository call inside the block in one transaction.

		Calls from any repository instance in the same task share the bound
		connection. Nested blocks join the outer one.
		"""
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY_STORE.journal():
				yield
			return
		if _BOUND_CONN.get() is not None:
			yield
			return
		async with pool.acquire() as conn:
			async with conn.transaction():
				token = _BOUND_CONN.set(conn)
				try:
					yield
				finally:
					_BOUND_CONN.reset(token)

	async def get_user(self, user_id: str) -> Optional[UserSummary]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.get_user(user_id)
		async with _connection(pool) as conn:
			row = await conn.fetchrow(
				"SELECT id, handle, first_name, last_name, profile_image_url FROM users WHERE id = $1",
				str(user_id),
			)
			return UserSummary.from_record(row) if row else None

	async def find_conversation(self, user_a: str, user_b: str) -> Optional[Conversation]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.find_conversation(user_a, user_b)
		async with _connection(pool) as conn:
			row = await conn.fetchrow(
				f"""
				SELECT {_CONVERSATION_COLUMNS}
				FROM conversations
				WHERE (user1_id = $1 AND user2_id = $2) OR (user1_id = $2 AND user2_id = $1)
				LIMIT 1
				""",
				user_a,
				user_b,
			)
			return Conversation.from_record(row) if row else None

	async def insert_conversation(self, user_a: str, user_b: str) -> Conversation:
		"""Insert a conversation for the pair; raise ConversationConflict if one exists."""
		user1_id, user2_id = canonical_pair(user_a, user_b)
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.insert_conversation(user1_id, user2_id)
		async with _connection(pool) as conn:
			row = await conn.fetchrow(
				f"""
				INSERT INTO conversations (id, user1_id, user2_id)
				VALUES ($1, $2, $3)
				ON CONFLICT DO NOTHING
				RETURNING {_CONVERSATION_COLUMNS}
				""",
				str(ulid.new()),
				user1_id,
				user2_id,
			)
			if row is None:
				raise ConversationConflict(f"{user1_id}:{user2_id}")
			return Conversation.from_record(row)

	async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.get_conversation(conversation_id)
		async with _connection(pool) as conn:
			row = await conn.fetchrow(
				f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = $1",
				str(conversation_id),
			)
			return Conversation.from_record(row) if row else None

	async def list_conversations(self, user_id: str) -> List[Conversation]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.list_conversations(user_id)
		async with _connection(pool) as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_CONVERSATION_COLUMNS}
				FROM conversations
				WHERE user1_id = $1 OR user2_id = $1
				ORDER BY updated_at DESC, id DESC
				""",
				user_id,
			)
			return [Conversation.from_record(row) for row in rows]

	async def link_product(self, conversation_id: str, product_id: str) -> None:
		pool = await self._pool_or_none()
		if pool is None:
			await _MEMORY_STORE.link_product(conversation_id, product_id)
			return
		async with _connection(pool) as conn:
			# Savepoint: a failed link must not abort an enclosing unit of work.
			async with conn.transaction():
				await conn.execute(
					"""
					INSERT INTO conversation_products (conversation_id, product_id)
					VALUES ($1, $2)
					ON CONFLICT (conversation_id, product_id) DO NOTHING
					""",
					conversation_id,
					product_id,
				)

	async def find_conversation_by_product(self, user_id: str, product_id: str) -> Optional[Conversation]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.find_conversation_by_product(user_id, product_id)
		async with _connection(pool) as conn:
			row = await conn.fetchrow(
				"""
				SELECT c.id, c.user1_id, c.user2_id, c.last_message_id, c.created_at, c.updated_at
				FROM conversations c
				JOIN conversation_products cp ON cp.conversation_id = c.id
				WHERE cp.product_id = $1 AND (c.user1_id = $2 OR c.user2_id = $2)
				ORDER BY c.updated_at DESC, c.id DESC
				LIMIT 1
				""",
				product_id,
				user_id,
			)
			return Conversation.from_record(row) if row else None

	async def find_message_by_client_id(self, sender_id: str, client_msg_id: str) -> Optional[Message]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.find_message_by_client_id(sender_id, client_msg_id)
		async with _connection(pool) as conn:
			row = await conn.fetchrow(
				f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE sender_id = $1 AND client_msg_id = $2",
				sender_id,
				client_msg_id,
			)
			return Message.from_record(row) if row else None

	async def insert_message(self, sender_id: str, draft: MessageDraft, created_at: datetime) -> Message:
		"""Insert a message and bump the conversation's last-message pointer.

		A concurrent insert with the same (sender, client_msg_id) returns the row
		that won instead of a duplicate.
		"""
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.insert_message(sender_id, draft, created_at)
		async with _connection(pool) as conn:
			async with conn.transaction():
				row = await conn.fetchrow(
					f"""
					INSERT INTO messages (
						id,
						sender_id,
						receiver_id,
						conversation_id,
						order_id,
						content,
						message_type,
						is_private,
						metadata,
						client_msg_id,
						created_at
					) VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10,$11)
					ON CONFLICT (sender_id, client_msg_id) WHERE client_msg_id IS NOT NULL DO NOTHING
					RETURNING {_MESSAGE_COLUMNS}
					""",
					str(ulid.new()),
					sender_id,
					draft.receiver_id,
					draft.conversation_id,
					draft.order_id,
					draft.content,
					draft.message_type.value,
					draft.is_private,
					json.dumps(draft.metadata),
					draft.client_msg_id,
					created_at,
				)
				if row is None:
					existing = await conn.fetchrow(
						f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE sender_id = $1 AND client_msg_id = $2",
						sender_id,
						draft.client_msg_id,
					)
					return Message.from_record(existing)
				await conn.execute(
					"""
					UPDATE conversations
					SET last_message_id = $2, updated_at = $3
					WHERE id = $1
					""",
					draft.conversation_id,
					row["id"],
					created_at,
				)
				return Message.from_record(row)

	async def list_messages(self, conversation_id: str, *, limit: int, offset: int) -> List[Message]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.list_messages(conversation_id, limit=limit, offset=offset)
		async with _connection(pool) as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_MESSAGE_COLUMNS}
				FROM messages
				WHERE conversation_id = $1
				ORDER BY created_at ASC, id ASC
				LIMIT $2 OFFSET $3
				""",
				conversation_id,
				limit,
				offset,
			)
			return [Message.from_record(row) for row in rows]

	async def mark_read(self, user_id: str, conversation_id: str) -> int:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.mark_read(user_id, conversation_id)
		async with _connection(pool) as conn:
			status = await conn.execute(
				"""
				UPDATE messages
				SET is_read = TRUE
				WHERE conversation_id = $1 AND receiver_id = $2 AND is_read = FALSE
				""",
				conversation_id,
				user_id,
			)
			return _rowcount(status)

	async def count_unread(self, user_id: str, conversation_id: str) -> int:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.count_unread(user_id, conversation_id)
		async with _connection(pool) as conn:
			value = await conn.fetchval(
				"""
				SELECT COUNT(*)
				FROM messages
				WHERE conversation_id = $1 AND receiver_id = $2 AND is_read = FALSE
				""",
				conversation_id,
				user_id,
			)
			return int(value or 0)

	async def unread_counts(self, user_id: str) -> Dict[str, int]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.unread_counts(user_id)
		async with _connection(pool) as conn:
			rows = await conn.fetch(
				"""
				SELECT conversation_id, COUNT(*) AS unread
				FROM messages
				WHERE receiver_id = $1 AND is_read = FALSE
				GROUP BY conversation_id
				""",
				user_id,
			)
			return {str(row["conversation_id"]): int(row["unread"]) for row in rows}

	async def last_message(self, conversation_id: str) -> Optional[Message]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.last_message(conversation_id)
		async with _connection(pool) as conn:
			row = await conn.fetchrow(
				f"""
				SELECT {_MESSAGE_COLUMNS}
				FROM messages
				WHERE conversation_id = $1
				ORDER BY created_at DESC, id DESC
				LIMIT 1
				""",
				conversation_id,
			)
			return Message.from_record(row) if row else None
