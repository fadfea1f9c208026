from typing import Dict, List, Set, Tuple

import pytest

from vroom_messaging.domain.messaging.connections import ConnectionManager
from vroom_messaging.domain.messaging.dispatcher import INVALID_MESSAGE_DATA, RealtimeDispatcher
from vroom_messaging.domain.messaging.exceptions import (
	ClientTokenReused,
	PersistenceError,
	ReceiverMismatch,
	SelfMessageDenied,
)
from vroom_messaging.domain.messaging.repo import MessagingRepository
from vroom_messaging.domain.messaging.service import MessagingService


class FakeTransport:
	def __init__(self) -> None:
		self.open: Set[str] = set()
		self.sent: List[Tuple[str, str, Dict]] = []

	async def send(self, handle, event, payload):
		self.sent.append((handle, event, payload))

	def is_open(self, handle):
		return handle in self.open

	def frames_for(self, handle: str, event: str | None = None) -> List[Dict]:
		return [payload for h, e, payload in self.sent if h == handle and (event is None or e == event)]


class ExplodingStore:
	async def send_message(self, sender_id, draft):
		raise OSError("connection reset")


@pytest.fixture
def transport():
	return FakeTransport()


@pytest.fixture
def manager():
	return ConnectionManager()


@pytest.fixture
def service():
	return MessagingService(MessagingRepository())


def _connect(transport: FakeTransport, manager: ConnectionManager, user_id: str, sid: str) -> None:
	manager.register(user_id, sid)
	transport.open.add(sid)


@pytest.mark.asyncio
async def test_fan_out_to_connected_receiver_and_sender(transport, manager, service):
	_connect(transport, manager, "u1", "sid-a")
	_connect(transport, manager, "u2", "sid-b")
	dispatcher = RealtimeDispatcher(transport, service=service, manager=manager)

	result = await dispatcher.handle_message("u1", {"receiverId": "u2", "content": "Hi!"}, reply_to="sid-a")

	to_receiver = transport.frames_for("sid-b", "message")
	to_sender = transport.frames_for("sid-a", "message")
	assert len(to_receiver) == 1
	assert len(to_sender) == 1
	assert to_receiver[0]["type"] == "message"
	assert to_receiver[0]["data"]["id"] == to_sender[0]["data"]["id"] == result.message.id
	assert to_receiver[0]["conversation"]["id"] == result.conversation.id
	assert transport.frames_for("sid-a", "error") == []


@pytest.mark.asyncio
async def test_offline_receiver_still_persists_and_echoes(transport, manager, service):
	_connect(transport, manager, "u1", "sid-a")
	dispatcher = RealtimeDispatcher(transport, service=service, manager=manager)

	result = await dispatcher.handle_message("u1", {"receiverId": "u2", "content": "Are you there?"})

	assert result is not None
	assert len(transport.sent) == 1
	assert transport.frames_for("sid-a", "message")[0]["data"]["content"] == "Are you there?"
	history = await service.store.get_messages_by_conversation(result.conversation.id)
	assert [m.id for m in history] == [result.message.id]


@pytest.mark.asyncio
async def test_closed_receiver_handle_is_skipped(transport, manager, service):
	_connect(transport, manager, "u1", "sid-a")
	manager.register("u2", "sid-stale")
	dispatcher = RealtimeDispatcher(transport, service=service, manager=manager)

	await dispatcher.handle_message("u1", {"receiverId": "u2", "content": "ping"}, reply_to="sid-a")

	assert transport.frames_for("sid-stale") == []
	assert len(transport.frames_for("sid-a", "message")) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
	"payload",
	[
		"not-an-object",
		["receiverId", "u2"],
		{"receiverId": "u2", "content": "x", "messageType": "shout"},
		{"receiverId": "u2", "content": "x", "metadata": "nope"},
	],
)
async def test_malformed_frames_get_error_frame(transport, manager, service, payload):
	_connect(transport, manager, "u1", "sid-a")
	dispatcher = RealtimeDispatcher(transport, service=service, manager=manager)

	result = await dispatcher.handle_message("u1", payload, reply_to="sid-a")

	assert result is None
	assert transport.sent == [("sid-a", "error", {"type": "error", "message": INVALID_MESSAGE_DATA})]


@pytest.mark.asyncio
async def test_missing_fields_reported_to_sender_only(transport, manager, service):
	_connect(transport, manager, "u1", "sid-a")
	_connect(transport, manager, "u2", "sid-b")
	dispatcher = RealtimeDispatcher(transport, service=service, manager=manager)

	await dispatcher.handle_message("u1", {"receiverId": "u2"}, reply_to="sid-a")

	errors = transport.frames_for("sid-a", "error")
	assert len(errors) == 1
	assert "required" in errors[0]["message"]
	assert transport.frames_for("sid-b") == []


@pytest.mark.asyncio
async def test_receiver_mismatch_and_self_message(transport, manager, service, messaging_state):
	_connect(transport, manager, "u1", "sid-a")
	dispatcher = RealtimeDispatcher(transport, service=service, manager=manager)
	first = await dispatcher.handle_message("u1", {"receiverId": "u2", "content": "hello"}, reply_to="sid-a")
	transport.sent.clear()

	await dispatcher.handle_message(
		"u1",
		{"receiverId": "u3", "content": "wrong person", "conversationId": first.conversation.id},
		reply_to="sid-a",
	)
	await dispatcher.handle_message(
		"u1",
		{"receiverId": "u1", "content": "note to self", "conversationId": first.conversation.id},
		reply_to="sid-a",
	)

	messages = [frame["message"] for frame in transport.frames_for("sid-a", "error")]
	assert messages == [ReceiverMismatch.default_message, SelfMessageDenied.default_message]
	history = await service.store.get_messages_by_conversation(first.conversation.id)
	assert len(history) == 1
	assert len(messaging_state.conversations) == 1


@pytest.mark.asyncio
async def test_persistence_failure_reports_generic_error(transport, manager, messaging_state):
	_connect(transport, manager, "u1", "sid-a")
	service = MessagingService(MessagingRepository(), store=ExplodingStore())
	dispatcher = RealtimeDispatcher(transport, service=service, manager=manager)

	result = await dispatcher.handle_message("u1", {"receiverId": "u2", "content": "boom"}, reply_to="sid-a")

	assert result is None
	assert transport.sent == [("sid-a", "error", {"type": "error", "message": PersistenceError.default_message})]
	assert messaging_state.conversations == {}


@pytest.mark.asyncio
async def test_typing_is_relayed_to_target(transport, manager, service):
	_connect(transport, manager, "u1", "sid-a")
	_connect(transport, manager, "u2", "sid-b")
	dispatcher = RealtimeDispatcher(transport, service=service, manager=manager)

	assert await dispatcher.handle_typing("u1", {"targetUserId": "u2", "isTyping": True}) is True
	assert transport.frames_for("sid-b", "typing") == [{"type": "typing", "userId": "u1", "isTyping": True}]

	assert await dispatcher.handle_typing("u1", {"targetUserId": "u1"}) is False
	assert await dispatcher.handle_typing("u1", {"targetUserId": "u3"}) is False
	assert await dispatcher.handle_typing("u1", {}) is False
	assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_reused_client_token_reaches_nobody_else(transport, manager, service, messaging_state):
	_connect(transport, manager, "u1", "sid-a")
	_connect(transport, manager, "u2", "sid-b")
	_connect(transport, manager, "u3", "sid-c")
	dispatcher = RealtimeDispatcher(transport, service=service, manager=manager)
	await dispatcher.handle_message("u1", {"receiverId": "u2", "content": "hi", "clientMsgId": "t-1"}, reply_to="sid-a")
	transport.sent.clear()

	result = await dispatcher.handle_message(
		"u1",
		{"receiverId": "u3", "content": "hi", "clientMsgId": "t-1"},
		reply_to="sid-a",
	)

	assert result is None
	assert transport.sent == [("sid-a", "error", {"type": "error", "message": ClientTokenReused.default_message})]
	assert await service.registry.find_conversation("u1", "u3") is None
	assert len(messaging_state.conversations) == 1


@pytest.mark.asyncio
async def test_retried_client_token_echoes_original_message(transport, manager, service):
	_connect(transport, manager, "u1", "sid-a")
	_connect(transport, manager, "u2", "sid-b")
	dispatcher = RealtimeDispatcher(transport, service=service, manager=manager)
	frame = {"receiverId": "u2", "content": "hi", "clientMsgId": "t-1"}

	first = await dispatcher.handle_message("u1", frame, reply_to="sid-a")
	retry = await dispatcher.handle_message("u1", frame, reply_to="sid-a")

	assert retry.message.id == first.message.id
	assert {f["data"]["id"] for f in transport.frames_for("sid-b", "message")} == {first.message.id}
	history = await service.store.get_messages_by_conversation(first.conversation.id)
	assert len(history) == 1
