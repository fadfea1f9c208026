import pytest

from vroom_messaging.domain.messaging.connections import ConnectionManager
from vroom_messaging.domain.messaging.exceptions import MissingIdentity


def test_register_and_lookup():
	manager: ConnectionManager[str] = ConnectionManager()
	assert manager.register("u1", "sid-1") is None
	assert manager.lookup("u1") == "sid-1"
	assert manager.is_connected("u1")
	assert not manager.is_connected("u2")
	assert len(manager) == 1


@pytest.mark.parametrize("user_id", [None, "", "   "])
def test_register_requires_identity(user_id):
	manager: ConnectionManager[str] = ConnectionManager()
	with pytest.raises(MissingIdentity):
		manager.register(user_id, "sid-1")
	assert len(manager) == 0


def test_newer_connection_replaces_older():
	manager: ConnectionManager[str] = ConnectionManager()
	manager.register("u1", "sid-old")

	displaced = manager.register("u1", "sid-new")

	assert displaced == "sid-old"
	assert manager.lookup("u1") == "sid-new"
	assert len(manager) == 1


def test_unregister_of_displaced_handle_keeps_replacement():
	manager: ConnectionManager[str] = ConnectionManager()
	manager.register("u1", "sid-old")
	manager.register("u1", "sid-new")

	assert manager.unregister("u1", "sid-old") is False
	assert manager.lookup("u1") == "sid-new"

	assert manager.unregister("u1", "sid-new") is True
	assert manager.lookup("u1") is None


def test_unregister_is_safe_when_absent():
	manager: ConnectionManager[str] = ConnectionManager()
	assert manager.unregister("ghost") is False
	manager.register("u1", "sid-1")
	assert manager.unregister("u1") is True
	assert manager.unregister("u1") is False
