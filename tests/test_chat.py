import time
from unittest import mock

from pymongo.errors import PyMongoError

from chat import DELETED_PLACEHOLDER, MessageStream


def test_create_room_makes_creator_member_and_admin(directory, clock):
    room_id = directory.create_room("Team A", "u1", description="first team")

    room = directory.get_room(room_id)
    assert room.name == "Team A"
    assert room.members == ["u1"]
    assert room.admins == ["u1"]
    assert room.created_by == "u1"
    assert room.created_at == clock.now
    assert room.last_message is None


def test_duplicate_room_names_allowed(directory):
    first = directory.create_room("General", "u1")
    second = directory.create_room("General", "u2")

    assert first != second
    assert [r.name for r in directory.list_rooms()] == ["General", "General"]


def test_rooms_ordered_by_last_message_time(directory, stream, clock):
    quiet = directory.create_room("Quiet", "u1")
    older = directory.create_room("Older", "u1")
    newer = directory.create_room("Newer", "u1")

    clock.advance(1000)
    stream.send(older, "u1", "Ana", None, "first")
    clock.advance(1000)
    stream.send(newer, "u1", "Ana", None, "second")

    assert [r.id for r in directory.list_rooms()] == [newer, older, quiet]


def test_room_subscription_redelivers_sorted_list(directory, stream, clock):
    deliveries = []
    a = directory.create_room("A", "u1")
    b = directory.create_room("B", "u1")
    directory.subscribe(deliveries.append)

    clock.advance(5)
    stream.send(a, "u1", "Ana", None, "ping")

    assert [r.id for r in deliveries[0]] == [a, b]
    assert [r.id for r in deliveries[-1]] == [a, b]
    assert deliveries[-1][0].last_message == "ping"


def test_member_filter_is_opt_in(directory):
    room_id = directory.create_room("Team A", "u1")

    assert [r.id for r in directory.list_rooms()] == [room_id]
    assert directory.list_rooms(member_id="u2") == []

    directory.add_member(room_id, "u2")
    directory.add_member(room_id, "u2")
    assert directory.get_room(room_id).members == ["u1", "u2"]
    assert [r.id for r in directory.list_rooms(member_id="u2")] == [room_id]

    directory.remove_member(room_id, "u2")
    assert directory.get_room(room_id).members == ["u1"]


def test_send_appends_and_updates_preview(directory, stream, clock):
    room_id = directory.create_room("Team A", "u1")
    clock.advance(250)

    message_id = stream.send(room_id, "u1", "Ana", "ana.png", "hello")

    message = stream.get_message(room_id, message_id)
    assert message.text == "hello"
    assert message.sender_name == "Ana"
    assert message.sender_avatar == "ana.png"
    assert message.timestamp == clock.now
    assert message.edited is False and message.deleted is False

    room = directory.get_room(room_id)
    assert room.last_message == "hello"
    assert room.last_message_time == message.timestamp


def test_media_message_preview_falls_back_to_file_name(directory, stream):
    room_id = directory.create_room("Team A", "u1")

    stream.send(room_id, "u1", "Ana", None, "", message_type="file",
                file_url="https://files/x.pdf", file_name="x.pdf")

    assert directory.get_room(room_id).last_message == "x.pdf"


def test_send_survives_preview_failure(directory, stream):
    room_id = directory.create_room("Team A", "u1")

    with mock.patch.object(directory, "touch_preview", side_effect=PyMongoError("down")):
        message_id = stream.send(room_id, "u1", "Ana", None, "hello")

    assert stream.get_message(room_id, message_id).text == "hello"
    assert directory.get_room(room_id).last_message is None


def test_messages_ordered_by_timestamp_then_key(store, directory, stream, clock):
    room_id = directory.create_room("Team A", "u1")
    first = stream.send(room_id, "u1", "Ana", None, "one")
    second = stream.send(room_id, "u2", "Ben", None, "two")
    # Written late with an earlier timestamp
    late = store.push(f"messages/{room_id}", {
        "text": "zero", "senderId": "u3", "timestamp": clock.now - 100,
    })

    deliveries = []
    stream.subscribe(room_id, deliveries.append)
    stream.subscribe(room_id, deliveries.append)

    assert [m.id for m in deliveries[0]] == [late, first, second]
    assert [m.id for m in deliveries[1]] == [late, first, second]


def test_subscription_sees_new_messages(directory, stream):
    room_id = directory.create_room("Team A", "u1")
    deliveries = []
    stream.subscribe(room_id, deliveries.append)

    stream.send(room_id, "u1", "Ana", None, "hello")

    assert deliveries[0] == []
    assert [m.text for m in deliveries[-1]] == ["hello"]


def test_edit_sets_flag(directory, stream):
    room_id = directory.create_room("Team A", "u1")
    message_id = stream.send(room_id, "u1", "Ana", None, "helo")

    stream.edit(room_id, message_id, "hello")

    message = stream.get_message(room_id, message_id)
    assert message.text == "hello"
    assert message.edited is True


def test_soft_delete_discards_content(store, directory, stream):
    room_id = directory.create_room("Team A", "u1")
    message_id = stream.send(room_id, "u1", "Ana", None, "look", message_type="image",
                             image_url="https://img/1.png")

    stream.soft_delete(room_id, message_id)

    message = stream.get_message(room_id, message_id)
    assert message.deleted is True
    assert message.text == DELETED_PLACEHOLDER
    assert message.image_url is None
    raw = store.get(f"messages/{room_id}/{message_id}")
    assert "look" not in raw.values()
    assert "imageUrl" not in raw


def test_typing_window(stream, clock):
    stream.set_typing("room1", "u1", True)
    assert stream.current_typing("room1") == ["u1"]

    clock.advance(2999)
    assert stream.current_typing("room1") == ["u1"]

    clock.advance(1)
    assert stream.current_typing("room1") == []


def test_typing_cleared_explicitly(stream):
    deliveries = []
    stream.subscribe_typing("room1", deliveries.append)

    stream.set_typing("room1", "u1", True)
    stream.set_typing("room1", "u2", True)
    stream.set_typing("room1", "u1", False)

    assert deliveries == [[], ["u1"], ["u1", "u2"], ["u2"]]


def test_stale_typing_filtered_at_delivery(stream, clock):
    deliveries = []
    stream.set_typing("room1", "u1", True)
    clock.advance(3000)
    stream.subscribe_typing("room1", deliveries.append)

    stream.set_typing("room1", "u2", True)

    assert deliveries == [[], ["u2"]]


def test_typing_auto_clears(store, directory, clock):
    stream = MessageStream(store, directory, clock=clock, auto_clear_ms=20)
    try:
        stream.set_typing("room1", "u1", True)
        deadline = time.monotonic() + 2
        while store.get("typing/room1/u1") is not None and time.monotonic() < deadline:
            time.sleep(0.01)
        assert store.get("typing/room1/u1") is None
    finally:
        stream.close()


def test_typing_stop_cancels_auto_clear(store, directory, clock):
    stream = MessageStream(store, directory, clock=clock, auto_clear_ms=10_000)
    try:
        stream.set_typing("room1", "u1", True)
        assert ("room1", "u1") in stream._typing_timers

        stream.set_typing("room1", "u1", False)
        assert stream._typing_timers == {}
    finally:
        stream.close()


def test_send_to_missing_room_keeps_directory_readable(directory, stream):
    room_id = directory.create_room("Team A", "u1")
    deliveries = []
    directory.subscribe(deliveries.append)

    stream.send("ghost", "u1", "Ana", None, "hello")
    stream.send(room_id, "u1", "Ana", None, "still here")

    assert directory.get_room("ghost") is None
    assert [r.id for r in directory.list_rooms()] == [room_id]
    assert deliveries[-1][0].last_message == "still here"


def test_edit_and_delete_of_missing_message_write_nothing(directory, stream):
    room_id = directory.create_room("Team A", "u1")
    message_id = stream.send(room_id, "u1", "Ana", None, "hello")

    assert stream.edit(room_id, "missing", "x") is False
    assert stream.soft_delete(room_id, "missing") is False

    assert stream.get_message(room_id, "missing") is None
    assert [m.id for m in stream.list_messages(room_id)] == [message_id]


def test_add_member_to_missing_room_writes_nothing(directory):
    assert directory.add_member("ghost", "u2") is False
    assert directory.list_rooms() == []


def test_malformed_records_are_skipped(store, directory, stream):
    room_id = directory.create_room("Team A", "u1")
    message_id = stream.send(room_id, "u1", "Ana", None, "hello")
    store.set("chatRooms/broken", {"lastMessage": "orphan"})
    store.set(f"messages/{room_id}/broken", {"text": "no sender"})

    assert [r.id for r in directory.list_rooms()] == [room_id]
    assert [m.id for m in stream.list_messages(room_id)] == [message_id]


def test_typing_can_exclude_viewer(stream):
    deliveries = []
    stream.subscribe_typing("room1", deliveries.append, exclude_user="u1")

    stream.set_typing("room1", "u1", True)
    stream.set_typing("room1", "u2", True)

    assert deliveries == [[], [], ["u2"]]
    assert stream.current_typing("room1", exclude_user="u2") == ["u1"]
