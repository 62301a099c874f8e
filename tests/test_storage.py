from datetime import datetime, timezone

import config
import models
import schemas


def make_room(storage, code="ROOM01", **extra):
    return storage.create_room({"id": code, "name": "Math Room", **extra})


def test_create_room_applies_timer_defaults(storage):
    room = make_room(storage)

    assert room.timer_state == schemas.TimerState.STOPPED
    assert room.timer_mode == schemas.TimerMode.STUDY
    assert room.timer_end_time is None
    assert room.study_duration == 1500
    assert room.break_duration == 300
    assert room.topic == "General Study"


def test_create_room_keeps_given_topic(storage):
    room = make_room(storage, topic="Linear algebra")
    assert storage.get_room("ROOM01").topic == "Linear algebra"
    assert room.topic == "Linear algebra"


def test_update_and_delete_missing_ids(storage):
    assert storage.update_user(999, {"status": "away"}) is None
    assert storage.update_room("NOPE00", {"timer_state": "running"}) is None
    assert storage.delete_user(999) is False
    assert storage.delete_room("NOPE00") is False
    assert storage.get_user(999) is None
    assert storage.get_room("NOPE00") is None


def test_user_ids_are_monotonic_and_lookup_by_connection(storage):
    make_room(storage)
    first = storage.create_user({"username": "Alice", "socket_id": "conn-a", "room_id": "ROOM01", "is_host": True})
    second = storage.create_user({"username": "Bob", "socket_id": "conn-b", "room_id": "ROOM01"})

    assert second.id > first.id
    assert storage.get_user_by_connection("conn-b").username == "Bob"
    assert storage.get_user_by_connection("conn-z") is None
    assert second.is_host is False
    assert second.status == schemas.UserStatus.FOCUSED


def test_users_by_room_in_creation_order(storage):
    make_room(storage, "ROOM01")
    make_room(storage, "ROOM02")
    for name, room in [("Alice", "ROOM01"), ("Bob", "ROOM02"), ("Carol", "ROOM01"), ("Dan", "ROOM01")]:
        storage.create_user({"username": name, "socket_id": name.lower(), "room_id": room})

    assert [u.username for u in storage.get_users_by_room("ROOM01")] == ["Alice", "Carol", "Dan"]


def test_update_user_patch(storage):
    make_room(storage)
    user = storage.create_user({"username": "Alice", "socket_id": "a", "room_id": "ROOM01"})

    updated = storage.update_user(user.id, {"status": schemas.UserStatus.AWAY, "is_host": True})

    assert updated.status == schemas.UserStatus.AWAY
    assert updated.is_host is True
    assert updated.username == "Alice"


def test_timer_end_time_round_trips_as_utc(storage):
    make_room(storage)
    end = datetime(2024, 3, 1, 9, 25, 30, tzinfo=timezone.utc)

    storage.update_room("ROOM01", {"timer_state": schemas.TimerState.RUNNING, "timer_end_time": end})

    room = storage.get_room("ROOM01")
    assert room.timer_end_time == end
    assert room.to_wire()["timerEndTime"].startswith("2024-03-01T09:25:30")


def test_messages_are_server_stamped(storage):
    make_room(storage)
    message = storage.create_message(
        {"id": 4242, "room_id": "ROOM01", "text": "hi", "timestamp": datetime(1999, 1, 1)}
    )

    assert message.id != 4242
    assert message.timestamp.year != 1999
    assert message.type == schemas.MessageType.USER
    assert message.user_id is None


def test_message_history_is_bounded_and_oldest_first(storage):
    make_room(storage)
    for i in range(60):
        storage.create_message({"room_id": "ROOM01", "text": f"m{i}"})

    recent = storage.get_messages_by_room("ROOM01")
    assert len(recent) == 50
    assert recent[0].text == "m10"
    assert recent[-1].text == "m59"

    assert [m.text for m in storage.get_messages_by_room("ROOM01", limit=3)] == ["m57", "m58", "m59"]


def test_delete_room_drops_its_history(storage):
    make_room(storage, "ROOM01")
    make_room(storage, "ROOM02")
    storage.create_message({"room_id": "ROOM01", "text": "gone"})
    storage.create_message({"room_id": "ROOM02", "text": "kept"})

    assert storage.delete_room("ROOM01") is True

    assert storage.get_room("ROOM01") is None
    assert storage.get_messages_by_room("ROOM01") == []
    assert [m.text for m in storage.get_messages_by_room("ROOM02")] == ["kept"]
    assert storage.count_rooms() == 1


def test_wire_format_uses_camel_case(storage):
    make_room(storage)
    user = storage.create_user({"username": "Alice", "socket_id": "a", "room_id": "ROOM01", "is_host": True})

    wire = user.to_wire()
    assert wire == {
        "id": user.id,
        "username": "Alice",
        "socketId": "a",
        "roomId": "ROOM01",
        "status": "focused",
        "isHost": True,
    }


def test_room_rows_default_to_configured_durations(storage):
    with storage._session() as db:
        db.add(models.Room(id="ROOM02", name="Bare row"))
        db.commit()

    room = storage.get_room("ROOM02")
    assert room.study_duration == config.DEFAULT_STUDY_DURATION
    assert room.break_duration == config.DEFAULT_BREAK_DURATION
