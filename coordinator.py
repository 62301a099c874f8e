"""Room coordination: validates each inbound frame, applies it to the store and
fans the result out to the room.

Handlers for the same room never interleave: each one runs its
read -> compute -> write -> broadcast sequence under that room's lock. The
locks live in this process only, so running several workers against one
database would need a shared lock or a single owner per room.
"""
import asyncio
import json
import logging
import math
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Set

from pydantic import ValidationError

import schemas
from broadcast import Broadcaster
from config import (
    DEFAULT_BREAK_DURATION,
    DEFAULT_STUDY_DURATION,
    MESSAGE_HISTORY_LIMIT,
    ROOM_CODE_ALPHABET,
    ROOM_CODE_LENGTH,
)
from connections import short_id
from exceptions import (
    AlreadyInRoomError,
    EmptyMessageError,
    NotHostError,
    NotInRoomError,
    RoomError,
    RoomNotFoundError,
)
from schemas import TimerMode, TimerState, error_event, event
from storage import Storage

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 100


def generate_room_code() -> str:
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RoomCoordinator:
    def __init__(
        self,
        storage: Storage,
        broadcaster: Broadcaster,
        now: Callable[[], datetime] = utcnow,
        code_factory: Callable[[], str] = generate_room_code,
        history_limit: int = MESSAGE_HISTORY_LIMIT,
    ):
        self.storage = storage
        self.broadcaster = broadcaster
        self.history_limit = history_limit
        self._now = now
        self._new_code = code_factory
        self._room_locks: Dict[str, asyncio.Lock] = {}
        self._pending_leaves: Set[asyncio.Task] = set()

        # type -> (handler, payload model or None, reply on unexpected failure)
        self._handlers = {
            "create_room": (self.create_room, schemas.CreateRoomPayload, "Failed to create room"),
            "join_room": (self.join_room, schemas.JoinRoomPayload, "Failed to join room"),
            "leave_room": (self.leave_room, None, "Failed to leave room"),
            "chat_message": (self.chat_message, schemas.ChatMessagePayload, "Failed to send message"),
            "status_change": (self.status_change, schemas.StatusChangePayload, "Failed to change status"),
            "timer_start": (self.timer_start, None, "Failed to start timer"),
            "timer_pause": (self.timer_pause, None, "Failed to pause timer"),
            "timer_reset": (self.timer_reset, None, "Failed to reset timer"),
            "timer_toggle_mode": (self.timer_toggle_mode, None, "Failed to toggle timer mode"),
        }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle_message(self, connection_id: str, raw: str):
        try:
            message = schemas.WSMessage.model_validate(json.loads(raw))
        except (json.JSONDecodeError, RecursionError) as e:
            logger.warning("Malformed JSON from %s: %s", short_id(connection_id), e)
            await self._reply(connection_id, error_event("Invalid message format", [str(e)]))
            return
        except ValidationError as e:
            logger.warning("Invalid envelope from %s", short_id(connection_id))
            await self._reply(connection_id, error_event("Invalid message format", _error_details(e)))
            return

        if message.type == "pong":
            return

        handler, payload_model, failure = self._handlers[message.type]
        args = [connection_id]
        if payload_model is not None:
            try:
                args.append(payload_model.model_validate(message.payload or {}))
            except ValidationError as e:
                await self._reply(connection_id, error_event("Invalid message format", _error_details(e)))
                return

        try:
            await handler(*args)
        except RoomError as e:
            await self._reply(connection_id, error_event(e.message))
        except Exception:
            logger.exception("Error handling %s from %s", message.type, short_id(connection_id))
            await self._reply(connection_id, error_event(failure))

    async def disconnect(self, connection_id: str):
        """Run the leave transition for a closed connection.

        The transition runs in its own task and is shielded, so cancelling the
        caller (server shutdown, a torn-down ASGI task) cannot stop it between
        promoting a new host and removing the old one.
        """
        task = asyncio.create_task(self._leave_after_close(connection_id))
        self._pending_leaves.add(task)
        task.add_done_callback(self._pending_leaves.discard)
        await asyncio.shield(task)

    async def drain(self):
        """Wait for leave transitions still running after their caller went away."""
        if self._pending_leaves:
            await asyncio.gather(*self._pending_leaves, return_exceptions=True)

    async def _leave_after_close(self, connection_id: str):
        try:
            await self.leave_room(connection_id)
        except Exception:
            logger.exception("Error handling user leave for %s", short_id(connection_id))

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def create_room(self, connection_id: str, payload: schemas.CreateRoomPayload):
        if self.storage.get_user_by_connection(connection_id) is not None:
            raise AlreadyInRoomError()

        room_id = self._unused_room_code()
        try:
            async with self._room_lock(room_id):
                room = self.storage.create_room(
                    {"id": room_id, "name": payload.room_name, "topic": payload.room_topic}
                )
                user = self.storage.create_user(
                    {
                        "username": payload.nickname,
                        "socket_id": connection_id,
                        "room_id": room_id,
                        "status": schemas.UserStatus.FOCUSED,
                        "is_host": True,
                    }
                )
                self._system_message(room_id, f"{payload.nickname} created the room")
                logger.info("Room %s created by %s", room_id, short_id(connection_id))

                await self._reply(
                    connection_id,
                    event("room_created", roomId=room_id, room=room.to_wire(), user=user.to_wire()),
                )
        except Exception:
            self._forget_room_lock(room_id)
            raise
        return room, user

    async def join_room(self, connection_id: str, payload: schemas.JoinRoomPayload):
        if self.storage.get_user_by_connection(connection_id) is not None:
            raise AlreadyInRoomError()
        if self.storage.get_room(payload.room_id) is None:
            raise RoomNotFoundError()

        async with self._room_lock(payload.room_id):
            room = self.storage.get_room(payload.room_id)
            if room is None:
                # deleted while we waited
                self._forget_room_lock(payload.room_id)
                raise RoomNotFoundError()

            user = self.storage.create_user(
                {
                    "username": payload.nickname,
                    "socket_id": connection_id,
                    "room_id": room.id,
                    "status": schemas.UserStatus.FOCUSED,
                    "is_host": False,
                }
            )
            members = self.storage.get_users_by_room(room.id)
            messages = self.storage.get_messages_by_room(room.id, self.history_limit)
            join_message = self._system_message(room.id, f"{payload.nickname} joined the room")

            await self._reply(
                connection_id,
                event(
                    "room_joined",
                    room=room.to_wire(),
                    user=user.to_wire(),
                    members=[m.to_wire() for m in members],
                    messages=[m.to_wire() for m in messages],
                ),
            )
            await self.broadcaster.broadcast_to_room(
                room.id,
                connection_id,
                event("member_joined", user=user.to_wire(), message=join_message.to_wire()),
            )
        return room, user

    async def leave_room(self, connection_id: str):
        """Remove the connection's user, handing the host role on if needed.

        Runs for explicit leaves and again on close; the second run finds no
        user and does nothing.
        """
        user = self.storage.get_user_by_connection(connection_id)
        if user is None:
            return
        if not user.room_id:
            self.storage.delete_user(user.id)
            return

        room_id = user.room_id
        room_deleted = False
        async with self._room_lock(room_id):
            user = self.storage.get_user_by_connection(connection_id)
            if user is None:
                return

            leave_message = self._system_message(room_id, f"{user.username} left the room")
            others = [m for m in self.storage.get_users_by_room(room_id) if m.id != user.id]

            if not others:
                room_deleted = self.storage.delete_room(room_id)
                logger.info("Room %s is empty, deleted", room_id)
            elif user.is_host:
                new_host = others[0]
                self.storage.update_user(new_host.id, {"is_host": True})
                host_message = self._system_message(room_id, f"{new_host.username} is now the host")
                logger.info("Host of room %s passed to user %s", room_id, new_host.id)
                await self.broadcaster.broadcast_to_room(
                    room_id,
                    None,
                    event("host_changed", newHostId=new_host.id, message=host_message.to_wire()),
                )

            await self.broadcaster.broadcast_to_room(
                room_id,
                connection_id,
                event("member_left", userId=user.id, message=leave_message.to_wire()),
            )
            self.storage.delete_user(user.id)

        if room_deleted:
            self._room_locks.pop(room_id, None)

    # ------------------------------------------------------------------
    # Chat and presence
    # ------------------------------------------------------------------

    async def chat_message(self, connection_id: str, payload: schemas.ChatMessagePayload):
        async with self._acting_member(connection_id) as user:
            if not payload.text.strip():
                raise EmptyMessageError()

            message = self.storage.create_message(
                {
                    "room_id": user.room_id,
                    "user_id": user.id,
                    "username": user.username,
                    "text": payload.text,
                    "type": schemas.MessageType.USER,
                }
            )
            await self._reply(connection_id, event("message_sent", message=message.to_wire()))
            await self.broadcaster.broadcast_to_room(
                user.room_id, connection_id, event("new_message", message=message.to_wire())
            )
        return message

    async def status_change(self, connection_id: str, payload: schemas.StatusChangePayload):
        async with self._acting_member(connection_id) as user:
            self.storage.update_user(user.id, {"status": payload.status})
            await self.broadcaster.broadcast_to_room(
                user.room_id,
                None,
                event("status_changed", userId=user.id, status=payload.status.value),
            )

    # ------------------------------------------------------------------
    # Timer (host only)
    # ------------------------------------------------------------------

    async def timer_start(self, connection_id: str):
        async with self._acting_member(connection_id, host_only=True) as user:
            room = self._room_of(user)
            duration = self._active_duration(room)
            room = self.storage.update_room(
                room.id,
                {
                    "timer_state": TimerState.RUNNING,
                    "timer_end_time": self._now() + timedelta(seconds=duration),
                },
            )
            message = self._system_message(room.id, f"Timer started by {user.username}")
            await self.broadcaster.broadcast_to_room(
                room.id, None, event("timer_started", room=room.to_wire(), message=message.to_wire())
            )
        return room

    async def timer_pause(self, connection_id: str):
        async with self._acting_member(connection_id, host_only=True) as user:
            room = self._room_of(user)
            remaining = 0
            if room.timer_end_time is not None:
                remaining = max(0, math.floor((room.timer_end_time - self._now()).total_seconds()))

            # the active duration becomes what is left, so the next start resumes
            duration_field = "study_duration" if room.timer_mode == TimerMode.STUDY else "break_duration"
            room = self.storage.update_room(
                room.id,
                {
                    "timer_state": TimerState.PAUSED,
                    "timer_end_time": None,
                    duration_field: remaining,
                },
            )
            message = self._system_message(room.id, f"Timer paused by {user.username}")
            await self.broadcaster.broadcast_to_room(
                room.id,
                None,
                event(
                    "timer_paused",
                    room=room.to_wire(),
                    message=message.to_wire(),
                    remainingSeconds=remaining,
                ),
            )
        return room, remaining

    async def timer_reset(self, connection_id: str):
        async with self._acting_member(connection_id, host_only=True) as user:
            room = self._room_of(user)
            room = self.storage.update_room(
                room.id,
                {
                    "timer_state": TimerState.STOPPED,
                    "timer_end_time": None,
                    "study_duration": DEFAULT_STUDY_DURATION,
                    "break_duration": DEFAULT_BREAK_DURATION,
                },
            )
            message = self._system_message(room.id, f"Timer reset by {user.username}")
            await self.broadcaster.broadcast_to_room(
                room.id, None, event("timer_reset", room=room.to_wire(), message=message.to_wire())
            )
        return room

    async def timer_toggle_mode(self, connection_id: str):
        async with self._acting_member(connection_id, host_only=True) as user:
            room = self._room_of(user)
            new_mode = TimerMode.BREAK if room.timer_mode == TimerMode.STUDY else TimerMode.STUDY
            room = self.storage.update_room(
                room.id,
                {
                    "timer_mode": new_mode,
                    "timer_state": TimerState.STOPPED,
                    "timer_end_time": None,
                },
            )
            label = "Study time" if new_mode == TimerMode.STUDY else "Break time"
            message = self._system_message(room.id, f"{label} started")
            await self.broadcaster.broadcast_to_room(
                room.id, None, event("timer_mode_changed", room=room.to_wire(), message=message.to_wire())
            )
        return room

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _room_lock(self, room_id: str) -> asyncio.Lock:
        return self._room_locks.setdefault(room_id, asyncio.Lock())

    def _forget_room_lock(self, room_id: str):
        if self.storage.get_room(room_id) is None:
            self._room_locks.pop(room_id, None)

    def _member(self, connection_id: str) -> schemas.User:
        user = self.storage.get_user_by_connection(connection_id)
        if user is None or not user.room_id:
            raise NotInRoomError()
        return user

    @asynccontextmanager
    async def _acting_member(self, connection_id: str, host_only: bool = False):
        user = self._member(connection_id)
        async with self._room_lock(user.room_id):
            # host flag may have moved while we waited
            user = self._member(connection_id)
            if host_only and not user.is_host:
                raise NotHostError()
            yield user

    def _room_of(self, user: schemas.User) -> schemas.Room:
        room = self.storage.get_room(user.room_id)
        if room is None:
            raise RoomNotFoundError()
        return room

    @staticmethod
    def _active_duration(room: schemas.Room) -> int:
        if room.timer_mode == TimerMode.STUDY:
            return DEFAULT_STUDY_DURATION if room.study_duration is None else room.study_duration
        return DEFAULT_BREAK_DURATION if room.break_duration is None else room.break_duration

    def _unused_room_code(self) -> str:
        for _ in range(MAX_CODE_ATTEMPTS):
            code = self._new_code()
            if self.storage.get_room(code) is None:
                return code
        raise RuntimeError("Could not generate an unused room code")

    def _system_message(self, room_id: str, text: str) -> schemas.Message:
        return self.storage.create_message(
            {"room_id": room_id, "text": text, "type": schemas.MessageType.SYSTEM}
        )

    async def _reply(self, connection_id: str, message: dict):
        await self.broadcaster.send_to(connection_id, message)


def _error_details(error: ValidationError) -> list:
    return error.errors(include_url=False, include_context=False, include_input=False)
