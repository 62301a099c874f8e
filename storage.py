import logging
from typing import List, Optional

from sqlalchemy.orm import Session, sessionmaker

import models
import schemas
from config import (
    DEFAULT_BREAK_DURATION,
    DEFAULT_ROOM_TOPIC,
    DEFAULT_STUDY_DURATION,
    MESSAGE_HISTORY_LIMIT,
)

logger = logging.getLogger(__name__)


def _plain(data: dict) -> dict:
    # enum members go into the db as their string values
    return {key: getattr(value, "value", value) for key, value in data.items()}


def _server_stamped(data: dict) -> dict:
    return {key: value for key, value in data.items() if key not in ("id", "timestamp")}


class Storage:
    """CRUD over users, rooms and messages.

    Every call opens its own short session and returns a detached snapshot,
    so callers never hold ORM rows across an await.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _session(self) -> Session:
        return self._session_factory()

    # users

    def get_user(self, user_id: int) -> Optional[schemas.User]:
        with self._session() as db:
            user = db.get(models.User, user_id)
            return schemas.User.model_validate(user) if user else None

    def get_user_by_connection(self, socket_id: str) -> Optional[schemas.User]:
        with self._session() as db:
            user = db.query(models.User).filter(models.User.socket_id == socket_id).first()
            return schemas.User.model_validate(user) if user else None

    def get_users_by_room(self, room_id: str) -> List[schemas.User]:
        with self._session() as db:
            users = (
                db.query(models.User)
                .filter(models.User.room_id == room_id)
                .order_by(models.User.id)
                .all()
            )
            return [schemas.User.model_validate(u) for u in users]

    def create_user(self, data: dict) -> schemas.User:
        with self._session() as db:
            user = models.User(**_plain(_server_stamped(data)))
            db.add(user)
            db.commit()
            db.refresh(user)
            return schemas.User.model_validate(user)

    def update_user(self, user_id: int, patch: dict) -> Optional[schemas.User]:
        with self._session() as db:
            user = db.get(models.User, user_id)
            if user is None:
                return None
            for key, value in _plain(patch).items():
                setattr(user, key, value)
            db.commit()
            db.refresh(user)
            return schemas.User.model_validate(user)

    def delete_user(self, user_id: int) -> bool:
        with self._session() as db:
            user = db.get(models.User, user_id)
            if user is None:
                return False
            db.delete(user)
            db.commit()
            return True

    # rooms

    def get_room(self, room_id: str) -> Optional[schemas.Room]:
        with self._session() as db:
            room = db.get(models.Room, room_id)
            return schemas.Room.model_validate(room) if room else None

    def create_room(self, data: dict) -> schemas.Room:
        with self._session() as db:
            room = models.Room(
                id=data["id"],
                name=data["name"],
                topic=data.get("topic") or DEFAULT_ROOM_TOPIC,
                timer_state=schemas.TimerState.STOPPED.value,
                timer_mode=schemas.TimerMode.STUDY.value,
                timer_end_time=None,
                study_duration=DEFAULT_STUDY_DURATION,
                break_duration=DEFAULT_BREAK_DURATION,
            )
            db.add(room)
            db.commit()
            db.refresh(room)
            return schemas.Room.model_validate(room)

    def update_room(self, room_id: str, patch: dict) -> Optional[schemas.Room]:
        with self._session() as db:
            room = db.get(models.Room, room_id)
            if room is None:
                return None
            for key, value in _plain(patch).items():
                setattr(room, key, value)
            db.commit()
            db.refresh(room)
            return schemas.Room.model_validate(room)

    def delete_room(self, room_id: str) -> bool:
        with self._session() as db:
            room = db.get(models.Room, room_id)
            if room is None:
                return False
            db.delete(room)
            # history dies with the room so a recycled code starts clean
            db.query(models.Message).filter(models.Message.room_id == room_id).delete()
            db.commit()
            logger.debug("Deleted room %s and its history", room_id)
            return True

    def count_rooms(self) -> int:
        with self._session() as db:
            return db.query(models.Room).count()

    # messages

    def get_messages_by_room(self, room_id: str, limit: int = MESSAGE_HISTORY_LIMIT) -> List[schemas.Message]:
        with self._session() as db:
            messages = (
                db.query(models.Message)
                .filter(models.Message.room_id == room_id)
                .order_by(models.Message.id.desc())
                .limit(limit)
                .all()
            )
            return [schemas.Message.model_validate(m) for m in reversed(messages)]

    def create_message(self, data: dict) -> schemas.Message:
        with self._session() as db:
            message = models.Message(**_plain(_server_stamped(data)))
            db.add(message)
            db.commit()
            db.refresh(message)
            return schemas.Message.model_validate(message)
