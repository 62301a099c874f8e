from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, func
from config import DEFAULT_BREAK_DURATION, DEFAULT_STUDY_DURATION
from database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, nullable=False)
    socket_id = Column(String, index=True, nullable=True)
    room_id = Column(String(6), index=True, nullable=True)
    status = Column(String, default="focused")
    is_host = Column(Boolean, default=False)


class Room(Base):
    __tablename__ = "rooms"

    id = Column(String(6), primary_key=True, index=True)
    name = Column(String, nullable=False)
    topic = Column(Text, nullable=True)
    timer_state = Column(String, default="stopped")
    timer_mode = Column(String, default="study")
    timer_end_time = Column(DateTime(timezone=True), nullable=True)
    study_duration = Column(Integer, default=DEFAULT_STUDY_DURATION)
    break_duration = Column(Integer, default=DEFAULT_BREAK_DURATION)


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(String(6), index=True, nullable=False)
    user_id = Column(Integer, nullable=True)
    username = Column(String, nullable=True)
    text = Column(Text, nullable=False)
    type = Column(String, default="user")
    timestamp = Column(DateTime(timezone=True), server_default=func.now())
