import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

import models
from broadcast import Broadcaster
from connections import ConnectionManager
from coordinator import RoomCoordinator
from database import make_engine, make_session_factory
from storage import Storage


class FakeConnection:
    """Stands in for a live socket; records every frame sent to it."""

    def __init__(self, connection_id, is_open=True, fail=False, yielding=False):
        self.id = connection_id
        self.yielding = yielding
        self.is_open = is_open
        self.fail = fail
        self.is_alive = True
        self.closed = False
        self.sent = []

    async def send_json(self, data):
        if self.yielding:
            # a real socket write gives the loop a chance to run other handlers
            await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("socket gone")
        self.sent.append(data)

    async def close(self, code=1001):
        self.closed = True
        self.is_open = False

    def types(self):
        return [frame["type"] for frame in self.sent]

    def events(self, type_):
        return [frame["payload"] for frame in self.sent if frame["type"] == type_]

    def last(self, type_):
        found = self.events(type_)
        return found[-1] if found else None


class Clock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def storage():
    engine = make_engine("sqlite://")
    models.Base.metadata.create_all(bind=engine)
    yield Storage(make_session_factory(engine))
    engine.dispose()


@pytest.fixture
def manager():
    return ConnectionManager(heartbeat_interval=0.01)


@pytest.fixture
def broadcaster(storage, manager):
    return Broadcaster(storage, manager)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def coordinator(storage, broadcaster, clock):
    return RoomCoordinator(storage, broadcaster, now=clock)


@pytest.fixture
def connect(manager):
    def _connect(connection_id, **kwargs):
        connection = FakeConnection(connection_id, **kwargs)
        manager.register(connection_id, connection)
        return connection
    return _connect


@pytest.fixture
def send(coordinator):
    async def _send(connection_id, type_, **payload):
        await coordinator.handle_message(connection_id, json.dumps({"type": type_, "payload": payload}))
    return _send
