class RoomError(Exception):
    """A request the sender is not allowed to make right now. Nothing was changed."""

    message = "Request rejected"

    def __init__(self, message: str | None = None):
        self.message = message or self.message
        super().__init__(self.message)


class NotInRoomError(RoomError):
    message = "You are not in a room"


class NotHostError(RoomError):
    message = "Only the host can control the timer"


class RoomNotFoundError(RoomError):
    message = "Room not found"


class AlreadyInRoomError(RoomError):
    message = "You are already in a room"


class EmptyMessageError(RoomError):
    message = "Message cannot be empty"
