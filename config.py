import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite://")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Seconds between liveness sweeps over the connection registry
HEARTBEAT_INTERVAL = float(os.getenv("HEARTBEAT_INTERVAL", "30"))

MESSAGE_HISTORY_LIMIT = int(os.getenv("MESSAGE_HISTORY_LIMIT", "50"))

DEFAULT_STUDY_DURATION = int(os.getenv("DEFAULT_STUDY_DURATION", str(25 * 60)))
DEFAULT_BREAK_DURATION = int(os.getenv("DEFAULT_BREAK_DURATION", str(5 * 60)))
DEFAULT_ROOM_TOPIC = os.getenv("DEFAULT_ROOM_TOPIC", "General Study")

ROOM_CODE_LENGTH = 6
ROOM_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
