import os
import uuid

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# "memory", "redis" or "none"
PERSISTENCE_BACKEND = os.getenv("PERSISTENCE_BACKEND", "memory").lower()
# Relay changes made by other instances (seen through the store's channel) to local connections
SYNC_VIA_STORE = os.getenv("SYNC_VIA_STORE", "false").lower() in ("1", "true", "yes")

PERSIST_MAX_RETRIES = int(os.getenv("PERSIST_MAX_RETRIES", 3))
PERSIST_RETRY_BASE_DELAY = float(os.getenv("PERSIST_RETRY_BASE_DELAY", 0.2))

DEFAULT_DECK = ("0", "1", "2", "3", "5", "8", "13", "21", "40", "100", "?", "☕")
VOTE_DECK = tuple(v.strip() for v in os.getenv("VOTE_DECK", ",".join(DEFAULT_DECK)).split(",") if v.strip())

INSTANCE_ID = os.getenv("INSTANCE_ID", uuid.uuid4().hex[:12])

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)
