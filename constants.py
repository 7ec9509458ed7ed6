import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:4200").split(",")

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

# Client side: where the signaling server and the direct-connection relay live
SIGNAL_SERVER = os.getenv("SIGNAL_SERVER", "localhost")
SIGNAL_PORT = int(os.getenv("SIGNAL_PORT", PORT))
PEER_SERVER = os.getenv("PEER_SERVER", "localhost")
PEER_PORT = int(os.getenv("PEER_PORT", PORT))
SECURE_TRANSPORT = os.getenv("SECURE_TRANSPORT", "false").lower() in ("1", "true", "yes")

WS_SCHEME = "wss" if SECURE_TRANSPORT else "ws"
SIGNAL_URL = f"{WS_SCHEME}://{SIGNAL_SERVER}:{SIGNAL_PORT}/ws"
PEER_URL = f"{WS_SCHEME}://{PEER_SERVER}:{PEER_PORT}/peer"

CACHE_NAMESPACE = os.getenv("CACHE_NAMESPACE", "default")
CACHE_PERSIST_MINS = int(os.getenv("CACHE_PERSIST_MINS", 60))

CONNECT_TIMEOUT_SECONDS = float(os.getenv("CONNECT_TIMEOUT_SECONDS", 30))
JOIN_TIMEOUT_SECONDS = float(os.getenv("JOIN_TIMEOUT_SECONDS", 30))
DISCONNECT_TIMEOUT_SECONDS = float(os.getenv("DISCONNECT_TIMEOUT_SECONDS", 0.5))
END_BROADCAST_TIMEOUT_SECONDS = float(os.getenv("END_BROADCAST_TIMEOUT_SECONDS", 5))

# Peer link backoff: 150ms + attempt * 1000ms, 5 attempts
RECONNECT_BASE_DELAY_SECONDS = 0.15
RECONNECT_STEP_SECONDS = 1.0
PEER_RECONNECT_ATTEMPTS = int(os.getenv("PEER_RECONNECT_ATTEMPTS", 5))
SIGNAL_RECONNECT_ATTEMPTS = int(os.getenv("SIGNAL_RECONNECT_ATTEMPTS", 10))

CLOSE_ON_INVALID_JOIN_CODE = os.getenv("CLOSE_ON_INVALID_JOIN_CODE", "true").lower() in ("1", "true", "yes")

# No b, i, l, o, 0, 1, 8
JOIN_CODE_ALPHABET = "acdefghjkmnpqrstuvwxyz2345679"
JOIN_CODE_LENGTH = 4
