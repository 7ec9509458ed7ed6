CACHE_KEY = "session:{namespace}:{key}" # client namespace + logical key - JSON value with TTL

USER_ID_KEY = "userId" # {"id": "<user id>"}
ROOM_ID_KEY = "roomId" # {"room": "<room id>", "myBroadcast": bool}
JOIN_CODE_KEY = "joinCode" # {"joinCode": "<4 chars>"}

# **TTL**
# - `userId` and `roomId` persist for CACHE_PERSIST_MINS so a reload resumes the session.
# - `joinCode` has no TTL; it is removed explicitly when the broadcast ends.
