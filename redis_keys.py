REDIS_STATE_KEY = "room:state:{slug}" # room id - hash, one field per document path
REDIS_ROOM_CHANNEL = "room:channel:{slug}" # room id - pub/sub channel for change notices

# **Example `room:state:{id}` hash fields**
# - `members.{memberId}.displayName` = json string
# - `members.{memberId}.vote` = json string or null
# - `revealed` = json bool
# - `revealedVotes` = json object or null
# - `version` = json int
# - `createdAt` / `updatedAt` = json ISO timestamp

# **Change notice published on `room:channel:{id}`**
# - `{"instance": ..., "roomId": ..., "path": ..., "value": ..., "version": ...}`
