import asyncio
import json
from functools import partial
from typing import Any, Optional

import redis

from constants import INSTANCE_ID, REDIS_HOST, REDIS_PASSWORD, REDIS_PORT
from core.exceptions import PersistenceUnavailable
from core.persistence import ChangeHandler, Unsubscribe, change_notice, document_from_fields
from core.session import Snapshot
from logging_config import get_logger
from redis_keys import REDIS_ROOM_CHANNEL, REDIS_STATE_KEY

logger = get_logger(__name__)


def create_redis_client() -> redis.Redis:
    client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
    try:
        # Test connection
        client.ping()
        logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
    except redis.RedisError as e:
        logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
        raise PersistenceUnavailable(f"Redis unavailable at {REDIS_HOST}:{REDIS_PORT}") from e
    return client


class RedisBackend:
    """
    Room documents mirrored into Redis.

    Each document path is its own field of the ``room:state:{id}`` hash, so a
    merge is a single HSET and never touches another writer's fields. Every
    merge also publishes a change notice on the room channel, which lets
    other instances use the store as their synchronization transport.
    """

    def __init__(self, redis_client: redis.Redis, pubsub_client: Optional[redis.Redis] = None,
                 instance_id: str = INSTANCE_ID):
        self.redis_client = redis_client
        # Separate connection for pub/sub (required by Redis)
        self.pubsub_client = pubsub_client or redis_client
        self.instance_id = instance_id

    @classmethod
    def connect(cls) -> "RedisBackend":
        logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
        return cls(create_redis_client(), create_redis_client())

    async def _call(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(func, *args, **kwargs))
        except redis.RedisError as e:
            raise PersistenceUnavailable(f"Redis call {getattr(func, '__name__', func)} failed: {e}") from e

    def get_room_state_key(self, room_id: str) -> str:
        return REDIS_STATE_KEY.format(slug=room_id)

    def get_room_channel_name(self, room_id: str) -> str:
        """Get the Redis pub/sub channel name for a room."""
        return REDIS_ROOM_CHANNEL.format(slug=room_id)

    async def load(self, room_id: str) -> Optional[Snapshot]:
        logger.debug(f"Fetching room {room_id}")
        raw = await self._call(self.redis_client.hgetall, self.get_room_state_key(room_id))
        if not raw:
            logger.debug(f"Room {room_id} not found in Redis")
            return None
        fields = {}
        for path, value in raw.items():
            try:
                fields[path] = json.loads(value)
            except (json.JSONDecodeError, TypeError):
                fields[path] = value
        snapshot = Snapshot.from_document(room_id, document_from_fields(fields))
        logger.debug(f"Room {room_id} retrieved at version {snapshot.version}")
        return snapshot

    def _merge(self, room_id: str, path: str, value: Any, version: int):
        notice = change_notice(room_id, path, value, version, self.instance_id)
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.hset(self.get_room_state_key(room_id), path, json.dumps(value))
        pipe.publish(self.get_room_channel_name(room_id), json.dumps(notice))
        return pipe.execute()

    async def merge_field(self, room_id: str, path: str, value: Any, version: int) -> None:
        await self._call(self._merge, room_id, path, value, version)
        logger.debug(f"Merged {path} for room {room_id} at version {version}")

    async def delete(self, room_id: str) -> None:
        logger.info(f"Deleting room {room_id}")
        deleted = await self._call(self.redis_client.delete, self.get_room_state_key(room_id))
        logger.debug(f"Room {room_id} deleted: state_key={deleted}")

    async def subscribe(self, room_id: str, on_change: ChangeHandler) -> Unsubscribe:
        """Listen on the room channel in a background task until unsubscribed."""
        channel = self.get_room_channel_name(room_id)
        logger.debug(f"Subscribing to Redis channel {channel} for room {room_id}")
        pubsub = self.pubsub_client.pubsub()
        await self._call(pubsub.subscribe, channel)
        task = asyncio.create_task(self._listen(room_id, pubsub, on_change))

        async def unsubscribe():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        return unsubscribe

    async def _listen(self, room_id: str, pubsub, on_change: ChangeHandler):
        loop = asyncio.get_running_loop()

        def get_message():
            """Blocking call to get next message from Redis pub/sub with timeout."""
            try:
                return pubsub.get_message(timeout=1.0, ignore_subscribe_messages=True)
            except redis.RedisError as e:
                logger.error(f"Error in pubsub.get_message() for room {room_id}: {e}", exc_info=True)
                return None

        try:
            while True:
                message = await loop.run_in_executor(None, get_message)
                if message is None or message.get("type") != "message":
                    continue
                try:
                    notice = json.loads(message["data"])
                except json.JSONDecodeError as e:
                    logger.error(f"Error parsing change notice for room {room_id}: {e}")
                    continue
                try:
                    await on_change(notice)
                except Exception as e:
                    logger.error(f"Error handling change notice for room {room_id}: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info(f"Redis listener task cancelled for room: {room_id}")
            raise
        finally:
            try:
                pubsub.close()
                logger.debug(f"Closed pub/sub connection for room: {room_id}")
            except redis.RedisError as e:
                logger.error(f"Error closing pub/sub for room {room_id}: {e}")

    async def close(self) -> None:
        for client in {id(self.redis_client): self.redis_client, id(self.pubsub_client): self.pubsub_client}.values():
            try:
                client.close()
            except redis.RedisError as e:
                logger.error(f"Error closing Redis client: {e}")
