# services/trademind/intel/session_store.py
"""Where a backend client keeps its auth session between calls."""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import redis.asyncio as redis

from .models import Session


class SessionStore(ABC):

    @abstractmethod
    async def load(self) -> Optional[Session]:
        pass

    @abstractmethod
    async def save(self, session: Session) -> None:
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass

    async def close(self) -> None:
        """Release any connection the store holds."""


class MemorySessionStore(SessionStore):
    """Session lives as long as the client context."""

    def __init__(self, session: Optional[Session] = None):
        self._session = session

    async def load(self) -> Optional[Session]:
        return self._session

    async def save(self, session: Session) -> None:
        self._session = session

    async def clear(self) -> None:
        self._session = None


class RedisSessionStore(SessionStore):
    """Session persisted in Redis so it survives service restarts."""

    KEY_PREFIX = "trademind:session"

    def __init__(self, client: redis.Redis, client_id: str, ttl_sec: int = 30 * 24 * 3600):
        self._redis = client
        self.key = f"{self.KEY_PREFIX}:{client_id}"
        self.ttl_sec = ttl_sec

    @classmethod
    def from_config(cls, config: Dict[str, Any], client_id: str) -> 'RedisSessionStore':
        url = config.get('SESSION_REDIS_URL', 'redis://127.0.0.1:6379')
        return cls(redis.Redis.from_url(url, decode_responses=True), client_id)

    async def load(self) -> Optional[Session]:
        raw = await self._redis.get(self.key)
        if not raw:
            return None
        return Session.from_dict(json.loads(raw))

    async def save(self, session: Session) -> None:
        await self._redis.set(self.key, json.dumps(session.to_dict()), ex=self.ttl_sec)

    async def clear(self) -> None:
        await self._redis.delete(self.key)

    async def close(self) -> None:
        await self._redis.aclose()


def build_session_store(config: Dict[str, Any], client_id: str) -> SessionStore:
    if str(config.get('SESSION_STORE', 'memory')).lower() == 'redis':
        return RedisSessionStore.from_config(config, client_id)
    return MemorySessionStore()
