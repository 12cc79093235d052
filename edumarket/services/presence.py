import asyncio
from typing import Dict, List, Optional, Protocol


class PresenceStore(Protocol):
    """Interface the gateway relies on.

    Multi-process deployments need an implementation backed by a shared
    store (Redis hash, etc.); PresenceRegistry only sees this process.
    """

    async def register(self, user_id: str, sid: str) -> None: ...

    async def unregister(self, user_id: str, sid: str) -> bool: ...

    async def lookup(self, user_id: str) -> Optional[str]: ...

    async def online_user_ids(self) -> List[str]: ...


class PresenceRegistry:
    """In-memory map user id -> socket id of the user's live connection.
    - Starts empty; nothing is persisted, so a restart shows everyone offline.
    - One connection per user: the most recent connect wins.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, str] = {}
        self.lock = asyncio.Lock()

    async def register(self, user_id: str, sid: str) -> None:
        async with self.lock:
            self._connections[str(user_id)] = sid

    async def unregister(self, user_id: str, sid: str) -> bool:
        """Drop the entry only if it still points at `sid`.

        An older connection closing must not evict a newer one.
        """
        async with self.lock:
            if self._connections.get(str(user_id)) != sid:
                return False
            self._connections.pop(str(user_id), None)
            return True

    async def lookup(self, user_id: str) -> Optional[str]:
        return self._connections.get(str(user_id))

    async def online_user_ids(self) -> List[str]:
        return sorted(self._connections)

    async def clear(self) -> None:
        async with self.lock:
            self._connections.clear()

    def __len__(self) -> int:
        return len(self._connections)
