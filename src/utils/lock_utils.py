import asyncio
import traceback
import uuid
import weakref
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Optional

# Utils
from utils.log_utils import LogUtil

# Exceptions
from exceptions.flow_exception import SessionStateException

if TYPE_CHECKING:
    from database.flow_db import FlowDB


class ChatLockManager:
    """
    Serializes work per chat. An in-process asyncio.Lock orders coroutines of this
    worker, a lease row in `chat_locks` keeps other workers off the same chat.
    Different chats never contend.

    The lease is renewed in the background while held, so a run blocked on a
    slow external call keeps the chat for as long as it lives.
    """

    def __init__(
        self,
        log_util: LogUtil,
        flow_db: "FlowDB",
        lease_ttl_seconds: int = 30,
        acquire_timeout_seconds: float = 10.0,
        retry_interval_seconds: float = 0.1,
        renew_interval_seconds: Optional[float] = None
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.lease_ttl_seconds = lease_ttl_seconds
        self.acquire_timeout_seconds = acquire_timeout_seconds
        self.retry_interval_seconds = retry_interval_seconds
        self.renew_interval_seconds = renew_interval_seconds or lease_ttl_seconds / 3
        self.owner_id = str(uuid.uuid4())
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _local_lock(self, chat_id: str) -> asyncio.Lock:
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[chat_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, chat_id: str):
        local_lock = self._local_lock(chat_id)
        async with local_lock:
            await self._acquire_lease(chat_id)
            renewal = asyncio.create_task(self._renew_lease(chat_id))
            try:
                yield
            finally:
                renewal.cancel()
                try:
                    await renewal
                except asyncio.CancelledError:
                    pass
                await self.flow_db.release_chat_lock(chat_id=chat_id, owner_id=self.owner_id)

    async def _acquire_lease(self, chat_id: str):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.acquire_timeout_seconds
        while True:
            acquired = await self.flow_db.acquire_chat_lock(
                chat_id=chat_id,
                owner_id=self.owner_id,
                ttl_seconds=self.lease_ttl_seconds
            )
            if acquired:
                return
            if loop.time() >= deadline:
                self.log_util.warning(
                    service_name="ChatLockManager",
                    message=f"[SESSION] Timed out waiting for lock on chat {chat_id}"
                )
                raise SessionStateException(f"Chat {chat_id} is locked by another worker")
            await asyncio.sleep(self.retry_interval_seconds)

    async def _renew_lease(self, chat_id: str):
        while True:
            await asyncio.sleep(self.renew_interval_seconds)
            try:
                renewed = await self.flow_db.acquire_chat_lock(
                    chat_id=chat_id,
                    owner_id=self.owner_id,
                    ttl_seconds=self.lease_ttl_seconds
                )
            except Exception as e:
                self.log_util.error(
                    service_name="ChatLockManager",
                    message=f"[SESSION] Error renewing lock on chat {chat_id}: {str(e)}\nTraceback: {traceback.format_exc()}"
                )
                continue
            if not renewed:
                # Another worker took over an expired lease
                self.log_util.warning(
                    service_name="ChatLockManager",
                    message=f"[SESSION] Lost lock on chat {chat_id}, lease renewal stopped"
                )
                return
