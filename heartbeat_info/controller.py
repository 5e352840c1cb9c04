"""Serialized controller that owns all access to one heartbeat store."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Collection
import logging
import time

from heartbeat_info.executor import SerialTaskQueue
from heartbeat_info.report import encode_heartbeats_header
from heartbeat_info.storage import HeartBeatInfoStorage
from heartbeat_info.user_agent import UserAgentPublisher

logger = logging.getLogger("heartbeat_info.controller")


def current_time_millis() -> int:
    return int(time.time() * 1000)


class HeartBeatController:
    """
    Record heartbeats and build the report header for one persistence key.

    Every storage operation is submitted to a single :class:`SerialTaskQueue`, so
    the read-modify-write sequences in :class:`HeartBeatInfoStorage` never
    interleave. All public methods return futures immediately.
    """

    def __init__(
        self,
        storage: HeartBeatInfoStorage,
        *,
        consumers: Collection[str],
        user_agent_publisher: UserAgentPublisher,
        task_queue: SerialTaskQueue | None = None,
        clock: Callable[[], int] = current_time_millis,
        idle_timeout_seconds: float = 30.0,
    ) -> None:
        self._storage = storage
        self._consumers = consumers
        self._user_agent_publisher = user_agent_publisher
        self._clock = clock
        self._task_queue = task_queue or SerialTaskQueue(
            name=storage.persistence_key,
            idle_timeout_seconds=idle_timeout_seconds,
        )

    @property
    def storage(self) -> HeartBeatInfoStorage:
        return self._storage

    @property
    def task_queue(self) -> SerialTaskQueue:
        return self._task_queue

    def register_heartbeat(self) -> asyncio.Future[None]:
        if not self._consumers:
            done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            done.set_result(None)
            return done

        async def _store() -> None:
            await self._storage.store_heartbeat(
                self._clock(),
                self._user_agent_publisher.get_user_agent(),
            )

        future = self._task_queue.submit(_store)
        future.add_done_callback(self._log_register_failure)
        return future

    def _log_register_failure(self, future: asyncio.Future[None]) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "register_heartbeat_failed persistence_key=%s error=%r",
                self._storage.persistence_key,
                exc,
            )

    def get_heartbeats_header(self) -> asyncio.Future[str]:
        async def _drain_and_encode() -> str:
            results = await self._storage.drain()
            header = encode_heartbeats_header(results)
            logger.info(
                "heartbeats_drained persistence_key=%s user_agents=%s",
                self._storage.persistence_key,
                len(results),
            )
            return header

        return self._task_queue.submit(_drain_and_encode)

    def should_send_sdk_heartbeat(self, heartbeat_tag: str) -> asyncio.Future[bool]:
        async def _check() -> bool:
            return await self._storage.should_send_sdk_heartbeat(heartbeat_tag, self._clock())

        return self._task_queue.submit(_check)

    def should_send_global_heartbeat(self) -> asyncio.Future[bool]:
        async def _check() -> bool:
            return await self._storage.should_send_global_heartbeat(self._clock())

        return self._task_queue.submit(_check)

    async def aclose(self) -> None:
        await self._task_queue.aclose()
