"""Explicit owner of one heartbeat controller per persistence key."""

from __future__ import annotations

from collections.abc import Callable, Collection
import logging

from heartbeat_info.controller import HeartBeatController, current_time_millis
from heartbeat_info.kv import KeyValueStore
from heartbeat_info.storage import HEARTBEAT_COUNT_LIMIT, HeartBeatInfoStorage
from heartbeat_info.user_agent import UserAgentPublisher

logger = logging.getLogger("heartbeat_info.registry")


class HeartBeatControllerRegistry:
    """Lazily build and cache controllers keyed by persistence key.

    Controllers for different keys share the key-value backend but have their
    own storage namespaces and workers.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        consumers: Collection[str],
        user_agent_publisher: UserAgentPublisher,
        limit: int = HEARTBEAT_COUNT_LIMIT,
        idle_timeout_seconds: float = 30.0,
        clock: Callable[[], int] = current_time_millis,
    ) -> None:
        self._kv = kv
        self._consumers = consumers
        self._user_agent_publisher = user_agent_publisher
        self._limit = limit
        self._idle_timeout_seconds = idle_timeout_seconds
        self._clock = clock
        self._controllers: dict[str, HeartBeatController] = {}

    def get_or_create(self, persistence_key: str) -> HeartBeatController:
        controller = self._controllers.get(persistence_key)
        if controller is None:
            controller = HeartBeatController(
                HeartBeatInfoStorage(self._kv, persistence_key, limit=self._limit),
                consumers=self._consumers,
                user_agent_publisher=self._user_agent_publisher,
                clock=self._clock,
                idle_timeout_seconds=self._idle_timeout_seconds,
            )
            self._controllers[persistence_key] = controller
            logger.debug("controller_created persistence_key=%s", persistence_key)
        return controller

    @property
    def size(self) -> int:
        return len(self._controllers)

    async def aclose(self) -> None:
        """Flush and stop every controller's worker."""

        controllers = list(self._controllers.values())
        self._controllers.clear()
        for controller in controllers:
            await controller.aclose()
