"""Bounded per-user-agent heartbeat storage and daily send gates.

Usage records live in one namespace per persistence key and hold, for each user
agent, the set of UTC days it was active. The total number of (agent, day)
pairs is tracked in a counter so the store can stay below its capacity by
evicting the globally oldest day.

Send gates live in a separate namespace and remember, per tag, when a send was
last approved. Gates are never cleared.

None of the methods here lock anything: callers must serialize access, which
:class:`heartbeat_info.controller.HeartBeatController` does with a single worker.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from heartbeat_info.kv import KeyValueStore, StoredValue
from heartbeat_info.report import HeartBeatResult

HEARTBEAT_COUNT_LIMIT = 30
GLOBAL_TAG = "global"

USAGE_NAMESPACE_PREFIX = "heartbeat-usage"
GATE_NAMESPACE_PREFIX = "heartbeat-gate"

_USER_AGENT_KEY_PREFIX = "ua:"
HEARTBEAT_COUNT_KEY = "meta:count"
LAST_STORED_DATE_KEY = "meta:last-used-date"

logger = logging.getLogger("heartbeat_info.storage")


def utc_day(millis: int) -> str:
    """Return the ``YYYY-MM-DD`` UTC calendar day containing ``millis``."""

    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).date().isoformat()


def is_same_utc_day(base_millis: int, target_millis: int) -> bool:
    return utc_day(base_millis) == utc_day(target_millis)


def _user_agent_key(user_agent: str) -> str:
    return f"{_USER_AGENT_KEY_PREFIX}{user_agent}"


@dataclass(slots=True)
class _UsageEntry:
    user_agent: str
    dates: frozenset[str]


class HeartBeatInfoStorage:
    """Bounded usage store and send-gate store for one persistence key."""

    def __init__(
        self,
        kv: KeyValueStore,
        persistence_key: str,
        *,
        limit: int = HEARTBEAT_COUNT_LIMIT,
    ) -> None:
        if limit < 2:
            raise ValueError("limit must be >= 2")
        self._kv = kv
        self._limit = limit
        self.persistence_key = persistence_key
        self.usage_namespace = f"{USAGE_NAMESPACE_PREFIX}:{persistence_key}"
        self.gate_namespace = f"{GATE_NAMESPACE_PREFIX}:{persistence_key}"

    @property
    def limit(self) -> int:
        return self._limit

    async def _get_int(self, namespace: str, key: str, default: int) -> int:
        value = await self._kv.get(namespace, key)
        return value if isinstance(value, int) else default

    async def _get_str(self, namespace: str, key: str, default: str) -> str:
        value = await self._kv.get(namespace, key)
        return value if isinstance(value, str) else default

    async def _usage_entries(self) -> list[_UsageEntry]:
        entries: list[_UsageEntry] = []
        for key, value in (await self._kv.get_all(self.usage_namespace)).items():
            if key.startswith(_USER_AGENT_KEY_PREFIX) and isinstance(value, frozenset):
                entries.append(
                    _UsageEntry(user_agent=key[len(_USER_AGENT_KEY_PREFIX):], dates=value)
                )
        entries.sort(key=lambda entry: entry.user_agent)
        return entries

    async def get_heartbeat_count(self) -> int:
        return await self._get_int(self.usage_namespace, HEARTBEAT_COUNT_KEY, 0)

    async def get_last_stored_date(self) -> str | None:
        value = await self._get_str(self.usage_namespace, LAST_STORED_DATE_KEY, "")
        return value or None

    async def store_heartbeat(self, millis: int, user_agent: str) -> None:
        """Record that ``user_agent`` was active on the UTC day of ``millis``.

        At most one day is written per calendar day store-wide: once any agent
        has been recorded for a day, later calls that day are no-ops even for a
        different agent.
        """

        heartbeat_count = await self.get_heartbeat_count()
        if heartbeat_count + 1 >= self._limit:
            await self._clean_up_stored_heartbeats()
            heartbeat_count = await self.get_heartbeat_count()

        date_string = utc_day(millis)
        last_date_string = await self._get_str(self.usage_namespace, LAST_STORED_DATE_KEY, "")
        if last_date_string == date_string:
            return

        key = _user_agent_key(user_agent)
        current = await self._kv.get(self.usage_namespace, key)
        dates = set(current) if isinstance(current, frozenset) else set()
        dates.add(date_string)
        heartbeat_count += 1
        await self._kv.commit(
            self.usage_namespace,
            {
                key: frozenset(dates),
                HEARTBEAT_COUNT_KEY: heartbeat_count,
                LAST_STORED_DATE_KEY: date_string,
            },
        )
        logger.debug(
            "heartbeat_stored persistence_key=%s date=%s count=%s",
            self.persistence_key,
            date_string,
            heartbeat_count,
        )

    async def _clean_up_stored_heartbeats(self) -> None:
        """Evict the single oldest (agent, day) pair.

        Ties on the oldest day go to the lexicographically smallest user agent.
        """

        heartbeat_count = await self.get_heartbeat_count()
        lowest_date: str | None = None
        owner: _UsageEntry | None = None
        for entry in await self._usage_entries():
            for date_string in entry.dates:
                if lowest_date is None or date_string < lowest_date:
                    lowest_date = date_string
                    owner = entry

        if owner is None or lowest_date is None:
            logger.warning(
                "heartbeat_cleanup_empty persistence_key=%s count=%s",
                self.persistence_key,
                heartbeat_count,
            )
            await self._kv.commit(self.usage_namespace, {HEARTBEAT_COUNT_KEY: 0})
            return

        remaining = owner.dates - {lowest_date}
        key = _user_agent_key(owner.user_agent)
        puts: dict[str, StoredValue] = {HEARTBEAT_COUNT_KEY: max(heartbeat_count - 1, 0)}
        removals: list[str] = []
        if remaining:
            puts[key] = remaining
        else:
            removals.append(key)
        await self._kv.commit(self.usage_namespace, puts, removals)
        logger.info(
            "heartbeat_evicted persistence_key=%s date=%s",
            self.persistence_key,
            lowest_date,
        )

    async def get_all_heartbeats(self) -> list[HeartBeatResult]:
        return [
            HeartBeatResult(user_agent=entry.user_agent, used_dates=tuple(sorted(entry.dates)))
            for entry in await self._usage_entries()
        ]

    async def delete_all_heartbeats(self) -> None:
        """Remove every usage record and zero the counter; the last stored date is kept."""

        removals = [_user_agent_key(entry.user_agent) for entry in await self._usage_entries()]
        await self._kv.commit(self.usage_namespace, {HEARTBEAT_COUNT_KEY: 0}, removals)

    async def drain(self) -> list[HeartBeatResult]:
        results = await self.get_all_heartbeats()
        await self.delete_all_heartbeats()
        return results

    async def get_last_global_heartbeat(self) -> int:
        return await self._get_int(self.gate_namespace, GLOBAL_TAG, -1)

    async def update_global_heartbeat(self, millis: int) -> None:
        await self._kv.commit(self.gate_namespace, {GLOBAL_TAG: millis})

    async def should_send_sdk_heartbeat(self, heartbeat_tag: str, millis: int) -> bool:
        """Approve at most one send per UTC day for ``heartbeat_tag``.

        The first call for a tag is always approved. Approval records ``millis``
        as the tag's last send time; a refusal writes nothing.
        """

        if await self._kv.contains(self.gate_namespace, heartbeat_tag):
            last_sent = await self._get_int(self.gate_namespace, heartbeat_tag, -1)
            if is_same_utc_day(last_sent, millis):
                return False
        await self._kv.commit(self.gate_namespace, {heartbeat_tag: millis})
        return True

    async def should_send_global_heartbeat(self, millis: int) -> bool:
        return await self.should_send_sdk_heartbeat(GLOBAL_TAG, millis)
