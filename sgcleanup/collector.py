"""Bounded concurrency loader for security group fetch tasks.

Every (service, region) fetch is submitted as its own asyncio task. At most
``max_in_flight`` of them run at once: when the limit is reached, ``submit``
waits for the oldest pending task before admitting the next one, so callers
can keep submitting without building their own worker pool.

Example:
    loader = ConcurrentLoader(max_in_flight=8)
    for region in regions:
        config = RegionConfig(region, session)
        for source in REFERENCE_SOURCES:
            await loader.submit_known_source(source, config)
        await loader.submit(load_registry(config))
    groups = await loader.collect()
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

from sgcleanup.config import DEFAULT_MAX_IN_FLIGHT
from sgcleanup.groups import (
    ExistingGroup,
    GroupReference,
    SecurityGroups,
    source_tag,
    tag_group_ids,
)

if TYPE_CHECKING:
    from sgcleanup.sources import ReferenceSource, RegionConfig

logger = logging.getLogger(__name__)


@dataclass
class References:
    references: list[GroupReference] = field(default_factory=list)


@dataclass
class ExistingGroups:
    groups: list[ExistingGroup] = field(default_factory=list)


LoadedData = Union[References, ExistingGroups]


class _Slot:
    """One admitted task. Released exactly once, however the task ends."""

    def __init__(self, slots: _Slots):
        self._slots = slots
        self._released = False

    def __enter__(self) -> _Slot:
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

    def release(self) -> None:
        if not self._released:
            self._released = True
            self._slots.count -= 1


class _Slots:
    """In-flight accounting shared by the loader and its running tasks."""

    def __init__(self) -> None:
        self.count = 0
        self.peak = 0

    def acquire(self) -> _Slot:
        self.count += 1
        self.peak = max(self.peak, self.count)
        return _Slot(self)


class ConcurrentLoader:
    """Runs fetch tasks with a ceiling on concurrency and folds their results.

    Results are aggregated in submission order. A task that raises is not
    caught here: the error surfaces from ``submit`` or ``collect``, whichever
    awaits it first, after the remaining tasks are cancelled.
    """

    def __init__(self, max_in_flight: int = DEFAULT_MAX_IN_FLIGHT):
        if max_in_flight < 1:
            raise ValueError(f"max_in_flight must be >= 1, got {max_in_flight}")
        self.max_in_flight = max_in_flight
        self._slots = _Slots()
        self._pending: deque[asyncio.Future[LoadedData]] = deque()
        self._results: list[LoadedData] = []
        self._submitted = 0
        self._collected = False

    @property
    def in_flight(self) -> int:
        return self._slots.count

    @property
    def peak_in_flight(self) -> int:
        return self._slots.peak

    @property
    def submitted(self) -> int:
        return self._submitted

    async def submit(self, task: Awaitable[LoadedData]) -> None:
        """Schedule ``task``, first waiting for a free slot if the loader is full."""
        if self._collected:
            raise RuntimeError("loader already collected")
        # A drained task may already have finished earlier, so keep draining
        # until a running task actually gives its slot back.
        while self._slots.count >= self.max_in_flight:
            await self._drain_one()

        slot = self._slots.acquire()
        self._submitted += 1
        self._pending.append(asyncio.ensure_future(self._run(task, slot)))

    async def submit_known_source(self, source: ReferenceSource, config: RegionConfig) -> None:
        """Schedule ``source`` for ``config.region``, tagging what it finds."""
        tag = source_tag(source.name, config.region)
        logger.info("scanning %s", tag)

        async def fetch() -> References:
            group_ids = await source.load(config)
            return References(tag_group_ids(tag, group_ids))

        await self.submit(fetch())

    async def collect(self) -> SecurityGroups:
        """Wait for every task and merge all results into one aggregate."""
        self._collected = True
        while self._pending:
            await self._drain_one()

        groups = SecurityGroups()
        collected = 0
        for result in self._results:
            collected += 1
            groups.merge(_as_security_groups(result))

        assert collected == self._submitted, f"collected {collected} of {self._submitted} results"
        assert self._slots.count == 0, f"{self._slots.count} tasks still in flight"
        logger.debug("collected %d results (peak in flight %d)", collected, self._slots.peak)
        return groups

    @staticmethod
    async def _run(task: Awaitable[LoadedData], slot: _Slot) -> LoadedData:
        with slot:
            return await task

    async def _drain_one(self) -> None:
        future = self._pending.popleft()
        try:
            result = await future
        except BaseException:
            self._cancel_pending()
            raise
        self._results.append(result)

    def _cancel_pending(self) -> None:
        while self._pending:
            self._pending.popleft().cancel()


def _as_security_groups(result: LoadedData) -> SecurityGroups:
    if isinstance(result, References):
        return SecurityGroups.from_references(result.references)
    if isinstance(result, ExistingGroups):
        return SecurityGroups.from_existing(result.groups)
    raise TypeError(f"unexpected task result: {result!r}")
