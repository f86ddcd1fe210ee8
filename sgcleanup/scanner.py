"""Scanner for unused security groups. Reusable by CLI and FastAPI."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from sgcleanup.collector import ConcurrentLoader, ExistingGroups
from sgcleanup.config import Settings
from sgcleanup.groups import SecurityGroups, security_group_console_url
from sgcleanup.regions import get_regions
from sgcleanup.sources import REFERENCE_SOURCES, ReferenceSource, RegionConfig, load_existing_groups

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class GroupReport:
    """One existing security group and everything that uses it."""

    region: str
    group_id: str
    group_name: str
    description: str
    vpc_id: str | None
    referenced_by: list[str] = field(default_factory=list)

    @property
    def unused(self) -> bool:
        return not self.referenced_by

    @property
    def console_url(self) -> str:
        return security_group_console_url(self.region, self.group_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "region": self.region,
            "group_id": self.group_id,
            "group_name": self.group_name,
            "description": self.description,
            "vpc_id": self.vpc_id,
            "referenced_by": list(self.referenced_by),
            "unused": self.unused,
            "console_url": self.console_url,
        }


@dataclass
class RegionScanResult:
    """Result of scanning one region."""

    region: str
    groups: list[GroupReport] = field(default_factory=list)
    error: str | None = None

    @property
    def unused(self) -> list[GroupReport]:
        return [g for g in self.groups if g.unused]

    def to_dict(self) -> dict[str, Any]:
        return {
            "region": self.region,
            "groups": [g.to_dict() for g in self.groups],
            "count": len(self.groups),
            "unused_count": len(self.unused),
            "error": self.error,
        }


@dataclass
class LoadResult:
    groups: SecurityGroups
    errors: dict[str, list[str]] = field(default_factory=dict)

    def record_error(self, region: str, message: str) -> None:
        self.errors.setdefault(region, []).append(message)


async def _guard(
    what: str,
    region: str,
    awaitable: Awaitable[T],
    empty: T,
    outcome: LoadResult,
    timeout: float | None,
) -> T:
    """Turn an AWS failure or timeout into an empty result plus a region error."""
    try:
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        message = f"{what}: timed out after {timeout}s"
    except (ClientError, BotoCoreError) as e:
        message = f"{what}: {e}"
    logger.warning("region %s failed: %s", region, message)
    outcome.record_error(region, message)
    return empty


class _GuardedSource(ReferenceSource):
    def __init__(self, source: ReferenceSource, outcome: LoadResult, timeout: float | None):
        self.name = source.name
        self.service = source.service
        self._source = source
        self._outcome = outcome
        self._timeout = timeout

    async def load(self, config: RegionConfig) -> set[str]:
        return await _guard(
            self.name, config.region, self._source.load(config), set(), self._outcome, self._timeout
        )


async def _load_registry(config: RegionConfig, outcome: LoadResult, timeout: float | None) -> ExistingGroups:
    groups = await _guard(
        "security groups", config.region, load_existing_groups(config), [], outcome, timeout
    )
    return ExistingGroups(groups)


async def load_security_groups(
    regions: list[str],
    *,
    session: boto3.Session | None = None,
    settings: Settings | None = None,
    sources: tuple[ReferenceSource, ...] = REFERENCE_SOURCES,
) -> LoadResult:
    """
    Load every service's references and every security group in ``regions``.

    All (service, region) fetches share one ConcurrentLoader, so at most
    ``settings.max_in_flight`` AWS calls run at once. A region whose fetch
    fails is recorded in ``LoadResult.errors``; its partial data must not be
    used to decide what is unused.
    """
    settings = settings or Settings()
    session = session or boto3.Session()
    outcome = LoadResult(groups=SecurityGroups())
    loader = ConcurrentLoader(max_in_flight=settings.max_in_flight)
    client_config = settings.client_config()

    for region in regions:
        config = RegionConfig(region, session, client_config)
        for source in sources:
            await loader.submit_known_source(_GuardedSource(source, outcome, settings.task_timeout), config)
        logger.info("loading security groups from %s", region)
        await loader.submit(_load_registry(config, outcome, settings.task_timeout))

    outcome.groups = await loader.collect()
    logger.info(
        "loaded %d regions (%d failed): %s",
        len(regions),
        len(outcome.errors),
        outcome.groups.summary(),
    )
    return outcome


def build_region_results(load: LoadResult, regions: list[str]) -> list[RegionScanResult]:
    """Run reachability separately for each region that loaded cleanly."""
    by_region = load.groups.by_region()
    results: list[RegionScanResult] = []
    for region in regions:
        if region in load.errors:
            results.append(RegionScanResult(region=region, error="; ".join(load.errors[region])))
            continue
        regional = by_region.get(region, SecurityGroups())
        referenced = regional.referencing_services_by_group()
        reports = [
            GroupReport(
                region=region,
                group_id=group.group_id,
                group_name=group.group_name,
                description=group.description,
                vpc_id=group.vpc_id,
                referenced_by=sorted(referenced[group.group_id]),
            )
            for group in sorted(regional.existing_groups, key=lambda g: g.group_id)
        ]
        results.append(RegionScanResult(region=region, groups=reports))
    return results


def scan_all_regions(
    regions: list[str] | None = None,
    *,
    session: boto3.Session | None = None,
    settings: Settings | None = None,
) -> list[RegionScanResult]:
    """
    Scan multiple regions and report every security group with its users.

    Args:
        regions: Region codes. If None, uses REGIONS from sgcleanup.regions.
        session: Optional boto3 session (for custom profile/credentials).
        settings: Concurrency and timeout settings.

    Returns:
        List of RegionScanResult, one per region. Failed regions have error set.
    """
    regions = get_regions() if regions is None else list(regions)
    load = asyncio.run(load_security_groups(regions, session=session, settings=settings))
    return build_region_results(load, regions)


@dataclass
class DeletionResult:
    deleted: list[GroupReport] = field(default_factory=list)
    failed: list[tuple[GroupReport, str]] = field(default_factory=list)


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def delete_unused_groups(
    results: list[RegionScanResult],
    *,
    session: boto3.Session | None = None,
    passes: int = 3,
) -> DeletionResult:
    """
    Delete the unused groups of every region that scanned without error.

    Unused groups may still reference each other, which makes AWS reject the
    first deletion with DependencyViolation. Those are retried in the next
    pass for as long as the previous pass deleted something.
    """
    session = session or boto3.Session()
    outcome = DeletionResult()
    for result in results:
        if result.error:
            logger.warning("not cleaning %s, scan failed: %s", result.region, result.error)
            continue
        remaining = result.unused
        if not remaining:
            continue

        logger.info("cleaning %s", result.region)
        ec2 = session.client("ec2", region_name=result.region)
        blocked: list[tuple[GroupReport, str]] = []
        for _ in range(passes):
            blocked = []
            for group in remaining:
                logger.info("deleting %s", group.group_id)
                try:
                    ec2.delete_security_group(GroupId=group.group_id)
                except ClientError as e:
                    if _error_code(e) == "DependencyViolation":
                        blocked.append((group, str(e)))
                    else:
                        logger.warning("failed to delete %s: %s", group.group_id, e)
                        outcome.failed.append((group, str(e)))
                    continue
                outcome.deleted.append(group)
            if not blocked or len(blocked) == len(remaining):
                break
            remaining = [group for group, _ in blocked]

        for group, message in blocked:
            logger.warning("failed to delete %s: %s", group.group_id, message)
        outcome.failed.extend(blocked)
    return outcome
