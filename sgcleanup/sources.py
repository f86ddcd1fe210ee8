"""Enumerators that report which security groups each AWS service is using.

Every ``ReferenceSource`` answers one question for one region: which group ids
do my resources reference? ``load_existing_groups`` reads the security group
registry itself, including the group-to-group references in its rules.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, NoCredentialsError

from sgcleanup.groups import ExistingGroup, is_default_vpc_group

logger = logging.getLogger(__name__)


@dataclass
class RegionConfig:
    """Region-scoped client configuration shared by every source of a region."""

    region: str
    session: boto3.Session = field(default_factory=boto3.Session)
    client_config: Config | None = None
    _clients: dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    def client(self, service: str) -> Any:
        if service not in self._clients:
            self._clients[service] = self.session.client(
                service, region_name=self.region, config=self.client_config
            )
        return self._clients[service]


async def _run_blocking(func, *args):
    """Run a blocking boto3 call in a worker thread.

    If the caller is cancelled (a timeout, say) the thread cannot be stopped,
    so the cancellation waits for it to finish before propagating. A task's
    concurrency slot is therefore never freed while its thread still runs.
    """
    future = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        await asyncio.wait([future])
        raise


def _paginate(client: Any, operation: str, key: str) -> Iterator[dict[str, Any]]:
    paginator = client.get_paginator(operation)
    for page in paginator.paginate():
        yield from page.get(key, [])


class ReferenceSource:
    """Base class for a service whose resources attach security groups."""

    name: str = ""
    service: str = ""

    def fetch(self, client: Any) -> set[str]:
        raise NotImplementedError

    async def load(self, config: RegionConfig) -> set[str]:
        # boto3 clients are thread safe but their creation is not, so the
        # client is built here on the event loop thread.
        client = config.client(self.service)
        try:
            return await _run_blocking(self.fetch, client)
        except ClientError as e:
            logger.exception("%s API error in %s: %s", self.name, config.region, e)
            raise
        except NoCredentialsError:
            logger.exception("No AWS credentials")
            raise

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class EC2Source(ReferenceSource):
    """Instances (EC2-Classic and VPC) and every network interface."""

    name = "ec2"
    service = "ec2"

    def fetch(self, client: Any) -> set[str]:
        group_ids: set[str] = set()
        for reservation in _paginate(client, "describe_instances", "Reservations"):
            group_ids.update(g["GroupId"] for g in reservation.get("Groups", []) if g.get("GroupId"))
            for instance in reservation.get("Instances", []):
                group_ids.update(
                    g["GroupId"] for g in instance.get("SecurityGroups", []) if g.get("GroupId")
                )
        for eni in _paginate(client, "describe_network_interfaces", "NetworkInterfaces"):
            group_ids.update(g["GroupId"] for g in eni.get("Groups", []) if g.get("GroupId"))
        return group_ids


class ALBSource(ReferenceSource):
    name = "alb"
    service = "elbv2"

    def fetch(self, client: Any) -> set[str]:
        group_ids: set[str] = set()
        for lb in _paginate(client, "describe_load_balancers", "LoadBalancers"):
            group_ids.update(lb.get("SecurityGroups", []))
        return group_ids


class ElastiCacheSource(ReferenceSource):
    name = "elasticache"
    service = "elasticache"

    def fetch(self, client: Any) -> set[str]:
        group_ids: set[str] = set()
        for cluster in _paginate(client, "describe_cache_clusters", "CacheClusters"):
            group_ids.update(
                g["SecurityGroupId"] for g in cluster.get("SecurityGroups", []) if g.get("SecurityGroupId")
            )
            # EC2-Classic clusters reference cache security groups by name
            group_ids.update(
                g["CacheSecurityGroupName"]
                for g in cluster.get("CacheSecurityGroups", [])
                if g.get("CacheSecurityGroupName")
            )
        return group_ids


class LambdaSource(ReferenceSource):
    name = "lambda"
    service = "lambda"

    def fetch(self, client: Any) -> set[str]:
        group_ids: set[str] = set()
        for function in _paginate(client, "list_functions", "Functions"):
            vpc_config = function.get("VpcConfig") or {}
            group_ids.update(vpc_config.get("SecurityGroupIds", []))
        return group_ids


class RDSSource(ReferenceSource):
    """DB instances and Aurora clusters."""

    name = "rds"
    service = "rds"

    def fetch(self, client: Any) -> set[str]:
        group_ids: set[str] = set()
        for db in _paginate(client, "describe_db_instances", "DBInstances"):
            group_ids.update(
                g["VpcSecurityGroupId"] for g in db.get("VpcSecurityGroups", []) if g.get("VpcSecurityGroupId")
            )
            group_ids.update(
                g["DBSecurityGroupName"] for g in db.get("DBSecurityGroups", []) if g.get("DBSecurityGroupName")
            )
        for cluster in _paginate(client, "describe_db_clusters", "DBClusters"):
            group_ids.update(
                g["VpcSecurityGroupId"]
                for g in cluster.get("VpcSecurityGroups", [])
                if g.get("VpcSecurityGroupId")
            )
        return group_ids


REFERENCE_SOURCES: tuple[ReferenceSource, ...] = (
    EC2Source(),
    LambdaSource(),
    RDSSource(),
    ALBSource(),
    ElastiCacheSource(),
)


def _rule_references(permissions: list[dict[str, Any]]) -> Iterator[str]:
    for permission in permissions:
        for pair in permission.get("UserIdGroupPairs", []):
            if pair.get("GroupId"):
                yield pair["GroupId"]


def existing_group_from_api(sg: dict[str, Any], region: str) -> ExistingGroup:
    """Build an ExistingGroup from one describe_security_groups item."""
    references = set(_rule_references(sg.get("IpPermissions", [])))
    references.update(_rule_references(sg.get("IpPermissionsEgress", [])))
    return ExistingGroup(
        region=region,
        group_id=sg.get("GroupId", ""),
        group_name=sg.get("GroupName", ""),
        description=sg.get("Description", ""),
        references=frozenset(references),
        vpc_id=sg.get("VpcId"),
    )


def fetch_existing_groups(ec2_client: Any, region: str) -> list[ExistingGroup]:
    """
    List the security groups of a region, without default VPC groups.

    Args:
        ec2_client: boto3 EC2 client for the region.
        region: Region name (for result attribution).

    Returns:
        One ExistingGroup per security group, with the ids its ingress and
        egress rules point at (never its own id).
    """
    groups = [
        existing_group_from_api(sg, region)
        for sg in _paginate(ec2_client, "describe_security_groups", "SecurityGroups")
    ]
    return [g for g in groups if not is_default_vpc_group(g)]


async def load_existing_groups(config: RegionConfig) -> list[ExistingGroup]:
    client = config.client("ec2")
    try:
        return await _run_blocking(fetch_existing_groups, client, config.region)
    except ClientError as e:
        logger.exception("EC2 API error in %s: %s", config.region, e)
        raise
    except NoCredentialsError:
        logger.exception("No AWS credentials")
        raise
