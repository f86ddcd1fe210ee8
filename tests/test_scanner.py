"""Tests for sgcleanup/scanner.py."""

from __future__ import annotations

import asyncio
import threading
import time
from unittest.mock import MagicMock

from botocore.exceptions import ClientError

from sgcleanup.config import Settings
from sgcleanup.groups import DEFAULT_VPC_DESCRIPTION, ExistingGroup, GroupReference, SecurityGroups
from sgcleanup.scanner import (
    GroupReport,
    LoadResult,
    RegionScanResult,
    build_region_results,
    delete_unused_groups,
    load_security_groups,
    scan_all_regions,
)
from sgcleanup.sources import ReferenceSource
from tests.sg_test_utils import describe_security_groups_page, paginated_client, sg_item


def _failing_client(code: str = "UnauthorizedOperation") -> MagicMock:
    client = MagicMock()
    client.get_paginator.side_effect = ClientError({"Error": {"Code": code, "Message": "nope"}}, "List")
    return client


def fake_session(clients: dict[tuple[str, str], MagicMock]) -> MagicMock:
    """Session whose client(service, region_name) comes from ``clients`` (empty client otherwise)."""
    session = MagicMock()

    def client(service, region_name=None, config=None):
        return clients.get((service, region_name)) or paginated_client({})

    session.client.side_effect = client
    return session


US_EAST_1 = {
    ("ec2", "us-east-1"): paginated_client(
        {
            "describe_instances": [
                {"Reservations": [{"Instances": [{"SecurityGroups": [{"GroupId": "sg-app"}]}]}]}
            ],
            "describe_security_groups": [
                describe_security_groups_page(
                    sg_item("sg-app", egress=["sg-cache"]),
                    sg_item("sg-cache"),
                    sg_item("sg-lb"),
                    sg_item("sg-orphan"),
                    sg_item("sg-default", description=DEFAULT_VPC_DESCRIPTION),
                )
            ],
        }
    ),
    ("elbv2", "us-east-1"): paginated_client(
        {"describe_load_balancers": [{"LoadBalancers": [{"SecurityGroups": ["sg-lb"]}]}]}
    ),
}


def test_scan_all_regions_reports_users_and_unused_groups():
    clients = dict(US_EAST_1)
    clients[("lambda", "eu-west-1")] = _failing_client()
    session = fake_session(clients)

    results = scan_all_regions(["us-east-1", "eu-west-1"], session=session)

    us, eu = results
    assert us.region == "us-east-1"
    assert us.error is None
    by_id = {g.group_id: g for g in us.groups}
    assert list(by_id) == ["sg-app", "sg-cache", "sg-lb", "sg-orphan"]
    assert by_id["sg-app"].referenced_by == ["ec2@us-east-1"]
    assert by_id["sg-cache"].referenced_by == ["ec2@us-east-1"]
    assert by_id["sg-lb"].referenced_by == ["alb@us-east-1"]
    assert [g.group_id for g in us.unused] == ["sg-orphan"]

    assert eu.region == "eu-west-1"
    assert eu.groups == []
    assert "lambda" in eu.error
    assert "UnauthorizedOperation" in eu.error


def test_failed_registry_marks_region_failed():
    session = fake_session({("ec2", "us-east-1"): _failing_client("AuthFailure")})
    results = scan_all_regions(["us-east-1"], session=session)
    assert results[0].error is not None
    assert results[0].unused == []


class SlowSource(ReferenceSource):
    name = "slow"
    service = "slow"

    async def load(self, config):
        await asyncio.sleep(5)
        return {"sg-x"}


def test_timeout_marks_region_failed():
    session = fake_session({})
    load = asyncio.run(
        load_security_groups(
            ["us-east-1"],
            session=session,
            settings=Settings(task_timeout=0.01),
            sources=(SlowSource(),),
        )
    )
    assert "slow: timed out" in load.errors["us-east-1"][0]
    assert load.groups.external_references == {}


class BlockingSource(ReferenceSource):
    """Sleeps in its worker thread, past the task timeout."""

    name = "blocking"
    service = "blocking"

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.lock = threading.Lock()
        self.running = 0
        self.peak = 0

    def fetch(self, client):
        with self.lock:
            self.running += 1
            self.peak = max(self.peak, self.running)
        time.sleep(self.seconds)
        with self.lock:
            self.running -= 1
        return {"sg-x"}


def test_timed_out_thread_keeps_its_slot():
    source = BlockingSource(0.2)
    regions = ["us-east-1", "us-west-2", "eu-west-1", "ap-south-1"]
    load = asyncio.run(
        load_security_groups(
            regions,
            session=fake_session({}),
            settings=Settings(max_in_flight=2, task_timeout=0.05),
            sources=(source,),
        )
    )
    assert source.peak <= 2
    assert source.running == 0
    assert sorted(load.errors) == sorted(regions)
    assert all("blocking: timed out" in errors[0] for errors in load.errors.values())


def test_task_timeout_bounds_boto3_clients():
    session = fake_session({})
    asyncio.run(load_security_groups(["us-east-1"], session=session, settings=Settings(task_timeout=3)))
    configs = [call.kwargs["config"] for call in session.client.call_args_list]
    assert configs
    assert all(c.read_timeout == 3 and c.connect_timeout == 3 for c in configs)


def test_load_uses_one_task_per_source_and_region():
    session = fake_session({})
    load = asyncio.run(load_security_groups(["us-east-1", "us-west-2", "eu-west-1"], session=session))
    assert load.errors == {}
    # five services plus the registry, per region, each with its own client
    services = {call.args[0] for call in session.client.call_args_list}
    assert services == {"ec2", "elbv2", "elasticache", "lambda", "rds"}
    assert session.client.call_count == 15


def test_build_region_results_for_region_without_groups():
    groups = SecurityGroups()
    groups.add_references([GroupReference("sg-1", "ec2@us-east-1")])
    groups.add_existing([ExistingGroup("us-east-1", "sg-1", "web", "web")])
    results = build_region_results(LoadResult(groups=groups), ["us-east-1", "sa-east-1"])
    assert results[0].groups[0].referenced_by == ["ec2@us-east-1"]
    assert results[1] == RegionScanResult(region="sa-east-1")


def test_region_result_to_dict():
    report = GroupReport("us-east-1", "sg-1", "web", "web tier", None)
    result = RegionScanResult(region="us-east-1", groups=[report])
    data = result.to_dict()
    assert data["count"] == 1
    assert data["unused_count"] == 1
    assert data["groups"][0]["unused"] is True
    assert data["groups"][0]["console_url"] == report.console_url


def _report(group_id: str, region: str = "us-east-1") -> GroupReport:
    return GroupReport(region, group_id, f"name-{group_id}", "test", "vpc-1")


def _dependency_violation() -> ClientError:
    return ClientError(
        {"Error": {"Code": "DependencyViolation", "Message": "has a dependent object"}},
        "DeleteSecurityGroup",
    )


def test_delete_retries_groups_blocked_by_other_unused_groups():
    ec2 = MagicMock()
    attempts = {"sg-a": 0}

    def delete(GroupId):
        if GroupId == "sg-a" and attempts["sg-a"] == 0:
            attempts["sg-a"] += 1
            raise _dependency_violation()

    ec2.delete_security_group.side_effect = delete
    session = MagicMock()
    session.client.return_value = ec2

    results = [RegionScanResult(region="us-east-1", groups=[_report("sg-a"), _report("sg-b")])]
    outcome = delete_unused_groups(results, session=session)

    assert [g.group_id for g in outcome.deleted] == ["sg-b", "sg-a"]
    assert outcome.failed == []
    assert ec2.delete_security_group.call_count == 3


def test_delete_stops_when_a_pass_makes_no_progress():
    ec2 = MagicMock()
    ec2.delete_security_group.side_effect = _dependency_violation()
    session = MagicMock()
    session.client.return_value = ec2

    results = [RegionScanResult(region="us-east-1", groups=[_report("sg-a"), _report("sg-b")])]
    outcome = delete_unused_groups(results, session=session, passes=5)

    assert outcome.deleted == []
    assert [g.group_id for g, _ in outcome.failed] == ["sg-a", "sg-b"]
    assert ec2.delete_security_group.call_count == 2


def test_delete_skips_failed_regions_and_used_groups():
    ec2 = MagicMock()
    ec2.delete_security_group.side_effect = [
        ClientError({"Error": {"Code": "InvalidGroup.NotFound", "Message": "gone"}}, "DeleteSecurityGroup"),
    ]
    session = MagicMock()
    session.client.return_value = ec2
    used = _report("sg-used")
    used.referenced_by = ["ec2@us-east-1"]

    results = [
        RegionScanResult(region="us-east-1", groups=[used, _report("sg-gone")]),
        RegionScanResult(region="eu-west-1", error="lambda: denied"),
    ]
    outcome = delete_unused_groups(results, session=session)

    session.client.assert_called_once_with("ec2", region_name="us-east-1")
    ec2.delete_security_group.assert_called_once_with(GroupId="sg-gone")
    assert outcome.deleted == []
    assert [g.group_id for g, _ in outcome.failed] == ["sg-gone"]
