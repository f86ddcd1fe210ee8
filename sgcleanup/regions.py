"""AWS regions to scan."""

from __future__ import annotations

import logging

import boto3
from botocore.exceptions import ClientError, NoCredentialsError

logger = logging.getLogger(__name__)

REGIONS = [
    # United States
    "us-east-1",   # N. Virginia
    "us-east-2",   # Ohio
    "us-west-1",   # N. California
    "us-west-2",   # Oregon
    # Asia Pacific
    "ap-south-1",      # Mumbai
    "ap-northeast-3",  # Osaka
    "ap-northeast-2",  # Seoul
    "ap-southeast-1",  # Singapore
    "ap-southeast-2",  # Sydney
    "ap-northeast-1",  # Tokyo
    # Canada
    "ca-central-1",
    # Europe
    "eu-central-1",  # Frankfurt
    "eu-west-1",     # Ireland
    "eu-west-2",     # London
    "eu-west-3",     # Paris
    "eu-north-1",    # Stockholm
    # South America
    "sa-east-1",    # São Paulo
]


def get_regions(subset: list[str] | None = None) -> list[str]:
    """Return regions to scan. If subset is given, filter to those (invalid codes are skipped)."""
    if subset is None:
        return list(REGIONS)
    valid = set(REGIONS)
    skipped = [r for r in subset if r not in valid]
    if skipped:
        logger.warning("ignoring unknown regions: %s", ", ".join(skipped))
    return [r for r in subset if r in valid]


def discover_regions(session: boto3.Session | None = None) -> list[str]:
    """Regions enabled for the account, as reported by describe_regions."""
    session = session or boto3.Session()
    logger.info("loading regions")
    try:
        ec2 = session.client("ec2")
        response = ec2.describe_regions()
    except ClientError as e:
        logger.exception("EC2 API error while listing regions: %s", e)
        raise
    except NoCredentialsError:
        logger.exception("No AWS credentials")
        raise
    return sorted(r["RegionName"] for r in response.get("Regions", []))
