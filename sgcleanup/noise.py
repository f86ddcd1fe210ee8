"""Create throwaway security groups to try the cleaner against."""

from __future__ import annotations

import hashlib
import logging
import secrets

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


def noise_group_name() -> str:
    digest = hashlib.sha1(secrets.token_bytes(64)).hexdigest()
    return f"noise-{digest}"


def make_noise(
    count: int = 20,
    *,
    session: boto3.Session | None = None,
    region: str | None = None,
) -> list[str]:
    """Create ``count`` empty security groups in the default VPC. Returns their ids."""
    session = session or boto3.Session()
    ec2 = session.client("ec2", region_name=region) if region else session.client("ec2")
    created: list[str] = []
    for _ in range(count):
        name = noise_group_name()
        logger.info("creating security group %s", name)
        try:
            response = ec2.create_security_group(GroupName=name, Description=name)
        except ClientError as e:
            logger.exception("EC2 API error while creating %s: %s", name, e)
            raise
        created.append(response["GroupId"])
    return created
