"""Security group data model and the reference graph used to find unused groups."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

GroupId = str
SourceTag = str

# Default VPC groups cannot be deleted, so they are never loaded at all.
DEFAULT_VPC_DESCRIPTION = "default VPC security group"


def security_group_console_url(region: str, group_id: str) -> str:
    """AWS EC2 console URL for a security group."""
    return (
        f"https://{region}.console.aws.amazon.com/ec2/home"
        f"?region={region}#SecurityGroup:groupId={group_id}"
    )


def source_tag(source_name: str, region: str) -> SourceTag:
    return f"{source_name}@{region}"


def source_region(tag: SourceTag) -> str | None:
    """Region part of a source tag (``"lambda@eu-west-1"`` -> ``"eu-west-1"``)."""
    _, sep, region = tag.rpartition("@")
    return region if sep else None


def is_default_vpc_group(group: ExistingGroup) -> bool:
    return group.description == DEFAULT_VPC_DESCRIPTION


@dataclass(frozen=True)
class GroupReference:
    """Some non-registry resource (``source``) uses ``group_id``."""

    group_id: GroupId
    source: SourceTag


@dataclass(frozen=True)
class ExistingGroup:
    """A security group present in the registry of one region."""

    region: str
    group_id: GroupId
    group_name: str
    description: str
    references: frozenset[GroupId] = field(default_factory=frozenset)
    vpc_id: str | None = None

    def __post_init__(self) -> None:
        refs = frozenset(self.references)
        object.__setattr__(self, "references", refs - {self.group_id})

    @property
    def console_url(self) -> str:
        return security_group_console_url(self.region, self.group_id)


def tag_group_ids(source: SourceTag, group_ids: Iterable[GroupId]) -> list[GroupReference]:
    """One reference per distinct group id, in first-seen order."""
    return [GroupReference(group_id, source) for group_id in dict.fromkeys(group_ids)]


@dataclass
class SecurityGroups:
    """Everything loaded about security groups in one or more regions.

    ``external_references`` maps a group id to the source tags that use it.
    Lists are concatenated on merge, so a tag may repeat when the same
    aggregate is merged twice. ``existing_groups`` is a plain list and is
    never deduplicated, but default VPC groups are dropped however they
    arrive (constructor, ``add_existing`` or ``merge``).
    """

    external_references: dict[GroupId, list[SourceTag]] = field(default_factory=dict)
    existing_groups: list[ExistingGroup] = field(default_factory=list)

    def __post_init__(self) -> None:
        existing, self.existing_groups = self.existing_groups, []
        self.add_existing(existing)

    @classmethod
    def from_references(cls, references: Iterable[GroupReference]) -> SecurityGroups:
        groups = cls()
        groups.add_references(references)
        return groups

    @classmethod
    def from_existing(cls, existing: Iterable[ExistingGroup]) -> SecurityGroups:
        return cls(existing_groups=list(existing))

    def add_references(self, references: Iterable[GroupReference]) -> None:
        for ref in references:
            self.external_references.setdefault(ref.group_id, []).append(ref.source)

    def add_existing(self, existing: Iterable[ExistingGroup]) -> None:
        for group in existing:
            if is_default_vpc_group(group):
                logger.debug("skipping default VPC group %s@%s", group.group_id, group.region)
                continue
            self.existing_groups.append(group)

    def merge(self, other: SecurityGroups) -> None:
        """Fold ``other`` into this aggregate in place."""
        for group_id, sources in list(other.external_references.items()):
            self.external_references.setdefault(group_id, []).extend(list(sources))
        self.add_existing(list(other.existing_groups))

    def _referrers(self) -> dict[GroupId, list[GroupId]]:
        """Reverse index: group id -> ids of existing groups whose rules point at it."""
        index: dict[GroupId, list[GroupId]] = {}
        for group in self.existing_groups:
            for target in group.references:
                index.setdefault(target, []).append(group.group_id)
        return index

    def collect_referencing_services(
        self,
        group_id: GroupId,
        visited: frozenset[GroupId] = frozenset(),
        *,
        _referrers: dict[GroupId, list[GroupId]] | None = None,
    ) -> set[SourceTag]:
        """Every source tag that uses ``group_id`` directly or through other groups.

        ``visited`` holds the ancestors of ``group_id`` on the current path.
        A group is skipped only while it is an ancestor, so the same group can
        still be expanded again from a sibling branch. Ids unknown to the
        aggregate simply contribute nothing.
        """
        referrers = self._referrers() if _referrers is None else _referrers
        found: set[SourceTag] = set()
        stack: list[tuple[GroupId, frozenset[GroupId]]] = [(group_id, frozenset(visited))]
        while stack:
            node, ancestors = stack.pop()
            found.update(self.external_references.get(node, ()))
            path = ancestors | {node}
            for referrer in referrers.get(node, ()):
                if referrer not in path:
                    stack.append((referrer, path))
        return found

    def referencing_services_by_group(self) -> dict[GroupId, set[SourceTag]]:
        """``collect_referencing_services`` for every existing group."""
        referrers = self._referrers()
        return {
            group.group_id: self.collect_referencing_services(group.group_id, _referrers=referrers)
            for group in self.existing_groups
        }

    def find_unused(self) -> list[ExistingGroup]:
        referenced = self.referencing_services_by_group()
        return [group for group in self.existing_groups if not referenced[group.group_id]]

    def by_region(self) -> dict[str, SecurityGroups]:
        """Split into one aggregate per region.

        Group ids are only unique within a region, so reachability over a
        multi-region aggregate could link unrelated groups that happen to share
        an id. Tags without a region suffix are dropped.
        """
        split: dict[str, SecurityGroups] = {}
        for group_id, sources in self.external_references.items():
            for tag in sources:
                region = source_region(tag)
                if region is None:
                    logger.warning("dropping source tag without region: %s", tag)
                    continue
                regional = split.setdefault(region, SecurityGroups())
                regional.external_references.setdefault(group_id, []).append(tag)
        for group in self.existing_groups:
            split.setdefault(group.region, SecurityGroups()).existing_groups.append(group)
        return split

    def summary(self) -> dict[str, Any]:
        return {
            "referenced_ids": len(self.external_references),
            "existing_groups": len(self.existing_groups),
        }
