"""
Terraform output parsing — best-effort metadata from apply output.

The exit code decides success.  These parsers only pull out what the
ledger and the success message want to show:

    aws_vpc.main: Creation complete after 2s [id=vpc-0abc123]
    Apply complete! Resources: 5 added, 0 changed, 0 destroyed.

Output that does not match is ignored.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from cloudforge.core.models.resource import ResourceRecord
from cloudforge.core.services.tf_compiler import CompiledConfig

logger = logging.getLogger(__name__)

_CREATED_RE = re.compile(
    r"^(?P<address>[\w.\-\[\]\"]+): Creation complete after (?P<elapsed>\S+)"
    r"(?: \[id=(?P<id>[^\]]*)\])?\s*$"
)
_SUMMARY_RE = re.compile(
    r"Apply complete! Resources: (?P<added>\d+) added, "
    r"(?P<changed>\d+) changed, (?P<destroyed>\d+) destroyed"
)

# Primitives whose resources are reported as "running" instead of "available"
_RUNNING_PRIMITIVES = frozenset({"instance"})


@dataclass(frozen=True)
class CreatedResource:
    address: str
    id: str
    elapsed: str


@dataclass(frozen=True)
class ApplySummary:
    added: int
    changed: int
    destroyed: int

    def describe(self) -> str:
        return f"{self.added} added, {self.changed} changed, {self.destroyed} destroyed"


def parse_created(line: str) -> CreatedResource | None:
    m = _CREATED_RE.match(line.strip())
    if not m or not m.group("id"):
        return None
    return CreatedResource(address=m.group("address"), id=m.group("id"), elapsed=m.group("elapsed"))


def parse_apply_summary(line: str) -> ApplySummary | None:
    m = _SUMMARY_RE.search(line)
    if not m:
        return None
    return ApplySummary(
        added=int(m.group("added")),
        changed=int(m.group("changed")),
        destroyed=int(m.group("destroyed")),
    )


@dataclass
class ApplyTranscript:
    """What the orchestrator learned from a deployment's stdout.

    Collected independently of the event consumer, so a slow or
    vanished client cannot change what gets recorded.
    """

    created: list[CreatedResource] = field(default_factory=list)
    summary: ApplySummary | None = None
    lines: int = 0

    def feed(self, line: str) -> None:
        self.lines += 1
        created = parse_created(line)
        if created is not None:
            # Same address twice means the later id wins
            self.created = [c for c in self.created if c.address != created.address]
            self.created.append(created)
            return
        summary = parse_apply_summary(line)
        if summary is not None:
            self.summary = summary


def to_records(
    transcript: ApplyTranscript,
    compiled: CompiledConfig,
    *,
    region: str,
    deployment_id: str,
) -> list[ResourceRecord]:
    """Map created resources onto ledger records.

    Addresses from the compiled manifest get their ledger type and
    name; anything else keeps its Terraform resource type.
    """
    records: list[ResourceRecord] = []
    for created in transcript.created:
        planned = compiled.planned(created.address)
        if planned is not None:
            rtype, name, primitive = planned.type, planned.name, planned.primitive
        else:
            logger.debug("Created resource %s is not in the manifest", created.address)
            rtype, name, primitive = created.address.split(".", 1)[0], "", ""

        records.append(ResourceRecord(
            id=created.id,
            type=rtype,
            name=name,
            status="running" if primitive in _RUNNING_PRIMITIVES else "available",
            region=region,
            details={
                "address": created.address,
                "provider": compiled.provider,
                "deployment_id": deployment_id,
                "elapsed": created.elapsed,
            },
        ))
    return records
