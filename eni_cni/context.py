"""Per-invocation context threaded through every component."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

RUN_ID_LENGTH = 8


def run_id(container_id: str) -> str:
    """Short id used to key on-disk state (first 8 characters)."""
    return container_id[:RUN_ID_LENGTH]


def workdir_for(container_id: str, state_root: str | Path) -> Path:
    """Working directory for a container, e.g. /tmp/cni-0123abcd."""
    return Path(state_root) / f"cni-{run_id(container_id)}"


@dataclass(frozen=True)
class InvocationContext:
    """Everything one plugin invocation knows about itself and its host.

    Built once by MetadataResolver.resolve() and never mutated.
    """

    container_id: str
    netns: str
    ifname: str
    args: str
    workdir: Path
    instance_id: str
    region: str
    availability_zone: str
    subnet_id: str
    primary_mac: str
