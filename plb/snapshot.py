from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import StructuralError
from .records import Backend, decode, to_backend
from .tree import TreeNode

logger = logging.getLogger(__name__)

MEMBERS = "members"
LEADER = "leader"


@dataclass(frozen=True)
class ClusterSnapshot:
    primary: Backend | None
    replicas: tuple[Backend, ...]
    leader: str | None = None


def build_snapshot(root: TreeNode) -> ClusterSnapshot:
    """Derive the primary and the routable replicas from a scope mirror.

    A single undecodable record aborts the whole build, as does a missing
    members node or more than one member claiming the primary role.
    """
    members_node = root.children.get(MEMBERS)
    if members_node is None:
        raise StructuralError(f"{root.path}: tree is in invalid state, no '{MEMBERS}' node")

    backends: dict[str, Backend] = {}
    primaries: list[tuple[str, Backend]] = []
    for name in sorted(members_node.children):
        member = members_node.children[name]
        backend = to_backend(decode(member.value))
        backends[name] = backend
        if backend.is_primary:
            primaries.append((name, backend))

    if len(primaries) > 1:
        names = ", ".join(name for name, _ in primaries)
        raise StructuralError(f"{members_node.path}: more than one primary member ({names})")

    leader_node = root.children.get(LEADER)
    leader = leader_node.value.decode("utf-8", "replace").strip() if leader_node is not None else None
    primary = primaries[0][1] if primaries else None
    primary_name = primaries[0][0] if primaries else None
    if leader and primary_name is not None and leader != primary_name:
        logger.warning("Leader record names %r but member %r reports the primary role", leader, primary_name)

    # Server names must be unique within a backend section; members sharing
    # an address collapse into the first by member name.
    replicas: dict[str, Backend] = {}
    for name, backend in backends.items():
        if not backend.is_running or backend.is_primary:
            continue
        if backend.id in replicas:
            logger.warning("Member %r has the same address as another replica (%s), skipped", name, backend.host)
            continue
        replicas[backend.id] = backend
    ordered = tuple(replicas[i] for i in sorted(replicas))
    return ClusterSnapshot(primary=primary, replicas=ordered, leader=leader or None)
