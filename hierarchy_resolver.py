"""
Session / identity hierarchy resolution.

An access event can carry several identity ids at once (a user, their
institution, the consortium the institution belongs to, the guest identity,
...). This module decides which one the access is attributed to, how each of
the others participated, and which syndicate group shared the entitlement.

Resolution order for an event with a session id:
  1. session cache (by session id)
  2. dim_ics_session joined to dim_identity
  3. membership cache (by explicit primary + sorted identity ids), which lets
     another session with the same identities on the same day skip
     classification but still get its own session and participation rows
  4. full classification against the identity service's hierarchy paths
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from dimension_cache import CacheRegistry
from dimensions import DIMENSIONS, DimensionResolver
from identity_store import (
    GUEST_IDENTITY,
    HIERARCHY,
    INDIVIDUAL,
    IdentityRecord,
    IdentityStore,
)
from sequencer import Sequencer
from warehouse import Warehouse, retry_on_conflict

ROLE_PRIMARY = "primary"
ROLE_SHARED = "shared"
ROLE_INDIVIDUAL = "individual"
ROLE_INHERITED = "inherited"

GUEST_DEPTH = -1


@dataclass(frozen=True)
class SessionResolution:
    session_key: Optional[int] = None
    identity_key_primary: Optional[int] = None
    include_identity: Optional[bool] = None
    country_key_inst: Optional[int] = None
    syndicategroup_key: Optional[int] = None
    participations: Tuple[Tuple[int, str], ...] = ()


class HierarchyGraph:
    """Directed parent -> child graph built from ancestor path listings."""

    def __init__(self):
        self.nodes: Set[str] = set()
        self.children: Dict[str, Set[str]] = defaultdict(set)
        self.parents: Dict[str, Set[str]] = defaultdict(set)

    @classmethod
    def from_paths(cls, paths: Iterable[Sequence[str]]) -> "HierarchyGraph":
        graph = cls()
        for path in paths:
            graph.add_path(path)
        return graph

    def add_path(self, path: Sequence[str]) -> None:
        """path runs from an identity up to its root: [self, parent, ..., root]."""
        for i, node in enumerate(path):
            self.nodes.add(node)
            if i + 1 < len(path):
                self.add_edge(path[i + 1], node)

    def add_edge(self, parent: str, child: str) -> None:
        if parent == child:
            return
        self.nodes.update((parent, child))
        self.children[parent].add(child)
        self.parents[child].add(parent)

    def depths(self) -> Dict[str, int]:
        """
        Longest distance from a root, roots being depth 1. Computed by
        relaxing every edge until nothing changes; the pass count is capped at
        the node count, so a cyclic listing still terminates.
        """
        depth = {node: 1 for node in self.nodes}
        edges = sorted(
            (parent, child) for parent, kids in self.children.items() for child in kids
        )
        for _ in range(len(self.nodes)):
            changed = False
            for parent, child in edges:
                if depth[parent] + 1 > depth[child]:
                    depth[child] = depth[parent] + 1
                    changed = True
            if not changed:
                break
        return depth

    def descendants(self, node: str) -> Set[str]:
        return self._walk(node, self.children, stop=frozenset())

    def ancestors(self, node: str, stop: Iterable[str] = ()) -> Set[str]:
        """Ancestors of node, neither including nor climbing past any stop node."""
        return self._walk(node, self.parents, stop=frozenset(stop))

    @staticmethod
    def _walk(start, edges, stop):
        seen: Set[str] = set()
        stack = list(edges.get(start, ()))
        while stack:
            node = stack.pop()
            if node in seen or node in stop:
                continue
            seen.add(node)
            stack.extend(edges.get(node, ()))
        return seen


class HierarchyResolver:
    def __init__(
        self,
        service,
        store: IdentityStore,
        warehouse: Warehouse,
        sequencer: Sequencer,
        resolver: DimensionResolver,
        caches: CacheRegistry,
        session_batch_size: int = 1000,
        logger: Optional[logging.Logger] = None,
    ):
        self.service = service
        self.store = store
        self.warehouse = warehouse
        self.sequencer = sequencer
        self.resolver = resolver
        self.session_cache = caches.cache("ics_session")
        self.membership_cache = caches.cache("session_identity")
        self.session_batch_size = session_batch_size
        self.logger = logger or logging.getLogger("etl.hierarchy")

    def resolve(
        self,
        identity_ids: Sequence[str],
        session_id: Optional[str] = None,
        primary_id: Optional[str] = None,
    ) -> Optional[SessionResolution]:
        """
        Returns the resolution for the event, or None when the primary identity
        cannot be read, in which case the event must be abandoned.
        """
        if session_id:
            return self._resolve_session(identity_ids, session_id, primary_id)
        if primary_id:
            primary = self.store.by_external_id(primary_id)
            if primary is None:
                self.logger.warning(f"No record saved for primary identity {primary_id}")
                return None
            return SessionResolution(
                identity_key_primary=primary.key,
                include_identity=primary.include_identity,
                country_key_inst=primary.country_key,
            )
        return SessionResolution()

    def _resolve_session(self, identity_ids, session_id, primary_id):
        max_length = DIMENSIONS["ics_session"].max_length
        session_id = session_id[:max_length]
        cached = self.session_cache.get(session_id)
        if cached is not None:
            return cached

        membership = (primary_id or "", tuple(sorted(set(identity_ids))))

        def fetch_or_insert():
            row = self.warehouse.fetchone(
                """
                SELECT s.ics_session_key, s.identity_key_primary, i.include_identity,
                       i.country_key, s.syndicategroup_key
                FROM dim_ics_session s
                JOIN dim_identity i ON i.identity_key = s.identity_key_primary
                WHERE s.ics_session_id = ?
                """,
                [session_id],
            )
            if row:
                return SessionResolution(*row)

            template = self.membership_cache.get(membership)
            if template is None:
                template = self.classify(membership[1], primary_id)
                if template is None:
                    return None
                self.membership_cache.set(membership, template)

            session_key = self.sequencer.next("ics_session", self.session_batch_size)
            self.warehouse.execute(
                """
                INSERT INTO dim_ics_session
                    (ics_session_key, ics_session_id, identity_key_primary, syndicategroup_key)
                VALUES (?, ?, ?, ?)
                """,
                [
                    session_key,
                    session_id,
                    template.identity_key_primary,
                    template.syndicategroup_key,
                ],
            )
            for identity_key, role in template.participations:
                self.warehouse.execute(
                    """
                    INSERT INTO dim_session_identity
                        (ics_session_key, identity_key, participation_type)
                    VALUES (?, ?, ?)
                    """,
                    [session_key, identity_key, role],
                )
            return replace(template, session_key=session_key)

        resolution = retry_on_conflict(
            fetch_or_insert, f"dim_ics_session {session_id!r}", self.logger
        )
        if resolution is not None:
            self.session_cache.set(session_id, resolution)
        return resolution

    def classify(
        self, identity_ids: Iterable[str], primary_id: Optional[str] = None
    ) -> Optional[SessionResolution]:
        """
        Work out the primary identity and every identity's participation role.
        The result has no session key; it is shared by all sessions with the
        same membership.
        """
        idents: Dict[str, IdentityRecord] = {}
        for identity_id in sorted(set(identity_ids)):
            record = self.store.by_external_id(identity_id)
            if record is not None:
                idents[identity_id] = record

        group_ids = [
            i for i, rec in idents.items() if rec.is_institution and rec.share_subscriptions
        ]

        if primary_id:
            shared = self._shared_with_primary(idents, primary_id)
        else:
            primary_id, shared = self._infer_primary(idents, group_ids)

        primary = self.store.by_external_id(primary_id)
        if primary is None:
            self.logger.warning(f"No record saved for primary identity {primary_id}")
            return None

        syndicategroup_key = self._syndicate_group(
            sorted(idents[i].key for i in group_ids)
        )

        participations: List[Tuple[int, str]] = []
        for identity_id, record in idents.items():
            if identity_id == primary_id:
                role = ROLE_PRIMARY
            elif identity_id in shared:
                role = ROLE_SHARED
            elif record.classification == INDIVIDUAL:
                role = ROLE_INDIVIDUAL
            else:
                role = ROLE_INHERITED
            participations.append((record.key, role))

        return SessionResolution(
            identity_key_primary=primary.key,
            include_identity=primary.include_identity,
            country_key_inst=primary.country_key,
            syndicategroup_key=syndicategroup_key,
            participations=tuple(participations),
        )

    def _shared_with_primary(self, idents, primary_id) -> Set[str]:
        """Institutions that have the known primary among their ancestors."""
        shared = set()
        for identity_id, record in idents.items():
            if identity_id == primary_id or not record.is_institution:
                continue
            paths = self.service.read_identity_paths(identity_id)
            if paths and any(primary_id in path for path in paths):
                shared.add(identity_id)
        return shared

    def _infer_primary(self, idents, group_ids) -> Tuple[str, Set[str]]:
        paths = []
        for identity_id, record in idents.items():
            # Hierarchy-only nodes show up in their members' paths anyway
            if record.classification == HIERARCHY:
                continue
            paths.extend(self.service.read_identity_paths(identity_id) or [])
        graph = HierarchyGraph.from_paths(paths)
        depths = graph.depths()

        # Members of a shared-subscription institution are covered by it
        shared: Set[str] = set()
        for group_id in group_ids:
            shared.update(idents.keys() & graph.descendants(group_id))

        # Institutions above an individual only provide inherited access
        ignorable: Set[str] = set()
        for identity_id, record in idents.items():
            if record.classification == INDIVIDUAL:
                ignorable.update(idents.keys() & graph.ancestors(identity_id, stop=group_ids))

        best_id, best_depth = None, None
        for identity_id, record in idents.items():
            if (
                identity_id in shared
                or identity_id in ignorable
                or record.classification in (HIERARCHY, INDIVIDUAL)
            ):
                continue
            depth = GUEST_DEPTH if identity_id == GUEST_IDENTITY else depths.get(identity_id, 0)
            # Strictly deeper wins, so ties keep the lowest identity id
            if best_id is None or depth > best_depth:
                best_id, best_depth = identity_id, depth

        return best_id or GUEST_IDENTITY, shared

    def _syndicate_group(self, member_keys: List[int]) -> Optional[int]:
        if not member_keys:
            return None
        group_value = ",".join(str(k) for k in member_keys)
        key, existed = self.resolver.resolve_checked(
            group_value, DIMENSIONS["syndicategroup"]
        )
        if key is not None and not existed:
            for member_key in member_keys:
                self.warehouse.execute(
                    """
                    INSERT INTO dim_syndicategroup_identity (syndicategroup_key, identity_key)
                    VALUES (?, ?)
                    """,
                    [key, member_key],
                )
        return key
