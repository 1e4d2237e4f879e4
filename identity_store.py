import logging
from dataclasses import dataclass
from typing import Dict, Optional

from dimensions import DIMENSIONS, DimensionResolver
from sequencer import Sequencer
from warehouse import Warehouse, retry_on_conflict

UNKNOWN_IDENTITY = "__UNKNOWN__"
GUEST_IDENTITY = "guest"

INDIVIDUAL = "individual"
INSTITUTION = "institution"
HIERARCHY = "hierarchy"
CONSORTIUM = "consortium"
NETWORK = "network"


@dataclass(frozen=True)
class IdentityRecord:
    identity_id: str
    classification: Optional[str]
    country: Optional[str]
    share_subscriptions: bool
    include_identity: bool
    country_key: Optional[int]
    key: int

    @property
    def is_institution(self) -> bool:
        return self.classification == INSTITUTION


class IdentityStore:
    """
    Identity attributes fetched from the identity service, mirrored into
    dim_identity and cached for the rest of the run by external id and by
    surrogate key. A failed lookup is cached too, so it is reported once and
    never retried within the run.
    """

    def __init__(
        self,
        service,
        warehouse: Warehouse,
        sequencer: Sequencer,
        resolver: DimensionResolver,
        logger: Optional[logging.Logger] = None,
    ):
        self.service = service
        self.warehouse = warehouse
        self.sequencer = sequencer
        self.resolver = resolver
        self.logger = logger or logging.getLogger("etl.identity_store")
        self._by_id: Dict[str, Optional[IdentityRecord]] = {}
        self._by_key: Dict[int, Optional[IdentityRecord]] = {}
        if warehouse.dry_run:
            warehouse.add_reconnect_listener(self.clear)

    def by_external_id(self, identity_id: Optional[str]) -> Optional[IdentityRecord]:
        if identity_id is None:
            return None
        if identity_id in self._by_id:
            return self._by_id[identity_id]

        if identity_id == UNKNOWN_IDENTITY:
            attrs = {
                "classification": UNKNOWN_IDENTITY,
                "country": None,
                "share_subscriptions": False,
                "include_identity": True,
            }
        else:
            attrs = self.service.read_identity(identity_id)
            if attrs is None:
                self.logger.warning(f"Can't read identity {identity_id}")
                self._by_id[identity_id] = None
                return None

        country_key = self.resolver.resolve(attrs["country"], DIMENSIONS["country"])
        classification = attrs["classification"]
        include_identity = bool(attrs["include_identity"])

        # Attributes can change between runs, so an existing row is refreshed
        def fetch_or_insert():
            row = self.warehouse.fetchone(
                "SELECT identity_key FROM dim_identity WHERE identity_id = ?",
                [identity_id],
            )
            if row:
                self.warehouse.execute(
                    """
                    UPDATE dim_identity
                    SET classification = ?, include_identity = ?, country_key = ?
                    WHERE identity_key = ?
                    """,
                    [classification, include_identity, country_key, row[0]],
                )
                return row[0]
            key = self.sequencer.next("identity")
            self.warehouse.execute(
                """
                INSERT INTO dim_identity
                    (identity_key, identity_id, classification, include_identity, country_key)
                VALUES (?, ?, ?, ?, ?)
                """,
                [key, identity_id, classification, include_identity, country_key],
            )
            return key

        key = retry_on_conflict(
            fetch_or_insert, f"dim_identity {identity_id!r}", self.logger
        )
        record = IdentityRecord(
            identity_id=identity_id,
            classification=classification,
            country=attrs["country"],
            share_subscriptions=bool(attrs["share_subscriptions"]),
            include_identity=include_identity,
            country_key=country_key,
            key=key,
        )
        self._by_id[identity_id] = record
        self._by_key[key] = record
        return record

    def by_internal_key(self, key: Optional[int]) -> Optional[IdentityRecord]:
        if key is None:
            return None
        if key in self._by_key:
            return self._by_key[key]
        row = self.warehouse.fetchone(
            "SELECT identity_id FROM dim_identity WHERE identity_key = ?", [key]
        )
        if not row:
            self.logger.warning(f"Can't find identity key {key}")
            self._by_key[key] = None
            return None
        return self.by_external_id(row[0])

    def clear(self) -> None:
        self._by_id.clear()
        self._by_key.clear()
