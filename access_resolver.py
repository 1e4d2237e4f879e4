import logging
import re
from typing import Any, Dict, Iterable, Mapping, Optional

from dimensions import DIMENSIONS, DimensionResolver
from identity_store import (
    CONSORTIUM,
    GUEST_IDENTITY,
    HIERARCHY,
    INDIVIDUAL,
    NETWORK,
    IdentityRecord,
    IdentityStore,
)
from source_catalog import SourceCatalog

ROLE_INDIVIDUAL = "individual"
ROLE_FREE = "free"
ROLE_CONSORTIUM = "consortium"
ROLE_INSTITUTION = "institution"
ROLE_UNKNOWN = "__UNKNOWN__"
ROLE_NO_LICENCE = "no licence"
ROLE_NOT_RECORDED = "licence not recorded"
ROLE_NOT_CHECKED = "licence not checked"

FREE_JOURNAL_RE = re.compile(r"free journal", re.IGNORECASE)
SECRET_PRODUCT_RE = re.compile(r"secret|hidden", re.IGNORECASE)
SUCCESS_STATUS_RE = re.compile(r"\A[23]")

# Reason codes for free access granted through a "free journal" product
REASON_FREE_JOURNAL = "J"
REASON_SECRET_FREE_JOURNAL = "X"


def access_id(*parts: Any) -> str:
    return "/".join("" if p is None else str(p) for p in parts)


class AccessResolver:
    """
    Builds the access dimension member for an event that reached a known
    article: who the access is licensed to, why it was free (if it was), which
    collection it came through and how old the article was.
    """

    def __init__(
        self,
        service,
        store: IdentityStore,
        resolver: DimensionResolver,
        catalog: SourceCatalog,
        licence_recording_started: str = "2007-10-03 09:26:13",
        individual_identity_ids: Iterable[str] = (),
        builtin_collections: Optional[Mapping[str, str]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.service = service
        self.store = store
        self.resolver = resolver
        self.catalog = catalog
        self.licence_recording_started = licence_recording_started
        self.individual_identity_ids = frozenset(individual_identity_ids)
        self.builtin_collections = dict(builtin_collections or {})
        self.logger = logger or logging.getLogger("etl.access")
        self._product_reasons: Dict[str, Optional[str]] = {}
        self._collections: Optional[Dict[str, str]] = None

    def access_role(
        self,
        identity: Optional[IdentityRecord],
        http_status: Optional[str],
        timestamp: str,
    ) -> str:
        if identity is not None:
            classification = identity.classification
            if classification is None:
                return ROLE_UNKNOWN
            if (
                classification == INDIVIDUAL
                or identity.identity_id in self.individual_identity_ids
            ):
                return ROLE_INDIVIDUAL
            if classification == HIERARCHY or identity.identity_id == GUEST_IDENTITY:
                return ROLE_FREE
            if classification in (CONSORTIUM, NETWORK):
                return ROLE_CONSORTIUM
            return ROLE_INSTITUTION
        if not SUCCESS_STATUS_RE.match(http_status or "200"):
            return ROLE_NO_LICENCE
        if timestamp < self.licence_recording_started:
            return ROLE_NOT_RECORDED
        return ROLE_NOT_CHECKED

    def product_free_reason(self, license_id: str) -> Optional[str]:
        """Free-journal reason implied by the license's product name, cached per license."""
        if license_id in self._product_reasons:
            return self._product_reasons[license_id]

        reason = None
        license = self.service.read_license(license_id)
        subscription = (
            self.service.read_subscription(license["subscription_id"])
            if license and license["subscription_id"]
            else None
        )
        product = (
            self.service.read_product(subscription["product_id"])
            if subscription and subscription["product_id"]
            else None
        )
        name = (product or {}).get("name") or ""
        if FREE_JOURNAL_RE.search(name):
            reason = (
                REASON_SECRET_FREE_JOURNAL
                if SECRET_PRODUCT_RE.search(name)
                else REASON_FREE_JOURNAL
            )
        self._product_reasons[license_id] = reason
        return reason

    def collections(self) -> Dict[str, str]:
        if self._collections is None:
            self._collections = dict(self.builtin_collections)
            self._collections.update(self.catalog.collections())
        return self._collections

    def resolve(
        self,
        license_identity_key: Optional[int],
        license_id: Optional[str],
        http_status: Optional[str],
        timestamp: str,
        service: Optional[str],
        collection_id: Optional[str],
        free_reason_code: Optional[str],
        age_years: Optional[int],
        age_days: Optional[int],
    ) -> Optional[int]:
        identity = self.store.by_internal_key(license_identity_key)
        role = self.access_role(identity, http_status, timestamp)

        if role == ROLE_FREE and not free_reason_code and license_id:
            free_reason_code = self.product_free_reason(license_id)
        free_reason_name = (
            self.catalog.free_reason_names().get(free_reason_code)
            if free_reason_code
            else None
        )

        collection_code = collection_id or ("select" if service == "Select" else None)
        collection_name = self.collections().get(collection_code or "")

        value = access_id(role, free_reason_code, collection_code, age_years, age_days)
        return self.resolver.resolve(
            value,
            DIMENSIONS["access"],
            attributes={
                "access_role": role,
                "free_reason_code": free_reason_code,
                "free_reason_name": free_reason_name,
                "collection_code": collection_code,
                "collection_name": collection_name,
                "age_years": age_years,
                "age_days": age_days,
            },
        )
