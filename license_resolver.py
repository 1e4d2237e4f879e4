import logging
from dataclasses import dataclass
from typing import Optional

from dimension_cache import CacheRegistry
from dimensions import DIMENSIONS
from identity_store import UNKNOWN_IDENTITY, IdentityStore
from sequencer import Sequencer
from warehouse import Warehouse, retry_on_conflict


@dataclass(frozen=True)
class LicenseResolution:
    license_key: Optional[int] = None
    identity_key: Optional[int] = None
    # Set when the event has to be abandoned: the reason it could not be resolved
    abandoned: Optional[str] = None


class LicenseResolver:
    """
    License id -> (license key, licensed identity key).

    Licenses are read from the identity service the first time they are seen.
    A license the service does not know (common on non-production mirrors) is
    recorded against the __UNKNOWN__ identity. A license whose identity or
    subscription cannot be read abandons the event instead.
    """

    def __init__(
        self,
        service,
        store: IdentityStore,
        warehouse: Warehouse,
        sequencer: Sequencer,
        caches: CacheRegistry,
        logger: Optional[logging.Logger] = None,
    ):
        self.service = service
        self.store = store
        self.warehouse = warehouse
        self.sequencer = sequencer
        self.cache = caches.cache("license")
        self.logger = logger or logging.getLogger("etl.license")

    def resolve(self, license_id: str) -> LicenseResolution:
        license_id = license_id[: DIMENSIONS["license"].max_length]
        cached = self.cache.get(license_id)
        if cached is not None:
            return cached

        resolution = retry_on_conflict(
            lambda: self._fetch_or_insert(license_id),
            f"dim_license {license_id!r}",
            self.logger,
        )
        if resolution.abandoned is None:
            self.cache.set(license_id, resolution)
        return resolution

    def _fetch_or_insert(self, license_id: str) -> LicenseResolution:
        row = self.warehouse.fetchone(
            "SELECT license_key, identity_key FROM dim_license WHERE license_id = ?",
            [license_id],
        )
        if row:
            return LicenseResolution(license_key=row[0], identity_key=row[1])

        license = self.service.read_license(license_id)
        if license is not None:
            identity_id = license["identity_id"]
            identity = self.store.by_external_id(identity_id)
            if identity is None:
                self.logger.warning(
                    f"Can't find licensed identity {identity_id} for license {license_id}"
                )
                return LicenseResolution(abandoned="licensed_identity")
            subscription_id = license["subscription_id"]
            subscription = (
                self.service.read_subscription(subscription_id) if subscription_id else None
            )
            if subscription is None:
                self.logger.warning(
                    f"Can't find subscription {subscription_id} for license {license_id}"
                )
                return LicenseResolution(abandoned="subscription")
            product_id = subscription["product_id"]
            identity_key = identity.key
        else:
            identity_key = self.store.by_external_id(UNKNOWN_IDENTITY).key
            subscription_id = product_id = UNKNOWN_IDENTITY

        license_key = self.sequencer.next("license")
        self.warehouse.execute(
            """
            INSERT INTO dim_license
                (license_key, license_id, subscription_id, product_id, identity_key)
            VALUES (?, ?, ?, ?, ?)
            """,
            [license_key, license_id, subscription_id, product_id, identity_key],
        )
        return LicenseResolution(license_key=license_key, identity_key=identity_key)
