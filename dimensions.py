"""
Dimension descriptors and the generic insert-or-fetch resolver.

Every dimension table is dim_<name> with a <name>_key surrogate primary key and
a UNIQUE natural-key column. The descriptor table below is the fixed
configuration for this schema: how a raw value is normalised, how a new row is
inserted, how long the natural key may be, and how its keys are cached.
"""
import enum
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

import pandas as pd
import pycountry

from dimension_cache import (
    NO_CACHE,
    UNBOUNDED,
    CacheRegistry,
    CacheSpec,
    watermark,
)
from sequencer import Sequencer
from warehouse import Warehouse, retry_on_conflict


class Normalizer(enum.Enum):
    NONE = "none"
    DATE = "date"
    URL = "url"
    PRINTABLE_ASCII = "printable_ascii"
    COUNTRY = "country"


class InsertStrategy(enum.Enum):
    GENERIC = "generic"
    DATE = "date"
    PAGE_TYPE = "page_type"
    URL = "url"
    REFERRER = "referrer"
    COUNTRY = "country"
    # Natural key plus caller-supplied derived columns
    ATTRIBUTES = "attributes"
    # Rows are written by a dedicated resolver, never by DimensionResolver
    MANAGED = "managed"


@dataclass(frozen=True)
class DimensionDescriptor:
    name: str
    value_column: Optional[str] = None
    max_length: Optional[int] = None
    normalizer: Normalizer = Normalizer.NONE
    insert: InsertStrategy = InsertStrategy.GENERIC
    cache: CacheSpec = NO_CACHE
    date_scoped: bool = False
    batch_size: Optional[int] = None

    @property
    def table(self) -> str:
        return f"dim_{self.name}"

    @property
    def key_column(self) -> str:
        return f"{self.name}_key"

    @property
    def column(self) -> str:
        return self.value_column or self.name


_descriptors = [
    DimensionDescriptor(
        "access",
        value_column="access_id",
        max_length=400,
        insert=InsertStrategy.ATTRIBUTES,
        cache=watermark(5000, 4000),  # ~9k per day
    ),
    DimensionDescriptor(
        "alert_profile",
        max_length=200,
        cache=watermark(2000, 1500),
    ),
    DimensionDescriptor(
        "content_item",
        max_length=200,
        insert=InsertStrategy.MANAGED,
        cache=watermark(20000, 15000),  # ~170k per day
        date_scoped=True,
    ),
    DimensionDescriptor(
        "country",
        value_column="country_code",
        max_length=3,
        normalizer=Normalizer.COUNTRY,
        insert=InsertStrategy.COUNTRY,
        cache=UNBOUNDED,
    ),
    DimensionDescriptor(
        "date",
        value_column="date_value",
        max_length=10,
        normalizer=Normalizer.DATE,
        insert=InsertStrategy.DATE,
        cache=UNBOUNDED,
    ),
    DimensionDescriptor(
        "external_authen",
        value_column="authen_value",
        max_length=600,
        insert=InsertStrategy.ATTRIBUTES,
        cache=watermark(2000, 1500),
    ),
    DimensionDescriptor("filename", max_length=400),
    DimensionDescriptor("http_status", max_length=10, cache=UNBOUNDED),
    DimensionDescriptor(
        "ics_session",
        value_column="ics_session_id",
        max_length=64,
        insert=InsertStrategy.MANAGED,
        cache=watermark(100000, 90000),
        batch_size=1000,
    ),
    DimensionDescriptor(
        "identity",
        value_column="identity_id",
        max_length=100,
        insert=InsertStrategy.MANAGED,
    ),
    DimensionDescriptor(
        "ip_address",
        max_length=45,
        cache=watermark(20000, 15000),  # ~40k per day
    ),
    DimensionDescriptor(
        "license",
        value_column="license_id",
        max_length=100,
        insert=InsertStrategy.MANAGED,
        cache=watermark(5000, 4000),
    ),
    DimensionDescriptor(
        "page_type",
        value_column="page_type_exp",
        max_length=200,
        insert=InsertStrategy.PAGE_TYPE,
        cache=watermark(1000, 500),
    ),
    DimensionDescriptor("ref_target", max_length=400, cache=UNBOUNDED),
    DimensionDescriptor(
        "referrer",
        max_length=2000,
        normalizer=Normalizer.PRINTABLE_ASCII,
        insert=InsertStrategy.REFERRER,
    ),
    DimensionDescriptor("rss_type", max_length=100),
    DimensionDescriptor(
        "search",
        value_column="search_value",
        insert=InsertStrategy.ATTRIBUTES,
        cache=watermark(2000, 1500),
    ),
    DimensionDescriptor(
        "service",
        value_column="service_code",
        max_length=50,
        cache=UNBOUNDED,
    ),
    DimensionDescriptor(
        "session_identity",
        insert=InsertStrategy.MANAGED,
        cache=watermark(3000, 2000),
        date_scoped=True,
    ),
    DimensionDescriptor(
        "syndicategroup",
        max_length=4000,
        cache=watermark(5000, 3000),
    ),
    DimensionDescriptor(
        "ticket_session",
        value_column="ticket_session_id",
        max_length=36,
        cache=watermark(10000, 8000),
    ),
    DimensionDescriptor(
        "url",
        max_length=2000,
        normalizer=Normalizer.URL,
        insert=InsertStrategy.URL,
    ),
    DimensionDescriptor(
        "user_agent",
        max_length=1000,
        cache=watermark(5000, 4000),
    ),
]

DIMENSIONS: Dict[str, DimensionDescriptor] = {d.name: d for d in _descriptors}


def build_cache_registry(
    descriptors: Mapping[str, DimensionDescriptor] = DIMENSIONS,
) -> CacheRegistry:
    return CacheRegistry(
        {name: d.cache for name, d in descriptors.items()},
        date_scoped=[name for name, d in descriptors.items() if d.date_scoped],
    )


URL_RE = re.compile(r"\A\w+://[^/]")
URL_PARTS_RE = re.compile(r"\A\w+://([^/]+)(/[^?]*)?(?:\?(.*))?\Z", re.DOTALL)
REFERRER_HOST_RE = re.compile(r"\A\w+://([^/]+)")
PRINTABLE_ASCII_RE = re.compile(r"\A[\x10-\x7f]+\Z")
PAGE_TYPE_RE = re.compile(r"\A([\w\-]+)")


def lookup_country(code: str):
    """ISO 3166 country for an alpha-2, alpha-3 or numeric code, or None."""
    code = code.strip().upper()
    if len(code) == 2:
        return pycountry.countries.get(alpha_2=code)
    if len(code) == 3:
        if code.isdigit():
            return pycountry.countries.get(numeric=code)
        return pycountry.countries.get(alpha_3=code)
    return None


def normalize(normalizer: Normalizer, value: str) -> Optional[str]:
    """Return the value to store, or None when the value is not acceptable."""
    if normalizer is Normalizer.COUNTRY:
        country = lookup_country(value)
        value = country.alpha_2 if country else value.strip().upper()
    elif normalizer is Normalizer.DATE:
        try:
            datetime.strptime(value, "%Y-%m-%d")
        except ValueError:
            return None
    elif normalizer is Normalizer.URL:
        if not URL_RE.match(value):
            return None
    elif normalizer is Normalizer.PRINTABLE_ASCII:
        if not PRINTABLE_ASCII_RE.match(value):
            return None
    return value if value.strip() else None


def page_type_short(page_type_exp: str) -> str:
    m = PAGE_TYPE_RE.match(page_type_exp)
    return m.group(1) if m else "-"


def date_attributes(value: str) -> Dict[str, Any]:
    ts = pd.Timestamp(value)
    return {
        "year": ts.year,
        "quarter": f"Q{ts.quarter}",
        "month_num": ts.month,
        "month_name": ts.month_name(),
        "day_of_month": ts.day,
        "day_of_week": ts.day_name(),
        "week_num": int(ts.isocalendar()[1]),
    }


def url_attributes(value: str) -> Dict[str, Any]:
    m = URL_PARTS_RE.match(value)
    if m and m.group(1):
        return {"host": m.group(1), "path": m.group(2) or "/", "query": m.group(3)}
    return {"host": "UNKNOWN", "path": "UNKNOWN", "query": None}


def referrer_attributes(value: str) -> Dict[str, Any]:
    m = REFERRER_HOST_RE.match(value)
    return {"host": m.group(1).lower() if m else None}


class DimensionResolver:
    """
    Map raw values to surrogate keys, creating dimension rows as needed.

    The lookup order is cache, then warehouse, then insert. An insert that
    loses a race with a sibling worker is retried once from the fetch, so both
    workers end up with the sibling's key.
    """

    def __init__(
        self,
        warehouse: Warehouse,
        sequencer: Sequencer,
        caches: CacheRegistry,
        logger: Optional[logging.Logger] = None,
    ):
        self.warehouse = warehouse
        self.sequencer = sequencer
        self.caches = caches
        self.logger = logger or logging.getLogger("etl.dimensions")
        if warehouse.dry_run:
            # Rows inserted before a dry-run reconnect were rolled back with it
            warehouse.add_reconnect_listener(caches.clear_all)

    def resolve(
        self,
        value: Any,
        descriptor: DimensionDescriptor,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> Optional[int]:
        return self.resolve_checked(value, descriptor, attributes)[0]

    def resolve_checked(
        self,
        value: Any,
        descriptor: DimensionDescriptor,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[Optional[int], bool]:
        """Return (key, existed); existed is False only when this call inserted the row."""
        if value is None:
            return None, False
        value = str(value)
        if not value.strip():
            return None, False
        if descriptor.max_length and len(value) > descriptor.max_length:
            value = value[: descriptor.max_length]

        cache = self.caches.cache(descriptor.name)
        key = cache.get(value)
        if key is not None:
            return key, True

        normal_value = normalize(descriptor.normalizer, value)
        if normal_value is None:
            return None, False

        def fetch_or_insert():
            row = self.warehouse.fetchone(
                f"SELECT {descriptor.key_column} FROM {descriptor.table} WHERE {descriptor.column} = ?",
                [normal_value],
            )
            if row:
                return row[0], True
            new_key = self.sequencer.next(descriptor.name, descriptor.batch_size)
            self._insert(descriptor, new_key, normal_value, attributes)
            return new_key, False

        key, existed = retry_on_conflict(
            fetch_or_insert, f"{descriptor.table} value {normal_value!r}", self.logger
        )
        cache.set(value, key)
        return key, existed

    def _insert(self, descriptor, key, value, attributes):
        strategy = descriptor.insert
        if strategy is InsertStrategy.GENERIC:
            columns = {}
        elif strategy is InsertStrategy.DATE:
            columns = date_attributes(value)
        elif strategy is InsertStrategy.PAGE_TYPE:
            columns = {"page_type": page_type_short(value)}
        elif strategy is InsertStrategy.URL:
            columns = url_attributes(value)
        elif strategy is InsertStrategy.REFERRER:
            columns = referrer_attributes(value)
        elif strategy is InsertStrategy.COUNTRY:
            country = lookup_country(value)
            columns = {"country_name": country.name if country else None}
        elif strategy is InsertStrategy.ATTRIBUTES:
            if attributes is None:
                raise ValueError(f"{descriptor.table} rows need derived attributes")
            columns = dict(attributes)
        else:
            raise ValueError(f"{descriptor.table} is not inserted by DimensionResolver")

        names = [descriptor.key_column, descriptor.column, *columns]
        placeholders = ", ".join("?" for _ in names)
        self.warehouse.execute(
            f"INSERT INTO {descriptor.table} ({', '.join(names)}) VALUES ({placeholders})",
            [key, value, *columns.values()],
        )


class UseridRegistry:
    """
    Make sure every userid seen in the logs has a dim_userid row. Names are
    filled in later by the directory reconciliation pass, so only the id is
    recorded here. Seen ids are held in memory for the whole run.
    """

    USERID_RE = re.compile(r"\A0*([1-9]\d*)\Z")

    def __init__(self, warehouse: Warehouse, logger: Optional[logging.Logger] = None):
        self.warehouse = warehouse
        self.logger = logger or logging.getLogger("etl.dimensions")
        self._seen: set = set()
        if warehouse.dry_run:
            warehouse.add_reconnect_listener(self._seen.clear)

    def register(self, raw: Optional[str]) -> Optional[str]:
        m = self.USERID_RE.match(raw or "")
        if not m:
            return None
        userid = m.group(1)
        if userid in self._seen:
            return userid

        def fetch_or_insert():
            if self.warehouse.fetchone("SELECT 1 FROM dim_userid WHERE userid = ?", [userid]):
                return
            self.warehouse.execute("INSERT INTO dim_userid (userid) VALUES (?)", [userid])

        retry_on_conflict(fetch_or_insert, f"dim_userid {userid}", self.logger)
        self._seen.add(userid)
        return userid

    def __len__(self):
        return len(self._seen)
