"""
Content-item resolution.

A content item is identified by issn[/volnum[/issnum[/artnum]]], stopping at
the first missing part. New items are described from the source catalogue;
levels the catalogue does not know are stored as __UNKNOWN__. Article-level
items seen before release are re-checked until they get an online date, after
which the article's age and any free-access reason are worked out against the
access date.
"""
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Optional, Sequence, Tuple

from dimension_cache import CacheRegistry
from dimensions import DIMENSIONS
from sequencer import Sequencer
from source_catalog import SourceCatalog
from warehouse import Warehouse, retry_on_conflict

UNKNOWN = "__UNKNOWN__"

DATE_RE = re.compile(r"\A(\d{4})-(\d\d?)-(\d\d?)\Z")

logger = logging.getLogger("etl.content")


@dataclass(frozen=True)
class ContentResolution:
    key: int
    artid: Optional[str] = None
    online_date: Optional[str] = None
    free_reason_code: Optional[str] = None
    age_years: Optional[int] = None
    age_days: Optional[int] = None


def sanitise_date(value: Optional[str], today: Optional[date] = None) -> Optional[str]:
    """
    Coerce a catalogue date into something the warehouse accepts. Bad dates
    only come from unreleased test data, so close enough is good enough:
    year outside 1000-3000 becomes this year, month is clamped to 1-12 and the
    day walked back until the date exists. Anything unparsable becomes today.
    """
    if value is None:
        return None
    today = today or date.today()
    m = DATE_RE.match(value.strip())
    if not m:
        logger.warning(f"Replacing malformed date {value!r} with {today.isoformat()}")
        return today.isoformat()

    y, mo, d = (int(g) for g in m.groups())
    if not 1000 <= y <= 3000:
        y = today.year
    mo = min(max(mo, 1), 12)
    d = min(d or 1, 31)
    while d >= 28:
        try:
            return date(y, mo, d).isoformat()
        except ValueError:
            logger.warning(f"Normalizing dodgy date {value} to {y:04d}-{mo:02d}-{d - 1:02d}")
            d -= 1
    return date(y, mo, d).isoformat()


def article_age(online_date: str, access_date: str) -> Tuple[int, int]:
    """(whole calendar years, days) from online release to access."""
    released = datetime.strptime(online_date[:10], "%Y-%m-%d").date()
    accessed = datetime.strptime(access_date[:10], "%Y-%m-%d").date()
    return accessed.year - released.year, (accessed - released).days


def content_item_id(parts: Sequence[Optional[str]]) -> Tuple[str, Tuple[str, ...]]:
    """Join issn/volnum/issnum/artnum up to the first missing part."""
    present = []
    for part in parts:
        if part is None:
            break
        present.append(part)
    return "/".join(present), tuple(present)


class ContentResolver:
    def __init__(
        self,
        warehouse: Warehouse,
        sequencer: Sequencer,
        catalog: SourceCatalog,
        caches: CacheRegistry,
        today: Optional[date] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.warehouse = warehouse
        self.sequencer = sequencer
        self.catalog = catalog
        self.cache = caches.cache("content_item")
        self.today = today
        self.logger = logger or logging.getLogger("etl.content")

    def resolve(
        self,
        issn: str,
        volnum: Optional[str],
        issnum: Optional[str],
        artnum: Optional[str],
        access_date: str,
    ) -> ContentResolution:
        content_item, parts = content_item_id([issn, volnum, issnum, artnum])
        max_length = DIMENSIONS["content_item"].max_length
        if len(content_item) > max_length:
            content_item = content_item[:max_length]

        cached = self.cache.get(content_item)
        if cached is not None:
            return cached

        key, artid, online_date = retry_on_conflict(
            lambda: self._fetch_or_insert(content_item, parts),
            f"dim_content_item {content_item!r}",
            self.logger,
        )

        free_reason_code = age_years = age_days = None
        if online_date and artid:
            free_reason_code = self._free_reason(artid, access_date)
            age_years, age_days = article_age(online_date, access_date)

        resolution = ContentResolution(
            key=key,
            artid=artid,
            online_date=online_date,
            free_reason_code=free_reason_code,
            age_years=age_years,
            age_days=age_days,
        )
        self.cache.set(content_item, resolution)
        return resolution

    def _fetch_or_insert(self, content_item, parts):
        row = self.warehouse.fetchone(
            """
            SELECT content_item_key, CAST(online_date AS VARCHAR)
            FROM dim_content_item
            WHERE content_item = ?
            """,
            [content_item],
        )
        if row:
            key, online_date = row
            if online_date:
                return key, content_item, online_date
            if len(parts) == 4:
                return self._refresh(key, parts)
            return key, None, None

        key = self.sequencer.next("content_item")
        columns, article = self._describe(parts)
        names = ["content_item_key", "content_item", *columns]
        values = ", ".join(
            "CAST(? AS DATE)" if name in ("cover_date", "online_date") else "?"
            for name in names
        )
        self.warehouse.execute(
            f"INSERT INTO dim_content_item ({', '.join(names)}) VALUES ({values})",
            [key, content_item, *columns.values()],
        )
        if article is None:
            return key, None, None
        return key, content_item, article["online_date"]

    def _refresh(self, key, parts):
        """An article seen before it had an online date; check whether it has been released since."""
        article = self.catalog.article(*parts)
        if article is None:
            return key, None, None
        columns = self._article_columns(article)
        self.warehouse.execute(
            """
            UPDATE dim_content_item
            SET issn = ?, volnum = ?, issnum = ?, artnum = ?,
                cover_date = CAST(? AS DATE), online_date = CAST(? AS DATE),
                article_type = ?, ecs = ?, title = ?, authors = ?
            WHERE content_item_key = ?
            """,
            [
                columns["issn"],
                columns["volnum"],
                columns["issnum"],
                columns["artnum"],
                columns["cover_date"],
                columns["online_date"],
                columns["article_type"],
                columns["ecs"],
                columns["title"],
                columns["authors"],
                key,
            ],
        )
        return key, "/".join(parts), article["online_date"]

    def _describe(self, parts) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        """Columns for a new dim_content_item row, plus the article if one was found."""
        columns: Dict[str, Any] = {
            "issn": None,
            "volnum": None,
            "issnum": None,
            "artnum": None,
            "cover_date": None,
            "online_date": None,
            "article_type": None,
            "journal_name_full": None,
            "journal_name_short": None,
            "ecs": None,
            "title": None,
            "authors": None,
        }
        # Every level named in the id is unknown until the catalogue says otherwise
        for name, _ in zip(("issn", "volnum", "issnum", "artnum"), parts):
            columns[name] = UNKNOWN

        journal = self.catalog.journal(parts[0])
        if journal is None:
            columns["journal_name_full"] = UNKNOWN
            columns["journal_name_short"] = UNKNOWN
            return columns, None
        columns["issn"] = journal["issn"]
        columns["journal_name_full"] = journal["name_full"]
        columns["journal_name_short"] = journal["name_short"]

        if len(parts) < 2:
            return columns, None
        volume = self.catalog.volume(*parts[:2])
        if volume is None:
            return columns, None
        columns["volnum"] = volume["volnum_phys"]

        if len(parts) < 3:
            return columns, None
        issue = self.catalog.issue(*parts[:3])
        if issue is None:
            return columns, None
        columns["issnum"] = issue["issnum_phys"]

        if len(parts) < 4:
            return columns, None
        article = self.catalog.article(*parts)
        if article is None:
            return columns, None
        columns.update(self._article_columns(article))
        return columns, article

    def _article_columns(self, article):
        return {
            "issn": article["issn"],
            "volnum": article["volnum_phys"],
            "issnum": article["issnum_phys"],
            "artnum": article["artnum"],
            "cover_date": sanitise_date(article["cover_date"], self.today),
            "online_date": article["online_date"],
            "article_type": article["article_type"],
            "ecs": article["ecs"],
            "title": article["title"],
            "authors": article["authors"],
        }

    def _free_reason(self, artid: str, access_date: str) -> Optional[str]:
        """First free-access reason found for the article, then its issue, then its volume."""
        item = artid
        while "/" in item:
            reason = self.catalog.free_reason(item, access_date)
            if reason:
                return reason
            item = item.rsplit("/", 1)[0]
        return None
