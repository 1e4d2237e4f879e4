"""
Fact rows: assembly from a resolved AccessEvent, and year-partitioned output
files handed to the bulk loader.

A partition is written under a working name in the stats directory and only
appears in the delivery directories once it is complete: it is renamed into
the queue directory and then hard-linked into the second queue directory.
"""
import enum
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from dimensions import DIMENSIONS, DimensionResolver, UseridRegistry
from log_parser import AccessEvent
from sequencer import Sequencer
from warehouse import Warehouse


class ColumnKind(enum.Enum):
    DIM = "dim"  # dimension lookup of an event field
    SEQ = "seq"  # fresh sequence value
    COMPUTED = "computed"  # function of the event
    FIELD = "field"  # value already resolved onto the event


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    kind: ColumnKind
    # DIM: event field holding the raw value (default: name without _key)
    source: Optional[str] = None
    # SEQ: reservation block size
    batch_size: Optional[int] = None
    compute: Optional[Callable[["FactAssembler", AccessEvent], Any]] = None

    @property
    def dimension(self) -> str:
        return self.name[: -len("_key")] if self.name.endswith("_key") else self.name


def _flag(value) -> int:
    return 1 if value else 0


def request_timestamp(assembler, event):
    return event.timestamp


def country_key_ip(assembler, event):
    ip_address = event.get("ip_address")
    if not ip_address or assembler.geolocate is None:
        return None
    code = assembler.geolocate(ip_address)
    if not code or not re.match(r"\A[A-Z][A-Z]\Z", code):
        return None
    return assembler.resolver.resolve(code, DIMENSIONS["country"])


def userid(assembler, event):
    return assembler.userids.register(event.get("userid"))


def from_alert(assembler, event):
    return _flag(event.get("alert_profile_id"))


FULLTEXT_PAGE_TYPES = frozenset(["article", "ref", "cite", "mmedia", "postto"])


def include_status(assembler, event):
    """Whether the hit counts as a successful access (Sold fulltext redirects count too)."""
    status = event.get("http_status")
    if not status:
        return None
    page_type = event.get("page_type")
    if page_type == "alert":
        return None
    countable = not event.get("no_count") and page_type != "IGNORE"
    succeeded = status.startswith("2") or (
        event.get("service") == "Sold" and page_type in FULLTEXT_PAGE_TYPES
    )
    return _flag(countable and succeeded)


def usage_count(assembler, event):
    if event.get("page_type") in ("BOOK_DOWNLOAD_EPUB", "BOOK_DOWNLOAD_PDF"):
        return event.get("chapters")
    return None


def fact_columns(request_batch_size: int = 10000) -> List[ColumnSpec]:
    """Column order of fact_request_load."""
    dim, seq, computed, fld = (
        ColumnKind.DIM,
        ColumnKind.SEQ,
        ColumnKind.COMPUTED,
        ColumnKind.FIELD,
    )
    return [
        ColumnSpec("request_key", seq, batch_size=request_batch_size),
        ColumnSpec("request_id", fld),
        ColumnSpec("year", fld),
        ColumnSpec("date_key", dim),
        ColumnSpec("request_timestamp", computed, compute=request_timestamp),
        ColumnSpec("service_key", dim),
        ColumnSpec("ticket_session_key", dim, source="iop_session_id"),
        ColumnSpec("ip_address_key", dim),
        ColumnSpec("country_key_ip", computed, compute=country_key_ip),
        ColumnSpec("country_key_inst", fld),
        ColumnSpec("userid", computed, compute=userid),
        ColumnSpec("page_type_key", dim, source="page_type_exp"),
        ColumnSpec("identity_key_primary", fld),
        ColumnSpec("identity_key_license", fld),
        ColumnSpec("user_agent_key", dim),
        ColumnSpec("from_alert", computed, compute=from_alert),
        ColumnSpec("license_key", fld),
        ColumnSpec("http_status_key", dim),
        ColumnSpec("access_key", fld),
        ColumnSpec("content_item_key", fld),
        ColumnSpec("filename_key", dim),
        ColumnSpec("referrer_key", dim),
        ColumnSpec("ref_target_key", dim),
        ColumnSpec("rss_type_key", dim),
        ColumnSpec("include_identity", fld),
        ColumnSpec("include_status", computed, compute=include_status),
        ColumnSpec("ics_session_key", fld),
        ColumnSpec("external_authen_key", fld),
        ColumnSpec("syndicategroup_key", fld),
        ColumnSpec("url_key", dim),
        ColumnSpec("search_key", fld),
        ColumnSpec("alert_profile_key", dim, source="alert_profile"),
        ColumnSpec("usage_count", computed, compute=usage_count),
    ]


FACT_COLUMNS = fact_columns()


class FactAssembler:
    def __init__(
        self,
        resolver: DimensionResolver,
        sequencer: Sequencer,
        userids: UseridRegistry,
        geolocate: Optional[Callable[[str], Optional[str]]] = None,
        columns: Sequence[ColumnSpec] = FACT_COLUMNS,
    ):
        self.resolver = resolver
        self.sequencer = sequencer
        self.userids = userids
        self.geolocate = geolocate
        self.columns = list(columns)

    def assemble(self, event: AccessEvent) -> List[Any]:
        row = []
        for spec in self.columns:
            if spec.kind is ColumnKind.DIM:
                raw = event.get(spec.source or spec.dimension)
                value = self.resolver.resolve(raw, DIMENSIONS[spec.dimension])
            elif spec.kind is ColumnKind.SEQ:
                value = self.sequencer.next(spec.dimension, spec.batch_size)
            elif spec.kind is ColumnKind.COMPUTED:
                value = spec.compute(self, event)
            else:
                value = event.get(spec.name)
            row.append(value)
        return row


SPECIAL_CHARS_RE = re.compile(r"([\\\"',])")


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        value = int(value)
    text, escaped = SPECIAL_CHARS_RE.subn(r"\\\1", str(value))
    return f'"{text}"' if escaped else text


def format_row(row: Sequence[Any]) -> str:
    return ",".join(format_value(v) for v in row) + "\n"


LOADER_HEADER = """\
  options(skip_index_maintenance=true)
  load data
  infile *
  append into table fact_request
  partition fact_request_$year
  fields terminated by "," optionally enclosed by '"'
  trailing nullcols
  (
"""

DEFAULT_CHAR_LENGTH = 4000


def loader_type(data_type: str, length: Optional[int]) -> str:
    t = data_type.upper()
    if "CHAR" in t:
        return f"CHAR({length or DEFAULT_CHAR_LENGTH})"
    if t in ("DATE", "TIMESTAMP", "DATETIME"):
        return 'date "YYYY-MM-DD HH24:MI:SS"'
    if "INT" in t:
        return "int"
    if t == "TIME":
        return "time"
    if t == "BOOLEAN":
        return "bit"
    if t in ("FLOAT", "DOUBLE", "REAL"):
        return "FLOAT"
    raise ValueError(f"Unknown column type: {data_type}")


def build_loader_header(
    warehouse: Warehouse,
    columns: Sequence[ColumnSpec] = FACT_COLUMNS,
    table: str = "fact_request_load",
) -> str:
    """Loader control text for the fact columns, typed from the load table's schema."""
    rows = warehouse.fetchall(
        """
        SELECT column_name, data_type, character_maximum_length
        FROM information_schema.columns
        WHERE table_name = ?
        """,
        [table],
    )
    types = {name.lower(): loader_type(dtype, length) for name, dtype, length in rows}
    lines = []
    for spec in columns:
        if spec.name not in types:
            raise ValueError(f"Can't find definition for column {spec.name}")
        lines.append(f"{spec.name} {types[spec.name]}")
    body = "".join(
        f"{' ' if i == 0 else ','}      {line}\n" for i, line in enumerate(lines)
    )
    return LOADER_HEADER + body + ")\nbegindata\n"


class PartitionedWriter:
    """One output file per year; nothing is visible in the queues until publish()."""

    def __init__(
        self,
        work_dir,
        queue_dir,
        queue2_dir,
        header: str,
        prefix: str = "accessstats",
        worker: int = 0,
        date_label: Optional[str] = None,
        dry_run: bool = False,
        progress=None,
        logger: Optional[logging.Logger] = None,
    ):
        self.work_dir = Path(work_dir)
        self.queue_dir = Path(queue_dir)
        self.queue2_dir = Path(queue2_dir)
        self.header = header
        self.prefix = prefix
        self.worker = worker
        self.date_label = date_label or "nodate"
        self.dry_run = dry_run
        self.progress = progress
        self.logger = logger or logging.getLogger("etl.writer")
        self._partitions: Dict[str, Dict[str, Any]] = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.discard()
        return False

    def write(self, year: str, row: Sequence[Any]) -> None:
        part = self._partitions.get(year) or self._open(year)
        part["fh"].write(format_row(row))
        part["rows"] += 1

    def _open(self, year):
        self.work_dir.mkdir(parents=True, exist_ok=True)
        path = self.work_dir / f"{self.prefix}-{self.worker}.{year}.dat"
        fh = open(path, "w", encoding="utf-8")
        fh.write(self.header.replace("$year", year))
        part = {"path": path, "fh": fh, "rows": 0}
        self._partitions[year] = part
        self.logger.info(f"Opened partition {path}")
        return part

    def _close(self, part):
        fh = part["fh"]
        if not fh.closed:
            fh.flush()
            os.fsync(fh.fileno())
            fh.close()

    def publish(self) -> List[Path]:
        """Close every partition and move it into the delivery directories."""
        if self.dry_run:
            self.logger.info("Dry run: discarding partitions instead of publishing")
            self.discard()
            return []

        self.queue_dir.mkdir(parents=True, exist_ok=True)
        self.queue2_dir.mkdir(parents=True, exist_ok=True)
        published = []
        for year, part in sorted(self._partitions.items()):
            self._close(part)
            self._note(f"Closed {part['path']}")
            name = ".".join(
                [
                    self.prefix,
                    self.date_label,
                    str(self.worker),
                    year,
                    str(int(time.time())),
                    "dat",
                ]
            )
            queue_path = self.queue_dir / name
            os.rename(part["path"], queue_path)
            self._note(f"Renamed to {queue_path}")
            os.link(queue_path, self.queue2_dir / name)
            self.logger.info(f"Published {part['rows']} rows for {year} as {queue_path}")
            published.append(queue_path)
        self._partitions.clear()
        return published

    def discard(self) -> None:
        for part in self._partitions.values():
            self._close(part)
            if part["path"].exists():
                part["path"].unlink()
        self._partitions.clear()

    def _note(self, message: str) -> None:
        if self.progress is not None:
            self.progress.note(message)
