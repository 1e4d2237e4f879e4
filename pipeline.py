"""
Per-event orchestration of a load run.

Each input line becomes exactly one EventResult: emitted (a fact row was
written), skipped (the line was not loadable, with the reason) or abandoned
(a required external reference could not be resolved, with the reason). The
run counts every outcome so no line disappears without a reason.
"""
import enum
import logging
import re
import time
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Optional

import pandas as pd

from access_resolver import AccessResolver
from content_resolver import ContentResolver
from dimension_cache import CacheRegistry
from dimensions import DIMENSIONS, DimensionResolver, UseridRegistry
from fact_writer import FactAssembler, PartitionedWriter
from hierarchy_resolver import HierarchyResolver
from license_resolver import LicenseResolver
from log_parser import FIELD_SEPARATOR, AccessEvent, detect_format, parse_line

SUCCESS = "Success"
TOTAL = "Total"

# Byte limits of dim_search's query, field and within columns
SEARCH_LIMITS = (("search_query", 4000), ("search_field", 400), ("search_within", 400))


class Outcome(enum.Enum):
    EMITTED = "emitted"
    SKIPPED = "skipped"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class EventResult:
    outcome: Outcome
    reason: Optional[str] = None

    @classmethod
    def emitted(cls) -> "EventResult":
        return cls(Outcome.EMITTED)

    @classmethod
    def skipped(cls, reason: str) -> "EventResult":
        return cls(Outcome.SKIPPED, reason)

    @classmethod
    def abandoned(cls, reason: str) -> "EventResult":
        return cls(Outcome.ABANDONED, reason)

    @property
    def count_key(self) -> str:
        return SUCCESS if self.outcome is Outcome.EMITTED else self.reason


def normalise_search_component(value: Optional[str], max_bytes: int) -> str:
    value = re.sub(r"\s+", " ", value or "").strip() or " "
    while len(value.encode("utf-8")) > max_bytes:
        value = value[:-1]
    return value


class LoadPipeline:
    def __init__(
        self,
        caches: CacheRegistry,
        resolver: DimensionResolver,
        hierarchy: HierarchyResolver,
        licenses: LicenseResolver,
        content: ContentResolver,
        access: AccessResolver,
        assembler: FactAssembler,
        writer: PartitionedWriter,
        userids: UseridRegistry,
        exclude_local: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self.caches = caches
        self.resolver = resolver
        self.hierarchy = hierarchy
        self.licenses = licenses
        self.content = content
        self.access = access
        self.assembler = assembler
        self.writer = writer
        self.userids = userids
        self.exclude_local = exclude_local
        self.logger = logger or logging.getLogger("etl.pipeline")
        self.counts: Counter = Counter()
        self.elapsed = 0.0

    def process_line(self, line: str) -> EventResult:
        parsed = parse_line(line, exclude_local=self.exclude_local)
        if isinstance(parsed, str):
            return EventResult.skipped(parsed)
        return self.process_event(parsed)

    def process_event(self, event: AccessEvent) -> EventResult:
        if self.caches.advance_date(event.date):
            self.logger.info(f"Date changed to {event.date}; cleared date-scoped caches")

        if event.get("identity_ids"):
            result = self._resolve_identities(event)
            if result is not None:
                return result

        self._resolve_external_auth(event)
        self._resolve_search(event)

        if event.get("alert_profile_id") and event.get("service_generic"):
            event.set(
                "alert_profile", f"{event.get('service_generic')}/{event.get('alert_profile_id')}"
            )

        if event.get("license_id"):
            license = self.licenses.resolve(event.get("license_id"))
            if license.abandoned:
                return EventResult.abandoned(f"abandoned_{license.abandoned}")
            event.set("license_key", license.license_key)
            event.set("identity_key_license", license.identity_key)

        if event.get("issn"):
            content = self.content.resolve(
                event.get("issn"),
                event.get("volnum"),
                event.get("issnum"),
                event.get("artnum"),
                event.date,
            )
            event.set("content_item_key", content.key)
            if content.artid:
                event.set(
                    "access_key",
                    self.access.resolve(
                        license_identity_key=event.get("identity_key_license"),
                        license_id=event.get("license_id"),
                        http_status=event.get("http_status"),
                        timestamp=event.timestamp,
                        service=event.get("service"),
                        collection_id=event.get("collection_id"),
                        free_reason_code=content.free_reason_code,
                        age_years=content.age_years,
                        age_days=content.age_days,
                    ),
                )

        year = event.date[:4]
        event.set("year", year)
        self.writer.write(year, self.assembler.assemble(event))
        return EventResult.emitted()

    def _resolve_identities(self, event: AccessEvent) -> Optional[EventResult]:
        identity_ids = [i for i in event.get("identity_ids").split(",") if i]
        resolution = self.hierarchy.resolve(
            identity_ids,
            session_id=event.get("ics_session_id"),
            primary_id=event.get("identity_id_primary"),
        )
        if resolution is None:
            return EventResult.abandoned("abandoned_primary_identity")
        event.set("ics_session_key", resolution.session_key)
        event.set("identity_key_primary", resolution.identity_key_primary)
        event.set("include_identity", resolution.include_identity)
        event.set("country_key_inst", resolution.country_key_inst)
        event.set("syndicategroup_key", resolution.syndicategroup_key)
        return None

    def _resolve_external_auth(self, event: AccessEvent) -> None:
        service, authen_id = event.get("ext_auth_service"), event.get("ext_auth_id")
        if not (service and authen_id):
            return
        event.set(
            "external_authen_key",
            self.resolver.resolve(
                f"{service}{FIELD_SEPARATOR}{authen_id}",
                DIMENSIONS["external_authen"],
                attributes={"authen_service": service, "authen_id": authen_id},
            ),
        )

    def _resolve_search(self, event: AccessEvent) -> None:
        raw = [event.get(name) for name, _ in SEARCH_LIMITS]
        if not any(v and v.strip() for v in raw):
            return
        parts = {
            name: normalise_search_component(value, limit)
            for (name, limit), value in zip(SEARCH_LIMITS, raw)
        }
        event.set(
            "search_key",
            self.resolver.resolve(
                FIELD_SEPARATOR.join(parts.values()), DIMENSIONS["search"], attributes=parts
            ),
        )

    def run(self, lines: Iterable[str], progress=None, echo: bool = False) -> Counter:
        """Process every line, writing progress dots and returning the outcome counts."""
        start = time.time()
        if progress is not None:
            progress.note("Loading")
        for line in lines:
            self.counts[TOTAL] += 1
            if progress is not None and progress.tick(self.counts[TOTAL]) and echo:
                print(".", end="", flush=True)
            fmt = detect_format(line)
            if fmt:
                self.counts[fmt] += 1
            result = self.process_line(line)
            self.counts[result.count_key] += 1
            if result.outcome is Outcome.ABANDONED:
                self.logger.warning(f"Abandoned line {self.counts[TOTAL]}: {result.reason}")
        if progress is not None:
            progress.note("")
        self.elapsed = time.time() - start
        return self.counts

    def summary(self) -> str:
        counts = ", ".join(f"{k}: {self.counts[k]}" for k in sorted(self.counts))
        return f"Processed lines ({int(self.elapsed)} seconds): {counts}"

    def cache_report(self) -> pd.DataFrame:
        report = pd.DataFrame(self.caches.report())
        userids = pd.DataFrame(
            [
                {
                    "dimension": "userid",
                    "policy": "run",
                    "cached": len(self.userids),
                    "hits": 0,
                    "misses": 0,
                    "purges": 0,
                }
            ]
        )
        return pd.concat([report, userids], ignore_index=True)
