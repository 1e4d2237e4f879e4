"""
Load access-log files into the statistics warehouse.

  python etl.py [--test] [--progress] [--date DATE] [--worker N]
                [--queue-dir DIR] [FILE ...]

Reads the given log files (or stdin), resolves every line against the
warehouse dimensions and writes one bulk-load file per year, published into
the queue directories when the run completes. --test keeps the warehouse
untouched and publishes nothing.
"""
import argparse
import fileinput
import logging
import os
import sys
from datetime import datetime

from diskcache import Cache
from dotenv import load_dotenv

from access_resolver import AccessResolver
from config_loader import load_config
from content_resolver import ContentResolver
from dimensions import DimensionResolver, UseridRegistry, build_cache_registry
from fact_writer import FactAssembler, PartitionedWriter, build_loader_header, fact_columns
from hierarchy_resolver import HierarchyResolver
from identity_service import IdentityServiceClient
from identity_store import IdentityStore
from license_resolver import LicenseResolver
from logging_utils import configure_logging
from pipeline import LoadPipeline
from progress_marker import ProgressMarker, ProgressMarkerExists
from sequencer import Sequencer
from source_catalog import SourceCatalog
from warehouse import Warehouse


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Load access-log files into the statistics warehouse."
    )
    parser.add_argument(
        "--test", action="store_true", help="Don't update the warehouse or publish output"
    )
    parser.add_argument(
        "--progress", action="store_true", help="Print a dot per thousand lines processed"
    )
    parser.add_argument("--date", help="Date on which the accesses in the log files were made")
    parser.add_argument("--worker", type=int, default=0, help="Worker instance number")
    parser.add_argument("--queue-dir", help="Alternate directory to deliver output files to")
    parser.add_argument("files", nargs="*", help="Log files (default: stdin)")
    return parser.parse_args(argv)


def run(args, cfg, logger) -> int:
    stats_dir = cfg.get_path("paths.stats_dir", create=True)

    with ProgressMarker(stats_dir / f"load_progress.{args.worker}", logger=logger) as marker:
        warehouse = Warehouse(
            cfg.get("warehouse.database_path"),
            dry_run=args.test,
            reconnect_retries=cfg.get("warehouse.reconnect_retries", 5),
            reconnect_interval=cfg.get("warehouse.reconnect_interval_seconds", 60),
            logger=logging.getLogger("etl.warehouse"),
        )
        catalog = SourceCatalog(cfg.get("source.database_path"))
        token_cache = Cache(str(cfg.get_path("paths.cache_dir", create=True)))
        try:
            sequencer = Sequencer(warehouse, dry_run=args.test)
            caches = build_cache_registry()
            resolver = DimensionResolver(warehouse, sequencer, caches)
            service = IdentityServiceClient.from_config(cfg, token_cache=token_cache)
            store = IdentityStore(service, warehouse, sequencer, resolver)
            userids = UseridRegistry(warehouse)
            columns = fact_columns(cfg.batch_size("request", 10000))
            writer = PartitionedWriter(
                work_dir=stats_dir,
                queue_dir=args.queue_dir or cfg.get_path("paths.queue_dir"),
                queue2_dir=cfg.get_path("paths.queue2_dir"),
                header=build_loader_header(warehouse, columns),
                prefix=cfg.get("load.output_prefix", "accessstats"),
                worker=args.worker,
                date_label=args.date,
                dry_run=args.test,
                progress=marker,
            )
            pipeline = LoadPipeline(
                caches=caches,
                resolver=resolver,
                hierarchy=HierarchyResolver(
                    service,
                    store,
                    warehouse,
                    sequencer,
                    resolver,
                    caches,
                    session_batch_size=cfg.batch_size("ics_session", 1000),
                ),
                licenses=LicenseResolver(service, store, warehouse, sequencer, caches),
                content=ContentResolver(warehouse, sequencer, catalog, caches),
                access=AccessResolver(
                    service,
                    store,
                    resolver,
                    catalog,
                    licence_recording_started=cfg.get("load.licence_recording_started"),
                    individual_identity_ids=cfg.get("load.individual_identity_ids", []),
                    builtin_collections=cfg.get("load.builtin_collections", {}),
                ),
                # No geolocate callable: IP geolocation is not part of this loader,
                # so country_key_ip is always left empty
                assembler=FactAssembler(resolver, sequencer, userids, columns=columns),
                writer=writer,
                userids=userids,
                # Local addresses are only worth excluding from real traffic
                exclude_local=cfg.get("load.exclude_local_addresses", True) and not args.test,
            )
            marker.note("Initialized")

            with writer, fileinput.input(
                files=args.files or ("-",), encoding="utf-8", errors="replace"
            ) as lines:
                pipeline.run(lines, progress=marker, echo=args.progress)
                writer.publish()

            summary = pipeline.summary()
            marker.note(summary)
            logger.info(summary)
            if args.progress:
                print()
                print(summary)
                print(pipeline.cache_report().to_string(index=False))
            caches.clear_all()
            store.clear()
            marker.note("Caches cleared")
        finally:
            token_cache.close()
            catalog.close()
            warehouse.close()
    return 0


def main(argv=None) -> int:
    load_dotenv()
    args = parse_args(argv)
    cfg = load_config()

    run_ts = datetime.now().strftime(cfg.get("run_ts_format", "%Y%m%d_%H%M%S"))
    logs_dir = cfg.get("paths.logs_dir", "logs")
    logger, _fmt = configure_logging(
        os.path.join(logs_dir, f"etl_{run_ts}_w{args.worker}.log"),
        logger_name="etl",
        worker=args.worker,
    )

    logger.info("--- Starting load ---")
    try:
        status = run(args, cfg, logger)
    except ProgressMarkerExists as e:
        logger.error(str(e))
        return 1
    except Exception:
        logger.exception("Load failed")
        return 1
    logger.info("--- Load finished ---")
    return status


if __name__ == "__main__":
    sys.exit(main())
