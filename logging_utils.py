import logging
import os
import sys

RUN_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s w%(worker)s] %(message)s"


class WorkerFilter(logging.Filter):
    """Stamps every record with the loader worker number, so the shared
    stdout stream of parallel workers can be told apart."""

    def __init__(self, worker: int):
        super().__init__()
        self.worker = worker

    def filter(self, record: logging.LogRecord) -> bool:
        record.worker = self.worker
        return True


def configure_logging(
    run_log_path: str,
    logger_name: str = None,
    worker: int = 0,
    level: int = logging.INFO,
):
    """
    Route root logging to stdout and to the worker's run log file,
    replacing whatever handlers were installed before. Returns the named
    logger (root when no name is given) and the formatter in use.
    """
    log_dir = os.path.dirname(run_log_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)

    formatter = logging.Formatter(RUN_LOG_FORMAT)
    worker_filter = WorkerFilter(worker)
    for handler in (
        logging.StreamHandler(stream=sys.stdout),
        logging.FileHandler(run_log_path),
    ):
        handler.setFormatter(formatter)
        handler.addFilter(worker_filter)
        root_logger.addHandler(handler)

    # identity-service failures are reported by the client itself
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return logging.getLogger(logger_name) if logger_name else root_logger, formatter
