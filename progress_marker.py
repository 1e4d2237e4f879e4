import logging
from pathlib import Path
from typing import Optional


class ProgressMarkerExists(RuntimeError):
    """A previous run for this worker has not finished (or died and was not cleaned up)."""


class ProgressMarker:
    """
    Per-worker progress file, created exclusively at the start of a run and
    removed only when the run completes. While the run is going it records the
    run's milestones and a dot for every thousand input lines, so an operator
    can see where a stuck or failed run got to.
    """

    DOT_EVERY = 1000

    def __init__(self, path, logger: Optional[logging.Logger] = None):
        self.path = Path(path)
        self.logger = logger or logging.getLogger("etl.progress")
        self._fh = None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.complete()
        else:
            # Leave the marker so the next run refuses to start
            self.abandon()
        return False

    def open(self) -> "ProgressMarker":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._fh = open(self.path, "x", encoding="utf-8")
        except FileExistsError as e:
            raise ProgressMarkerExists(
                f"Previous load still in progress ({self.path})"
            ) from e
        self.note("Started")
        return self

    def note(self, message: str) -> None:
        self._fh.write(message + "\n")
        self._fh.flush()

    def tick(self, line_count: int) -> bool:
        """Write a dot every DOT_EVERY lines; returns True when one was written."""
        if line_count % self.DOT_EVERY:
            return False
        self._fh.write(".")
        self._fh.flush()
        return True

    def abandon(self) -> None:
        if self._fh is not None and not self._fh.closed:
            self._fh.close()
        self.logger.error(f"Run did not complete; leaving progress marker {self.path}")

    def complete(self) -> None:
        self._fh.close()
        self.path.unlink()
