import logging
from typing import Dict, List, Optional

from warehouse import Warehouse, retry_on_conflict


class Sequencer:
    """
    Hands out surrogate keys per dimension from the etl_sequences table.

    next(name) costs one warehouse round-trip. next(name, batch_size) reserves
    batch_size consecutive keys in one round-trip and serves later calls for
    that name from memory until the block runs out. In dry-run mode keys come
    from in-memory counters that continue from the stored sequence values, and
    nothing is persisted.
    """

    def __init__(
        self,
        warehouse: Optional[Warehouse],
        dry_run: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self.warehouse = warehouse
        self.dry_run = dry_run
        self.logger = logger or logging.getLogger("etl.sequencer")
        self._counters: Dict[str, int] = {}
        # name -> [next key to hand out, last key in the block]
        self._reservations: Dict[str, List[int]] = {}
        self._known: set = set()
        if warehouse is not None:
            warehouse.add_reconnect_listener(self.reset)

    def next(self, name: str, batch_size: Optional[int] = None) -> int:
        if self.dry_run:
            if name not in self._counters:
                self._counters[name] = self._stored_last_value(name)
            self._counters[name] += 1
            return self._counters[name]

        if not batch_size or batch_size <= 1:
            return self._reserve(name, 1)

        block = self._reservations.get(name)
        if block and block[0] <= block[1]:
            key = block[0]
            block[0] += 1
            return key

        last = self._reserve(name, batch_size)
        first = last - batch_size + 1
        self._reservations[name] = [first + 1, last]
        return first

    def _stored_last_value(self, name: str) -> int:
        """Last key handed out for name by live runs; dry-run keys start above it."""
        if self.warehouse is None:
            return 0
        row = self.warehouse.fetchone(
            "SELECT last_value FROM etl_sequences WHERE name = ?", [name]
        )
        return row[0] if row else 0

    def _reserve(self, name: str, count: int) -> int:
        """Advance the named sequence by count and return its new last value."""
        if name not in self._known:

            def create():
                self.warehouse.execute(
                    "INSERT INTO etl_sequences (name, last_value) VALUES (?, 0) ON CONFLICT DO NOTHING",
                    [name],
                )

            retry_on_conflict(create, f"sequence {name}", self.logger)
            self._known.add(name)

        def advance():
            row = self.warehouse.fetchone(
                """
                UPDATE etl_sequences
                SET last_value = last_value + ?
                WHERE name = ?
                RETURNING last_value
                """,
                [count, name],
            )
            return row[0]

        return retry_on_conflict(advance, f"sequence {name}", self.logger)

    def reset(self) -> None:
        """Forget reservations and counters; they are not trusted across a reconnect."""
        if self._reservations:
            self.logger.info(
                f"Dropping sequence reservations for: {', '.join(sorted(self._reservations))}"
            )
        self._reservations.clear()
        self._counters.clear()
        self._known.clear()
