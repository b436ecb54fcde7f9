from __future__ import annotations

import sys
import warnings
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, TextIO

from sqlalchemy.exc import SQLAlchemyError

from seedsync.errors import ConfigurationError, SequenceRepairWarning
from seedsync.logging import logger
from seedsync.settings import SETTINGS
from seedsync.store import EntityType, Record, SequenceAware, SqlStore, column_list


def _normalize(row: Mapping[Any, Any]) -> dict[str, Any]:
    return {str(k): v for k, v in row.items()}


class SeedReconciler:
    """
    Creates or updates the rows of one entity type from a list of seed rows.

    Each seed row is matched to a stored row by the values of the constraint columns
    (the primary key unless given). Matches are overwritten with the seed values,
    anything unmatched is inserted. Validation is skipped while saving: seed data is
    trusted. If several stored rows match, whichever the store returns first is used.
    """

    def __init__(
        self,
        store: SqlStore,
        entity: EntityType,
        constraints: Iterable[str] | None,
        rows: Iterable[Mapping[Any, Any]],
        *,
        quiet: bool | None = None,
        insert_only: bool = False,
        out: TextIO | None = None,
    ) -> None:
        self.store = store
        self.entity = entity
        if isinstance(constraints, str):
            constraints = (constraints,)
        self.constraints = tuple(str(c) for c in constraints or ()) or entity.primary_key_columns
        self.rows = [_normalize(r) for r in rows or ()]
        self.quiet = SETTINGS.quiet if quiet is None else quiet
        self.insert_only = insert_only
        self.out = out

        self._validate_constraints()
        self._validate_rows()

    def _validate_constraints(self) -> None:
        if not self.constraints:
            raise ConfigurationError(f"`{self.entity.name}` has no primary key; seed constraints are required.")
        known = self.store.list_known_attributes(self.entity)
        unknown = [c for c in self.constraints if c not in known]
        if unknown:
            raise ConfigurationError(
                f"Your seed constraints contained unknown columns: {column_list(unknown)}. "
                f"Valid columns are: {column_list(self._ordered_columns())}."
            )

    def _validate_rows(self) -> None:
        if not self.rows:
            raise ConfigurationError("Seed data missing")
        known = self.store.list_known_attributes(self.entity)
        for i, row in enumerate(self.rows):
            unknown = sorted(set(row) - known)
            if unknown:
                raise ConfigurationError(
                    f"Seed row {i} for `{self.entity.name}` contained unknown columns: {column_list(unknown)}. "
                    f"Valid columns are: {column_list(self._ordered_columns())}."
                )

    def _ordered_columns(self) -> list[str]:
        return [c.key for c in self.entity.table.columns]

    def reconcile(self) -> list[Record]:
        """Insert/update the records as appropriate and return the ones written."""
        records: list[Record] = []
        inserted = updated = skipped = 0
        with self.store.transaction(self.entity):
            for row in self.rows:
                record = self._find_or_new(row)
                if self.insert_only and not self.store.is_new_record(record):
                    skipped += 1
                    continue
                if self.store.is_new_record(record):
                    inserted += 1
                else:
                    updated += 1
                records.append(self._write(record, row))

        logger.info(
            "seed_reconciled",
            entity=self.entity.name,
            inserted=inserted,
            updated=updated,
            skipped=skipped,
        )
        self._repair_sequence()
        return records

    def _find_or_new(self, row: Mapping[str, Any]) -> Record:
        predicate = {c: row.get(c) for c in self.constraints}
        return self.store.find_one(self.entity, predicate) or self.store.new_record(self.entity)

    def _write(self, record: Record, row: Mapping[str, Any]) -> Record:
        self.store.assign(record, row)
        if not self.quiet:
            print(f" - {self.entity.name} {row!r}", file=self.out or sys.stdout)
        return self.store.persist(record, validate=False)

    def _max_seeded_id(self) -> Any:
        pk = self.entity.primary_key
        if pk is None:
            return None
        ids = [row[pk] for row in self.rows if row.get(pk) is not None]
        return max(ids) if ids else None

    def _repair_sequence(self) -> None:
        store = self.store
        if not isinstance(store, SequenceAware) or self.entity.primary_key is None:
            return
        try:
            if store.sequence_name(self.entity) is None:
                return
            max_seeded_id = self._max_seeded_id()
            if max_seeded_id is None:
                return
            last_value = store.read_sequence_last_value(self.entity)
            if last_value is not None and last_value >= max_seeded_id:
                # Already ahead of every seeded id; leave it alone.
                logger.debug(
                    "sequence_repair_skipped",
                    entity=self.entity.name,
                    last_value=last_value,
                    max_seeded_id=max_seeded_id,
                )
                return
            store.resync_sequence_to_table_max(self.entity)
        except (SQLAlchemyError, TypeError) as exc:
            # TypeError: seeded ids that cannot be ordered against each other or the sequence.
            logger.warning("sequence_repair_failed", entity=self.entity.name, error=str(exc))
            warnings.warn(
                f"Seeded `{self.entity.name}` but could not realign its id sequence: {exc}",
                SequenceRepairWarning,
                stacklevel=3,
            )
            return
        logger.info(
            "sequence_repaired",
            entity=self.entity.name,
            last_value=last_value,
            max_seeded_id=max_seeded_id,
        )


def reconcile(
    store: SqlStore,
    entity: EntityType,
    constraints: Iterable[str] | None,
    rows: Sequence[Mapping[Any, Any]],
    *,
    quiet: bool | None = None,
    insert_only: bool = False,
    out: TextIO | None = None,
) -> list[Record]:
    reconciler = SeedReconciler(
        store, entity, constraints, rows, quiet=quiet, insert_only=insert_only, out=out
    )
    return reconciler.reconcile()


def seed(
    store: SqlStore,
    entity: EntityType,
    *rows: Mapping[Any, Any],
    constraints: Iterable[str] = (),
    quiet: bool | None = None,
) -> list[Record]:
    """Create or update `rows`, matching stored rows on `constraints` (default: primary key)."""
    return reconcile(store, entity, constraints, rows, quiet=quiet)


def seed_once(
    store: SqlStore,
    entity: EntityType,
    *rows: Mapping[Any, Any],
    constraints: Iterable[str] = (),
    quiet: bool | None = None,
) -> list[Record]:
    """Like `seed`, but rows that already exist are left untouched."""
    return reconcile(store, entity, constraints, rows, quiet=quiet, insert_only=True)
