"""
Card Sync — Ingestion Writer

Writes dedup-qualified sales to the ledger. The batch goes in as one
statement; when that fails the same rows are retried one at a time so a
single duplicate (another cycle got there first) or a single bad row does
not cost the whole batch.

The ledger's unique constraint is the final arbiter: the dedup pass runs
against a snapshot, so a row can still collide at write time. Those rows
count as skipped, not as errors.
"""

from __future__ import annotations

from typing import Any, NamedTuple

import structlog

from src.pipeline.errors import DuplicateRecordError, StoreWriteError
from src.pipeline.store import SyncStore
from src.schedule.dedup import SaleRecord

logger = structlog.get_logger(__name__)


class WriteResult(NamedTuple):
    inserted: int
    skipped: int
    errors: int
    failures: list[dict[str, Any]]


class IngestionWriter:
    """
    Batch-then-row-by-row ledger writer.

    Usage:
        writer = IngestionWriter(store)
        result = await writer.write("item-42", partition.new, product_type="single")
    """

    def __init__(self, store: SyncStore):
        self.store = store

    async def write(
        self,
        item_id: str,
        records: list[SaleRecord],
        product_type: str | None = None,
    ) -> WriteResult:
        if not records:
            return WriteResult(0, 0, 0, [])

        try:
            inserted = await self.store.insert_transactions(item_id, records, product_type)
            logger.info("ingestion_batch_inserted", item_id=item_id, inserted=inserted)
            return WriteResult(inserted, 0, 0, [])
        except DuplicateRecordError:
            logger.debug("ingestion_batch_duplicate", item_id=item_id, rows=len(records))
        except StoreWriteError as e:
            logger.warning(
                "ingestion_batch_failed",
                item_id=item_id,
                rows=len(records),
                error=str(e),
            )

        return await self._write_rows(item_id, records, product_type)

    async def _write_rows(
        self,
        item_id: str,
        records: list[SaleRecord],
        product_type: str | None,
    ) -> WriteResult:
        inserted = 0
        skipped = 0
        failures: list[dict[str, Any]] = []

        for record in records:
            try:
                await self.store.insert_transaction(item_id, record, product_type)
                inserted += 1
            except DuplicateRecordError:
                skipped += 1
                logger.debug(
                    "ingestion_row_duplicate",
                    item_id=item_id,
                    grade=record.grade,
                    price=record.price,
                )
            except StoreWriteError as e:
                failures.append({
                    "item_id": item_id,
                    "grade": record.grade,
                    "price": record.price,
                    "error": str(e),
                })
                logger.error(
                    "ingestion_row_failed",
                    item_id=item_id,
                    grade=record.grade,
                    price=record.price,
                    error=str(e),
                )

        logger.info(
            "ingestion_rows_written",
            item_id=item_id,
            inserted=inserted,
            skipped=skipped,
            errors=len(failures),
        )
        return WriteResult(inserted, skipped, len(failures), failures)
