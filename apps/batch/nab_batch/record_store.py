from __future__ import annotations

import abc
import json
import logging
from typing import Any, Iterable, Iterator

from nab_batch.db import _db_execute, _db_fetch_all
from nab_batch.models import ExportState, MarkResult, SourceRecord

logger = logging.getLogger(__name__)

DEFAULT_MARK_BATCH_SIZE = 1000


class RecordStore(abc.ABC):
    """
    Access to source records and their export state.

    `export_state` moves from pending to exported exactly once per generation, and only
    through `mark_exported`.
    """

    @abc.abstractmethod
    def stream_unexported(self, page_size: int = 500) -> Iterator[SourceRecord]:
        """Yield every pending record; each call starts a fresh cursor."""

    @abc.abstractmethod
    def mark_exported(self, ids: Iterable[str], batch_size: int = DEFAULT_MARK_BATCH_SIZE) -> MarkResult:
        """Flip pending records to exported in bounded batches; failed batches are reported, not rolled back."""

    @abc.abstractmethod
    def count_by_state(self) -> dict[str, int]:
        """Return {state: count} for every export state."""


def _decode_payload(value: Any) -> Any:
    # jsonb comes back decoded from psycopg; text columns from older imports do not.
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def _chunks(ids: list[str], size: int) -> Iterator[list[str]]:
    for start in range(0, len(ids), size):
        yield ids[start : start + size]


class PostgresRecordStore(RecordStore):
    def stream_unexported(self, page_size: int = 500) -> Iterator[SourceRecord]:
        page_size = max(1, page_size)
        last_id: str | None = None
        while True:
            # Keyset pagination: each page is a short query, nothing is held open between pages.
            rows = _db_fetch_all(
                """
                SELECT id, payload
                FROM source_records
                WHERE export_state = %s
                  AND (%s::text IS NULL OR id > %s::text)
                ORDER BY id ASC
                LIMIT %s
                """,
                (ExportState.PENDING.value, last_id, last_id, page_size),
            )
            if not rows:
                return
            for row in rows:
                yield SourceRecord(id=str(row["id"]), payload=_decode_payload(row.get("payload")))
            if len(rows) < page_size:
                return
            last_id = str(rows[-1]["id"])

    def mark_exported(self, ids: Iterable[str], batch_size: int = DEFAULT_MARK_BATCH_SIZE) -> MarkResult:
        unique_ids = sorted({str(i) for i in ids})
        result = MarkResult(requested=len(unique_ids))
        if not unique_ids:
            return result

        batch_size = max(1, batch_size)
        for index, batch in enumerate(_chunks(unique_ids, batch_size)):
            try:
                updated = _db_execute(
                    """
                    UPDATE source_records
                    SET export_state = %s, exported_at = now(), updated_at = now()
                    WHERE id = ANY(%s::text[])
                      AND export_state = %s
                    """,
                    (ExportState.EXPORTED.value, batch, ExportState.PENDING.value),
                )
            except Exception as exc:  # noqa: BLE001
                logger.exception("mark_exported batch %s (%s ids) failed", index, len(batch))
                result.failed_ids.extend(batch)
                result.errors.append(f"batch={index}:{exc}")
                continue
            result.marked += max(updated, 0)
        return result

    def count_by_state(self) -> dict[str, int]:
        rows = _db_fetch_all(
            """
            SELECT export_state, count(*) AS n
            FROM source_records
            GROUP BY export_state
            """
        )
        counts = {state.value: 0 for state in ExportState}
        for row in rows:
            counts[str(row["export_state"])] = int(row["n"])
        return counts
