from __future__ import annotations

import abc
from typing import Any, Sequence

from nab_batch.db import _db_transaction
from nab_batch.models import AnalysisResult, UpsertCounts

_COLUMNS = (
    "original_record_id",
    "natural_key",
    "intent",
    "struggle_score",
    "tech_context",
    "is_milestone",
    "prompt_excerpt",
    "payload_hash",
    "source",
    "job_name",
    "output_object",
    "imported_at",
)
_COLUMN_TYPES = (
    "text[]",
    "text[]",
    "text[]",
    "int[]",
    "text[]",
    "bool[]",
    "text[]",
    "text[]",
    "text[]",
    "text[]",
    "text[]",
    "timestamptz[]",
)
_UPDATE_SET = ",\n      ".join(f"{c} = EXCLUDED.{c}" for c in _COLUMNS if c not in ("original_record_id", "natural_key"))


def _upsert_sql(conflict_target: str) -> str:
    unnest_args = ", ".join(f"%s::{t}" for t in _COLUMN_TYPES)
    return f"""
    INSERT INTO analysis_results ({", ".join(_COLUMNS)})
    SELECT * FROM unnest({unnest_args})
    ON CONFLICT {conflict_target} DO UPDATE SET
      {_UPDATE_SET},
      updated_at = now()
    RETURNING (xmax = 0) AS inserted
    """


_UPSERT_BY_RECORD_SQL = _upsert_sql("(original_record_id)")
_UPSERT_BY_NATURAL_KEY_SQL = _upsert_sql("(natural_key) WHERE original_record_id IS NULL")


class ResultStore(abc.ABC):
    @abc.abstractmethod
    def upsert_results(self, results: Sequence[AnalysisResult]) -> UpsertCounts:
        """
        Insert-or-update one batch atomically, keyed by original record id
        (or by natural key for results that could not be linked to a record).
        """


def _column_arrays(results: Sequence[AnalysisResult]) -> tuple[list[Any], ...]:
    return tuple([getattr(r, column) for r in results] for column in _COLUMNS)


class PostgresResultStore(ResultStore):
    def upsert_results(self, results: Sequence[AnalysisResult]) -> UpsertCounts:
        by_record = [r for r in results if r.original_record_id]
        by_natural_key = [r for r in results if not r.original_record_id and r.natural_key]
        counts = UpsertCounts()
        if not by_record and not by_natural_key:
            return counts

        with _db_transaction() as cur:
            for sql, rows in ((_UPSERT_BY_RECORD_SQL, by_record), (_UPSERT_BY_NATURAL_KEY_SQL, by_natural_key)):
                if not rows:
                    continue
                cur.execute(sql, _column_arrays(rows))
                for row in cur.fetchall():
                    if row["inserted"]:
                        counts.inserted += 1
                    else:
                        counts.updated += 1
        return counts
