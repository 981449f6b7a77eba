from __future__ import annotations

import logging

from nab_batch.db import _db_execute

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS source_records (
      id text PRIMARY KEY,
      payload jsonb NOT NULL,
      export_state text NOT NULL DEFAULT 'pending'
        CHECK (export_state IN ('pending', 'exported')),
      exported_at timestamptz,
      created_at timestamptz NOT NULL DEFAULT now(),
      updated_at timestamptz NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS source_records_export_state_id_idx
      ON source_records (export_state, id)
    """,
    """
    CREATE TABLE IF NOT EXISTS analysis_results (
      id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
      original_record_id text UNIQUE,
      natural_key text,
      intent text,
      struggle_score integer,
      tech_context text,
      is_milestone boolean NOT NULL DEFAULT false,
      prompt_excerpt text,
      payload_hash text,
      source text NOT NULL DEFAULT 'vertex_batch',
      job_name text,
      output_object text,
      imported_at timestamptz NOT NULL,
      created_at timestamptz NOT NULL DEFAULT now(),
      updated_at timestamptz NOT NULL DEFAULT now(),
      CHECK (original_record_id IS NOT NULL OR natural_key IS NOT NULL)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS analysis_results_natural_key_idx
      ON analysis_results (natural_key)
      WHERE original_record_id IS NULL
    """,
)


def ensure_schema() -> int:
    for statement in SCHEMA_STATEMENTS:
        _db_execute(statement)
    logger.info("Schema ensured (%s statements).", len(SCHEMA_STATEMENTS))
    return len(SCHEMA_STATEMENTS)
