#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import os
import sys
import time

from nab_batch.config import PipelineSettings
from nab_batch.db import shutdown_db_pool
from nab_batch.errors import PipelineError
from nab_batch.exporter import STATUS_NOTHING_TO_DO
from nab_batch.models import JobState
from nab_batch.providers import factory


def main() -> int:
    parser = argparse.ArgumentParser(description="Run export, upload, submit, wait and import in one go.")
    parser.add_argument("--max-records", type=int, default=None, help="Cap the number of records exported this run")
    parser.add_argument("--skip-export", action="store_true", help="Reuse the manifest already on disk")
    parser.add_argument("--no-wait", action="store_true", help="Stop after submitting; run `nab-batch import` later")
    parser.add_argument("--poll-seconds", type=float, default=60.0, help="Polling interval (default: 60s)")
    parser.add_argument("--timeout-minutes", type=float, default=24 * 60.0, help="Stop polling after this long (default: 24h)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        settings = PipelineSettings.from_env().require("db", "storage", "vertex")

        if not args.skip_export:
            summary = factory.get_exporter(settings).export(settings.manifest_path, max_records=args.max_records)
            print(f"export status={summary.status} exported={summary.exported} skipped={summary.skipped}", flush=True)
            if summary.status == STATUS_NOTHING_TO_DO:
                print("No pending records; nothing to upload or submit.", flush=True)
                return 0
        elif os.path.isfile(settings.manifest_path) and os.path.getsize(settings.manifest_path) == 0:
            print("The manifest on disk is empty; nothing to upload or submit.", flush=True)
            return 0

        staged = factory.get_uploader(settings).upload(settings.manifest_path, settings.staging_object)
        print(f"upload uri={staged.uri} skipped={staged.skipped}", flush=True)

        submitter = factory.get_submitter(settings)
        outcome = submitter.submit(staged.uri, settings.output_uri_prefix)
        if outcome is None:
            print("Nothing submitted.", file=sys.stderr)
            return 1
        job = outcome.job
        print(f"submit job_id={job.job_id} created={outcome.created} state={job.state.value}", flush=True)
        if args.no_wait:
            return 0

        deadline = time.time() + max(args.timeout_minutes, 1.0) * 60.0
        last_line = None
        while not job.state.is_terminal:
            if time.time() >= deadline:
                print(f"Timed out waiting for batch job {job.job_id}. Re-run to resume.", file=sys.stderr)
                return 3
            time.sleep(max(args.poll_seconds, 0.5))
            job = submitter.refresh(job)
            line = f"job_id={job.job_id} state={job.state.value} native_state={job.native_state}"
            if line != last_line:
                print(line, flush=True)
                last_line = line

        if job.state != JobState.SUCCEEDED:
            print(f"Batch job {job.job_id} finished as {job.native_state}: {job.error}", file=sys.stderr)
            return 1

        result = factory.get_importer(settings).import_results(job.output_location, job_name=job.name or job.job_id)
        print(
            f"import lines={result.lines} imported={result.imported} inserted={result.inserted} "
            f"updated={result.updated} failed={result.failed}",
            flush=True,
        )
        return 0 if result.objects_failed == 0 and result.upsert_failed == 0 else 1
    except PipelineError as exc:
        print(f"ERROR [{exc.code}]: {exc.message}", file=sys.stderr)
        return exc.exit_code
    finally:
        shutdown_db_pool()


if __name__ == "__main__":
    raise SystemExit(main())
