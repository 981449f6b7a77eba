from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from typing import Any, Callable, Sequence

from nab_batch.blob_store import minio_client, parse_object_uri, stat_object_or_none
from nab_batch.config import PipelineSettings
from nab_batch.db import db_ping, shutdown_db_pool
from nab_batch.errors import ConfigurationError, PipelineError
from nab_batch.exporter import STATUS_NOTHING_TO_DO
from nab_batch.models import JobState
from nab_batch.providers import factory
from nab_batch.schema import ensure_schema
from nab_batch.staging import manifest_staging_uri

logger = logging.getLogger("nab_batch.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_TIMEOUT = 3


def _emit(command: str, fields: dict[str, Any]) -> None:
    parts = [f"command={command}"]
    for key, value in fields.items():
        if isinstance(value, list):
            value = len(value)
        parts.append(f"{key}={value}")
    print(" ".join(parts), flush=True)


def _cmd_init_db(args: argparse.Namespace, settings: PipelineSettings) -> int:
    settings.require("db")
    factory.get_record_store(settings)
    statements = ensure_schema()
    _emit("init-db", {"statements": statements})
    return EXIT_OK


def _cmd_export(args: argparse.Namespace, settings: PipelineSettings) -> int:
    settings.require("db")
    exporter = factory.get_exporter(settings)
    summary = exporter.export(
        args.manifest or settings.manifest_path,
        max_records=args.max_records,
        max_bytes=args.max_bytes,
        dry_run=args.dry_run,
    )
    _emit("export", summary.as_dict())
    return EXIT_OK


def _cmd_upload(args: argparse.Namespace, settings: PipelineSettings) -> int:
    settings.require("storage")
    manifest = args.manifest or settings.manifest_path
    if not os.path.isfile(manifest):
        raise ConfigurationError(f"Manifest not found: {manifest} (run `nab-batch export` first)")
    if os.path.getsize(manifest) == 0:
        _emit("upload", {"status": STATUS_NOTHING_TO_DO, "manifest": manifest, "dry_run": args.dry_run})
        return EXIT_OK
    uploader = factory.get_uploader(settings)
    staged = uploader.upload(manifest, args.object or settings.staging_object, dry_run=args.dry_run)
    _emit(
        "upload",
        {
            "uri": staged.uri,
            "size_bytes": staged.size_bytes,
            "sha256": staged.local_fingerprint,
            "skipped": staged.skipped,
            "dry_run": args.dry_run,
        },
    )
    return EXIT_OK


def _input_uri(args: argparse.Namespace, settings: PipelineSettings) -> str | None:
    """Explicit `--input-uri`, else the staged location of the current manifest (None if it is empty)."""
    if args.input_uri:
        return args.input_uri
    return manifest_staging_uri(settings.require("storage"), args.manifest or settings.manifest_path)


def _cmd_submit(args: argparse.Namespace, settings: PipelineSettings) -> int:
    settings.require("vertex", "storage")
    input_uri = _input_uri(args, settings)
    if input_uri is None:
        _emit("submit", {"status": STATUS_NOTHING_TO_DO, "created": False, "dry_run": args.dry_run})
        return EXIT_OK
    submitter = factory.get_submitter(settings)
    outcome = submitter.submit(
        input_uri,
        args.output_prefix or settings.output_uri_prefix,
        allow_unchecked=args.allow_unchecked_submit,
        dry_run=args.dry_run,
    )
    if outcome is None:
        _emit("submit", {"input_uri": input_uri, "created": False, "dry_run": True})
        return EXIT_OK
    job = outcome.job
    _emit(
        "submit",
        {
            "job_id": job.job_id,
            "state": job.state.value,
            "native_state": job.native_state,
            "created": outcome.created,
            "input_uri": job.input_uri,
        },
    )
    return EXIT_OK


def _cmd_import(args: argparse.Namespace, settings: PipelineSettings) -> int:
    if args.output_uri:
        settings.require("db", "storage")
        output_uri, job_name = args.output_uri, None
    else:
        settings.require("db", "storage", "vertex")
        input_uri = _input_uri(args, settings)
        if input_uri is None:
            print("The current manifest is empty; pass --input-uri or --output-uri to import an earlier job.", file=sys.stderr)
            return EXIT_FAILED
        job = factory.get_submitter(settings).find_existing(input_uri)
        if job is None:
            print(f"No batch job found for {input_uri}; run `nab-batch submit` first.", file=sys.stderr)
            return EXIT_FAILED
        if job.state != JobState.SUCCEEDED:
            print(f"Batch job {job.job_id} is {job.state.value}; import once it has succeeded.", file=sys.stderr)
            return EXIT_FAILED
        output_uri, job_name = job.output_location, job.name or job.job_id

    importer = factory.get_importer(settings)
    summary = importer.import_results(output_uri, job_name=job_name, dry_run=args.dry_run)
    _emit("import", summary.as_dict())
    return EXIT_OK


def _status_fields(settings: PipelineSettings, args: argparse.Namespace) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    try:
        store = factory.get_record_store(settings.require("db"))
        counts = store.count_by_state()
        fields.update({f"records_{k}": v for k, v in counts.items()})
        fields["db"] = "ok" if db_ping() else "unreachable"
    except ConfigurationError as exc:
        fields["db"] = f"unconfigured({','.join(exc.missing) or exc.message})"

    input_uri = args.input_uri
    if input_uri is None:
        manifest = args.manifest or settings.manifest_path
        try:
            input_uri = manifest_staging_uri(settings.require("storage"), manifest)
            fields["manifest"] = "staged_as_input" if input_uri else "empty"
        except ConfigurationError as exc:
            fields["manifest"] = f"unconfigured({','.join(exc.missing)})" if exc.missing else "absent"
    fields["input_uri"] = input_uri

    try:
        client = minio_client(settings)
        if input_uri is None:
            fields["staging"] = "none"
        else:
            bucket, name = parse_object_uri(input_uri)
            stat = stat_object_or_none(client, bucket, name)
            fields["staging"] = f"{stat.size}B" if stat is not None else "absent"
    except ConfigurationError as exc:
        fields["staging"] = f"unconfigured({','.join(exc.missing)})"
    except Exception as exc:  # noqa: BLE001
        fields["staging"] = f"error({exc})"

    try:
        submitter = factory.get_submitter(settings)
        job = submitter.find_existing(input_uri) if input_uri else None
        fields["job_id"] = job.job_id if job else None
        fields["job_state"] = job.state.value if job else "none"
    except ConfigurationError as exc:
        fields["job_state"] = f"unconfigured({','.join(exc.missing)})"
    except PipelineError as exc:
        fields["job_state"] = f"error({exc.code})"
    return fields


def _cmd_status(args: argparse.Namespace, settings: PipelineSettings) -> int:
    if not args.wait:
        _emit("status", _status_fields(settings, args))
        return EXIT_OK

    settings.require("vertex")
    input_uri = _input_uri(args, settings)
    if input_uri is None:
        print("The current manifest is empty; pass --input-uri to wait for an earlier job.", file=sys.stderr)
        return EXIT_FAILED
    submitter = factory.get_submitter(settings)
    job = submitter.find_existing(input_uri)
    if job is None:
        print(f"No batch job found for {input_uri}.", file=sys.stderr)
        return EXIT_FAILED

    deadline = time.time() + max(args.timeout_minutes, 1.0) * 60.0
    last_line = None
    while time.time() < deadline:
        job = submitter.refresh(job)
        line = f"job_id={job.job_id} state={job.state.value} native_state={job.native_state}"
        if line != last_line:
            print(line, flush=True)
            last_line = line
        if job.state.is_terminal:
            return EXIT_OK if job.state == JobState.SUCCEEDED else EXIT_FAILED
        time.sleep(max(args.poll_seconds, 0.5))

    print(f"Timed out waiting for batch job {job.job_id}.", file=sys.stderr)
    return EXIT_TIMEOUT


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nab-batch", description="Resumable batch analysis pipeline.")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("NAB_LOG_LEVEL", "INFO"),
        help="Logging level (default: NAB_LOG_LEVEL or INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create the record and result tables if missing.")
    p.set_defaults(handler=_cmd_init_db)

    p = sub.add_parser("export", help="Write pending records to the manifest and mark them exported.")
    p.add_argument("--manifest", help="Manifest path (default: NAB_MANIFEST_PATH)")
    p.add_argument("--max-records", type=int, default=None, help="Stop after this many records")
    p.add_argument("--max-bytes", type=int, default=None, help="Stop before the manifest exceeds this size")
    p.add_argument("--dry-run", action="store_true", help="Count what would be exported; write nothing")
    p.set_defaults(handler=_cmd_export)

    p = sub.add_parser("upload", help="Stage the manifest in object storage (skipped if already identical).")
    p.add_argument("--manifest", help="Manifest path (default: NAB_MANIFEST_PATH)")
    p.add_argument("--object", help="Remote object name (default: NAB_STAGING_OBJECT)")
    p.add_argument("--dry-run", action="store_true", help="Report whether an upload would happen")
    p.set_defaults(handler=_cmd_upload)

    p = sub.add_parser("submit", help="Create the batch job unless one already covers the staged manifest.")
    p.add_argument("--input-uri", help="Staged manifest URI (default: derived from the manifest content)")
    p.add_argument("--manifest", help="Manifest whose staged copy is submitted (default: NAB_MANIFEST_PATH)")
    p.add_argument("--output-prefix", help="Output URI prefix (default: derived from NAB_OUTPUT_PREFIX)")
    p.add_argument(
        "--allow-unchecked-submit",
        action="store_true",
        help="Submit even if existing jobs cannot be listed (risks a duplicate paid job)",
    )
    p.add_argument("--dry-run", action="store_true", help="Check for an existing job; submit nothing")
    p.set_defaults(handler=_cmd_submit)

    p = sub.add_parser("import", help="Upsert the job's output into the result store.")
    p.add_argument("--input-uri", help="Staged manifest URI used to find the job")
    p.add_argument("--manifest", help="Manifest used to derive the staged URI (default: NAB_MANIFEST_PATH)")
    p.add_argument("--output-uri", help="Read this output location directly instead of looking up the job")
    p.add_argument("--dry-run", action="store_true", help="Decode output lines; write nothing")
    p.set_defaults(handler=_cmd_import)

    p = sub.add_parser("status", help="Show record counts, staging object and job state.")
    p.add_argument("--input-uri", help="Staged manifest URI used to find the job")
    p.add_argument("--manifest", help="Manifest used to derive the staged URI (default: NAB_MANIFEST_PATH)")
    p.add_argument("--wait", action="store_true", help="Poll the job until it finishes")
    p.add_argument("--poll-seconds", type=float, default=30.0, help="Polling interval (default: 30s)")
    p.add_argument("--timeout-minutes", type=float, default=24 * 60.0, help="Stop polling after this long")
    p.set_defaults(handler=_cmd_status)

    return parser


def main(argv: Sequence[str] | None = None, *, settings_loader: Callable[[], PipelineSettings] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = (settings_loader or PipelineSettings.from_env)()
        logger.debug("Settings: %s", settings.redacted())
        return args.handler(args, settings)
    except PipelineError as exc:
        logger.error("%s failed: %s", args.command, exc.message)
        print(f"ERROR [{exc.code}]: {exc.message}", file=sys.stderr)
        return exc.exit_code
    except Exception as exc:  # noqa: BLE001
        logger.exception("%s failed", args.command)
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_FAILED
    finally:
        shutdown_db_pool()


if __name__ == "__main__":
    raise SystemExit(main())
