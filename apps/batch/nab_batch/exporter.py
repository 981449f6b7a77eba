from __future__ import annotations

import logging
import os
from pathlib import Path

from nab_batch.hash_utils import stable_hash
from nab_batch.models import ExportSummary, ManifestEntry, SourceRecord
from nab_batch.observability.tracing import annotate, phase_span
from nab_batch.prompting import PromptPack, build_request, load_prompt_pack, payload_to_text
from nab_batch.record_labels import encode_record_id
from nab_batch.record_store import DEFAULT_MARK_BATCH_SIZE, RecordStore

logger = logging.getLogger(__name__)

STATUS_EXPORTED = "exported"
STATUS_NOTHING_TO_DO = "nothing_to_do"

_PAYLOAD_HASH_CHARS = 32
_PROGRESS_EVERY = 1000


class Exporter:
    """
    Writes one manifest line per pending record, then marks exactly those records exported.

    Nothing is marked until the manifest has been flushed, fsynced and renamed into place, so a
    crash at any point before that leaves every record pending and the next run starts over.
    """

    def __init__(
        self,
        record_store: RecordStore,
        *,
        prompt_pack: PromptPack | None = None,
        page_size: int = 500,
        mark_batch_size: int = DEFAULT_MARK_BATCH_SIZE,
        max_payload_chars: int = 100_000,
    ) -> None:
        self._store = record_store
        self._pack = prompt_pack or load_prompt_pack()
        self._page_size = page_size
        self._mark_batch_size = mark_batch_size
        self._max_payload_chars = max_payload_chars

    def build_entry(self, record: SourceRecord) -> ManifestEntry:
        labels = encode_record_id(record.id)
        labels["payload_hash"] = stable_hash(record.payload)[:_PAYLOAD_HASH_CHARS]
        payload_text = payload_to_text(record.payload, self._max_payload_chars)
        return ManifestEntry(record_id=record.id, request_payload=build_request(self._pack, payload_text, labels))

    def export(
        self,
        manifest_path: str | Path,
        *,
        max_records: int | None = None,
        max_bytes: int | None = None,
        dry_run: bool = False,
    ) -> ExportSummary:
        path = Path(manifest_path)
        with phase_span("export", {"manifest_path": str(path), "dry_run": dry_run}) as span:
            if dry_run:
                summary = self._dry_run(path, max_records=max_records, max_bytes=max_bytes)
            else:
                summary = self._export(path, max_records=max_records, max_bytes=max_bytes)
            annotate(span, "export", summary.as_dict())
            return summary

    def _accept(self, record: SourceRecord) -> ManifestEntry | None:
        try:
            return self.build_entry(record)
        except ValueError as exc:
            logger.warning("Skipping record %r: %s", record.id[:80], exc)
            return None

    def _dry_run(self, path: Path, *, max_records: int | None, max_bytes: int | None) -> ExportSummary:
        summary = ExportSummary(status=STATUS_NOTHING_TO_DO, manifest_path=str(path), dry_run=True)
        for record in self._store.stream_unexported(page_size=self._page_size):
            entry = self._accept(record)
            if entry is None:
                summary.skipped += 1
                continue
            size = len(entry.to_line().encode("utf-8"))
            if _limit_reached(summary, size, max_records, max_bytes):
                break
            summary.exported += 1
            summary.bytes_written += size
        if summary.exported:
            summary.status = STATUS_EXPORTED
        logger.info("Dry run: %s records (%s bytes) would be exported", summary.exported, summary.bytes_written)
        return summary

    def _export(self, path: Path, *, max_records: int | None, max_bytes: int | None) -> ExportSummary:
        summary = ExportSummary(status=STATUS_NOTHING_TO_DO, manifest_path=str(path))
        exported_ids: set[str] = set()
        path.parent.mkdir(parents=True, exist_ok=True)
        partial = path.with_name(path.name + ".partial")

        try:
            with open(partial, "w", encoding="utf-8", newline="\n") as fh:
                for record in self._store.stream_unexported(page_size=self._page_size):
                    if record.id in exported_ids:
                        continue
                    entry = self._accept(record)
                    if entry is None:
                        summary.skipped += 1
                        continue
                    line = entry.to_line()
                    size = len(line.encode("utf-8"))
                    if _limit_reached(summary, size, max_records, max_bytes):
                        logger.info("Manifest limit reached after %s records; the rest stay pending", summary.exported)
                        break
                    fh.write(line)
                    exported_ids.add(record.id)
                    summary.exported += 1
                    summary.bytes_written += size
                    if summary.exported % _PROGRESS_EVERY == 0:
                        logger.info("Exported %s records (%s bytes)...", summary.exported, summary.bytes_written)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(partial, path)
        except BaseException:
            # Any failure before the rename leaves all records pending.
            partial.unlink(missing_ok=True)
            raise

        if not exported_ids:
            logger.info("Nothing to export: no pending records (%s skipped)", summary.skipped)
            return summary

        summary.status = STATUS_EXPORTED
        logger.info("Manifest %s written: %s records, %s bytes", path, summary.exported, summary.bytes_written)

        mark = self._store.mark_exported(exported_ids, batch_size=self._mark_batch_size)
        summary.marked = mark.marked
        summary.mark_failed = len(mark.failed_ids)
        if mark.failed_ids:
            logger.warning(
                "%s records could not be marked exported and remain pending: %s",
                len(mark.failed_ids),
                "; ".join(mark.errors),
            )
        return summary


def _limit_reached(summary: ExportSummary, next_size: int, max_records: int | None, max_bytes: int | None) -> bool:
    if max_records is not None and summary.exported >= max_records:
        return True
    if max_bytes is not None and summary.exported and summary.bytes_written + next_size > max_bytes:
        return True
    return False
