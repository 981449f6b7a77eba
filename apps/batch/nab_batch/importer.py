from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from jsonschema import Draft202012Validator

from nab_batch.blob_store import iter_object_lines, list_object_names, parse_object_uri
from nab_batch.hash_utils import stable_hash
from nab_batch.models import AnalysisResult, ImportSummary
from nab_batch.observability.tracing import annotate, phase_span
from nab_batch.prompting import PromptPack, load_prompt_pack, request_prompt_text
from nab_batch.record_labels import decode_record_id
from nab_batch.result_store import ResultStore
from nab_batch.retry_utils import call_with_retries
from nab_batch.text_utils import _truncate_text, decode_answer_text
from nab_batch.time_utils import _utc_now

logger = logging.getLogger(__name__)

OUTPUT_SUFFIX = ".jsonl"
PROMPT_EXCERPT_CHARS = 5000
DEFAULT_STRUGGLE_SCORE = 5
_TRUE_STRINGS = {"true", "yes", "y", "1"}


@dataclass(frozen=True)
class LineOutcome:
    result: AnalysisResult | None = None
    error: str | None = None
    fallback: bool = False


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _answer_text(record: dict[str, Any]) -> str | None:
    # Batch output shapes vary: `response` for Gemini batch, `prediction` for older endpoints.
    for key in ("response", "prediction"):
        candidates = _dict(record.get(key)).get("candidates")
        if not isinstance(candidates, list) or not candidates:
            continue
        parts = _dict(_dict(candidates[0]).get("content")).get("parts")
        if not isinstance(parts, list):
            continue
        for part in parts:
            text = _dict(part).get("text")
            if isinstance(text, str):
                return text
    return None


def _echoed_record_id(record: dict[str, Any]) -> str | None:
    labelled = decode_record_id(_dict(_dict(record.get("request")).get("labels")))
    if labelled:
        return labelled
    candidates = (
        _dict(record.get("instance")).get("originalId"),
        record.get("recordId"),
        record.get("originalId"),
    )
    for value in candidates:
        if isinstance(value, bool):
            continue
        if isinstance(value, (str, int)) and str(value).strip():
            return str(value).strip()
    return None


def _normalise_score(value: Any) -> int:
    try:
        score = int(float(str(value).strip()))
    except (TypeError, ValueError):
        return DEFAULT_STRUGGLE_SCORE
    if score <= 0:
        return DEFAULT_STRUGGLE_SCORE
    return min(score, 10)


def _normalise_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def _normalise_context(value: Any) -> str | None:
    if isinstance(value, list):
        return ", ".join(str(v) for v in value if v is not None) or None
    if isinstance(value, str):
        return value.strip() or None
    return None


class ResultImporter:
    """
    Streams batch output objects into the result store.

    Every valid line becomes one keyed upsert, so importing the same output again only updates
    rows. Malformed lines are counted and skipped; an object that cannot be read is abandoned
    without stopping the remaining objects.
    """

    def __init__(
        self,
        client: Any,
        result_store: ResultStore,
        *,
        prompt_pack: PromptPack | None = None,
        batch_size: int = 1000,
        log_interval: int = 1000,
        retries: int = 3,
        retry_base_seconds: float = 2.0,
        source: str = "vertex_batch",
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._client = client
        self._store = result_store
        pack = prompt_pack or load_prompt_pack()
        self._validator = Draft202012Validator(pack.response_schema) if pack.response_schema else None
        self._batch_size = max(1, batch_size)
        self._log_interval = max(1, log_interval)
        self._retries = retries
        self._retry_base = retry_base_seconds
        self._source = source
        self._sleep = sleep

    def parse_line(self, line: str, *, object_name: str | None = None, job_name: str | None = None, now: datetime | None = None) -> LineOutcome:
        try:
            record = json.loads(line)
        except ValueError:
            return LineOutcome(error="line_not_json")
        if not isinstance(record, dict):
            return LineOutcome(error="line_not_object")

        text = _answer_text(record)
        if text is None:
            status = record.get("status")
            return LineOutcome(error=f"no_answer:{status}" if status else "no_answer")

        decoded = decode_answer_text(text)
        if not decoded.ok:
            return LineOutcome(error=decoded.error or "unparseable")
        analysis = decoded.value or {}

        if self._validator is not None:
            error = next(iter(self._validator.iter_errors(analysis)), None)
            if error is not None:
                return LineOutcome(error=f"schema_validation_failed:{error.message}")

        instance = _dict(record.get("instance"))
        request = _dict(record.get("request")) or instance
        prompt = request_prompt_text(request)
        if prompt is None:
            legacy = instance.get("content") or instance.get("prompt")
            prompt = legacy if isinstance(legacy, str) else None

        record_id = _echoed_record_id(record)
        natural_key = None
        fallback = False
        if record_id is None:
            contents = request.get("contents") if request else None
            if contents is None and prompt is None:
                return LineOutcome(error="unlinkable_line")
            natural_key = stable_hash(contents if contents is not None else prompt)
            fallback = True

        intent = analysis.get("intent")
        result = AnalysisResult(
            original_record_id=record_id,
            natural_key=natural_key,
            intent=str(intent).strip() if intent is not None else None,
            struggle_score=_normalise_score(analysis.get("struggle_score")),
            tech_context=_normalise_context(analysis.get("tech_context")),
            is_milestone=_normalise_flag(analysis.get("is_milestone")),
            prompt_excerpt=_truncate_text(prompt, PROMPT_EXCERPT_CHARS),
            payload_hash=_dict(request.get("labels")).get("payload_hash"),
            source=self._source,
            job_name=job_name,
            output_object=object_name,
            imported_at=now or _utc_now(),
        )
        return LineOutcome(result=result, fallback=fallback)

    def import_results(self, output_uri: str, *, job_name: str | None = None, dry_run: bool = False) -> ImportSummary:
        bucket, prefix = parse_object_uri(output_uri)
        if prefix and not prefix.endswith("/") and not prefix.endswith(OUTPUT_SUFFIX):
            prefix += "/"
        summary = ImportSummary(dry_run=dry_run)

        with phase_span("import", {"output_uri": output_uri, "job_name": job_name, "dry_run": dry_run}) as span:
            names = call_with_retries(
                lambda: list_object_names(self._client, bucket, prefix, suffix=OUTPUT_SUFFIX),
                label="list_objects",
                **self._retry_kwargs(),
            )
            summary.objects = len(names)
            if not names:
                logger.warning("No %s output objects under %s", OUTPUT_SUFFIX, output_uri)
                return summary

            pending: dict[tuple[str, str], AnalysisResult] = {}
            for name in names:
                logger.info("Importing %s/%s", bucket, name)
                try:
                    for line_number, line in enumerate(iter_object_lines(self._client, bucket, name), start=1):
                        if not line.strip():
                            continue
                        self._consume(line, name, line_number, job_name, summary, pending)
                        if len(pending) >= self._batch_size:
                            self._flush(pending, summary, dry_run)
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Reading %s failed; continuing with the remaining objects", name)
                    summary.objects_failed += 1
                    summary.failed_objects.append(f"{name}: {exc}")
            self._flush(pending, summary, dry_run)
            annotate(span, "import", summary.as_dict())

        logger.info(
            "Import finished: lines=%s parsed=%s failed=%s fallback=%s imported=%s (inserted=%s updated=%s) upsert_failed=%s objects_failed=%s",
            summary.lines,
            summary.parsed,
            summary.failed,
            summary.fallback_matches,
            summary.imported,
            summary.inserted,
            summary.updated,
            summary.upsert_failed,
            summary.objects_failed,
        )
        return summary

    def _retry_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"attempts": self._retries, "base_delay_seconds": self._retry_base}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return kwargs

    def _consume(
        self,
        line: str,
        object_name: str,
        line_number: int,
        job_name: str | None,
        summary: ImportSummary,
        pending: dict[tuple[str, str], AnalysisResult],
    ) -> None:
        summary.lines += 1
        outcome = self.parse_line(line, object_name=object_name, job_name=job_name)
        if outcome.result is None:
            summary.failed += 1
            logger.debug("Skipping line %s of %s: %s", line_number, object_name, outcome.error)
        else:
            summary.parsed += 1
            if outcome.fallback:
                summary.fallback_matches += 1
                logger.warning(
                    "Line %s of %s carries no record id; matched on request hash %s instead",
                    line_number,
                    object_name,
                    (outcome.result.natural_key or "")[:12],
                )
            pending[outcome.result.upsert_key] = outcome.result

        if summary.lines % self._log_interval == 0:
            rate = (summary.parsed / summary.lines * 100.0) if summary.lines else 0.0
            logger.info(
                "Processed %s lines | parsed=%s failed=%s imported=%s | success rate %.1f%%",
                summary.lines,
                summary.parsed,
                summary.failed,
                summary.imported,
                rate,
            )

    def _flush(self, pending: dict[tuple[str, str], AnalysisResult], summary: ImportSummary, dry_run: bool) -> None:
        if not pending:
            return
        batch = list(pending.values())
        pending.clear()
        if dry_run:
            return
        try:
            counts = self._store.upsert_results(batch)
        except Exception:  # noqa: BLE001
            # The batch did not commit; a re-run picks these lines up again.
            logger.exception("Upsert of %s results failed", len(batch))
            summary.upsert_failed += len(batch)
            return
        summary.imported += counts.total
        summary.inserted += counts.inserted
        summary.updated += counts.updated
