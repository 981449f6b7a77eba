from unittest.mock import MagicMock, patch

from nab_batch import cli
from nab_batch.config import PipelineSettings
from nab_batch.models import BatchJob, ExportSummary, JobState
from nab_batch.staging import manifest_staging_uri

FULL = PipelineSettings(
    db_dsn="postgresql://localhost/nab",
    s3_endpoint="http://localhost:9000",
    s3_access_key="minio",
    s3_secret_key="minio123",
    s3_bucket="nab",
    gcp_project_id="proj",
    vertex_access_token="token",
)
INPUT_URI = "gs://nab/staging/batch_input-0123456789abcdef.jsonl"


def _job(state):
    return BatchJob(job_id="J1", name="jobs/J1", input_uri=INPUT_URI, output_uri_prefix=FULL.output_uri_prefix, state=state)


def test_missing_configuration_exits_with_2(capsys):
    code = cli.main(["export"], settings_loader=PipelineSettings)

    assert code == cli.EXIT_CONFIG
    assert "NAB_DB_DSN" in capsys.readouterr().err


@patch("nab_batch.cli.factory.get_exporter")
def test_export_prints_summary(mock_get_exporter, capsys):
    exporter = MagicMock()
    exporter.export.return_value = ExportSummary(status="exported", manifest_path="m.jsonl", exported=3, marked=3)
    mock_get_exporter.return_value = exporter

    code = cli.main(["export", "--max-records", "10"], settings_loader=lambda: FULL)

    assert code == cli.EXIT_OK
    assert exporter.export.call_args.kwargs["max_records"] == 10
    out = capsys.readouterr().out
    assert "command=export" in out
    assert "exported=3" in out


def test_upload_without_manifest_is_a_configuration_error(tmp_path, capsys):
    code = cli.main(["upload", "--manifest", str(tmp_path / "missing.jsonl")], settings_loader=lambda: FULL)

    assert code == cli.EXIT_CONFIG
    assert "run `nab-batch export` first" in capsys.readouterr().err


@patch("nab_batch.cli.factory.get_submitter")
def test_import_refuses_unfinished_job(mock_get_submitter, capsys):
    mock_get_submitter.return_value.find_existing.return_value = _job(JobState.RUNNING)

    code = cli.main(["import", "--input-uri", INPUT_URI], settings_loader=lambda: FULL)

    assert code == cli.EXIT_FAILED
    assert "is running" in capsys.readouterr().err


@patch("nab_batch.cli.factory.get_importer")
@patch("nab_batch.cli.factory.get_submitter")
def test_import_uses_job_output_location(mock_get_submitter, mock_get_importer):
    mock_get_submitter.return_value.find_existing.return_value = _job(JobState.SUCCEEDED)
    mock_get_importer.return_value.import_results.return_value.as_dict.return_value = {"imported": 2}

    code = cli.main(["import", "--input-uri", INPUT_URI], settings_loader=lambda: FULL)

    assert code == cli.EXIT_OK
    mock_get_importer.return_value.import_results.assert_called_once_with(
        FULL.output_uri_prefix, job_name="jobs/J1", dry_run=False
    )


def test_status_reports_unconfigured_sections(capsys):
    code = cli.main(["status"], settings_loader=PipelineSettings)

    assert code == cli.EXIT_OK
    out = capsys.readouterr().out
    assert "db=unconfigured(NAB_DB_DSN)" in out
    assert "job_state=unconfigured(NAB_GCP_PROJECT_ID,NAB_VERTEX_ACCESS_TOKEN)" in out


@patch("nab_batch.cli.factory.get_submitter")
def test_status_wait_until_succeeded(mock_get_submitter, capsys):
    submitter = mock_get_submitter.return_value
    submitter.find_existing.return_value = _job(JobState.RUNNING)
    submitter.refresh.return_value = _job(JobState.SUCCEEDED)

    code = cli.main(["status", "--wait", "--input-uri", INPUT_URI], settings_loader=lambda: FULL)

    assert code == cli.EXIT_OK
    assert "state=succeeded" in capsys.readouterr().out


@patch("nab_batch.cli.time")
@patch("nab_batch.cli.factory.get_submitter")
def test_status_wait_times_out(mock_get_submitter, mock_time):
    submitter = mock_get_submitter.return_value
    submitter.find_existing.return_value = _job(JobState.RUNNING)
    submitter.refresh.return_value = _job(JobState.RUNNING)
    mock_time.time.side_effect = [0.0, 0.0, 10_000.0]

    code = cli.main(["status", "--wait", "--input-uri", INPUT_URI, "--timeout-minutes", "1"], settings_loader=lambda: FULL)

    assert code == cli.EXIT_TIMEOUT
    mock_time.sleep.assert_called_once()


@patch("nab_batch.cli.factory.get_submitter")
def test_submit_uses_the_manifest_content_address(mock_get_submitter, tmp_path, capsys):
    manifest = tmp_path / "batch_input.jsonl"
    manifest.write_text('{"request": {}}\n', encoding="utf-8")
    outcome = mock_get_submitter.return_value.submit.return_value
    outcome.created = True
    outcome.job = _job(JobState.PENDING)

    code = cli.main(["submit", "--manifest", str(manifest)], settings_loader=lambda: FULL)

    assert code == cli.EXIT_OK
    input_uri = mock_get_submitter.return_value.submit.call_args.args[0]
    assert input_uri == manifest_staging_uri(FULL, manifest)
    assert input_uri.startswith("gs://nab/staging/batch_input-")
    assert "created=True" in capsys.readouterr().out


@patch("nab_batch.cli.factory.get_submitter")
@patch("nab_batch.cli.factory.get_uploader")
def test_empty_manifest_stops_upload_and_submit(mock_get_uploader, mock_get_submitter, tmp_path, capsys):
    manifest = tmp_path / "batch_input.jsonl"
    manifest.write_text("", encoding="utf-8")

    upload_code = cli.main(["upload", "--manifest", str(manifest)], settings_loader=lambda: FULL)
    submit_code = cli.main(["submit", "--manifest", str(manifest)], settings_loader=lambda: FULL)

    assert upload_code == submit_code == cli.EXIT_OK
    assert capsys.readouterr().out.count("status=nothing_to_do") == 2
    mock_get_uploader.assert_not_called()
    mock_get_submitter.assert_not_called()


def test_import_without_manifest_content_needs_an_explicit_uri(tmp_path, capsys):
    manifest = tmp_path / "batch_input.jsonl"
    manifest.write_text("", encoding="utf-8")

    code = cli.main(["import", "--manifest", str(manifest)], settings_loader=lambda: FULL)

    assert code == cli.EXIT_FAILED
    assert "--output-uri" in capsys.readouterr().err
