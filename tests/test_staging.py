import pytest

from nab_batch.config import PipelineSettings
from nab_batch.errors import ConfigurationError, StagingIntegrityError
from nab_batch.hash_utils import file_sha256
from nab_batch.staging import StagingUploader, manifest_staging_uri, staging_object_name

BASE = "staging/batch_input.jsonl"


@pytest.fixture
def manifest(tmp_path):
    path = tmp_path / "batch_input.jsonl"
    path.write_text('{"request": {"labels": {"record_id": "a"}}}\n', encoding="utf-8")
    return path


def _name(path):
    return staging_object_name(BASE, file_sha256(path))


def _uploader(client, no_sleep):
    return StagingUploader(client, "staging-bucket", retries=2, retry_base_seconds=0.0, sleep=no_sleep)


def test_second_upload_is_skipped(fake_minio, manifest, no_sleep):
    uploader = _uploader(fake_minio, no_sleep)

    first = uploader.upload(manifest, BASE)
    second = uploader.upload(manifest, BASE)

    assert fake_minio.transfers == 1
    assert first.skipped is False
    assert second.skipped is True
    assert second.uri == f"gs://staging-bucket/{staging_object_name(BASE, file_sha256(manifest))}"
    assert second.remote_fingerprint == file_sha256(manifest)
    assert "staging-bucket" in fake_minio.buckets


def test_size_only_match_without_fingerprint(fake_minio, manifest, no_sleep):
    fake_minio.put_bytes("staging-bucket", _name(manifest), b"x" * manifest.stat().st_size)

    staged = _uploader(fake_minio, no_sleep).upload(manifest, BASE)

    assert staged.skipped is True
    assert staged.remote_fingerprint is None
    assert fake_minio.transfers == 0


def test_same_size_different_fingerprint_is_reuploaded(fake_minio, manifest, no_sleep):
    fake_minio.put_bytes(
        "staging-bucket",
        _name(manifest),
        b"x" * manifest.stat().st_size,
        metadata={"x-amz-meta-sha256": "0" * 64},
    )

    staged = _uploader(fake_minio, no_sleep).upload(manifest, BASE)

    assert staged.skipped is False
    assert fake_minio.transfers == 1
    assert fake_minio.objects[("staging-bucket", _name(manifest))]["data"] == manifest.read_bytes()


def test_new_generation_gets_its_own_object(fake_minio, manifest, no_sleep):
    uploader = _uploader(fake_minio, no_sleep)
    first = uploader.upload(manifest, BASE)
    first_bytes = manifest.read_bytes()

    manifest.write_text('{"request": {"labels": {"record_id": "d"}}}\n', encoding="utf-8")
    second = uploader.upload(manifest, BASE)

    assert fake_minio.transfers == 2
    assert second.skipped is False
    assert second.uri != first.uri
    assert fake_minio.objects[("staging-bucket", _name(manifest))]["data"] == manifest.read_bytes()
    first_name = first.uri.removeprefix("gs://staging-bucket/")
    assert fake_minio.objects[("staging-bucket", first_name)]["data"] == first_bytes


def test_object_name_carries_content_hash():
    assert staging_object_name("staging/batch_input.jsonl", "ab" * 32) == "staging/batch_input-" + "ab" * 8 + ".jsonl"
    assert staging_object_name("/staging/batch_input", "cd" * 32) == "staging/batch_input-" + "cd" * 8
    assert staging_object_name("in.d/manifest", "ef" * 32) == "in.d/manifest-" + "ef" * 8


def test_manifest_uri_matches_upload(fake_minio, manifest, no_sleep):
    settings = PipelineSettings(s3_bucket="staging-bucket")

    staged = _uploader(fake_minio, no_sleep).upload(manifest, settings.staging_object)

    assert manifest_staging_uri(settings, manifest) == staged.uri


def test_empty_manifest_has_no_staging_uri(tmp_path):
    path = tmp_path / "empty.jsonl"
    path.write_text("", encoding="utf-8")

    assert manifest_staging_uri(PipelineSettings(s3_bucket="b"), path) is None
    with pytest.raises(ConfigurationError):
        manifest_staging_uri(PipelineSettings(s3_bucket="b"), tmp_path / "missing.jsonl")


def test_size_mismatch_after_upload_raises(fake_minio, manifest, no_sleep):
    fake_minio.corrupt_uploads = True

    with pytest.raises(StagingIntegrityError):
        _uploader(fake_minio, no_sleep).upload(manifest, BASE)


def test_missing_manifest(fake_minio, tmp_path, no_sleep):
    with pytest.raises(FileNotFoundError):
        _uploader(fake_minio, no_sleep).upload(tmp_path / "nope.jsonl", BASE)


def test_dry_run_transfers_nothing(fake_minio, manifest, no_sleep):
    staged = _uploader(fake_minio, no_sleep).upload(manifest, BASE, dry_run=True)

    assert staged.skipped is False
    assert fake_minio.transfers == 0
    assert fake_minio.buckets == set()


def test_transient_stat_failure_is_retried(fake_minio, manifest, no_sleep):
    original = fake_minio.stat_object
    calls = {"n": 0}

    def flaky(bucket, name):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConnectionError("timeout")
        return original(bucket, name)

    fake_minio.stat_object = flaky

    staged = _uploader(fake_minio, no_sleep).upload(manifest, BASE)

    assert staged.skipped is False
    assert fake_minio.transfers == 1
