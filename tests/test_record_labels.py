import re

import pytest

from nab_batch.record_labels import MAX_ID_BYTES, MAX_ID_LABELS, decode_record_id, encode_record_id

LABEL_VALUE = re.compile(r"[a-z0-9_-]{1,63}")


@pytest.mark.parametrize("record_id", ["A", "Has Spaces", "ünïcode/ключ", "a" * 63, "x:y@z#1"])
def test_ids_survive_the_label_encoding(record_id):
    labels = encode_record_id(record_id)

    assert all(LABEL_VALUE.fullmatch(value) for value in labels.values())
    assert decode_record_id(labels) == record_id


def test_long_ids_are_split_across_labels():
    record_id = "K" * MAX_ID_BYTES

    labels = encode_record_id(record_id)

    assert len(labels) == MAX_ID_LABELS + 1
    assert "record_id_31" in labels
    assert decode_record_id(labels) == record_id


def test_ids_that_do_not_fit_are_rejected():
    with pytest.raises(ValueError):
        encode_record_id("K" * (MAX_ID_BYTES + 1))
    with pytest.raises(ValueError):
        encode_record_id("")


def test_untagged_labels_are_read_verbatim():
    assert decode_record_id({"record_id": "legacy_id-7"}) == "legacy_id-7"
    assert decode_record_id({"record_id": 42}) == "42"


@pytest.mark.parametrize("value", [True, False, None, "", "  ", {"id": "a"}])
def test_unusable_values_are_not_ids(value):
    assert decode_record_id({"record_id": value}) is None


def test_corrupt_encoding_is_not_an_id():
    assert decode_record_id({"record_id": "1", "record_id_encoding": "b32"}) is None
