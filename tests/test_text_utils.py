from nab_batch.text_utils import FENCED, STRUCTURED, UNPARSEABLE, _strip_json_fence, decode_answer_text


def test_plain_json_object():
    decoded = decode_answer_text('{"intent": "refactor"}')
    assert decoded.kind == STRUCTURED
    assert decoded.value == {"intent": "refactor"}


def test_fenced_json_object():
    decoded = decode_answer_text('Here you go:\n```json\n{"intent": "refactor"}\n```')
    assert decoded.kind == FENCED
    assert decoded.value["intent"] == "refactor"


def test_uppercase_fence():
    assert decode_answer_text('```JSON\n{"a": 1}\n```').value == {"a": 1}


def test_prose_is_unparseable():
    decoded = decode_answer_text('The answer is {"intent": "refactor"} I believe')
    assert decoded.kind == UNPARSEABLE
    assert not decoded.ok


def test_json_array_is_not_an_answer():
    assert decode_answer_text("[1, 2]").kind == UNPARSEABLE


def test_empty_text():
    assert decode_answer_text("   ").error == "empty_answer"
    assert decode_answer_text(None).kind == UNPARSEABLE


def test_strip_json_fence_without_fence():
    assert _strip_json_fence('{"a": 1}') == '{"a": 1}'
