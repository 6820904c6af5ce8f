import json

import pytest

from asknotes.errors import GenerationParseFailure
from asknotes.interpreter import (
    Found,
    NotFound,
    confidence_for_score,
    extract_first_json_object,
    interpret_answer,
    interpret_streamed_answer,
    strip_code_fences,
    validate_answer_payload,
)
from asknotes.schemas import Citation

from conftest import BIO_CHUNKS, answer_json


def test_valid_answer_is_found():
    cites = (Citation(file_name="cells.pdf", page=1),)
    res = interpret_answer(answer_json(), "Biology", cites)
    assert isinstance(res, Found)
    assert res.answer == "Mitochondria make ATP."
    assert res.confidence == "High"
    assert len(res.evidence) == 2
    assert res.citations == cites


def test_exact_sentinel_is_not_found():
    res = interpret_answer("Not found in your notes for [Biology]", "Biology")
    assert isinstance(res, NotFound)


def test_sentinel_for_other_subject_is_not_a_refusal():
    with pytest.raises(GenerationParseFailure):
        interpret_answer("Not found in your notes for [History]", "Biology")


def test_found_false_is_not_found():
    res = interpret_answer(answer_json(found=False, evidence=[]), "Biology")
    assert isinstance(res, NotFound)


@pytest.mark.parametrize("payload", [
    {"answer": "a", "confidence": "High", "evidence": [], "found": True, "sources": []},  # лишний ключ
    {"answer": "a", "confidence": "High", "found": True},  # нет evidence
    {"answer": "a", "confidence": "Maybe", "evidence": [], "found": True},
    {"answer": "", "confidence": "Low", "evidence": [], "found": True},
    {"answer": "a", "confidence": "Low", "evidence": [1, 2], "found": True},
    {"answer": "a", "confidence": "Low", "evidence": [], "found": "yes"},
])
def test_contract_violations_raise(payload):
    with pytest.raises(GenerationParseFailure):
        interpret_answer(json.dumps(payload), "Biology")


def test_validate_reports_every_problem():
    res = validate_answer_payload({"answer": "a", "confidence": "Maybe", "extra": 1})
    assert not res.ok
    joined = " ".join(res.errors)
    assert "missing keys" in joined and "unexpected keys" in joined and "confidence" in joined


def test_extract_object_inside_prose_and_fences():
    raw = 'Sure!\n```json\n{"a":1,"b":{"c":2}}\n```'
    assert extract_first_json_object(raw) == '{"a":1,"b":{"c":2}}'


def test_extract_ignores_braces_in_strings():
    raw = 'x {"a": "}{", "b": "say \\"}\\" ok"} tail'
    obj = json.loads(extract_first_json_object(raw))
    assert obj == {"a": "}{", "b": 'say "}" ok'}


def test_extract_truncated_object_raises():
    with pytest.raises(GenerationParseFailure):
        extract_first_json_object('{"a": {"b": 1}')
    with pytest.raises(GenerationParseFailure):
        extract_first_json_object('{"a":1')


def test_extract_without_object_raises():
    with pytest.raises(GenerationParseFailure):
        extract_first_json_object("no json here")


def test_fenced_answer_is_accepted():
    res = interpret_answer("```json\n" + answer_json() + "\n```", "Biology")
    assert isinstance(res, Found)


def test_strip_code_fences():
    assert strip_code_fences("```\nhello\n```") == "hello"
    assert strip_code_fences("  plain ") == "plain"


def test_confidence_bands():
    assert confidence_for_score(0.9) == "High"
    assert confidence_for_score(0.6) == "Medium"
    assert confidence_for_score(0.1) == "Low"


def test_streamed_prose_keeps_text_verbatim():
    res = interpret_streamed_answer("The cat sat.", "Biology", BIO_CHUNKS)
    assert isinstance(res, Found)
    assert res.answer == "The cat sat."
    assert res.confidence == "High"
    assert res.evidence[0] == "The mitochondria is the powerhouse of the cell."


def test_streamed_sentinel_is_not_found():
    assert isinstance(interpret_streamed_answer("Not found in your notes for [Biology]", "Biology", BIO_CHUNKS), NotFound)


def test_streamed_empty_raises():
    with pytest.raises(GenerationParseFailure):
        interpret_streamed_answer("   ", "Biology", BIO_CHUNKS)


def test_minimal_contract_reply():
    raw = '{"answer":"X","confidence":"High","evidence":["a","b"],"found":true}'
    assert interpret_answer(raw, "Biology") == Found(answer="X", confidence="High", evidence=("a", "b"))


def test_streamed_json_after_preamble_takes_strict_path():
    res = interpret_streamed_answer("Sure! Here it is:\n" + answer_json(), "Biology", BIO_CHUNKS)
    assert isinstance(res, Found)
    assert res.answer == "Mitochondria make ATP."
    assert res.evidence == ("The mitochondria is the powerhouse of the cell.", "ATP is produced in the mitochondria.")


def test_streamed_json_after_preamble_is_validated():
    with pytest.raises(GenerationParseFailure):
        interpret_streamed_answer('Sure! {"answer": "X", "extra": 1}', "Biology", BIO_CHUNKS)


def test_streamed_prose_with_braces_stays_prose():
    text = "The set {1, 2} has two elements."
    res = interpret_streamed_answer(text, "Biology", BIO_CHUNKS)
    assert isinstance(res, Found) and res.answer == text
