# asknotes/interpreter.py
"""
Разбор ответа модели против строгого контракта.

Решение «нашли / не нашли» принимается здесь один раз и дальше
живёт только в теге результата (Found | NotFound): строки-отказ
ниже по пайплайну больше никто не сравнивает.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple, Union

from .errors import GenerationParseFailure
from .prompt import ANSWER_KEYS, refusal_sentinel
from .schemas import Citation, RetrievedChunk

logger = logging.getLogger("asknotes.interpreter")

CONFIDENCE_VALUES = ("High", "Medium", "Low")

# явное описание контракта: поле -> (тип, допустимые значения / границы)
ANSWER_SCHEMA = {
    "answer": {"type": str, "min_length": 1},
    "confidence": {"type": str, "enum": CONFIDENCE_VALUES},
    "evidence": {"type": list, "items": str, "expected_length": (2, 5)},
    "found": {"type": bool},
}


@dataclass(frozen=True)
class Found:
    answer: str
    confidence: str
    evidence: Tuple[str, ...] = ()
    citations: Tuple[Citation, ...] = ()


@dataclass(frozen=True)
class NotFound:
    pass


Interpretation = Union[Found, NotFound]


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    errors: List[str] = field(default_factory=list)


# служебные утилиты #

_FENCE_OPEN = re.compile(r"^```[a-zA-Z0-9_-]*\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")


def strip_code_fences(text: str) -> str:
    t = (text or "").strip()
    if t.startswith("```"):
        t = _FENCE_OPEN.sub("", t, count=1)
        t = _FENCE_CLOSE.sub("", t, count=1)
    return t.strip()


def extract_first_json_object(text: str) -> str:
    """
    Первый сбалансированный {...} в тексте. Скобки внутри строковых литералов
    и экранированные кавычки на глубину не влияют. Незакрытый объект: ошибка.
    """
    start = text.find("{")
    if start == -1:
        raise GenerationParseFailure("No JSON object found in response.")

    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1].strip()

    raise GenerationParseFailure("Unterminated JSON object in response.")


def validate_answer_payload(obj: Any) -> ValidationResult:
    if not isinstance(obj, dict):
        return ValidationResult(False, ["top-level value is not an object"])

    errors = []
    keys = set(obj)
    missing = [k for k in ANSWER_KEYS if k not in keys]
    extra = sorted(keys - set(ANSWER_KEYS))
    if missing:
        errors.append(f"missing keys: {missing}")
    if extra:
        errors.append(f"unexpected keys: {extra}")

    for name, rule in ANSWER_SCHEMA.items():
        if name not in obj:
            continue
        value = obj[name]
        if not isinstance(value, rule["type"]):
            errors.append(f"{name} must be {rule['type'].__name__}")
            continue
        if "enum" in rule and value not in rule["enum"]:
            errors.append(f"{name} must be one of {list(rule['enum'])}, got {value!r}")
        if "min_length" in rule and len(value.strip()) < rule["min_length"]:
            errors.append(f"{name} must not be empty")
        if "items" in rule and not all(isinstance(v, rule["items"]) for v in value):
            errors.append(f"{name} items must be {rule['items'].__name__}")

    return ValidationResult(not errors, errors)


def _is_refusal(text: str, subject_name: str) -> bool:
    return text == refusal_sentinel(subject_name)


# публичный API #

def interpret_answer(
    raw: str,
    subject_name: str,
    citations: Sequence[Citation] = (),
) -> Interpretation:
    text = strip_code_fences(raw)
    if _is_refusal(text, subject_name):
        return NotFound()

    candidate = extract_first_json_object(text)
    try:
        obj = json.loads(candidate)
    except ValueError as e:
        raise GenerationParseFailure(f"Invalid JSON in response: {e}") from e

    result = validate_answer_payload(obj)
    if not result.ok:
        logger.warning("LLM output violates answer contract: %s", "; ".join(result.errors))
        raise GenerationParseFailure("Answer contract violated: " + "; ".join(result.errors))

    if not obj["found"]:
        return NotFound()

    lo, hi = ANSWER_SCHEMA["evidence"]["expected_length"]
    if not lo <= len(obj["evidence"]) <= hi:
        logger.warning("Evidence count %d outside expected %d-%d", len(obj["evidence"]), lo, hi)

    return Found(
        answer=obj["answer"],
        confidence=obj["confidence"],
        evidence=tuple(obj["evidence"]),
        citations=tuple(citations),
    )


_SENTENCE = re.compile(r"[^.!?\n]+[.!?]?")


def _leading_sentence(text: str) -> Optional[str]:
    m = _SENTENCE.search(text or "")
    if not m:
        return None
    s = m.group(0).strip()
    return s or None


def confidence_for_score(score: float) -> str:
    if score >= 0.75:
        return "High"
    if score >= 0.5:
        return "Medium"
    return "Low"


def _embeds_answer_object(text: str) -> bool:
    """Есть ли в тексте JSON-объект с ключами контракта (даже после вступления)."""
    if "{" not in text:
        return False
    try:
        obj = json.loads(extract_first_json_object(text))
    except (GenerationParseFailure, ValueError):
        # фигурные скобки в обычной прозе (формулы, множества)
        obj = None
    if text.startswith("{"):
        return True
    return isinstance(obj, dict) and any(k in obj for k in ANSWER_KEYS)


def interpret_streamed_answer(
    raw: str,
    subject_name: str,
    chunks: Sequence[RetrievedChunk],
    citations: Sequence[Citation] = (),
) -> Interpretation:
    """
    Контракт стримингового режима: Markdown-проза или строка-отказ.
    Если модель всё же прислала JSON, идём строгим путём.
    """
    text = strip_code_fences(raw)
    if _is_refusal(text, subject_name):
        return NotFound()
    if not text:
        raise GenerationParseFailure("Empty answer in stream.")
    if _embeds_answer_object(text):
        return interpret_answer(text, subject_name, citations)

    # цитаты: дословные первые предложения лучших фрагментов
    evidence = []
    for chunk in chunks[:5]:
        quote = _leading_sentence(chunk.text)
        if quote and quote not in evidence:
            evidence.append(quote)

    best = max((c.score for c in chunks), default=0.0)
    return Found(
        answer=text,
        confidence=confidence_for_score(best),
        evidence=tuple(evidence),
        citations=tuple(citations),
    )
