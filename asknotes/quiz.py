# asknotes/quiz.py
from __future__ import annotations

import json
import logging
from typing import Any, List

from .errors import GenerationParseFailure, NoNotesError, SubjectNotFound
from .generator import GenerationClient
from .interpreter import ValidationResult, extract_first_json_object, strip_code_fences
from .schemas import GeneratedQuiz, NoteChunkRecord
from .subjects import SubjectRepository

logger = logging.getLogger("asknotes.quiz")

MCQ_COUNT = 5
SHORT_ANSWER_COUNT = 3

_QUIZ_SYSTEM_PROMPT = """You are an expert tutor creating a helpful study quiz.
You will be provided with random excerpts from a student's notes on the subject: "{subject_name}".
Your task is to generate exactly {mcq_count} Multiple Choice Questions (MCQs) and {short_count} Short Answer questions based ONLY on the provided notes.

For each question, you MUST include a 'citation' field that references the exact Source file, page, and a brief description of where the answer was found (e.g. "lecture_1.pdf - Page 3").

Return the output strictly in the following JSON format without Markdown formatting or code blocks:
{{
  "mcqs": [
    {{
      "id": "unique-string-id",
      "question": "Question text...",
      "options": ["Option A", "Option B", "Option C", "Option D"],
      "correctIndex": 0,
      "explanation": "Why this is correct...",
      "citation": "source file / page"
    }}
  ],
  "shortAnswers": [
    {{
      "id": "unique-string-id",
      "question": "Question text...",
      "modelAnswer": "Expected answer...",
      "citation": "source file / page"
    }}
  ]
}}"""


def _non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and bool(v.strip())


def validate_quiz_payload(obj: Any) -> ValidationResult:
    """Явная проверка формы квиза: 5 MCQ по 4 варианта, >=1 короткий ответ, цитаты непустые."""
    if not isinstance(obj, dict):
        return ValidationResult(False, ["top-level value is not an object"])

    errors: List[str] = []
    mcqs = obj.get("mcqs")
    shorts = obj.get("shortAnswers")

    if not isinstance(mcqs, list) or len(mcqs) != MCQ_COUNT:
        errors.append(f"mcqs must be a list of exactly {MCQ_COUNT} items")
        mcqs = mcqs if isinstance(mcqs, list) else []
    for i, q in enumerate(mcqs):
        if not isinstance(q, dict):
            errors.append(f"mcqs[{i}] is not an object")
            continue
        for key in ("id", "question", "explanation", "citation"):
            if not _non_empty_str(q.get(key)):
                errors.append(f"mcqs[{i}].{key} must be a non-empty string")
        options = q.get("options")
        if not isinstance(options, list) or len(options) != 4 or not all(isinstance(o, str) for o in options):
            errors.append(f"mcqs[{i}].options must be 4 strings")
        idx = q.get("correctIndex")
        # bool: подкласс int, его не пускаем
        if isinstance(idx, bool) or not isinstance(idx, int) or not 0 <= idx <= 3:
            errors.append(f"mcqs[{i}].correctIndex must be an integer in [0, 3]")

    if not isinstance(shorts, list) or not shorts:
        errors.append("shortAnswers must be a non-empty list")
        shorts = shorts if isinstance(shorts, list) else []
    for i, q in enumerate(shorts):
        if not isinstance(q, dict):
            errors.append(f"shortAnswers[{i}] is not an object")
            continue
        for key in ("id", "question", "modelAnswer", "citation"):
            if not _non_empty_str(q.get(key)):
                errors.append(f"shortAnswers[{i}].{key} must be a non-empty string")

    return ValidationResult(not errors, errors)


def _context(chunks: List[NoteChunkRecord]) -> str:
    return "\n\n".join(
        f"[Source {i + 1}: {c.file_name}, Page {c.page if c.page is not None else 'UnknownPage'}, ID: {c.chunk_id}]\n{c.text}"
        for i, c in enumerate(chunks)
    )


class QuizGenerationService:
    def __init__(self, subjects: SubjectRepository, llm: GenerationClient, sample_size: int = 15):
        self.subjects = subjects
        self.llm = llm
        self.sample_size = sample_size

    def generate_quiz(self, subject_id: str, user_id: str) -> GeneratedQuiz:
        subject = self.subjects.find_by_id(subject_id, user_id)
        if subject is None:
            raise SubjectNotFound(f"subject {subject_id} not found for user")

        chunks = self.subjects.random_chunks(subject_id, self.sample_size)
        if not chunks:
            raise NoNotesError(f"subject {subject_id} has no chunks")

        messages = [
            {"role": "system", "content": _QUIZ_SYSTEM_PROMPT.format(
                subject_name=subject.name, mcq_count=MCQ_COUNT, short_count=SHORT_ANSWER_COUNT,
            )},
            {"role": "user", "content": (
                f"Here are the excerpts from my notes:\n\n{_context(chunks)}\n\n"
                "Please generate the quiz now in the specified JSON format."
            )},
        ]
        raw = self.llm.invoke(messages)

        retry_msg = "Failed to generate a valid quiz. Please try again."
        try:
            obj = json.loads(extract_first_json_object(strip_code_fences(raw)))
        except (GenerationParseFailure, ValueError) as e:
            logger.error("Failed to parse LLM quiz response: %s", e)
            raise GenerationParseFailure(f"quiz JSON unreadable: {e}", user_message=retry_msg) from e

        result = validate_quiz_payload(obj)
        if not result.ok:
            logger.error("LLM quiz response violates schema: %s", "; ".join(result.errors))
            raise GenerationParseFailure("quiz schema violated", user_message=retry_msg)

        quiz = GeneratedQuiz.model_validate(obj)
        logger.info("Quiz generated for subject %s: %d mcqs, %d short answers",
                    subject_id, len(quiz.mcqs), len(quiz.short_answers))
        return quiz
