# asknotes/schemas.py
from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PayloadError
from pydantic.alias_generators import to_camel

from .errors import ValidationError

Confidence = Literal["High", "Medium", "Low"]


class _Wire(BaseModel):
    # на проводе camelCase, в коде snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _Frozen(_Wire):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# запросы #

class AskPayload(_Wire):
    question: str = Field(min_length=1)
    subject_id: str = Field(min_length=1)
    thread_id: str = Field(min_length=1)
    subject_name: Optional[str] = Field(default=None, min_length=1)
    request_id: Optional[str] = Field(default=None, min_length=1)


class AskRequest(_Frozen):
    """Внутренний запрос к пайплайну: имя предмета уже известно."""
    question: str
    subject_id: str
    thread_id: str
    subject_name: str


# retrieval #

class ChunkMetadata(_Frozen):
    file_name: str = "UnknownFile"
    page: Optional[int] = None
    chunk_id: str = ""
    subject_id: str = ""


class RetrievedChunk(_Frozen):
    id: str
    text: str
    score: float
    metadata: ChunkMetadata


class MemoryTurn(_Frozen):
    question: str
    answer: str
    created_at_iso: str


# ответы #

class Citation(_Frozen):
    file_name: str
    page: Optional[int] = None


class AskResponse(_Wire):
    answer: str
    confidence: Confidence
    evidence: List[str] = Field(default_factory=list)
    citations: List[Citation] = Field(default_factory=list)
    not_found: bool


class ChunkEvent(_Wire):
    type: Literal["chunk"] = "chunk"
    delta: str


class FinalEvent(_Wire):
    type: Literal["final"] = "final"
    response: AskResponse


StreamEvent = Union[ChunkEvent, FinalEvent]


# голос #

class VoiceStartPayload(_Wire):
    subject_id: str = Field(min_length=1)
    thread_id: str = Field(min_length=1)
    subject_name: Optional[str] = Field(default=None, min_length=1)


class VoiceAudioPayload(_Wire):
    data: str = Field(min_length=1)
    mime_type: str = "audio/pcm;rate=16000"


# предметы #

class SubjectCreate(_Wire):
    name: str = Field(min_length=1, max_length=120)


class SubjectRecord(_Wire):
    id: str
    name: str
    created_at: datetime
    updated_at: datetime


class SubjectFileRecord(_Wire):
    file_name: str
    chunk_count: int
    max_page: Optional[int] = None
    last_ingested_at: Optional[datetime] = None


class NoteChunkRecord(_Wire):
    chunk_id: str
    file_name: str
    page: Optional[int] = None
    text: str


# квиз #

class QuizMcq(_Wire):
    id: str
    question: str
    options: List[str]
    correct_index: int
    explanation: str
    citation: str


class QuizShortAnswer(_Wire):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, protected_namespaces=()
    )

    id: str
    question: str
    model_answer: str
    citation: str


class GeneratedQuiz(_Wire):
    mcqs: List[QuizMcq]
    short_answers: List[QuizShortAnswer]


def parse_payload(model, data):
    """Кадр канала -> модель; любая ошибка формы становится ValidationError."""
    try:
        return model.model_validate(data or {})
    except PayloadError as e:
        raise ValidationError(f"invalid {model.__name__}: {e.error_count()} error(s)") from e
