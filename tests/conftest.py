# tests/conftest.py
from __future__ import annotations

import asyncio
import json
from typing import Callable, List, Optional, Sequence

import numpy as np
import pytest

from asknotes.db import make_session_factory
from asknotes.generator import StreamPiece
from asknotes.memory import MemoryStore
from asknotes.pipeline import CragPipeline
from asknotes.prompt import PromptAssembler
from asknotes.rag import Reranker, Retriever
from asknotes.schemas import ChunkMetadata, RetrievedChunk
from asknotes.voice import LiveEvent


def make_chunk(chunk_id: str, text: str, score: float, subject_id: str = "bio",
               file_name: str = "cells.pdf", page: Optional[int] = 1) -> RetrievedChunk:
    return RetrievedChunk(
        id=chunk_id,
        text=text,
        score=score,
        metadata=ChunkMetadata(file_name=file_name, page=page, chunk_id=chunk_id, subject_id=subject_id),
    )


def answer_json(answer="Mitochondria make ATP.", confidence="High", evidence=None, found=True) -> str:
    return json.dumps({
        "answer": answer,
        "confidence": confidence,
        "evidence": evidence if evidence is not None else [
            "The mitochondria is the powerhouse of the cell.",
            "ATP is produced in the mitochondria.",
        ],
        "found": found,
    })


BIO_CHUNKS = [
    make_chunk("bio-1", "The mitochondria is the powerhouse of the cell. It makes ATP.", 0.82),
    make_chunk("bio-2", "ATP is produced in the mitochondria. Glucose is the fuel.", 0.74, page=2),
    make_chunk("bio-3", "Ribosomes build proteins.", 0.41, file_name="proteins.pdf", page=None),
]
HIST_CHUNKS = [
    make_chunk("hist-1", "The mitochondria of Rome was the forum.", 0.99, subject_id="hist", file_name="rome.pdf"),
]


# подделки внешних систем #

class FakeEmbedder:
    def __init__(self):
        self.calls: List[str] = []

    def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        return np.ones((1, 4), dtype="float32")


class FakeIndex:
    """In-memory индекс: фильтрует по предмету и отдаёт фрагменты по убыванию score."""

    def __init__(self, chunks: Sequence[RetrievedChunk], leak: bool = False):
        self.chunks = list(chunks)
        self.leak = leak  # имитация индекса, который забыл про фильтр

    def query(self, vector, top_k: int, subject_id: str) -> List[RetrievedChunk]:
        pool = self.chunks if self.leak else [c for c in self.chunks if c.metadata.subject_id == subject_id]
        return sorted(pool, key=lambda c: -c.score)[:top_k]


class FakeLLM:
    def __init__(self, reply: str = "", deltas: Optional[Sequence[str]] = None, finish: bool = True):
        self.reply = reply
        self.deltas = list(deltas or [])
        self.finish = finish
        self.calls: List[list] = []

    def invoke(self, messages) -> str:
        self.calls.append(messages)
        return self.reply

    def stream(self, messages):
        self.calls.append(messages)
        for d in self.deltas:
            yield StreamPiece(delta=d)
        if self.finish:
            yield StreamPiece(done=True, text="".join(self.deltas))


class FakeLiveSession:
    """Live-сессия без сети: события кладутся в очередь тестом."""

    def __init__(self, system_instruction: str = ""):
        self.system_instruction = system_instruction
        self.queue: asyncio.Queue = asyncio.Queue()
        self.opened = False
        self.closed = False
        self.audio: List[tuple] = []
        self.texts: List[str] = []
        self.gate: Optional[asyncio.Event] = None  # если задан, open() ждёт его

    async def open(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        self.opened = True

    async def send_audio(self, data: str, mime_type: str) -> None:
        self.audio.append((data, mime_type))

    async def send_text(self, text: str) -> None:
        self.texts.append(text)

    async def close(self) -> None:
        self.closed = True
        self.queue.put_nowait(None)

    async def events(self):
        while True:
            event = await self.queue.get()
            if event is None:
                return
            yield event

    def push(self, **kwargs) -> None:
        self.queue.put_nowait(LiveEvent(**kwargs))


# фикстуры #

@pytest.fixture
def session_factory(tmp_path):
    sf, engine = make_session_factory(f"sqlite+pysqlite:///{tmp_path / 'test.db'}")
    yield sf
    engine.dispose()


@pytest.fixture
def memory(session_factory) -> MemoryStore:
    return MemoryStore(session_factory, max_turns=10)


@pytest.fixture
def make_pipeline(memory) -> Callable[..., CragPipeline]:
    def _make(chunks=BIO_CHUNKS + HIST_CHUNKS, llm=None, threshold=0.35, top_k=8, top_n=5):
        return CragPipeline(
            retriever=Retriever(FakeIndex(chunks), FakeEmbedder()),
            reranker=Reranker(alpha=0.6),
            prompts=PromptAssembler(max_chunk_chars=2000),
            llm=llm or FakeLLM(reply=answer_json()),
            memory=memory,
            not_found_threshold=threshold,
            top_k=top_k,
            rerank_top_n=top_n,
        )

    return _make
