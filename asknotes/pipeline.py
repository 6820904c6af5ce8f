# asknotes/pipeline.py
"""
CRAG-оркестратор: retrieval -> rerank -> память -> промпт -> LLM -> разбор -> порог.

Два входа:
  ask         : один готовый ответ;
  ask_stream  : ленивый поток ChunkEvent (дельты как есть, по порядку)
                и ровно один FinalEvent в конце.
Любая ошибка стадии обрывает запрос; память пишется только после успешной генерации.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Sequence, Tuple

from .errors import GenerationFailure
from .generator import GenerationClient
from .interpreter import Found, Interpretation, NotFound, interpret_answer, interpret_streamed_answer
from .memory import MemoryStore
from .prompt import PromptAssembler, refusal_sentinel
from .rag import Reranker, Retriever
from .schemas import (
    AskRequest,
    AskResponse,
    ChunkEvent,
    Citation,
    FinalEvent,
    MemoryTurn,
    RetrievedChunk,
    StreamEvent,
)

logger = logging.getLogger("asknotes.pipeline")


def citations_for(chunks: Sequence[RetrievedChunk]) -> List[Citation]:
    seen = set()
    out = []
    for c in chunks:
        key = (c.metadata.file_name, c.metadata.page)
        if key in seen:
            continue
        seen.add(key)
        out.append(Citation(file_name=c.metadata.file_name, page=c.metadata.page))
    return out


def to_response(result: Interpretation, subject_name: str) -> AskResponse:
    if isinstance(result, Found):
        return AskResponse(
            answer=result.answer,
            confidence=result.confidence,
            evidence=list(result.evidence),
            citations=list(result.citations),
            not_found=False,
        )
    return AskResponse(
        answer=refusal_sentinel(subject_name),
        confidence="Low",
        evidence=[],
        citations=[],
        not_found=True,
    )


class CragPipeline:
    def __init__(
        self,
        retriever: Retriever,
        reranker: Reranker,
        prompts: PromptAssembler,
        llm: GenerationClient,
        memory: MemoryStore,
        not_found_threshold: float = 0.35,
        top_k: int = 8,
        rerank_top_n: int = 5,
    ):
        if rerank_top_n > top_k:
            raise ValueError(f"rerank_top_n ({rerank_top_n}) must not exceed top_k ({top_k})")
        self.retriever = retriever
        self.reranker = reranker
        self.prompts = prompts
        self.llm = llm
        self.memory = memory
        self.not_found_threshold = not_found_threshold
        self.top_k = top_k
        self.rerank_top_n = rerank_top_n

    # стадии #

    def _ground(self, request: AskRequest) -> Tuple[List[RetrievedChunk], List[MemoryTurn]]:
        retrieved = self.retriever.search(request.subject_id, request.question, self.top_k)
        reranked = self.reranker.rerank(request.question, retrieved, self.rerank_top_n)
        turns = self.memory.read(request.thread_id)
        logger.info(
            "Grounding for thread %s: retrieved=%d reranked=%d memory_turns=%d",
            request.thread_id, len(retrieved), len(reranked), len(turns),
        )
        return reranked, turns

    def _best_score(self, chunks: Sequence[RetrievedChunk]) -> Optional[float]:
        return max((c.score for c in chunks), default=None)

    def _apply_threshold(self, result: Interpretation, chunks: Sequence[RetrievedChunk]) -> Interpretation:
        best = self._best_score(chunks)
        if isinstance(result, Found) and (best is None or best < self.not_found_threshold):
            logger.info(
                "Overriding found answer: best score %s below threshold %.3f",
                "n/a" if best is None else f"{best:.3f}", self.not_found_threshold,
            )
            return NotFound()
        return result

    def _remember(self, request: AskRequest, response: AskResponse) -> None:
        self.memory.append(request.thread_id, MemoryTurn(
            question=request.question,
            answer=response.answer,
            created_at_iso=datetime.now(timezone.utc).isoformat(),
        ))

    # публичный API #

    def ask(self, request: AskRequest) -> AskResponse:
        chunks, turns = self._ground(request)

        if not chunks:
            # без контекста модель не зовём: сразу отказ, и в память не пишем
            result: Interpretation = NotFound()
        else:
            messages = self.prompts.build(request.subject_name, request.question, chunks, turns)
            raw = self.llm.invoke(messages)
            result = interpret_answer(raw, request.subject_name, citations_for(chunks))
            result = self._apply_threshold(result, chunks)

        response = to_response(result, request.subject_name)
        if chunks:
            self._remember(request, response)
        logger.info("Answered thread %s: not_found=%s", request.thread_id, response.not_found)
        return response

    def ask_stream(self, request: AskRequest) -> Iterator[StreamEvent]:
        chunks, turns = self._ground(request)

        if not chunks:
            result: Interpretation = NotFound()
        else:
            messages = self.prompts.build(
                request.subject_name, request.question, chunks, turns, streaming=True,
            )
            final_text = None
            for piece in self.llm.stream(messages):
                if piece.done:
                    final_text = piece.text
                    break
                yield ChunkEvent(delta=piece.delta)
            if final_text is None:
                raise GenerationFailure("LLM stream ended without a final message")

            result = interpret_streamed_answer(
                final_text, request.subject_name, chunks, citations_for(chunks),
            )
            result = self._apply_threshold(result, chunks)

        response = to_response(result, request.subject_name)
        if chunks:
            self._remember(request, response)
        logger.info("Streamed answer for thread %s: not_found=%s", request.thread_id, response.not_found)
        yield FinalEvent(response=response)
