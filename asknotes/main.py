# asknotes/main.py
from __future__ import annotations

import asyncio
import json
import logging
from functools import lru_cache
from typing import Any, Iterator, List

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from starlette.concurrency import iterate_in_threadpool

from .auth import IdentityProvider, get_identity, require_user
from .config import settings
from .db import make_session_factory
from .errors import CragError, SubjectNotFound, ValidationError
from .generator import GenerationClient
from .memory import MemoryStore
from .pipeline import CragPipeline
from .prompt import PromptAssembler
from .quiz import QuizGenerationService
from .rag import Reranker, Retriever
from .schemas import (
    AskPayload,
    AskRequest,
    AskResponse,
    ChunkEvent,
    SubjectCreate,
    SubjectFileRecord,
    SubjectRecord,
    parse_payload,
)
from .subjects import SubjectRepository
from .voice import LiveSessionFactory, VoiceBridge

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
# транспортные логи SDK нам не нужны
for _noisy in ("httpx", "httpcore", "urllib3", "google_genai", "websockets"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger("asknotes.api")

app = FastAPI(title="AskNotes CRAG", version="1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# зависимости #

@lru_cache
def get_session_factory():
    sf, _engine = make_session_factory(settings.database_url)
    return sf


def get_subject_repository() -> SubjectRepository:
    return SubjectRepository(get_session_factory())


@lru_cache
def get_generation_client() -> GenerationClient:
    return GenerationClient(
        url=settings.llm_url,
        key=settings.llm_key,
        model=settings.llm_model,
        timeout=settings.request_timeout_sec,
    )


@lru_cache
def get_pipeline() -> CragPipeline:
    # FAISS и BGE-M3 тяжёлые: грузим при первом запросе, не при импорте
    from .index import BgeEmbedder, FaissNoteIndex

    retriever = Retriever(
        FaissNoteIndex(settings.index_path, settings.meta_path),
        BgeEmbedder(settings.embedding_model),
    )
    return CragPipeline(
        retriever=retriever,
        reranker=Reranker(alpha=settings.hybrid_alpha),
        prompts=PromptAssembler(max_chunk_chars=settings.max_chunk_chars),
        llm=get_generation_client(),
        memory=MemoryStore(get_session_factory(), max_turns=settings.memory_max_turns),
        not_found_threshold=settings.not_found_threshold,
        top_k=settings.top_k,
        rerank_top_n=settings.rerank_top_n,
    )


def get_quiz_service() -> QuizGenerationService:
    return QuizGenerationService(
        get_subject_repository(), get_generation_client(), sample_size=settings.quiz_sample_size,
    )


def get_live_session_factory() -> LiveSessionFactory:
    from .live import gemini_session_factory

    return gemini_session_factory


def _resolve_request(payload: AskPayload, user_id: str, subjects: SubjectRepository) -> AskRequest:
    subject = subjects.find_by_id(payload.subject_id, user_id)
    if subject is None:
        raise SubjectNotFound(f"subject {payload.subject_id} not found for user")
    return AskRequest(
        question=payload.question,
        subject_id=payload.subject_id,
        thread_id=payload.thread_id,
        subject_name=payload.subject_name or subject.name,
    )


# HTTP #

@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/ask", response_model=AskResponse)
def ask(
    req: AskPayload,
    user_id: str = Depends(require_user),
    pipeline: CragPipeline = Depends(get_pipeline),
    subjects: SubjectRepository = Depends(get_subject_repository),
):
    try:
        return pipeline.ask(_resolve_request(req, user_id, subjects))
    except CragError as e:
        logger.warning("ask failed: %s", e)
        raise HTTPException(status_code=e.status_code, detail=e.user_message)
    except Exception as e:
        logger.error("ask failed unexpectedly: %s", e, exc_info=True)
        raise HTTPException(status_code=500, detail=f"ask_failed: {e}")


@app.post("/ask/stream")
def ask_stream(
    req: AskPayload,
    user_id: str = Depends(require_user),
    pipeline: CragPipeline = Depends(get_pipeline),
    subjects: SubjectRepository = Depends(get_subject_repository),
):
    try:
        request = _resolve_request(req, user_id, subjects)
    except CragError as e:
        raise HTTPException(status_code=e.status_code, detail=e.user_message)

    def lines() -> Iterator[str]:
        try:
            for event in pipeline.ask_stream(request):
                yield event.model_dump_json(by_alias=True) + "\n"
        except CragError as e:
            logger.warning("ask stream failed: %s", e)
            yield json.dumps({"type": "error", "error": e.user_message}) + "\n"
        except Exception as e:
            logger.error("ask stream failed unexpectedly: %s", e, exc_info=True)
            yield json.dumps({"type": "error", "error": str(e) or "Unknown error"}) + "\n"

    return StreamingResponse(lines(), media_type="application/x-ndjson")


@app.get("/subjects", response_model=List[SubjectRecord])
def list_subjects(
    user_id: str = Depends(require_user),
    subjects: SubjectRepository = Depends(get_subject_repository),
):
    return subjects.list_by_user(user_id)


@app.post("/subjects", response_model=SubjectRecord, status_code=201)
def create_subject(
    body: SubjectCreate,
    user_id: str = Depends(require_user),
    subjects: SubjectRepository = Depends(get_subject_repository),
):
    return subjects.create(user_id, body.name)


@app.get("/subjects/{subject_id}/files", response_model=List[SubjectFileRecord])
def list_subject_files(
    subject_id: str,
    user_id: str = Depends(require_user),
    subjects: SubjectRepository = Depends(get_subject_repository),
):
    if subjects.find_by_id(subject_id, user_id) is None:
        raise HTTPException(status_code=404, detail="Subject not found")
    return subjects.list_files(subject_id, user_id)


@app.post("/subjects/{subject_id}/quiz")
def generate_quiz(
    subject_id: str,
    user_id: str = Depends(require_user),
    quizzes: QuizGenerationService = Depends(get_quiz_service),
):
    try:
        quiz = quizzes.generate_quiz(subject_id, user_id)
    except CragError as e:
        logger.warning("quiz failed: %s", e)
        raise HTTPException(status_code=e.status_code, detail=e.user_message)
    return {"quiz": quiz.model_dump(by_alias=True)}


# WebSocket-канал: ask + voice #

async def _stream_ask(emit, data: Any, user_id: str, pipeline: CragPipeline, subjects: SubjectRepository) -> None:
    request_id = data.get("requestId") if isinstance(data, dict) else None
    try:
        payload = parse_payload(AskPayload, data)
    except ValidationError as e:
        logger.info("Invalid ask payload: %s", e)
        await emit("ask:error", {"requestId": request_id, "error": e.user_message})
        return

    try:
        request = await asyncio.to_thread(_resolve_request, payload, user_id, subjects)
        async for event in iterate_in_threadpool(pipeline.ask_stream(request)):
            if isinstance(event, ChunkEvent):
                await emit("ask:chunk", {"requestId": request_id, "delta": event.delta})
            else:
                await emit("ask:final", {
                    "requestId": request_id,
                    "response": event.response.model_dump(by_alias=True),
                })
    except WebSocketDisconnect:
        raise
    except CragError as e:
        logger.warning("ask over channel failed: %s", e)
        await emit("ask:error", {"requestId": request_id, "error": e.user_message})
    except Exception as e:
        logger.error("ask over channel failed unexpectedly: %s", e, exc_info=True)
        await emit("ask:error", {"requestId": request_id, "error": str(e) or "Unknown error"})


@app.websocket("/ws")
async def channel(
    websocket: WebSocket,
    provider: IdentityProvider = Depends(get_identity),
    pipeline: CragPipeline = Depends(get_pipeline),
    subjects: SubjectRepository = Depends(get_subject_repository),
    live_factory: LiveSessionFactory = Depends(get_live_session_factory),
):
    user_id = provider.resolve(websocket.headers)
    if not user_id:
        await websocket.close(code=1008)
        return
    await websocket.accept()
    logger.info("Channel connected: user=%s", user_id)

    send_lock = asyncio.Lock()

    async def emit(event: str, data: dict) -> None:
        # пишут и цикл соединения, и задачи голосового моста
        async with send_lock:
            await websocket.send_json({"event": event, "data": data})

    bridge = VoiceBridge(emit, pipeline, subjects, live_factory, user_id)
    try:
        while True:
            message = await websocket.receive_json()
            if not isinstance(message, dict):
                await emit("error", {"error": "Invalid message"})
                continue
            event, data = message.get("event"), message.get("data")

            if event == "ask":
                await _stream_ask(emit, data, user_id, pipeline, subjects)
            elif event == "voice:start":
                bridge.start_soon(data)
            elif event == "voice:audio":
                await bridge.handle_audio(data)
            elif event == "voice:stop":
                await bridge.stop()
            else:
                await emit("error", {"error": f"Unknown event: {event}"})
    except WebSocketDisconnect:
        logger.info("Channel disconnected: user=%s", user_id)
    finally:
        await bridge.close()
