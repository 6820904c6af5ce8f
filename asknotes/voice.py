# asknotes/voice.py
"""
Голосовой мост: одна live-сессия речи на одно соединение.

Состояния: idle -> connecting -> ready -> active -> closed (терминальное).
Все переходы идут через transition(); закрытие идемпотентно и безопасно из любого состояния.

Live-модель молчит на сырое аудио и озвучивает только текст с префиксом "ANSWER:".
Распознанный вопрос уходит в CragPipeline.ask, ответ возвращается в сессию как новая реплика.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Protocol, Tuple

from .errors import CragError, SubjectNotFound, ValidationError, VoiceSessionError
from .pipeline import CragPipeline
from .prompt import answer_directive
from .schemas import AskRequest, VoiceAudioPayload, VoiceStartPayload, parse_payload
from .subjects import SubjectRepository

logger = logging.getLogger("asknotes.voice")

LIVE_SYSTEM_INSTRUCTION = (
    "You are a patient teacher. Do not answer user audio directly. "
    "Wait for messages that start with 'ANSWER:' and speak that text clearly. "
    "After each answer, end with a short check-in question."
)

Emit = Callable[[str, dict], Awaitable[None]]


# внешняя live-сессия #

@dataclass(frozen=True)
class LiveEvent:
    """Одно входящее сообщение live-сессии, уже без SDK-типов."""
    input_transcript: Optional[str] = None
    output_transcript: Optional[str] = None
    audio: Tuple[Tuple[str, str], ...] = ()  # (base64 data, mime type)
    interrupted: bool = False
    turn_complete: bool = False
    generation_complete: bool = False
    error: Optional[str] = None


class LiveSession(Protocol):
    async def open(self) -> None: ...

    async def send_audio(self, data: str, mime_type: str) -> None: ...

    async def send_text(self, text: str) -> None: ...

    async def close(self) -> None: ...

    def events(self) -> AsyncIterator[LiveEvent]: ...


LiveSessionFactory = Callable[[str], LiveSession]


# состояние сессии #

class VoiceState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    ACTIVE = "active"
    CLOSED = "closed"


_ALLOWED = {
    VoiceState.IDLE: {VoiceState.CONNECTING, VoiceState.CLOSED},
    VoiceState.CONNECTING: {VoiceState.READY, VoiceState.CLOSED},
    VoiceState.READY: {VoiceState.ACTIVE, VoiceState.CLOSED},
    VoiceState.ACTIVE: {VoiceState.CLOSED},
    VoiceState.CLOSED: set(),
}


@dataclass
class VoiceSession:
    subject_id: str
    thread_id: str
    subject_name: str = ""
    state: VoiceState = VoiceState.IDLE
    channel: Optional[LiveSession] = None
    reader: Optional[asyncio.Task] = None
    # токен single-flight: пока задача жива, новый вопрос не запускается
    in_flight: Optional[asyncio.Task] = None
    transcript: List[str] = field(default_factory=list)

    @property
    def accepts_audio(self) -> bool:
        return self.state in (VoiceState.READY, VoiceState.ACTIVE)


def transition(session: VoiceSession, target: VoiceState) -> None:
    if target not in _ALLOWED[session.state]:
        raise VoiceSessionError(f"invalid voice transition {session.state.value} -> {target.value}")
    logger.debug("Voice session %s: %s -> %s", session.thread_id, session.state.value, target.value)
    session.state = target


# мост #

class VoiceBridge:
    def __init__(
        self,
        emit: Emit,
        pipeline: CragPipeline,
        subjects: SubjectRepository,
        session_factory: LiveSessionFactory,
        user_id: str,
    ):
        self.emit = emit
        self.pipeline = pipeline
        self.subjects = subjects
        self.session_factory = session_factory
        self.user_id = user_id
        self.session: Optional[VoiceSession] = None
        self._starter: Optional[asyncio.Task] = None

    @property
    def state(self) -> VoiceState:
        return self.session.state if self.session else VoiceState.IDLE

    # команды клиента #

    def start_soon(self, payload: Any) -> asyncio.Task:
        """voice:start без блокировки цикла соединения: кадры до ready отбрасываются."""
        if self._starter is not None and not self._starter.done():
            self._starter.cancel()
        self._starter = asyncio.create_task(self.start(payload))
        return self._starter

    async def start(self, payload: Any) -> None:
        try:
            data = parse_payload(VoiceStartPayload, payload)
        except ValidationError as e:
            logger.info("Invalid voice:start payload: %s", e)
            await self.emit("voice:error", {"error": e.user_message})
            return

        # не больше одной сессии на соединение
        await self.close()

        session = VoiceSession(subject_id=data.subject_id, thread_id=data.thread_id)
        self.session = session
        transition(session, VoiceState.CONNECTING)
        logger.info("Starting voice session: subject=%s thread=%s", data.subject_id, data.thread_id)

        try:
            subject = await asyncio.to_thread(self.subjects.find_by_id, data.subject_id, self.user_id)
            if subject is None:
                raise SubjectNotFound(f"subject {data.subject_id} not found for user")
            session.subject_name = data.subject_name or subject.name

            session.channel = self.session_factory(LIVE_SYSTEM_INSTRUCTION)
            await session.channel.open()
            if session.state is not VoiceState.CONNECTING:
                return
            transition(session, VoiceState.READY)
            session.reader = asyncio.create_task(self._pump(session))

            await self.emit("voice:ready", {})
            greeting = f"Hi! I'm your {session.subject_name} tutor. Ask me anything about your notes."
            await session.channel.send_text(answer_directive(greeting))
        except asyncio.CancelledError:
            raise
        except CragError as e:
            logger.warning("Voice start failed: %s", e)
            await self.emit("voice:error", {"error": e.user_message})
            await self._close(session)
        except Exception as e:
            logger.error("Voice start failed: %s", e, exc_info=True)
            await self.emit("voice:error", {"error": str(e) or "Voice start failed"})
            await self._close(session)

    async def handle_audio(self, payload: Any) -> bool:
        """Возвращает True, если кадр ушёл в live-сессию."""
        session = self.session
        if session is None or not session.accepts_audio or session.channel is None:
            return False
        try:
            frame = parse_payload(VoiceAudioPayload, payload)
        except ValidationError:
            return False

        if session.state is VoiceState.READY:
            transition(session, VoiceState.ACTIVE)
        try:
            await session.channel.send_audio(frame.data, frame.mime_type)
        except Exception as e:
            await self._fail(session, e)
            return False
        return True

    async def stop(self) -> None:
        logger.info("Voice stop requested")
        await self.close()

    async def close(self) -> None:
        starter = self._starter
        if starter is not None and starter is not asyncio.current_task() and not starter.done():
            starter.cancel()
        if self.session is not None:
            await self._close(self.session)

    # внутреннее #

    async def _close(self, session: VoiceSession) -> None:
        if session.state is VoiceState.CLOSED:
            return
        transition(session, VoiceState.CLOSED)

        current = asyncio.current_task()
        for task in (session.reader, session.in_flight):
            if task is not None and task is not current and not task.done():
                task.cancel()

        channel, session.channel = session.channel, None
        if channel is not None:
            try:
                await channel.close()
            except Exception as e:
                logger.warning("Live session close failed: %s", e)
        logger.info("Voice session closed: thread=%s", session.thread_id)

    async def _fail(self, session: VoiceSession, exc: BaseException) -> None:
        logger.error("Voice session error: %s", exc)
        message = exc.user_message if isinstance(exc, CragError) else (str(exc) or "Voice error")
        await self.emit("voice:error", {"error": message})
        await self._close(session)

    async def _pump(self, session: VoiceSession) -> None:
        channel = session.channel
        try:
            async for event in channel.events():
                if session.state is VoiceState.CLOSED:
                    break
                if event.error:
                    await self._fail(session, VoiceSessionError(event.error, user_message=event.error))
                    return
                await self._on_event(session, event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._fail(session, e)
            return
        # удалённая сторона закрыла сессию
        await self._close(session)

    async def _on_event(self, session: VoiceSession, event: LiveEvent) -> None:
        if event.input_transcript:
            session.transcript.append(event.input_transcript)
            await self.emit("voice:transcript", {"text": event.input_transcript})
        if event.output_transcript:
            await self.emit("voice:output-transcript", {"text": event.output_transcript})
        for data, mime_type in event.audio:
            await self.emit("voice:audio", {"data": data, "mimeType": mime_type})
        if event.interrupted:
            await self.emit("voice:interrupted", {})
        if event.turn_complete or event.generation_complete:
            await self.emit("voice:final", {})

        if event.turn_complete:
            question = "".join(session.transcript).strip()
            session.transcript.clear()
            if question:
                self._answer_soon(session, question)

    def _answer_soon(self, session: VoiceSession, question: str) -> None:
        if session.in_flight is not None and not session.in_flight.done():
            logger.warning("Dropping voice turn while another answer is in flight: %r", question)
            return
        session.in_flight = asyncio.create_task(self._answer(session, question))

    async def _answer(self, session: VoiceSession, question: str) -> None:
        logger.info("Running CRAG for voice question: %r", question)
        request = AskRequest(
            question=question,
            subject_id=session.subject_id,
            thread_id=session.thread_id,
            subject_name=session.subject_name,
        )
        try:
            response = await asyncio.to_thread(self.pipeline.ask, request)
        except CragError as e:
            # ошибка пайплайна не рвёт live-сессию
            logger.warning("Voice answer failed: %s", e)
            await self.emit("voice:error", {"error": e.user_message})
            return
        except Exception as e:
            logger.error("Voice answer failed unexpectedly: %s", e, exc_info=True)
            await self.emit("voice:error", {"error": str(e) or "Voice answer failed"})
            return

        if session.state is VoiceState.CLOSED or session.channel is None:
            return
        await self.emit("voice:answer", {"text": response.answer})
        try:
            await session.channel.send_text(answer_directive(response.answer))
        except Exception as e:
            await self._fail(session, e)
