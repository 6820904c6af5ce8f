# asknotes/live.py
"""Live-сессия речи поверх Gemini Live API (google-genai)."""
from __future__ import annotations

import base64
import logging
from contextlib import AsyncExitStack
from typing import AsyncIterator, Optional

from google import genai
from google.genai import types

from .config import settings
from .errors import VoiceSessionError
from .voice import LiveEvent

logger = logging.getLogger("asknotes.live")

OUTPUT_MIME = "audio/pcm;rate=24000"


def _to_event(message) -> LiveEvent:
    sc = message.server_content
    if sc is None:
        return LiveEvent()

    audio = []
    if sc.model_turn and sc.model_turn.parts:
        for part in sc.model_turn.parts:
            if part.inline_data and part.inline_data.data:
                audio.append((
                    base64.b64encode(part.inline_data.data).decode("ascii"),
                    part.inline_data.mime_type or OUTPUT_MIME,
                ))

    return LiveEvent(
        input_transcript=sc.input_transcription.text if sc.input_transcription else None,
        output_transcript=sc.output_transcription.text if sc.output_transcription else None,
        audio=tuple(audio),
        interrupted=bool(sc.interrupted),
        turn_complete=bool(sc.turn_complete),
        generation_complete=bool(sc.generation_complete),
    )


class GeminiLiveSession:
    def __init__(
        self,
        system_instruction: str,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        voice: Optional[str] = None,
    ):
        self.system_instruction = system_instruction
        self.api_key = api_key or settings.gemini_api_key
        self.model = model or settings.live_model
        self.voice = voice or settings.live_voice
        self._stack: Optional[AsyncExitStack] = None
        self._session = None
        self._closed = False

    def _config(self) -> types.LiveConnectConfig:
        return types.LiveConnectConfig(
            response_modalities=[types.Modality.AUDIO],
            input_audio_transcription=types.AudioTranscriptionConfig(),
            output_audio_transcription=types.AudioTranscriptionConfig(),
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=self.voice),
                ),
            ),
            system_instruction=self.system_instruction,
        )

    async def open(self) -> None:
        if not self.api_key:
            raise VoiceSessionError("Missing GEMINI_API_KEY (set env var)")
        client = genai.Client(api_key=self.api_key)
        self._stack = AsyncExitStack()
        try:
            self._session = await self._stack.enter_async_context(
                client.aio.live.connect(model=self.model, config=self._config())
            )
        except Exception as e:
            await self._stack.aclose()
            raise VoiceSessionError(f"live session connect failed: {e}") from e
        logger.info("Live session opened: model=%s", self.model)

    async def send_audio(self, data: str, mime_type: str) -> None:
        await self._session.send_realtime_input(
            audio=types.Blob(data=base64.b64decode(data), mime_type=mime_type)
        )

    async def send_text(self, text: str) -> None:
        await self._session.send_client_content(
            turns=types.Content(role="user", parts=[types.Part(text=text)]),
            turn_complete=True,
        )

    async def events(self) -> AsyncIterator[LiveEvent]:
        while not self._closed:
            received = 0
            # receive() отдаёт сообщения одного хода и завершается на turn_complete
            async for message in self._session.receive():
                received += 1
                yield _to_event(message)
            if not received:
                break

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._session is not None:
            try:
                await self._session.send_realtime_input(audio_stream_end=True)
            except Exception as e:
                logger.debug("audio_stream_end not delivered: %s", e)
        if self._stack is not None:
            await self._stack.aclose()
        logger.info("Live session closed")


def gemini_session_factory(system_instruction: str) -> GeminiLiveSession:
    return GeminiLiveSession(system_instruction)
