# asknotes/generator.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

import requests

from .config import settings
from .errors import GenerationFailure

logger = logging.getLogger("asknotes.generator")

Messages = List[Dict[str, str]]


@dataclass(frozen=True)
class StreamPiece:
    """Дельта генерации; последний кусок несёт весь текст и done=True."""
    delta: str = ""
    done: bool = False
    text: str = ""


# разбор ответов #

def _extract_content(data: Any) -> Optional[str]:
    # 1) OpenAI-подобный: {"choices":[{"message":{"content":"..."}}]}
    if isinstance(data, dict) and "choices" in data:
        ch = data["choices"]
        if isinstance(ch, list) and ch:
            msg = ch[0].get("message", {}) or {}
            content = msg.get("content")
            if isinstance(content, str) and content.strip():
                return content.strip()

    # 2) GenAPI-формат: {"response":[{"message":{"content":"..."}}]}
    if isinstance(data, dict) and "response" in data:
        r = data["response"]
        if isinstance(r, list) and r:
            msg = r[0]
            if isinstance(msg, dict):
                m = msg.get("message") or {}
                content = m.get("content")
                if isinstance(content, str) and content.strip():
                    return content.strip()

    # 3) Простые ключи: {"output":"..."}, {"text":"..."}
    if isinstance(data, dict):
        for key in ("output", "text"):
            if isinstance(data.get(key), str) and data[key].strip():
                return data[key].strip()
    return None


def _extract_delta(data: Any) -> str:
    """Кусок текста из SSE-события (choices[0].delta.content или response[0].delta.content)."""
    if not isinstance(data, dict):
        return ""
    for key in ("choices", "response"):
        items = data.get(key)
        if isinstance(items, list) and items and isinstance(items[0], dict):
            delta = items[0].get("delta") or {}
            content = delta.get("content") if isinstance(delta, dict) else None
            if isinstance(content, str):
                return content
    return ""


# клиент #

class GenerationClient:
    """
    Вызов генеративной модели: invoke: один ответ, stream: дельты по порядку.
    Ретраев нет: любая сетевая/HTTP ошибка сразу уходит наверх как GenerationFailure.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[int] = None,
        temperature: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.url = url or settings.llm_url
        self.key = key or settings.llm_key
        self.model = model or settings.llm_model
        self.timeout = timeout if timeout is not None else settings.request_timeout_sec
        self.temperature = temperature if temperature is not None else settings.llm_temperature
        self.http = session or requests.Session()

    def _payload(self, messages: Messages, stream: bool) -> dict:
        return {
            "model": self.model,
            "temperature": self.temperature,
            "stream": stream,
            "messages": messages,
        }

    def _post(self, payload: dict, stream: bool) -> requests.Response:
        # без ключа не шлём Bearer None
        if not self.key:
            raise GenerationFailure("Missing LLM_KEY (set env var)")
        try:
            resp = self.http.post(
                self.url,
                headers={
                    "Content-Type": "application/json",
                    "Accept": "text/event-stream" if stream else "application/json",
                    "Authorization": f"Bearer {self.key}",
                },
                json=payload,
                timeout=self.timeout,
                stream=stream,
            )
        except requests.RequestException as e:
            raise GenerationFailure(f"LLM request failed: {e}") from e

        if resp.status_code != 200:
            body = resp.text[:500]
            resp.close()
            raise GenerationFailure(f"LLM HTTP {resp.status_code}: {body}")
        return resp

    def invoke(self, messages: Messages) -> str:
        resp = self._post(self._payload(messages, stream=False), stream=False)
        try:
            data = resp.json()
        except ValueError as e:
            raise GenerationFailure(f"LLM returned non-JSON body: {e}") from e

        content = _extract_content(data)
        if content is None:
            raise GenerationFailure(f"LLM unexpected response: {json.dumps(data, ensure_ascii=False)[:500]}")
        return content

    def stream(self, messages: Messages) -> Iterator[StreamPiece]:
        resp = self._post(self._payload(messages, stream=True), stream=True)
        parts: List[str] = []
        with resp:
            try:
                # SSE всегда UTF-8; на charset из Content-Type не полагаемся
                for raw in resp.iter_lines():
                    try:
                        line = raw.decode("utf-8")
                    except UnicodeDecodeError as e:
                        raise GenerationFailure(f"LLM stream sent non-UTF-8 bytes: {e}") from e
                    # SSE: пустые строки разделяют события, строки с ":" это комментарии
                    if not line or line.startswith(":") or not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        event = json.loads(data)
                    except ValueError as e:
                        raise GenerationFailure(f"LLM stream sent malformed event: {data[:200]}") from e
                    delta = _extract_delta(event)
                    if delta:
                        parts.append(delta)
                        yield StreamPiece(delta=delta)
            except requests.RequestException as e:
                raise GenerationFailure(f"LLM stream interrupted: {e}") from e

        logger.debug("LLM stream finished: %d deltas", len(parts))
        yield StreamPiece(done=True, text="".join(parts))
