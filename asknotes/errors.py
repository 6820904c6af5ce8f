# asknotes/errors.py
"""
Таксономия ошибок пайплайна.

Каждая ошибка знает HTTP-статус и текст, который можно показать студенту.
Любая ошибка стадии обрывает запрос целиком: частичных ответов не бывает.
"""
from __future__ import annotations


class CragError(Exception):
    status_code = 500
    user_message = "Unknown error"

    def __init__(self, message: str = "", *, user_message: str | None = None):
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class ValidationError(CragError):
    status_code = 400
    user_message = "Invalid request"


class AuthorizationError(CragError):
    status_code = 401
    user_message = "Unauthorized"


class SubjectNotFound(AuthorizationError):
    # чужой предмет неотличим от несуществующего
    status_code = 404
    user_message = "Subject not found"


class RetrievalFailure(CragError):
    status_code = 502
    user_message = "Notes search is unavailable right now."


class GenerationFailure(CragError):
    status_code = 502
    user_message = "The answer service is unavailable right now."


class GenerationParseFailure(CragError):
    status_code = 502
    user_message = "The answer could not be generated. Please retry."


class VoiceSessionError(CragError):
    user_message = "Voice session error"


class NoNotesError(CragError):
    status_code = 400
    user_message = "No notes found for this subject to generate a quiz from."


class StorageFailure(CragError):
    status_code = 503
    user_message = "Conversation history is unavailable right now."
