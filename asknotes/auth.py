# asknotes/auth.py
"""
Узкий интерфейс к внешней аутентификации.

Проверку логина/сессии делает шлюз перед сервисом; сюда доходит
уже проверенный id пользователя в доверенном заголовке.
"""
from __future__ import annotations

from typing import Mapping, Optional

from fastapi import Depends, HTTPException, Request

from .config import settings


class IdentityProvider:
    def __init__(self, header: Optional[str] = None):
        self.header = header or settings.identity_header

    def resolve(self, headers: Mapping[str, str]) -> Optional[str]:
        value = (headers.get(self.header) or "").strip()
        return value or None


identity = IdentityProvider()


def get_identity() -> IdentityProvider:
    return identity


def require_user(request: Request, provider: IdentityProvider = Depends(get_identity)) -> str:
    user_id = provider.resolve(request.headers)
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id
