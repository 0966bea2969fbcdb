"""Error taxonomy for the Chatwoot sync engine."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException


@dataclass(frozen=True)
class ChatwootSyncError(Exception):
    code: str
    detail: str
    status_code: int = 400
    retryable: bool = False

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.detail)


class ConfigValidationError(ChatwootSyncError):
    def __init__(self, code: str, detail: str):
        super().__init__(code=code, detail=detail, status_code=400, retryable=False)


class NotConfiguredError(ChatwootSyncError):
    def __init__(self, code: str, detail: str):
        super().__init__(code=code, detail=detail, status_code=404, retryable=False)


class ResolutionError(ChatwootSyncError):
    def __init__(self, code: str, detail: str, retryable: bool = True):
        status_code = 503 if retryable else 422
        super().__init__(code=code, detail=detail, status_code=status_code, retryable=retryable)


class TranslationError(ChatwootSyncError):
    def __init__(self, code: str, detail: str):
        super().__init__(code=code, detail=detail, status_code=422, retryable=False)


class DeliveryError(ChatwootSyncError):
    def __init__(self, code: str, detail: str, status_code: int = 502, retryable: bool = True):
        super().__init__(code=code, detail=detail, status_code=status_code, retryable=retryable)


class ConflictError(ChatwootSyncError):
    def __init__(self, code: str, detail: str):
        super().__init__(code=code, detail=detail, status_code=409, retryable=False)

