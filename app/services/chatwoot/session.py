"""Gateway to the WhatsApp session layer's send capability."""

from __future__ import annotations

import base64
import logging
from typing import Any, Protocol

import httpx

from app.config import settings
from app.services.chatwoot.translator import WhatsAppSendRequest

logger = logging.getLogger(__name__)


class SessionGatewayError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class SessionGateway(Protocol):
    def send_message(self, session_id: str, jid: str, request: WhatsAppSendRequest) -> str | None:
        """Send or delete a message; returns the WhatsApp message id of a send."""

    def fetch_media(self, url: str) -> bytes:
        """Download media referenced by a host message."""


class HttpSessionGateway:
    """Talks to the session layer over its HTTP API."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: int | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.session_api_url).rstrip("/")
        self.token = token if token is not None else settings.session_api_token
        self.timeout = timeout or settings.session_api_timeout_seconds
        self._transport = transport
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._client = httpx.Client(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    def close(self):
        if self._client:
            self._client.close()
            self._client = None

    def _call(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._get_client().request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "session_gateway_error method=%s path=%s status=%s",
                method,
                path,
                e.response.status_code,
            )
            raise SessionGatewayError(
                f"Session API error: {e.response.status_code}", status_code=e.response.status_code
            ) from e
        except httpx.RequestError as e:
            logger.error("session_gateway_request_error method=%s path=%s error=%s", method, path, e)
            raise SessionGatewayError(f"Session API request failed: {e}") from e
        return response

    def send_message(self, session_id: str, jid: str, request: WhatsAppSendRequest) -> str | None:
        if request.action == "delete":
            self._call(
                "DELETE",
                f"/sessions/{session_id}/messages/{request.target_message_id}",
                params={"jid": jid},
            )
            return None

        body: dict[str, Any] = {"to": jid}
        if request.text:
            body["text"] = request.text
        if request.quoted_message_id:
            body["quoted_message_id"] = request.quoted_message_id
        if request.media:
            media = request.media
            body["media"] = {
                "type": media.file_type,
                "mimetype": media.mime_type,
                "file_name": media.file_name,
            }
            if media.data is not None:
                body["media"]["data"] = base64.b64encode(media.data).decode("ascii")
            else:
                body["media"]["url"] = media.url
        response = self._call("POST", f"/sessions/{session_id}/messages", json=body)
        data = response.json() if response.content else {}
        return data.get("id") or data.get("message_id") or (data.get("key") or {}).get("id")

    def fetch_media(self, url: str) -> bytes:
        return self._call("GET", url).content
