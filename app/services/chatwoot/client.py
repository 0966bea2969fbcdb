"""Chatwoot API client."""

import json
import logging
from typing import Any

import httpx

from app.services.chatwoot.observability import API_CALLS

logger = logging.getLogger(__name__)

MAX_DOWNLOAD_REDIRECTS = 5


class ChatwootError(Exception):
    """Chatwoot API error."""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        # Transport failures carry no status code
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class ChatwootClient:
    """Client for Chatwoot API v1.

    Performs exactly one HTTP attempt per call; callers own retry policy.
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        account_id: int = 1,
        timeout: int = 30,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.account_id = account_id
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.Client | None = None
        self._download_client: httpx.Client | None = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url,
                headers={"api_access_token": self.access_token},
                timeout=self.timeout,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    def _get_download_client(self) -> httpx.Client:
        # No default headers: the token is attached per request, same origin only
        if self._download_client is None:
            self._download_client = httpx.Client(
                timeout=self.timeout,
                transport=self._transport,
                follow_redirects=False,
            )
        return self._download_client

    def close(self):
        if self._client:
            self._client.close()
            self._client = None
        if self._download_client:
            self._download_client.close()
            self._download_client = None

    def is_own_origin(self, url: httpx.URL | str) -> bool:
        url = httpx.URL(url)
        base = httpx.URL(self.base_url)
        return (url.scheme, url.host, url.port) == (base.scheme, base.host, base.port)

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        files: list[tuple[str, tuple[str, bytes, str]]] | None = None,
        operation: str | None = None,
        account_scoped: bool = True,
    ) -> Any:
        """Make API request."""
        client = self._get_client()
        url = f"/api/v1/accounts/{self.account_id}{path}" if account_scoped else f"/api/v1{path}"
        op = operation or f"{method.lower()} {path}"

        try:
            response = client.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                data=data,
                files=files,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            API_CALLS.labels(operation=op, status=f"http_{e.response.status_code}").inc()
            logger.error(
                "chatwoot_api_error operation=%s status=%s body=%s",
                op,
                e.response.status_code,
                e.response.text[:500],
            )
            raise ChatwootError(
                f"API error: {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            API_CALLS.labels(operation=op, status="transport_error").inc()
            logger.error("chatwoot_request_error operation=%s error=%s", op, e)
            raise ChatwootError(f"Request failed: {e}") from e

        API_CALLS.labels(operation=op, status="ok").inc()
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ChatwootError(f"Invalid JSON response from {op}", status_code=response.status_code) from e

    # ==================== Profile ====================

    def get_profile(self) -> dict[str, Any]:
        """Return the token owner's profile, including the accounts it can access."""
        return self._request("GET", "/profile", operation="get_profile", account_scoped=False)

    # ==================== Contacts ====================

    def list_contacts(self, page: int = 1) -> dict[str, Any]:
        """List contacts with pagination."""
        return self._request("GET", "/contacts", params={"page": page}, operation="list_contacts")

    def count_contacts(self) -> int:
        result = self.list_contacts(page=1)
        meta = result.get("meta", {}) if isinstance(result, dict) else {}
        return int(meta.get("count") or 0)

    def search_contacts(self, query: str) -> list[dict[str, Any]]:
        result = self._request("GET", "/contacts/search", params={"q": query}, operation="search_contacts")
        return result.get("payload", []) if isinstance(result, dict) else []

    def filter_contacts_by_phone(self, phone_numbers: list[str]) -> list[dict[str, Any]]:
        """Exact-match filter over several phone spellings, OR-ed together."""
        payload = []
        for index, number in enumerate(phone_numbers):
            payload.append(
                {
                    "attribute_key": "phone_number",
                    "filter_operator": "equal_to",
                    "values": [number.lstrip("+")],
                    "query_operator": None if index == len(phone_numbers) - 1 else "OR",
                }
            )
        result = self._request(
            "POST",
            "/contacts/filter",
            json_data={"payload": payload},
            operation="filter_contacts",
        )
        return result.get("payload", []) if isinstance(result, dict) else []

    def create_contact(
        self,
        inbox_id: int,
        name: str,
        identifier: str,
        phone_number: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"inbox_id": inbox_id, "name": name, "identifier": identifier}
        if phone_number:
            body["phone_number"] = phone_number
        result = self._request("POST", "/contacts", json_data=body, operation="create_contact")
        payload = result.get("payload", result) if isinstance(result, dict) else {}
        return payload.get("contact", payload)

    def update_contact(self, contact_id: int, **fields: Any) -> dict[str, Any]:
        result = self._request("PUT", f"/contacts/{contact_id}", json_data=fields, operation="update_contact")
        return result.get("payload", result) if isinstance(result, dict) else result

    def get_contact_conversations(self, contact_id: int) -> list[dict[str, Any]]:
        result = self._request(
            "GET",
            f"/contacts/{contact_id}/conversations",
            operation="get_contact_conversations",
        )
        return result.get("payload", []) if isinstance(result, dict) else []

    # ==================== Conversations ====================

    def list_conversations(self, status: str = "all", page: int = 1, inbox_id: int | None = None) -> dict[str, Any]:
        """List conversations with pagination, optionally limited to one inbox."""
        params: dict[str, Any] = {"status": status, "assignee_type": "all", "page": page}
        if inbox_id is not None:
            params["inbox_id"] = inbox_id
        return self._request("GET", "/conversations", params=params, operation="list_conversations")

    def count_conversations(self, status: str = "all", inbox_id: int | None = None) -> int:
        result = self.list_conversations(status=status, inbox_id=inbox_id)
        meta = (result.get("data") or {}).get("meta", {}) if isinstance(result, dict) else {}
        return int(meta.get("all_count") or 0)

    def create_conversation(self, contact_id: int, inbox_id: int, status: str | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"contact_id": str(contact_id), "inbox_id": str(inbox_id)}
        if status:
            body["status"] = status
        return self._request("POST", "/conversations", json_data=body, operation="create_conversation")

    def toggle_status(self, conversation_id: int, status: str) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/conversations/{conversation_id}/toggle_status",
            json_data={"status": status},
            operation="toggle_status",
        )

    # ==================== Messages ====================

    def create_message(
        self,
        conversation_id: int,
        content: str | None,
        message_type: str = "incoming",
        source_id: str | None = None,
        content_attributes: dict[str, Any] | None = None,
        attachments: list[tuple[str, bytes, str]] | None = None,
        private: bool = False,
    ) -> dict[str, Any]:
        """Create a message, as multipart when attachments are given.

        ``attachments`` items are ``(filename, content, mime_type)``.
        """
        path = f"/conversations/{conversation_id}/messages"
        if not attachments:
            body: dict[str, Any] = {"content": content or "", "message_type": message_type, "private": private}
            if source_id:
                body["source_id"] = source_id
            if content_attributes:
                body["content_attributes"] = content_attributes
            return self._request("POST", path, json_data=body, operation="create_message")

        form: dict[str, Any] = {"message_type": message_type}
        if content:
            form["content"] = content
        if private:
            form["private"] = "true"
        if source_id:
            form["source_id"] = source_id
        if content_attributes:
            form["content_attributes"] = json.dumps(content_attributes)
        files = [("attachments[]", (name, blob, mime)) for name, blob, mime in attachments]
        return self._request("POST", path, data=form, files=files, operation="create_message")

    def delete_message(self, conversation_id: int, message_id: int) -> None:
        self._request(
            "DELETE",
            f"/conversations/{conversation_id}/messages/{message_id}",
            operation="delete_message",
        )

    def download(self, url: str) -> tuple[bytes, str | None]:
        """Fetch an attachment from an absolute ``data_url``.

        Redirects are followed by hand so ``api_access_token`` is only ever
        sent to the Chatwoot origin, never to the storage host behind it.
        """
        client = self._get_download_client()
        target = httpx.URL(url)
        try:
            for _ in range(MAX_DOWNLOAD_REDIRECTS + 1):
                headers = {"api_access_token": self.access_token} if self.is_own_origin(target) else {}
                response = client.get(target, headers=headers)
                if not response.is_redirect:
                    break
                target = target.join(response.headers["location"])
            else:
                API_CALLS.labels(operation="download", status="too_many_redirects").inc()
                raise ChatwootError("Download failed: too many redirects")
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            API_CALLS.labels(operation="download", status=f"http_{e.response.status_code}").inc()
            raise ChatwootError(f"Download failed: {e.response.status_code}", status_code=e.response.status_code) from e
        except httpx.RequestError as e:
            API_CALLS.labels(operation="download", status="transport_error").inc()
            raise ChatwootError(f"Download failed: {e}") from e
        API_CALLS.labels(operation="download", status="ok").inc()
        return response.content, response.headers.get("content-type")

    # ==================== Inboxes ====================

    def list_inboxes(self) -> list[dict[str, Any]]:
        """List all inboxes."""
        result = self._request("GET", "/inboxes", operation="list_inboxes")
        return result.get("payload", []) if isinstance(result, dict) else result

    def create_api_inbox(self, name: str, webhook_url: str | None = None) -> dict[str, Any]:
        return self._request(
            "POST",
            "/inboxes",
            json_data={"name": name, "channel": {"type": "api", "webhook_url": webhook_url}},
            operation="create_inbox",
        )
