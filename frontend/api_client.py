import os
from typing import Any, Optional

import httpx

BACKEND_URL = os.environ.get("BACKEND_URL", "http://127.0.0.1:8000")


class APIError(Exception):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details


class ValidationError(APIError):
    pass


class ConflictError(ValidationError):
    pass


class AuthError(APIError):
    pass


class NotFoundError(APIError):
    pass


class DependencyError(APIError):
    """Backend or one of its dependencies is unavailable; safe to retry."""


_CODE_ERRORS = {
    "CONSTRAINT_VIOLATION": ConflictError,
    "TAG_LIMIT_EXCEEDED": ConflictError,
}

_STATUS_ERRORS = {
    400: ValidationError,
    401: AuthError,
    404: NotFoundError,
}


class APIClient:
    """Synchronous client for the backend (Streamlit reruns are synchronous).

    ``http_client`` lets callers share one ``httpx.Client``; by default each
    call opens its own.
    """

    def __init__(
        self,
        base_url: str = BACKEND_URL,
        user_id: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url
        self.user_id = user_id
        self.timeout = timeout
        self._http = http_client

    def _headers(self) -> dict:
        return {"X-User-Id": self.user_id} if self.user_id else {}

    def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            if self._http is not None:
                r = self._http.request(
                    method, url, json=json, params=params, headers=self._headers()
                )
            else:
                with httpx.Client(timeout=timeout or self.timeout) as client:
                    r = client.request(
                        method, url, json=json, params=params, headers=self._headers()
                    )
        except httpx.TransportError as exc:
            raise DependencyError(f"Backend unreachable: {exc}") from exc
        return self._unwrap(r)

    @staticmethod
    def _unwrap(r: httpx.Response) -> Any:
        try:
            payload = r.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {"data": payload}

        if r.is_success and payload.get("success", True):
            return payload.get("data")

        error = payload.get("error") or {}
        code = error.get("code")
        error_cls = _CODE_ERRORS.get(code) or _STATUS_ERRORS.get(r.status_code)
        if error_cls is None:
            error_cls = DependencyError if r.status_code >= 500 else APIError
        raise error_cls(
            error.get("message") or r.reason_phrase or "Request failed",
            status_code=r.status_code,
            code=code,
            details=error.get("details"),
        )

    def _owner_params(self) -> dict:
        return {"userId": self.user_id} if self.user_id else {}

    # --- Conversations ---

    def list_conversations(self) -> list[dict]:
        return self._request("GET", "/conversations", params=self._owner_params())

    def create_conversation(
        self,
        title: str = "New Conversation",
        category: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        body = {"title": title, "userId": self.user_id}
        if category is not None:
            body["category"] = category
        if metadata is not None:
            body["metadata"] = metadata
        return self._request("POST", "/conversations", json=body)

    def get_conversation(self, conversation_id: str) -> dict:
        return self._request("GET", f"/conversations/{conversation_id}")

    def update_conversation(
        self,
        conversation_id: str,
        title: Optional[str] = None,
        is_starred: Optional[bool] = None,
        is_archived: Optional[bool] = None,
    ) -> dict:
        body = {}
        if title is not None:
            body["title"] = title
        if is_starred is not None:
            body["is_starred"] = is_starred
        if is_archived is not None:
            body["is_archived"] = is_archived
        return self._request("PUT", f"/conversations/{conversation_id}", json=body)

    def delete_conversation(self, conversation_id: str) -> dict:
        return self._request("DELETE", f"/conversations/{conversation_id}")

    def set_starred(self, conversation_id: str, value: bool) -> dict:
        return self._request(
            "POST", f"/conversations/{conversation_id}/star", json={"isStarred": value}
        )

    def set_archived(self, conversation_id: str, value: bool) -> dict:
        return self._request(
            "POST", f"/conversations/{conversation_id}/archive", json={"isArchived": value}
        )

    def set_tags(self, conversation_id: str, tags: list[str]) -> dict:
        return self._request(
            "PUT", f"/conversations/{conversation_id}/tags", json={"tags": list(tags)}
        )

    def add_tags(self, conversation_id: str, tags: list[str]) -> dict:
        return self._request(
            "POST", f"/conversations/{conversation_id}/tags", json={"tags": list(tags)}
        )

    def update_metadata(self, conversation_id: str, metadata: dict) -> dict:
        return self._request(
            "PUT", f"/conversations/{conversation_id}/metadata", json={"metadata": metadata}
        )

    # --- Messages ---

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        tokens_used: int = 0,
        cost: float = 0.0,
    ) -> dict:
        return self._request(
            "POST",
            f"/conversations/{conversation_id}/messages",
            json={"role": role, "content": content, "tokensUsed": tokens_used, "cost": cost},
        )

    def update_message(
        self,
        conversation_id: str,
        message_id: str,
        content: Optional[str] = None,
        is_starred: Optional[bool] = None,
    ) -> dict:
        body = {}
        if content is not None:
            body["content"] = content
        if is_starred is not None:
            body["isStarred"] = is_starred
        return self._request(
            "PUT", f"/conversations/{conversation_id}/messages/{message_id}", json=body
        )

    # --- Generation ---

    def send_chat(
        self,
        conversation_id: str,
        content: str,
        model_id: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> dict:
        body = {"conversationId": conversation_id, "content": content}
        if model_id:
            body["modelId"] = model_id
        if temperature is not None:
            body["temperature"] = temperature
        return self._request("POST", "/chat/completions", json=body, timeout=300.0)

    def list_models(self) -> list[dict]:
        return self._request("GET", "/chat/models")

    def generate_prompt(self, conversation_id: str, model_id: Optional[str] = None) -> dict:
        body = {"modelId": model_id} if model_id else {}
        return self._request(
            "POST", f"/conversations/{conversation_id}/prompts", json=body, timeout=300.0
        )

    def list_prompts(self, conversation_id: str) -> list[dict]:
        return self._request("GET", f"/conversations/{conversation_id}/prompts")

    # --- Usage ---

    def get_conversation_analytics(self, conversation_id: str) -> dict:
        return self._request("GET", f"/conversations/{conversation_id}/analytics")

    def get_user_stats(self) -> dict:
        return self._request("GET", "/conversations/stats", params=self._owner_params())

    def get_user_tags(self, limit: int = 20) -> list[dict]:
        params = dict(self._owner_params(), limit=limit)
        return self._request("GET", "/conversations/tags", params=params)

    def health_check(self) -> dict:
        return self._request("GET", "/health", timeout=5.0)
