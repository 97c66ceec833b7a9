"""Backend clients: one contract, two transports.

``HostedClient`` talks to the hosted generateContent REST API and
``LocalClient`` to a local Ollama server's native chat endpoint, both over
httpx. Every transport failure comes back as a ``RawResponse`` with an error
status instead of raising.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx

from backend.errors import CredentialError, ErrorCode
from backend.llm.models import PromptRequest, RawResponse


class BackendClient(ABC):
    """Send a prompt to one LLM backend and return its raw text."""

    name: str = "backend"
    requires_credential: bool = False

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 120.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @abstractmethod
    def send(self, request: PromptRequest, credential: str | None = None) -> RawResponse:
        """Dispatch ``request``; failures are returned, not raised."""

    def _post(
        self,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> httpx.Response | RawResponse:
        """POST ``body`` as JSON; transport and status failures become a ``RawResponse``."""

        try:
            with httpx.Client(transport=self._transport, timeout=self.timeout) as client:
                response = client.post(url, headers=headers, json=body)
        except httpx.TimeoutException as exc:
            return RawResponse.failure(ErrorCode.TIMEOUT, str(exc) or "request timed out", backend=self.name)
        except httpx.TransportError as exc:
            return RawResponse.failure(ErrorCode.CONNECTION, self._connection_message(exc), backend=self.name)

        if not response.is_success:
            return RawResponse.failure(
                ErrorCode.HTTP_STATUS,
                self._error_message(response),
                backend=self.name,
                status_code=response.status_code,
            )
        return response

    def _connection_message(self, exc: httpx.TransportError) -> str:
        return str(exc) or "connection failed"

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            error = response.json().get("error")
        except (ValueError, AttributeError):
            error = None
        if isinstance(error, dict):
            error = error.get("message")
        return error if isinstance(error, str) and error else f"HTTP {response.status_code}"

    def _json_payload(self, response: httpx.Response) -> Any | RawResponse:
        try:
            return response.json()
        except ValueError:
            return RawResponse.failure(ErrorCode.EMPTY_RESPONSE, "response body is not JSON", backend=self.name)


class HostedClient(BackendClient):
    """Client for the hosted generateContent API."""

    name = "hosted"
    requires_credential = True

    def _endpoint(self, model_id: str) -> str:
        return f"{self.base_url}/models/{model_id}:generateContent"

    @staticmethod
    def _body(request: PromptRequest) -> dict[str, Any]:
        config = request.config
        return {
            "contents": [{"parts": [{"text": request.text}]}],
            "generationConfig": {
                "temperature": config.temperature,
                "maxOutputTokens": config.max_output_tokens,
                "seed": config.seed,
            },
        }

    def send(self, request: PromptRequest, credential: str | None = None) -> RawResponse:
        if not credential:
            raise CredentialError("The hosted backend requires an API key.")

        response = self._post(
            self._endpoint(request.config.model_id),
            self._body(request),
            headers={"x-goog-api-key": credential},
        )
        if isinstance(response, RawResponse):
            return response
        payload = self._json_payload(response)
        if isinstance(payload, RawResponse):
            return payload

        text = self._candidate_text(payload)
        if not text:
            return RawResponse.failure(
                ErrorCode.EMPTY_RESPONSE, "no candidate text in response", backend=self.name
            )
        return RawResponse.success(text, backend=self.name)

    @staticmethod
    def _candidate_text(payload: Any) -> str:
        if not isinstance(payload, dict):
            return ""
        candidates = payload.get("candidates")
        if not isinstance(candidates, list):
            return ""
        for candidate in candidates:
            if not isinstance(candidate, dict):
                continue
            content = candidate.get("content")
            parts = content.get("parts") if isinstance(content, dict) else None
            if not isinstance(parts, list):
                continue
            text = "".join(str(part.get("text", "")) for part in parts if isinstance(part, dict))
            if text.strip():
                return text
        return ""


class LocalClient(BackendClient):
    """Client for a local Ollama server via its native ``/api/chat`` endpoint.

    Sampling settings and backend knobs such as ``num_gpu`` travel in the
    request's ``options`` object, which the native endpoint applies.
    """

    name = "local"
    requires_credential = False

    def _endpoint(self) -> str:
        return f"{self.base_url}/api/chat"

    @staticmethod
    def _body(request: PromptRequest) -> dict[str, Any]:
        config = request.config
        return {
            "model": config.model_id,
            "messages": [{"role": "user", "content": request.text}],
            "stream": False,
            "options": {
                "seed": config.seed,
                "temperature": config.temperature,
                "num_predict": config.max_output_tokens,
                **config.options,
            },
        }

    def _connection_message(self, exc: httpx.TransportError) -> str:
        reason = str(exc) or "connection failed"
        return f"{reason}. Please check that the local model server is running at {self.base_url}."

    def send(self, request: PromptRequest, credential: str | None = None) -> RawResponse:
        response = self._post(self._endpoint(), self._body(request))
        if isinstance(response, RawResponse):
            return response
        payload = self._json_payload(response)
        if isinstance(payload, RawResponse):
            return payload

        message = payload.get("message") if isinstance(payload, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            return RawResponse.failure(
                ErrorCode.EMPTY_RESPONSE,
                "The local model returned an empty message. Please check the model and parameters.",
                backend=self.name,
            )
        return RawResponse.success(content, backend=self.name)


__all__ = ["BackendClient", "HostedClient", "LocalClient"]
