"""Route prompts to the selected LLM backend."""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from backend.llm import prompts
from backend.llm.clients import BackendClient, HostedClient, LocalClient
from backend.llm.credentials import read_credential
from backend.llm.models import BackendSelector, GenerationConfig, PromptRequest, RawResponse
from config.settings import Settings, get_settings

logger = logging.getLogger("scassist.llm")


class Dispatcher:
    """Select a backend client, build the request and send it once.

    There are no retries: a failed call comes back as a ``RawResponse`` with
    an error status and the caller decides whether to abort.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        hosted_client: BackendClient | None = None,
        local_client: BackendClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._clients: dict[BackendSelector, BackendClient] = {
            BackendSelector.HOSTED: hosted_client
            or HostedClient(
                self.settings.hosted_base_url,
                timeout=self.settings.request_timeout_seconds,
            ),
            BackendSelector.LOCAL: local_client
            or LocalClient(
                self.settings.local_base_url,
                timeout=self.settings.request_timeout_seconds,
            ),
        }
        self._min_interval = (
            0.0
            if self.settings.requests_per_minute <= 0
            else 60.0 / self.settings.requests_per_minute
        )
        self._last_call_ts: float | None = None

    # Public API -----------------------------------------------------------------

    def client_for(self, backend: BackendSelector | str) -> BackendClient:
        return self._clients[BackendSelector.coerce(backend)]

    def default_config(self, backend: BackendSelector | str) -> GenerationConfig:
        """Build a fresh generation config for ``backend`` from settings."""

        selector = BackendSelector.coerce(backend)
        if selector is BackendSelector.HOSTED:
            return GenerationConfig(
                model_id=self.settings.hosted_model,
                temperature=self.settings.temperature,
                max_output_tokens=self.settings.max_output_tokens,
                seed=self.settings.hosted_seed,
            )
        return GenerationConfig(
            model_id=self.settings.local_model,
            temperature=self.settings.temperature,
            max_output_tokens=self.settings.max_output_tokens,
            seed=self.settings.local_seed,
            options={"num_gpu": self.settings.local_num_gpu},
        )

    def dispatch(
        self,
        template_kind: prompts.TemplateKind | str,
        fields: Mapping[str, Any],
        backend: BackendSelector | str,
        config: GenerationConfig | None = None,
        credential_path: str | Path | None = None,
    ) -> RawResponse:
        """Render ``template_kind`` with ``fields`` and send it to ``backend``."""

        selector = BackendSelector.coerce(backend)
        kind = prompts.TemplateKind(template_kind)
        request = PromptRequest(
            text=prompts.build(kind, fields),
            config=config or self.default_config(selector),
            template_kind=kind.value,
        )
        return self.send(request, selector, credential_path=credential_path)

    def send(
        self,
        request: PromptRequest,
        backend: BackendSelector | str,
        credential_path: str | Path | None = None,
    ) -> RawResponse:
        """Send an already-built request; the hosted key is read fresh each call."""

        selector = BackendSelector.coerce(backend)
        client = self.client_for(selector)
        credential = None
        if client.requires_credential:
            credential = read_credential(credential_path or self.settings.api_key_file)

        self._log_request(selector, request)
        self._enforce_rate_limit()
        response = client.send(request, credential)
        self._log_response(selector, request, response)
        return response

    # Internal helpers -----------------------------------------------------------

    def _log_request(self, backend: BackendSelector, request: PromptRequest) -> None:
        logger.info(
            "llm.request",
            extra={
                "backend": backend.value,
                "template_kind": request.template_kind,
                "model": request.config.model_id,
                "prompt_chars": len(request.text),
                "temperature": request.config.temperature,
                "seed": request.config.seed,
            },
        )

    def _log_response(
        self,
        backend: BackendSelector,
        request: PromptRequest,
        response: RawResponse,
    ) -> None:
        if response.ok:
            logger.info(
                "llm.response",
                extra={
                    "backend": backend.value,
                    "template_kind": request.template_kind,
                    "status": response.status.value,
                    "text_chars": len(response.text or ""),
                },
            )
            return
        error = response.error
        logger.warning(
            "llm.response",
            extra={
                "backend": backend.value,
                "template_kind": request.template_kind,
                "status": response.status.value,
                "error_code": error.code.value if error else None,
                "error_message": error.message if error else None,
            },
        )

    def _enforce_rate_limit(self) -> None:
        if self._min_interval <= 0:
            return
        now = time.monotonic()
        if self._last_call_ts is None:
            self._last_call_ts = now
            return
        elapsed = now - self._last_call_ts
        wait_for = self._min_interval - elapsed
        if wait_for > 0:
            self._sleep(wait_for)
        self._last_call_ts = time.monotonic()

    def _sleep(self, seconds: float) -> None:
        time.sleep(seconds)


__all__ = ["Dispatcher"]
