"""OpenAI chat-completions provider over httpx."""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from brandforge.ai.providers.base import CompletionProvider, CompletionRequest, CompletionResult, ProviderError


class OpenAICompletionProvider(CompletionProvider):
    provider_name = "openai"

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: int = 60,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._api_key = api_key.strip()
        self._model = model.strip() or "gpt-4o-mini"
        self._base_url = base_url.strip().rstrip("/")
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }

    def _post(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        try:
            if self._client is not None:
                return self._client.post(url, headers=self._headers(), json=payload)
            with httpx.Client(timeout=self._timeout_seconds) as client:
                return client.post(url, headers=self._headers(), json=payload)
        except httpx.TimeoutException as exc:
            raise ProviderError("openai_request_timeout", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"openai_transport_error {exc.__class__.__name__}", retryable=True) from exc

    def complete(self, request: CompletionRequest) -> CompletionResult:
        if not self._api_key:
            raise ProviderError("openai_api_key_missing")

        model = request.model or self._model
        payload = {
            "model": model,
            "messages": request.messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        response = self._post(f"{self._base_url}/chat/completions", payload)

        if response.status_code < 200 or response.status_code >= 300:
            detail = response.text.strip()
            if len(detail) > 240:
                detail = detail[:240] + "..."
            retryable = response.status_code == 429 or response.status_code >= 500
            raise ProviderError(
                f"openai_api_error status={response.status_code} detail={detail}",
                retryable=retryable,
                status_code=response.status_code,
            )

        try:
            body: Dict[str, Any] = response.json()
        except ValueError as exc:
            raise ProviderError("openai_invalid_json_response") from exc

        choices = body.get("choices") or []
        if not choices:
            raise ProviderError("openai_empty_completion")
        message = choices[0].get("message") or {}
        usage = body.get("usage") or {}

        return CompletionResult(
            content=str(message.get("content") or ""),
            model=str(body.get("model") or model),
            provider=self.provider_name,
            tokens_in=int(usage.get("prompt_tokens") or 0),
            tokens_out=int(usage.get("completion_tokens") or 0),
            payload={"finish_reason": choices[0].get("finish_reason")},
        )
