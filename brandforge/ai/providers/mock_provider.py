"""Deterministic mock completion provider for local/dev usage."""

from __future__ import annotations

import hashlib
import json
import math

from brandforge.ai.providers.base import CompletionProvider, CompletionRequest, CompletionResult


MOCK_MODEL = "mock-v1"


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / 4)


class MockCompletionProvider(CompletionProvider):
    provider_name = "mock"

    def _render(self, prompt: str) -> str:
        lowered = prompt.lower()
        seed = hashlib.sha1(prompt.encode("utf-8")).hexdigest()[:8]
        if "return the section as plain text" in lowered:
            first_line = prompt.splitlines()[0] if prompt else ""
            return f"Mock section draft {seed}. {first_line}".strip()
        if "naming" in lowered:
            return json.dumps(
                {
                    "items": [
                        {"name": "BrandVox", "rationale": "Brand plus voice."},
                        {"name": "IdentityForge", "rationale": "Where identities are forged."},
                        {"name": "BrandCore", "rationale": "The core of the brand."},
                    ],
                    "seed": seed,
                },
                sort_keys=True,
            )
        return json.dumps(
            {"title": "Generated content", "content": f"Mock response {seed}", "generated": True},
            sort_keys=True,
        )

    def complete(self, request: CompletionRequest) -> CompletionResult:
        user_messages = [message.get("content", "") for message in request.messages if message.get("role") == "user"]
        prompt = user_messages[-1] if user_messages else ""
        content = self._render(prompt)
        prompt_text = "\n".join(message.get("content", "") for message in request.messages)
        return CompletionResult(
            content=content,
            model=MOCK_MODEL,
            provider=self.provider_name,
            tokens_in=estimate_tokens(prompt_text),
            tokens_out=estimate_tokens(content),
        )
