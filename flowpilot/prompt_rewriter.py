"""
LLM prompt rewriter used for content-policy recovery.

Rewrites a rejected image prompt so it keeps the same scene and composition
while dropping wording likely to trip safety filters. Providers are called
over plain REST with httpx:

  deepseek / openai / openrouter — OpenAI-compatible chat completions
  gemini                         — generateContent (key in x-goog-api-key header)
  claude                         — messages API

rewrite() never raises: failures come back as RewriteResult(success=False).
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

import httpx

from .config import RuntimeConfig

logger = logging.getLogger(__name__)

TEMPERATURE = 0.3
MAX_TOKENS = 4000

PROVIDERS = {
    "deepseek": {
        "name": "DeepSeek",
        "endpoint": "https://api.deepseek.com/chat/completions",
        "model": "deepseek-chat",
    },
    "openai": {
        "name": "OpenAI",
        "endpoint": "https://api.openai.com/v1/chat/completions",
        "model": "gpt-4o-mini",
    },
    "gemini": {
        "name": "Google Gemini",
        "endpoint": "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent",
        "model": "gemini-2.0-flash",
    },
    "claude": {
        "name": "Claude",
        "endpoint": "https://api.anthropic.com/v1/messages",
        "model": "claude-sonnet-4-20250514",
    },
    "openrouter": {
        "name": "OpenRouter",
        "endpoint": "https://openrouter.ai/api/v1/chat/completions",
        "model": "deepseek/deepseek-chat",
    },
}

REWRITE_SYSTEM_PROMPT = """You are a prompt rewriter. The user's image generation prompt was rejected by the image generator for potentially violating content policies.

Rewrite the prompt to avoid policy violations while keeping the SAME visual intent, scene, and composition.

RULES:
1. Keep the same scene, camera angle, lighting, and overall composition
2. Remove or soften any language that might trigger safety filters (violence, destruction, explicit content, etc.)
3. Replace potentially sensitive descriptions with neutral alternatives
4. Keep all technical photography terms (lens, f-stop, ISO, etc.) unchanged
5. Maintain the same level of detail and quality
6. Return ONLY the rewritten prompt text, with no explanations, markdown or quotes
7. Keep roughly the same length as the original"""


@dataclass
class RewriteResult:
    success: bool
    new_prompt: Optional[str] = None
    provider: Optional[str] = None
    error: Optional[str] = None


def _build_request(provider: str, api_key: str, model: str, prompt: str) -> tuple[str, dict, dict]:
    """Return (url, headers, json body) for the provider."""
    cfg = PROVIDERS[provider]

    if provider == "gemini":
        url = cfg["endpoint"].format(model=model)
        body = {
            "contents": [{
                "parts": [{"text": f"{REWRITE_SYSTEM_PROMPT}\n\nOriginal prompt that was rejected:\n{prompt}"}],
            }],
            "generationConfig": {"temperature": TEMPERATURE, "maxOutputTokens": MAX_TOKENS},
        }
        return url, {"x-goog-api-key": api_key}, body

    if provider == "claude":
        headers = {"x-api-key": api_key, "anthropic-version": "2023-06-01"}
        body = {
            "model": model,
            "max_tokens": MAX_TOKENS,
            "temperature": TEMPERATURE,
            "system": REWRITE_SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": f"Rewrite this rejected prompt:\n\n{prompt}"}],
        }
        return cfg["endpoint"], headers, body

    headers = {"Authorization": f"Bearer {api_key}"}
    body = {
        "model": model,
        "messages": [
            {"role": "system", "content": REWRITE_SYSTEM_PROMPT},
            {"role": "user", "content": f"Rewrite this rejected prompt:\n\n{prompt}"},
        ],
        "temperature": TEMPERATURE,
        "max_tokens": MAX_TOKENS,
    }
    return cfg["endpoint"], headers, body


def _extract_content(provider: str, data: dict) -> Optional[str]:
    try:
        if provider == "gemini":
            return data["candidates"][0]["content"]["parts"][0]["text"].strip()
        if provider == "claude":
            for block in data.get("content", []):
                if block.get("type") == "text":
                    return block["text"].strip()
            return None
        return data["choices"][0]["message"]["content"].strip()
    except (KeyError, IndexError, TypeError, AttributeError):
        return None


def _clean_prompt(text: str) -> str:
    """Strip markdown code fences and wrapping quotes."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:\w+)?\n?", "", cleaned)
        cleaned = re.sub(r"\n?```$", "", cleaned)
    cleaned = re.sub(r"^[\"']|[\"']$", "", cleaned.strip())
    return cleaned.strip()


class PromptRewriter:
    def __init__(
        self,
        provider: str = "deepseek",
        api_key: str = "",
        model: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.provider = provider
        self.api_key = api_key
        self.model = model or PROVIDERS.get(provider, {}).get("model", "")
        self._client = client or httpx.AsyncClient(timeout=60)

    @classmethod
    def from_config(cls, config: RuntimeConfig) -> "PromptRewriter":
        return cls(
            provider=config.rewrite_provider,
            api_key=config.rewrite_api_key,
            model=config.rewrite_model,
        )

    async def rewrite(self, prompt: str) -> RewriteResult:
        cfg = PROVIDERS.get(self.provider)
        if cfg is None:
            return RewriteResult(False, error=f"Unknown AI provider: {self.provider}")
        if not self.api_key:
            return RewriteResult(False, error=f"No API key configured for {cfg['name']}")

        logger.info(f"Rewriting prompt via {cfg['name']}...")
        url, headers, body = _build_request(self.provider, self.api_key, self.model, prompt)

        try:
            response = await self._client.post(url, headers=headers, json=body)
            if response.status_code >= 400:
                raise RuntimeError(f"{cfg['name']} API error {response.status_code}: {response.text[:200]}")
            content = _extract_content(self.provider, response.json())
            if not content:
                raise RuntimeError(f"Empty response from {cfg['name']}")
        except (httpx.HTTPError, RuntimeError, ValueError) as e:
            logger.error(f"Prompt rewrite failed: {e}")
            return RewriteResult(False, provider=cfg["name"], error=str(e))

        cleaned = _clean_prompt(content)
        logger.info(f"Prompt rewritten via {cfg['name']} ({len(cleaned)} chars)")
        return RewriteResult(True, new_prompt=cleaned, provider=cfg["name"])

    async def aclose(self) -> None:
        await self._client.aclose()
