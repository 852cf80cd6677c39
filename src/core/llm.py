"""
Manvi Assistant — LLM Provider Abstraction.

Two public calls:
- `complete()` routes to the configured primary provider and returns free text.
  Supports: gemini (default), anthropic, openai, cohere.
- `complete_json()` routes to the configured fallback provider in strict
  JSON mode and returns a parsed object. Supports: openai (default), gemini.

Every call is bounded by LLM_TIMEOUT_SECONDS. All provider failures surface
as ProviderUnavailable so callers handle a single exception family.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

# Type alias for provider implementations
_ProviderFn = Callable[[str, str, str, str, int], Awaitable[str]]


class ProviderUnavailable(Exception):
    """Raised when a classification provider cannot produce an answer."""


class MalformedResponse(ProviderUnavailable):
    """The provider answered, but not with a usable JSON object."""


class QuotaExhausted(ProviderUnavailable):
    """The daily ceiling for the primary provider has been reached."""


# ---------------------------------------------------------------------------
# Free-text provider implementations (primary)
# ---------------------------------------------------------------------------


async def _complete_gemini(api_key: str, model: str, system: str, user_message: str, max_tokens: int) -> str:
    import google.generativeai as genai

    genai.configure(api_key=api_key)
    gm = genai.GenerativeModel(
        model_name=model,
        system_instruction=system,
    )
    response = await gm.generate_content_async(
        user_message,
        generation_config=genai.types.GenerationConfig(max_output_tokens=max_tokens),
    )
    return response.text


async def _complete_anthropic(api_key: str, model: str, system: str, user_message: str, max_tokens: int) -> str:
    import anthropic

    client = anthropic.AsyncAnthropic(api_key=api_key)
    response = await client.messages.create(
        model=model,
        max_tokens=max_tokens,
        system=system,
        messages=[{"role": "user", "content": user_message}],
    )
    return response.content[0].text


async def _complete_openai(api_key: str, model: str, system: str, user_message: str, max_tokens: int) -> str:
    from openai import AsyncOpenAI

    client = AsyncOpenAI(api_key=api_key)
    response = await client.chat.completions.create(
        model=model,
        max_tokens=max_tokens,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user_message},
        ],
    )
    return response.choices[0].message.content


async def _complete_cohere(api_key: str, model: str, system: str, user_message: str, max_tokens: int) -> str:
    import cohere

    client = cohere.AsyncClientV2(api_key=api_key)
    response = await client.chat(
        model=model,
        max_tokens=max_tokens,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user_message},
        ],
    )
    return response.message.content[0].text


# ---------------------------------------------------------------------------
# Strict-JSON provider implementations (fallback)
# ---------------------------------------------------------------------------


async def _complete_openai_json(api_key: str, model: str, system: str, user_message: str, max_tokens: int) -> str:
    from openai import AsyncOpenAI

    client = AsyncOpenAI(api_key=api_key)
    response = await client.chat.completions.create(
        model=model,
        max_tokens=max_tokens,
        response_format={"type": "json_object"},
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user_message},
        ],
    )
    return response.choices[0].message.content


async def _complete_gemini_json(api_key: str, model: str, system: str, user_message: str, max_tokens: int) -> str:
    import google.generativeai as genai

    genai.configure(api_key=api_key)
    gm = genai.GenerativeModel(
        model_name=model,
        system_instruction=system,
    )
    response = await gm.generate_content_async(
        user_message,
        generation_config=genai.types.GenerationConfig(
            max_output_tokens=max_tokens,
            response_mime_type="application/json",
        ),
    )
    return response.text


# ---------------------------------------------------------------------------
# Provider selection (runs once at first call)
# ---------------------------------------------------------------------------

_PROVIDERS: dict[str, tuple[_ProviderFn, str]] = {
    "gemini":    (_complete_gemini,    "gemini-2.5-flash"),
    "anthropic": (_complete_anthropic, "claude-haiku-4-5-20251001"),
    "openai":    (_complete_openai,    "gpt-4o-mini"),
    "cohere":    (_complete_cohere,    "command-a-03-2025"),
}

_JSON_PROVIDERS: dict[str, tuple[_ProviderFn, str]] = {
    "openai": (_complete_openai_json, "gpt-4o-mini"),
    "gemini": (_complete_gemini_json, "gemini-2.5-flash"),
}


def _select(
    table: dict[str, tuple[_ProviderFn, str]], name: str, model: str, api_key: str, role: str,
) -> tuple[_ProviderFn, str, str]:
    provider_name = name.lower()
    if provider_name not in table:
        raise ValueError(
            f"Unknown {role} provider {provider_name!r}. "
            f"Supported: {', '.join(table)}"
        )

    fn, default_model = table[provider_name]
    model = model or default_model
    logger.info("%s LLM provider: %s, model: %s", role.capitalize(), provider_name, model)
    return fn, model, api_key


def _select_primary() -> tuple[_ProviderFn, str, str]:
    """Read settings and return (provider_fn, model, api_key) for the primary."""
    from src.config import settings

    return _select(
        _PROVIDERS, settings.LLM_PROVIDER, settings.LLM_MODEL, settings.LLM_API_KEY, "primary",
    )


def _select_fallback() -> tuple[_ProviderFn, str, str]:
    """Read settings and return (provider_fn, model, api_key) for the fallback."""
    from src.config import settings

    return _select(
        _JSON_PROVIDERS,
        settings.FALLBACK_LLM_PROVIDER,
        settings.FALLBACK_LLM_MODEL,
        settings.FALLBACK_LLM_API_KEY,
        "fallback",
    )


# Lazy singletons — populated on first call
_primary: tuple[_ProviderFn, str, str] | None = None
_fallback: tuple[_ProviderFn, str, str] | None = None


async def _call_bounded(
    provider: tuple[_ProviderFn, str, str], system: str, user_message: str, max_tokens: int,
) -> str:
    from src.config import settings

    fn, model, api_key = provider
    if not api_key:
        raise ProviderUnavailable(f"No API key configured for model {model}")
    try:
        return await asyncio.wait_for(
            fn(api_key, model, system, user_message, max_tokens),
            timeout=settings.LLM_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError as exc:
        raise ProviderUnavailable(
            f"{model} timed out after {settings.LLM_TIMEOUT_SECONDS}s"
        ) from exc
    except Exception as exc:
        # SDK errors (rate limits, auth, network) all mean "no answer"
        raise ProviderUnavailable(f"{model} failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def complete(system: str, user_message: str, max_tokens: int = 512) -> str:
    """Send a prompt to the primary provider and return the response text.

    Raises ProviderUnavailable on API errors and timeouts.
    """
    global _primary

    if _primary is None:
        _primary = _select_primary()

    return await _call_bounded(_primary, system, user_message, max_tokens)


async def complete_json(system: str, user_message: str, max_tokens: int = 512) -> dict:
    """Send a prompt to the fallback provider in strict JSON mode.

    Returns the decoded JSON object. Raises ProviderUnavailable on API errors
    and timeouts, MalformedResponse if the output is not a JSON object.
    """
    global _fallback

    if _fallback is None:
        _fallback = _select_fallback()

    raw_text = await _call_bounded(_fallback, system, user_message, max_tokens)
    try:
        data = json.loads(raw_text)
    except (TypeError, json.JSONDecodeError) as exc:
        raise MalformedResponse(f"Fallback returned non-JSON output: {raw_text!r}") from exc
    if not isinstance(data, dict):
        raise MalformedResponse(f"Fallback returned {type(data).__name__}, expected object")
    return data
