"""
LLM provider utilities for Facility Monitor.

This module handles interactions with different LLM providers. OpenAI is
tried first; Anthropic is used when OpenAI is not configured or fails.
"""
import os
import json
import logging
from typing import Any, Dict, List

import anthropic
import httpx
import openai
from openai import AsyncOpenAI

from facility_monitor.config import ANTHROPIC_MODEL, OPENAI_MODEL
from facility_monitor.services.error_handler import ExecutionError, error_handler

logger = logging.getLogger(__name__)

JSON_INSTRUCTION = "Respond with a single JSON object and nothing else."


def get_available_llm_providers() -> List[str]:
    providers = []
    if os.getenv("OPENAI_API_KEY", "").strip():
        providers.append("openai")
    if os.getenv("ANTHROPIC_API_KEY", "").strip():
        providers.append("anthropic")
    return providers


def parse_json_response(text: str) -> Dict[str, Any]:
    """
    Parse a model reply into a dict.

    Args:
        text: Raw model output, possibly wrapped in a markdown fence

    Returns:
        The decoded JSON object

    Raises:
        ValueError: If the reply is not a JSON object
    """
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
        cleaned = cleaned.rsplit("```", 1)[0]
    data = json.loads(cleaned)
    if not isinstance(data, dict):
        raise ValueError("LLM response is not a JSON object")
    return data


async def _openai_json(system_prompt: str, user_prompt: str, temperature: float) -> Dict[str, Any]:
    async with httpx.AsyncClient(timeout=60.0) as http_client:
        client = AsyncOpenAI(api_key=os.getenv("OPENAI_API_KEY"), http_client=http_client)
        response = await client.chat.completions.create(
            model=OPENAI_MODEL,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt}
            ],
            response_format={"type": "json_object"},
            temperature=temperature
        )
    return parse_json_response(response.choices[0].message.content or "")


async def _anthropic_json(system_prompt: str, user_prompt: str, temperature: float) -> Dict[str, Any]:
    async with httpx.AsyncClient(timeout=60.0) as http_client:
        anthropic_client = anthropic.AsyncAnthropic(api_key=os.getenv("ANTHROPIC_API_KEY"), http_client=http_client)
        response = await anthropic_client.messages.create(
            model=ANTHROPIC_MODEL,
            max_tokens=2000,
            system=f"{system_prompt}\n{JSON_INSTRUCTION}",
            messages=[{"role": "user", "content": user_prompt}],
            temperature=temperature
        )
    return parse_json_response(response.content[0].text)


PROVIDERS = {
    "openai": _openai_json,
    "anthropic": _anthropic_json,
}


async def complete_json(system_prompt: str, user_prompt: str, temperature: float = 0.3) -> Dict[str, Any]:
    """
    Ask the configured providers, in order, for a JSON answer.

    Args:
        system_prompt: Instructions for the model
        user_prompt: Data and question
        temperature: Sampling temperature

    Returns:
        Decoded JSON object from the first provider that succeeds

    Raises:
        ExecutionError: If no provider is configured or all of them fail
    """
    providers = get_available_llm_providers()
    if not providers:
        raise ExecutionError("No LLM API key configured")

    errors = []
    for provider in providers:
        try:
            logger.info("Requesting completion from %s", provider)
            return await PROVIDERS[provider](system_prompt, user_prompt, temperature)
        except (openai.OpenAIError, anthropic.AnthropicError, httpx.HTTPError, ValueError) as e:
            error_handler.track(e, {"provider": provider})
            logger.warning("%s completion failed: %s", provider, e)
            errors.append(f"{provider} error: {str(e)}")

    raise ExecutionError("All LLM providers failed. Errors: {}".format('; '.join(errors)))
