"""LLM router: dispatches calls to the configured provider by role.

Roles:
- planner: classifies turns and builds query plans (JSON output)
- generator: writes or edits SQL

Supported providers:
- ollama: local models via Ollama (default)
- anthropic: Claude models via the Anthropic API
- openai: GPT models via the OpenAI API
- none: no model; callers fall back to deterministic paths

Environment variables:
- DA_LLM_PROVIDER: ollama | anthropic | openai | none
- DA_ANTHROPIC_API_KEY / DA_OPENAI_API_KEY
- DA_PLANNER_MODEL, DA_GENERATOR_MODEL
- DA_PLANNER_TEMPERATURE, DA_GENERATOR_TEMPERATURE
"""

import importlib.util
import logging
import os
from typing import Any

from dataagent.errors import LLMUnavailable
from dataagent.llm.ollama_client import ollama_chat

logger = logging.getLogger(__name__)

ROLES = ("planner", "generator")

DEFAULT_MODELS = {
    "ollama": {
        "planner": "qwen2.5:14b-instruct",
        "generator": "qwen2.5-coder:14b",
    },
    "anthropic": {
        "planner": "claude-3-5-haiku-20241022",
        "generator": "claude-3-5-sonnet-20241022",
    },
    "openai": {
        "planner": "gpt-4o-mini",
        "generator": "gpt-4o",
    },
}


def get_provider() -> str:
    return os.environ.get("DA_LLM_PROVIDER", "ollama").lower()


def llm_enabled(provider: str | None = None) -> bool:
    return (provider or get_provider()) != "none"


def resolve_model(role: str, provider: str | None = None) -> str:
    resolved_provider = provider or get_provider()
    default_model = DEFAULT_MODELS.get(resolved_provider, {}).get(role, "")
    return os.environ.get(f"DA_{role.upper()}_MODEL", default_model)


def _call_anthropic(
    messages: list[dict[str, str]],
    model: str,
    temperature: float,
    max_tokens: int | None,
    timeout: int,
) -> str:
    """Call the Anthropic Messages API."""
    import anthropic

    api_key = os.environ.get("DA_ANTHROPIC_API_KEY") or os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        raise ValueError(
            "Anthropic API key not found. "
            "Set DA_ANTHROPIC_API_KEY or ANTHROPIC_API_KEY environment variable."
        )

    client = anthropic.Anthropic(api_key=api_key, timeout=timeout)

    # System prompt travels separately
    system_content = None
    api_messages = []
    for msg in messages:
        if msg["role"] == "system":
            system_content = msg["content"]
        else:
            api_messages.append(msg)

    response = client.messages.create(
        model=model,
        max_tokens=max_tokens or 2048,
        temperature=temperature,
        system=system_content or "You are a careful analytics assistant.",
        messages=api_messages,
    )
    return "".join(block.text for block in response.content if block.type == "text")


def _call_openai(
    messages: list[dict[str, str]],
    model: str,
    temperature: float,
    max_tokens: int | None,
    timeout: int,
) -> str:
    """Call the OpenAI Chat Completions API."""
    import openai

    api_key = os.environ.get("DA_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
    if not api_key:
        raise ValueError(
            "OpenAI API key not found. "
            "Set DA_OPENAI_API_KEY or OPENAI_API_KEY environment variable."
        )

    client = openai.OpenAI(api_key=api_key, timeout=timeout)
    response = client.chat.completions.create(
        model=model,
        messages=messages,
        temperature=temperature,
        max_tokens=max_tokens or 2048,
    )
    return response.choices[0].message.content or ""


def call_llm(
    messages: list[dict[str, str]],
    *,
    role: str = "planner",
    max_tokens: int | None = None,
    timeout: int = 60,
    provider: str | None = None,
    model: str | None = None,
    temperature_override: float | None = None,
) -> str:
    """Route an LLM call to the model configured for ``role``.

    Args:
        messages: List of message dicts with 'role' and 'content'
        role: 'planner' or 'generator'
        max_tokens: Maximum tokens in response (optional)
        timeout: Request timeout in seconds

    Returns:
        Response text content

    Raises:
        LLMUnavailable: If the provider is 'none'
        ValueError: If the role or provider is invalid, or the call fails
    """
    if role not in ROLES:
        raise ValueError(f"Invalid role: {role}. Must be one of {', '.join(ROLES)}")

    resolved_provider = (provider or get_provider()).lower()
    if not llm_enabled(resolved_provider):
        raise LLMUnavailable("No LLM provider configured", stage=role)

    role_model = model or resolve_model(role, resolved_provider)
    temperature = float(os.environ.get(f"DA_{role.upper()}_TEMPERATURE", "0"))
    if temperature_override is not None:
        temperature = temperature_override

    logger.debug("LLM call role=%s provider=%s model=%s", role, resolved_provider, role_model)

    if resolved_provider == "anthropic":
        return _call_anthropic(messages, role_model, temperature, max_tokens, timeout)
    if resolved_provider == "openai":
        return _call_openai(messages, role_model, temperature, max_tokens, timeout)
    if resolved_provider == "ollama":
        return ollama_chat(
            messages,
            model=role_model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    raise ValueError(
        f"Unsupported LLM provider: {resolved_provider}. Supported: ollama, anthropic, openai, none"
    )


def _has_module(module_name: str) -> bool:
    return importlib.util.find_spec(module_name) is not None


def get_available_providers() -> list[str]:
    """Providers usable right now (installed package plus API key)."""
    available = ["ollama"]
    if _has_module("anthropic") and (
        os.environ.get("DA_ANTHROPIC_API_KEY") or os.environ.get("ANTHROPIC_API_KEY")
    ):
        available.append("anthropic")
    if _has_module("openai") and (
        os.environ.get("DA_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
    ):
        available.append("openai")
    return available


def get_current_config() -> dict[str, Any]:
    provider = get_provider()
    return {
        "provider": provider,
        "planner_model": resolve_model("planner", provider),
        "generator_model": resolve_model("generator", provider),
        "available_providers": get_available_providers(),
    }
