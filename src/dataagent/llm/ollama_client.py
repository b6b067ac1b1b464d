"""Ollama client wrapper for local LLM inference.

Thin wrapper around the Ollama chat API with retry and backoff, plus the
JSON-response parsing shared by every provider.
"""

import json
import logging
import os
import re
import time
from typing import Any

import requests

logger = logging.getLogger(__name__)


def ollama_chat(
    messages: list[dict[str, str]],
    *,
    model: str,
    temperature: float = 0.0,
    max_tokens: int | None = None,
    timeout: int = 30,
) -> str:
    """Call the Ollama chat endpoint.

    Args:
        messages: List of message dicts with 'role' and 'content'
        model: Ollama model name (e.g. qwen2.5:14b-instruct)
        temperature: Sampling temperature
        max_tokens: Maximum tokens in response (Ollama's num_predict)
        timeout: Request timeout in seconds

    Returns:
        Response text content

    Raises:
        ConnectionError: If Ollama cannot be reached after retries
        ValueError: If the call fails for any other reason
    """
    base_url = os.environ.get("DA_OLLAMA_BASE_URL", "http://localhost:11434")
    max_retries = int(os.environ.get("DA_MAX_RETRIES", "2"))
    endpoint = f"{base_url}/api/chat"

    # Schema context makes prompts long; Ollama's default 2048 context truncates silently
    num_ctx = int(os.environ.get("DA_OLLAMA_NUM_CTX", "8192"))

    payload: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "stream": False,
        "options": {"temperature": temperature, "num_ctx": num_ctx},
    }
    if max_tokens is not None:
        payload["options"]["num_predict"] = max_tokens

    for attempt in range(max_retries + 1):
        wait_time = 0.5 * (2 ** attempt)
        try:
            response = requests.post(endpoint, json=payload, timeout=timeout)
            response.raise_for_status()
            result = response.json()
            if "message" not in result or "content" not in result["message"]:
                raise ValueError(f"Unexpected Ollama response format: {result}")
            return result["message"]["content"]

        except requests.exceptions.ConnectionError as e:
            if attempt < max_retries:
                logger.debug("Ollama connection failed (attempt %d), retrying", attempt + 1)
                time.sleep(wait_time)
                continue
            raise ConnectionError(
                f"Cannot connect to Ollama at {base_url}. Ensure Ollama is running."
            ) from e

        except requests.exceptions.Timeout as e:
            if attempt < max_retries:
                time.sleep(wait_time)
                continue
            raise ValueError(f"Ollama request timed out after {timeout}s (model: {model})") from e

        except requests.exceptions.HTTPError as e:
            # 5xx is transient
            status = e.response.status_code if e.response is not None else 0
            if 500 <= status < 600 and attempt < max_retries:
                time.sleep(wait_time)
                continue
            raise ValueError(f"Ollama API error ({status})") from e

    raise ValueError(f"Ollama call failed after {max_retries} retries")


_FENCE_PATTERN = re.compile(r"```(?:json|sql)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or the trimmed text."""
    match = _FENCE_PATTERN.search(text)
    return match.group(1).strip() if match else text.strip()


def parse_json_response(response: str) -> dict[str, Any]:
    """Parse a JSON object from an LLM response.

    Tolerates markdown fences and prose around the object.

    Raises:
        json.JSONDecodeError: If no JSON object can be decoded
    """
    text = strip_code_fences(response)
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise
        parsed = json.loads(text[start : end + 1])

    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("Expected a JSON object", text, 0)
    return parsed
