"""Ollama text-generation adapter.

Wraps ``/api/generate`` in the ``generate(system_prompt, user_prompt)``
shape the orchestrator expects.  Responses are free text (no JSON format
constraint): the section extractor does the parsing.

``ollama_vision_describer`` binds a multimodal model into
``describe(image_url) -> str``: the image is downloaded and sent base64
encoded in the request's ``images`` list.
"""

from __future__ import annotations

import base64
import logging
from typing import Awaitable, Callable, Optional

import httpx

log = logging.getLogger(__name__)

TextGenerator = Callable[[str, str], Awaitable[str]]
ImageDescriber = Callable[[str], Awaitable[str]]

DEFAULT_VISION_PROMPT = "Compose a Shakespearean Sonnet for this image."


async def call_ollama(
    client: httpx.AsyncClient,
    ollama_url: str,
    model_name: str,
    system_prompt: str,
    user_prompt: str,
    temperature: Optional[float] = 1.0,
    images: Optional[list[str]] = None,
) -> str:
    """Send a prompt to Ollama and return the raw response text.

    Raises ``httpx.HTTPError`` on transport or status errors so the
    orchestrator can record the chunk as failed.
    """
    options: dict = {"num_predict": -1}
    if temperature is not None:
        options["temperature"] = temperature

    payload = {
        "model": model_name,
        "prompt": user_prompt,
        "system": system_prompt,
        "stream": False,
        "options": options,
    }
    if images:
        payload["images"] = images

    resp = await client.post(f"{ollama_url}/api/generate", json=payload)
    resp.raise_for_status()

    text = resp.json().get("response", "")
    log.debug("Ollama %s returned %d chars", model_name, len(text))
    return text


def ollama_generator(
    client: httpx.AsyncClient,
    ollama_url: str,
    model_name: str,
    temperature: Optional[float] = 1.0,
) -> TextGenerator:
    """Bind connection details into a ``generate(system, user)`` callable."""

    async def generate(system_prompt: str, user_prompt: str) -> str:
        return await call_ollama(
            client, ollama_url, model_name, system_prompt, user_prompt, temperature
        )

    generate.model_name = model_name  # type: ignore[attr-defined]
    return generate


def ollama_vision_describer(
    client: httpx.AsyncClient,
    ollama_url: str,
    model_name: str,
    prompt: str = DEFAULT_VISION_PROMPT,
) -> ImageDescriber:
    """Bind a vision model into a ``describe(image_url)`` callable."""

    async def describe(image_url: str) -> str:
        resp = await client.get(image_url, follow_redirects=True)
        resp.raise_for_status()
        log.info("Vision %s: %s (%d bytes)", model_name, image_url, len(resp.content))
        encoded = base64.b64encode(resp.content).decode("ascii")
        return await call_ollama(
            client, ollama_url, model_name, "", prompt, temperature=None, images=[encoded]
        )

    describe.model_name = model_name  # type: ignore[attr-defined]
    return describe
