# story_agent/imagery.py

"""Scene illustration through an image-capable chat model."""

import json
import logging
import re
from typing import Any, List, Optional

import openai
from openai import AsyncOpenAI

from config import get_config
from logic.chatgpt_integration import build_async_client, map_openai_error, retry_with_backoff
from logic.model_options import resolve_image_model_id
from utils.error_handling import UpstreamError, with_timeout

logger = logging.getLogger(__name__)

DATA_URL_RE = re.compile(r"data:image/[^;]+;base64,[A-Za-z0-9+/=]+")
HTTP_URL_RE = re.compile(r"https?://[^\s\"')]+")


def _get(obj: Any, key: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(key)
    value = getattr(obj, key, None)
    if value is None:
        extra = getattr(obj, "model_extra", None) or {}
        value = extra.get(key)
    return value


def _image_part_url(part: Any) -> Optional[str]:
    if _get(part, "type") != "image_url":
        return None
    image_url = _get(part, "image_url")
    url = _get(image_url, "url") if image_url is not None else None
    return url if isinstance(url, str) and url else None


def extract_image_url(message: Any) -> Optional[str]:
    """
    Find the generated image in an assistant message.

    Checked in order: ``message.images[*].image_url.url``, a data URL in the
    text, an http(s) URL in the text, a JSON body with ``url``/``image_url``,
    and ``image_url`` parts of list content.
    """
    for part in _get(message, "images") or []:
        url = _image_part_url(part)
        if url:
            return url

    content = _get(message, "content")
    if isinstance(content, str) and content.strip():
        match = DATA_URL_RE.search(content)
        if match:
            return match.group(0)
        match = HTTP_URL_RE.search(content)
        if match:
            return match.group(0)
        try:
            parsed = json.loads(content)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            url = parsed.get("url") or parsed.get("image_url")
            if isinstance(url, str) and url:
                return url
    elif isinstance(content, list):
        for part in content:
            url = _image_part_url(part)
            if url:
                return url
    return None


class ImageGenerator:
    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        reference_image_urls: Optional[List[str]] = None,
    ) -> str:
        """Return an http(s) URL or a data URL for the generated image."""
        raise NotImplementedError


class OpenRouterImageGenerator(ImageGenerator):
    def __init__(self, client: Optional[AsyncOpenAI] = None, *, timeout: Optional[float] = None, config=None):
        self.config = config or get_config()
        self._client = client
        self.timeout = timeout if timeout is not None else self.config.LLM_TIMEOUT

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = build_async_client(self.config)
        return self._client

    @retry_with_backoff(provider="image")
    async def generate(self, prompt, model=None, reference_image_urls=None) -> str:
        if not (prompt or "").strip():
            raise UpstreamError("Image prompt is empty", provider="image")
        model_id = resolve_image_model_id(model)
        content: List[dict] = [{"type": "text", "text": prompt}]
        for url in reference_image_urls or []:
            content.append({"type": "image_url", "image_url": {"url": url}})

        logger.info("Generating image with %s (%d chars, %d references)",
                    model_id, len(prompt), len(reference_image_urls or []))
        try:
            completion = await with_timeout(
                self.client.chat.completions.create(
                    model=model_id,
                    messages=[{"role": "user", "content": content}],
                ),
                self.timeout,
                "image",
            )
        except openai.OpenAIError as exc:
            raise map_openai_error(exc, provider="image") from exc

        choices = getattr(completion, "choices", None) or []
        if not choices:
            raise UpstreamError("No response from image generation API", provider="image")
        url = extract_image_url(choices[0].message)
        if not url:
            raise UpstreamError("Could not extract image data from response", provider="image")
        return url
