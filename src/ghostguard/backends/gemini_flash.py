"""
Primary route: Gemini Flash image model via the google-genai SDK.

The client is constructed by the caller (or ``from_env``) and injected; the
backend holds no module-level state. SDK and transport errors are mapped to
domain failures so the executor can decide on retry:

- 5xx / network / timeout        -> TransientBackendFailure (httpx transport errors included)
- 429 quota / rate limit         -> TransientBackendFailure
- other 4xx (bad request, auth)  -> PermanentBackendFailure
- safety block                   -> failed outcome, "policy violation: ..."
- response without an image      -> failed outcome, "quality failure: ..."

On the retry attempt the prompt is trimmed to ``max_prompt_chars``
(simplified generation).
"""

from __future__ import annotations

import os
import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import Any, List, Optional

import httpx
import requests
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ..config import BackendConfig
from ..errors import ConfigError, PermanentBackendFailure, TransientBackendFailure
from ..models import GenerationOutcome, GenerationRequest, Route
from .base import GenerationBackend

logger = logging.getLogger("ghostguard.backends.gemini")


class GeminiFlashBackend(GenerationBackend):
    name = "gemini-flash"

    def __init__(
        self,
        client: Any,
        model: str = "gemini-2.5-flash-image-preview",
        max_prompt_chars: int = 700,
        temperature: float = 0.2,
        http: Optional[requests.Session] = None,
    ):
        self.client = client
        self.model = model
        self.max_prompt_chars = max_prompt_chars
        self.temperature = temperature
        self.http = http or requests.Session()

    @classmethod
    def from_env(cls, config: Optional[BackendConfig] = None) -> "GeminiFlashBackend":
        config = config or BackendConfig()
        api_key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
        if not api_key:
            raise ConfigError("GEMINI_API_KEY or GOOGLE_API_KEY is required for the primary route")
        logger.info(f"Primary route using {config.gemini_model}")
        return cls(genai.Client(api_key=api_key), config.gemini_model, config.max_prompt_chars)

    async def generate(self, request: GenerationRequest) -> GenerationOutcome:
        prompt = request.prompt
        if request.options.get("retry"):
            prompt = prompt[: self.max_prompt_chars]
            logger.info(f"Retry with simplified prompt ({len(prompt)} chars)")

        parts = [await self._reference_part(ref) for ref in request.reference_images]
        parts.append(types.Part.from_text(text=prompt))
        contents = [types.Content(role="user", parts=parts)]
        config = types.GenerateContentConfig(
            response_modalities=["IMAGE", "TEXT"],
            temperature=self.temperature,
        )

        try:
            response = await self.client.aio.models.generate_content(
                model=self.model, contents=contents, config=config
            )
        except genai_errors.ServerError as e:
            raise TransientBackendFailure(f"api failure: server error {e.code}", Route.PRIMARY.value, e) from e
        except genai_errors.ClientError as e:
            if e.code == 429:
                raise TransientBackendFailure("api failure: quota exceeded", Route.PRIMARY.value, e) from e
            raise PermanentBackendFailure(f"request rejected ({e.code}): {e.message}", Route.PRIMARY.value, e) from e
        except (httpx.TransportError, requests.RequestException, OSError) as e:
            raise TransientBackendFailure(f"network transport error: {e}", Route.PRIMARY.value, e) from e

        return self._extract_image(response)

    def _extract_image(self, response: Any) -> GenerationOutcome:
        feedback = getattr(response, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", None):
            return GenerationOutcome.failed(f"policy violation: prompt blocked ({feedback.block_reason})")

        candidates = response.candidates or []
        if not candidates or candidates[0].content is None or not candidates[0].content.parts:
            finish = getattr(candidates[0], "finish_reason", None) if candidates else None
            if finish is not None and "SAFETY" in str(finish):
                return GenerationOutcome.failed("policy violation: output blocked by safety filter")
            return GenerationOutcome.failed("quality failure: empty response")

        texts: List[str] = []
        for part in candidates[0].content.parts:
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data and "image" in (inline.mime_type or "").lower():
                logger.info(f"✅ Gemini returned image ({len(inline.data)} bytes)")
                return GenerationOutcome.ok({
                    "image_bytes": inline.data,
                    "mime_type": inline.mime_type,
                    "model": self.model,
                })
            if getattr(part, "text", None):
                texts.append(part.text)

        if texts:
            logger.debug(f"Gemini text response: {texts[0][:100]}...")
        return GenerationOutcome.failed("quality failure: no image in response")

    async def _reference_part(self, ref: str) -> types.Part:
        mime = mimetypes.guess_type(ref)[0] or "image/jpeg"
        if ref.startswith(("http://", "https://")):
            data = await asyncio.to_thread(self._download, ref)
        else:
            path = Path(ref)
            if not path.exists():
                raise PermanentBackendFailure(f"reference image not found: {ref}", Route.PRIMARY.value)
            data = path.read_bytes()
        return types.Part.from_bytes(data=data, mime_type=mime)

    def _download(self, url: str) -> bytes:
        try:
            response = self.http.get(url, timeout=30)
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransientBackendFailure(f"network transport error fetching reference: {e}", Route.PRIMARY.value, e) from e
        return response.content

    async def aclose(self):
        self.http.close()
