from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from io import BytesIO
from typing import Dict, Iterable, Optional

import httpx
from PIL import Image, ImageDraw

from photoforge.core.errors import UpstreamCategory, UpstreamError, ValidationError
from photoforge.core.settings import Settings
from photoforge.schemas.contracts import GeneratedImage, GenerationResult, SourceImage

logger = logging.getLogger(__name__)

SAFETY_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "IMAGE_SAFETY", "BLOCKLIST", "SPII"}


class ModelAdapter(ABC):
    name: str = "base"

    @abstractmethod
    def generate(self, prompt: str, image: Optional[SourceImage] = None) -> GenerationResult:
        raise NotImplementedError


class MockAdapter(ModelAdapter):
    name = "mock"

    def __init__(self, width: int = 512, height: int = 512):
        self.width = width
        self.height = height

    def generate(self, prompt: str, image: Optional[SourceImage] = None) -> GenerationResult:
        img = Image.new("RGB", (self.width, self.height), "white")
        if image is not None:
            try:
                with Image.open(BytesIO(image.data)) as source:
                    img = source.convert("RGB").resize((self.width, self.height))
            except Exception:
                logger.warning("Mock adapter could not decode the source image, using a blank canvas")
        draw = ImageDraw.Draw(img)
        draw.text((20, 20), f"Mock image\n{prompt[:120]}", fill="black")
        buf = BytesIO()
        img.save(buf, format="PNG")
        return GenerationResult(
            text="Mock generation",
            images=[GeneratedImage(mime_type="image/png", data=buf.getvalue())],
            model=self.name,
        )


class HttpImageAdapter(ModelAdapter):
    """Generic JSON endpoint that answers with raw image bytes."""

    name = "http"

    def __init__(self, endpoint_url: str, timeout_s: float = 60, proxy: str = "", transport: httpx.BaseTransport | None = None):
        self.endpoint_url = endpoint_url
        self.timeout_s = timeout_s
        self.proxy = proxy or None
        self.transport = transport

    def generate(self, prompt: str, image: Optional[SourceImage] = None) -> GenerationResult:
        if not self.endpoint_url:
            raise UpstreamError(UpstreamCategory.NETWORK, "http_endpoint_url is not configured")
        payload = {"prompt": prompt}
        if image is not None:
            payload["image"] = base64.b64encode(image.data).decode("ascii")
            payload["mime_type"] = image.mime_type
        try:
            with httpx.Client(timeout=self.timeout_s, proxy=self.proxy, transport=self.transport) as client:
                resp = client.post(self.endpoint_url, json=payload)
        except httpx.HTTPError as exc:
            raise UpstreamError(UpstreamCategory.NETWORK, str(exc)) from exc
        if resp.status_code >= 400:
            raise UpstreamError(_category_for_status(resp.status_code, resp.text), f"HTTP {resp.status_code}")
        mime_type = resp.headers.get("content-type", "image/png").split(";")[0]
        if not mime_type.startswith("image/"):
            raise UpstreamError(UpstreamCategory.MALFORMED, f"unexpected content type {mime_type}")
        return GenerationResult(images=[GeneratedImage(mime_type=mime_type, data=resp.content)], model=self.name)


class GeminiAdapter(ModelAdapter):
    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash-image-preview",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout_s: float = 60,
        proxy: str = "",
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.proxy = proxy or None
        self.transport = transport

    def generate(self, prompt: str, image: Optional[SourceImage] = None) -> GenerationResult:
        if not self.api_key:
            raise UpstreamError(UpstreamCategory.AUTH, "gemini_api_key is not configured")

        parts: list[dict] = [{"text": prompt}]
        if image is not None:
            parts.append(
                {"inline_data": {"mime_type": image.mime_type, "data": base64.b64encode(image.data).decode("ascii")}}
            )
        body = {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": 0.7,
                "topK": 40,
                "topP": 0.95,
                "maxOutputTokens": 8192,
                "responseModalities": ["TEXT", "IMAGE"],
            },
        }
        logger.info(f"Calling Gemini model={self.model} prompt_len={len(prompt)} has_image={image is not None}")
        try:
            with httpx.Client(timeout=self.timeout_s, proxy=self.proxy, transport=self.transport) as client:
                resp = client.post(
                    f"{self.base_url}/models/{self.model}:generateContent",
                    json=body,
                    headers={"x-goog-api-key": self.api_key},
                )
        except httpx.TimeoutException as exc:
            raise UpstreamError(UpstreamCategory.NETWORK, f"request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(UpstreamCategory.NETWORK, str(exc)) from exc

        try:
            data = resp.json()
        except ValueError as exc:
            if resp.status_code >= 400:
                raise UpstreamError(_category_for_status(resp.status_code, resp.text), f"HTTP {resp.status_code}") from exc
            raise UpstreamError(UpstreamCategory.MALFORMED, "response body is not JSON") from exc

        if resp.status_code >= 400:
            error = data.get("error", {}) if isinstance(data, dict) else {}
            detail = error.get("message") or f"HTTP {resp.status_code}"
            raise UpstreamError(_category_for_status(resp.status_code, f"{error.get('status', '')} {detail}"), detail)
        return self.parse_response(data)

    def parse_response(self, data: dict) -> GenerationResult:
        if not isinstance(data, dict):
            raise UpstreamError(UpstreamCategory.MALFORMED, "response is not an object")
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise UpstreamError(UpstreamCategory.POLICY, f"prompt blocked ({block_reason})")
        candidates = data.get("candidates")
        if not candidates:
            raise UpstreamError(UpstreamCategory.MALFORMED, "response has no candidates")

        candidate = candidates[0] if isinstance(candidates, list) else None
        if not isinstance(candidate, dict):
            raise UpstreamError(UpstreamCategory.MALFORMED, "candidate is not an object")
        content = candidate.get("content") or {}
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            parts = []
        finish_reason = candidate.get("finishReason", "")
        if not parts and finish_reason in SAFETY_FINISH_REASONS:
            raise UpstreamError(UpstreamCategory.POLICY, f"generation stopped ({finish_reason})")

        result = GenerationResult(model=self.model)
        for part in parts:
            if not isinstance(part, dict):
                raise UpstreamError(UpstreamCategory.MALFORMED, "response part is not an object")
            inline = part.get("inlineData") or part.get("inline_data")
            if part.get("text"):
                result.text += part["text"]
            elif isinstance(inline, dict):
                mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                try:
                    raw = base64.b64decode(inline.get("data") or "", validate=True)
                except ValueError as exc:
                    raise UpstreamError(UpstreamCategory.MALFORMED, "inline image is not valid base64") from exc
                if not raw:
                    logger.warning("Skipping inline image part with no data")
                    continue
                result.images.append(GeneratedImage(mime_type=mime_type, data=raw))
            else:
                logger.debug(f"Skipping unknown response part with keys {sorted(part)}")
        logger.info(f"Gemini returned text_len={len(result.text)} images={len(result.images)}")
        return result


def _category_for_status(status_code: int, text: str = "") -> UpstreamCategory:
    lowered = text.lower()
    if status_code in (401, 403) or "api key" in lowered or "unauthenticated" in lowered or "permission_denied" in lowered:
        return UpstreamCategory.AUTH
    if status_code == 429 or "quota" in lowered or "resource_exhausted" in lowered:
        return UpstreamCategory.QUOTA
    if "safety" in lowered or "blocked" in lowered:
        return UpstreamCategory.POLICY
    if status_code in (408, 504) or status_code >= 500:
        return UpstreamCategory.NETWORK
    return UpstreamCategory.MALFORMED


class ModelRegistry:
    def __init__(self, adapters: Iterable[ModelAdapter], default: str):
        self._adapters: Dict[str, ModelAdapter] = {adapter.name: adapter for adapter in adapters}
        if default not in self._adapters:
            raise ValueError(f"Default model {default!r} is not registered (known: {self.names()})")
        self.default = default

    def names(self) -> list[str]:
        return sorted(self._adapters)

    def get(self, hint: Optional[str] = None) -> ModelAdapter:
        name = hint or self.default
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ValidationError(f"Unsupported model {name!r}; available: {', '.join(self.names())}")
        return adapter


def build_registry(cfg: Settings) -> ModelRegistry:
    adapters = [
        GeminiAdapter(
            api_key=cfg.gemini_api_key,
            model=cfg.gemini_model,
            base_url=cfg.gemini_base_url,
            timeout_s=cfg.generation_timeout_s,
            proxy=cfg.http_proxy,
        ),
        HttpImageAdapter(cfg.http_endpoint_url, timeout_s=cfg.generation_timeout_s, proxy=cfg.http_proxy),
        MockAdapter(cfg.fallback_width, cfg.fallback_height),
    ]
    return ModelRegistry(adapters, default=cfg.default_model)
