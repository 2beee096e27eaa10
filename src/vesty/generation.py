"""
Two-stage outfit transfer on top of the Gemini ``generateContent`` REST API.

First a text model describes the garments in the outfit photo, then an image
model redraws the person photo wearing the described garments.
"""

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from typing_extensions import override

import requests

from .errors import (
    GenerationEmptyResultError,
    GenerationTimeoutError,
    UpstreamServiceError,
)
from .settings import get_settings

DESCRIBE_OUTFIT_PROMPT = """Analyze this outfit image and describe each visible clothing article in detail.
For every article give:
1. Type of clothing (shirt, pants, dress, jacket, shoes, accessories, etc.)
2. Color and pattern
3. Style and cut
4. Material or texture if visible

Finish with the overall style aesthetic. Be specific about colors, patterns, fits
and styling details that would help recreate this look."""

GENERATE_SWAP_PROMPT = """Transform this person to wear the following outfit: {description}

Instructions:
- Keep the person's exact pose, body position and facial features unchanged
- Apply only the described clothing items that would be visible in this pose
- Maintain photorealistic quality with natural lighting and shadows
- Make the clothing fit naturally on the person's body
- Preserve the original image's background and composition
- Do not alter the person's identity

Generate a high-quality image showing this outfit transformation."""

EXPLAIN_STYLE_PROMPT = """Look at this person and the outfit description: "{description}".

Describe how this person would look wearing these clothing items: how each piece
would fit, how the colors combine, and the overall appearance."""

# Length of upstream response bodies kept in error details
_EXCERPT_LENGTH = 500


@dataclass(frozen=True)
class GeneratedImage:
    data: str
    """Base64-encoded image bytes, without a data URL prefix."""
    mime_type: str


class OutfitGenerator(ABC):
    """Abstract interface for the generative model that performs the outfit swap."""

    @abstractmethod
    def describe_outfit(self, image: bytes, mime_type: str) -> str:
        """Return a natural-language inventory of the garments in the image."""
        ...

    @abstractmethod
    def generate_swap(
        self, person_image: bytes, mime_type: str, description: str
    ) -> GeneratedImage:
        """
        Redraw the person wearing the described outfit.

        Raises GenerationEmptyResultError when the model answers without an image.
        """
        ...

    @abstractmethod
    def explain_style(
        self, person_image: bytes, mime_type: str, description: str
    ) -> str | None:
        """Best-effort textual description of the intended result. Never raises."""
        ...

    def close(self) -> None:
        return None


def _parts(response: dict[str, Any]) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = []
    for candidate in response.get("candidates") or []:
        parts.extend((candidate.get("content") or {}).get("parts") or [])
    return parts


def extract_text(response: dict[str, Any]) -> str:
    """Concatenate all text parts of a generateContent response."""
    return "".join(part.get("text", "") for part in _parts(response)).strip()


def find_inline_image(response: dict[str, Any]) -> GeneratedImage | None:
    """Return the first inlined image of a generateContent response, if any."""
    for part in _parts(response):
        # The REST API answers in camelCase but accepts snake_case too
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            return GeneratedImage(data=inline["data"], mime_type=mime_type)
    return None


def _inline_part(data: bytes, mime_type: str) -> dict[str, Any]:
    return {
        "inline_data": {
            "mime_type": mime_type,
            "data": base64.b64encode(data).decode("ascii"),
        }
    }


class GeminiOutfitGenerator(OutfitGenerator):
    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        describe_model: str,
        image_model: str,
        timeout: float,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.describe_model = describe_model
        self.image_model = image_model
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update(
            {"x-goog-api-key": api_key, "Content-Type": "application/json"}
        )

    def _generate_content(self, model: str, parts: list[dict[str, Any]]) -> dict[str, Any]:
        url = f"{self.base_url}/models/{model}:generateContent"
        try:
            response = self._session.post(
                url, json={"contents": [{"parts": parts}]}, timeout=self.timeout
            )
        except requests.Timeout as e:
            logging.error(f"Gemini call to {model} timed out after {self.timeout}s")
            raise GenerationTimeoutError(
                "The AI service took too long to respond.", service="ai", details=str(e)
            )
        except requests.RequestException as e:
            logging.error(f"Gemini call to {model} failed: {e}")
            raise UpstreamServiceError(
                "The AI service is unavailable.", service="ai", details=str(e)
            )

        if not response.ok:
            excerpt = response.text[:_EXCERPT_LENGTH]
            logging.error(f"Gemini API error from {model}: {response.status_code} {excerpt}")
            raise UpstreamServiceError(
                "The AI service returned an error.",
                service="ai",
                details=f"HTTP {response.status_code}: {excerpt}",
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamServiceError(
                "The AI service returned an invalid response.", service="ai", details=str(e)
            )

    @override
    def describe_outfit(self, image: bytes, mime_type: str) -> str:
        logging.info(f"Describing outfit with {self.describe_model}")
        response = self._generate_content(
            self.describe_model,
            [_inline_part(image, mime_type), {"text": DESCRIBE_OUTFIT_PROMPT}],
        )
        description = extract_text(response)
        if not description:
            raise UpstreamServiceError(
                "The AI service could not describe the outfit.",
                service="ai",
                details=f"empty description: {str(response)[:_EXCERPT_LENGTH]}",
            )
        logging.debug(f"Outfit description: {description[:200]}")
        return description

    @override
    def generate_swap(
        self, person_image: bytes, mime_type: str, description: str
    ) -> GeneratedImage:
        logging.info(f"Generating outfit swap with {self.image_model}")
        response = self._generate_content(
            self.image_model,
            [
                {"text": GENERATE_SWAP_PROMPT.format(description=description)},
                _inline_part(person_image, mime_type),
            ],
        )
        image = find_inline_image(response)
        if image is None:
            logging.warning("Image model responded without image data")
            raise GenerationEmptyResultError(
                "The AI model did not return an image.",
                details=f"response: {str(response)[:_EXCERPT_LENGTH]}",
            )
        return image

    @override
    def explain_style(
        self, person_image: bytes, mime_type: str, description: str
    ) -> str | None:
        try:
            response = self._generate_content(
                self.describe_model,
                [
                    _inline_part(person_image, mime_type),
                    {"text": EXPLAIN_STYLE_PROMPT.format(description=description)},
                ],
            )
        except UpstreamServiceError as e:
            logging.warning(f"Style explanation failed: {e.details}")
            return None
        return extract_text(response) or None

    @override
    def close(self) -> None:
        self._session.close()


@lru_cache
def get_outfit_generator() -> OutfitGenerator:
    """Get the process-wide outfit generator. Use as a FastAPI dependency."""
    settings = get_settings()
    return GeminiOutfitGenerator(
        api_key=settings.GOOGLE_AI_API_KEY,
        base_url=settings.AI_API_BASE_URL,
        describe_model=settings.AI_DESCRIBE_MODEL,
        image_model=settings.AI_IMAGE_MODEL,
        timeout=settings.AI_TIMEOUT_SECONDS,
    )
