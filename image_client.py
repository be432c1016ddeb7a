"""Image generation clients and the conditioning-image protocol.

Two backends share one request protocol:

  GeminiImageClient     — Gemini image models called directly (google-genai)
  ReplicateImageClient  — Gemini image models hosted on Replicate

Conditioning images are normalised to raw bytes before every call and sent
in a fixed order: subject reference first, previous/background image
second, text prompt last.  Nothing in here retries; retry is a user
decision.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import replicate
import requests
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from google.genai.types import Modality

from session import CredentialError, GenerationError, SessionContext
from steps import AspectRatio, ImageRef, ImageSize, InlineImage, RemoteImage

log = logging.getLogger(__name__)

__all__ = [
    "GenerationError",
    "CredentialError",
    "PermissionDeniedError",
    "ConditioningFetchError",
    "ImageClient",
    "GeminiImageClient",
    "ReplicateImageClient",
    "create_client",
]

# ---------------------------------------------------------------------------
# Model catalogue
# ---------------------------------------------------------------------------

IMAGE_MODELS: List[Dict] = [
    {
        "id": "gemini-3.1-flash-image-preview",
        "name": "Gemini 3.1 Flash Image ★ Recommended",
        "description": "Fast, cheap, good subject consistency.",
        "provider": "gemini",
    },
    {
        "id": "gemini-3-pro-image-preview",
        "name": "Gemini 3 Pro Image",
        "description": "Best quality, supports 4K output.",
        "provider": "gemini",
    },
    {
        "id": "google/nano-banana-pro",
        "name": "Nano Banana Pro (Replicate)",
        "description": "Gemini 3 Pro Image hosted on Replicate.",
        "provider": "replicate",
    },
    {
        "id": "google/nano-banana",
        "name": "Nano Banana (Replicate)",
        "description": "Gemini 2.5 Flash Image hosted on Replicate.",
        "provider": "replicate",
    },
]

DEFAULT_IMAGE_MODEL = "gemini-3.1-flash-image-preview"
DEFAULT_REPLICATE_MODEL = "google/nano-banana-pro"
VALIDATION_MODEL = "gemini-3-flash-preview"

SUBJECT_CONSISTENCY_PREFIX = (
    "(Maintain strict visual consistency with the provided reference subject/character) "
)

FETCH_TIMEOUT = 60
REQUEST_TIMEOUT_MS = 300_000


class PermissionDeniedError(GenerationError):
    """The provider rejected the call for authorisation or billing reasons."""


class ConditioningFetchError(GenerationError):
    """A remote conditioning image could not be downloaded."""


def provider_for_model(model: str) -> str:
    return "replicate" if "/" in model else "gemini"


def default_model_for(provider: str) -> str:
    return DEFAULT_REPLICATE_MODEL if provider == "replicate" else DEFAULT_IMAGE_MODEL


# ---------------------------------------------------------------------------
# Conditioning image normalisation
# ---------------------------------------------------------------------------

def load_image_bytes(ref: ImageRef) -> bytes:
    """Return raw image bytes for an inline image or a hosted URL."""
    if isinstance(ref, InlineImage):
        return ref.data
    try:
        resp = requests.get(ref.url, timeout=FETCH_TIMEOUT)
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise ConditioningFetchError(f"Failed to fetch image from URL: {exc}") from exc
    if not resp.content:
        raise ConditioningFetchError(f"Empty image returned by {ref.url}")
    return resp.content


async def resolve_image(ref: ImageRef) -> bytes:
    if isinstance(ref, InlineImage):
        return ref.data
    return await asyncio.to_thread(load_image_bytes, ref)


def sniff_mime_type(data: bytes) -> str:
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


def build_request_prompt(prompt: str, has_subject: bool) -> str:
    if has_subject:
        return f"{SUBJECT_CONSISTENCY_PREFIX}{prompt}"
    return prompt


# ---------------------------------------------------------------------------
# Client base
# ---------------------------------------------------------------------------

class ImageClient(ABC):
    """Generates one image per call from a prompt and optional conditioning."""

    provider = ""

    def __init__(self, session: SessionContext) -> None:
        self.session = session

    async def generate(
        self,
        prompt: str,
        image_size: str,
        aspect_ratio: str,
        model: str,
        previous_image: Optional[ImageRef] = None,
        subject_image: Optional[ImageRef] = None,
    ) -> ImageRef:
        if provider_for_model(model) != self.provider:
            raise GenerationError(f"Model {model} is not available with a {self.provider} key")
        size = ImageSize(image_size)
        ratio = AspectRatio(aspect_ratio)

        conditioning = [
            await resolve_image(ref)
            for ref in conditioning_order(previous_image, subject_image)
        ]
        text = build_request_prompt(prompt, subject_image is not None)

        t0 = time.time()
        try:
            result = await self._submit(text, conditioning, size, ratio, model)
        except GenerationError:
            raise
        except Exception as exc:
            log.error("%s error after %.1fs: %s", self.provider, time.time() - t0, exc)
            raise self._translate_error(exc) from exc

        log.info(
            "%s call: model=%s  size=%s  ratio=%s  conditioning=%d  %.1fs",
            self.provider, model, size.value, ratio.value, len(conditioning), time.time() - t0,
        )
        return result

    @abstractmethod
    async def _submit(
        self,
        text: str,
        images: List[bytes],
        image_size: ImageSize,
        aspect_ratio: AspectRatio,
        model: str,
    ) -> ImageRef:
        ...

    @abstractmethod
    def _translate_error(self, exc: Exception) -> GenerationError:
        ...

    @abstractmethod
    async def validate(self) -> bool:
        """Probe the provider with the session credential."""


# ---------------------------------------------------------------------------
# Gemini (direct)
# ---------------------------------------------------------------------------

class GeminiImageClient(ImageClient):
    provider = "gemini"

    def _client(self) -> genai.Client:
        return genai.Client(
            api_key=self.session.require(),
            http_options=types.HttpOptions(timeout=REQUEST_TIMEOUT_MS),
        )

    async def _submit(self, text, images, image_size, aspect_ratio, model) -> ImageRef:
        parts = [types.Part.from_bytes(data=img, mime_type=sniff_mime_type(img)) for img in images]
        parts.append(types.Part.from_text(text=text))
        config = types.GenerateContentConfig(
            response_modalities=[Modality.TEXT, Modality.IMAGE],
            image_config=types.ImageConfig(
                aspect_ratio=aspect_ratio.value,
                image_size=image_size.value,
            ),
        )
        response = await self._client().aio.models.generate_content(
            model=model,
            contents=parts,
            config=config,
        )
        for candidate in response.candidates or []:
            content = candidate.content
            for part in (content.parts if content else None) or []:
                if part.inline_data and part.inline_data.data:
                    return InlineImage(
                        part.inline_data.data,
                        part.inline_data.mime_type or "image/png",
                    )
        raise GenerationError("No image data found.")

    def _translate_error(self, exc: Exception) -> GenerationError:
        if isinstance(exc, genai_errors.APIError):
            if exc.code in (401, 403) or "API_KEY_INVALID" in str(exc):
                return PermissionDeniedError("Permission denied. Check API Key and billing.")
        return GenerationError(str(exc) or "Failed to generate image")

    async def validate(self) -> bool:
        try:
            await self._client().aio.models.generate_content(model=VALIDATION_MODEL, contents="Ping")
        except CredentialError:
            return False
        except Exception as exc:
            log.warning("Gemini key validation failed: %s", exc)
            return False
        return True


# ---------------------------------------------------------------------------
# Replicate
# ---------------------------------------------------------------------------

class ReplicateImageClient(ImageClient):
    provider = "replicate"

    def _client(self) -> replicate.Client:
        return replicate.Client(api_token=self.session.require())

    async def _submit(self, text, images, image_size, aspect_ratio, model) -> ImageRef:
        payload: Dict = {
            "prompt": text,
            "aspect_ratio": aspect_ratio.value,
            "resolution": image_size.value,
            "output_format": "png",
        }
        if images:
            payload["image_input"] = [io.BytesIO(img) for img in images]

        output = await self._client().async_run(model, input=payload)

        raw = output[0] if isinstance(output, list) and output else output
        if not raw:
            raise GenerationError("No image data found.")
        if hasattr(raw, "aread"):
            data = await raw.aread()
            if not data:
                raise GenerationError("No image data found.")
            return InlineImage(data, sniff_mime_type(data))
        return RemoteImage(getattr(raw, "url", None) or str(raw))

    def _translate_error(self, exc: Exception) -> GenerationError:
        status = getattr(exc, "status", None)
        err = str(exc)
        if status in (401, 403) or "401" in err or "unauthenticated" in err.lower():
            return PermissionDeniedError(
                "Replicate API token is invalid or expired. Check your token."
            )
        if status == 402 or "402" in err or "payment" in err.lower():
            return PermissionDeniedError(
                "Replicate account has insufficient credits. Please add billing at replicate.com."
            )
        return GenerationError(err or "Failed to generate image")

    async def validate(self) -> bool:
        try:
            client = self._client()
            await asyncio.to_thread(client.models.get, DEFAULT_REPLICATE_MODEL)
        except CredentialError:
            return False
        except Exception as exc:
            log.warning("Replicate token validation failed: %s", exc)
            return False
        return True


def create_client(session: SessionContext) -> ImageClient:
    if session.provider == "replicate":
        return ReplicateImageClient(session)
    return GeminiImageClient(session)


def models_for(provider: str) -> List[Dict]:
    return [m for m in IMAGE_MODELS if m["provider"] == provider]


def conditioning_order(
    previous_image: Optional[ImageRef],
    subject_image: Optional[ImageRef],
) -> Tuple[ImageRef, ...]:
    """Conditioning inputs in request order: subject first, then previous."""
    return tuple(ref for ref in (subject_image, previous_image) if ref is not None)
