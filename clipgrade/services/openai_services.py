"""OpenAI-backed implementations of the enhancer, critic and surgical editor.

All three share one client.  Images travel as PNG/JPEG bytes; results are
decoded back to BGR arrays with OpenCV.  SDK exceptions are mapped onto the
pipeline's error hierarchy so the retry policy can tell transient failures
(timeouts, rate limits, 5xx) from permanent ones.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import textwrap
from typing import Any, Dict, Optional, Tuple

import cv2
import numpy as np
import openai
from openai import OpenAI

from clipgrade.core.errors import (
    ConfigError,
    MalformedResponseError,
    ServiceError,
    TransientServiceError,
)
from clipgrade.services.base import Critique, coerce_critique, region_mask

LOG = logging.getLogger("clipgrade.services.openai")

# Aspect ratios closer than this are treated as a pure rescale by the service.
_ASPECT_TOLERANCE = 0.01

CRITIQUE_PROMPT = textwrap.dedent(
    """
    You are a professional colorist and cinematographer reviewing one frame
    of a video that has been AI-enhanced. Score how close it looks to footage
    shot by a professional on a high-end camera, from 0 to 10.

    Return ONLY a JSON object with these fields:
      "professionalScore": number 0-10,
      "overallAssessment": short string,
      "noFurtherEditsNeeded": boolean,
      "remainingImprovements": list of objects with
        "type" (e.g. "color-grading", "object-removal", "background-cleanup"),
        "description",
        "region" (one of top-left, top-center, top-right, center-left, center,
                  center-right, bottom-left, bottom-center, bottom-right,
                  background, foreground, global),
        "impact" ("high", "medium" or "low"),
        "imagenSuitable" (true only when the fix is local to that region and
                          needs a masked edit; false for whole-frame fixes),
        "editInstruction" (a precise instruction for an image-editing model).
    Never suggest changing composition, framing or subjects.
    """
).strip()


# ---------------------------------------------------------------------------
# Client + error mapping
# ---------------------------------------------------------------------------


def _build_openai_client(timeout: float = 120.0) -> OpenAI:
    """Create an OpenAI client or raise a detailed error."""

    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise ConfigError("OPENAI_API_KEY is not set in the environment; export a key before running")
    return OpenAI(api_key=api_key, timeout=timeout, max_retries=0)


def map_openai_error(exc: Exception, label: str) -> ServiceError:
    if isinstance(exc, openai.RateLimitError):
        return TransientServiceError(f"{label}: rate limited", rate_limited=True)
    if isinstance(exc, openai.APIConnectionError):  # includes APITimeoutError
        return TransientServiceError(f"{label}: {exc.__class__.__name__}: {exc}")
    if isinstance(exc, openai.APIStatusError):
        status = int(getattr(exc, "status_code", 0) or 0)
        if status == 408 or status >= 500:
            return TransientServiceError(f"{label}: HTTP {status}")
        return ServiceError(f"{label}: HTTP {status}: {exc}")
    return ServiceError(f"{label}: {exc}")


# ---------------------------------------------------------------------------
# Image encoding helpers
# ---------------------------------------------------------------------------


def _encode(image: np.ndarray, ext: str = ".png") -> bytes:
    ok, buf = cv2.imencode(ext, np.ascontiguousarray(image))
    if not ok:
        raise ServiceError(f"could not encode image as {ext}")
    return buf.tobytes()


def _decode_b64(payload: Optional[str]) -> np.ndarray:
    if not payload:
        raise MalformedResponseError("image service returned no image data")
    try:
        decoded = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedResponseError(f"image service returned invalid base64: {exc}") from exc
    img = cv2.imdecode(np.frombuffer(decoded, dtype=np.uint8), cv2.IMREAD_COLOR)
    if img is None:
        raise MalformedResponseError("image service returned undecodable image data")
    return img


def fit_to_source(result: np.ndarray, source: np.ndarray) -> np.ndarray:
    """Rescale *result* to *source* dimensions when only the scale changed.

    A changed aspect ratio is returned untouched; the caller's geometry check
    rejects it.
    """

    sh, sw = source.shape[:2]
    rh, rw = result.shape[:2]
    if (rh, rw) == (sh, sw):
        return result
    if abs(rw / float(rh) - sw / float(sh)) > _ASPECT_TOLERANCE:
        LOG.warning("service changed aspect ratio %dx%d -> %dx%d", sw, sh, rw, rh)
        return result
    interp = cv2.INTER_AREA if rw > sw else cv2.INTER_CUBIC
    return cv2.resize(result, (sw, sh), interpolation=interp)


def _mask_png(mask: np.ndarray) -> bytes:
    """OpenAI edit masks are RGBA; fully transparent pixels get edited."""

    rgba = np.zeros(mask.shape + (4,), dtype=np.uint8)
    rgba[..., 3] = 255 - mask
    return _encode(rgba, ".png")


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


class OpenAIEnhancer:
    def __init__(self, client: OpenAI, model: str = "gpt-image-1") -> None:
        self.client = client
        self.model = model

    def enhance(self, image: np.ndarray, instruction: str) -> np.ndarray:
        try:
            response = self.client.images.edit(
                model=self.model,
                image=("frame.png", _encode(image), "image/png"),
                prompt=instruction,
                size="auto",
            )
        except openai.OpenAIError as exc:
            raise map_openai_error(exc, "enhance") from exc
        data = getattr(response, "data", None) or []
        if not data:
            raise MalformedResponseError("enhance: response contained no images")
        return fit_to_source(_decode_b64(data[0].b64_json), image)


class OpenAISurgicalEditor:
    def __init__(self, client: OpenAI, model: str = "gpt-image-1") -> None:
        self.client = client
        self.model = model

    def edit(self, image: np.ndarray, region: str, instruction: str) -> np.ndarray:
        height, width = image.shape[:2]
        mask = region_mask(width, height, region)
        try:
            response = self.client.images.edit(
                model=self.model,
                image=("frame.png", _encode(image), "image/png"),
                mask=("mask.png", _mask_png(mask), "image/png"),
                prompt=instruction,
                size="auto",
            )
        except openai.OpenAIError as exc:
            raise map_openai_error(exc, f"surgical edit ({region})") from exc
        data = getattr(response, "data", None) or []
        if not data:
            raise MalformedResponseError("surgical edit: response contained no images")
        edited = fit_to_source(_decode_b64(data[0].b64_json), image)
        if edited.shape != image.shape:
            return edited
        # Keep pixels outside the mask bit-identical to the input.
        keep = mask == 0
        edited = edited.copy()
        edited[keep] = image[keep]
        return edited


class OpenAICritic:
    def __init__(self, client: OpenAI, model: str = "gpt-4.1-mini", prompt: str = CRITIQUE_PROMPT) -> None:
        self.client = client
        self.model = model
        self.prompt = prompt

    def critique(self, image: np.ndarray) -> Critique:
        data_url = "data:image/jpeg;base64," + base64.b64encode(_encode(image, ".jpg")).decode("ascii")
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.prompt},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": "Critique this frame."},
                            {"type": "image_url", "image_url": {"url": data_url}},
                        ],
                    },
                ],
                response_format={"type": "json_object"},
                temperature=0.1,
            )
        except openai.OpenAIError as exc:
            raise map_openai_error(exc, "critique") from exc
        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as exc:
            raise MalformedResponseError("critique: response had no message content") from exc
        if not content:
            raise MalformedResponseError("critique: empty response")
        return coerce_critique(content)


def build_services(cfg: Dict[str, Any]) -> Tuple[OpenAIEnhancer, OpenAICritic, OpenAISurgicalEditor]:
    """Create the three services from the ``services`` config block."""

    services = cfg.get("services") or {}
    client = _build_openai_client(float(services.get("timeout_sec", 120.0)))
    return (
        OpenAIEnhancer(client, str(services.get("enhance_model", "gpt-image-1"))),
        OpenAICritic(client, str(services.get("critique_model", "gpt-4.1-mini"))),
        OpenAISurgicalEditor(client, str(services.get("surgical_model", "gpt-image-1"))),
    )


__all__ = [
    "CRITIQUE_PROMPT",
    "OpenAIEnhancer",
    "OpenAICritic",
    "OpenAISurgicalEditor",
    "build_services",
    "fit_to_source",
    "map_openai_error",
]
