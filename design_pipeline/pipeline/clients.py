"""
External API Clients

- GeminiImageClient: image + prompt in, generated image(s) or refusal text out
- PicsartClient: background removal and upscaling, image in / image out

Both wrap a shared httpx.AsyncClient and record Prometheus call counters.
Every failure surfaces as a single exception type per client with a
descriptive message. Each call is made exactly once.
"""

import json
import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

import httpx

from design_pipeline.core.config import Settings
from design_pipeline.core.logging import get_logger
from design_pipeline.core.metrics import record_external_call
from design_pipeline.core.exceptions import (
    GenerationError,
    PostProcessingError,
    ImageConversionError
)
from design_pipeline.modules.designs.models import PipelineStage
from design_pipeline.pipeline.formats import to_png

logger = get_logger(__name__)

ERROR_DETAIL_LIMIT = 200


def _error_detail(response: httpx.Response) -> Optional[str]:
    """Pull a short human readable reason out of an error response."""
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:ERROR_DETAIL_LIMIT] or None

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        for key in ("detail", "message"):
            if body.get(key):
                return str(body[key])
    return json.dumps(body)[:ERROR_DETAIL_LIMIT]


# =============================================================================
# Generative Image Client (Gemini)
# =============================================================================

@dataclass
class GenerationResult:
    """What the model sent back: image bytes, free text, or neither."""
    images: List[bytes] = field(default_factory=list)
    text: Optional[str] = None
    candidate_count: int = 0


def parse_generation_response(data: Dict[str, Any]) -> GenerationResult:
    candidates = (data or {}).get("candidates") or []
    if not candidates:
        return GenerationResult()

    content = candidates[0].get("content") or {}
    parts = content.get("parts") or []

    images = []
    texts = []
    for part in parts:
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            images.append(base64.b64decode(inline["data"]))
        elif part.get("text"):
            texts.append(part["text"])

    return GenerationResult(
        images=images,
        text=" ".join(texts) if texts else None,
        candidate_count=len(candidates)
    )


class IGenerativeImageClient(ABC):

    @abstractmethod
    async def generate(self, image_bytes: bytes, mime_type: str, prompt: str) -> GenerationResult:
        """
        Raises:
            GenerationError: transport, HTTP, timeout or configuration failure
        """

    async def aclose(self):
        pass


class GeminiImageClient(IGenerativeImageClient):
    """Direct REST call to the Gemini generateContent endpoint."""

    service = "gemini"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        model: str,
        temperature: float = 0.3,
        timeout: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.api_key = api_key
        self.url = f"{base_url.rstrip('/')}/models/{model}:generateContent"
        self.temperature = temperature
        self.timeout = timeout
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeminiImageClient":
        return cls(
            api_key=settings.GEMINI_API_KEY,
            base_url=settings.GEMINI_API_BASE_URL,
            model=settings.GEMINI_MODEL,
            temperature=settings.GEMINI_TEMPERATURE,
            timeout=settings.GENERATION_TIMEOUT_SECONDS
        )

    async def aclose(self):
        await self._client.aclose()

    async def generate(self, image_bytes: bytes, mime_type: str, prompt: str) -> GenerationResult:
        if not self.api_key or not self.api_key.strip():
            raise GenerationError("GEMINI_API_KEY environment variable is not set")

        body = {
            "generationConfig": {"temperature": self.temperature},
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                        {
                            "inlineData": {
                                "mimeType": mime_type,
                                "data": base64.b64encode(image_bytes).decode("utf-8")
                            }
                        }
                    ]
                }
            ]
        }
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key
        }

        logger.info("gemini_request_started", input_size=len(image_bytes), mime_type=mime_type)

        try:
            response = await self._client.post(self.url, json=body, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException:
            record_external_call(self.service, "timeout")
            raise GenerationError("Gemini API timeout")
        except httpx.HTTPError as e:
            record_external_call(self.service, "error")
            raise GenerationError(f"Gemini API request failed: {e}")

        if response.status_code != 200:
            record_external_call(self.service, "error", response.status_code)
            detail = _error_detail(response)
            message = f"Gemini API error (HTTP {response.status_code})"
            raise GenerationError(
                f"{message}: {detail}" if detail else message,
                http_status=response.status_code
            )

        try:
            data = response.json()
        except ValueError:
            record_external_call(self.service, "error", response.status_code)
            raise GenerationError("Gemini API returned a non-JSON response", http_status=response.status_code)

        record_external_call(self.service, "success", response.status_code)

        result = parse_generation_response(data)
        logger.info(
            "gemini_request_completed",
            candidates=result.candidate_count,
            images=len(result.images),
            has_text=result.text is not None
        )
        return result


# =============================================================================
# Post-Processing Client (Picsart)
# =============================================================================

class IPostProcessingClient(ABC):

    @abstractmethod
    async def remove_background(self, image_bytes: bytes) -> bytes:
        """Raises PostProcessingError on any failure."""

    @abstractmethod
    async def upscale(self, image_bytes: bytes, factor: int = 2) -> bytes:
        """Raises PostProcessingError on any failure."""

    async def aclose(self):
        pass


class PicsartClient(IPostProcessingClient):
    """
    Picsart tools API. Each call uploads the image as multipart form data,
    receives a JSON body with `data.url`, and downloads the result from there.
    """

    service = "picsart"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["PicsartClient"]:
        """None when no API key is configured; the optional stages are then skipped."""
        if not settings.post_processing_enabled:
            return None
        return cls(
            api_key=settings.PICSART_API_KEY,
            base_url=settings.PICSART_API_BASE_URL,
            timeout=settings.POST_PROCESSING_TIMEOUT_SECONDS
        )

    async def aclose(self):
        await self._client.aclose()

    async def remove_background(self, image_bytes: bytes) -> bytes:
        return await self._run(
            endpoint="removebg",
            operation=PipelineStage.BACKGROUND_REMOVAL,
            failure_prefix="Background removal failed",
            image_bytes=image_bytes,
            form={}
        )

    async def upscale(self, image_bytes: bytes, factor: int = 2) -> bytes:
        return await self._run(
            endpoint="upscale",
            operation=PipelineStage.UPSCALE,
            failure_prefix="Image upscaling failed",
            image_bytes=image_bytes,
            form={"upscale_factor": str(factor)}
        )

    async def _run(
        self,
        endpoint: str,
        operation: PipelineStage,
        failure_prefix: str,
        image_bytes: bytes,
        form: Dict[str, str]
    ) -> bytes:
        try:
            result = await self._call(endpoint, operation, failure_prefix, image_bytes, form)
        except PostProcessingError as e:
            record_external_call(
                f"{self.service}_{endpoint}",
                "error",
                e.details.get("http_status") or 0
            )
            logger.warning("picsart_call_failed", endpoint=endpoint, error=e.message)
            raise

        record_external_call(f"{self.service}_{endpoint}", "success", 200)
        return result

    async def _call(
        self,
        endpoint: str,
        operation: PipelineStage,
        failure_prefix: str,
        image_bytes: bytes,
        form: Dict[str, str]
    ) -> bytes:
        headers = {
            "X-Picsart-API-Key": self.api_key,
            "accept": "application/json"
        }

        def failed(reason: str, http_status: Optional[int] = None) -> PostProcessingError:
            return PostProcessingError(
                f"{failure_prefix}{reason}",
                operation=operation.value,
                http_status=http_status
            )

        logger.info("picsart_request_started", endpoint=endpoint, input_size=len(image_bytes))

        try:
            response = await self._client.post(
                f"{self.base_url}/{endpoint}",
                data=form,
                files={"image": ("image.png", image_bytes, "image/png")},
                headers=headers,
                timeout=self.timeout
            )

            if response.status_code >= 400:
                detail = _error_detail(response)
                reason = f" (HTTP {response.status_code})"
                raise failed(f"{reason}: {detail}" if detail else reason, response.status_code)

            try:
                payload = response.json()
            except ValueError:
                raise failed(": Unexpected response format (not JSON)")

            result_url = None
            if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
                result_url = payload["data"].get("url")
            if not isinstance(result_url, str) or not result_url:
                raise failed(f": Unexpected response format: {json.dumps(payload)[:ERROR_DETAIL_LIMIT]}")

            image_response = await self._client.get(result_url, timeout=self.timeout)
            if image_response.status_code >= 400:
                raise failed(
                    f" (HTTP {image_response.status_code} fetching result)",
                    image_response.status_code
                )

            output = to_png(image_response.content)

        except httpx.TimeoutException:
            raise failed(": Request timed out")
        except httpx.ConnectError:
            raise failed(": Network connection failed")
        except httpx.HTTPError as e:
            raise failed(f": {e}")
        except ImageConversionError as e:
            raise failed(f": {e.message}")

        logger.info(
            "picsart_request_completed",
            endpoint=endpoint,
            input_size=len(image_bytes),
            output_size=len(output)
        )
        return output
