"""Async client for the generation provider (images, videos, scripts).

Provides:
- Submission endpoints for text-to-image, image-edit and image-to-video
- Prediction result lookup used by the poller
- Script generation from a source video via generateContent
- Video model table (endpoint, default params, last-frame parameter name)

Submissions return either an inline output URL or a job handle to poll.

Usage:
    from reelflow.services.generation_client import get_generation_client

    client = get_generation_client()
    result = await client.text_to_image("a red fox", aspect_ratio="1:1", size="1K")
    if result.job_handle:
        job = await client.get_job_result(result.job_handle)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from reelflow.config import settings
from reelflow.errors import ProviderError, SubmissionError, ValidationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Video model table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VideoModel:
    path: str
    params: dict = field(default_factory=dict)
    last_frame_key: Optional[str] = None


VIDEO_MODELS: dict[str, VideoModel] = {
    "seedance": VideoModel(
        path="/api/v3/doubao/seedance-1-0-pro-250528/image-to-video",
        params={"resolution": "720p", "duration": 5, "aspect_ratio": "9:16", "seed": -1},
        last_frame_key="last_image",
    ),
    "hailuo": VideoModel(
        path="/api/v3/minimax/hailuo-02-standard/image-to-video",
        params={"duration": "5"},
        last_frame_key="end_image",
    ),
    "wan": VideoModel(
        path="/api/v3/alibaba/wan-2.2-plus/image-to-video",
        params={"resolution": "480p", "duration": 5, "seed": -1},
    ),
}


def video_model(name: str) -> VideoModel:
    if name not in VIDEO_MODELS:
        raise ValidationError(
            f"Unsupported video model: {name}. Supported: {list(VIDEO_MODELS.keys())}"
        )
    return VIDEO_MODELS[name]


_MIME_TYPES = {
    "mp4": "video/mp4",
    "avi": "video/x-msvideo",
    "mov": "video/quicktime",
    "webm": "video/webm",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
}


def mime_type_for(url: str) -> str:
    """Guess the MIME type of a media URL from its extension."""
    ext = url.lower().split("?")[0].rsplit(".", 1)[-1]
    return _MIME_TYPES.get(ext, "video/mp4")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class SubmitResult:
    """Outcome of a submission: exactly one of output_url, job_handle."""

    output_url: Optional[str] = None
    job_handle: Optional[str] = None


@dataclass
class JobResult:
    """One poll of a provider job; status is the provider's raw value."""

    status: str
    output_url: Optional[str] = None
    error: Optional[str] = None


def _unwrap(data: Any) -> dict:
    """Provider responses nest the payload under "data" inconsistently."""
    if isinstance(data, dict) and isinstance(data.get("data"), dict):
        return data["data"]
    return data if isinstance(data, dict) else {}


def _extract_output_url(payload: dict) -> Optional[str]:
    output = payload.get("output")
    if isinstance(output, dict):
        url = output.get("image_url") or output.get("video_url")
        if url:
            return url
    url = payload.get("image_url") or payload.get("video_url")
    if url:
        return url
    outputs = payload.get("outputs")
    if isinstance(outputs, list) and outputs and isinstance(outputs[0], str):
        return outputs[0]
    return None


def _error_message(data: Any, status_code: int) -> str:
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
        if isinstance(error, str) and error:
            return error
        if data.get("message"):
            return str(data["message"])
    return f"Request failed: {status_code}"


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def _is_retriable(exc: BaseException) -> bool:
    """Return True only for transient errors worth retrying (429, transport)."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429
    return isinstance(exc, httpx.TransportError)


# ---------------------------------------------------------------------------
# Provider client
# ---------------------------------------------------------------------------


class GenerationClient:
    """Async client for the generation provider's REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        image_model: str = "gemini-3-pro-image-preview",
        script_model: str = "gemini-3-pro-preview",
        timeout: float = 120.0,
        connect_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.image_model = image_model
        self.script_model = script_model
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                follow_redirects=True,
                timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
                transport=self._transport,
            )
        return self._client

    @retry(
        stop=stop_after_attempt(settings.provider.submit_max_attempts),
        wait=wait_exponential(multiplier=1, min=1, max=10) + wait_random(0, 1),
        retry=retry_if_exception(_is_retriable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _post(self, path: str, body: dict, headers: Optional[dict] = None) -> httpx.Response:
        response = await self.client.post(path, json=body, headers=headers)
        logger.info("POST %s%s: HTTP %d", self.base_url, path, response.status_code)
        if response.status_code == 429:
            response.raise_for_status()
        return response

    async def _submit(self, path: str, body: dict) -> SubmitResult:
        """POST a generation request and classify the response.

        Raises:
            SubmissionError: non-2xx, provider error code, or neither a job
                id nor an output URL in the response
        """
        try:
            response = await self._post(path, body)
        except httpx.HTTPError as e:
            raise SubmissionError(f"Request to {path} failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise SubmissionError(f"Malformed response from {path}: HTTP {response.status_code}") from e

        code = data.get("code") if isinstance(data, dict) else None
        if response.is_error or (code and code != 200):
            raise SubmissionError(_error_message(data, response.status_code))

        payload = _unwrap(data)
        job_id = payload.get("id") or (data.get("id") if isinstance(data, dict) else None)
        if job_id:
            logger.info("  job handle: %s", job_id)
            return SubmitResult(job_handle=str(job_id))
        output_url = _extract_output_url(payload)
        if output_url:
            return SubmitResult(output_url=output_url)
        raise SubmissionError("No task ID returned from API")

    async def text_to_image(self, prompt: str, aspect_ratio: str = "1:1", size: str = "1K") -> SubmitResult:
        return await self._submit(
            f"/api/v3/google/{self.image_model}/text-to-image",
            {"prompt": prompt, "aspect_ratio": aspect_ratio, "size": size},
        )

    async def image_to_edit(
        self,
        prompt: str,
        images: list[str],
        aspect_ratio: str = "9:16",
        size: str = "1K",
    ) -> SubmitResult:
        """Generate an image conditioned on reference image URLs."""
        return await self._submit(
            f"/api/v3/google/{self.image_model}/image-edit",
            {"prompt": prompt, "image": images, "aspect_ratio": aspect_ratio, "size": size},
        )

    async def image_to_video(
        self,
        model: str,
        prompt: str,
        first_frame_url: str,
        last_frame_url: Optional[str] = None,
    ) -> SubmitResult:
        """Animate first_frame_url, ending on last_frame_url if the model supports it."""
        spec = video_model(model)
        body: dict = {"prompt": prompt, "image": first_frame_url, **spec.params}
        if last_frame_url and spec.last_frame_key:
            body[spec.last_frame_key] = last_frame_url
        return await self._submit(spec.path, body)

    async def get_job_result(self, job_handle: str) -> JobResult:
        """Fetch one snapshot of a provider job.

        Transport errors and non-2xx responses propagate as httpx errors; the
        poller treats them as transient.
        """
        response = await self.client.get(f"/api/v3/predictions/{job_handle}/result")
        logger.debug(
            "GET %s/api/v3/predictions/%s/result: HTTP %d",
            self.base_url, job_handle, response.status_code,
        )
        response.raise_for_status()
        payload = _unwrap(response.json())
        return JobResult(
            status=str(payload.get("status", "unknown")),
            output_url=_extract_output_url(payload),
            error=payload.get("error") if isinstance(payload.get("error"), str) else None,
        )

    async def generate_script(self, video_url: str, prompt: str) -> str:
        """Ask the script model to turn a source video into script JSON text.

        Raises:
            ProviderError: if the model call fails or returns no text
        """
        path = f"/v1beta/models/{self.script_model}:generateContent"
        body = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": prompt},
                        {"file_data": {"mime_type": mime_type_for(video_url), "file_uri": video_url}},
                    ],
                }
            ]
        }
        try:
            # generateContent takes the raw key, not a bearer token
            response = await self._post(path, body, headers={"Authorization": self.api_key})
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(f"Failed to generate script: {e}") from e

        if response.is_error:
            raise ProviderError(f"Failed to generate script: {_error_message(data, response.status_code)}")

        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            text = ""
        if not text:
            raise ProviderError("Failed to generate script: empty response")
        logger.info("  script generated, length: %d", len(text))
        return text

    async def close(self):
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


# ---------------------------------------------------------------------------
# Module-level lazy singleton
# ---------------------------------------------------------------------------

_generation_client: Optional[GenerationClient] = None


def get_generation_client() -> GenerationClient:
    """Get or create the singleton GenerationClient from settings."""
    global _generation_client
    if _generation_client is None:
        provider = settings.provider
        if not provider.api_key:
            logger.warning("Provider API key not configured (REELFLOW_PROVIDER__API_KEY)")
        _generation_client = GenerationClient(
            provider.base_url,
            provider.api_key,
            image_model=provider.image_model,
            script_model=provider.script_model,
            timeout=provider.request_timeout,
            connect_timeout=provider.connect_timeout,
        )
    return _generation_client


async def close_generation_client() -> None:
    """Close the singleton GenerationClient (for app shutdown)."""
    global _generation_client
    if _generation_client is not None:
        await _generation_client.close()
        _generation_client = None
