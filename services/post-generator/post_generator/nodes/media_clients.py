"""HTTP adapters for media generation and speech synthesis.

``HttpJobProvider`` is one step of a fallback plan.  It speaks a small
submit/poll contract that the image, video and music backends share:

    POST {base_url}/generate   {"prompt": ..., "image": ..., **options}
        -> {"artifact": ...}                  finished synchronously
        -> {"job_id": "..."}                  accepted, poll for it
    GET  {base_url}/jobs/{job_id}
        -> {"status": "running"}
        -> {"status": "done", "artifact": ...}
        -> {"status": "error", "error": "..."}

With ``download`` set, an artifact URL is fetched and the bytes returned.
A downloaded image handed on as ``image`` (image-to-video) is sent base64
encoded with ``"image_encoding": "base64"``.

``RouterSynthesizer`` posts to the TTS router's ``/synthesize`` and returns
raw PCM.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Optional

import aiofiles
import httpx

from ..models import StepResult
from .audio_encoder import decode_to_pcm
from .fallback import PollTimeoutError, poll_until_done

log = logging.getLogger(__name__)

_RAW_PCM_TYPES = ("application/octet-stream", "audio/l16", "audio/pcm")


class JobFailedError(RuntimeError):
    """The backend reported the job as failed."""


class HttpJobProvider:
    """A fallback step backed by a submit/poll HTTP generation service."""

    def __init__(
        self,
        provider_id: str,
        client: httpx.AsyncClient,
        base_url: str,
        options: Optional[dict] = None,
        poll_interval_s: float = 10.0,
        max_poll_attempts: int = 60,
        download: bool = False,
        sleep=asyncio.sleep,
    ):
        self.provider_id = provider_id
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.options = dict(options or {})
        self.poll_interval_s = poll_interval_s
        self.max_poll_attempts = max_poll_attempts
        self.download = download
        self._sleep = sleep

    async def __call__(self, prompt: str, image: Any = None, **inputs: Any) -> StepResult:
        payload = {"prompt": prompt, **self.options}
        payload.update({k: v for k, v in inputs.items() if v is not None})
        if isinstance(image, (bytes, bytearray)):
            payload["image"] = base64.b64encode(image).decode("ascii")
            payload["image_encoding"] = "base64"
        elif image is not None:
            payload["image"] = image

        log.info("%s: submitting job (%d-char prompt%s)", self.provider_id,
                 len(prompt), ", with image" if image is not None else "")
        resp = await self.client.post(f"{self.base_url}/generate", json=payload)
        if resp.status_code >= 400:
            return StepResult(success=False, error=_http_error(resp))
        body = resp.json()

        artifact = body.get("artifact")
        if artifact is None:
            job_id = body.get("job_id")
            if not job_id:
                return StepResult(
                    success=False,
                    error=body.get("error") or "response had neither artifact nor job_id",
                )
            try:
                artifact = await poll_until_done(
                    lambda: self._check(job_id),
                    interval_s=self.poll_interval_s,
                    max_attempts=self.max_poll_attempts,
                    sleep=self._sleep,
                )
            except (JobFailedError, PollTimeoutError) as exc:
                return StepResult(success=False, error=str(exc))

        if self.download and isinstance(artifact, str):
            resp = await self.client.get(artifact)
            resp.raise_for_status()
            log.info("%s: downloaded %d bytes from %s",
                     self.provider_id, len(resp.content), artifact)
            artifact = resp.content
        return StepResult(success=True, artifact=artifact)

    async def _check(self, job_id: str) -> tuple[bool, Any]:
        resp = await self.client.get(f"{self.base_url}/jobs/{job_id}")
        resp.raise_for_status()
        body = resp.json()
        status = body.get("status")
        if status == "done":
            if body.get("artifact") is None:
                raise JobFailedError(f"job {job_id} finished without an artifact")
            return True, body["artifact"]
        if status == "error":
            raise JobFailedError(body.get("error") or f"job {job_id} failed")
        log.info("%s: job %s status=%s", self.provider_id, job_id, status)
        return False, None


class RouterSynthesizer:
    """``synthesize(text, voice) -> bytes`` against the TTS router.

    The router answers either with audio bytes or, for the file-writing
    backends, with JSON carrying a ``file_path`` on a shared volume.  Anything
    that is not already raw PCM is decoded to ``sample_rate`` / ``channels``
    16-bit PCM.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        router_url: str,
        engine: str = "",
        sample_rate: int = 24000,
        channels: int = 1,
    ):
        self.client = client
        self.router_url = router_url.rstrip("/")
        self.engine = engine
        self.sample_rate = sample_rate
        self.channels = channels

    async def __call__(self, text: str, voice: str) -> bytes:
        resp = await self.client.post(
            f"{self.router_url}/synthesize",
            json={"text": text, "speaker": voice, "engine": self.engine},
        )
        resp.raise_for_status()

        content_type = resp.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type == "application/json":
            file_path = resp.json().get("file_path")
            if not file_path:
                raise ValueError("TTS router response has no file_path")
            async with aiofiles.open(file_path, "rb") as f:
                audio = await f.read()
            log.info("TTS voice=%s wrote %s (%d bytes)", voice, file_path, len(audio))
        else:
            audio = resp.content
            if content_type in _RAW_PCM_TYPES:
                return audio

        return await asyncio.to_thread(
            decode_to_pcm, audio, self.sample_rate, self.channels
        )


def _http_error(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    detail = None
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("error")
    return f"HTTP {resp.status_code}: {detail or resp.text[:200]}"
