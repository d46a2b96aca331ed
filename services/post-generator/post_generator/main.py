import dataclasses
import logging
import os
import random
import uuid
from pathlib import Path
from typing import Any, Optional

import aiofiles
import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .models import Document, EnhancementSpec, PipelineSettings, PromptTemplate
from .nodes.audio_encoder import render_filter_graph
from .nodes.audio_enhancement import compile_enhancement
from .nodes.document_builder import UnknownPageShape, build_document
from .nodes.image_ranker import rank_images
from .nodes.media_clients import RouterSynthesizer
from .nodes.ollama_client import DEFAULT_VISION_PROMPT, ollama_generator, ollama_vision_describer
from .pipeline import Capabilities, run_post_pipeline
from .providers import load_plans

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
log = logging.getLogger(__name__)

app = FastAPI(
    title="Post Generator",
    description="Turns scraped web pages into verse posts with generated image, video, music and narration",
)

OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
MODEL_NAME = os.getenv("MODEL_NAME", "llama3.1:70b")
VISION_MODEL = os.getenv("VISION_MODEL", "")
VISION_PROMPT = os.getenv("VISION_PROMPT", DEFAULT_VISION_PROMPT)
TTS_ROUTER_URL = os.getenv("TTS_ROUTER_URL", "")
TTS_ENGINE = os.getenv("TTS_ENGINE", "")
TTS_VOICES = [v.strip() for v in os.getenv("TTS_VOICES", "narrator").split(",") if v.strip()]
PROVIDERS_CONFIG_PATH = os.getenv("PROVIDERS_CONFIG_PATH", "/providers.yaml")
OUTPUT_DIR = os.getenv("OUTPUT_DIR", "/output")
MAX_CHUNK_CHARS = int(os.getenv("MAX_CHUNK_CHARS", str(PipelineSettings.max_chunk_chars)))
MIN_CHUNK_CHARS = int(os.getenv("MIN_CHUNK_CHARS", str(PipelineSettings.min_chunk_chars)))
TTS_SAMPLE_RATE = int(os.getenv("TTS_SAMPLE_RATE", str(PipelineSettings.tts_sample_rate)))

# Default verse template, used when a request brings no prompts of its own.
PROMPTS_DIR = Path(__file__).parent / "prompts"
DEFAULT_SYSTEM_PROMPT = (PROMPTS_DIR / "verse_system.txt").read_text()
DEFAULT_CHAT_PROMPT = (PROMPTS_DIR / "verse_chat.txt").read_text()

_http_client: httpx.AsyncClient | None = None
_capabilities: Capabilities | None = None


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class EnhancementRequest(BaseModel):
    kind: str = "pingPongEcho"
    delay_ms: Optional[float] = 400
    decay: Optional[float] = 0.6
    mix_factor: Optional[float] = None
    output_sample_rate: Optional[int] = 48000

    def to_spec(self) -> EnhancementSpec:
        return EnhancementSpec(**self.model_dump())


class GenerateRequest(BaseModel):
    """Either a scraped ``page`` object or plain ``text`` (+ ``images``)."""
    page: Optional[dict] = None
    text: str = ""
    images: list[str] = []
    title: str = "Untitled"
    source_url: str = ""
    template_name: str = "verse"
    system_prompt: str = ""
    chat_prompt: str = ""
    enhancement: Optional[EnhancementRequest] = None
    seed: Optional[int] = None


class RankImagesRequest(BaseModel):
    urls: list[Any]


class CompileEnhancementRequest(BaseModel):
    enhancement: EnhancementRequest = EnhancementRequest()
    input_channels: int = 1
    input_sample_rate: Optional[int] = None


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def _build_capabilities(client: httpx.AsyncClient) -> Capabilities:
    plans = load_plans(PROVIDERS_CONFIG_PATH, client)
    synthesize = None
    if TTS_ROUTER_URL:
        synthesize = RouterSynthesizer(client, TTS_ROUTER_URL, TTS_ENGINE, TTS_SAMPLE_RATE)
    else:
        log.warning("TTS_ROUTER_URL is empty -- narration disabled")
    describe_image = None
    if VISION_MODEL:
        describe_image = ollama_vision_describer(client, OLLAMA_BASE_URL, VISION_MODEL, VISION_PROMPT)
    return Capabilities(
        generate_text=ollama_generator(client, OLLAMA_BASE_URL, MODEL_NAME),
        image_plan=plans["image"],
        video_plan=plans["video"],
        music_plan=plans["music"],
        synthesize=synthesize,
        describe_image=describe_image,
        voices=TTS_VOICES,
        text_model=MODEL_NAME,
    )


@app.on_event("startup")
async def startup():
    global _http_client, _capabilities
    _http_client = httpx.AsyncClient(timeout=1200.0)
    _capabilities = _build_capabilities(_http_client)
    os.makedirs(OUTPUT_DIR, exist_ok=True)
    log.info("model=%s vision=%s ollama=%s tts_router=%s voices=%s",
             MODEL_NAME, VISION_MODEL or "(none)", OLLAMA_BASE_URL,
             TTS_ROUTER_URL or "(none)", TTS_VOICES)


@app.on_event("shutdown")
async def shutdown():
    if _http_client:
        await _http_client.aclose()


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    body = await request.body()
    log.error("422 validation error on %s %s", request.method, request.url.path)
    log.error("Request body: %s", body.decode(errors="replace")[:2000])
    log.error("Validation errors: %s", exc.errors())
    return JSONResponse(status_code=422, content={"detail": exc.errors(), "body_preview": body.decode(errors="replace")[:500]})


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.post("/generate")
async def generate(request: GenerateRequest):
    if _capabilities is None:
        raise HTTPException(status_code=503, detail="Service not started")

    if request.page is not None:
        try:
            document = build_document(request.page, request.images)
        except UnknownPageShape as exc:
            raise HTTPException(status_code=400, detail=str(exc))
    else:
        document = Document(
            text=request.text.strip(),
            primary_image_candidates=rank_images(request.images),
            title=request.title,
            source_url=request.source_url,
        )
    if not document.text:
        raise HTTPException(status_code=400, detail="No text content")

    template = PromptTemplate(
        name=request.template_name,
        system=request.system_prompt or DEFAULT_SYSTEM_PROMPT,
        chat=request.chat_prompt or DEFAULT_CHAT_PROMPT,
    )
    settings = PipelineSettings(
        max_chunk_chars=MAX_CHUNK_CHARS,
        min_chunk_chars=MIN_CHUNK_CHARS,
        tts_sample_rate=TTS_SAMPLE_RATE,
    )
    if request.enhancement is not None:
        settings.enhancement = request.enhancement.to_spec()

    log.info("POST /generate -- title=%r template=%s text_length=%d",
             document.title, template.name, len(document.text))

    post = await run_post_pipeline(
        document, template, _capabilities, settings, random.Random(request.seed)
    )

    stem = f"post_{uuid.uuid4().hex[:8]}"
    audio = post.audio
    audio_file = None
    if audio.success:
        audio_file = await _write_output(f"{stem}.{settings.audio_format}", audio.data)

    prompts = post.pipeline.prompts
    return {
        "title": document.title,
        "source_url": document.source_url,
        "primary_image": document.primary_image,
        "template": template.name,
        "model": post.text_model,
        "verses": [
            {"number": v.number, "text": v.text, "error": v.error}
            for v in post.pipeline.verses
        ],
        "prompts": dataclasses.asdict(prompts),
        "selected": {
            "image_prompt": post.selected_image_prompt,
            "video_prompt": post.selected_video_prompt,
            "music_tags": post.selected_music_tags,
            "music_duration": post.selected_music_duration,
            "lyrics": post.selected_lyrics,
        },
        "image_description": dataclasses.asdict(post.image_description),
        "image": await _media_summary(post.image, f"{stem}_image.bin"),
        "video": await _media_summary(post.video, f"{stem}_video.bin"),
        "music": await _media_summary(post.music, f"{stem}_music.opus"),
        "audio": {
            "success": audio.success,
            "skipped": audio.skipped,
            "error": audio.error,
            "voice": audio.voice,
            "text": audio.text,
            "file_path": audio_file,
        },
        "report": post.report,
    }


@app.post("/rank-images")
async def rank(request: RankImagesRequest):
    ranked = rank_images(request.urls)
    return {
        "primary_image": ranked[0].url if ranked else None,
        "candidates": [dataclasses.asdict(c) for c in ranked],
    }


@app.post("/compile-enhancement")
async def compile_graph(request: CompileEnhancementRequest):
    try:
        graph = compile_enhancement(
            request.enhancement.to_spec(), request.input_channels, request.input_sample_rate
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "stages": [dataclasses.asdict(s) for s in graph.stages],
        "output_channels": graph.output_channels,
        "output_label": graph.output_label,
        "output_sample_rate": graph.output_sample_rate,
        "filter_graph": render_filter_graph(graph.stages),
    }


@app.get("/health")
async def health():
    caps = _capabilities
    return {
        "status": "ok" if caps is not None else "starting",
        "model": MODEL_NAME,
        "providers": {
            "image": [s.provider_id for s in caps.image_plan] if caps else [],
            "video": [s.provider_id for s in caps.video_plan] if caps else [],
            "music": [s.provider_id for s in caps.music_plan] if caps else [],
        },
        "tts": caps is not None and caps.synthesize is not None,
        "vision": caps is not None and caps.describe_image is not None,
    }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _write_output(filename: str, data: bytes) -> str:
    os.makedirs(OUTPUT_DIR, exist_ok=True)
    path = os.path.join(OUTPUT_DIR, filename)
    async with aiofiles.open(path, "wb") as out:
        await out.write(data)
    log.info("Wrote %s (%d bytes)", path, len(data))
    return path


async def _media_summary(result, filename: str) -> dict:
    artifact = result.result
    if isinstance(artifact, (bytes, bytearray)):
        artifact = await _write_output(filename, bytes(artifact))
    return {
        "success": result.success,
        "skipped": result.skipped,
        "provider": result.provider_used,
        "artifact": artifact,
        "error": result.error,
        "attempts": [{"provider": p, "error": e} for p, e in result.attempts],
    }
