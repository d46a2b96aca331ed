"""Generation orchestrator.

``run_pipeline`` fans one text-generation call per chunk out concurrently,
waits for all of them, then parses the responses in chunk order.
``run_post_pipeline`` is a whole document run: verses (alongside a vision
description of the primary image), then image, video and music generation
through their fallback plans, then narrated audio.

Provider failures never raise out of this module; every stage reports a
structured result so the caller can always render something.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence

from .models import (
    AggregatedPrompts,
    AudioResult,
    Chunk,
    ChunkResult,
    DispatchResult,
    Document,
    FallbackStep,
    ImageDescription,
    ParsedSections,
    PipelineResult,
    PipelineSettings,
    PostResult,
    PromptTemplate,
    VerseEntry,
)
from .nodes import audio_encoder, fallback, tts_text
from .nodes.audio_enhancement import compile_enhancement
from .nodes.chunker import chunk_text
from .nodes.ollama_client import ImageDescriber, TextGenerator
from .nodes.section_extractor import extract_music_sections, extract_sections
from .timing import build_report, collect_metrics, timed_node

log = logging.getLogger(__name__)

Extractor = Callable[[str], ParsedSections]
Synthesizer = Callable[[str, str], Awaitable[bytes]]

DEFAULT_VOICE = "default"

dispatch_image = timed_node("image_generation", "provider")(fallback.dispatch)
dispatch_video = timed_node("video_generation", "provider")(fallback.dispatch)
dispatch_music = timed_node("music_generation", "provider")(fallback.dispatch)


@dataclass
class Capabilities:
    """External collaborators for one document run."""

    generate_text: TextGenerator
    image_plan: list[FallbackStep] = field(default_factory=list)
    video_plan: list[FallbackStep] = field(default_factory=list)
    music_plan: list[FallbackStep] = field(default_factory=list)
    synthesize: Optional[Synthesizer] = None
    describe_image: Optional[ImageDescriber] = None
    voices: list[str] = field(default_factory=list)
    text_model: str = ""


# ---------------------------------------------------------------------------
# Chunk fan-out / fan-in
# ---------------------------------------------------------------------------


@timed_node("text_generation", "provider")
async def generate_chunks(
    chunks: Sequence[Chunk],
    generate: TextGenerator,
    template: Optional[PromptTemplate] = None,
) -> list[ChunkResult]:
    """Generate every chunk concurrently; failures become ``ChunkResult.err``."""

    async def one(chunk: Chunk) -> ChunkResult:
        system = template.system if template else ""
        user = template.render(chunk.text) if template else chunk.text
        try:
            raw = await generate(system, user)
        except Exception as exc:
            log.exception("Chunk %d: generation failed", chunk.index + 1)
            return ChunkResult.err(chunk.index, str(exc) or type(exc).__name__)
        if not isinstance(raw, str) or not raw.strip():
            log.warning("Chunk %d: empty response", chunk.index + 1)
            return ChunkResult.err(chunk.index, "empty response")
        return ChunkResult.ok(chunk.index, raw)

    return list(await asyncio.gather(*(one(c) for c in chunks)))


def aggregate_results(
    results: Sequence[ChunkResult],
    extractor: Extractor = extract_sections,
) -> tuple[list[VerseEntry], AggregatedPrompts]:
    """Parse settled results in chunk-index order and collect their sections."""
    verses: list[VerseEntry] = []
    prompts = AggregatedPrompts()

    for result in sorted(results, key=lambda r: r.index):
        if not result.is_ok:
            placeholder = f"Error: {result.error}"
            verses.append(VerseEntry(result.index, placeholder, error=result.error))
            prompts.verses.append(placeholder)
            continue

        sections = extractor(result.raw_text)
        verses.append(VerseEntry(result.index, sections.verse, sections=sections))
        prompts.verses.append(sections.verse)
        if sections.image_prompt:
            prompts.image_prompts.append(sections.image_prompt)
        if sections.video_prompt:
            prompts.video_prompts.append(sections.video_prompt)
        if sections.music_tags:
            prompts.music_tags_list.append(sections.music_tags)
            prompts.music_durations.append(sections.music_duration)
        if sections.lyrics:
            prompts.lyrics_list.append(sections.lyrics)

    return verses, prompts


async def run_pipeline(
    chunks: Sequence[Chunk],
    generate: TextGenerator,
    template: Optional[PromptTemplate] = None,
    extractor: Extractor = extract_sections,
) -> PipelineResult:
    """Generate and parse every chunk; returns verses, prompts and a timing report."""
    with collect_metrics() as metrics:
        results = await generate_chunks(chunks, generate, template)
        verses, prompts = aggregate_results(results, extractor)

    failed = sum(1 for r in results if not r.is_ok)
    report = build_report(metrics)
    log.info(
        "Pipeline complete: %d chunks (%d failed) | image=%d video=%d music=%d prompts | %dms",
        len(results), failed, len(prompts.image_prompts), len(prompts.video_prompts),
        len(prompts.music_tags_list), report["total_duration_ms"],
    )
    return PipelineResult(verses=verses, prompts=prompts, report=report)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def select_prompt(candidates: Sequence[str], rng: random.Random) -> Optional[str]:
    """Uniform random pick, or None when there is nothing to pick from."""
    if not candidates:
        return None
    return rng.choice(list(candidates))


def select_music(
    prompts: AggregatedPrompts, rng: random.Random
) -> tuple[Optional[str], Optional[str], Optional[str]]:
    """Pick ``(tags, duration, lyrics)``; tags and duration come from one response."""
    tags = duration = None
    if prompts.music_tags_list:
        i = rng.randrange(len(prompts.music_tags_list))
        tags = prompts.music_tags_list[i]
        if i < len(prompts.music_durations):
            duration = prompts.music_durations[i] or None
    lyrics = select_prompt(prompts.lyrics_list, rng)
    return tags, duration, lyrics


def pick_voice(voices: Sequence[str], rng: random.Random) -> str:
    if not voices:
        return DEFAULT_VOICE
    return rng.choice(list(voices))


# ---------------------------------------------------------------------------
# Vision
# ---------------------------------------------------------------------------


@timed_node("image_description", "provider")
async def describe_primary_image(
    image_url: Optional[str],
    describe: Optional[ImageDescriber],
) -> ImageDescription:
    """Ask the vision model about the primary image; never raises."""
    if not image_url:
        return ImageDescription(success=False, error="No primary image", skipped=True)
    if describe is None:
        return ImageDescription(
            success=False, image_url=image_url, error="No vision model configured", skipped=True
        )
    try:
        text = await describe(image_url)
    except Exception as exc:
        log.exception("Vision description failed for %s", image_url)
        return ImageDescription(
            success=False, image_url=image_url, error=str(exc) or type(exc).__name__
        )
    if not isinstance(text, str) or not text.strip():
        return ImageDescription(success=False, image_url=image_url, error="empty response")
    return ImageDescription(success=True, text=text.strip(), image_url=image_url)


# ---------------------------------------------------------------------------
# Audio
# ---------------------------------------------------------------------------


@timed_node("audio_synthesis", "provider")
async def synthesize_audio(
    text: Optional[str],
    synthesize: Optional[Synthesizer],
    voice: str,
    settings: PipelineSettings,
) -> AudioResult:
    """Synthesize *text*, compile the enhancement and encode the result."""
    if not text:
        return AudioResult(success=False, error="No valid text for TTS", skipped=True)
    if synthesize is None:
        return AudioResult(success=False, text=text, error="No TTS configured", skipped=True)

    graph = compile_enhancement(
        settings.enhancement, settings.tts_channels, settings.tts_sample_rate
    )
    try:
        pcm = await synthesize(text, voice)
        data = await asyncio.to_thread(
            audio_encoder.encode_pcm,
            pcm,
            graph,
            settings.tts_channels,
            settings.tts_sample_rate,
            2,
            settings.audio_format,
            settings.audio_codec,
        )
    except Exception as exc:
        log.exception("Audio generation failed (voice=%s)", voice)
        return AudioResult(
            success=False, voice=voice, text=text, graph=graph,
            error=str(exc) or type(exc).__name__,
        )
    return AudioResult(success=True, data=data, voice=voice, text=text, graph=graph)


async def _fade_music(music: DispatchResult, duration: Optional[str]) -> None:
    """Fade out a downloaded music track in place; keeps the raw track on failure."""
    if not music.success or not isinstance(music.result, (bytes, bytearray)):
        return
    seconds = float(duration) if duration and duration.isdigit() else 0.0
    try:
        music.result = await asyncio.to_thread(
            audio_encoder.fade_out_track, bytes(music.result), seconds
        )
    except Exception:
        log.exception("Music fade-out failed, keeping the unprocessed track")


# ---------------------------------------------------------------------------
# Whole document
# ---------------------------------------------------------------------------


async def run_post_pipeline(
    document: Document,
    template: Optional[PromptTemplate],
    capabilities: Capabilities,
    settings: Optional[PipelineSettings] = None,
    rng: Optional[random.Random] = None,
    extractor: Extractor = extract_music_sections,
) -> PostResult:
    """Run one document end to end and return everything it produced."""
    settings = settings or PipelineSettings()
    rng = rng or random.Random()

    with collect_metrics() as metrics:
        chunks = chunk_text(
            document.text,
            settings.max_chunk_chars,
            settings.min_chunk_chars,
            settings.lookback_ratio,
        )
        log.info("Document %r: %d chunk(s)", document.title, len(chunks))

        pipeline, description = await asyncio.gather(
            run_pipeline(chunks, capabilities.generate_text, template, extractor),
            describe_primary_image(document.primary_image, capabilities.describe_image),
        )
        prompts = pipeline.prompts

        # Image first: a generated image feeds image-to-video.
        image_prompt = select_prompt(prompts.image_prompts, rng)
        image = await dispatch_image(capabilities.image_plan, image_prompt)
        _log_media("image", image)

        video_prompt = select_prompt(prompts.video_prompts, rng)
        source_image = image.result if image.success else document.primary_image
        video = await dispatch_video(capabilities.video_plan, video_prompt, image=source_image)
        _log_media("video", video)

        tags, duration, lyrics = select_music(prompts, rng)
        music = await dispatch_music(
            capabilities.music_plan, tags,
            lyrics=lyrics,
            duration=int(duration) if duration and duration.isdigit() else None,
        )
        await _fade_music(music, duration)
        _log_media("music", music)

        ok_verses = [v.text for v in pipeline.verses if v.error is None]
        spoken = tts_text.build_tts_text(
            ok_verses,
            settings.tts_target_chars,
            settings.tts_max_chars,
            settings.tts_min_chars,
        )
        voice = pick_voice(capabilities.voices, rng)
        audio = await synthesize_audio(spoken, capabilities.synthesize, voice, settings)

    report = build_report(metrics)
    log.info("Post %r complete: vision=%s image=%s video=%s music=%s audio=%s | %dms",
             document.title,
             "ok" if description.success else ("skipped" if description.skipped else "failed"),
             _status(image), _status(video), _status(music),
             "ok" if audio.success else ("skipped" if audio.skipped else "failed"),
             report["total_duration_ms"])

    return PostResult(
        document=document,
        pipeline=pipeline,
        selected_image_prompt=image_prompt,
        selected_video_prompt=video_prompt,
        selected_music_tags=tags,
        selected_music_duration=duration,
        selected_lyrics=lyrics,
        image=image,
        video=video,
        music=music,
        audio=audio,
        image_description=description,
        text_model=capabilities.text_model,
        report=report,
    )


def _status(result: DispatchResult) -> str:
    if result.success:
        return f"ok({result.provider_used})"
    return "skipped" if result.skipped else "failed"


def _log_media(kind: str, result: DispatchResult) -> None:
    if result.success:
        log.info("%s generated by %s", kind, result.provider_used)
    elif result.skipped:
        log.info("%s generation skipped: %s", kind, result.error)
    else:
        log.warning("%s generation failed: %s", kind, result.error)
