"""Data models for the verse post generation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional


ENHANCEMENT_KINDS = frozenset(["none", "pseudoStereo", "pingPongEcho"])

CHUNK_PLACEHOLDER = "[[chunk]]"
_DEFAULT_CHUNK_SUFFIX = "\n\nAnalyze the following text:\n" + CHUNK_PLACEHOLDER


@dataclass(frozen=True)
class ImageCandidate:
    """An image URL considered for the document's primary image."""

    url: str
    is_preferred_format: bool = False
    size_rank: int = 0


@dataclass
class Document:
    """Immutable input to one pipeline run."""

    text: str
    primary_image_candidates: list[ImageCandidate] = field(default_factory=list)
    title: str = "Untitled"
    source_url: str = ""

    @property
    def primary_image(self) -> Optional[str]:
        if not self.primary_image_candidates:
            return None
        return self.primary_image_candidates[0].url


@dataclass(frozen=True)
class Chunk:
    index: int
    text: str


@dataclass(frozen=True)
class ChunkResult:
    """Outcome of one chunk's generation call: ``ok`` or ``err``."""

    index: int
    raw_text: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, index: int, raw_text: str) -> "ChunkResult":
        return cls(index=index, raw_text=raw_text)

    @classmethod
    def err(cls, index: int, reason: str) -> "ChunkResult":
        return cls(index=index, error=reason or "unknown error")

    @property
    def is_ok(self) -> bool:
        return self.error is None


@dataclass
class ParsedSections:
    """Typed sections of a single model response."""

    verse: str = ""
    image_prompt: str = ""
    video_prompt: str = ""
    music_tags: str = ""
    music_duration: str = ""
    lyrics: str = ""


@dataclass
class AggregatedPrompts:
    """Sections accumulated across every chunk of one document."""

    verses: list[str] = field(default_factory=list)
    image_prompts: list[str] = field(default_factory=list)
    video_prompts: list[str] = field(default_factory=list)
    music_tags_list: list[str] = field(default_factory=list)
    # Parallel to music_tags_list; "" where the response gave no duration.
    music_durations: list[str] = field(default_factory=list)
    lyrics_list: list[str] = field(default_factory=list)


@dataclass
class VerseEntry:
    """Per-chunk display data, kept in chunk order."""

    index: int
    text: str
    error: Optional[str] = None
    sections: Optional[ParsedSections] = None

    @property
    def number(self) -> int:
        return self.index + 1


@dataclass
class PromptTemplate:
    """A system/chat prompt pair; ``[[chunk]]`` marks where chunk text goes."""

    name: str
    system: str
    chat: str

    def __post_init__(self) -> None:
        if CHUNK_PLACEHOLDER not in self.chat:
            self.chat = self.chat + _DEFAULT_CHUNK_SUFFIX

    def render(self, chunk_text: str) -> str:
        return self.chat.replace(CHUNK_PLACEHOLDER, chunk_text, 1)


@dataclass
class EnhancementSpec:
    """Declarative description of the audio widening effect to apply."""

    kind: str = "none"
    delay_ms: Optional[float] = None
    decay: Optional[float] = None
    mix_factor: Optional[float] = None
    output_sample_rate: Optional[int] = None

    @classmethod
    def from_mapping(cls, data: Optional[dict]) -> "EnhancementSpec":
        """Build from a loose dict (``kind``/``type``, snake or camel case keys)."""
        if not data:
            return cls()

        def pick(*keys: str) -> Any:
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return None

        rate = pick("output_sample_rate", "outputSampleRate")
        return cls(
            kind=str(pick("kind", "type") or "none"),
            delay_ms=pick("delay_ms", "delayMs"),
            decay=pick("decay"),
            mix_factor=pick("mix_factor", "mixFactor"),
            output_sample_rate=int(rate) if rate else None,
        )


@dataclass(frozen=True)
class FilterStage:
    """One signal-processing node. Purely descriptive."""

    op: str
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    params: dict = field(default_factory=dict)


@dataclass
class CompiledGraph:
    stages: list[FilterStage] = field(default_factory=list)
    output_channels: int = 1
    output_label: Optional[str] = None
    output_sample_rate: Optional[int] = None


@dataclass
class StepResult:
    """What a single provider step reports back to the dispatcher."""

    success: bool
    artifact: Any = None
    error: Optional[str] = None


StepFn = Callable[..., Awaitable[StepResult]]


@dataclass
class FallbackStep:
    provider_id: str
    generate: StepFn


@dataclass
class DispatchResult:
    success: bool
    result: Any = None
    error: Optional[str] = None
    provider_used: Optional[str] = None
    skipped: bool = False
    attempts: list[tuple[str, str]] = field(default_factory=list)

    @classmethod
    def skip(cls, reason: str) -> "DispatchResult":
        return cls(success=False, error=reason, skipped=True)


@dataclass
class NodeMetrics:
    """Timing and item count for one pipeline stage."""

    node_name: str
    node_type: str  # "programmatic" | "provider"
    duration_ms: int = 0
    items: Optional[int] = None
    failed: bool = False


@dataclass
class PipelineResult:
    verses: list[VerseEntry] = field(default_factory=list)
    prompts: AggregatedPrompts = field(default_factory=AggregatedPrompts)
    report: dict = field(default_factory=dict)


@dataclass
class AudioResult:
    success: bool
    data: bytes = b""
    voice: str = ""
    text: str = ""
    graph: Optional[CompiledGraph] = None
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class ImageDescription:
    """Vision model output for the document's primary image."""

    success: bool
    text: str = ""
    image_url: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class PipelineSettings:
    """Tunables for one document run. Defaults follow the batch scripts."""

    max_chunk_chars: int = 2_000_000
    min_chunk_chars: int = 200
    lookback_ratio: float = 0.2
    enhancement: EnhancementSpec = field(
        default_factory=lambda: EnhancementSpec(
            kind="pingPongEcho", delay_ms=400, decay=0.6, output_sample_rate=48000,
        )
    )
    tts_sample_rate: int = 24000
    tts_channels: int = 1
    tts_target_chars: int = 700
    tts_max_chars: int = 1000
    tts_min_chars: int = 50
    audio_format: str = "webm"
    audio_codec: str = "libopus"


@dataclass
class PostResult:
    """Everything one document run produced, handed to templating."""

    document: Document
    pipeline: PipelineResult
    selected_image_prompt: Optional[str] = None
    selected_video_prompt: Optional[str] = None
    selected_music_tags: Optional[str] = None
    selected_music_duration: Optional[str] = None
    selected_lyrics: Optional[str] = None
    image: Optional[DispatchResult] = None
    video: Optional[DispatchResult] = None
    music: Optional[DispatchResult] = None
    audio: Optional[AudioResult] = None
    image_description: Optional[ImageDescription] = None
    text_model: str = ""
    report: dict = field(default_factory=dict)
