import asyncio
import random

from post_generator import pipeline
from post_generator.models import (
    Chunk,
    ChunkResult,
    Document,
    FallbackStep,
    ImageCandidate,
    PipelineSettings,
    PromptTemplate,
    StepResult,
)
from post_generator.nodes import audio_encoder
from post_generator.nodes.section_extractor import extract_sections
from post_generator.pipeline import (
    Capabilities,
    aggregate_results,
    describe_primary_image,
    pick_voice,
    run_pipeline,
    run_post_pipeline,
    select_music,
    select_prompt,
)


def _response(name):
    return f"### Verse\nverse {name}\n### Image Prompt\nimage {name}\n### Video Prompt\nvideo {name}"


def test_results_are_ordered_by_chunk_not_completion():
    delays = {"one": 0.03, "two": 0.01, "three": 0.0}
    finished = []

    async def generate(system, user):
        await asyncio.sleep(delays[user])
        finished.append(user)
        return _response(user)

    chunks = [Chunk(0, "one"), Chunk(1, "two"), Chunk(2, "three")]
    result = asyncio.run(run_pipeline(chunks, generate))

    assert finished == ["three", "two", "one"]
    assert [v.text for v in result.verses] == ["verse one", "verse two", "verse three"]
    assert [v.number for v in result.verses] == [1, 2, 3]
    assert result.prompts.image_prompts == ["image one", "image two", "image three"]
    assert result.prompts.video_prompts == ["video one", "video two", "video three"]


def test_failed_chunk_does_not_sink_the_batch():
    async def generate(system, user):
        if user == "two":
            raise RuntimeError("model overloaded")
        return _response(user)

    chunks = [Chunk(0, "one"), Chunk(1, "two"), Chunk(2, "three")]
    result = asyncio.run(run_pipeline(chunks, generate))

    assert [v.error for v in result.verses] == [None, "model overloaded", None]
    assert result.verses[1].text == "Error: model overloaded"
    assert result.prompts.verses[1] == "Error: model overloaded"
    assert result.prompts.image_prompts == ["image one", "image three"]


def test_empty_response_is_an_error():
    async def generate(system, user):
        return "   "

    result = asyncio.run(run_pipeline([Chunk(0, "x")], generate))
    assert result.verses[0].error == "empty response"


def test_template_is_rendered_per_chunk():
    seen = []

    async def generate(system, user):
        seen.append((system, user))
        return "verse"

    template = PromptTemplate("ode", "SYS", "Write an ode to [[chunk]] please")
    asyncio.run(run_pipeline([Chunk(0, "the sea")], generate, template))
    assert seen == [("SYS", "Write an ode to the sea please")]


def test_template_without_placeholder_appends_chunk():
    template = PromptTemplate("plain", "SYS", "Write a poem.")
    assert template.render("the sea") == "Write a poem.\n\nAnalyze the following text:\nthe sea"


def test_report_lists_generation_stage():
    async def generate(system, user):
        return "verse"

    result = asyncio.run(run_pipeline([Chunk(0, "a"), Chunk(1, "b")], generate))
    nodes = {n["node"]: n for n in result.report["nodes"]}
    assert nodes["text_generation"]["items"] == 2
    assert nodes["text_generation"]["type"] == "provider"


def test_aggregate_sorts_unordered_results():
    results = [
        ChunkResult.ok(1, "second"),
        ChunkResult.err(2, "timeout"),
        ChunkResult.ok(0, "first"),
    ]
    verses, prompts = aggregate_results(results, extract_sections)
    assert [v.text for v in verses] == ["first", "second", "Error: timeout"]
    assert prompts.image_prompts == []


def test_select_prompt():
    rng = random.Random(0)
    assert select_prompt([], rng) is None
    picks = {select_prompt(["a", "b", "c"], rng) for _ in range(200)}
    assert picks == {"a", "b", "c"}


def test_pick_voice():
    rng = random.Random(1)
    assert pick_voice([], rng) == "default"
    assert pick_voice(["Kore", "Puck"], rng) in {"Kore", "Puck"}


def test_select_music_keeps_tags_and_duration_together():
    async def generate(system, user):
        return f"### Verse\nv\n### Music Prompt\nTAGS: {user}\nDURATION: {len(user)}0\nsing {user}"

    chunks = [Chunk(0, "jazz"), Chunk(1, "folk music")]
    result = asyncio.run(run_pipeline(chunks, generate, extractor=pipeline.extract_music_sections))
    for seed in range(10):
        tags, duration, lyrics = select_music(result.prompts, random.Random(seed))
        assert duration == f"{len(tags)}0"
        assert lyrics in {"sing jazz", "sing folk music"}


# ---------------------------------------------------------------------------
# Whole document
# ---------------------------------------------------------------------------

FULL_RESPONSE = (
    "### Verse\n"
    "The lamp is out, the sea is loud, the keeper sleeps beneath a shroud.\n"
    "### Image Prompt\n"
    "A dark lighthouse in a storm\n"
    "### Video Prompt\n"
    "Waves crash against the rocks\n"
    "### Music Prompt\n"
    "TAGS: sea shanty, accordion\n"
    "DURATION: 95\n"
    "LYRICS:\n"
    "Heave ho\n"
)


def _recording_step(provider_id, calls, artifact):
    async def generate(prompt, **inputs):
        calls.append((provider_id, prompt, inputs))
        return StepResult(success=True, artifact=artifact)

    return FallbackStep(provider_id, generate)


def test_post_pipeline_chains_media():
    calls = []

    async def generate(system, user):
        return FULL_RESPONSE

    caps = Capabilities(
        generate_text=generate,
        image_plan=[_recording_step("imagen", calls, "https://cdn/img.png")],
        video_plan=[_recording_step("veo", calls, "https://cdn/clip.mp4")],
        music_plan=[_recording_step("diffrhythm", calls, "https://cdn/song.opus")],
        text_model="test-model",
    )
    doc = Document(text="A lighthouse went dark last night.", title="Dark")
    post = asyncio.run(run_post_pipeline(doc, None, caps, rng=random.Random(3)))

    assert post.selected_image_prompt == "A dark lighthouse in a storm"
    assert post.image.success and post.image.provider_used == "imagen"
    assert calls[1] == ("veo", "Waves crash against the rocks", {"image": "https://cdn/img.png"})
    assert calls[2] == ("diffrhythm", "sea shanty,accordion", {"lyrics": "Heave ho", "duration": 95})
    assert post.music.result == "https://cdn/song.opus"
    assert post.selected_music_duration == "95"
    assert post.text_model == "test-model"
    assert post.audio.skipped
    assert post.audio.text.startswith("The lamp is out")
    node_names = [n["node"] for n in post.report["nodes"]]
    assert node_names[0] == "chunker"
    assert "image_generation" in node_names


def test_post_pipeline_skips_media_without_prompts():
    calls = []

    async def generate(system, user):
        return "just a verse with no headers"

    caps = Capabilities(
        generate_text=generate,
        image_plan=[_recording_step("imagen", calls, "x")],
        video_plan=[_recording_step("veo", calls, "y")],
        music_plan=[_recording_step("diffrhythm", calls, "z")],
    )
    doc = Document(
        text="some text",
        primary_image_candidates=[],
    )
    post = asyncio.run(run_post_pipeline(doc, None, caps, rng=random.Random(0)))

    assert calls == []
    assert post.image.skipped and post.video.skipped and post.music.skipped
    assert post.selected_image_prompt is None
    assert post.pipeline.verses[0].text == "just a verse with no headers"


def test_post_pipeline_synthesizes_and_encodes(monkeypatch):
    encoded = []

    def fake_encode(pcm, graph, channels, rate, width, fmt, codec):
        encoded.append((pcm, graph, channels, rate, fmt, codec))
        return b"ENCODED"

    monkeypatch.setattr(audio_encoder, "encode_pcm", fake_encode)

    async def generate(system, user):
        return FULL_RESPONSE

    spoken = []

    async def synthesize(text, voice):
        spoken.append((text, voice))
        return b"\x00\x01" * 100

    caps = Capabilities(generate_text=generate, synthesize=synthesize, voices=["Kore"])
    post = asyncio.run(run_post_pipeline(Document(text="sea"), None, caps, PipelineSettings()))

    assert post.audio.success
    assert post.audio.data == b"ENCODED"
    assert post.audio.voice == "Kore"
    assert spoken[0][1] == "Kore"
    pcm, graph, channels, rate, fmt, codec = encoded[0]
    assert channels == 1 and rate == 24000
    assert graph.output_channels == 2
    assert graph.output_sample_rate == 48000
    assert (fmt, codec) == ("webm", "libopus")


def test_post_pipeline_reports_tts_failure():
    async def generate(system, user):
        return FULL_RESPONSE

    async def synthesize(text, voice):
        raise ConnectionError("tts router down")

    caps = Capabilities(generate_text=generate, synthesize=synthesize)
    post = asyncio.run(run_post_pipeline(Document(text="sea"), None, caps))

    assert not post.audio.success
    assert not post.audio.skipped
    assert post.audio.error == "tts router down"
    assert post.audio.voice == "default"


def test_post_pipeline_with_blank_document():
    async def generate(system, user):
        raise AssertionError("no chunks means no calls")

    post = asyncio.run(run_post_pipeline(Document(text="   "), None, Capabilities(generate_text=generate)))
    assert post.pipeline.verses == []
    assert post.image.skipped
    assert post.audio.skipped


def test_vision_runs_alongside_chunk_generation():
    started = []

    async def generate(system, user):
        started.append("text")
        await asyncio.sleep(0.01)
        assert "vision" in started
        return FULL_RESPONSE

    async def describe(image_url):
        started.append("vision")
        await asyncio.sleep(0.01)
        return f"  A sonnet about {image_url}  "

    caps = Capabilities(generate_text=generate, describe_image=describe)
    doc = Document(
        text="sea",
        primary_image_candidates=[ImageCandidate("https://cdn/cover.jpg", True, 4)],
    )
    post = asyncio.run(run_post_pipeline(doc, None, caps, rng=random.Random(0)))

    assert post.image_description.success
    assert post.image_description.text == "A sonnet about https://cdn/cover.jpg"
    assert post.image_description.image_url == "https://cdn/cover.jpg"
    assert "image_description" in [n["node"] for n in post.report["nodes"]]


def test_vision_is_skipped_without_primary_image():
    called = []

    async def generate(system, user):
        return FULL_RESPONSE

    async def describe(image_url):
        called.append(image_url)
        return "never"

    caps = Capabilities(generate_text=generate, describe_image=describe)
    post = asyncio.run(run_post_pipeline(Document(text="sea"), None, caps))

    assert called == []
    assert post.image_description.skipped
    assert post.image_description.error == "No primary image"


def test_vision_failure_is_reported_not_raised():
    async def describe(image_url):
        raise ConnectionError("vision model down")

    result = asyncio.run(describe_primary_image("https://cdn/a.jpg", describe))
    assert not result.success and not result.skipped
    assert result.error == "vision model down"

    skipped = asyncio.run(describe_primary_image("https://cdn/a.jpg", None))
    assert skipped.skipped and skipped.image_url == "https://cdn/a.jpg"


def test_chunk_report_excludes_outer_stages():
    async def generate(system, user):
        return FULL_RESPONSE

    caps = Capabilities(generate_text=generate)
    post = asyncio.run(run_post_pipeline(Document(text="sea"), None, caps))

    inner = [n["node"] for n in post.pipeline.report["nodes"]]
    outer = [n["node"] for n in post.report["nodes"]]
    assert inner == ["text_generation"]
    assert outer[0] == "chunker"
    assert "text_generation" in outer


def test_downloaded_image_bytes_feed_video():
    calls = []

    async def generate(system, user):
        return FULL_RESPONSE

    caps = Capabilities(
        generate_text=generate,
        image_plan=[_recording_step("imagen", calls, b"\x89PNG")],
        video_plan=[_recording_step("veo", calls, "https://cdn/clip.mp4")],
    )
    post = asyncio.run(run_post_pipeline(Document(text="sea"), None, caps))

    assert post.video.success
    assert calls[1] == ("veo", "Waves crash against the rocks", {"image": b"\x89PNG"})
