"""Encoder boundary.

Serialises a ``CompiledGraph`` into ffmpeg ``filter_complex`` syntax and
encodes raw PCM through pydub (which shells out to ffmpeg).  Also holds the
fade-out used on generated music tracks.
"""

from __future__ import annotations

import io
import logging

from pydub import AudioSegment

from ..models import CompiledGraph, FilterStage

log = logging.getLogger(__name__)


def render_filter_graph(stages: list[FilterStage]) -> str:
    """Return the ffmpeg filtergraph string for *stages*, or "" if empty."""
    return ";".join(_render_stage(stage) for stage in stages)


def _render_stage(stage: FilterStage) -> str:
    inputs = "".join(f"[{label}]" for label in stage.inputs)
    outputs = "".join(f"[{label}]" for label in stage.outputs)
    return f"{inputs}{stage.op}{_render_params(stage)}{outputs}"


def _render_params(stage: FilterStage) -> str:
    params = stage.params
    if not params:
        return ""
    if stage.op == "pan":
        # pan takes a channel layout and per-channel gain expressions.
        return (
            f"={params.get('layout', 'stereo')}"
            f"|c0={_num(params['left'])}*c0"
            f"|c1={_num(params['right'])}*c0"
        )
    parts = []
    for key, value in params.items():
        if isinstance(value, (list, tuple)):
            value = "|".join(_num(v) for v in value)
        else:
            value = _num(value)
        parts.append(f"{key}={value}")
    return "=" + ":".join(parts)


def _num(value) -> str:
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


def ffmpeg_parameters(graph: CompiledGraph) -> list[str]:
    """Extra ffmpeg output arguments that apply *graph*."""
    params: list[str] = []
    if graph.stages:
        params += [
            "-filter_complex", render_filter_graph(graph.stages),
            "-map", f"[{graph.output_label}]",
        ]
    params += ["-ac", str(graph.output_channels)]
    if graph.output_sample_rate:
        params += ["-ar", str(graph.output_sample_rate)]
    return params


def encode_pcm(
    pcm: bytes,
    graph: CompiledGraph,
    input_channels: int,
    input_sample_rate: int,
    sample_width: int = 2,
    fmt: str = "webm",
    codec: str = "libopus",
) -> bytes:
    """Encode raw little-endian PCM with the compiled enhancement applied."""
    if not pcm:
        raise ValueError("no PCM data to encode")

    segment = AudioSegment(
        data=pcm,
        sample_width=sample_width,
        frame_rate=input_sample_rate,
        channels=input_channels,
    )
    buf = io.BytesIO()
    segment.export(buf, format=fmt, codec=codec, parameters=ffmpeg_parameters(graph))
    encoded = buf.getvalue()

    log.info("Encoded %d bytes PCM (%dch @ %dHz, %dms) -> %d bytes %s/%s",
             len(pcm), input_channels, input_sample_rate, len(segment),
             len(encoded), fmt, codec)
    return encoded


def decode_to_pcm(
    audio: bytes,
    sample_rate: int,
    channels: int = 1,
    sample_width: int = 2,
) -> bytes:
    """Decode a container (WAV, MP3, ...) into raw PCM at the given format."""
    segment = AudioSegment.from_file(io.BytesIO(audio))
    segment = (
        segment.set_frame_rate(sample_rate)
        .set_channels(channels)
        .set_sample_width(sample_width)
    )
    return segment.raw_data


def fade_out_track(
    audio: bytes,
    duration_s: float,
    fade_s: float = 5.0,
    fmt: str = "opus",
    bitrate: str = "128k",
) -> bytes:
    """Trim a generated track to *duration_s*, fade out its tail and re-encode."""
    track = AudioSegment.from_file(io.BytesIO(audio))
    if duration_s > 0:
        track = track[: int(duration_s * 1000)]
    fade_ms = min(int(fade_s * 1000), len(track))
    track = track.fade_out(fade_ms)

    buf = io.BytesIO()
    track.export(buf, format=fmt, codec="libopus", bitrate=bitrate)
    log.info("Faded out last %dms of %dms track -> %s @ %s",
             fade_ms, len(track), fmt, bitrate)
    return buf.getvalue()
