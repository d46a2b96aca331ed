"""Audio Enhancement Compiler.

Turns an ``EnhancementSpec`` plus the input channel count into an ordered
list of ``FilterStage`` descriptors.  Stages are wired by stream labels
(``0:a`` is the encoder's input stream); ``audio_encoder`` is the only code
that knows how to spell them for ffmpeg.

Effects:

* ``pseudoStereo`` -- the right channel is delayed a few milliseconds
  against the left, which reads as width from a single source.
* ``pingPongEcho`` -- four copies of the source: the direct signal panned
  left and three delayed, progressively quieter copies panned right, left,
  right.  This is built from delay, gain and pan only; it approximates a
  bouncing echo and does not model feedback or room response.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..models import CompiledGraph, EnhancementSpec, FilterStage
from ..timing import timed_node

log = logging.getLogger(__name__)

INPUT_LABEL = "0:a"
OUTPUT_LABEL = "aout"
STEREO_LABEL = "stereo_pre_effect"

STEREO_KINDS = frozenset(["pseudoStereo", "pingPongEcho"])

PSEUDO_STEREO_DELAY_MS = 25
PING_PONG_DELAY_MS = 400
PING_PONG_DECAY = 0.6
PING_PONG_BLEED = 0.1
PING_PONG_TAPS = 3


@timed_node("audio_enhancement")
def compile_enhancement(
    spec: EnhancementSpec,
    input_channels: int,
    input_sample_rate: Optional[int] = None,
) -> CompiledGraph:
    """Compile *spec* into a ``CompiledGraph``.

    Unknown kinds compile like ``none``.  Raises ``ValueError`` only for a
    channel count below one.
    """
    if input_channels < 1:
        raise ValueError(f"input_channels must be >= 1; got {input_channels}")

    kind = spec.kind
    if kind not in STEREO_KINDS:
        if kind != "none":
            log.warning("Unknown enhancement kind %r -- applying none", kind)
        kind = "none"

    stages: list[FilterStage] = []
    output_label: Optional[str] = None
    output_channels = input_channels

    if kind in STEREO_KINDS:
        current = INPUT_LABEL
        if input_channels == 1:
            stages.extend(_upmix_mono(current))
            current = STEREO_LABEL
        if kind == "pseudoStereo":
            stages.extend(_pseudo_stereo(current, spec))
        else:
            stages.extend(_ping_pong_echo(current, spec))
        output_label = OUTPUT_LABEL
        output_channels = 2

    output_sample_rate = spec.output_sample_rate
    if output_sample_rate and output_sample_rate == input_sample_rate:
        output_sample_rate = None

    log.info("Enhancement %s: %d stage(s), %d -> %d channel(s)%s",
             kind, len(stages), input_channels, output_channels,
             f", resample to {output_sample_rate}Hz" if output_sample_rate else "")
    return CompiledGraph(
        stages=stages,
        output_channels=output_channels,
        output_label=output_label,
        output_sample_rate=output_sample_rate or None,
    )


def _upmix_mono(source: str) -> list[FilterStage]:
    """Duplicate a mono stream and merge the copies into one stereo stream."""
    return [
        FilterStage("asplit", (source,), ("l", "r"), {"outputs": 2}),
        FilterStage("amerge", ("l", "r"), (STEREO_LABEL,), {"inputs": 2}),
    ]


def _pseudo_stereo(source: str, spec: EnhancementSpec) -> list[FilterStage]:
    delay = _positive(spec.delay_ms, PSEUDO_STEREO_DELAY_MS)
    return [
        FilterStage("channelsplit", (source,), ("L", "R"), {"channel_layout": "stereo"}),
        FilterStage("adelay", ("R",), ("Rd",), {"delays": [delay, delay]}),
        FilterStage("amerge", ("L", "Rd"), (OUTPUT_LABEL,), {"inputs": 2}),
    ]


def _ping_pong_echo(source: str, spec: EnhancementSpec) -> list[FilterStage]:
    delay = _positive(spec.delay_ms, PING_PONG_DELAY_MS)
    decay = _positive(spec.decay, PING_PONG_DECAY)
    bleed = spec.mix_factor if spec.mix_factor is not None else PING_PONG_BLEED

    taps = [f"delay{n}_src" for n in range(1, PING_PONG_TAPS + 1)]
    stages = [
        FilterStage("asplit", (source,), ("orig", *taps), {"outputs": PING_PONG_TAPS + 1}),
        _pan("orig", "L_direct", left=1.0, right=bleed),
    ]
    mix_inputs = ["L_direct"]

    for n, tap in enumerate(taps, start=1):
        to_right = n % 2 == 1
        out = f"{'R' if to_right else 'L'}_bounce{n}"
        stages.append(FilterStage("adelay", (tap,), (f"d{n}",), {"delays": [delay * n, delay * n]}))
        stages.append(FilterStage("volume", (f"d{n}",), (f"v{n}",), {"volume": decay ** n}))
        if to_right:
            stages.append(_pan(f"v{n}", out, left=bleed, right=1.0))
        else:
            stages.append(_pan(f"v{n}", out, left=1.0, right=bleed))
        mix_inputs.append(out)

    stages.append(
        FilterStage("amix", tuple(mix_inputs), (OUTPUT_LABEL,), {"inputs": len(mix_inputs)})
    )
    return stages


def _pan(source: str, out: str, left: float, right: float) -> FilterStage:
    return FilterStage("pan", (source,), (out,), {"layout": "stereo", "left": left, "right": right})


def _positive(value: Optional[float], default: float) -> float:
    if value is None or value <= 0:
        return default
    return value
