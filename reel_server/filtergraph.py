"""
Filter-graph builder.

Each render stage is described as an EngineCommand: the ffmpeg inputs (with
any per-input options), the filter graph as labelled FilterNodes, the stream
maps and the codec arguments. Nothing here touches the filesystem or spawns
processes; EngineCommand.to_args() is the only place an argv list is built,
so all escaping happens in this module.

Stages:
  1) normalize   - one command per clip: fit into WxH, pad black, force fps, drop audio
  2) concat      - chained xfade dissolves between consecutive normalized clips
  3) overlay     - logo + boxed text + video fades, merged into a single re-encode
  4) audio       - looped, trimmed, faded audio muxed against the video by stream copy

9:16 safe zones (1080x1920):
  top unsafe     0 - 269px   (14%)  username, icons
  safe area    269 - 1248px  (51%)
  bottom unsafe 1248 - 1920px (35%)  CTA, description
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import ValidationError
from .models import OutputSpec, OverlaySpec

VIDEO_CODEC_ARGS = ["-c:v", "libx264", "-preset", "fast", "-crf", "23"]
AUDIO_CODEC = "aac"

SAFE_TOP_RATIO = 0.14
SAFE_BOTTOM_RATIO = 0.65
LOGO_MARGIN_Y = 20
LOGO_MARGIN_X = 40
TEXT_MARGIN_Y = 40
TEXT_BOX_BORDER = 15


# ----------------- Command model -----------------

@dataclass
class EngineInput:
    path: str
    options: List[str] = field(default_factory=list)  # placed before -i


@dataclass
class FilterNode:
    inputs: List[str]
    filters: List[str]
    output: str

    def render(self) -> str:
        ins = "".join(f"[{label}]" for label in self.inputs)
        return f"{ins}{','.join(self.filters)}[{self.output}]"


@dataclass
class EngineCommand:
    inputs: List[EngineInput]
    output: str
    nodes: List[FilterNode] = field(default_factory=list)
    maps: List[str] = field(default_factory=list)
    codec_args: List[str] = field(default_factory=list)

    def filter_graph(self) -> str:
        return ";".join(node.render() for node in self.nodes)

    def to_args(self) -> List[str]:
        args = ["-y"]
        for inp in self.inputs:
            args += list(inp.options) + ["-i", str(inp.path)]
        if self.nodes:
            args += ["-filter_complex", self.filter_graph()]
        for m in self.maps:
            args += ["-map", m]
        args += list(self.codec_args)
        args.append(str(self.output))
        return args


# ----------------- Numbers -----------------

def fmt_offset(value: float) -> str:
    return f"{value:.3f}"


def fmt_seconds(value: float) -> str:
    return f"{value:.2f}"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class SafeZone:
    top: int
    bottom: int
    center_y: int


def safe_zone(height: int) -> SafeZone:
    top = _round_half_up(height * SAFE_TOP_RATIO)
    bottom = _round_half_up(height * SAFE_BOTTOM_RATIO)
    return SafeZone(top=top, bottom=bottom, center_y=_round_half_up((top + bottom) / 2))


# ----------------- Escaping -----------------
# ffmpeg unescapes a drawtext value three times: the filter graph parser
# (special: \ ' [ ] , ;), the option list parser (special: \ ' :) and the
# drawtext expansion pass (special: \ %). Escapes are applied innermost first.

_GRAPH_SPECIAL = "\\'[],;"
_OPTION_SPECIAL = "\\':"
_EXPANSION_SPECIAL = "\\%"


def _backslash(value: str, special: str) -> str:
    return "".join("\\" + c if c in special else c for c in value)


def _escape_for_graph(value: str) -> str:
    return _backslash(_backslash(value, _OPTION_SPECIAL), _GRAPH_SPECIAL)


DRAWTEXT_ESCAPES: Dict[str, str] = {
    c: _escape_for_graph(_backslash(c, _EXPANSION_SPECIAL)) for c in "\\'%:;[],"
}
FILTER_VALUE_ESCAPES: Dict[str, str] = {c: _escape_for_graph(c) for c in "\\':;[],"}

_DRAWTEXT_TABLE = str.maketrans(DRAWTEXT_ESCAPES)
_FILTER_VALUE_TABLE = str.maketrans(FILTER_VALUE_ESCAPES)


def escape_drawtext(text: str) -> str:
    """Escape user text for drawtext's ``text`` option inside -filter_complex."""
    return text.translate(_DRAWTEXT_TABLE)


def escape_filter_value(value: str) -> str:
    """Escape a plain option value (paths, colours) inside -filter_complex."""
    return str(value).translate(_FILTER_VALUE_TABLE)


# ----------------- Stage 1: normalize -----------------

def normalize_command(src: str, dst: str, output: OutputSpec) -> EngineCommand:
    w, h, fps = output.width, output.height, output.fps
    node = FilterNode(
        ["0:v"],
        [
            f"scale={w}:{h}:force_original_aspect_ratio=decrease",
            f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:black",
            f"fps={fps}",
            "setsar=1",
        ],
        "vout",
    )
    return EngineCommand(
        inputs=[EngineInput(src)],
        output=dst,
        nodes=[node],
        maps=["[vout]"],
        codec_args=VIDEO_CODEC_ARGS + ["-an"],
    )


# ----------------- Stage 2: crossfade concat -----------------

def check_clip_lengths(durations: Sequence[Optional[float]], crossfade: float) -> None:
    """Reject any clip not longer than the crossfade. ``None`` means unknown."""
    for i, d in enumerate(durations):
        if d is not None and d <= crossfade:
            raise ValidationError(
                f"Clip {i} is too short ({d:.2f}s) for crossfade ({crossfade}s). "
                f"Each clip must be longer than the crossfade duration."
            )


def crossfade_offsets(durations: Sequence[float], crossfade: float) -> List[float]:
    """Start time of each dissolve on the concatenated timeline.

    Returns len(durations) - 1 offsets; offset_i = offset_{i-1} + d_{i-1} - crossfade.
    """
    check_clip_lengths(durations, crossfade)
    offsets = []
    current = 0.0
    for d in durations[:-1]:
        current += d - crossfade
        offsets.append(current)
    return offsets


def concat_command(paths: Sequence[str], durations: Sequence[float], crossfade: float, dst: str) -> EngineCommand:
    if len(paths) < 2:
        raise ValueError("concat needs at least two clips")
    if len(paths) != len(durations):
        raise ValueError("one duration per clip is required")
    offsets = crossfade_offsets(durations, crossfade)
    nodes = []
    prev = "0:v"
    for i, offset in enumerate(offsets, start=1):
        out = "vout" if i == len(paths) - 1 else f"v{i}"
        nodes.append(FilterNode(
            [prev, f"{i}:v"],
            [f"xfade=transition=fade:duration={fmt_offset(crossfade)}:offset={fmt_offset(offset)}"],
            out,
        ))
        prev = out
    return EngineCommand(
        inputs=[EngineInput(p) for p in paths],
        output=dst,
        nodes=nodes,
        maps=["[vout]"],
        codec_args=list(VIDEO_CODEC_ARGS),
    )


# ----------------- Stage 3: overlay + fades -----------------

def logo_position(position: Optional[str], zone: SafeZone) -> Tuple[str, str]:
    top_y = f"{zone.top + LOGO_MARGIN_Y}"
    positions = {
        "top_center": ("(W-w)/2", top_y),
        "top_left": (f"{LOGO_MARGIN_X}", top_y),
        "top_right": (f"W-w-{LOGO_MARGIN_X}", top_y),
        "center": ("(W-w)/2", f"{zone.center_y}-(h/2)"),
        "bottom_center": ("(W-w)/2", f"{zone.bottom - LOGO_MARGIN_Y}-h"),
    }
    return positions.get(position or "top_center", positions["top_center"])


def text_y(position: Optional[str], zone: SafeZone) -> str:
    positions = {
        "safe_top": f"{zone.top + TEXT_MARGIN_Y}",
        "safe_center": f"{zone.center_y}-(th/2)",
        "safe_bottom": f"{zone.bottom - TEXT_MARGIN_Y}-th",
    }
    return positions.get(position or "safe_center", positions["safe_center"])


def drawtext_filter(overlay: OverlaySpec, font_path: str, zone: SafeZone) -> str:
    return (
        f"drawtext=text={escape_drawtext(overlay.text)}"
        f":fontfile={escape_filter_value(font_path)}"
        f":fontsize={overlay.font_size}"
        f":fontcolor={escape_filter_value(overlay.font_color)}"
        f":x=(w-tw)/2:y={text_y(overlay.text_position, zone)}"
        f":box=1:boxcolor={escape_filter_value(overlay.text_bg)}"
        f":boxborderw={TEXT_BOX_BORDER}"
    )


def fade_filters(fade_in: float, fade_out: float, duration: Optional[float]) -> List[str]:
    parts = []
    if fade_in > 0:
        parts.append(f"fade=t=in:st=0:d={fmt_seconds(fade_in)}")
    if fade_out > 0:
        if duration is None:
            raise ValueError("fade-out needs the video duration")
        start = max(0.0, duration - fade_out)
        parts.append(f"fade=t=out:st={fmt_seconds(start)}:d={fmt_seconds(fade_out)}")
    return parts


def overlay_command(
    src: str,
    dst: str,
    *,
    height: int,
    overlay: OverlaySpec,
    logo_path: Optional[str] = None,
    font_path: Optional[str] = None,
    fade_in: float = 0.0,
    fade_out: float = 0.0,
    duration: Optional[float] = None,
) -> EngineCommand:
    zone = safe_zone(height)
    inputs = [EngineInput(src)]
    nodes = []
    last = "0:v"

    if logo_path:
        inputs.append(EngineInput(logo_path))
        x, y = logo_position(overlay.logo_position, zone)
        nodes.append(FilterNode(["1:v"], [f"scale={overlay.logo_size}:-1"], "logo"))
        nodes.append(FilterNode([last, "logo"], [f"overlay={x}:{y}"], "withlogo"))
        last = "withlogo"

    if overlay.text:
        if not font_path:
            raise ValueError("text overlay needs a font path")
        nodes.append(FilterNode([last], [drawtext_filter(overlay, font_path, zone)], "withtext"))
        last = "withtext"

    fades = fade_filters(fade_in, fade_out, duration)
    if fades:
        nodes.append(FilterNode([last], fades, "final"))
        last = "final"

    if not nodes:
        raise ValueError("overlay stage has nothing to draw")
    return EngineCommand(
        inputs=inputs,
        output=dst,
        nodes=nodes,
        maps=[f"[{last}]"],
        codec_args=list(VIDEO_CODEC_ARGS),
    )


# ----------------- Stage 4: audio -----------------

def audio_command(
    video: str,
    audio: str,
    dst: str,
    *,
    duration: float,
    fade_in: float = 0.0,
    fade_out: float = 0.0,
) -> EngineCommand:
    filters = [f"atrim=0:{fmt_seconds(duration)}"]
    if fade_in > 0:
        filters.append(f"afade=t=in:st=0:d={fmt_seconds(fade_in)}")
    if fade_out > 0:
        start = max(0.0, duration - fade_out)
        filters.append(f"afade=t=out:st={fmt_seconds(start)}:d={fmt_seconds(fade_out)}")
    return EngineCommand(
        inputs=[EngineInput(video), EngineInput(audio, ["-stream_loop", "-1"])],
        output=dst,
        nodes=[FilterNode(["1:a"], filters, "aout")],
        maps=["0:v", "[aout]"],
        codec_args=["-c:v", "copy", "-c:a", AUDIO_CODEC, "-shortest"],
    )
