# Plan Compiler: ExecutionPlan + (url -> yerel dosya) eşlemesinden ffmpeg argüman listesi üretir.
# Saf fonksiyonlar; I/O yok, aynı girdi her zaman aynı argümanları üretir.

from typing import Mapping

from .errors import PlanValidationError
from .schemas import ExecutionPlan

DEFAULT_ENCODER = "ffmpeg"
VIDEO_CODEC = "libx264"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"


def _sec(ms: int) -> str:
    """Milisaniyeyi ffmpeg'in beklediği saniye metnine çevirir: 5000 -> "5", 1500 -> "1.5"."""
    return format(ms / 1000, ".3f").rstrip("0").rstrip(".")


def _num(value: float) -> str:
    return format(value, "g")


def _backslash(value: str, specials: str) -> str:
    return "".join("\\" + c if c in specials else c for c in value)


# ffmpeg bir option değerini iki kez çözer: önce filtergraph parser'ı,
# sonra filtre option parser'ı. İkisi de '\' ve tırnakları tüketir.
_OPTION_SPECIALS = "\\':"
_GRAPH_SPECIALS = "\\'[],;"


def _escape_option(value: str) -> str:
    """Değeri tırnaksız, iki seviye backslash ile filtergraph'a gömülebilir hale getirir."""
    return _backslash(_backslash(value, _OPTION_SPECIALS), _GRAPH_SPECIALS)


def _escape_drawtext(text: str) -> str:
    # drawtext kendi içinde de '\' ve '%' genişletmesi yapar
    return _escape_option(text.replace("\\", "\\\\").replace("%", "\\%"))


def validate_plan(plan: ExecutionPlan) -> None:
    """Encoder'a gitmeden önce yakalanması gereken plan hataları."""
    if not plan.timeline:
        raise PlanValidationError("execution plan has an empty timeline; nothing to render")

    for i, seg in enumerate(plan.timeline):
        if seg.trim_end_ms is not None and seg.trim_end_ms <= seg.trim_start_ms:
            raise PlanValidationError(
                f"timeline[{i}]: trim window end ({seg.trim_end_ms}ms) must be after start ({seg.trim_start_ms}ms)",
                detail={"field": f"timeline.{i}", "asset_url": seg.asset_url},
            )

    for i, track in enumerate(plan.audio_tracks):
        if track.timeline_end_ms <= track.timeline_start_ms:
            raise PlanValidationError(
                f"audio_tracks[{i}]: placement window end ({track.timeline_end_ms}ms) "
                f"must be after start ({track.timeline_start_ms}ms)",
                detail={"field": f"audio_tracks.{i}", "asset_url": track.asset_url},
            )

    for i, overlay in enumerate(plan.text_overlays):
        if overlay.end_ms <= overlay.start_ms:
            raise PlanValidationError(
                f"text_overlays[{i}]: window end ({overlay.end_ms}ms) must be after start ({overlay.start_ms}ms)",
                detail={"field": f"text_overlays.{i}"},
            )


def compile_plan(
    plan: ExecutionPlan,
    local_paths: Mapping[str, str],
    output_path: str,
    *,
    program: str = DEFAULT_ENCODER,
    preset: str = "fast",
) -> tuple[str, list[str]]:
    """
    Execution Plan'i tek bir `-filter_complex` içeren ffmpeg komutuna derler.

    Her farklı yerel dosya bir kez `-i` olarak eklenir (ilk görülme sırası);
    aynı dosyayı kullanan segmentler aynı input'u ayrı ayrı filtreler.
    Audio track yoksa çıktı sadece videodur: sessizlik üretilmez, kaynak ses kullanılmaz.

    Returns: (program, args)
    Raises: PlanValidationError
    """
    validate_plan(plan)

    def local(url: str) -> str:
        path = local_paths.get(url)
        if not path:
            raise PlanValidationError(
                f"asset has no local file: {url}", detail={"asset_url": url}
            )
        return str(path)

    inputs: list[str] = []
    input_index: dict[str, int] = {}

    def input_for(url: str) -> int:
        path = local(url)
        if path not in input_index:
            input_index[path] = len(inputs)
            inputs.append(path)
        return input_index[path]

    width = plan.output_format.width
    height = plan.output_format.height
    filters: list[str] = []

    # 1) segment başına trim + normalize
    segment_tags = []
    for i, seg in enumerate(plan.timeline):
        idx = input_for(seg.asset_url)
        trim = f"trim=start={_sec(seg.trim_start_ms)}"
        if seg.trim_end_ms is not None:
            trim += f":end={_sec(seg.trim_end_ms)}"
        filters.append(
            f"[{idx}:v]{trim},setpts=PTS-STARTPTS,"
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,"
            f"setsar=1[v{i}]"
        )
        segment_tags.append(f"[v{i}]")

    # 2) sadece video concat; ses ayrı işleniyor
    filters.append(f"{''.join(segment_tags)}concat=n={len(segment_tags)}:v=1:a=0[main_v]")
    video_tag = "[main_v]"

    # 3) text overlay'ler sırayla zincirlenir
    for i, overlay in enumerate(plan.text_overlays):
        next_tag = f"[v_txt_{i}]"
        parts = []
        if overlay.font_file:
            parts.append(f"fontfile={_escape_option(overlay.font_file)}")
        parts.append(f"text={_escape_drawtext(overlay.text)}")
        parts.append(f"fontsize={overlay.font_size}")
        parts.append(f"fontcolor={_escape_option(overlay.color)}")
        parts.append(f"x={_escape_option(overlay.x)}")
        parts.append(f"y={_escape_option(overlay.y)}")
        if overlay.box:
            parts.append(f"box=1:boxcolor={_escape_option(overlay.box_color)}:boxborderw=5")
        parts.append(f"enable='between(t,{_sec(overlay.start_ms)},{_sec(overlay.end_ms)})'")
        filters.append(f"{video_tag}drawtext={':'.join(parts)}{next_tag}")
        video_tag = next_tag

    # 4) audio: trim -> delay -> gain, sonra hepsi tek mix
    audio_tag = None
    if plan.audio_tracks:
        track_tags = []
        for i, track in enumerate(plan.audio_tracks):
            idx = input_for(track.asset_url)
            duration = track.timeline_end_ms - track.timeline_start_ms
            delay = track.timeline_start_ms
            filters.append(
                f"[{idx}:a]atrim=start={_sec(track.trim_start_ms)}:duration={_sec(duration)},"
                f"asetpts=PTS-STARTPTS,"
                f"adelay={delay}|{delay},"
                f"volume={_num(track.volume)}[a_track_{i}]"
            )
            track_tags.append(f"[a_track_{i}]")
        filters.append(
            f"{''.join(track_tags)}amix=inputs={len(track_tags)}:duration=longest:normalize=0[mixed_a]"
        )
        audio_tag = "[mixed_a]"

    # 5) final argümanlar
    args: list[str] = []
    for path in inputs:
        args += ["-i", path]
    args += ["-filter_complex", ";".join(filters), "-map", video_tag]
    if audio_tag:
        args += ["-map", audio_tag, "-c:a", AUDIO_CODEC, "-b:a", AUDIO_BITRATE]
    args += [
        "-c:v", VIDEO_CODEC,
        "-preset", preset,
        "-pix_fmt", "yuv420p",
        "-movflags", "+faststart",
        "-y",
        str(output_path),
    ]
    return program, args
