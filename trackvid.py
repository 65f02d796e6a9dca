#!/usr/bin/env python3

import argparse
import logging
import math
import os
import shlex
import shutil
import subprocess
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import (
    Callable,
    Iterator,
    List,
    NoReturn,
    Optional,
    Sequence,
    Tuple,
    TypedDict,
)

AUDIO_EXT = ".mp3"
BG_VIDEO_NAME = "bg.mp4"
BG_IMAGE_NAME = "thumbnail.jpg"

BG_VIDEO = "video"
BG_IMAGE = "image"
BACKGROUND_CHOICES: List[Tuple[str, str]] = [
    (BG_VIDEO, f"{BG_VIDEO_NAME} (video)"),
    (BG_IMAGE, f"{BG_IMAGE_NAME} (image)"),
]

PRESETS = ["veryslow", "slow", "medium", "fast"]
DEFAULT_PRESET = "medium"

VIDEO_CRF = "18"
AUDIO_BITRATE = "320k"
PIX_FMT = "yuv420p"
# libx264 rejects odd frame sizes
EVEN_PAD_FILTER = "scale=iw:ih,pad=ceil(iw/2)*2:ceil(ih/2)*2"

MISSING_TOOL_EXIT = 127


class ExternalToolFailure(RuntimeError):
    def __init__(self, tool: str, args: Sequence[str], returncode: int) -> None:
        self.tool = tool
        self.tool_args = list(args)
        self.returncode = returncode
        super().__init__(f"{tool} exited with status {returncode}")

    @property
    def args_text(self) -> str:
        return " ".join(shlex.quote(a) for a in self.tool_args)


class DurationParseError(ValueError):
    pass


class ProcessResult(TypedDict):
    cmd: List[str]
    returncode: int
    stdout: str
    elapsed: float


class ProjectPaths(TypedDict):
    audio_dir: str
    output_dir: str
    list_file: str
    temp_audio: str
    backup_audio: str
    output_video: str
    bg_video: str
    bg_image: str


@dataclass(frozen=True)
class RunConfig:
    """Everything a run needs, resolved before any external process starts."""

    audio_root: str
    output_root: str
    project: str
    preset: str = DEFAULT_PRESET
    background: str = BG_VIDEO
    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"


def fail(message: str, *args: object) -> NoReturn:
    logging.error(message, *args)
    raise SystemExit(1)


def _print_command(cmd: Sequence[str]) -> None:
    print("+ " + " ".join(shlex.quote(str(part)) for part in cmd), file=sys.stderr)


def run_tool(cmd: List[str], capture: bool = False) -> ProcessResult:
    """Run one external command synchronously.

    With ``capture`` the command's stdout is collected and returned; otherwise
    the child inherits the console so encoder progress stays visible.
    """
    _print_command(cmd)
    started = time.monotonic()
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE if capture else None,
            stderr=subprocess.PIPE if capture else None,
        )
    except FileNotFoundError:
        raise ExternalToolFailure(cmd[0], cmd[1:], MISSING_TOOL_EXIT)
    elapsed = time.monotonic() - started
    if proc.returncode != 0:
        if capture and proc.stderr:
            logging.debug(
                "%s stderr: %s", cmd[0], proc.stderr.decode("utf-8", "replace").strip()
            )
        raise ExternalToolFailure(cmd[0], cmd[1:], proc.returncode)
    stdout = proc.stdout.decode("utf-8", "replace") if capture and proc.stdout else ""
    logging.debug("%s finished in %.2fs", cmd[0], elapsed)
    return {
        "cmd": list(cmd),
        "returncode": proc.returncode,
        "stdout": stdout,
        "elapsed": elapsed,
    }


def project_paths(audio_root: str, output_root: str, project: str) -> ProjectPaths:
    audio_dir = os.path.join(audio_root, project)
    output_dir = os.path.join(output_root, project)
    return {
        "audio_dir": audio_dir,
        "output_dir": output_dir,
        "list_file": os.path.join(output_dir, f"filelist_{project}.txt"),
        "temp_audio": os.path.join(output_dir, f"temp_full_{project}.mp3"),
        "backup_audio": os.path.join(output_dir, f"output_{project}.mp3"),
        "output_video": os.path.join(output_dir, f"output_{project}.mp4"),
        "bg_video": os.path.join(audio_dir, BG_VIDEO_NAME),
        "bg_image": os.path.join(audio_dir, BG_IMAGE_NAME),
    }


def list_project_folders(audio_root: str) -> List[str]:
    folders: List[str] = []
    if os.path.isdir(audio_root):
        folders = sorted(
            name
            for name in os.listdir(audio_root)
            if os.path.isdir(os.path.join(audio_root, name))
        )
    if not folders:
        fail("no project folders found under %s", audio_root)
    return folders


def list_tracks(audio_dir: str) -> List[str]:
    tracks = sorted(
        name
        for name in os.listdir(audio_dir)
        if name.lower().endswith(AUDIO_EXT)
        and os.path.isfile(os.path.join(audio_dir, name))
    )
    if not tracks:
        fail("no %s files in %s", AUDIO_EXT, audio_dir)
    return tracks


def prompt_choice(
    message: str,
    choices: Sequence[Tuple[str, str]],
    default: Optional[str] = None,
) -> str:
    """Ask the operator to pick one of ``choices`` (value, label pairs).

    Accepts the 1-based number or the value itself; an empty answer picks
    ``default`` when there is one.
    """
    values = [value for value, _ in choices]
    print(message)
    for idx, (value, label) in enumerate(choices, 1):
        marker = " (default)" if value == default else ""
        print(f"  {idx}) {label}{marker}")
    while True:
        try:
            answer = input("> ").strip()
        except EOFError:
            fail("no selection made for: %s", message)
        if not answer and default is not None:
            return default
        if answer.isdecimal() and 1 <= int(answer) <= len(values):
            return values[int(answer) - 1]
        if answer in values:
            return answer
        print(f"please enter a number between 1 and {len(values)}")


def resolve_background(
    paths: ProjectPaths,
    requested: Optional[str] = None,
    ask: Callable[..., str] = prompt_choice,
) -> str:
    has_video = os.path.isfile(paths["bg_video"])
    has_image = os.path.isfile(paths["bg_image"])
    available = {BG_VIDEO: has_video, BG_IMAGE: has_image}

    if requested is not None:
        if not available.get(requested):
            name = BG_VIDEO_NAME if requested == BG_VIDEO else BG_IMAGE_NAME
            fail("background %s requested but %s is missing", requested, name)
        return requested

    if has_video and has_image:
        return ask("Which background media should be used?", BACKGROUND_CHOICES)
    if has_video:
        logging.info("only %s found; using it as background", BG_VIDEO_NAME)
        return BG_VIDEO
    if has_image:
        logging.info("only %s found; using it as background", BG_IMAGE_NAME)
        return BG_IMAGE
    fail(
        "neither %s nor %s found in %s; at least one is required",
        BG_VIDEO_NAME,
        BG_IMAGE_NAME,
        paths["audio_dir"],
    )


def _escape_concat_path(path: str) -> str:
    return path.replace("'", "'\\''")


def write_concat_list(audio_dir: str, tracks: Sequence[str], list_path: str) -> None:
    with open(list_path, "w", encoding="utf-8") as fh:
        for name in tracks:
            abspath = os.path.abspath(os.path.join(audio_dir, name))
            fh.write(f"file '{_escape_concat_path(abspath)}'\n")
        fh.flush()
        os.fsync(fh.fileno())


def merge_tracks(ffmpeg: str, list_path: str, merged_path: str) -> ProcessResult:
    cmd = [
        ffmpeg,
        "-y",
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        list_path,
        "-c",
        "copy",
        merged_path,
    ]
    return run_tool(cmd)


def backup_audio(merged_path: str, backup_path: str) -> None:
    shutil.copyfile(merged_path, backup_path)


def parse_duration(text: str) -> float:
    raw = (text or "").strip()
    try:
        value = float(raw)
    except ValueError:
        raise DurationParseError(f"not a duration: {raw!r}")
    if not math.isfinite(value) or value <= 0:
        raise DurationParseError(f"not a positive duration: {raw!r}")
    return value


def probe_duration(ffprobe: str, path: str) -> float:
    cmd = [
        ffprobe,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        path,
    ]
    result = run_tool(cmd, capture=True)
    return parse_duration(result["stdout"])


def video_background_command(
    ffmpeg: str,
    bg_video: str,
    audio: str,
    output: str,
    duration: float,
    preset: str,
) -> List[str]:
    return [
        ffmpeg,
        "-y",
        "-stream_loop",
        "-1",
        "-i",
        bg_video,
        "-i",
        audio,
        # keep the background's own audio out of the output
        "-map",
        "0:v",
        "-map",
        "1:a",
        "-t",
        str(duration),
        "-c:v",
        "libx264",
        "-crf",
        VIDEO_CRF,
        "-preset",
        preset,
        "-pix_fmt",
        PIX_FMT,
        "-c:a",
        "aac",
        "-b:a",
        AUDIO_BITRATE,
        output,
    ]


def image_background_command(
    ffmpeg: str,
    bg_image: str,
    audio: str,
    output: str,
    preset: str,
) -> List[str]:
    return [
        ffmpeg,
        "-y",
        "-loop",
        "1",
        "-i",
        bg_image,
        "-i",
        audio,
        "-vf",
        EVEN_PAD_FILTER,
        "-c:v",
        "libx264",
        "-tune",
        "stillimage",
        "-crf",
        VIDEO_CRF,
        "-preset",
        preset,
        "-c:a",
        "aac",
        "-b:a",
        AUDIO_BITRATE,
        "-shortest",
        "-pix_fmt",
        PIX_FMT,
        output,
    ]


def compose_video(config: RunConfig, paths: ProjectPaths) -> ProcessResult:
    if config.background == BG_VIDEO:
        logging.info("composing video over %s", BG_VIDEO_NAME)
        duration = probe_duration(config.ffprobe, paths["temp_audio"])
        logging.info("audio duration: %.2f seconds", duration)
        cmd = video_background_command(
            config.ffmpeg,
            paths["bg_video"],
            paths["temp_audio"],
            paths["output_video"],
            duration,
            config.preset,
        )
    elif config.background == BG_IMAGE:
        logging.info("composing video over %s", BG_IMAGE_NAME)
        cmd = image_background_command(
            config.ffmpeg,
            paths["bg_image"],
            paths["temp_audio"],
            paths["output_video"],
            config.preset,
        )
    else:
        raise ValueError(f"unknown background mode: {config.background}")
    return run_tool(cmd)


@contextmanager
def temporary_artifacts(*paths: str) -> Iterator[None]:
    try:
        yield
    finally:
        removed = 0
        for pth in paths:
            try:
                os.remove(pth)
                removed += 1
            except FileNotFoundError:
                pass
        if removed:
            logging.info("removed %d temporary file(s)", removed)


def run_pipeline(config: RunConfig) -> str:
    if config.preset not in PRESETS:
        fail("unknown preset %s; valid: %s", config.preset, ", ".join(PRESETS))
    if config.background not in (BG_VIDEO, BG_IMAGE):
        fail("unknown background mode: %s", config.background)

    paths = project_paths(config.audio_root, config.output_root, config.project)
    if not os.path.isdir(paths["audio_dir"]):
        fail("project folder not found: %s", paths["audio_dir"])

    tracks = list_tracks(paths["audio_dir"])
    logging.info("tracks: %s", ", ".join(tracks))

    bg_key = "bg_video" if config.background == BG_VIDEO else "bg_image"
    if not os.path.isfile(paths[bg_key]):
        fail("background file missing: %s", paths[bg_key])

    os.makedirs(paths["output_dir"], exist_ok=True)

    with temporary_artifacts(paths["list_file"], paths["temp_audio"]):
        write_concat_list(paths["audio_dir"], tracks, paths["list_file"])

        logging.info("merging %d track(s)", len(tracks))
        merge_tracks(config.ffmpeg, paths["list_file"], paths["temp_audio"])
        backup_audio(paths["temp_audio"], paths["backup_audio"])
        logging.info("merged audio saved: %s", paths["backup_audio"])

        compose_video(config, paths)
        logging.info("video written: %s", paths["output_video"])

    return paths["output_video"]


def resolve_config(args: argparse.Namespace) -> RunConfig:
    root = os.path.abspath(args.root)
    audio_root = os.path.abspath(args.audio_root or os.path.join(root, "audio"))
    output_root = os.path.abspath(args.output_root or os.path.join(root, "output"))

    folders = list_project_folders(audio_root)
    project = args.project
    if project is None:
        project = prompt_choice(
            "Which folder should be used?", [(f, f) for f in folders]
        )
    elif project not in folders:
        fail("unknown project folder %s; available: %s", project, ", ".join(folders))

    preset = args.preset
    if preset is None:
        preset = prompt_choice(
            "Encoding preset (slower is smaller at the same quality)",
            [(p, p) for p in PRESETS],
            default=DEFAULT_PRESET,
        )

    paths = project_paths(audio_root, output_root, project)
    list_tracks(paths["audio_dir"])
    background = resolve_background(paths, args.background)

    return RunConfig(
        audio_root=audio_root,
        output_root=output_root,
        project=project,
        preset=preset,
        background=background,
        ffmpeg=args.ffmpeg,
        ffprobe=args.ffprobe,
    )


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="Merge a folder of mp3 tracks and render them over a looping background video or a still image."
    )
    ap.add_argument(
        "--root",
        default=os.getenv("TRACKVID_ROOT", os.getcwd()),
        help="Directory holding audio/ and output/.",
    )
    ap.add_argument("--audio-root", help="Input root (default: ROOT/audio).")
    ap.add_argument("--output-root", help="Output root (default: ROOT/output).")
    ap.add_argument("--project", help="Project folder name; prompts when omitted.")
    ap.add_argument(
        "--preset",
        choices=PRESETS,
        help="x264 preset; prompts when omitted.",
    )
    ap.add_argument(
        "--background",
        choices=[BG_VIDEO, BG_IMAGE],
        help="Background media; asked only when both bg.mp4 and thumbnail.jpg exist.",
    )
    ap.add_argument("--ffmpeg", default=os.getenv("FFMPEG_PATH", "ffmpeg"))
    ap.add_argument("--ffprobe", default=os.getenv("FFPROBE_PATH", "ffprobe"))
    ap.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Show debug output.",
    )
    ap.add_argument(
        "-q", "--quiet", action="store_true", help="Only warnings and errors."
    )
    return ap


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    level = (
        logging.WARNING
        if args.quiet
        else (logging.INFO if args.verbose == 0 else logging.DEBUG)
    )
    logging.basicConfig(
        level=level, stream=sys.stderr, format="%(levelname)s: %(message)s"
    )

    for tool in (args.ffmpeg, args.ffprobe):
        if shutil.which(tool) is None:
            fail("%s not found; install ffmpeg or pass --ffmpeg/--ffprobe", tool)

    config = resolve_config(args)
    try:
        run_pipeline(config)
    except ExternalToolFailure as exc:
        logging.error(
            "%s failed (status %d): %s", exc.tool, exc.returncode, exc.args_text
        )
        sys.exit(1)
    except DurationParseError as exc:
        logging.error("could not read audio duration: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
