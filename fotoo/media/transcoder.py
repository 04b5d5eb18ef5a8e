from __future__ import annotations

import os
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Sequence, Tuple

import cv2  # type: ignore

from fotoo.core.config import Settings
from fotoo.core.errors import ConversionError
from fotoo.core.logging import get_logger

THUMB_WIDTH = 512
CONTAINER_WORKDIR = "/work"

# H.264 at CRF 23 with AAC audio; faststart moves the moov atom to the front
# so playback can begin before the download completes.
MP4_PROFILE = (
    "-c:v", "libx264",
    "-preset", "medium",
    "-crf", "23",
    "-pix_fmt", "yuv420p",
    "-c:a", "aac",
    "-movflags", "+faststart",
)


def _scale_filter(width: int) -> str:
    # -2 keeps the aspect ratio and rounds the height to an even number.
    return f"scale={width}:-2"


class TranscoderBackend(ABC):
    """Format conversion and thumbnail extraction over local files.

    Subclasses only decide how a tool is launched; the argument lists and the
    quality profile are shared so both strategies produce the same formats.
    """

    name: str = "abstract"

    def __init__(self, *, timeout_s: float = 1800.0):
        self.timeout_s = timeout_s
        self.logger = get_logger(component="transcoder", backend=self.name)

    def convert_heic_to_jpeg(self, source: Path, target: Path) -> None:
        self._run_heic(source, target)
        self._require_output(target)

    def convert_mov_to_mp4(self, source: Path, target: Path) -> None:
        self._run_ffmpeg(
            source,
            target,
            ["-nostdin", "-v", "error", "-y", "-i", self._path(source), *MP4_PROFILE, self._path(target)],
        )
        self._require_output(target)

    def extract_image_thumbnail(self, source: Path, target: Path, width: int = THUMB_WIDTH) -> Tuple[int, int]:
        self._run_ffmpeg(
            source,
            target,
            [
                "-nostdin", "-v", "error", "-y",
                "-i", self._path(source),
                "-frames:v", "1",
                "-vf", _scale_filter(width),
                "-q:v", "3",
                self._path(target),
            ],
        )
        return self._measure(target)

    def extract_video_thumbnail(
        self,
        source: Path,
        target: Path,
        at_seconds: float,
        width: int = THUMB_WIDTH,
    ) -> Tuple[int, int]:
        self._run_ffmpeg(
            source,
            target,
            [
                "-nostdin", "-v", "error", "-y",
                "-ss", f"{max(at_seconds, 0.0):.3f}",
                "-i", self._path(source),
                "-frames:v", "1",
                "-vf", _scale_filter(width),
                "-q:v", "3",
                self._path(target),
            ],
        )
        return self._measure(target)

    def probe_duration(self, source: Path) -> float | None:
        """Return the container duration in seconds, or None when unknown."""
        output = self._run_ffprobe(
            source,
            [
                "-v", "error",
                "-show_entries", "format=duration",
                "-of", "default=noprint_wrappers=1:nokey=1",
                self._path(source),
            ],
        )
        try:
            return float(output.strip().splitlines()[0])
        except (IndexError, ValueError):
            return None

    @abstractmethod
    def _path(self, path: Path) -> str:
        """Render a local path the way the launched tool will see it."""

    @abstractmethod
    def _run_ffmpeg(self, source: Path, target: Path, args: Sequence[str]) -> None: ...

    @abstractmethod
    def _run_ffprobe(self, source: Path, args: Sequence[str]) -> str: ...

    @abstractmethod
    def _run_heic(self, source: Path, target: Path) -> None: ...

    def _execute(self, command: list[str]) -> str:
        self.logger.debug("transcoder_command", command=command)
        try:
            proc = subprocess.run(
                command,
                check=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self.timeout_s,
            )
        except FileNotFoundError as exc:
            raise ConversionError(f"{command[0]} is not installed") from exc
        except subprocess.TimeoutExpired as exc:
            raise ConversionError(f"{command[0]} timed out after {self.timeout_s:.0f}s") from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            raise ConversionError(f"{command[0]} exited with code {exc.returncode}", stderr=stderr) from exc
        return proc.stdout or ""

    @staticmethod
    def _require_output(target: Path) -> None:
        if not target.exists() or target.stat().st_size == 0:
            raise ConversionError(f"Conversion produced no output at {target.name}")

    @staticmethod
    def _measure(image_path: Path) -> Tuple[int, int]:
        image = cv2.imread(str(image_path))
        if image is None:
            image_path.unlink(missing_ok=True)
            raise ConversionError(f"Failed to read generated thumbnail at {image_path.name}")
        height, width = image.shape[:2]
        return width, height


class DockerTranscoder(TranscoderBackend):
    """Runs every tool in a throwaway, network-isolated container.

    Only the job directory is bind-mounted, so source and target must live in
    the same directory.
    """

    name = "docker"

    def __init__(
        self,
        *,
        docker_binary: str = "docker",
        ffmpeg_image: str = "jrottenberg/ffmpeg:4.4-alpine",
        heic_image: str = "heic-converter",
        user: str | None = None,
        timeout_s: float = 1800.0,
    ):
        super().__init__(timeout_s=timeout_s)
        self.docker_binary = docker_binary
        self.ffmpeg_image = ffmpeg_image
        self.heic_image = heic_image
        self.user = user

    def _path(self, path: Path) -> str:
        return f"{CONTAINER_WORKDIR}/{path.name}"

    def _mount(self, *paths: Path) -> str:
        directories = {path.resolve().parent for path in paths}
        if len(directories) != 1:
            raise ValueError("source and target must share a directory for the container mount")
        return f"{directories.pop()}:{CONTAINER_WORKDIR}"

    def _docker(self, mount: str, image: str, args: Sequence[str], *, entrypoint: str | None = None) -> list[str]:
        command = [self.docker_binary, "run", "--rm", "--network", "none", "-v", mount]
        # Outputs land in the job directory and must stay removable by the worker.
        if self.user:
            command += ["--user", self.user]
        if entrypoint:
            command += ["--entrypoint", entrypoint]
        return [*command, image, *args]

    def _run_ffmpeg(self, source: Path, target: Path, args: Sequence[str]) -> None:
        self._execute(self._docker(self._mount(source, target), self.ffmpeg_image, args))

    def _run_ffprobe(self, source: Path, args: Sequence[str]) -> str:
        return self._execute(self._docker(self._mount(source), self.ffmpeg_image, args, entrypoint="ffprobe"))

    def _run_heic(self, source: Path, target: Path) -> None:
        self._execute(
            self._docker(self._mount(source, target), self.heic_image, [self._path(source), self._path(target)])
        )


class LocalTranscoder(TranscoderBackend):
    """Runs ffmpeg, ffprobe and heif-convert installed on the host."""

    name = "local"

    def __init__(
        self,
        *,
        ffmpeg_binary: str = "ffmpeg",
        ffprobe_binary: str = "ffprobe",
        heif_convert_binary: str = "heif-convert",
        timeout_s: float = 1800.0,
    ):
        super().__init__(timeout_s=timeout_s)
        self.ffmpeg_binary = ffmpeg_binary
        self.ffprobe_binary = ffprobe_binary
        self.heif_convert_binary = heif_convert_binary

    def _path(self, path: Path) -> str:
        return str(path)

    def _run_ffmpeg(self, source: Path, target: Path, args: Sequence[str]) -> None:
        self._execute([self.ffmpeg_binary, *args])

    def _run_ffprobe(self, source: Path, args: Sequence[str]) -> str:
        return self._execute([self.ffprobe_binary, *args])

    def _run_heic(self, source: Path, target: Path) -> None:
        self._execute([self.heif_convert_binary, "-q", "90", str(source), str(target)])


def _process_user() -> str | None:
    if not hasattr(os, "getuid"):
        return None
    return f"{os.getuid()}:{os.getgid()}"


def get_transcoder(settings: Settings) -> TranscoderBackend:
    if settings.transcoder_backend == "docker":
        return DockerTranscoder(
            docker_binary=settings.docker_binary,
            ffmpeg_image=settings.ffmpeg_image,
            heic_image=settings.heic_image,
            user=settings.docker_user or _process_user(),
            timeout_s=settings.transcode_timeout_s,
        )
    if settings.transcoder_backend == "local":
        return LocalTranscoder(
            ffmpeg_binary=settings.ffmpeg_binary,
            ffprobe_binary=settings.ffprobe_binary,
            heif_convert_binary=settings.heif_convert_binary,
            timeout_s=settings.transcode_timeout_s,
        )
    raise ValueError(f"Unsupported transcoder backend: {settings.transcoder_backend}")


__all__ = [
    "MP4_PROFILE",
    "THUMB_WIDTH",
    "TranscoderBackend",
    "DockerTranscoder",
    "LocalTranscoder",
    "get_transcoder",
]
