from __future__ import annotations

import argparse
import asyncio
import mimetypes
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Optional

from rich.console import Console

from .api.v1.routes_admin import toolchain_report
from .core.config import get_settings
from .core.errors import ConversionError, UnsupportedFormat
from .core.logging import configure_logging, level_from_name
from .media.classifier import FormatCategory, classify, output_format
from .media.transcoder import get_transcoder

console = Console()


def main(argv: Optional[list[str]] = None) -> None:
    """The main entry point for the CLI.

    Args:
        argv: The command-line arguments.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if getattr(args, "check", False):
        _run_environment_check()
        return

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    settings = get_settings()
    configure_logging(level_from_name(settings.log_level))
    args.func(args)


def _build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the CLI.

    Returns:
        The argument parser.
    """
    parser = argparse.ArgumentParser(description="Fotoo media processing CLI")
    parser.add_argument("--check", action="store_true", help="Validate presence of the transcoding toolchain")

    subparsers = parser.add_subparsers(dest="command")

    classify_parser = subparsers.add_parser("classify", help="Print the processing category for a MIME type and key")
    classify_parser.add_argument("--mime", default="", help="Declared MIME type")
    classify_parser.add_argument("--key", default="", help="Storage key or filename")
    classify_parser.set_defaults(func=_cmd_classify)

    convert_parser = subparsers.add_parser("convert", help="Convert a local file and derive its thumbnail")
    convert_parser.add_argument("--file", required=True, help="Path to the source media file")
    convert_parser.add_argument("--out-dir", default="converted", help="Directory receiving the derived files")
    convert_parser.add_argument("--mime", default=None, help="Override the MIME type guessed from the extension")
    convert_parser.set_defaults(func=_cmd_convert)

    process_parser = subparsers.add_parser("process", help="Run the processing pipeline for one asset inline")
    process_parser.add_argument("asset_id", help="Identifier of the asset to process")
    process_parser.set_defaults(func=_cmd_process)

    worker_parser = subparsers.add_parser("worker", help="Run an RQ worker for the processing queue")
    worker_parser.add_argument("--burst", action="store_true", help="Exit once the queue is empty")
    worker_parser.set_defaults(func=_cmd_worker)
    return parser


def _cmd_classify(args: argparse.Namespace) -> None:
    category = classify(args.mime, args.key)
    console.print_json(data={"mime_type": args.mime, "key": args.key, "category": category.value})


def _cmd_convert(args: argparse.Namespace) -> None:
    """Run the configured transcoder against a local file.

    Args:
        args: The command-line arguments.
    """
    media_path = Path(args.file).expanduser().resolve()
    if not media_path.exists():
        console.print(f"[red]File not found: {media_path}[/]")
        sys.exit(2)

    mime_type = args.mime or mimetypes.guess_type(media_path.name)[0] or ""
    category = classify(mime_type, media_path.name)
    try:
        target = output_format(category, mime_type, media_path.name)
    except UnsupportedFormat as exc:
        console.print(f"[red]{exc.message}[/]")
        sys.exit(3)

    settings = get_settings()
    transcoder = get_transcoder(settings)
    out_dir = Path(args.out_dir).expanduser().resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    if settings.work_dir is not None:
        settings.work_dir.mkdir(parents=True, exist_ok=True)

    # Both strategies want source and outputs side by side in one directory.
    with tempfile.TemporaryDirectory(prefix="fotoo-cli-", dir=settings.work_dir) as scratch:
        work = Path(scratch)
        source = work / f"source{media_path.suffix}"
        shutil.copyfile(media_path, source)
        processed = work / f"{media_path.stem}.{target.extension}" if target.needs_conversion else source
        thumbnail = work / f"{media_path.stem}_thumb.jpg"
        try:
            if category is FormatCategory.heic_like:
                transcoder.convert_heic_to_jpeg(source, processed)
            elif category is FormatCategory.quicktime:
                transcoder.convert_mov_to_mp4(source, processed)
            if target.is_video:
                width, height = transcoder.extract_video_thumbnail(
                    processed, thumbnail, settings.video_thumbnail_offset_s, settings.thumbnail_width
                )
            else:
                width, height = transcoder.extract_image_thumbnail(processed, thumbnail, settings.thumbnail_width)
        except ConversionError as exc:
            console.print(f"[red]Conversion failed:[/] {exc.message}")
            if exc.stderr:
                console.print(exc.stderr)
            sys.exit(4)

        final_processed = out_dir / f"{media_path.stem}.{target.extension}"
        final_thumbnail = out_dir / thumbnail.name
        shutil.copyfile(processed, final_processed)
        shutil.copyfile(thumbnail, final_thumbnail)

    console.print_json(
        data={
            "category": category.value,
            "transcoder": transcoder.name,
            "processed": {"path": str(final_processed), "mime_type": target.mime_type},
            "thumbnail": {"path": str(final_thumbnail), "width_px": width, "height_px": height},
        }
    )


def _cmd_process(args: argparse.Namespace) -> None:
    from .core.db import create_engine, create_session_factory
    from .workers.tasks import build_processing_service

    settings = get_settings()
    engine = create_engine(settings)
    service = build_processing_service(settings, create_session_factory(engine))

    async def _runner():
        try:
            return await service.process_asset(args.asset_id)
        finally:
            await engine.dispose()

    record = asyncio.run(_runner())
    if record is None:
        console.print(f"[yellow]Nothing to do for {args.asset_id} (missing or already processing).[/]")
        return
    colour = "green" if record.status.value == "processed" else "red"
    console.print(f"[{colour}]{record.id}: {record.status.value}[/]")
    console.print_json(
        data={
            "processed_key": record.processed_key,
            "thumbnail_key": record.thumbnail_key,
            "error": record.error,
        }
    )


def _cmd_worker(args: argparse.Namespace) -> None:
    from rq import Worker

    from .core.jobs import get_rq_queue

    settings = get_settings()
    if settings.normalized_job_backend != "rq":
        console.print("[red]The worker command needs FOTOO_JOB_QUEUE_BACKEND=rq.[/]")
        sys.exit(1)
    queue = get_rq_queue(settings)
    console.print(f"[dim]Consuming {queue.name} from {settings.redis_url}[/]")
    # The scheduler is what re-enqueues jobs after their retry interval.
    Worker([queue], connection=queue.connection).work(with_scheduler=True, burst=args.burst)


def _run_environment_check() -> None:
    """Check for the presence of required external dependencies."""
    settings = get_settings()
    results = toolchain_report(settings)
    if settings.transcoder_backend == "docker":
        required = {"docker"}
    else:
        required = {"ffmpeg", "ffprobe", "heif_convert"}

    console.rule(f"[bold]Environment Check ({settings.transcoder_backend} transcoder)")
    for label, ok in results.items():
        marker = "" if label in required else " [dim](optional)[/]"
        console.print(f"[bold]{label}[/]: {'✅' if ok else '❌'}{marker}")

    if not all(results[label] for label in required):
        console.print("[red]Missing dependencies detected for the configured transcoder backend.[/]")
        sys.exit(1)
    console.print("[green]Environment looks good![/]")


if __name__ == "__main__":
    main()
