"""Command line entry: ``python -m gencourier {image,video,batch} ...``.

Run:
    python -m gencourier image "A linen shirt, studio light" --out shirt.png
    python -m gencourier batch --input ./frames --prompt "Slow dolly in" --out ./videos
    python -m gencourier batch --input ./frames --prompts prompts.txt --out ./videos --retry-failed
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
import sys
from typing import TYPE_CHECKING

import gencourier
from gencourier.classify import describe
from gencourier.config import DEFAULT_VIDEO_MODEL, PRO_IMAGE_MODEL, Config
from gencourier.errors import ConfigurationError, GencourierError
from gencourier.retry import RetryPolicy

if TYPE_CHECKING:
    from gencourier.batch import StatusEvent

_IMAGE_EXTS = (".png", ".jpg", ".jpeg", ".webp")


def add_runtime_args(parser: argparse.ArgumentParser) -> None:
    """Add common provider/model/runtime arguments to a subcommand."""
    parser.add_argument("--model", default=PRO_IMAGE_MODEL, help="Image model id.")
    parser.add_argument("--video-model", default=DEFAULT_VIDEO_MODEL, help="Video model id.")
    parser.add_argument(
        "--fallback",
        action="append",
        default=None,
        help="Fallback model id (repeatable). Defaults depend on --model.",
    )
    parser.add_argument(
        "--retry-delays",
        default="0.8,1.6,3.2",
        help="Comma-separated seconds to wait between overload retries.",
    )
    parser.add_argument("--poll-interval", type=float, default=10.0)
    parser.add_argument("--max-polls", type=int, default=60)
    parser.add_argument("--cooldown", type=float, default=5.0)
    parser.add_argument(
        "--mock",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Run against the mock provider (no API calls).",
    )
    parser.add_argument("--api-key", default=None, help="Overrides GEMINI_API_KEY.")
    parser.add_argument("-v", "--verbose", action="count", default=0)


def build_config_or_exit(args: argparse.Namespace) -> Config:
    """Build Config from parsed args, exiting with a concise actionable error."""
    try:
        delays = tuple(float(d) for d in args.retry_delays.split(",") if d.strip())
        return Config(
            model=args.model,
            video_model=args.video_model,
            api_key=args.api_key,
            use_mock=bool(args.mock),
            fallback_models=tuple(args.fallback) if args.fallback else None,
            retry=RetryPolicy(delays_s=delays),
            poll_interval_s=args.poll_interval,
            max_polls=args.max_polls,
            cooldown_s=args.cooldown,
        )
    except (ConfigurationError, ValueError) as exc:
        hint = getattr(exc, "hint", None)
        print(f"Configuration error: {exc}.{f' Hint: {hint}' if hint else ''}", file=sys.stderr)
        raise SystemExit(2) from exc


def _pick_images(directory: Path) -> list[Path]:
    if not directory.is_dir():
        raise SystemExit(f"Not a directory: {directory}")
    files = sorted(p for p in directory.iterdir() if p.suffix.lower() in _IMAGE_EXTS)
    if not files:
        raise SystemExit(f"No images found under: {directory}")
    return files


def _print_event(event: StatusEvent) -> None:
    p = event.progress
    suffix = ""
    if event.item.error_category is not None:
        suffix = f" [{event.item.error_category.value}] {event.item.hint}"
        if event.item.retry_after_s is not None:
            suffix += f" (retry in {event.item.retry_after_s:g}s)"
    print(
        f"[{p.completed + p.errored}/{p.total}] {event.item.label}: "
        f"{event.current.value}{suffix}"
    )


async def _cmd_image(args: argparse.Namespace, config: Config) -> int:
    response = await gencourier.generate_image(
        args.prompt, config=config, assets=args.ref or (), aspect_ratio=args.aspect_ratio
    )
    image = response.first_image
    if image is None:  # pragma: no cover - provider raises first
        print("No image returned", file=sys.stderr)
        return 1
    Path(args.out).write_bytes(image.data)
    print(f"Saved {args.out} (model={response.model})")
    return 0


async def _cmd_video(args: argparse.Namespace, config: Config) -> int:
    result = await gencourier.generate_video(
        args.prompt,
        config=config,
        asset=args.image,
        aspect_ratio=args.aspect_ratio,
        on_state=lambda state: print(f"{state}..."),
    )
    Path(args.out).write_bytes(result.data)
    print(f"Saved {args.out}")
    return 0


async def _cmd_batch(args: argparse.Namespace, config: Config) -> int:
    assets = _pick_images(Path(args.input))
    prompts = Path(args.prompts).read_text() if args.prompts else args.prompt
    if not prompts:
        raise SystemExit("Pass --prompt or --prompts FILE")

    batch = await gencourier.run_batch(
        assets,
        prompts,
        config=config,
        observers=[_print_event],
        aspect_ratio=args.aspect_ratio,
    )
    async with batch:
        if args.retry_failed and batch.progress().errored:
            print("Retrying failed items...")
            await batch.retry_all_failed()

    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)
    for item in batch.items:
        if item.output is not None:
            (out_dir / f"{Path(item.label).stem}.mp4").write_bytes(item.output)
    progress = batch.progress()
    print(f"Done: {progress.completed} completed, {progress.errored} failed")
    return 0 if progress.errored == 0 else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gencourier", description=__doc__.splitlines()[0])
    sub = parser.add_subparsers(dest="command", required=True)

    image = sub.add_parser("image", help="Generate one image.")
    image.add_argument("prompt")
    image.add_argument("--ref", action="append", help="Reference image (repeatable).")
    image.add_argument("--out", default="image.png")
    image.add_argument("--aspect-ratio", default=None)
    add_runtime_args(image)

    video = sub.add_parser("video", help="Generate one video.")
    video.add_argument("prompt")
    video.add_argument("--image", default=None, help="Optional start frame.")
    video.add_argument("--out", default="video.mp4")
    video.add_argument("--aspect-ratio", default=None)
    add_runtime_args(video)

    batch = sub.add_parser("batch", help="Generate one video per image in a folder.")
    batch.add_argument("--input", required=True, help="Folder of source images.")
    batch.add_argument("--prompt", default=None, help="Prompt shared by every item.")
    batch.add_argument("--prompts", default=None, help="File with one prompt per line.")
    batch.add_argument("--out", default="videos")
    batch.add_argument("--aspect-ratio", default=None)
    batch.add_argument("--retry-failed", action="store_true")
    add_runtime_args(batch)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose > 1 else logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = build_config_or_exit(args)
    command = {"image": _cmd_image, "video": _cmd_video, "batch": _cmd_batch}[args.command]
    try:
        return asyncio.run(command(args, config))
    except GencourierError as exc:
        classification = describe(exc)
        wait = (
            f" (retry in {classification.retry_after_s:g}s)"
            if classification.retry_after_s is not None
            else ""
        )
        print(
            f"Error [{classification.category.value}]: {exc}{wait}\nHint: {exc.hint or classification.hint}",
            file=sys.stderr,
        )
        return 1


if __name__ == "__main__":
    sys.exit(main())
