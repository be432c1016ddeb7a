#!/usr/bin/env python3
"""CLI wrapper for the generation orchestrator.

Usage:
    python carousel_cli.py "neon alley background" "hero close-up" "wide shot"
    python carousel_cli.py --prompts-file story.txt --mode sequential --size 2K
    python carousel_cli.py --prompts-file slides.txt --subject me.png --zip
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import time
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

import log_setup
log_setup.configure()

import archive
import carousel_core
import image_client
from session import SessionContext
from steps import (
    AspectRatio,
    GenerationMode,
    ImageRef,
    ImageSize,
    InlineImage,
    Step,
    new_step,
    parse_image_ref,
)
from workspace import Workspace


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Generate a carousel or chained image sequence",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python carousel_cli.py "sunset beach background" "surfer" "seagulls"
  python carousel_cli.py --prompts-file story.txt --mode sequential
  python carousel_cli.py --prompts-file slides.txt --provider replicate --model google/nano-banana-pro
""",
    )
    parser.add_argument("prompts", nargs="*", help="Step prompts, in order (empty string = skipped step)")
    parser.add_argument("--prompts-file", help="Text file with one prompt per line")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in GenerationMode],
        default=GenerationMode.CAROUSEL.value,
        help="carousel: step 1 is a shared background; sequential: each step builds on the last",
    )
    parser.add_argument("--size", choices=[s.value for s in ImageSize], default=ImageSize.SIZE_1K.value)
    parser.add_argument(
        "--aspect-ratio",
        choices=[r.value for r in AspectRatio],
        default=AspectRatio.SQUARE.value,
    )
    parser.add_argument(
        "--provider",
        choices=["gemini", "replicate"],
        default="gemini",
        help="Image provider (default: gemini)",
    )
    parser.add_argument("--model", default=None, help="Image model id (default depends on provider)")
    parser.add_argument("--subject", default=None, help="Subject reference image: file path or URL")
    parser.add_argument(
        "--no-subject-on-base",
        action="store_true",
        help="In carousel mode, do not condition the background on the subject",
    )
    parser.add_argument(
        "--output-dir",
        default="cli_output",
        help="Directory to save images (default: cli_output)",
    )
    parser.add_argument("--zip", action="store_true", help="Also write a ZIP of every generated slide")
    parser.add_argument("--list-models", action="store_true", help="List available models and exit")

    args = parser.parse_args(argv)

    if args.list_models:
        _list_models()
        return 0

    prompts = list(args.prompts)
    if args.prompts_file:
        prompts.extend(Path(args.prompts_file).read_text(encoding="utf-8").splitlines())
    if not any(p.strip() for p in prompts):
        parser.error("at least one non-empty prompt is required")

    env_var = "REPLICATE_API_TOKEN" if args.provider == "replicate" else "GEMINI_API_KEY"
    api_key = os.environ.get(env_var)
    if not api_key:
        print(f"✗  {env_var} not set", file=sys.stderr)
        return 2

    subject: Optional[ImageRef] = None
    if args.subject:
        try:
            subject = _load_subject(args.subject)
        except (OSError, ValueError) as exc:
            print(f"✗  Cannot read subject image: {exc}", file=sys.stderr)
            return 2

    model = args.model or image_client.default_model_for(args.provider)
    steps = [new_step(p.strip(), use_subject=subject is not None) for p in prompts]
    if args.no_subject_on_base and args.mode == GenerationMode.CAROUSEL.value:
        steps[0] = Step(id=steps[0].id, prompt=steps[0].prompt, use_subject=False)

    workspace = Workspace(
        steps,
        mode=args.mode,
        image_size=args.size,
        aspect_ratio=args.aspect_ratio,
        model=model,
        subject=subject,
    )
    session = SessionContext(api_key, args.provider)

    output_dir = Path(args.output_dir) / f"{args.mode}_{int(time.time())}"
    output_dir.mkdir(parents=True, exist_ok=True)

    _echo("\n  ✦ Carru CLI")
    _echo(f"  Mode    : {args.mode}")
    _echo(f"  Steps   : {len(steps)}")
    _echo(f"  Model   : {model}  ({args.size}, {args.aspect_ratio})")
    _echo(f"  Subject : {args.subject or '—'}")
    _echo(f"  Output  : {output_dir}\n")

    def progress_cb(event: dict) -> None:
        prefix = {
            "started":   "  ◌ ",
            "completed": "  ✓ ",
            "failed":    "  ✗ ",
            "skipped":   "  – ",
            "aborted":   "  ✗ ",
        }.get(event.get("status", ""), "    ")
        _echo(f"{prefix}{event.get('message', '')}")

    orchestrator = carousel_core.Orchestrator(
        workspace,
        image_client.create_client(session),
        progress_cb=progress_cb,
    )
    summary = asyncio.run(orchestrator.run())

    written = _write_images(workspace, output_dir)

    if args.zip:
        for step in workspace.steps:
            if step.has_image and not step.is_approved:
                workspace.toggle_approval(step.id)
        try:
            data = archive.build_archive(workspace.steps, workspace.mode)
        except image_client.ConditioningFetchError as exc:
            _echo(f"  ⚠ Archive skipped, an image could not be downloaded: {exc.reason}")
            data = None
        if data:
            zip_path = output_dir / "carousel.zip"
            zip_path.write_bytes(data)
            _echo(f"  ✓ Archive saved: {zip_path}")

    _echo("\n  ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    _echo(f"  Images  : {len(summary['completed'])}/{sum(1 for s in steps if not s.is_blank)} generated")
    _echo(f"  Failed  : {len(summary['failed'])}{'  (run stopped)' if summary['aborted'] else ''}")
    _echo(f"  Duration: {summary['duration']:.1f}s")
    _echo(f"  Output  : {output_dir}  ({written} files)\n")

    if workspace.needs_credential:
        print(f"✗  The provider rejected the key in {env_var}", file=sys.stderr)
    return 1 if summary["failed"] or summary["aborted"] else 0


def _load_subject(value: str) -> ImageRef:
    if value.startswith(("http://", "https://", "data:")):
        return parse_image_ref(value)
    data = Path(value).read_bytes()
    return InlineImage(data, image_client.sniff_mime_type(data))


def _write_images(workspace: Workspace, output_dir: Path) -> int:
    count = 0
    for index, step in enumerate(workspace.steps, start=1):
        if not step.has_image:
            continue
        try:
            data = image_client.load_image_bytes(step.image)
        except image_client.ConditioningFetchError as exc:
            _echo(f"  ⚠ Step {index} image could not be downloaded: {exc.reason}")
            continue
        ext = image_client.sniff_mime_type(data).split("/")[-1].replace("jpeg", "jpg")
        (output_dir / f"step-{index:02d}.{ext}").write_bytes(data)
        count += 1
    return count


def _list_models() -> None:
    print("\nAvailable Image Models")
    print("─" * 40)
    for provider in ("gemini", "replicate"):
        print(f"{provider}:")
        for m in image_client.models_for(provider):
            print(f"  {m['id']}")
            print(f"    {m['description']}")
    print()


def _echo(msg: str) -> None:
    print(msg, flush=True)


if __name__ == "__main__":
    raise SystemExit(main())
