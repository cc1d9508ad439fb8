#!/usr/bin/env python3
"""CLI wrapper for the ad-creative pipeline.

Usage:
    python ad_cli.py --login sk-...
    python ad_cli.py --competitor rival.png --description "A faster checkout flow"
    python ad_cli.py --competitor https://example.com/rival.png --image ours.png --url ours.com --save
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

import requests
from dotenv import load_dotenv

load_dotenv()

import log_setup
log_setup.configure()

import ad_core
import credentials
import storage
from errors import ProviderError, ValidationError


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Generate an ad creative that competes with a rival's ad",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python ad_cli.py --login sk-...
  python ad_cli.py --competitor rival.png --description "A faster checkout flow"
  python ad_cli.py --competitor rival.png --image product.png --prompt "Try it free today" --save
""",
    )
    parser.add_argument("--competitor", default=None, help="Competitor screenshot: file path, URL or data URI")
    parser.add_argument(
        "--image",
        action="append",
        default=[],
        help="Project image (file path, URL or data URI). Repeat for several images.",
    )
    parser.add_argument("--url", default=None, help="Your website URL")
    parser.add_argument("--description", default=None, help="Short description of your project/offer")
    parser.add_argument("--prompt", default="", help="Exact text to put on the ad (optional)")
    parser.add_argument("--api-key", default=None, help="OpenAI API key for this run only")
    parser.add_argument("--login", metavar="API_KEY", default=None, help="Store an OpenAI API key and exit")
    parser.add_argument("--logout", action="store_true", help="Forget the stored API key and exit")
    parser.add_argument(
        "--text-model",
        default=None,
        help=f"Vision/chat model for analysis (default: {ad_core.DEFAULT_TEXT_MODEL})",
    )
    parser.add_argument(
        "--image-model",
        default=None,
        help=f"Image model (default: {ad_core.DEFAULT_IMAGE_MODEL})",
    )
    parser.add_argument(
        "--image-size",
        choices=[s.value for s in ad_core.ImageSize],
        default=None,
        help=f"Output resolution (default: {ad_core.ImageSize.SQUARE.value})",
    )
    parser.add_argument(
        "--quality",
        choices=[q.value for q in ad_core.ImageQuality],
        default=None,
        help=f"Image quality tier (default: {ad_core.ImageQuality.HD.value})",
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=None,
        help=f"Token limit for each analysis (default: {ad_core.ANALYSIS_MAX_TOKENS})",
    )
    parser.add_argument(
        "--output-dir",
        default="cli_output",
        help="Directory for saved images and results (default: cli_output)",
    )
    parser.add_argument("--save", action="store_true", help="Download the generated image into --output-dir")
    parser.add_argument("--json", action="store_true", help="Print full JSON result to stdout")
    parser.add_argument("--list-models", action="store_true", help="List available models and exit")

    args = parser.parse_args(argv)
    store = credentials.FileCredentialStore()

    if args.list_models:
        _list_models()
        return 0

    if args.logout:
        credentials.logout(store)
        _echo("  ✓ Stored API key removed")
        return 0

    if args.login:
        try:
            session = credentials.login(store, args.login)
        except ValidationError as exc:
            print(f"✗  {exc}", file=sys.stderr)
            return 2
        _echo(f"  ✓ Logged in ({session.masked_key})")
        return 0

    if not args.competitor:
        parser.error("--competitor is required")

    try:
        session = credentials.resolve_session(args.api_key, store)
        competitor_image = storage.load_image_reference(args.competitor)
        project = ad_core.ProjectData(
            images=[storage.load_image_reference(ref) for ref in args.image],
            website_url=ad_core.normalize_website_url(args.url),
            description=args.description,
        )
        config = ad_core.PipelineConfig.from_settings({
            "text_model": args.text_model,
            "image_model": args.image_model,
            "image_size": args.image_size,
            "quality": args.quality,
            "max_tokens": args.max_tokens,
        })
        if project.is_empty:
            raise ValidationError("Please provide information about your project/offer")
    except ValidationError as exc:
        print(f"✗  {exc}", file=sys.stderr)
        return 2

    _echo(f"\n  ✦ AdPirate CLI")
    _echo(f"  Competitor : {args.competitor}")
    _echo(f"  Project    : {len(project.images)} image(s), url={project.website_url or '-'}, "
          f"description={'yes' if project.description else 'no'}")
    _echo(f"  Models     : {config.model} / {config.image_model} "
          f"({config.image_size.value}, {config.quality.value})\n")

    def progress_cb(event: dict) -> None:
        status = event.get("status", "")
        msg    = event.get("message", "")
        prefix = {
            "started":   "  ◌ ",
            "completed": "  ✓ ",
            "failed":    "  ✗ ",
            "skipped":   "  – ",
            "warning":   "  ⚠ ",
        }.get(status, "    ")
        _echo(f"{prefix}{msg}")

    run_id = f"cli-{int(time.time())}"
    pipeline = ad_core.AdPipeline(
        session,
        config=config,
        progress_cb=progress_cb,
        run_id=run_id,
    )
    try:
        result = pipeline.run(competitor_image, project, args.prompt)
    except ValidationError as exc:
        print(f"\n✗  {exc}", file=sys.stderr)
        return 2
    except ProviderError as exc:
        print(f"\n✗  Failed to generate content: {exc}", file=sys.stderr)
        strategy = exc.partial.get("strategy")
        if strategy:
            _echo(f"\n  Strategy (no image produced):\n\n{strategy}\n")
        return 1

    _echo(f"\n  ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    _echo(f"  Strategy:\n\n{result['strategy']}\n")
    _echo(f"  Image   : {result['image_url']}")
    _echo(f"  Warnings: {len(result['warnings'])}")
    _echo(f"  Duration: {result['duration']:.1f}s")

    if args.save:
        output_dir = Path(args.output_dir) / run_id
        try:
            path = storage.save_image(result["image_url"], output_dir / "adpirate-creative.png")
        except (requests.RequestException, OSError, ProviderError) as exc:
            print(f"✗  Could not download image: {exc}", file=sys.stderr)
        else:
            (output_dir / "result.json").write_text(
                json.dumps(_public_result(result), indent=2), encoding="utf-8"
            )
            _echo(f"  Saved   : {path}")
    _echo("")

    if args.json:
        print(json.dumps(_public_result(result), indent=2))

    return 0


def _public_result(result: dict) -> dict:
    return {k: result[k] for k in ("strategy", "image_url", "prompt", "analyses", "warnings", "duration")}


def _list_models() -> None:
    print("\nAvailable Text Models (analysis)")
    print("─" * 40)
    for m in ad_core.TEXT_MODELS:
        print(f"  {m['id']}")
        print(f"    {m['description']}")

    print("\nAvailable Image Models")
    print("─" * 40)
    for m in ad_core.IMAGE_MODELS:
        print(f"  {m['id']}")
        print(f"    {m['description']}")
    print()


def _echo(msg: str) -> None:
    print(msg, flush=True)


if __name__ == "__main__":
    raise SystemExit(main())
