"""Command-line interface for SpriteGate.

Provides commands for generating sprite sheets, checking an existing
sheet against the quality gate, estimating costs, and validating
settings files.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console

from spritegate.app import run_spritegate
from spritegate.budget import get_model_profile
from spritegate.config import Settings, load_settings, validate_config
from spritegate.errors import SpriteGateError
from spritegate.logging import setup_logging_from_settings
from spritegate.models import GenerationStatus, LayoutMode
from spritegate.observability import RunMetricsCollector, write_run_summary
from spritegate.quality import evaluate_sprite_quality
from spritegate.service import estimate_request, resolve_layout, validate_request
from spritegate.utils import png_bytes_to_image
from spritegate.verification import verify_requested_settings

console = Console()


def _load(config_path: Path | None, verbose: bool) -> Settings:
    settings = load_settings(config_path)
    setup_logging_from_settings(settings, verbose=verbose)
    return settings


def _request_options(func: Any) -> Any:
    """Attach the request options shared by ``generate`` and ``estimate``."""
    options = [
        click.option("--prompt", "-p", required=True, help="Theme description of the sprite"),
        click.option("--size", "sprite_size", type=int, default=64, show_default=True,
                     help="Frame edge in pixels (32-128)"),
        click.option("--frames", "frame_count", type=int, default=8, show_default=True,
                     help="Number of animation frames (1-64)"),
        click.option("--animation", "animation_type", default="walk", show_default=True,
                     help="Animation label, e.g. idle, walk, attack"),
        click.option("--projection", type=click.Choice(["2D", "planar", "isometric"]),
                     default="2D", show_default=True),
        click.option("--style", "style_intensity", type=int, default=70, show_default=True,
                     help="Style intensity (0-100)"),
        click.option("--layout", type=click.Choice([m.value for m in LayoutMode]),
                     default=LayoutMode.ROW.value, show_default=True),
        click.option("--columns", type=int, default=None, help="Grid columns (grid layout)"),
        click.option("--seed", type=int, default=None, help="Base seed (random if omitted)"),
        click.option("--model", default=None, help="Model id (defaults to OPENAI_IMAGE_MODEL)"),
        click.option("--user", "user_id", default="cli", show_default=True,
                     help="User id recorded on the generation"),
        click.option("--config", "-c", "config_path",
                     type=click.Path(exists=True, dir_okay=False, path_type=Path),
                     help="YAML settings file"),
        click.option("--verbose", "-v", is_flag=True, help="Enable detailed logging"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _request_payload(params: dict[str, Any]) -> dict[str, Any]:
    payload = {
        "user_id": params["user_id"],
        "prompt": params["prompt"],
        "sprite_size": params["sprite_size"],
        "frame_count": params["frame_count"],
        "projection": params["projection"],
        "animation_type": params["animation_type"],
        "style_intensity": params["style_intensity"],
        "layout": params["layout"],
        "columns": params["columns"],
        "seed": params["seed"],
        "model": params["model"],
    }
    return {k: v for k, v in payload.items() if v is not None}


@click.group()
@click.version_option()
def main() -> None:
    """SpriteGate — quality-gated pixel-art sprite-sheet generation."""
    pass


@main.command()
@_request_options
@click.option(
    "--output-dir",
    "-o",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("output"),
    show_default=True,
    help="Directory for the PNG and JSON export",
)
@click.option(
    "--summary",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write a JSON run summary (attempts, spend, stop reasons) to this path",
)
def generate(output_dir: Path, summary: Path | None, **params: Any) -> None:
    """Generate one sprite sheet inline.

    Example:

        \b
        spritegate generate -p "knight in silver armor" --frames 8 --size 64
    """
    verbose = params.pop("verbose")
    try:
        settings = _load(params.pop("config_path"), verbose)
        metrics = RunMetricsCollector()

        with console.status("[bold blue]Generating sprite sheet..."):
            output = asyncio.run(
                run_spritegate(
                    _request_payload(params),
                    output_dir=output_dir,
                    settings=settings,
                    metrics=metrics,
                )
            )
        metrics.finish()

        record = output.result.generation
        if output.result.cache_hit:
            console.print(f"[bold green]✓[/] Reused cached generation [bold]{record.id}[/]")
        if record.status is GenerationStatus.COMPLETED:
            console.print(f"[bold green]✓[/] Sprite sheet generated: [bold]{output.image_path}[/]")
        else:
            console.print(f"[bold red]✗[/] Generation {record.status.value}: {record.error_reason}")

        console.print(f"  Grid: {record.columns}x{record.rows} @ {record.sprite_size}px")
        console.print(f"  Model: {record.model}")
        console.print(
            f"  Tokens: {record.input_tokens} in / {record.output_tokens} out"
        )
        if output.json_path is not None:
            console.print(f"  Export: {output.json_path}")
        if record.quality_warnings:
            console.print()
            console.print(f"[bold yellow]⚠[/] {len(record.quality_warnings)} warning(s):")
            for warning in record.quality_warnings:
                console.print(f"  • {warning}")

        if summary is not None:
            write_run_summary(
                summary,
                {"generation_id": record.id, "status": record.status.value, **metrics.snapshot()},
            )
            console.print(f"  Summary: {summary}")

        if record.status is not GenerationStatus.COMPLETED:
            sys.exit(1)

    except SpriteGateError as e:
        console.print(f"[bold red]✗[/] Generation failed: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[bold yellow]⚠[/] Generation interrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print(f"[bold red]✗[/] Unexpected error: {e}")
        if verbose:
            console.print_exception()
        sys.exit(1)


@main.command()
@click.argument(
    "image_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--size", "sprite_size", type=int, required=True, help="Frame edge in pixels")
@click.option("--frames", "frame_count", type=int, required=True, help="Expected frame count")
@click.option("--columns", type=int, default=None, help="Grid columns (default: frame count)")
@click.option("--rows", type=int, default=None, help="Grid rows (default: 1)")
@click.option("--animation", "animation_type", default=None, help="Animation label")
@click.option("--style", "style_intensity", type=int, default=70, show_default=True)
@click.option("--min-score", type=float, default=None, help="Override QUALITY_MIN_SCORE")
@click.option("--verbose", "-v", is_flag=True, help="Enable detailed logging")
def verify(
    image_path: Path,
    sprite_size: int,
    frame_count: int,
    columns: int | None,
    rows: int | None,
    animation_type: str | None,
    style_intensity: int,
    min_score: float | None,
    verbose: bool,
) -> None:
    """Score an existing sprite sheet and verify its geometry.

    IMAGE_PATH: PNG sprite sheet to check

    Example:

        \b
        spritegate verify output/knight.png --size 64 --frames 8
    """
    try:
        settings = _load(None, verbose)
        columns = columns or frame_count
        rows = rows or 1
        image = png_bytes_to_image(image_path.read_bytes())

        with console.status(f"[bold blue]Checking {image_path}..."):
            report = evaluate_sprite_quality(
                image,
                sprite_size=sprite_size,
                columns=columns,
                rows=rows,
                frame_count=frame_count,
                animation_type=animation_type,
                style_intensity=style_intensity,
                min_score=min_score if min_score is not None else settings.quality_min_score,
            )
            verification = verify_requested_settings(
                image, sprite_size, frame_count, columns, rows
            )

        mark = "[bold green]✓[/]" if report.ok else "[bold red]✗[/]"
        console.print(
            f"{mark} Quality score {report.diagnostics.score:.1f} "
            f"(minimum {report.diagnostics.thresholds.min_score:g})"
        )
        for reason in report.reasons:
            console.print(f"  • {reason}")

        mark = "[bold green]✓[/]" if verification.passed else "[bold red]✗[/]"
        console.print(f"{mark} {verification.summary}")
        for failure in verification.failures:
            console.print(f"  • {failure}")

        if not (report.ok and verification.passed):
            sys.exit(1)

    except (SpriteGateError, ValueError) as e:
        console.print(f"[bold red]✗[/] Verification failed: {e}")
        if verbose:
            console.print_exception()
        sys.exit(1)


@main.command()
@_request_options
def estimate(**params: Any) -> None:
    """Estimate tokens, attempts and USD cost before generating.

    Example:

        \b
        spritegate estimate -p "knight" --frames 12 --size 96 --model gpt-4.1
    """
    verbose = params.pop("verbose")
    try:
        settings = _load(params.pop("config_path"), verbose)
        payload = _request_payload(params)
        request = validate_request(payload)
        layout = resolve_layout(request.frame_count, request.layout, request.columns)
        model = request.model or settings.openai_image_model
        profile = get_model_profile(model, settings.models)
        result = estimate_request(request, settings)

        console.print(f"[bold green]✓[/] Request is valid")
        console.print(f"  Grid: {layout.columns}x{layout.rows} @ {request.sprite_size}px")
        console.print(f"  Projection: {request.projection.prompt_label}")
        console.print(f"  Model: {model} (compact prompt: {profile.compact_prompt})")

        console.print()
        console.print("[bold cyan]═══════════════════════════════════════[/]")
        console.print("[bold]COST ESTIMATE[/]")
        console.print("[bold cyan]═══════════════════════════════════════[/]")
        console.print(f"Prompt tokens / attempt:  [bold]{result.prompt_tokens:>7}[/]")
        console.print(f"Output tokens / attempt:  [bold]{result.output_tokens_per_attempt:>7}[/]")
        console.print(f"Max attempts:             [bold]{result.max_attempts:>7}[/]")
        console.print(f"Worst-case cost (USD):    [bold]{result.estimated_cost_usd:>7.4f}[/]")
        console.print(f"Budget (USD):             [bold]{result.budget_usd:>7.2f}[/]")
        console.print(f"Queued:                   [bold]{'yes' if result.queued else 'no':>7}[/]")

        console.print()
        if result.within_budget:
            console.print("[bold green]✓[/] Worst case fits within the budget")
        else:
            console.print("[bold yellow]⚠[/] Worst case exceeds the budget; the request would be rejected")
            console.print("  Reduce frame size or choose a cheaper model")
            sys.exit(1)

    except SpriteGateError as e:
        console.print(f"[bold red]✗[/] Estimation failed: {e}")
        if verbose:
            console.print_exception()
        sys.exit(1)


@main.command()
@click.argument(
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--verbose", "-v", is_flag=True, help="Enable detailed logging")
def validate(config_path: Path, verbose: bool) -> None:
    """Validate a YAML settings file without generating.

    CONFIG_PATH: Path to the YAML settings file

    Example:

        \b
        spritegate validate spritegate.yaml
    """
    try:
        with console.status(f"[bold blue]Validating {config_path}..."):
            warnings = validate_config(config_path)
            settings = load_settings(config_path, use_env=False)

        console.print(f"[bold green]✓[/] Configuration is valid")
        console.print(f"  Default model: {settings.openai_image_model}")
        console.print(f"  Quality gate: min score {settings.quality_min_score:g}, "
                      f"{settings.quality_max_attempts} attempts, "
                      f"{'strict' if settings.strict_quality_gate else 'non-strict'}")
        console.print(f"  Budget: ${settings.max_estimated_generation_cost_usd:.2f}")
        if settings.models:
            console.print(f"  Model overrides: {', '.join(sorted(settings.models))}")

        if warnings:
            console.print()
            console.print(f"[bold yellow]⚠[/] {len(warnings)} warning(s):")
            for warning in warnings:
                console.print(f"  • {warning}")

    except Exception as e:
        console.print(f"[bold red]✗[/] Validation failed: {e}")
        if verbose:
            console.print_exception()
        sys.exit(1)


if __name__ == "__main__":
    main()
