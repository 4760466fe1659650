import argparse
import asyncio
import io
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from PIL import Image, UnidentifiedImageError
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from orbitour.base import setup_logger
from orbitour.config.config import load_config
from orbitour.generation.media import MediaResolver
from orbitour.generation.orchestrator import GenerationOptions, SegmentOrchestrator, SegmentResult
from orbitour.generation.settings import QUALITY_PRESETS, VIDEO_RESOLUTIONS
from orbitour.generation.transports import BackendApiClient, ProxiedTransport, TransportAdapter
from orbitour.tour.models import FAILED, GENERATING, READY, TourProject, Waypoint
from orbitour.tour.segments import SegmentTracker, build_loop_segments
from orbitour.utils.logging_setup import configure_logging

logger = setup_logger(__name__)

STATUS_STYLES = {
    READY: "green",
    GENERATING: "cyan",
    FAILED: "red",
}


def render_table(project: TourProject) -> Table:
    table = Table(title=f"Tour {project.id}", expand=False)
    table.add_column("Segment")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Worker")
    table.add_column("Result")
    for segment in project.segments:
        style = STATUS_STYLES.get(segment.status, "dim")
        result = segment.video_url if segment.status == READY else (segment.error or "")
        table.add_row(
            f"{segment.from_waypoint_id} -> {segment.to_waypoint_id}",
            f"[{style}]{segment.status}[/]",
            f"{segment.progress:.0f}%",
            segment.worker_name or "-",
            result or "",
        )
    return table


def image_size(data: bytes) -> Optional[Tuple[int, int]]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, OSError) as e:
        logger.warning(f"Could not read image size: {e}")
        return None


def build_project(image_paths: Sequence[Path], resolver: MediaResolver) -> TourProject:
    """Register local images as waypoints of a closed loop.

    The first image is the source photo; its size drives the clip aspect ratio.
    """
    waypoints = []
    size = None
    for i, path in enumerate(image_paths):
        data = Path(path).read_bytes()
        if i == 0:
            size = image_size(data)
        handle = resolver.register(data)
        waypoints.append(Waypoint(id=f"wp{i}", image_url=handle, status=READY, is_original=(i == 0)))
    return TourProject(
        id=f"tour_{uuid.uuid4().hex[:8]}",
        source_image_url=waypoints[0].image_url if waypoints else "",
        waypoints=waypoints,
        segments=build_loop_segments(waypoints),
        source_width=size[0] if size else None,
        source_height=size[1] if size else None,
    )


async def generate_tour(
    project: TourProject,
    transport: TransportAdapter,
    resolver: MediaResolver,
    options: GenerationOptions,
    console: Console,
    max_attempts: int = 3,
) -> Dict[str, Optional[SegmentResult]]:
    if options.source_width is None or options.source_height is None:
        options = replace(options, source_width=project.source_width, source_height=project.source_height)
    tracker = SegmentTracker(project)
    callbacks = tracker.callbacks()
    orchestrator = SegmentOrchestrator(transport, resolver, max_attempts=max_attempts)
    images = {wp.id: wp.image_url for wp in project.waypoints if wp.image_url}

    with Live(render_table(project), console=console, refresh_per_second=4) as live:
        refresh = asyncio.get_running_loop().create_task(_refresh(live, project))
        try:
            results = await orchestrator.generate_batch(
                project.segments, images, options, callbacks, project_id=project.id
            )
        finally:
            refresh.cancel()
        live.update(render_table(project))

    if tracker.out_of_credits:
        console.print(Panel.fit("[bold red]Insufficient credits[/]\n[dim]Top up and regenerate the failed segments.[/]", border_style="red"))
    ready = sum(1 for r in results.values() if r is not None)
    console.print(f"[bold]{ready}/{len(results)}[/] transitions ready")
    return results


async def _refresh(live: Live, project: TourProject) -> None:
    while True:
        await asyncio.sleep(0.25)
        live.update(render_table(project))


def build_parser(config: Dict) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="orbitour", description="Generate orbit transitions between waypoint images")
    parser.add_argument("images", nargs="+", type=Path, help="waypoint images, in orbit order")
    parser.add_argument("--api-url", default=config["api_base_url"])
    parser.add_argument("--prompt", default=config["default_prompt"])
    parser.add_argument("--negative-prompt", default="")
    parser.add_argument("--quality", choices=sorted(QUALITY_PRESETS), default=config["default_quality"])
    parser.add_argument("--resolution", choices=sorted(VIDEO_RESOLUTIONS), default=config["default_resolution"])
    parser.add_argument("--duration", type=float, default=config["default_duration"])
    parser.add_argument("--token-type", default=config["default_token_type"])
    parser.add_argument("--width", type=int, help="source width, read from the first image when omitted")
    parser.add_argument("--height", type=int, help="source height, read from the first image when omitted")
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    config = load_config()
    # CLI logging: write to file, keep console clean.
    configure_logging(log_file=config["log_file"], level=config["log_level"], force=True)

    args = build_parser(config).parse_args(argv)
    console = Console()
    missing = [str(p) for p in args.images if not p.is_file()]
    if missing:
        console.print(f"[red]image not found: {', '.join(missing)}[/]")
        return 2
    if len(args.images) < 2:
        console.print("[red]at least two waypoint images are needed for a transition[/]")
        return 2

    resolver = MediaResolver.from_config({**config, "api_base_url": args.api_url})
    project = build_project(args.images, resolver)
    if args.width and args.height:
        project.source_width, project.source_height = args.width, args.height
    transport = ProxiedTransport(BackendApiClient(args.api_url))
    options = GenerationOptions(
        prompt=args.prompt,
        negative_prompt=args.negative_prompt,
        resolution=args.resolution,
        quality=args.quality,
        duration=args.duration,
        token_type=args.token_type,
    )

    console.print(Group(
        Panel.fit("[bold cyan]Orbitour[/bold cyan]\n[dim]Generating loop transitions through the backend.[/dim]", border_style="cyan"),
        f"[dim]Project: [bold]{project.id}[/] | Waypoints: {len(project.waypoints)} | Quality: {args.quality} | Resolution: {args.resolution}[/]",
    ))
    results = await generate_tour(project, transport, resolver, options, console, max_attempts=config["max_attempts"])
    return 0 if all(r is not None for r in results.values()) else 1


def run() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()
