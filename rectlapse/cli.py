import argparse
import asyncio
import logging
import os

from tqdm import tqdm

from rectlapse.core import utils
from rectlapse.core.config import SourceLimits, TimelineConfig, configure_logging
from rectlapse.core.errors import AlgorithmFailure
from rectlapse.core.sequence import ANNEAL, GREEDY, FrameSequence
from rectlapse.visualization.export import ExportResult
from rectlapse.visualization.timeline import Timeline

ALGORITHMS = {"greedy": GREEDY, "anneal": ANNEAL}


def _progress_bar(desc: str):
    bar = tqdm(total=100, desc=desc, unit="%")

    def update(fraction: float):
        bar.n = round(fraction * 100)
        bar.refresh()

    return bar, update


def _write(result: ExportResult, out_dir: str) -> bool:
    if not result.ok:
        print(f"{result.kind.value} export failed: {result.error}")
        return False
    path = os.path.join(out_dir, result.filename)
    with open(path, "wb") as f:
        f.write(result.data)
    print(f"Saved {path}")
    return True


async def _run(args) -> int:
    limits = SourceLimits()
    try:
        width, height, rgba = utils.load_source(args.source, limits)
        count = utils.check_rect_count(args.rects, limits)
    except ValueError as e:
        print(e)
        return 2

    config = TimelineConfig(default_speed=args.speed)
    timeline = Timeline(config, sequence=FrameSequence(seed=args.seed))

    print(f"Running {args.algorithm} on {width}x{height} with {count} rectangles...")
    try:
        steps = await timeline.run(ALGORITHMS[args.algorithm], count, rgba, width, height, source_name=args.source)
    except AlgorithmFailure as e:
        print(f"Algorithm failed: {e}")
        return 1
    print(f"{steps} steps")

    ok = True
    if "png" in args.formats:
        ok &= _write(await timeline.export_snapshot(args.step or steps), args.out)
    if "gif" in args.formats:
        bar, update = _progress_bar("gif")
        with bar:
            result = await timeline.export_animated(args.speed, progress=update)
        ok &= _write(result, args.out)
    if "zip" in args.formats:
        bar, update = _progress_bar("zip")
        with bar:
            result = await timeline.export_archive(progress=update)
        ok &= _write(result, args.out)
    return 0 if ok else 1


def main():
    parser = argparse.ArgumentParser(description="rectlapse — approximate a photo with rectangles and export the animation.")
    parser.add_argument("--source", required=True, help="Path to source image")
    parser.add_argument("--algorithm", choices=sorted(ALGORITHMS), default="greedy", help="Split order")
    parser.add_argument("--rects", type=int, default=1000, help="Number of rectangles to fit")
    parser.add_argument("--speed", type=float, default=100.0, help="Playback speed in steps per second (sets GIF sampling)")
    parser.add_argument("--step", type=int, default=None, help="Step to save as PNG (default: last)")
    parser.add_argument("--formats", nargs="+", choices=["png", "gif", "zip"], default=["png", "gif"], help="Exports to write")
    parser.add_argument("--seed", type=int, default=42, help="Random seed for the anneal algorithm")
    parser.add_argument("--out", default="out_rectlapse", help="Output directory")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    os.makedirs(args.out, exist_ok=True)
    raise SystemExit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
