from __future__ import annotations

import argparse
import logging
from pathlib import Path

import poster


def main() -> int:
    ap = argparse.ArgumentParser("Headless generator for a full poster wall")
    ap.add_argument("--input", type=str, default=".")
    ap.add_argument("--output", type=str, default="poster_wall.png")
    ap.add_argument("--size", type=str, default=f"{poster.DEFAULT_WIDTH}x{poster.DEFAULT_HEIGHT}")
    ap.add_argument("--gap", type=int, default=poster.DEFAULT_GAP)
    ap.add_argument("--colors", type=int, default=256)
    ap.add_argument("--quality", type=int, default=90)
    ap.add_argument("--dither", type=float, default=1.0)
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    in_dir = Path(args.input)
    config = poster.RunConfig(
        canvas=poster.parse_size(args.size),
        gap=args.gap,
        mode="batch",
        sort=True,  # reproducible walls across platforms
    )

    img, stats = poster.build_poster(in_dir, config)
    if stats.placed == 0:
        raise RuntimeError(f"No readable images in: {in_dir}")

    out_path = Path(args.output)
    poster.save_raster(img, out_path)
    print(f"Saved: {out_path}")
    print(f"images: placed={stats.placed}; skipped={stats.skipped}; passes={stats.passes}")

    opt_path = poster.default_optimized_path(out_path)
    try:
        size = poster.write_optimized(
            img,
            opt_path,
            max_colors=args.colors,
            quality=args.quality,
            dither_level=args.dither,
        )
    except (poster.QuantizationError, ValueError) as e:
        print(f"Quantization skipped: {e}")
        return 0

    raw_size = out_path.stat().st_size
    ratio = (size / raw_size) if raw_size else 0.0
    print(f"Saved: {opt_path} ({size} bytes, {ratio:.0%} of raw)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
