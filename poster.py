from __future__ import annotations

import argparse
from concurrent.futures import Future, ThreadPoolExecutor
import io
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Sequence, Tuple

import imagequant
from PIL import Image, ImageOps


logger = logging.getLogger(__name__)

# allow large images; keep a very high limit to avoid PIL warning spam
Image.MAX_IMAGE_PIXELS = max(int(getattr(Image, "MAX_IMAGE_PIXELS", 0) or 0), 250_000_000)

DEFAULT_WIDTH = 4096
DEFAULT_HEIGHT = 2160
DEFAULT_GAP = 10
MIN_BAND_HEIGHT = 100

EXIF_ORIENTATION = 0x0112

QUANT_METHODS = ("libimagequant", "fastoctree")


class PosterError(RuntimeError):
    pass


class DecodeError(PosterError):
    pass


class DirectoryError(PosterError):
    pass


class PersistError(PosterError):
    pass


class QuantizationError(PosterError):
    pass


def _effective_workers(workers: int) -> int:
    if workers <= 0:
        cpu = os.cpu_count() or 4
        return min(32, max(1, cpu * 2))
    return max(1, int(workers))


@dataclass(frozen=True)
class CanvasSpec:
    width: int
    height: int


@dataclass(frozen=True)
class ModePreset:
    resample: Image.Resampling
    cyclic: bool
    quantize: bool
    rows: int
    min_band: int


# realtime: one pass over the folder, fast filter, raw output only.
# batch: repeat the folder until the wall is full, then quantize.
MODE_PRESETS: dict[str, ModePreset] = {
    "realtime": ModePreset(Image.Resampling.NEAREST, cyclic=False, quantize=False, rows=10, min_band=MIN_BAND_HEIGHT),
    "batch": ModePreset(Image.Resampling.LANCZOS, cyclic=True, quantize=True, rows=6, min_band=0),
}


def band_height_for(canvas_h: int, gap: int, rows: int, min_band: int = 0) -> int:
    return max(min_band, (canvas_h - gap * (rows - 1)) // rows)


@dataclass
class RunConfig:
    canvas: CanvasSpec = field(default_factory=lambda: CanvasSpec(DEFAULT_WIDTH, DEFAULT_HEIGHT))
    gap: int = DEFAULT_GAP
    mode: str = "realtime"
    band_height: int | None = None
    workers: int = 0
    recursive: bool = False
    sort: bool = False
    max_passes: int = 0

    def __post_init__(self) -> None:
        if self.gap < 0:
            raise ValueError("gap must not be negative")

    @property
    def preset(self) -> ModePreset:
        try:
            return MODE_PRESETS[self.mode]
        except KeyError:
            raise ValueError(f"unknown mode {self.mode!r}; use one of {', '.join(MODE_PRESETS)}") from None

    @property
    def band_h(self) -> int:
        if self.band_height is not None:
            return int(self.band_height)
        p = self.preset
        return band_height_for(self.canvas.height, self.gap, p.rows, p.min_band)


@dataclass(frozen=True)
class Cursor:
    x: int = 0
    y: int = 0
    row: int = 0


@dataclass(frozen=True)
class PlacementSlot:
    x: int
    y: int
    w: int
    h: int

    @property
    def right(self) -> int:
        return self.x + self.w

    @property
    def bottom(self) -> int:
        return self.y + self.h


@dataclass(frozen=True)
class Placement:
    index: int
    path: Path
    slot: PlacementSlot


@dataclass
class RunStats:
    placed: int = 0
    skipped: int = 0
    failed: int = 0
    clipped: int = 0
    passes: int = 0
    filled: bool = False


def parse_size(s: str) -> CanvasSpec:
    s = s.lower().replace("×", "x").strip()
    parts = s.split("x")
    if len(parts) != 2:
        raise ValueError("--size must be like 4096x2160")
    w, h = int(parts[0]), int(parts[1])
    if w <= 0 or h < 0:
        raise ValueError("--size must be positive")
    return CanvasSpec(w, h)


# --- Image source ---------------------------------------------------------

def iter_entries(folder: Path, recursive: bool = False, sort: bool = False) -> List[Path]:
    """Regular files of ``folder`` in listing order (sorted by name if asked).

    Every file is a candidate; whether it decodes is decided later.
    """
    if not folder.exists() or not folder.is_dir():
        raise DirectoryError(f"input folder not found: {folder}")

    try:
        walker: Iterable[Path] = folder.rglob("*") if recursive else folder.iterdir()
        files = [p for p in walker if p.is_file()]
    except OSError as e:
        raise DirectoryError(f"cannot read input folder {folder}: {e}") from e

    if sort:
        files.sort()
    return files


def _orientation(img: Image.Image) -> int:
    # PngImageFile.getexif() decodes the whole file to look past IDAT
    if img.format == "PNG" and "exif" not in img.info:
        return 1
    return int(img.getexif().get(EXIF_ORIENTATION, 1))


def probe_image(path: Path) -> Tuple[int, int]:
    """Oriented (width, height) read from the header only."""
    try:
        with Image.open(path) as img:
            w, h = img.size
            orientation = _orientation(img)
    except Exception as e:
        raise DecodeError(f"cannot open image {path}: {e}") from e

    if orientation in (5, 6, 7, 8):
        w, h = h, w
    if w <= 0 or h <= 0:
        raise DecodeError(f"image has no pixels: {path}")
    return w, h


def open_image(path: Path) -> Image.Image:
    try:
        with Image.open(path) as src:
            img = ImageOps.exif_transpose(src)
            if img.mode != "RGBA":
                img = img.convert("RGBA")
    except Exception as e:
        raise DecodeError(f"cannot decode image {path}: {e}") from e
    return img


def safe_resize(
    img: Image.Image,
    size: Tuple[int, int],
    resample: Image.Resampling = Image.Resampling.LANCZOS,
) -> Image.Image:
    w, h = size
    if w <= 0 or h <= 0:
        raise ValueError("resize size must be positive")
    if img.size == (w, h):
        return img
    return img.resize((w, h), resample=resample)


# --- Slot allocation ------------------------------------------------------

def scaled_width(src_size: Tuple[int, int], band_h: int) -> int:
    src_w, src_h = src_size
    if src_w <= 0 or src_h <= 0:
        raise ValueError("source size must be positive")
    return max(1, int(src_w * band_h / src_h + 0.5))


def should_stop(cursor: Cursor, canvas: CanvasSpec, band_h: int) -> bool:
    """Fill-stop: True once no further slot may be produced.

    A canvas that cannot hold a single band is full before anything is placed.
    """
    if band_h <= 0 or canvas.height < band_h:
        return True
    return cursor.y > canvas.height


def allocate(
    cursor: Cursor,
    src_size: Tuple[int, int],
    band_h: int,
    canvas: CanvasSpec,
    gap: int,
) -> Tuple[PlacementSlot | None, Cursor, bool]:
    """Place one image at the cursor and advance it.

    Returns ``(slot, new_cursor, more)``. When the fill-stop triggers no slot
    is produced and the cursor is returned unchanged.

    The wrap test compares the pre-advance ``x`` with the full canvas width,
    so the last image of a row may run past the right edge (it is clipped
    when composited). Odd rows start half a band to the left.
    """
    if gap < 0:
        raise ValueError("gap must not be negative")
    if should_stop(cursor, canvas, band_h):
        return None, cursor, False

    w = scaled_width(src_size, band_h)
    slot = PlacementSlot(cursor.x, cursor.y, w, band_h)

    if cursor.x < canvas.width:
        nxt = replace(cursor, x=cursor.x + w + gap)
    else:
        row = cursor.row + 1
        nxt = Cursor(
            x=-(band_h // 2) if row % 2 == 1 else 0,
            y=cursor.y + band_h + gap,
            row=row,
        )
    return slot, nxt, True


def plan_slots(
    sizes: Iterable[Tuple[int, int]],
    canvas: CanvasSpec,
    band_h: int,
    gap: int,
) -> List[PlacementSlot]:
    cursor = Cursor()
    slots: List[PlacementSlot] = []
    for size in sizes:
        slot, cursor, more = allocate(cursor, size, band_h, canvas, gap)
        if not more:
            break
        slots.append(slot)
    return slots


def iter_placements(
    files: Sequence[Path],
    canvas: CanvasSpec,
    band_h: int,
    gap: int,
    cyclic: bool = False,
    max_passes: int = 0,
    stats: RunStats | None = None,
) -> Iterator[Placement]:
    """Sequential pre-pass: one slot per decodable file, in enumeration order.

    In cyclic mode the file list is walked again until the canvas is full, a
    pass places nothing, or ``max_passes`` is reached.
    """
    if stats is None:
        stats = RunStats()

    cursor = Cursor()
    index = 0
    while True:
        stats.passes += 1
        placed_in_pass = 0
        for path in files:
            try:
                size = probe_image(path)
            except DecodeError as e:
                # later passes see the same files again
                if stats.passes == 1:
                    stats.skipped += 1
                    logger.warning("skipping %s", e)
                continue

            slot, cursor, more = allocate(cursor, size, band_h, canvas, gap)
            if not more:
                stats.filled = True
                logger.debug("canvas full at y=%d after %d images", cursor.y, index)
                return

            logger.debug("slot %d: %s -> (%d, %d) %dx%d", index, path.name, slot.x, slot.y, slot.w, slot.h)
            yield Placement(index=index, path=path, slot=slot)
            index += 1
            placed_in_pass += 1

        if not cyclic or placed_in_pass == 0:
            return
        if max_passes > 0 and stats.passes >= max_passes:
            return


# --- Compositing ----------------------------------------------------------

@dataclass(frozen=True)
class CanvasRegion:
    """Write access to the part of the canvas covered by one slot."""

    canvas: Image.Image
    slot: PlacementSlot

    @property
    def box(self) -> Tuple[int, int, int, int] | None:
        cw, ch = self.canvas.size
        left = max(0, self.slot.x)
        top = max(0, self.slot.y)
        right = min(cw, self.slot.right)
        bottom = min(ch, self.slot.bottom)
        if right <= left or bottom <= top:
            return None
        return left, top, right, bottom

    def write(self, img: Image.Image) -> bool:
        if img.size != (self.slot.w, self.slot.h):
            raise ValueError(f"image size {img.size} does not match slot {self.slot.w}x{self.slot.h}")
        box = self.box
        if box is None:
            return False
        left, top, right, bottom = box
        src = img.crop((left - self.slot.x, top - self.slot.y, right - self.slot.x, bottom - self.slot.y))
        self.canvas.alpha_composite(src, dest=(left, top))
        return True


def composite(
    canvas: Image.Image,
    slot: PlacementSlot,
    img: Image.Image,
    resample: Image.Resampling = Image.Resampling.LANCZOS,
) -> bool:
    """Resize ``img`` to the slot and draw it source-over onto the canvas.

    Returns False when the slot lies entirely outside the canvas.
    """
    region = CanvasRegion(canvas, slot)
    if region.box is None:
        return False
    if img.mode != "RGBA":
        img = img.convert("RGBA")
    resized = safe_resize(img, (slot.w, slot.h), resample=resample)
    return region.write(resized)


def new_canvas(canvas: CanvasSpec) -> Image.Image:
    return Image.new("RGBA", (canvas.width, canvas.height), (0, 0, 0, 0))


def build_poster(folder: Path, config: RunConfig | None = None) -> Tuple[Image.Image, RunStats]:
    if config is None:
        config = RunConfig()

    preset = config.preset
    files = iter_entries(folder, recursive=config.recursive, sort=config.sort)
    band_h = config.band_h
    logger.info(
        "building %dx%d poster from %d files in %s (mode=%s, band=%d, gap=%d)",
        config.canvas.width, config.canvas.height, len(files), folder, config.mode, band_h, config.gap,
    )

    out = new_canvas(config.canvas)
    stats = RunStats()
    placements = iter_placements(
        files,
        canvas=config.canvas,
        band_h=band_h,
        gap=config.gap,
        cyclic=preset.cyclic,
        max_passes=config.max_passes,
        stats=stats,
    )

    def draw_one(p: Placement) -> bool:
        img = open_image(p.path)
        return composite(out, p.slot, img, resample=preset.resample)

    def record(p: Placement, fut: Callable[[], bool]) -> None:
        try:
            drawn = fut()
        except Exception as e:
            stats.failed += 1
            logger.warning("slot %d left empty: %s", p.index, e)
            return
        stats.placed += 1
        if not drawn:
            stats.clipped += 1

    n_workers = _effective_workers(config.workers)
    if n_workers <= 1:
        for p in placements:
            record(p, lambda p=p: draw_one(p))
    else:
        jobs: List[Tuple[Placement, Future]] = []
        with ThreadPoolExecutor(max_workers=n_workers) as ex:
            for p in placements:
                jobs.append((p, ex.submit(draw_one, p)))
        # executor exit joins every job before the canvas is read
        for p, fut in jobs:
            record(p, fut.result)

    logger.info(
        "placed %d images (%d skipped, %d failed, %d passes%s)",
        stats.placed, stats.skipped, stats.failed, stats.passes, ", canvas full" if stats.filled else "",
    )
    return out, stats


# --- Persistence ----------------------------------------------------------

def atomic_write_with(path: Path, writer: Callable[[Path], None]) -> None:
    """Write through ``writer(tmp_path)`` then move the result into place."""
    path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(dir=str(path.parent), prefix=path.name + ".", suffix=".tmp", delete=False) as f:
        tmp_path = Path(f.name)

    try:
        writer(tmp_path)
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def save_raster(img: Image.Image, path: Path) -> Path:
    fmt = Image.registered_extensions().get(path.suffix.lower(), "PNG")
    try:
        atomic_write_with(path, lambda tmp: img.save(tmp, format=fmt))
    except (OSError, ValueError) as e:
        raise PersistError(f"failed to write poster {path}: {e}") from e
    logger.info("saved poster: %s", path)
    return path


# --- Palette quantization -------------------------------------------------

@dataclass(frozen=True)
class QuantizedImage:
    image: Image.Image

    @property
    def indices(self) -> bytes:
        return self.image.tobytes()

    @property
    def palette(self) -> List[Tuple[int, int, int, int]]:
        mode = self.image.palette.mode if self.image.palette else "RGB"
        flat = self.image.getpalette(rawmode=mode) or []
        step = len(mode)
        colors = [tuple(flat[i:i + 3]) + (flat[i + 3] if step == 4 else 255,) for i in range(0, len(flat) - step + 1, step)]

        trns = self.image.info.get("transparency")
        if isinstance(trns, bytes):
            for i, a in enumerate(trns[: len(colors)]):
                colors[i] = colors[i][:3] + (a,)
        elif isinstance(trns, int) and trns < len(colors):
            colors[trns] = colors[trns][:3] + (0,)

        _, hi = self.image.getextrema()
        return colors[: hi + 1]


def quantize(
    canvas: Image.Image,
    max_colors: int = 256,
    quality: int = 90,
    dither_level: float = 1.0,
    method: str = "libimagequant",
    min_quality: int = 0,
) -> QuantizedImage:
    """Reduce the canvas to at most ``max_colors`` RGBA colors with dithering.

    libimagequant honours ``quality`` and a fractional ``dither_level``; the
    Pillow octree fallback only distinguishes dithering on or off.
    """
    if not 2 <= max_colors <= 256:
        raise ValueError("max_colors must be within 2..256")
    if not 0 <= min_quality <= quality <= 100:
        raise ValueError("quality must be within min_quality..100")
    if not 0.0 <= dither_level <= 1.0:
        raise ValueError("dither_level must be within 0..1")
    if method not in QUANT_METHODS:
        raise ValueError(f"unknown quantization method {method!r}")

    img = canvas if canvas.mode == "RGBA" else canvas.convert("RGBA")
    logger.debug("quantizing with %s: colors=%d quality=%d dither=%.2f", method, max_colors, quality, dither_level)
    try:
        if method == "libimagequant":
            out = imagequant.quantize_pil_image(
                img,
                dithering_level=dither_level,
                max_colors=max_colors,
                min_quality=min_quality,
                max_quality=quality,
            )
        else:
            dither = Image.Dither.FLOYDSTEINBERG if dither_level > 0 else Image.Dither.NONE
            out = img.quantize(colors=max_colors, method=Image.Quantize.FASTOCTREE, dither=dither)
    except Exception as e:
        raise QuantizationError(f"{method} quantization failed: {e}") from e

    if out.mode != "P":
        raise QuantizationError(f"{method} returned mode {out.mode}, expected P")
    return QuantizedImage(out)


def _png_bits(colors: int) -> int:
    need = max(1, (colors - 1).bit_length())
    for bits in (1, 2, 4, 8):
        if need <= bits:
            return bits
    raise ValueError(f"too many palette entries for PNG: {colors}")


def encode_optimized(q: QuantizedImage) -> bytes:
    """PNG with only the used palette entries at the smallest bit depth."""
    palette = q.palette
    img = q.image.copy()
    # alpha travels in the RGBA palette, not in a separate transparency key
    img.info.pop("transparency", None)
    img.putpalette([c for rgba in palette for c in rgba], rawmode="RGBA")

    buf = io.BytesIO()
    try:
        img.save(buf, format="PNG", optimize=True, bits=_png_bits(len(palette)))
    except (OSError, ValueError) as e:
        raise QuantizationError(f"PNG encoding failed: {e}") from e
    return buf.getvalue()


def write_optimized(
    canvas: Image.Image,
    path: Path,
    max_colors: int = 256,
    quality: int = 90,
    dither_level: float = 1.0,
    method: str = "libimagequant",
) -> int:
    """Quantize, recompress and write the poster; returns the byte size."""
    q = quantize(canvas, max_colors=max_colors, quality=quality, dither_level=dither_level, method=method)
    data = encode_optimized(q)

    def write(tmp: Path) -> None:
        tmp.write_bytes(data)

    try:
        atomic_write_with(path, write)
    except OSError as e:
        raise QuantizationError(f"failed to write optimized poster {path}: {e}") from e

    logger.info("saved optimized poster: %s (%d colors, %d bytes)", path, len(q.palette), len(data))
    return len(data)


def default_optimized_path(out_path: Path) -> Path:
    return out_path.with_name(out_path.stem + ".min.png")


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Tile a folder of images into a fixed-size poster wall with staggered rows."
    )

    parser.add_argument("-d", "--directory", type=str, default=".", help="Folder containing the source images")
    parser.add_argument("--recursive", action="store_true", help="Scan the folder recursively")
    parser.add_argument("--sort", action="store_true", help="Place files in name order instead of listing order")
    parser.add_argument("--output", type=str, default="poster.png", help="Output raster path")

    parser.add_argument(
        "--size",
        type=str,
        default=f"{DEFAULT_WIDTH}x{DEFAULT_HEIGHT}",
        help="Canvas size like 4096x2160",
    )
    parser.add_argument("--gap", type=int, default=DEFAULT_GAP, help="Gap between images in pixels")
    parser.add_argument(
        "--mode",
        type=str,
        default="realtime",
        choices=sorted(MODE_PRESETS),
        help="realtime: fast resize, one pass over the folder. batch: high quality resize, repeat the folder until the wall is full, quantize.",
    )
    parser.add_argument(
        "--band-height",
        type=int,
        default=None,
        help="Row height in pixels. Derived from the canvas height and mode when omitted.",
    )
    parser.add_argument(
        "--max-passes",
        type=int,
        default=0,
        help="Limit passes over the folder in batch mode. 0 means until the wall is full.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=0,
        help="Thread workers for image IO/resize. 0 means auto.",
    )

    parser.add_argument(
        "--quantize",
        dest="quantize",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Also write a palette-quantized, recompressed copy (default: on in batch mode).",
    )
    parser.add_argument("--optimized-output", type=str, default=None, help="Path of the quantized copy")
    parser.add_argument("--colors", type=int, default=256, help="Palette size for the quantized copy (2..256)")
    parser.add_argument("--quality", type=int, default=90, help="Target quantization quality (0..100)")
    parser.add_argument("--dither", type=float, default=1.0, help="Dithering strength in [0..1]")
    parser.add_argument("--quant-method", type=str, default="libimagequant", choices=QUANT_METHODS)

    parser.add_argument("-v", "--verbose", action="store_true", help="Log every placement")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        canvas = parse_size(args.size)
    except ValueError as e:
        parser.error(str(e))

    config = RunConfig(
        canvas=canvas,
        gap=max(0, int(args.gap)),
        mode=args.mode,
        band_height=args.band_height,
        workers=args.workers,
        recursive=args.recursive,
        sort=args.sort,
        max_passes=max(0, int(args.max_passes)),
    )

    out_path = Path(args.output)
    try:
        img, _ = build_poster(Path(args.directory), config)
        save_raster(img, out_path)
    except PosterError as e:
        raise SystemExit(f"error: {e}")

    do_quantize = config.preset.quantize if args.quantize is None else args.quantize
    if do_quantize:
        opt_path = Path(args.optimized_output) if args.optimized_output else default_optimized_path(out_path)
        try:
            write_optimized(
                img,
                opt_path,
                max_colors=args.colors,
                quality=args.quality,
                dither_level=args.dither,
                method=args.quant_method,
            )
        except (QuantizationError, ValueError) as e:
            logger.error("quantization stage failed, raw poster kept at %s: %s", out_path, e)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
