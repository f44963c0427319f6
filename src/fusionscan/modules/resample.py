# src/fusionscan/modules/resample.py
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable

import numpy as np

MM_TO_M = 0.001


def run_row_bands(n_rows: int, kernel: Callable[[int, int], None], workers: int = 1) -> None:
    """
    Run kernel(y0, y1) over [0, n_rows) split into contiguous row bands.

    Kernels write disjoint rows of a preallocated output, so bands need no locking.
    """
    if n_rows <= 0:
        return
    workers = max(1, min(int(workers), n_rows))
    if workers == 1:
        kernel(0, n_rows)
        return

    bounds = np.linspace(0, n_rows, workers + 1).astype(int)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(kernel, int(y0), int(y1)) for y0, y1 in zip(bounds[:-1], bounds[1:]) if y1 > y0]
        for fut in futures:
            fut.result()


def downsample_depth(
    raw_depth_mm: np.ndarray,
    factor: int,
    *,
    workers: int = 1,
    out: np.ndarray | None = None,
) -> np.ndarray:
    """
    Nearest-neighbour downsample of raw depth with a horizontal flip.

    Destination (y, dw-1-x) takes source index y*W*factor + x*factor, converted
    from millimetres to metres.

    Args:
        raw_depth_mm: (H,W) uint16 depth in millimetres
        factor: integer downsample factor
    Returns:
        (H//factor, W//factor) float32 depth in metres
    """
    if raw_depth_mm.ndim != 2:
        raise ValueError("downsample_depth expects a (H,W) depth image.")
    if factor < 1:
        raise ValueError("factor must be >= 1")

    h, w = raw_depth_mm.shape
    dh, dw = h // factor, w // factor
    if out is None:
        out = np.empty((dh, dw), dtype=np.float32)
    elif out.shape != (dh, dw):
        raise ValueError(f"out has shape {out.shape}, expected {(dh, dw)}")

    def _rows(y0: int, y1: int) -> None:
        src = raw_depth_mm[y0 * factor:y1 * factor:factor, 0:dw * factor:factor]
        out[y0:y1] = src[:, ::-1].astype(np.float32) * np.float32(MM_TO_M)

    run_row_bands(dh, _rows, workers)
    return out


def downsample_color(color: np.ndarray, factor: int, *, workers: int = 1) -> np.ndarray:
    """Same sampling and flip as downsample_depth, for (H,W,4) colour pixels."""
    if color.ndim != 3:
        raise ValueError("downsample_color expects a (H,W,C) image.")
    if factor < 1:
        raise ValueError("factor must be >= 1")

    h, w, c = color.shape
    dh, dw = h // factor, w // factor
    out = np.empty((dh, dw, c), dtype=color.dtype)

    def _rows(y0: int, y1: int) -> None:
        src = color[y0 * factor:y1 * factor:factor, 0:dw * factor:factor]
        out[y0:y1] = src[:, ::-1]

    run_row_bands(dh, _rows, workers)
    return out


def upsample_color(
    small: np.ndarray,
    factor: int,
    *,
    workers: int = 1,
    out: np.ndarray | None = None,
) -> np.ndarray:
    """
    Nearest-neighbour upsample: every pixel becomes a factor x factor block.

    The kernel only writes the first row of each block; the other factor-1 rows
    are bulk copies of it.
    """
    if small.ndim != 3:
        raise ValueError("upsample_color expects a (H,W,C) image.")
    if factor < 1:
        raise ValueError("factor must be >= 1")

    sh, sw, c = small.shape
    if out is None:
        out = np.empty((sh * factor, sw * factor, c), dtype=small.dtype)
    elif out.shape != (sh * factor, sw * factor, c):
        raise ValueError(f"out has shape {out.shape}, expected {(sh * factor, sw * factor, c)}")

    def _rows(y0: int, y1: int) -> None:
        out[y0 * factor:y1 * factor:factor] = np.repeat(small[y0:y1], factor, axis=1)

    run_row_bands(sh, _rows, workers)

    first_rows = out[0::factor]
    for r in range(1, factor):
        out[r::factor] = first_rows
    return out


def resample_color_to_depth(
    color: np.ndarray,
    depth_width: int,
    depth_height: int,
    *,
    workers: int = 1,
) -> np.ndarray:
    """
    Resample a wide colour image onto the depth image geometry.

    A centred band of height depth_width*3/4 is filled from the centred 4:3 crop
    of the colour image by nearest-neighbour sampling; rows above and below the
    band stay zero.
    """
    if color.ndim != 3:
        raise ValueError("resample_color_to_depth expects a (H,W,C) image.")

    ch, cw, c = color.shape
    band = min(int(depth_height), int(depth_width) * 3 // 4)
    if band <= 0:
        raise ValueError("depth geometry too small to resample colour onto")
    margin = (int(depth_height) - band) // 2
    scale = ch / float(band)

    x0 = max(0, int((cw - depth_width * scale) / 2.0))
    src_x = np.minimum(x0 + (np.arange(depth_width) * scale).astype(np.int64), cw - 1)

    out = np.zeros((depth_height, depth_width, c), dtype=color.dtype)

    def _rows(b0: int, b1: int) -> None:
        src_y = np.minimum((np.arange(b0, b1) * scale).astype(np.int64), ch - 1)
        out[margin + b0:margin + b1] = color[src_y][:, src_x]

    run_row_bands(band, _rows, workers)
    return out
