from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List

import cv2
import numpy as np

from ..system.frames import Frame, FrameGeometry, FrameSource

logger = logging.getLogger(__name__)

# TUM depth PNGs store 5000 units per metre
TUM_DEPTH_UNITS_PER_MM = 5.0


@dataclass
class TumEntry:
    ts: float
    path: str


def _read_list_txt(txt_path: str) -> List[TumEntry]:
    entries: List[TumEntry] = []
    base = os.path.dirname(txt_path)

    with open(txt_path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if (not line) or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) < 2:
                continue
            ts = float(parts[0])
            rel = parts[1]
            entries.append(TumEntry(ts=ts, path=os.path.join(base, rel)))
    return entries


def associate(rgb: List[TumEntry], depth: List[TumEntry], max_dt: float = 0.02) -> list[tuple[TumEntry, TumEntry]]:
    """Greedy nearest-timestamp association, each depth image used at most once, in rgb order."""
    if not rgb or not depth:
        return []
    depth_ts = np.array([e.ts for e in depth], dtype=np.float64)
    used = np.zeros(len(depth), dtype=bool)
    pairs = []
    for e in rgb:
        j = int(np.searchsorted(depth_ts, e.ts))
        best = None
        for k in (j - 1, j):
            if 0 <= k < len(depth) and not used[k]:
                if best is None or abs(depth_ts[k] - e.ts) < abs(depth_ts[best] - e.ts):
                    best = k
        if best is not None and abs(depth_ts[best] - e.ts) <= max_dt:
            used[best] = True
            pairs.append((e, depth[best]))
    return pairs


class TumRgbdSequence(FrameSource):
    """
    TUM RGB-D sequence (rgb.txt + depth.txt) as a FrameSource.

    Colour comes out BGRA, depth in millimetres. Geometry is read from the
    first associated pair on open().
    """

    def __init__(
        self,
        seq_dir: str,
        *,
        start: int = 0,
        step: int = 1,
        max_frames: int | None = None,
        max_dt: float = 0.02,
    ):
        self.seq_dir = seq_dir
        rgb_txt = os.path.join(seq_dir, "rgb.txt")
        depth_txt = os.path.join(seq_dir, "depth.txt")
        if not os.path.isfile(rgb_txt):
            raise FileNotFoundError(f"Missing rgb.txt: {rgb_txt}")
        if not os.path.isfile(depth_txt):
            raise FileNotFoundError(f"Missing depth.txt: {depth_txt}")

        pairs = associate(_read_list_txt(rgb_txt), _read_list_txt(depth_txt), max_dt=max_dt)
        end = len(pairs) if max_frames is None else min(len(pairs), start + max_frames * step)
        self.pairs = pairs[start:end:step]
        self.geometry: FrameGeometry | None = None
        self._next = 0

    def __len__(self) -> int:
        return len(self.pairs)

    @property
    def exhausted(self) -> bool:
        return self._next >= len(self.pairs)

    def _read(self, i: int) -> Frame:
        rgb, depth = self.pairs[i]
        img = cv2.imread(rgb.path, cv2.IMREAD_COLOR)
        if img is None:
            raise FileNotFoundError(f"Failed to read image: {rgb.path}")
        d = cv2.imread(depth.path, cv2.IMREAD_UNCHANGED)
        if d is None:
            raise FileNotFoundError(f"Failed to read depth: {depth.path}")
        color = cv2.cvtColor(img, cv2.COLOR_BGR2BGRA)
        depth_mm = np.rint(d.astype(np.float64) / TUM_DEPTH_UNITS_PER_MM).astype(np.uint16)
        return Frame(color=color, depth=depth_mm, timestamp_ms=int(round(rgb.ts * 1000.0)))

    def open(self) -> "TumRgbdSequence":
        if not self.pairs:
            raise FileNotFoundError(f"No associated rgb/depth pairs in {self.seq_dir}")
        first = self._read(0)
        self.geometry = FrameGeometry(first.color_width, first.color_height, first.width, first.height)
        self._next = 0
        logger.info("TUM sequence %s: %d frames, depth %dx%d",
                    self.seq_dir, len(self.pairs), first.width, first.height)
        return self

    def timestamp(self, i: int) -> float:
        return self.pairs[i][0].ts

    def acquire(self) -> Frame | None:
        if self.exhausted:
            return None
        i = self._next
        # advance first so an unreadable pair is skipped, not retried
        self._next += 1
        return self._read(i)
