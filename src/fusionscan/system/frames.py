from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np

from .errors import GeometryMismatchError


@dataclass
class Frame:
    """One synchronized colour + depth capture. Depth is in millimetres."""
    color: np.ndarray  # (Hc, Wc, 4) uint8, BGRA
    depth: np.ndarray  # (H, W) uint16
    timestamp_ms: int = 0

    @property
    def width(self) -> int:
        return int(self.depth.shape[1])

    @property
    def height(self) -> int:
        return int(self.depth.shape[0])

    @property
    def color_width(self) -> int:
        return int(self.color.shape[1])

    @property
    def color_height(self) -> int:
        return int(self.color.shape[0])

    @property
    def color_data(self) -> bytes:
        return np.ascontiguousarray(self.color, dtype=np.uint8).tobytes()

    @property
    def depth_data(self) -> np.ndarray:
        return np.ascontiguousarray(self.depth, dtype=np.uint16).reshape(-1)


@dataclass(frozen=True)
class FrameGeometry:
    color_width: int
    color_height: int
    depth_width: int
    depth_height: int

    def __post_init__(self):
        if min(self.color_width, self.color_height, self.depth_width, self.depth_height) <= 0:
            raise ValueError(f"Invalid frame geometry: {self}")

    @property
    def color_shape(self) -> tuple[int, int, int]:
        return (self.color_height, self.color_width, 4)

    @property
    def depth_shape(self) -> tuple[int, int]:
        return (self.depth_height, self.depth_width)

    def validate(self, frame: Frame) -> None:
        if frame.color.ndim != 3 or frame.color.shape[2] != 4 or \
           (frame.color_width, frame.color_height) != (self.color_width, self.color_height):
            raise GeometryMismatchError(
                "color", (self.color_width, self.color_height),
                (frame.color_width, frame.color_height),
            )
        if frame.depth.ndim != 2 or (frame.width, frame.height) != (self.depth_width, self.depth_height):
            raise GeometryMismatchError(
                "depth", (self.depth_width, self.depth_height),
                (frame.width, frame.height) if frame.depth.ndim == 2 else (int(frame.depth.size), 1),
            )


class FrameSource(ABC):
    """
    Supplier of synchronized frames.

    acquire() returns None when no new depth+colour pair is ready; that is not
    an error. The geometry is fixed once the source is open. Use as a context
    manager to guarantee close().
    """

    geometry: FrameGeometry | None = None

    def open(self) -> "FrameSource":
        return self

    def close(self) -> None:
        pass

    @abstractmethod
    def acquire(self) -> Frame | None:
        raise NotImplementedError

    @property
    def exhausted(self) -> bool:
        return False

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
