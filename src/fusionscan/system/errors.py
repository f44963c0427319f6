class FusionScanError(Exception):
    pass


class GeometryMismatchError(FusionScanError):
    """A frame buffer does not match the geometry the pipeline was opened with."""

    def __init__(self, stream: str, expected: tuple[int, int], actual: tuple[int, int]):
        self.stream = stream
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Size of {stream} frame does not match. "
            f"Expected: {expected[0]}x{expected[1]}, Actual: {actual[0]}x{actual[1]}"
        )


class EngineError(FusionScanError):
    """Operational failure reported by the reconstruction engine (e.g. invalid operation)."""


class PipelineInitError(FusionScanError):
    """The pipeline cannot be created (no usable engine, sensor or geometry)."""
