import json


class Telemetry:
    def __init__(self, keep_frames: bool = True):
        self.keep_frames = keep_frames
        self.frames = []
        self.counts = {}

    def log_frame(self, idx: int, rec: dict):
        rec["frame_idx"] = idx
        outcome = rec.get("outcome")
        if outcome is not None:
            self.counts[outcome] = self.counts.get(outcome, 0) + 1
        if self.keep_frames:
            self.frames.append(rec)

    def summary(self) -> dict:
        return {"num_frames": sum(self.counts.values()), "outcomes": dict(self.counts)}

    def dump(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"summary": self.summary(), "frames": self.frames}, f, indent=2)
