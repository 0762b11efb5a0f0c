from dataclasses import dataclass


@dataclass
class LoudnormSpec:
    name: str
    I: float
    TP: float
    LRA: float


# Parameters of the analysis pass.  They shape loudnorm's internal gating,
# not the level of the rendered output.
measurement = LoudnormSpec("Measurement", I=-16.0, TP=-1.5, LRA=11.0)

DEFAULT_LUFS = -7.0
MAX_IMPACT_LUFS = -5.0
STREAMING_LUFS = -14.0
PODCAST_LUFS = -16.0
BROADCAST_LUFS = -23.0

MAX_LUFS = -2.0
MIN_LUFS = -30.0

PRESETS = {
    "dj": DEFAULT_LUFS,
    "max_impact": MAX_IMPACT_LUFS,
    "streaming": STREAMING_LUFS,
    "podcast": PODCAST_LUFS,
    "broadcast": BROADCAST_LUFS,
}

LIMITER_CEILING_DB = -1.0
LIMITER_ATTACK_MS = 5
LIMITER_RELEASE_MS = 50
HEADROOM_DB = -1.0
HEADROOM_TRIGGER_DB = -1.0

OUTPUT_SAMPLE_RATE = 44100


def in_bounds(lufs: float) -> bool:
    return MIN_LUFS <= lufs <= MAX_LUFS
