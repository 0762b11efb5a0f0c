import subprocess
from pathlib import Path

import numpy as np
import pytest

from conftest import FakeRunner, completed
from levelmix.engine.normalizer import (
    DynamicsNormalizer,
    build_plan,
    calculate_dynamics_aware_target,
    determine_output_format,
    output_options_for,
)
from levelmix.errors import InvalidTarget, NormalizationFailed, NormalizationTimeout
from levelmix.models.job import LoudnessMeasurement, SilenceSpan


def measured(i=-20.0, tp=-3.0, lra=3.0):
    return LoudnessMeasurement.derived(i, tp, lra)


@pytest.mark.parametrize("lra,expected", [
    (0.0, 0.0),
    (3.99, 0.0),
    (5.0, 0.25),
    (6.0, 0.5),
    (7.5, 1.0),
    (9.0, 1.5),
    (12.0, 3.0),
    (16.0, 4.0),
    (40.0, 5.0),
])
def test_dynamics_adjustment(lra, expected):
    assert calculate_dynamics_aware_target(lra) == pytest.approx(expected)


def test_dynamics_adjustment_is_continuous_and_monotonic():
    values = [calculate_dynamics_aware_target(x) for x in np.linspace(0, 30, 3001)]
    steps = np.diff(values)
    assert (steps >= -1e-12).all()
    assert steps.max() < 0.01
    assert max(values) == pytest.approx(5.0)


def test_plan_chain_order_with_headroom():
    plan = build_plan(-14.0, measured(i=-20.0, tp=-3.0, lra=3.0), two_stage=True, reference_lufs=-14.0)
    assert plan.gain_db == pytest.approx(6.0)
    assert plan.predicted_peak_db == pytest.approx(3.0)
    assert plan.headroom
    assert not plan.two_stage
    assert plan.filters[0] == "volume=6.00dB"
    assert plan.filters[1].startswith("alimiter=limit=0.8913:attack=5:release=50")
    assert plan.filters[2] == "volume=-1.0dB"


def test_plan_without_headroom_when_peak_is_safe():
    plan = build_plan(-14.0, measured(i=-14.0, tp=-6.0, lra=3.0))
    assert plan.gain_db == pytest.approx(0.0)
    assert not plan.headroom
    assert len(plan.filters) == 2


def test_plan_trims_first():
    span = SilenceSpan(True, False, 2.0, 60.0, 60.0)
    plan = build_plan(-10.0, measured(), silence=span)
    assert plan.filters[0] == "atrim=start=1.950:end=60.000,asetpts=PTS-STARTPTS"
    assert plan.filters[1].startswith("volume=")


def test_wide_dynamics_raise_the_target():
    plan = build_plan(-10.0, measured(i=-20.0, lra=12.0), two_stage=False)
    assert plan.adjustment_db == pytest.approx(3.0)
    assert plan.adjusted_target == pytest.approx(-7.0)
    assert plan.gain_db == pytest.approx(13.0)


def test_worked_example_for_moderate_dynamics():
    plan = build_plan(-14.0, LoudnessMeasurement.derived(-20.0, -3.0, 10.0), two_stage=False)
    assert plan.adjustment_db == pytest.approx(2.0)
    assert plan.adjusted_target == pytest.approx(-12.0)
    assert plan.gain_db == pytest.approx(8.0)
    assert plan.predicted_peak_db == pytest.approx(5.0)
    assert plan.headroom
    assert plan.filters[0] == "volume=8.00dB"
    assert plan.filters[-1] == "volume=-1.0dB"


def test_two_stage_for_quiet_targets():
    plan = build_plan(-23.0, measured(i=-20.0, tp=-3.0, lra=3.0), two_stage=True, reference_lufs=-14.0)
    assert plan.two_stage
    assert plan.adjusted_target == pytest.approx(-14.0)
    assert plan.stage_two_gain_db == pytest.approx(-9.0)
    assert plan.filters[-1] == "volume=-9.00dB"

    single = build_plan(-23.0, measured(i=-20.0, tp=-3.0, lra=3.0), two_stage=False)
    assert not single.two_stage
    assert single.gain_db == pytest.approx(-3.0)
    assert not single.headroom


def test_adjusted_target_is_clamped():
    plan = build_plan(-3.0, measured(lra=12.0), two_stage=False)
    assert plan.unclamped_target == pytest.approx(0.0)
    assert plan.adjusted_target == -2.0
    assert plan.clamped


@pytest.mark.parametrize("target", [-1.0, -31.0])
def test_out_of_range_target(target):
    with pytest.raises(InvalidTarget):
        build_plan(target, measured())


def test_output_format_by_tier():
    assert determine_output_format("wav", False) == "mp3"
    assert determine_output_format("wav", True) == "wav"
    assert determine_output_format("FLAC", True) == "flac"
    assert determine_output_format("ogg", True) == "mp3"
    assert output_options_for("mp3", True).extra_options == ["-q:a", "0"]
    assert output_options_for("mp3", False).bitrate == "320k"
    assert output_options_for("wav", True).codec == "pcm_s16le"


def _writing_runner(payload=b"ID3" + b"\0" * 128):
    def handler(cmd):
        Path(cmd[-1]).write_bytes(payload)
        return completed(cmd)
    return FakeRunner(handler)


def test_normalize_renders_via_part_file(gate, audio_path, tmp_path):
    out = tmp_path / "out.mp3"
    runner = _writing_runner()
    plan = DynamicsNormalizer(gate, runner).normalize(
        audio_path, out, -14.0, measured(), options=output_options_for("mp3", False)
    )
    cmd = runner.calls[0]
    assert cmd[-1].endswith(".part.mp3")
    assert cmd[cmd.index("-af") + 1] == plan.filter_chain
    assert cmd[cmd.index("-c:a") + 1] == "libmp3lame"
    assert cmd[cmd.index("-b:a") + 1] == "320k"
    assert cmd[cmd.index("-ar") + 1] == "44100"
    assert cmd[cmd.index("-f") + 1] == "mp3"
    assert out.read_bytes().startswith(b"ID3")
    assert not list(tmp_path.glob("*.part*"))


def test_normalize_failure_keeps_diagnostics(gate, audio_path, tmp_path):
    out = tmp_path / "out.wav"
    runner = FakeRunner(lambda cmd: completed(cmd, returncode=1, stderr="Error while filtering: Invalid argument"))
    with pytest.raises(NormalizationFailed) as info:
        DynamicsNormalizer(gate, runner).normalize(audio_path, out, -14.0, measured())
    assert "Invalid argument" in info.value.diagnostics
    assert not out.exists()


def test_normalize_empty_output_fails(gate, audio_path, tmp_path):
    out = tmp_path / "out.wav"
    with pytest.raises(NormalizationFailed, match="empty"):
        DynamicsNormalizer(gate, _writing_runner(b"")).normalize(audio_path, out, -14.0, measured())
    assert not out.exists()
    assert not list(tmp_path.glob("*.part*"))


def test_normalize_timeout(gate, audio_path, tmp_path):
    runner = FakeRunner(lambda cmd: subprocess.TimeoutExpired(cmd, 1))
    with pytest.raises(NormalizationTimeout):
        DynamicsNormalizer(gate, runner).normalize(audio_path, tmp_path / "out.mp3", -14.0, measured())


def test_normalize_rejects_target_before_running(gate, audio_path, tmp_path):
    runner = _writing_runner()
    with pytest.raises(InvalidTarget):
        DynamicsNormalizer(gate, runner).normalize(audio_path, tmp_path / "out.mp3", 0.0, measured())
    assert runner.calls == []
