import subprocess
import threading

import pytest

from conftest import FakeRunner, completed, loudnorm_stderr
from levelmix.errors import AnalysisFailed, AnalysisTimeout, InputNotFound, ResourceTimeout
from levelmix.services.gate import ConcurrencyGate
from levelmix.services.loudness import LoudnessMeter, parse_loudnorm_output


def test_parse_loudnorm_block_among_diagnostics():
    m = parse_loudnorm_output(loudnorm_stderr() + "size=N/A time=00:03:00.00\n")
    assert m.integrated_lufs == pytest.approx(-20.5)
    assert m.true_peak_db == pytest.approx(-3.2)
    assert m.loudness_range_lu == pytest.approx(7.0)
    assert m.threshold_lufs == pytest.approx(-31.0)
    assert m.sample_count == 0


def test_parse_without_json_fails():
    with pytest.raises(AnalysisFailed, match="no JSON"):
        parse_loudnorm_output("Error opening input file\n")


def test_parse_unparseable_field_is_not_zeroed():
    with pytest.raises(AnalysisFailed, match="input_tp"):
        parse_loudnorm_output(loudnorm_stderr(tp="n/a"))


def test_parse_silent_input_reports_no_loudness():
    with pytest.raises(AnalysisFailed, match="input_i"):
        parse_loudnorm_output(loudnorm_stderr(i="-inf", thresh="-inf"))


def test_parse_missing_threshold_is_derived():
    text = '{"input_i": "-18.0", "input_tp": "-1.0", "input_lra": "5.0"}'
    m = parse_loudnorm_output(text)
    assert m.threshold_lufs == pytest.approx(-28.0)


def test_measure_full_file(gate, audio_path):
    runner = FakeRunner(lambda cmd: completed(cmd, stderr=loudnorm_stderr()))
    m = LoudnessMeter(gate, runner).measure(audio_path)
    assert m.integrated_lufs == pytest.approx(-20.5)
    cmd = runner.calls[0]
    assert "-ss" not in cmd
    assert "loudnorm=print_format=json:I=-16:TP=-1.5:LRA=11" in cmd
    assert cmd[-3:] == ["-f", "null", "-"]


def test_measure_window_seeks_before_input(gate, audio_path):
    runner = FakeRunner(lambda cmd: completed(cmd, stderr=loudnorm_stderr()))
    LoudnessMeter(gate, runner).measure(audio_path, start=42.5, length=30)
    cmd = runner.calls[0]
    assert cmd.index("-ss") < cmd.index("-i")
    assert cmd[cmd.index("-ss") + 1] == "42.50"
    assert cmd[cmd.index("-t") + 1] == "30.00"


def test_measure_missing_input(gate, tmp_path):
    runner = FakeRunner(lambda cmd: completed(cmd))
    with pytest.raises(InputNotFound) as info:
        LoudnessMeter(gate, runner).measure(tmp_path / "nope.wav")
    assert isinstance(info.value, FileNotFoundError)
    assert runner.calls == []


def test_measure_nonzero_exit_carries_diagnostics(gate, audio_path):
    runner = FakeRunner(lambda cmd: completed(cmd, returncode=1, stderr="in.wav: Invalid data found when processing input"))
    with pytest.raises(AnalysisFailed, match="Invalid data found"):
        LoudnessMeter(gate, runner).measure(audio_path)


def test_measure_timeout(gate, audio_path):
    runner = FakeRunner(lambda cmd: subprocess.TimeoutExpired(cmd, 1))
    with pytest.raises(AnalysisTimeout):
        LoudnessMeter(gate, runner, timeout=1).measure(audio_path)


def test_measure_waits_for_gate_then_gives_up(audio_path):
    gate = ConcurrencyGate(capacity=1, wait=0.05)
    runner = FakeRunner(lambda cmd: completed(cmd, stderr=loudnorm_stderr()))
    held = threading.Event()
    release = threading.Event()

    def hold():
        with gate.slot():
            held.set()
            release.wait(2)

    t = threading.Thread(target=hold)
    t.start()
    held.wait(2)
    try:
        with pytest.raises(ResourceTimeout):
            LoudnessMeter(gate, runner).measure(audio_path)
    finally:
        release.set()
        t.join()
    assert runner.calls == []
    assert gate.in_use == 0
