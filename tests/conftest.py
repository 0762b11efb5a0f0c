import os
import subprocess
import sys
import threading

import numpy as np
import pytest
import soundfile as sf

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from levelmix import create_app, settings
from levelmix.jobstore import JsonJobStore
from levelmix.progress import FileProgressStore
from levelmix.services.gate import ConcurrencyGate
from levelmix.storage import LocalAudioStore


LOUDNORM_TEMPLATE = """\
Input #0, wav, from 'in.wav':
  Duration: 00:03:00.00, bitrate: 1411 kb/s
[Parsed_loudnorm_0 @ 0x55d5c0a3b2c0]
{{
\t"input_i" : "{i}",
\t"input_tp" : "{tp}",
\t"input_lra" : "{lra}",
\t"input_thresh" : "{thresh}",
\t"output_i" : "-16.00",
\t"output_tp" : "-1.50",
\t"output_lra" : "7.10",
\t"output_thresh" : "-26.44",
\t"normalization_type" : "dynamic",
\t"target_offset" : "0.00"
}}
"""


def loudnorm_stderr(i="-20.50", tp="-3.20", lra="7.00", thresh="-31.00"):
    return LOUDNORM_TEMPLATE.format(i=i, tp=tp, lra=lra, thresh=thresh)


def completed(cmd=None, returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(cmd or [], returncode, stdout, stderr)


class FakeRunner:
    """Stands in for ``services.ffmpeg.run``; ``handler(cmd)`` decides the result."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, cmd, timeout=None):
        with self._lock:
            self.calls.append(list(cmd))
        result = self.handler(list(cmd))
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture
def gate():
    return ConcurrencyGate(capacity=2, wait=1.0)


@pytest.fixture
def audio_path(tmp_path):
    p = tmp_path / 'in.wav'
    p.write_bytes(b'RIFF' + b'\0' * 64)
    return p


@pytest.fixture
def sine_file(tmp_path):
    sr = 48000
    t = np.linspace(0, 1.0, sr, False)
    wave = 0.1 * np.sin(2 * np.pi * 440 * t)
    path = tmp_path / 'tone.wav'
    sf.write(path, wave, sr)
    return path


@pytest.fixture
def stores(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, 'MIN_FREE_DISK_MB', 0)
    return {
        'jobs': JsonJobStore(str(tmp_path / 'data')),
        'store': LocalAudioStore(str(tmp_path / 'blobs')),
        'progress': FileProgressStore(str(tmp_path / 'progress')),
    }


class FakeScheduler:
    def __init__(self, fail=False):
        self.fail = fail
        self.tasks = []

    def enqueue(self, task):
        if self.fail:
            raise ConnectionError('broker unavailable')
        self.tasks.append(task)
        return f'celery-{task.job_id}'


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def client(tmp_path, stores, scheduler):
    app = create_app({
        'TESTING': True,
        'UPLOAD_FOLDER': str(tmp_path / 'uploads'),
        'JOBS': stores['jobs'],
        'STORAGE': stores['store'],
        'PROGRESS': stores['progress'],
        'SCHEDULER': scheduler,
    })
    return app.test_client()
