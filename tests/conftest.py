"""Shared fixtures: fake model backend, WAV fixtures and a fake yt-dlp executable."""
from __future__ import annotations

import asyncio
import io
import os
import stat
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pytest
import soundfile as sf

from andrena.core.config import Settings
from andrena.core.errors import FetchError, FetchErrorKind
from andrena.models.engine import InferenceEngine, ModelHandle
from andrena.pipeline import PipelineCoordinator
from andrena.services.audio import AudioExtractor, MediaFetcher, MediaRequest, RawMedia, SourceInfo

SAMPLE_RATE = 16000
LABELS = ("MUSIC", "SPEECH", "NOISE")


def make_wav(duration_seconds: float, sample_rate: int = SAMPLE_RATE, channels: int = 1, frequency: float = 440.0) -> bytes:
    frames = int(round(duration_seconds * sample_rate))
    t = np.arange(frames, dtype=np.float64) / sample_rate
    tone = (0.4 * np.sin(2 * np.pi * frequency * t) + 0.1 * np.sin(2 * np.pi * 3 * frequency * t)).astype(np.float32)
    data = np.stack([tone * (0.5 + 0.5 * c) for c in range(channels)], axis=1) if channels > 1 else tone
    buffer = io.BytesIO()
    sf.write(buffer, data, sample_rate, format="WAV", subtype="PCM_16")
    return buffer.getvalue()


class FakeFeatureExtractor:
    sampling_rate = SAMPLE_RATE

    def __call__(self, audio, sampling_rate, return_tensors="np"):
        assert sampling_rate == SAMPLE_RATE
        return {"input_values": np.asarray(audio, dtype=np.float32)[None, :]}


class FakeSession:
    """Deterministic stand-in for an ONNX session with three output labels."""

    def __init__(self, width: int = len(LABELS)) -> None:
        self.width = width

    def get_inputs(self):
        return [SimpleNamespace(name="input_values", shape=["batch", "sequence"])]

    def run(self, output_names, feeds):
        values = feeds["input_values"][0]
        rms = float(np.sqrt(np.mean(values.astype(np.float64) ** 2)))
        crossings = float(np.mean(np.abs(np.diff(np.signbit(values).astype(np.int8)))))
        logits = np.array([rms * 4.0, 1.0 - rms, crossings * 10.0, 0.5][: self.width], dtype=np.float32)
        return [logits[None, :]]


class FixtureFetcher:
    """In-memory fetcher keyed by the last path segment of the URL."""

    def __init__(self, media: dict[str, bytes]) -> None:
        self.media = media
        self.calls: list[str] = []

    async def fetch(self, request: MediaRequest) -> RawMedia:
        route = request.url.rstrip("/").rsplit("/", 1)[-1]
        self.calls.append(route)
        if route == "hang":
            await asyncio.sleep(30)
        if route not in self.media:
            raise FetchError(FetchErrorKind.NOT_FOUND, f"No fixture for {route}")
        return RawMedia(
            data=self.media[route],
            container="wav",
            source=SourceInfo(source_id=route, title=f"Fixture {route}", extension="wav"),
        )


@pytest.fixture
def wav_factory():
    return make_wav


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        target_sample_rate=SAMPLE_RATE,
        min_audio_duration_seconds=0.5,
        max_audio_duration_seconds=30.0,
        inference_window_seconds=2.0,
        request_deadline_seconds=10.0,
        fetch_timeout_seconds=5.0,
        fetch_max_attempts=3,
        fetch_backoff_seconds=0.01,
        fetch_backoff_max_seconds=0.02,
        scratch_dir=str(tmp_path / "scratch"),
        worker_count=2,
        hf_cache_dir=str(tmp_path / "hf"),
        onnx_model_path=str(tmp_path / "model.onnx"),
    )


@pytest.fixture
def model_handle() -> ModelHandle:
    return ModelHandle(
        session=FakeSession(),
        feature_extractor=FakeFeatureExtractor(),
        labels=LABELS,
        sample_rate=SAMPLE_RATE,
        model_version="fake-model@0123456789ab",
        input_name="input_values",
        input_rank=2,
    )


@pytest.fixture
def engine(settings, model_handle) -> InferenceEngine:
    return InferenceEngine.from_handle(settings, model_handle)


@pytest.fixture
def fixture_media(wav_factory) -> dict[str, bytes]:
    return {
        "ok": wav_factory(2.0, sample_rate=44100, channels=2),
        "speech": wav_factory(5.0, frequency=180.0),
        "short": wav_factory(0.1),
    }


@pytest.fixture
def fixture_fetcher(fixture_media) -> FixtureFetcher:
    return FixtureFetcher(fixture_media)


@pytest.fixture
def coordinator(settings, engine, fixture_fetcher):
    executor = ThreadPoolExecutor(max_workers=2)
    extractor = AudioExtractor(
        target_sample_rate=SAMPLE_RATE,
        min_duration_seconds=settings.min_audio_duration_seconds,
        max_duration_seconds=settings.max_audio_duration_seconds,
    )
    instance = PipelineCoordinator(
        fetcher=fixture_fetcher,
        extractor=extractor,
        engine=engine,
        executor=executor,
        deadline_seconds=settings.request_deadline_seconds,
    )
    yield instance
    instance.shutdown()


FAKE_DOWNLOADER = '''
import json
import os
import subprocess
import sys
import time
from pathlib import Path

args = sys.argv[1:]
url = args[args.index("--") + 1]
template = args[args.index("-o") + 1]
state_dir = Path(os.environ["FAKE_DL_STATE"])
with open(state_dir / "calls.log", "a") as log:
    log.write(url + "\\n")
route = url.rstrip("/").rsplit("/", 1)[-1]


def fail(message):
    sys.stderr.write(message + "\\n")
    sys.exit(1)


if route == "missing":
    fail("ERROR: [generic] Unable to download webpage: HTTP Error 404: Not Found")
if route == "unsupported":
    fail("ERROR: Unsupported URL: " + url)
if route == "offline":
    fail("ERROR: [generic] Unable to download webpage: <urlopen error [Errno -3] Temporary failure in name resolution>")
if route == "flaky":
    counter = state_dir / "flaky.count"
    count = int(counter.read_text()) if counter.exists() else 0
    counter.write_text(str(count + 1))
    if count < 1:
        fail("ERROR: [generic] Unable to download webpage: Connection reset by peer")
if route == "garbled":
    print("[download] not a descriptor")
    sys.exit(0)
if route == "silent":
    sys.exit(0)
if route == "hang":
    Path(template.replace("%(ext)s", "part")).write_bytes(b"partial")
    (state_dir / "hang.pid").write_text(str(os.getpid()))
    time.sleep(60)
    sys.exit(0)
if route == "spawn":
    helper = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    (state_dir / "helper.pid").write_text(str(helper.pid))
    os._exit(0)

source = Path(os.environ["FAKE_DL_MEDIA"]) / (route + ".wav")
if not source.exists():
    fail("ERROR: [generic] Video unavailable")
target = Path(template.replace("%(ext)s", "wav"))
target.write_bytes(source.read_bytes())
print(json.dumps({
    "id": route,
    "title": "Fixture " + route,
    "uploader": "tests",
    "description": None,
    "duration": 2,
    "ext": "wav",
    "filepath": str(target),
}))
'''


@pytest.fixture
def fake_downloader(tmp_path, monkeypatch, fixture_media) -> SimpleNamespace:
    bin_dir = tmp_path / "bin"
    media_dir = tmp_path / "media"
    state_dir = tmp_path / "state"
    for directory in (bin_dir, media_dir, state_dir):
        directory.mkdir()
    for name, data in fixture_media.items():
        (media_dir / f"{name}.wav").write_bytes(data)
    (media_dir / "corrupt.wav").write_bytes(b"RIFF\x24\x00\x00\x00WAVEfmt garbage")

    script = bin_dir / "yt-dlp"
    script.write_text(f"#!{sys.executable}\n" + FAKE_DOWNLOADER)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    monkeypatch.setenv("FAKE_DL_STATE", str(state_dir))
    monkeypatch.setenv("FAKE_DL_MEDIA", str(media_dir))

    def calls() -> list[str]:
        log = state_dir / "calls.log"
        return log.read_text().splitlines() if log.exists() else []

    return SimpleNamespace(path=script, state_dir=state_dir, scratch=tmp_path / "scratch", calls=calls)


@pytest.fixture
def media_fetcher(fake_downloader) -> MediaFetcher:
    return MediaFetcher(
        downloader_path=str(fake_downloader.path),
        timeout_seconds=5.0,
        max_bytes=10 * 1024 * 1024,
        max_attempts=3,
        backoff_seconds=0.01,
        backoff_max_seconds=0.02,
        scratch_root=str(fake_downloader.scratch),
    )


@pytest.fixture
def fake_session_cls():
    return FakeSession


@pytest.fixture
def fake_feature_extractor_cls():
    return FakeFeatureExtractor


def _process_alive(pid: int, grace_seconds: float = 2.0) -> bool:
    """True while ``pid`` runs; zombies awaiting their reaper count as gone."""
    deadline = time.monotonic() + grace_seconds
    while True:
        if Path("/proc/self").exists():
            try:
                state = Path(f"/proc/{pid}/stat").read_text().rsplit(")", 1)[1].split()[0]
                alive = state != "Z"
            except (FileNotFoundError, ProcessLookupError):
                alive = False
        else:
            try:
                os.kill(pid, 0)
                alive = True
            except ProcessLookupError:
                alive = False
        if not alive or time.monotonic() >= deadline:
            return alive
        time.sleep(0.05)


@pytest.fixture
def process_alive():
    return _process_alive
