import asyncio
import io

import numpy as np
import pytest
import soundfile as sf

from core.errors import AudioFormatError, ModelNotInstalledError
from services.model_manager_service import ModelManagerService
from services.transcription_service import TranscriptionService
from utils.audio_utils import AudioNormalizer, compute_rms, is_normalized_wav, split_segments

MODEL_ID = "parakeet-tdt-0.6b-v3"
SAMPLE_RATE = 16000


class RecordingServer:
    """Stands in for the speech server; answers with the segment length."""

    def __init__(self):
        self.started = []
        self.segments = []

    async def start(self, model_path, **options):
        self.started.append(model_path)

    async def transcribe_samples(self, samples, sample_rate=None):
        self.segments.append(len(samples))
        return {"text": f"seg{len(samples)}", "elapsed": 0.5}


def no_ffmpeg():
    raise AudioFormatError("未找到FFmpeg")


def make_wav(seconds, amplitude=0.2, sample_rate=SAMPLE_RATE, channels=1):
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    tone = (amplitude * np.sin(2 * np.pi * 440 * t)).astype(np.float32)
    data = tone if channels == 1 else np.stack([tone] * channels, axis=1)
    buffer = io.BytesIO()
    sf.write(buffer, data, sample_rate, format="WAV", subtype="FLOAT")
    return buffer.getvalue()


@pytest.fixture
def manager(tmp_path):
    manager = ModelManagerService("parakeet", models_dir=tmp_path / "parakeet-models")
    model_dir = tmp_path / "parakeet-models" / MODEL_ID
    model_dir.mkdir(parents=True)
    for name in manager.validate_model_name(MODEL_ID).required_files:
        (model_dir / name).write_bytes(b"onnx")
    return manager


def make_service(manager, server):
    return TranscriptionService(manager, server, AudioNormalizer(no_ffmpeg), sample_rate=SAMPLE_RATE,
                                max_segment_seconds=30, silence_threshold=0.001)


def test_silence_never_reaches_the_server(manager):
    server = RecordingServer()
    result = asyncio.run(make_service(manager, server).transcribe(make_wav(5, amplitude=0.0)))

    assert result.text == ""
    assert result.segments == 0
    assert not result.success
    assert result.to_dict()["message"] == "No audio detected"
    assert server.started == []
    assert server.segments == []


def test_long_audio_is_split_and_joined(manager):
    server = RecordingServer()
    result = asyncio.run(make_service(manager, server).transcribe(make_wav(65)))

    assert server.segments == [30 * SAMPLE_RATE, 30 * SAMPLE_RATE, 5 * SAMPLE_RATE]
    assert result.text == f"seg{30 * SAMPLE_RATE} seg{30 * SAMPLE_RATE} seg{5 * SAMPLE_RATE}"
    assert result.segments == 3
    assert result.elapsed == pytest.approx(1.5)
    assert result.duration_seconds == pytest.approx(65)
    assert server.started == [manager.get_model_path(MODEL_ID)]


def test_short_audio_single_request(manager):
    server = RecordingServer()
    result = asyncio.run(make_service(manager, server).transcribe(make_wav(2), language="en"))

    assert result.segments == 1
    assert result.language == "en"
    assert result.success


def test_empty_audio_rejected(manager):
    with pytest.raises(AudioFormatError):
        asyncio.run(make_service(manager, RecordingServer()).transcribe(b""))


def test_non_wav_without_ffmpeg(manager):
    with pytest.raises(AudioFormatError):
        asyncio.run(make_service(manager, RecordingServer()).transcribe(b"ID3\x03\x00 fake mp3 bytes"))


def test_stereo_wav_needs_conversion(manager):
    # 不是单声道，需要FFmpeg
    with pytest.raises(AudioFormatError):
        asyncio.run(make_service(manager, RecordingServer()).transcribe(make_wav(1, channels=2)))


def test_model_must_be_installed(tmp_path):
    manager = ModelManagerService("parakeet", models_dir=tmp_path / "empty")
    server = RecordingServer()

    with pytest.raises(ModelNotInstalledError):
        asyncio.run(make_service(manager, server).transcribe(make_wav(1)))

    assert server.started == []


def test_audio_helpers():
    assert is_normalized_wav(make_wav(0.5))
    assert not is_normalized_wav(make_wav(0.5, sample_rate=44100))
    assert compute_rms(np.zeros(0, dtype=np.float32)) == 0.0
    assert compute_rms(np.full(10, 0.5, dtype=np.float32)) == pytest.approx(0.5)
    assert [len(s) for s in split_segments(np.zeros(25), 10)] == [10, 10, 5]
