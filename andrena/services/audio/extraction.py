"""Audio extraction: container decoding and waveform normalization."""
from __future__ import annotations

import io
import logging
import math
from dataclasses import dataclass

import numpy as np
import soundfile as sf
import torch
import torchaudio

from andrena.core.errors import DecodeError, DecodeErrorKind
from andrena.services.audio.types import AudioBuffer, RawMedia

logger = logging.getLogger(__name__)

SNDFILE_CONTAINERS = frozenset({"wav", "flac", "ogg"})
FFMPEG_CONTAINERS = frozenset({"mp3", "webm", "mp4", "m4a", "mkv", "opus", "aac"})

# Resample kernels grow with the reduced rate ratio; 44100 -> 16000 reduces to 441:160.
MAX_RESAMPLE_RATIO_TERM = 1000


@dataclass(slots=True)
class AudioExtractor:
    """Convert fetched media into a peak-normalized mono waveform.

    Decoding, mixdown and resampling run on CPU with fixed parameters, so
    the same input bytes always produce bit-identical samples.
    """

    target_sample_rate: int
    min_duration_seconds: float
    max_duration_seconds: float

    def __post_init__(self) -> None:
        if self.target_sample_rate <= 0:
            raise ValueError("target_sample_rate must be positive")
        if self.min_duration_seconds <= 0:
            raise ValueError("min_duration_seconds must be positive")
        if self.max_duration_seconds < self.min_duration_seconds:
            raise ValueError("max_duration_seconds must not be below min_duration_seconds")

    def __call__(self, media: RawMedia) -> AudioBuffer:
        return self.extract(media)

    def extract(self, media: RawMedia) -> AudioBuffer:
        if not media.data:
            raise DecodeError(DecodeErrorKind.EMPTY_MEDIA, "Fetched media contains no bytes.")

        waveform, sample_rate = self._load_waveform(media)
        waveform = self._ensure_mono(waveform)
        waveform = self._resample_if_needed(waveform, sample_rate)
        waveform = self._enforce_duration(waveform)
        samples = self._normalize(waveform).squeeze(0).numpy().astype(np.float32, copy=True)
        return AudioBuffer(samples=samples, sample_rate=self.target_sample_rate)

    def _load_waveform(self, media: RawMedia) -> tuple[torch.Tensor, int]:
        container = media.container
        if container in SNDFILE_CONTAINERS:
            waveform, sample_rate = self._decode_with_soundfile(media.data)
        elif container in FFMPEG_CONTAINERS:
            waveform, sample_rate = self._decode_with_torchaudio(media.data)
        else:
            raise DecodeError(DecodeErrorKind.UNSUPPORTED_CODEC, f"Unsupported media container '{container}'.")

        if waveform.numel() == 0:
            raise DecodeError(DecodeErrorKind.EMPTY_MEDIA, "Decoded audio is empty.")
        if sample_rate <= 0:
            raise DecodeError(DecodeErrorKind.CORRUPT_STREAM, "Decoded audio reports no sample rate.")
        return waveform, sample_rate

    @staticmethod
    def _decode_with_soundfile(data: bytes) -> tuple[torch.Tensor, int]:
        try:
            array, sample_rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
        except (sf.LibsndfileError, RuntimeError, TypeError) as exc:
            raise DecodeError(DecodeErrorKind.CORRUPT_STREAM, f"Unable to decode audio: {exc}") from exc
        # soundfile yields (frames, channels); torchaudio convention is (channels, frames)
        return torch.from_numpy(np.ascontiguousarray(array.T)), int(sample_rate)

    @staticmethod
    def _decode_with_torchaudio(data: bytes) -> tuple[torch.Tensor, int]:
        try:
            waveform, sample_rate = torchaudio.load(io.BytesIO(data))
        except Exception as exc:  # pragma: no cover - torchaudio raises many subclasses
            raise DecodeError(DecodeErrorKind.CORRUPT_STREAM, f"Unable to decode audio: {exc}") from exc
        return waveform.to(torch.float32), int(sample_rate)

    def _ensure_mono(self, waveform: torch.Tensor) -> torch.Tensor:
        if waveform.size(0) == 1:
            return waveform
        return waveform.mean(dim=0, keepdim=True)

    def _resample_if_needed(self, waveform: torch.Tensor, sample_rate: int) -> torch.Tensor:
        if sample_rate == self.target_sample_rate:
            return waveform
        divisor = math.gcd(sample_rate, self.target_sample_rate)
        if max(sample_rate, self.target_sample_rate) // divisor > MAX_RESAMPLE_RATIO_TERM:
            raise DecodeError(
                DecodeErrorKind.UNSUPPORTED_CODEC,
                f"Sample rate {sample_rate} Hz cannot be resampled to {self.target_sample_rate} Hz.",
            )
        try:
            resampler = torchaudio.transforms.Resample(orig_freq=sample_rate, new_freq=self.target_sample_rate)
            return resampler(waveform)
        except RuntimeError as exc:
            raise DecodeError(DecodeErrorKind.CORRUPT_STREAM, f"Unable to resample audio: {exc}") from exc

    def _enforce_duration(self, waveform: torch.Tensor) -> torch.Tensor:
        num_samples = waveform.size(-1)
        duration_seconds = num_samples / self.target_sample_rate
        if duration_seconds < self.min_duration_seconds:
            raise DecodeError(
                DecodeErrorKind.EMPTY_MEDIA,
                f"Audio duration {duration_seconds:.2f}s is below the minimum of {self.min_duration_seconds:.2f}s.",
            )

        max_samples = int(self.target_sample_rate * self.max_duration_seconds)
        if num_samples > max_samples:
            logger.info(
                "Truncating %.2fs of audio to the first %.2fs",
                duration_seconds,
                self.max_duration_seconds,
            )
            return waveform[..., :max_samples]
        return waveform

    @staticmethod
    def _normalize(waveform: torch.Tensor) -> torch.Tensor:
        peak = waveform.abs().max()
        if peak == 0:
            return waveform
        return waveform / peak
