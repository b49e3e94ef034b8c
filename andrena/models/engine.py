"""Inference engine serving a Hugging Face audio classifier through ONNX Runtime."""
from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

import numpy as np
import onnxruntime as ort
from transformers import AutoConfig, AutoFeatureExtractor

from andrena.core.config import Settings
from andrena.core.errors import InferenceError, InferenceErrorKind, ModelLoadError
from andrena.models.artifacts import ensure_onnx_artifact, file_digest
from andrena.services.audio.types import AudioBuffer, SourceInfo

FEATURE_KEYS = ("input_values", "input_features")


@dataclass(frozen=True, slots=True)
class ModelHandle:
    """Loaded model artefacts shared read-only by every request."""

    session: Any
    feature_extractor: Callable[..., Any]
    labels: tuple[str, ...]
    sample_rate: int
    model_version: str
    input_name: str
    input_rank: Optional[int] = None


@dataclass(frozen=True, slots=True)
class InferenceResult:
    """Per-label probabilities for one audio buffer."""

    scores: Mapping[str, float]
    top_label: str
    model_version: str
    input_duration_seconds: float
    window_count: int
    source: Optional[SourceInfo] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "scores": dict(self.scores),
            "top_label": self.top_label,
            "model_version": self.model_version,
            "input_duration_seconds": self.input_duration_seconds,
            "window_count": self.window_count,
            "source": asdict(self.source) if self.source is not None else None,
        }


class InferenceEngine:
    """Load the model once and run forward passes against audio buffers.

    ``infer`` only reads the handle, so it can be called from any number of
    worker threads at once without locking. ``load`` is guarded so that
    concurrent first calls still build a single handle.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._handle: Optional[ModelHandle] = None
        self._load_lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_handle(cls, settings: Settings, handle: ModelHandle) -> "InferenceEngine":
        engine = cls(settings)
        engine._handle = handle
        return engine

    @property
    def is_loaded(self) -> bool:
        return self._handle is not None

    @property
    def handle(self) -> ModelHandle:
        if self._handle is None:
            raise InferenceError(InferenceErrorKind.BACKEND_FAILURE, "Model artefacts have not been loaded yet.")
        return self._handle

    def load(self) -> ModelHandle:
        """Build the model handle if it does not exist yet."""

        if self._handle is not None:
            return self._handle
        with self._load_lock:
            if self._handle is None:
                try:
                    self._handle = self._build_handle()
                except ModelLoadError:
                    raise
                except Exception as exc:
                    raise ModelLoadError(f"Unable to load model '{self.settings.hf_model_name}': {exc}") from exc
        return self._handle

    def release(self) -> None:
        if self._handle is not None:
            self._logger.info("Releasing model %s", self._handle.model_version)
        self._handle = None

    def _build_handle(self) -> ModelHandle:
        settings = self.settings
        cache_dir = Path(settings.hf_cache_dir)
        cache_dir.mkdir(parents=True, exist_ok=True)

        self._logger.info("Initializing feature extractor for '%s'", settings.hf_model_name)
        feature_extractor = AutoFeatureExtractor.from_pretrained(settings.hf_model_name, cache_dir=cache_dir)
        config = AutoConfig.from_pretrained(settings.hf_model_name, cache_dir=cache_dir)

        extractor_rate = getattr(feature_extractor, "sampling_rate", None)
        if extractor_rate is not None and int(extractor_rate) != settings.target_sample_rate:
            raise ModelLoadError(
                f"Model expects {extractor_rate} Hz audio but ANDRENA_SAMPLE_RATE is {settings.target_sample_rate}."
            )

        try:
            onnx_path = ensure_onnx_artifact(Path(settings.onnx_model_path), settings.onnx_download_url)
        except FileNotFoundError as exc:
            raise ModelLoadError(str(exc)) from exc

        self._logger.info("Loading ONNX runtime session from '%s'", onnx_path)
        session_options = ort.SessionOptions()
        session_options.enable_mem_pattern = False
        session_options.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL
        session_options.intra_op_num_threads = settings.ort_intra_op_threads
        session_options.inter_op_num_threads = 1
        session = ort.InferenceSession(
            str(onnx_path),
            sess_options=session_options,
            providers=["CPUExecutionProvider"],
        )

        id2label = {int(k): str(v).upper() for k, v in config.id2label.items()}
        labels = tuple(id2label[idx] for idx in sorted(id2label))
        if not labels:
            raise ModelLoadError(f"Model '{settings.hf_model_name}' declares no output labels.")

        model_input = session.get_inputs()[0]
        shape = getattr(model_input, "shape", None)
        version = settings.model_version or f"{settings.hf_model_name}@{file_digest(onnx_path)}"

        handle = ModelHandle(
            session=session,
            feature_extractor=feature_extractor,
            labels=labels,
            sample_rate=settings.target_sample_rate,
            model_version=version,
            input_name=model_input.name,
            input_rank=len(shape) if shape is not None else None,
        )
        self._logger.info("Model %s ready with labels %s", version, ", ".join(labels))
        return handle

    def infer(self, buffer: AudioBuffer, should_stop: Optional[Callable[[], bool]] = None) -> InferenceResult:
        """Score ``buffer`` window by window and average the probabilities.

        ``should_stop`` is polled before each window; once it returns true the
        remaining windows are skipped and ``BackendFailure`` is raised.
        """

        handle = self.handle
        if buffer.sample_rate != handle.sample_rate:
            raise InferenceError(
                InferenceErrorKind.SHAPE_MISMATCH,
                f"Buffer sample rate {buffer.sample_rate} does not match model rate {handle.sample_rate}.",
            )

        windows = self._split_windows(buffer.samples, handle.sample_rate)
        totals = np.zeros(len(handle.labels), dtype=np.float64)
        total_weight = 0
        for index, window in enumerate(windows):
            if should_stop is not None and should_stop():
                raise InferenceError(
                    InferenceErrorKind.BACKEND_FAILURE,
                    f"Inference abandoned after {index} of {len(windows)} windows.",
                )
            probabilities = self._forward(handle, window)
            totals += probabilities.astype(np.float64) * window.size
            total_weight += window.size
        averaged = totals / total_weight

        scores = MappingProxyType({label: float(score) for label, score in zip(handle.labels, averaged)})
        return InferenceResult(
            scores=scores,
            top_label=handle.labels[int(np.argmax(averaged))],
            model_version=handle.model_version,
            input_duration_seconds=buffer.duration_seconds,
            window_count=len(windows),
        )

    def _split_windows(self, samples: np.ndarray, sample_rate: int) -> list[np.ndarray]:
        window = max(1, int(round(self.settings.inference_window_seconds * sample_rate)))
        minimum = max(1, int(round(self.settings.min_audio_duration_seconds * sample_rate)))
        spans = [samples[start : start + window] for start in range(0, samples.size, window)]
        if len(spans) > 1 and spans[-1].size < minimum:
            spans.pop()
        return spans

    def _forward(self, handle: ModelHandle, window: np.ndarray) -> np.ndarray:
        try:
            inputs = handle.feature_extractor(window, sampling_rate=handle.sample_rate, return_tensors="np")
        except Exception as exc:
            raise InferenceError(InferenceErrorKind.BACKEND_FAILURE, f"Feature extraction failed: {exc}") from exc

        features = np.asarray(self._select_features(inputs, handle.input_name), dtype=np.float32)
        if handle.input_rank is not None and features.ndim != handle.input_rank:
            raise InferenceError(
                InferenceErrorKind.SHAPE_MISMATCH,
                f"Model input '{handle.input_name}' expects rank {handle.input_rank}, got {features.shape}.",
            )

        try:
            outputs = handle.session.run(None, {handle.input_name: features})
        except Exception as exc:
            raise InferenceError(InferenceErrorKind.BACKEND_FAILURE, f"ONNX runtime failed: {exc}") from exc

        logits = np.asarray(outputs[0], dtype=np.float32)
        if logits.ndim == 2 and logits.shape[0] == 1:
            logits = logits[0]
        if logits.ndim != 1 or logits.shape[0] != len(handle.labels):
            raise InferenceError(
                InferenceErrorKind.SHAPE_MISMATCH,
                f"Model produced logits of shape {tuple(np.shape(outputs[0]))} for {len(handle.labels)} labels.",
            )
        return self._softmax(logits)

    @staticmethod
    def _select_features(inputs: Mapping[str, Any], input_name: str) -> Any:
        if input_name in inputs:
            return inputs[input_name]
        for key in FEATURE_KEYS:
            if key in inputs:
                return inputs[key]
        raise InferenceError(
            InferenceErrorKind.SHAPE_MISMATCH,
            f"Feature extractor produced none of {FEATURE_KEYS} for input '{input_name}'.",
        )

    @staticmethod
    def _softmax(logits: np.ndarray) -> np.ndarray:
        logits = np.asarray(logits, dtype=np.float32)
        logits = logits - np.max(logits, axis=-1, keepdims=True)
        exp = np.exp(logits)
        return exp / np.sum(exp, axis=-1, keepdims=True)
