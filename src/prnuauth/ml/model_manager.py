"""Lazy loader for the optional real/fake ONNX detector.

The model file is fetched from the Hugging Face Hub the first time a session
is needed. The session then stays in memory until it has sat unused for
``model_ttl`` seconds; ``release_if_idle`` drops it and the app lifespan runs
that check on a timer. The PRNU pipeline never touches this module.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from prnuauth.config import Settings

logger = logging.getLogger(__name__)

AI_DETECTION_MODEL = "ai_detector"

Provider = str | tuple[str, dict[str, object]]


@dataclass(frozen=True)
class DetectorSource:
    """Where the detector lives on the Hub."""

    repo_id: str
    filename: str
    subfolder: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> DetectorSource | None:
        if not settings.ai_model_repo_id:
            return None
        return cls(repo_id=settings.ai_model_repo_id, filename=settings.ai_model_filename)

    def local_path(self, models_dir: Path) -> Path:
        parts = [self.subfolder, self.filename] if self.subfolder else [self.filename]
        return models_dir.joinpath(*parts)


def execution_providers(device: str) -> list[Provider]:
    """ONNX Runtime providers for the configured device, CPU always last."""
    providers: list[Provider] = []
    if device == "cuda":
        providers.append(("CUDAExecutionProvider", {"device_id": 0, "arena_extend_strategy": "kSameAsRequested"}))
    providers.append("CPUExecutionProvider")
    return providers


def session_options(settings: Settings) -> SessionOptions:
    options = SessionOptions()
    options.intra_op_num_threads = settings.intra_op_threads
    options.inter_op_num_threads = settings.inter_op_threads
    options.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    options.enable_mem_pattern = True
    options.enable_mem_reuse = True
    return options


class DetectorModel:
    """Owns the single detector session: download, load, idle release."""

    def __init__(self, settings: Settings) -> None:
        self.source = DetectorSource.from_settings(settings)
        self.providers = execution_providers(settings.device)
        self._models_dir = Path(settings.models_dir)
        self._ttl = settings.model_ttl
        self._options = session_options(settings)

        self._lock = threading.Lock()
        self._session: InferenceSession | None = None
        self._last_used = 0.0

    @property
    def configured(self) -> bool:
        return self.source is not None

    def fetch(self) -> Path:
        """Path of the model file, downloading it when it is not on disk yet."""
        if self.source is None:
            raise LookupError("no AI detection model is configured")

        path = self.source.local_path(self._models_dir)
        if path.exists():
            return path

        self._models_dir.mkdir(parents=True, exist_ok=True)
        path = Path(
            hf_hub_download(
                repo_id=self.source.repo_id,
                filename=self.source.filename,
                subfolder=self.source.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        logger.info("Fetched %s/%s into %s", self.source.repo_id, self.source.filename, path)
        return path

    def session(self) -> InferenceSession:
        """The loaded session; loads it on first call or after a release."""
        with self._lock:
            if self._session is None:
                self._session = InferenceSession(
                    str(self.fetch()),
                    sess_options=self._options,
                    providers=self.providers,
                )
                logger.info("Loaded %s session", AI_DETECTION_MODEL)
            self._last_used = time.monotonic()
            return self._session

    def loaded_models(self) -> list[str]:
        with self._lock:
            return [AI_DETECTION_MODEL] if self._session is not None else []

    def release_if_idle(self, now: float | None = None) -> bool:
        """Drop the session once it has been unused for longer than the TTL.

        A TTL of 0 keeps the session for the life of the process. Returns
        True when a session was released.
        """
        if self._ttl == 0:
            return False
        now = time.monotonic() if now is None else now
        with self._lock:
            if self._session is None or now - self._last_used <= self._ttl:
                return False
            self._session = None
        logger.info("Released %s session after %ss idle", AI_DETECTION_MODEL, self._ttl)
        return True

    def close(self) -> None:
        with self._lock:
            self._session = None
