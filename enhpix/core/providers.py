"""
Inference provider capability and its simulated variant.

A provider creates a prediction for an image and reports its status when
polled. The simulated variant stands in when no credentials are
configured and hands back the original image.
"""

import asyncio
import base64
import mimetypes
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Protocol, Sequence, Tuple

Sleep = Callable[[float], Awaitable[None]]


class PredictionStatus(Enum):
    """Prediction lifecycle as reported by the provider."""
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = {PredictionStatus.SUCCEEDED, PredictionStatus.FAILED, PredictionStatus.CANCELED}


@dataclass(frozen=True)
class SourceImage:
    """An uploaded image waiting to be enhanced."""
    filename: str
    content: bytes = field(repr=False)
    content_type: str = "image/png"

    @classmethod
    def from_path(cls, path: str) -> "SourceImage":
        """Read an image file from disk."""
        file_path = Path(path)
        content_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
        return cls(filename=file_path.name, content=file_path.read_bytes(), content_type=content_type)

    @property
    def size_bytes(self) -> int:
        return len(self.content)

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.content).decode("ascii")
        return f"data:{self.content_type};base64,{encoded}"


@dataclass(frozen=True)
class Prediction:
    """Provider-side state of one enhancement job."""
    id: str
    status: PredictionStatus
    output: Optional[str] = None
    error: Optional[str] = None
    progress: Optional[int] = None
    message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class InferenceProvider(Protocol):
    """What the orchestrator needs from an image enhancement backend."""
    name: str
    simulated: bool
    max_scale: int

    async def create_prediction(self, image: SourceImage, scale: int, model: str) -> Prediction:
        ...

    async def get_prediction(self, prediction_id: str) -> Prediction:
        ...

    async def cancel_prediction(self, prediction_id: str) -> None:
        """Stop a prediction the caller no longer waits for."""
        ...


# (status, progress, message, delay before the next stage in seconds)
SIMULATION_STAGES: Tuple[Tuple[PredictionStatus, int, str, float], ...] = (
    (PredictionStatus.STARTING, 0, "Initializing AI model...", 1.0),
    (PredictionStatus.PROCESSING, 25, "Analyzing image structure...", 1.5),
    (PredictionStatus.PROCESSING, 50, "Enhancing details...", 2.0),
    (PredictionStatus.PROCESSING, 75, "Applying AI upscaling...", 1.5),
    (PredictionStatus.PROCESSING, 90, "Finalizing enhancement...", 1.0),
)


@dataclass
class _SimulatedJob:
    output: str
    stage: int = 0


class SimulatedProvider:
    """Deterministic stand-in used when no provider credentials are configured.

    Walks fixed progress stages with fixed delays and returns the
    original image unmodified as its output.
    """
    name = "simulation"
    simulated = True
    max_scale = 4

    def __init__(self, sleep: Sleep = asyncio.sleep, stages: Sequence[Tuple[PredictionStatus, int, str, float]] = SIMULATION_STAGES):
        if not stages:
            raise ValueError("stages cannot be empty")
        self._sleep = sleep
        self.stages = tuple(stages)
        self._jobs: Dict[str, _SimulatedJob] = {}

    def _stage_prediction(self, prediction_id: str, stage: int) -> Prediction:
        status, progress, message, _ = self.stages[stage]
        return Prediction(id=prediction_id, status=status, progress=progress, message=message)

    async def create_prediction(self, image: SourceImage, scale: int, model: str) -> Prediction:
        prediction_id = f"sim_{uuid.uuid4().hex[:12]}"
        self._jobs[prediction_id] = _SimulatedJob(output=image.to_data_url())
        return self._stage_prediction(prediction_id, 0)

    async def get_prediction(self, prediction_id: str) -> Prediction:
        job = self._jobs.get(prediction_id)
        if job is None:
            return Prediction(id=prediction_id, status=PredictionStatus.FAILED, error="Unknown prediction")

        await self._sleep(self.stages[job.stage][3])
        job.stage += 1
        if job.stage < len(self.stages):
            return self._stage_prediction(prediction_id, job.stage)

        del self._jobs[prediction_id]
        return Prediction(
            id=prediction_id,
            status=PredictionStatus.SUCCEEDED,
            output=job.output,
            progress=100,
            message="Enhancement completed!",
        )

    async def cancel_prediction(self, prediction_id: str) -> None:
        self._jobs.pop(prediction_id, None)
