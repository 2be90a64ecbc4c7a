"""
Enhancement orchestration.

Coordinates the quota check, the provider call and its polling loop,
credit consumption and usage recording for one enhancement request.

Request lifecycle:
    IDLE -> STARTING -> UPLOADING -> PROCESSING -> COMPLETED
FAILED is reachable from STARTING, UPLOADING and PROCESSING.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from enhpix.observability.logging import get_logger, log_context
from enhpix.storage.models import UsageOutcome

from .errors import (
    ConfigurationError,
    EnhancementTimeoutError,
    EnhpixError,
    FeatureNotAvailableError,
    InsufficientCreditsError,
    InvalidTransitionError,
    PersistenceError,
    ProviderError,
    QuotaExceededError,
)
from .ledger import UsageLedger
from .plans import PLAN_CATALOG, ImageType, Plan, PlanCatalog, Quality, can_use_feature, optimal_model
from .polling import PollPolicy
from .providers import InferenceProvider, Prediction, PredictionStatus, Sleep, SourceImage
from .recorder import CostRecorder

logger = get_logger(__name__)


class EnhancementState(Enum):
    """Where a single enhancement request is in its lifecycle."""
    IDLE = "idle"
    STARTING = "starting"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS = {
    EnhancementState.IDLE: {EnhancementState.STARTING},
    EnhancementState.STARTING: {EnhancementState.UPLOADING, EnhancementState.FAILED},
    EnhancementState.UPLOADING: {EnhancementState.PROCESSING, EnhancementState.FAILED},
    EnhancementState.PROCESSING: {EnhancementState.COMPLETED, EnhancementState.FAILED},
    EnhancementState.COMPLETED: set(),
    EnhancementState.FAILED: set(),
}


@dataclass(frozen=True)
class EnhancementProgress:
    """Progress update delivered to the caller."""
    state: EnhancementState
    progress: int
    message: str = ""


@dataclass(frozen=True)
class EnhancementResult:
    """A finished enhancement. ``simulated`` marks output from the stand-in provider."""
    prediction_id: str
    source: SourceImage
    output_url: str
    simulated: bool
    model: str
    scale: int
    quality: Quality
    remaining_credits: int
    processing_time: float


@dataclass(frozen=True)
class BatchItemResult:
    """Outcome of one image in a batch: either a result or the error that stopped it."""
    source: SourceImage
    result: Optional[EnhancementResult] = None
    error: Optional[EnhpixError] = None

    @property
    def success(self) -> bool:
        return self.result is not None


ProgressCallback = Callable[[EnhancementProgress], None]
BatchProgressCallback = Callable[[int, EnhancementProgress], None]


class EnhancementJob:
    """Caller-side handle for one request.

    Holds the state machine and forwards progress to the callback until
    the caller abandons the request. An abandoned request still runs to
    completion, is charged and is recorded; only the updates stop.
    """

    def __init__(self, progress_callback: Optional[ProgressCallback] = None):
        self.id = uuid.uuid4().hex[:12]
        self.state = EnhancementState.IDLE
        self.progress = 0
        self.abandoned = False
        self.task: Optional["asyncio.Future[EnhancementResult]"] = None
        self._callback = progress_callback

    def transition(self, target: EnhancementState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, target)
        self.state = target

    def report(self, progress: int, message: str = "") -> None:
        # Progress never moves backwards
        self.progress = max(self.progress, min(100, progress))
        if self.abandoned or self._callback is None:
            return
        self._callback(EnhancementProgress(state=self.state, progress=self.progress, message=message))

    def fail(self, message: str) -> None:
        if self.state in (EnhancementState.COMPLETED, EnhancementState.FAILED):
            return
        self.transition(EnhancementState.FAILED)
        self.report(self.progress, message)

    def abandon(self) -> None:
        """Stop delivering progress. The request itself keeps running."""
        self.abandoned = True

    @property
    def done(self) -> bool:
        return self.state in (EnhancementState.COMPLETED, EnhancementState.FAILED)

    async def wait(self) -> EnhancementResult:
        if self.task is None:
            raise RuntimeError("Job was not started")
        return await self.task


def estimate_progress(prediction: Prediction, attempts: int) -> int:
    """Progress for a poll result, using the provider's figure when it reports one."""
    if prediction.progress is not None:
        return prediction.progress
    if prediction.status == PredictionStatus.STARTING:
        return min(10 + attempts * 2, 30)
    if prediction.status == PredictionStatus.PROCESSING:
        return min(30 + attempts * 3, 90)
    return 100 if prediction.status == PredictionStatus.SUCCEEDED else 0


class EnhancementOrchestrator:
    """Runs enhancement requests for one user's ledger against a provider.

    The provider variant (real or simulated) is fixed at construction.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        provider: InferenceProvider,
        recorder: CostRecorder,
        models: Dict[Quality, str],
        poll_policy: Optional[PollPolicy] = None,
        catalog: PlanCatalog = PLAN_CATALOG,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        model_versions: Optional[Dict[str, str]] = None,
    ):
        missing = {quality for quality in Quality} - set(models)
        if missing:
            raise ValueError(f"No model configured for: {sorted(q.value for q in missing)}")
        self.ledger = ledger
        self.provider = provider
        self.recorder = recorder
        self.models = dict(models)
        self.model_versions = dict(model_versions or {})
        self.poll_policy = poll_policy or PollPolicy()
        self.catalog = catalog
        self._sleep = sleep
        self._clock = clock

    def start(
        self,
        image: SourceImage,
        progress_callback: Optional[ProgressCallback] = None,
        image_type: Optional[ImageType] = None,
    ) -> EnhancementJob:
        """Schedule an enhancement on the running event loop and return its handle."""
        job = EnhancementJob(progress_callback)
        job.task = asyncio.ensure_future(self.enhance(image, job=job, image_type=image_type))
        return job

    async def enhance(
        self,
        image: SourceImage,
        progress_callback: Optional[ProgressCallback] = None,
        job: Optional[EnhancementJob] = None,
        image_type: Optional[ImageType] = None,
    ) -> EnhancementResult:
        """Enhance one image for the ledger's user.

        Args:
            image: Uploaded source image
            progress_callback: Receives monotonically increasing progress updates
            job: Existing handle to drive (created when omitted)
            image_type: Picks the best model the plan allows for this kind of
                picture; the plan's quality tier model is used when omitted

        Returns:
            EnhancementResult with the output reference

        Raises:
            QuotaExceededError: No credits before starting, or the last credit
                was taken by a concurrent request while this one ran
            ProviderError: The provider reported a failure (message verbatim)
            EnhancementTimeoutError: The prediction never finished within the poll bound
            UnknownPlanError: The subscription names a plan outside the catalog
            ConfigurationError: No version is configured for the chosen model
            PersistenceError: The ledger store is unavailable
        """
        job = job or EnhancementJob(progress_callback)
        user_id = self.ledger.user_id

        with log_context(user_id=user_id, request_id=job.id):
            subscription = self.ledger.get_subscription()
            if subscription.images_remaining <= 0:
                logger.info("enhancement_rejected", reason="quota_exceeded", plan_id=subscription.plan_id)
                raise QuotaExceededError(user_id)

            plan = self.catalog.get(subscription.plan_id)
            quality = plan.quality
            # Provider caps a single call's scale
            scale = min(self.provider.max_scale, plan.max_scale)
            model = self._resolve_model(plan, image_type)

            job.transition(EnhancementState.STARTING)
            job.report(0, "Starting enhancement...")
            logger.info(
                "enhancement_started",
                provider=self.provider.name,
                plan_id=plan.id,
                quality=quality.value,
                scale=scale,
                file_size_bytes=image.size_bytes,
            )

            started = self._clock()
            outcome = UsageOutcome.FAILED
            prediction_id: Optional[str] = None
            try:
                job.transition(EnhancementState.UPLOADING)
                job.report(10, "Uploading to AI model...")
                prediction = await self.provider.create_prediction(image, scale, model)
                prediction_id = prediction.id

                job.transition(EnhancementState.PROCESSING)
                job.report(estimate_progress(prediction, 0), prediction.message or "Processing...")
                prediction = await self._poll(prediction, job)

                # Charge only after the provider succeeded
                try:
                    credit = self.ledger.consume_credit()
                except InsufficientCreditsError as e:
                    outcome = UsageOutcome.UNCHARGED
                    logger.warning("enhancement_uncharged", prediction_id=prediction_id)
                    raise QuotaExceededError(user_id, uncharged=True) from e
                except PersistenceError:
                    outcome = UsageOutcome.UNCHARGED
                    raise
                outcome = UsageOutcome.SIMULATED if self.provider.simulated else UsageOutcome.SUCCEEDED

                job.transition(EnhancementState.COMPLETED)
                job.report(100, "Enhancement completed!")
            except EnhancementTimeoutError as e:
                outcome = UsageOutcome.TIMEOUT
                job.fail(str(e))
                logger.warning("enhancement_timeout", prediction_id=prediction_id, attempts=e.attempts)
                await self._cancel(prediction_id)
                raise
            except asyncio.CancelledError:
                outcome = UsageOutcome.CANCELED
                job.fail("Enhancement cancelled")
                logger.warning("enhancement_cancelled", prediction_id=prediction_id)
                await self._cancel(prediction_id)
                raise
            except Exception as e:
                job.fail(f"Enhancement failed: {e}")
                logger.warning(
                    "enhancement_failed",
                    prediction_id=prediction_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
            finally:
                self._record(quality, scale, image, plan.id, outcome, prediction_id)

            processing_time = self._clock() - started
            logger.info(
                "enhancement_completed",
                prediction_id=prediction_id,
                simulated=self.provider.simulated,
                remaining=credit.remaining,
                processing_time=round(processing_time, 3),
            )
            return EnhancementResult(
                prediction_id=prediction.id,
                source=image,
                output_url=prediction.output,
                simulated=self.provider.simulated,
                model=model,
                scale=scale,
                quality=quality,
                remaining_credits=credit.remaining,
                processing_time=processing_time,
            )

    async def enhance_batch(
        self,
        images: Sequence[SourceImage],
        image_type: Optional[ImageType] = None,
        progress_callback: Optional[BatchProgressCallback] = None,
    ) -> List[BatchItemResult]:
        """Enhance several images one after another.

        A failing image does not stop the batch; its error is kept in the
        matching BatchItemResult. Progress is reported with the image's index.

        Raises:
            FeatureNotAvailableError: The user's plan does not include batch processing
            UnknownPlanError: The subscription names a plan outside the catalog
        """
        plan = self.catalog.get(self.ledger.get_subscription().plan_id)
        if not can_use_feature(plan.id, "batch_processing"):
            raise FeatureNotAvailableError(plan.id, "batch_processing")

        results = []
        for index, image in enumerate(images):
            callback = None
            if progress_callback is not None:
                callback = lambda update, index=index: progress_callback(index, update)
            try:
                result = await self.enhance(image, callback, image_type=image_type)
            except EnhpixError as e:
                logger.warning("batch_item_failed", index=index, filename=image.filename, error=str(e))
                results.append(BatchItemResult(source=image, error=e))
            else:
                results.append(BatchItemResult(source=image, result=result))

        logger.info(
            "batch_completed",
            user_id=self.ledger.user_id,
            total=len(results),
            succeeded=sum(1 for item in results if item.success),
        )
        return results

    def _resolve_model(self, plan: Plan, image_type: Optional[ImageType]) -> str:
        if image_type is None:
            return self.models[plan.quality]
        name = optimal_model(plan, image_type)
        if name not in self.model_versions:
            raise ConfigurationError(f"No version configured for model: {name}")
        return self.model_versions[name]

    async def _cancel(self, prediction_id: Optional[str]) -> None:
        """Release an unfinished prediction on the provider side."""
        if prediction_id is None:
            return
        try:
            await self.provider.cancel_prediction(prediction_id)
        except ProviderError as e:
            logger.warning("prediction_cancel_failed", prediction_id=prediction_id, error=str(e))

    async def _poll(self, prediction: Prediction, job: EnhancementJob) -> Prediction:
        """Poll until the prediction finishes or the policy runs out of attempts."""
        attempts = 0
        while not prediction.is_terminal:
            if attempts >= self.poll_policy.max_attempts:
                raise EnhancementTimeoutError(prediction.id, attempts)
            await self._sleep(self.poll_policy.delay_for(attempts))
            prediction = await self.provider.get_prediction(prediction.id)
            attempts += 1
            job.report(estimate_progress(prediction, attempts), prediction.message or "Processing...")

        if prediction.status != PredictionStatus.SUCCEEDED:
            raise ProviderError(prediction.error or f"Prediction {prediction.status.value}", prediction.id)
        if not prediction.output:
            raise ProviderError("Prediction succeeded without output", prediction.id)
        return prediction

    def _record(
        self,
        quality: Quality,
        scale: int,
        image: SourceImage,
        plan_id: str,
        outcome: UsageOutcome,
        prediction_id: Optional[str],
    ) -> None:
        # Simulated runs and calls that never created a prediction cost nothing
        cost = None
        if self.provider.simulated or prediction_id is None:
            cost = Decimal("0")
        self.recorder.record(
            quality,
            scale,
            image.size_bytes,
            user_id=self.ledger.user_id,
            plan_id=plan_id,
            outcome=outcome,
            prediction_id=prediction_id,
            estimated_cost=cost,
        )
