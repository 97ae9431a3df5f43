"""Classification pipeline.

`ClassificationPipeline.classify` writes the in-progress caption, then runs
orientation handling and inference off the event loop. Every call resolves
to a `ClassificationOutcome` and writes its terminal caption on the loop,
unless a newer call superseded it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from scenecaption.captions import DEFAULT_TOP_N, CaptionBoard, format_classifications, format_failure
from scenecaption.ml.image_classifier import InferenceError, ModelUnavailableError
from scenecaption.ml.inference import InferenceRejectedError
from scenecaption.ml.preprocessing import ImageConversionError, to_pixel_buffer

if TYPE_CHECKING:
    from scenecaption.ml.image_classifier import Classification, ImageClassifier
    from scenecaption.ml.inference import InferencePool
    from scenecaption.ml.preprocessing import SourceImage

logger = logging.getLogger(__name__)

DEFAULT_IN_PROGRESS_CAPTION = "Classifying scene..."


class ConcurrencyPolicy(StrEnum):
    LAST_WRITER_WINS = "last_writer_wins"
    SUPERSEDE = "supersede"


class FailureKind(StrEnum):
    MODEL_UNAVAILABLE = "model_unavailable"
    IMAGE_CONVERSION = "image_conversion"
    INFERENCE_REJECTED = "inference_rejected"
    INFERENCE_FAILED = "inference_failed"
    EMPTY_RESULTS = "empty_results"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class ClassificationSucceeded:
    classifications: tuple[Classification, ...]
    caption: str


@dataclass(frozen=True)
class ClassificationFailed:
    kind: FailureKind
    description: str | None
    caption: str


ClassificationOutcome = ClassificationSucceeded | ClassificationFailed


class ClassificationPipeline:
    """Turns images into captions using an ImageClassifier on an InferencePool."""

    def __init__(
        self,
        classifier: ImageClassifier,
        pool: InferencePool,
        *,
        caption: CaptionBoard | None = None,
        top_n: int = DEFAULT_TOP_N,
        in_progress_caption: str = DEFAULT_IN_PROGRESS_CAPTION,
        policy: ConcurrencyPolicy = ConcurrencyPolicy.LAST_WRITER_WINS,
    ) -> None:
        if top_n < 1:
            raise ValueError("top_n must be at least 1")
        self._classifier = classifier
        self._pool = pool
        self.caption = caption if caption is not None else CaptionBoard()
        self._top_n = top_n
        self._in_progress_caption = in_progress_caption
        self._policy = ConcurrencyPolicy(policy)
        self._latest_ticket = 0
        self._in_flight: set[asyncio.Task[ClassificationOutcome]] = set()

    @property
    def policy(self) -> ConcurrencyPolicy:
        return self._policy

    def classify(self, image: SourceImage) -> asyncio.Future[ClassificationOutcome]:
        """Start classifying `image` and return a future that resolves to its outcome.

        Must be called from the event loop that owns the caption. The
        in-progress caption is written before this method returns. The
        returned future is shielded: cancelling it, or the coroutine awaiting
        it, does not stop the classification or its terminal caption.
        """
        loop = asyncio.get_running_loop()
        self._latest_ticket += 1
        ticket = self._latest_ticket
        self.caption.set(self._in_progress_caption)
        task = loop.create_task(self._run(image, ticket), name=f"classify-{ticket}")
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return asyncio.shield(task)

    @property
    def in_flight(self) -> int:
        """Number of classifications that have not finished yet."""
        return len(self._in_flight)

    async def wait_idle(self) -> None:
        """Wait until every started classification has finished."""
        while self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    async def _run(self, image: SourceImage, ticket: int) -> ClassificationOutcome:
        try:
            buffer = to_pixel_buffer(image)
        except ImageConversionError as exc:
            return self._fail(ticket, FailureKind.IMAGE_CONVERSION, str(exc))

        try:
            results = await self._pool.run(self._classifier.predict, buffer)
        except ModelUnavailableError as exc:
            return self._fail(ticket, FailureKind.MODEL_UNAVAILABLE, str(exc))
        except InferenceRejectedError as exc:
            return self._fail(ticket, FailureKind.INFERENCE_REJECTED, str(exc))
        except (InferenceError, TimeoutError) as exc:
            return self._fail(ticket, FailureKind.INFERENCE_FAILED, str(exc) or None)

        if not results:
            return self._fail(ticket, FailureKind.EMPTY_RESULTS, None)

        top = tuple(results[: self._top_n])
        outcome = ClassificationSucceeded(
            classifications=top,
            caption=format_classifications(top, self._top_n),
        )
        if not self._publish(ticket, outcome.caption):
            return self._superseded(ticket)
        logger.info("Classified image %d with %s: %s", ticket, self._classifier.model_name, top[0].label)
        return outcome

    def _fail(self, ticket: int, kind: FailureKind, description: str | None) -> ClassificationOutcome:
        outcome = ClassificationFailed(kind=kind, description=description, caption=format_failure(description))
        if not self._publish(ticket, outcome.caption):
            return self._superseded(ticket)
        logger.warning("Classification %d failed (%s): %s", ticket, kind, description)
        return outcome

    def _superseded(self, ticket: int) -> ClassificationFailed:
        description = f"Superseded by request {self._latest_ticket}"
        logger.info("Classification %d discarded: %s", ticket, description)
        return ClassificationFailed(
            kind=FailureKind.SUPERSEDED,
            description=description,
            caption=format_failure(description),
        )

    def _publish(self, ticket: int, text: str) -> bool:
        if self._policy is ConcurrencyPolicy.SUPERSEDE and ticket != self._latest_ticket:
            return False
        self.caption.set(text)
        return True
