"""Manual-to-assembly-chat pipeline.

One run walks a linear state machine:

    START -> ANALYZING -> EXTRACTED -> IMAGES_PENDING -> COMMITTING -> DONE

and any unrecoverable error moves it to FAILED and raises ``PipelineError``
carrying the HTTP status the API returns. Nothing is persisted unless the run
reaches COMMITTING, and the commit itself is a single transaction.

Image generation runs strictly sequentially in step order. The first image
call that fails after retries aborts the whole run (429 when the provider
signalled quota / rate limiting, 500 otherwise), so a chat is never saved
with a partially illustrated step list. A response that simply contains no
image is not a failure: the step is kept without an illustration.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from enum import StrEnum
from functools import lru_cache
from pathlib import Path

import structlog

from assemblychat.config import settings
from assemblychat.models.contracts import (
    AssemblyStep,
    ChatMetadata,
    ExtractionResult,
    PersistedChat,
)
from assemblychat.pipeline.extraction import normalize
from assemblychat.pipeline.image_prompt import build_image_prompt
from assemblychat.storage.repo import ChatRepository, truncate_summary
from assemblychat.utils.errors import is_retryable, status_of
from assemblychat.utils.gemini import (
    GeminiGateway,
    find_file_reference,
    find_inline_image,
    to_data_uri,
)
from assemblychat.utils.llm_cache import digest_bytes, get_cached_text, set_cached_text
from assemblychat.utils.retry import OperationCancelledError, RetryPolicy, execute_with_backoff

logger = structlog.get_logger()

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

EMPTY_SUMMARY_PLACEHOLDER = "A summary of the assembly steps could not be generated."


class PipelineStage(StrEnum):
    START = "start"
    ANALYZING = "analyzing"
    EXTRACTED = "extracted"
    IMAGES_PENDING = "images_pending"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


class PipelineError(Exception):
    """Unrecoverable pipeline failure with the status code to surface."""

    def __init__(self, message: str, status_code: int = 500, stage: PipelineStage | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.stage = stage


@lru_cache(maxsize=1)
def load_analysis_prompt() -> str:
    """Load the manual analysis prompt shipped with the package."""
    return (PROMPTS_DIR / "manual_analysis.txt").read_text()


def _http_status(error: BaseException) -> int:
    status = status_of(error)
    return status if status is not None and 400 <= status <= 599 else 500


class AssemblyPipeline:
    """A single pipeline run. Create a new instance per upload."""

    def __init__(
        self,
        gateway: GeminiGateway,
        repository: ChatRepository,
        *,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        cancel_event: asyncio.Event | None = None,
        summary_max_chars: int | None = None,
    ) -> None:
        self._gateway = gateway
        self._repository = repository
        self._policy = policy or RetryPolicy.from_settings()
        self._sleep = sleep
        self._cancel_event = cancel_event
        self._summary_max_chars = summary_max_chars or settings.summary_max_chars
        self.run_id = uuid.uuid4().hex[:12]
        self.stage = PipelineStage.START

    def _transition(self, stage: PipelineStage) -> None:
        logger.info("pipeline_stage", from_stage=self.stage.value, to_stage=stage.value)
        self.stage = stage

    def _fail(self, message: str, status_code: int) -> PipelineError:
        failed_stage = self.stage
        self._transition(PipelineStage.FAILED)
        return PipelineError(message, status_code=status_code, stage=failed_stage)

    async def _with_backoff(self, operation, name: str):
        return await execute_with_backoff(
            operation,
            self._policy,
            sleep=self._sleep,
            cancel_event=self._cancel_event,
            operation_name=name,
        )

    async def run(self, pdf_bytes: bytes, metadata: ChatMetadata) -> PersistedChat:
        with structlog.contextvars.bound_contextvars(run_id=self.run_id):
            try:
                return await self._run(pdf_bytes, metadata)
            except PipelineError:
                raise
            except (Exception, asyncio.CancelledError):
                if self.stage is not PipelineStage.FAILED:
                    self._transition(PipelineStage.FAILED)
                raise

    async def _run(self, pdf_bytes: bytes, metadata: ChatMetadata) -> PersistedChat:
        logger.info("pipeline_start", file_name=metadata.file_name, pdf_bytes=len(pdf_bytes))

        extraction = await self._analyze(pdf_bytes)
        summary = extraction.summary or EMPTY_SUMMARY_PLACEHOLDER

        self._transition(PipelineStage.IMAGES_PENDING)
        illustrated: list[AssemblyStep] = []
        for step in extraction.steps:
            image = await self._illustrate(step)
            illustrated.append(step.model_copy(update={"image_base64": image}))

        self._transition(PipelineStage.COMMITTING)
        try:
            persisted = await self._repository.create_chat_with_steps(
                metadata,
                truncate_summary(summary, self._summary_max_chars),
                illustrated,
            )
        except Exception as exc:
            logger.error("pipeline_commit_failed", error_type=type(exc).__name__, exc_info=exc)
            raise self._fail("Failed to save the assembly chat", 500) from exc

        self._transition(PipelineStage.DONE)
        logger.info(
            "pipeline_done",
            chat_id=persisted.chat_id,
            steps=len(illustrated),
            images=sum(1 for s in illustrated if s.image_base64),
        )
        return persisted

    async def _analyze(self, pdf_bytes: bytes) -> ExtractionResult:
        self._transition(PipelineStage.ANALYZING)
        prompt = load_analysis_prompt()
        cache_key = [self._gateway.text_model, digest_bytes(pdf_bytes), prompt]

        text = get_cached_text("gemini_analysis", cache_key)
        if text is None:
            try:
                text = await self._with_backoff(
                    lambda: self._gateway.analyze_manual(pdf_bytes, prompt),
                    "manual_analysis",
                )
            except OperationCancelledError:
                self._transition(PipelineStage.FAILED)
                raise
            except Exception as exc:
                status = _http_status(exc)
                logger.error(
                    "pipeline_analysis_failed",
                    status=status,
                    error_type=type(exc).__name__,
                    exc_info=exc,
                )
                if status == 429:
                    raise self._fail(
                        "Gemini quota exceeded while analyzing the manual. Please retry later.",
                        429,
                    ) from exc
                raise self._fail("Failed to process the PDF manual via Gemini", status) from exc
            set_cached_text("gemini_analysis", cache_key, text)

        extraction = normalize(text)
        self._transition(PipelineStage.EXTRACTED)
        logger.info(
            "pipeline_extracted",
            steps=len(extraction.steps),
            has_summary=bool(extraction.summary),
        )
        return extraction

    async def _illustrate(self, step: AssemblyStep) -> str | None:
        """Return a data URI for the step illustration, or None when there is none."""
        if not step.parts:
            logger.info("step_image_skipped", step_index=step.step_index, reason="no_parts")
            return None

        prompt = build_image_prompt(step)
        cache_key = [self._gateway.image_model, prompt]
        cached = get_cached_text("gemini_step_image", cache_key)
        if cached is not None:
            return cached

        try:
            response = await self._with_backoff(
                lambda: self._gateway.generate_image(prompt),
                f"step_image_{step.step_index}",
            )
        except OperationCancelledError:
            self._transition(PipelineStage.FAILED)
            raise
        except Exception as exc:
            rate_limited = is_retryable(exc)
            logger.error(
                "step_image_failed",
                step_index=step.step_index,
                rate_limited=rate_limited,
                error_type=type(exc).__name__,
                exc_info=exc,
            )
            if rate_limited:
                raise self._fail(
                    f"Gemini image generation quota exceeded for model "
                    f"{self._gateway.image_model}. Please retry later.",
                    429,
                ) from exc
            raise self._fail(
                f"Image generation failed for step {step.step_index}", 500
            ) from exc

        image = await self._image_from_response(response, step.step_index)
        if image is not None:
            set_cached_text("gemini_step_image", cache_key, image)
        return image

    async def _image_from_response(self, response, step_index: int) -> str | None:
        inline = find_inline_image(response)
        if inline is not None:
            data, mime_type = inline
            return to_data_uri(data, mime_type)

        reference = find_file_reference(response)
        if reference is not None:
            try:
                data = await self._gateway.download_file(reference)
            except Exception:
                logger.warning(
                    "step_image_download_failed",
                    step_index=step_index,
                    uri=reference.uri,
                    exc_info=True,
                )
            else:
                if data:
                    return to_data_uri(data, reference.mime_type)

        logger.warning("step_image_missing", step_index=step_index)
        return None
