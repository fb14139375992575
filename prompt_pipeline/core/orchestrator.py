"""
Pipeline orchestration.

Runs an ordered batch of prompts for one actor: a single credit check up
front, then each prompt in index order through job creation, quota
admission, generation and usage accounting. A prompt whose dependencies
did not all succeed is skipped; unrelated prompts still run. Progress is
plain state (executed_count / total_count) updated after every prompt.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Callable,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Union,
)

from prompt_pipeline.storage.models import ActorType, JobStatus

from .errors import (
    DependencyFailed,
    GenerationError,
    InvalidBatchError,
    PersistenceError,
    PipelineError,
    RateLimitExceeded,
    SecurityVerificationFailed,
)
from .executor import GenerationExecutor, ModelConfig
from .jobs import JobStore
from .quota import ActorIdentity, QuotaLedger, QuotaPolicy
from .sections import Section, combine_plain, combine_with_markers, validate_label
from .usage import UsageAccountant

logger = logging.getLogger(__name__)

ProgressCallback = Callable[["PipelineRun"], None]
Verifier = Callable[[ActorIdentity], None]


@dataclass(frozen=True)
class PromptDescriptor:
    """One node of a batch.

    depends_on holds indices of earlier prompts in the same batch. Prompt
    text is final when the batch is built; it is never rewritten at run time.
    generate_new_prompts is carried for callers but not acted on.
    """
    prompt: str
    label: str
    depends_on: FrozenSet[int] = frozenset()
    generate_new_prompts: bool = False

    def __post_init__(self):
        depends_on: Union[int, Iterable[int]] = self.depends_on
        if isinstance(depends_on, int):
            depends_on = (depends_on,)
        object.__setattr__(self, "depends_on", frozenset(depends_on))

        if not self.prompt or not self.prompt.strip():
            raise InvalidBatchError("prompt cannot be empty")
        try:
            validate_label(self.label)
        except ValueError as e:
            raise InvalidBatchError(str(e)) from e


def validate_batch(prompts: Iterable[PromptDescriptor]) -> List[PromptDescriptor]:
    """Check that every dependency points at an earlier prompt.

    Raises:
        InvalidBatchError: If the batch is empty or a dependency is a
            forward, self or out-of-range reference
    """
    batch = list(prompts)
    if not batch:
        raise InvalidBatchError("batch cannot be empty")

    for index, descriptor in enumerate(batch):
        for dependency in sorted(descriptor.depends_on):
            if not 0 <= dependency < index:
                raise InvalidBatchError(
                    f"Prompt {index} ({descriptor.label}) depends on {dependency}; "
                    f"dependencies must reference earlier prompts"
                )
    return batch


class RunState(Enum):
    """Lifecycle of a pipeline run."""
    NOT_STARTED = "not_started"
    REJECTED = "rejected"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


class PromptStatus(Enum):
    """Per-prompt outcome within a run."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class PromptOutcome:
    """What happened to one prompt of a run."""
    index: int
    label: str
    status: PromptStatus = PromptStatus.PENDING
    request_id: Optional[str] = None
    content: Optional[str] = None
    error: Optional[PipelineError] = None

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error else None


@dataclass
class PipelineRun:
    """Ephemeral aggregate over one batch execution."""
    prompts: List[PromptDescriptor]
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: RunState = RunState.NOT_STARTED
    has_credits: bool = True
    executed_count: int = 0
    structured_output: List[Section] = field(default_factory=list)
    outcomes: List[PromptOutcome] = field(default_factory=list)
    error: Optional[PipelineError] = None

    def __post_init__(self):
        if not self.outcomes:
            self.outcomes = [
                PromptOutcome(index=i, label=p.label) for i, p in enumerate(self.prompts)
            ]

    @property
    def total_count(self) -> int:
        return len(self.prompts)

    @property
    def progress(self) -> float:
        """Fraction of prompts that reached a terminal state."""
        if not self.prompts:
            return 0.0
        return self.executed_count / self.total_count

    @property
    def is_finished(self) -> bool:
        return self.state in (
            RunState.REJECTED, RunState.COMPLETED, RunState.ABORTED, RunState.CANCELLED
        )

    def combined_output_with_markers(self) -> str:
        return combine_with_markers(self.structured_output)

    def combined_output_legacy(self) -> str:
        return combine_plain(self.structured_output)


class CreditGate(Protocol):
    """External billing check, consulted once per batch."""

    def has_credits(self, actor: ActorIdentity, required_credits: int) -> bool:
        ...


class StaticCreditGate:
    """Credit gate backed by a fixed balance."""

    def __init__(self, available_credits: int):
        self.available_credits = available_credits

    def has_credits(self, actor: ActorIdentity, required_credits: int) -> bool:
        return self.available_credits >= required_credits


class PipelineRunHandle:
    """Live view of a batch running in the background."""

    def __init__(self, run: PipelineRun, future: "Future[PipelineRun]", cancel_event: threading.Event):
        self.run = run
        self._future = future
        self._cancel_event = cancel_event

    @property
    def executed_count(self) -> int:
        return self.run.executed_count

    @property
    def total_count(self) -> int:
        return self.run.total_count

    @property
    def has_credits(self) -> bool:
        return self.run.has_credits

    @property
    def structured_output(self) -> List[Section]:
        return list(self.run.structured_output)

    @property
    def state(self) -> RunState:
        return self.run.state

    @property
    def error(self) -> Optional[BaseException]:
        if self.run.error is not None:
            return self.run.error
        if self._future.done() and not self._future.cancelled():
            return self._future.exception()
        return None

    def combined_output_with_markers(self) -> str:
        return self.run.combined_output_with_markers()

    def combined_output_legacy(self) -> str:
        return self.run.combined_output_legacy()

    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> None:
        """Stop issuing new prompts; the one in flight finishes."""
        self._cancel_event.set()

    def result(self, timeout: Optional[float] = None) -> PipelineRun:
        """Wait for the run to finish.

        Raises:
            SecurityVerificationFailed: If the run was aborted
        """
        return self._future.result(timeout)


class PipelineOrchestrator:
    """Admits a batch against the credit gate and drives it prompt by prompt."""

    def __init__(
        self,
        job_store: JobStore,
        quota_ledger: QuotaLedger,
        executor: GenerationExecutor,
        accountant: UsageAccountant,
        credit_gate: CreditGate,
        quota_policies: Mapping[ActorType, QuotaPolicy],
        model_config: Optional[ModelConfig] = None,
        required_credits: int = 1,
        verifier: Optional[Verifier] = None,
        max_workers: int = 4
    ):
        missing = [t.value for t in ActorType if t not in quota_policies]
        if missing:
            raise ValueError(f"Missing quota policies for: {missing}")

        self.job_store = job_store
        self.quota_ledger = quota_ledger
        self.executor = executor
        self.accountant = accountant
        self.credit_gate = credit_gate
        self.quota_policies = dict(quota_policies)
        self.model_config = model_config or ModelConfig()
        self.required_credits = required_credits
        self.verifier = verifier
        self.max_workers = max_workers
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()

    def run(
        self,
        prompts: Iterable[PromptDescriptor],
        actor: ActorIdentity,
        session_id: Optional[str] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> PipelineRun:
        """Execute a batch to completion in the calling thread.

        Args:
            prompts: Batch in submission order
            actor: Who the batch is attributed to
            session_id: Session the jobs belong to
            on_progress: Called with the run after each prompt finishes
            cancel_event: When set, no further prompts are started

        Returns:
            The finished PipelineRun; has_credits is False and no jobs exist
            when the credit gate rejected the batch

        Raises:
            InvalidBatchError: If the batch is malformed
            SecurityVerificationFailed: If verification fails on the first
                prompt or in the credit gate
        """
        run = PipelineRun(prompts=validate_batch(prompts))
        return self._drive(run, actor, session_id, on_progress, cancel_event)

    def submit_batch(
        self,
        prompts: Iterable[PromptDescriptor],
        actor: ActorIdentity,
        session_id: Optional[str] = None,
        *,
        on_progress: Optional[ProgressCallback] = None
    ) -> PipelineRunHandle:
        """Validate a batch and run it in the background.

        Raises:
            InvalidBatchError: If the batch is malformed
        """
        run = PipelineRun(prompts=validate_batch(prompts))
        cancel_event = threading.Event()
        future = self._executor_pool().submit(
            self._drive, run, actor, session_id, on_progress, cancel_event
        )
        return PipelineRunHandle(run, future, cancel_event)

    def shutdown(self, wait: bool = True) -> None:
        with self._pool_lock:
            if self._pool is not None:
                self._pool.shutdown(wait=wait)
                self._pool = None

    def __enter__(self) -> "PipelineOrchestrator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    def _executor_pool(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="prompt-pipeline"
                )
            return self._pool

    def _drive(
        self,
        run: PipelineRun,
        actor: ActorIdentity,
        session_id: Optional[str],
        on_progress: Optional[ProgressCallback],
        cancel_event: Optional[threading.Event]
    ) -> PipelineRun:
        logger.info("Run %s: admitting %d prompts", run.run_id, run.total_count)

        try:
            has_credits = self.credit_gate.has_credits(actor, self.required_credits)
        except PipelineError as e:
            run.error = e
            run.state = RunState.ABORTED
            logger.error("Run %s: admission failed: %s", run.run_id, e)
            raise

        run.has_credits = has_credits
        if not has_credits:
            run.state = RunState.REJECTED
            logger.warning("Run %s: credits exhausted, batch not started", run.run_id)
            return run

        run.state = RunState.RUNNING
        succeeded = set()

        for index, descriptor in enumerate(run.prompts):
            if cancel_event is not None and cancel_event.is_set():
                for outcome in run.outcomes[index:]:
                    outcome.status = PromptStatus.CANCELLED
                run.state = RunState.CANCELLED
                logger.info("Run %s: cancelled before prompt %d", run.run_id, index)
                return run

            outcome = run.outcomes[index]
            failed_dependencies = sorted(d for d in descriptor.depends_on if d not in succeeded)

            try:
                if failed_dependencies:
                    self._skip_prompt(outcome, descriptor, actor, session_id, failed_dependencies)
                else:
                    content = self._execute_prompt(outcome, descriptor, actor, session_id)
                    outcome.status = PromptStatus.COMPLETED
                    outcome.content = content
                    succeeded.add(index)
                    run.structured_output.append(Section(label=descriptor.label, content=content))
            except SecurityVerificationFailed as e:
                outcome.status = PromptStatus.FAILED
                outcome.error = e
                if index == 0:
                    run.error = e
                    run.state = RunState.ABORTED
                    logger.error("Run %s: verification failed, aborting: %s", run.run_id, e)
                    raise
                logger.warning("Run %s: prompt %d verification failed: %s", run.run_id, index, e)
            except DependencyFailed as e:
                outcome.status = PromptStatus.SKIPPED
                outcome.error = e
                logger.warning("Run %s: prompt %d (%s) skipped: %s", run.run_id, index, descriptor.label, e)
            except PipelineError as e:
                outcome.status = PromptStatus.FAILED
                outcome.error = e
                logger.warning("Run %s: prompt %d (%s) failed: %s", run.run_id, index, descriptor.label, e)

            run.executed_count += 1
            self._report(run, on_progress)

        run.state = RunState.COMPLETED
        logger.info(
            "Run %s: completed %d/%d prompts successfully",
            run.run_id, len(succeeded), run.total_count
        )
        return run

    def _report(self, run: PipelineRun, on_progress: Optional[ProgressCallback]) -> None:
        logger.debug("Run %s: progress %d/%d", run.run_id, run.executed_count, run.total_count)
        if on_progress is None:
            return
        try:
            on_progress(run)
        except Exception:
            logger.exception("Run %s: progress callback failed", run.run_id)

    def _policy_for(self, actor: ActorIdentity) -> QuotaPolicy:
        return self.quota_policies[actor.actor_type]

    def _skip_prompt(
        self,
        outcome: PromptOutcome,
        descriptor: PromptDescriptor,
        actor: ActorIdentity,
        session_id: Optional[str],
        failed_dependencies: List[int]
    ) -> None:
        error = DependencyFailed(
            f"Skipped: prerequisite prompt(s) {failed_dependencies} did not complete",
            failed_indices=failed_dependencies
        )
        request_id = str(uuid.uuid4())
        outcome.request_id = request_id
        self.job_store.create(
            request_id,
            actor.actor_id,
            session_id,
            label=descriptor.label,
            prompt_text=descriptor.prompt,
            model_used=self.model_config.model
        )
        self.job_store.fail(request_id, error)
        raise error

    def _execute_prompt(
        self,
        outcome: PromptOutcome,
        descriptor: PromptDescriptor,
        actor: ActorIdentity,
        session_id: Optional[str]
    ) -> str:
        if self.verifier is not None:
            try:
                self.verifier(actor)
            except PipelineError:
                raise
            except Exception as e:
                raise SecurityVerificationFailed(f"Security verification failed: {e}") from e

        request_id = str(uuid.uuid4())
        outcome.request_id = request_id
        model = self.model_config.model
        started = time.monotonic()

        self.job_store.create(
            request_id,
            actor.actor_id,
            session_id,
            label=descriptor.label,
            prompt_text=descriptor.prompt,
            model_used=model
        )

        try:
            decision = self.quota_ledger.check(actor, self._policy_for(actor))
        except PersistenceError as e:
            self.job_store.fail(request_id, e, _elapsed_ms(started))
            raise

        if not decision.allowed:
            error = RateLimitExceeded(
                f"Rate limit exceeded. Try again after {decision.reset_at.isoformat(timespec='minutes')}.",
                remaining=decision.remaining,
                reset_at=decision.reset_at
            )
            self.job_store.fail(request_id, error)
            raise error

        self.job_store.transition(request_id, JobStatus.PROCESSING, model_used=model)

        try:
            content = self.executor.execute(descriptor.prompt, self.model_config)
        except Exception as e:
            error = e if isinstance(e, PipelineError) else GenerationError(f"Error fetching AI response: {e}")
            logger.error("Generation failed for %s: %s", request_id, error)
            self.job_store.fail(request_id, error, _elapsed_ms(started))
            if error is e:
                raise
            raise error from e

        try:
            self.job_store.transition(
                request_id,
                JobStatus.COMPLETED,
                result_content=content,
                processing_duration_ms=_elapsed_ms(started)
            )
        except PersistenceError as e:
            # A job must not be left in processing
            try:
                self.job_store.fail(request_id, e, _elapsed_ms(started))
            except PipelineError:
                logger.exception("Could not mark %s failed after completion write failed", request_id)
            raise

        try:
            self.accountant.estimate_and_record(
                request_id,
                model,
                descriptor.prompt,
                content,
                user_id=actor.actor_id,
                session_id=session_id
            )
        except PersistenceError:
            # The generation itself succeeded; the job stays completed
            logger.exception("Usage tracking failed for %s", request_id)

        return content


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
