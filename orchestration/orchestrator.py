from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Optional

from .context import CallContext
from .errors import FetchError, PreprocessError, ProviderNotConfigured, ProviderTimeoutError, RequestCancelled
from .governor import RetryGovernor, outcome_for_error
from .io_types import (
    BenchmarkSummary,
    ExecutionState,
    GarmentCategory,
    GenerationOutcome,
    GenerationRequest,
    ImageRole,
    OrchestrationResult,
    OutcomeStatus,
    RetryGuidance,
    Strategy,
)
from .jobs import InMemoryJobTracker, JobTracker
from .preprocess import ImagePreprocessor
from .settings import OrchestratorConfig
from .singleflight import SingleFlight


logger = logging.getLogger(__name__)

# listener(execution, outcome): outcome is None for state transitions
ExecutionListener = Callable[["Execution", Optional[GenerationOutcome]], None]


class Execution:
    """Progress of one request through the strategy state machine."""

    def __init__(self, request: GenerationRequest, ctx: CallContext, listener: Optional[ExecutionListener] = None) -> None:
        self.request = request
        self.ctx = ctx
        self.listener = listener
        self.state = ExecutionState.SUBMITTED
        self.history: list[ExecutionState] = [ExecutionState.SUBMITTED]
        self.outcomes: list[GenerationOutcome] = []
        self.started = time.monotonic()

    @property
    def job_id(self) -> str:
        return self.request.job_id

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    def advance(self, state: ExecutionState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug("job %s -> %s", self.job_id, state.value, extra={"job_id": self.job_id})
        self._notify(None)

    def record(self, outcome: GenerationOutcome) -> None:
        self.outcomes.append(outcome)
        self._notify(outcome)

    def _notify(self, outcome: Optional[GenerationOutcome]) -> None:
        if self.listener is None:
            return
        try:
            self.listener(self, outcome)
        except Exception:  # noqa: BLE001
            logger.exception("execution listener failed for job %s", self.job_id)


def outcome_rank(outcome: GenerationOutcome) -> int:
    g = outcome.guidance or RetryGuidance()
    if g.is_rate_limited and g.retry_after_seconds is not None:
        return 4
    if g.is_rate_limited:
        return 3
    if outcome.status is OutcomeStatus.FAILED:
        return 2 if not g.is_terminal else 1
    return 0


def most_actionable(outcomes: list[GenerationOutcome]) -> Optional[GenerationOutcome]:
    """The failure a caller can do the most with; later attempts win ties."""
    best: Optional[GenerationOutcome] = None
    for outcome in outcomes:
        if best is None or outcome_rank(outcome) >= outcome_rank(best):
            best = outcome
    return best


def onboarding_request(
    avatar_ref: str,
    garment_ref: str,
    category: str | GarmentCategory = GarmentCategory.UPPER_BODY,
    config: Optional[OrchestratorConfig] = None,
    **kwargs,
) -> GenerationRequest:
    """Fast cascade used while a new user sets up their avatar."""
    config = config or OrchestratorConfig()
    if not isinstance(category, GarmentCategory):
        category = GarmentCategory.parse(category)
    return GenerationRequest(
        avatar_ref=avatar_ref,
        garment_ref=garment_ref,
        category=category,
        strategy=Strategy.CASCADE,
        providers=tuple(config.onboarding_order),
        provider_timeout_s=config.onboarding_provider_timeout_s,
        **kwargs,
    )


class Orchestrator:
    """
    Runs a GenerationRequest against the provider registry with one of three strategies.
    - cascade: providers one after another in priority order, first success wins.
    - race: all selected providers at once, first success wins and the rest are cancelled.
    - benchmark: all selected providers at once, every outcome is reported.
    A duplicate submission for a job id that is still running joins the running execution.
    """

    def __init__(
        self,
        registry: dict,
        preprocessor: Optional[ImagePreprocessor] = None,
        tracker: Optional[JobTracker] = None,
        governor: Optional[RetryGovernor] = None,
        config: Optional[OrchestratorConfig] = None,
        listener: Optional[ExecutionListener] = None,
        max_workers: int = 32,
    ) -> None:
        self.config = config or OrchestratorConfig()
        self.registry = registry
        self.preprocessor = preprocessor or ImagePreprocessor(config=self.config.preprocess)
        self.tracker: JobTracker = tracker or InMemoryJobTracker()
        self.governor = governor or RetryGovernor(force_grace_s=self.config.force_grace_s)
        self.listener = listener
        self._workers = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tryon-worker")
        self._requests = ThreadPoolExecutor(max_workers=max(4, max_workers // 4), thread_name_prefix="tryon-request")
        self._inflight: SingleFlight[OrchestrationResult] = SingleFlight()
        self._executions: dict[str, Execution] = {}
        self._lock = threading.Lock()

    def submit(self, request: GenerationRequest) -> "Future[OrchestrationResult]":
        return self._requests.submit(self.orchestrate, request)

    def orchestrate(self, request: GenerationRequest) -> OrchestrationResult:
        result, shared = self._inflight.do(request.job_id, lambda: self._run(request))
        if shared:
            logger.info("job %s already running, joined existing execution", request.job_id, extra={"job_id": request.job_id})
        return result

    def is_running(self, job_id: str) -> bool:
        return self._inflight.in_flight(job_id)

    def execution(self, job_id: str) -> Optional[Execution]:
        with self._lock:
            return self._executions.get(job_id)

    def cancel(self, job_id: str, reason: str = "cancelled by caller") -> bool:
        execution = self.execution(job_id)
        if execution is None:
            return False
        execution.ctx.cancel(reason)
        return True

    def shutdown(self, wait: bool = False) -> None:
        self._requests.shutdown(wait=wait)
        self._workers.shutdown(wait=wait)

    def _run(self, request: GenerationRequest) -> OrchestrationResult:
        if request.strategy is Strategy.CASCADE:
            ctx = CallContext()
        else:
            ctx = CallContext.with_timeout(self.config.global_timeout_s)
        execution = Execution(request, ctx, self.listener)
        with self._lock:
            self._executions[request.job_id] = execution

        extra = {"job_id": request.job_id, "strategy": request.strategy.value}
        logger.info("job %s submitted (%s)", request.job_id, request.strategy.value, extra=extra)
        try:
            execution.advance(ExecutionState.PREPROCESSING)
            self.tracker.create_job(request)
            self.tracker.mark_processing(request.job_id)

            try:
                avatar, garment = self._prepare(request)
            except FetchError as e:
                return self._fail_input(execution, e)

            if request.strategy is Strategy.CASCADE:
                result = self._cascade(execution, avatar, garment)
            elif request.strategy is Strategy.RACE:
                result = self._race(execution, avatar, garment)
            else:
                result = self._benchmark(execution, avatar, garment)
            self._finish(execution, result)
            return result
        except Exception as e:
            logger.exception("job %s crashed", request.job_id, extra=extra)
            execution.advance(ExecutionState.FAILED)
            self.tracker.mark_failed(request.job_id, f"internal error: {e}")
            raise
        finally:
            with self._lock:
                self._executions.pop(request.job_id, None)

    def _prepare(self, request: GenerationRequest) -> tuple[bytes, bytes]:
        avatar_f = self._workers.submit(self._prepare_one, request.avatar_ref, ImageRole.AVATAR)
        garment_f = self._workers.submit(self._prepare_one, request.garment_ref, ImageRole.GARMENT)
        return avatar_f.result(), garment_f.result()

    def _prepare_one(self, ref: str, role: ImageRole) -> bytes:
        raw = self.preprocessor.source.fetch_bytes(ref)
        try:
            return self.preprocessor.normalize(raw, role)
        except PreprocessError as e:
            logger.warning("%s preprocessing failed, sending original bytes: %s", role.value, e.message)
            return raw

    def _fail_input(self, execution: Execution, error: FetchError) -> OrchestrationResult:
        outcome = outcome_for_error("input", error, execution.elapsed_ms())
        execution.advance(ExecutionState.FAILED)
        self.tracker.mark_failed(execution.job_id, error.message)
        return OrchestrationResult(
            job_id=execution.job_id,
            strategy=execution.request.strategy,
            state=ExecutionState.FAILED,
            outcome=outcome,
            elapsed_ms=execution.elapsed_ms(),
        )

    def _selected(self, request: GenerationRequest) -> list[str]:
        order = list(request.providers) or list(self.config.orders.get(request.strategy, []))
        seen: set[str] = set()
        return [p for p in order if not (p in seen or seen.add(p))]

    def _provider_timeout(self, request: GenerationRequest) -> float:
        return request.provider_timeout_s or self.config.provider_timeout_s

    def _attempt(self, provider_id: str, ctx: CallContext, avatar: bytes, garment: bytes, category: GarmentCategory) -> GenerationOutcome:
        adapter = self.registry.get(provider_id)
        if adapter is None:
            return outcome_for_error(provider_id, ProviderNotConfigured(f"unknown provider {provider_id}", provider_id), 0)
        logger.info("dispatching %s", provider_id, extra={"provider": provider_id})
        return self.governor.execute(adapter, ctx, avatar, garment, category)

    def _cascade(self, execution: Execution, avatar: bytes, garment: bytes) -> OrchestrationResult:
        request = execution.request
        order = self._selected(request)
        # A resubmission skips the providers that already failed for this job
        start = min(request.retry_count, len(order) - 1) if order else 0
        timeout = self._provider_timeout(request)

        execution.advance(ExecutionState.DISPATCHING)
        winner: Optional[GenerationOutcome] = None
        for provider_id in order[start:]:
            if execution.ctx.cancelled:
                break
            outcome = self._attempt(provider_id, execution.ctx.child(timeout), avatar, garment, request.category)
            execution.record(outcome)
            if outcome.succeeded:
                winner = outcome
                break

        execution.advance(ExecutionState.AGGREGATING)
        return self._single_result(execution, winner, list(execution.outcomes))

    def _race(self, execution: Execution, avatar: bytes, garment: bytes) -> OrchestrationResult:
        request = execution.request
        order = self._selected(request)
        root = execution.ctx
        timeout = self._provider_timeout(request)

        execution.advance(ExecutionState.DISPATCHING)
        futures = {
            self._workers.submit(self._attempt, pid, root.child(timeout), avatar, garment, request.category): pid
            for pid in order
        }
        execution.advance(ExecutionState.AWAITING_FIRST)

        results: dict[str, GenerationOutcome] = {}
        winner: Optional[GenerationOutcome] = None
        pending = set(futures)
        while pending and winner is None:
            done, pending = wait(pending, timeout=root.remaining(), return_when=FIRST_COMPLETED)
            if not done:
                break
            for f in done:
                outcome = f.result()
                results[futures[f]] = outcome
                execution.record(outcome)
                if outcome.succeeded and winner is None:
                    winner = outcome

        if pending:
            root.cancel(f"lost race to {winner.provider}" if winner else "race deadline exceeded")
            done, pending = wait(pending, timeout=self.config.cancel_grace_s)
            for f in done:
                outcome = f.result()
                results[futures[f]] = outcome
                execution.record(outcome)
                if outcome.succeeded and winner is None:
                    winner = outcome
            for f in pending:
                outcome = self._unresolved(futures[f], root, winner is not None, execution.elapsed_ms())
                results[futures[f]] = outcome
                execution.record(outcome)

        execution.advance(ExecutionState.AGGREGATING)
        ordered = [results[pid] for pid in order if pid in results]
        return self._single_result(execution, winner, ordered)

    def _benchmark(self, execution: Execution, avatar: bytes, garment: bytes) -> OrchestrationResult:
        request = execution.request
        order = self._selected(request)
        root = execution.ctx
        timeout = self._provider_timeout(request)

        execution.advance(ExecutionState.DISPATCHING)
        futures = {
            self._workers.submit(self._attempt, pid, root.child(timeout), avatar, garment, request.category): pid
            for pid in order
        }
        execution.advance(ExecutionState.AWAITING_ALL)
        done, pending = wait(futures, timeout=root.remaining())

        results: dict[str, GenerationOutcome] = {}
        for f in done:
            results[futures[f]] = f.result()
        if pending:
            root.cancel("benchmark deadline exceeded")
            for f in pending:
                results[futures[f]] = self._unresolved(futures[f], root, False, execution.elapsed_ms())

        execution.advance(ExecutionState.AGGREGATING)
        outcomes = [results[pid] for pid in order]
        for outcome in outcomes:
            execution.record(outcome)
        elapsed = execution.elapsed_ms()
        summary = BenchmarkSummary.from_outcomes(outcomes, elapsed)
        state = ExecutionState.COMPLETED if summary.success else ExecutionState.FAILED
        return OrchestrationResult(
            job_id=execution.job_id,
            strategy=request.strategy,
            state=state,
            outcomes=outcomes,
            summary=summary,
            elapsed_ms=elapsed,
        )

    def _unresolved(self, provider_id: str, root: CallContext, lost: bool, elapsed_ms: int) -> GenerationOutcome:
        if lost:
            error = RequestCancelled(f"{provider_id}: cancelled after another provider won", provider_id)
        else:
            error = ProviderTimeoutError(f"{provider_id}: no result before the global deadline", provider_id)
        return outcome_for_error(provider_id, error, elapsed_ms)

    def _single_result(
        self, execution: Execution, winner: Optional[GenerationOutcome], outcomes: list[GenerationOutcome]
    ) -> OrchestrationResult:
        if winner is not None:
            state, outcome = ExecutionState.COMPLETED, winner
        else:
            state, outcome = ExecutionState.FAILED, most_actionable(outcomes)
        return OrchestrationResult(
            job_id=execution.job_id,
            strategy=execution.request.strategy,
            state=state,
            outcome=outcome,
            outcomes=outcomes,
            elapsed_ms=execution.elapsed_ms(),
        )

    def _finish(self, execution: Execution, result: OrchestrationResult) -> None:
        extra = {"job_id": execution.job_id, "strategy": execution.request.strategy.value}
        if result.strategy is Strategy.BENCHMARK:
            best = next((o for o in result.outcomes if result.summary and o.provider == result.summary.fastest_model), None)
        else:
            best = result.outcome if result.succeeded else None

        if best is not None:
            self.tracker.mark_completed(execution.job_id, best)
            logger.info("job %s completed by %s in %dms", execution.job_id, best.provider, result.elapsed_ms, extra=extra)
        else:
            error = result.outcome.error_message if result.outcome else None
            self.tracker.mark_failed(execution.job_id, error or "no provider produced a result")
            logger.warning("job %s failed: %s", execution.job_id, error, extra=extra)
        execution.advance(result.state)
