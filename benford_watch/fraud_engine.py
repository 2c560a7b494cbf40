import asyncio
import inspect
import itertools
import logging
from typing import AsyncIterator, List, Optional, Protocol, Sequence

from .config import Settings, get_settings
from .exceptions import EmptySourceError, ProducerFailure
from .ml.benford import FrequencyAccumulator, check_compliance, digit_table, run_test
from .schemas import (
    AnalysisMode,
    BenfordVerdict,
    ComplianceVerdict,
    DigitRow,
    FitTest,
    IneligibleReason,
    ProgressEvent,
    ResultEvent,
    RunState,
    VerdictStatus,
)

logger = logging.getLogger(__name__)

_run_ids = itertools.count(1)


class ProgressSink(Protocol):
    def on_progress(self, event: ProgressEvent): ...


class ResultSink(Protocol):
    def on_result(self, event: ResultEvent): ...


class NullSink:
    def on_progress(self, event: ProgressEvent):
        pass

    def on_result(self, event: ResultEvent):
        pass


class CollectingSink:
    """Keeps every event in memory. Used by the HTTP endpoints and tests."""

    def __init__(self):
        self.progress: List[ProgressEvent] = []
        self.results: List[ResultEvent] = []

    def on_progress(self, event: ProgressEvent):
        self.progress.append(event)

    def on_result(self, event: ResultEvent):
        self.results.append(event)


async def _deliver(callback, event):
    # Sinks may be plain callbacks or coroutines (e.g. websocket senders)
    outcome = callback(event)
    if inspect.isawaitable(outcome):
        await outcome


def default_strategy(mode: AnalysisMode) -> FitTest:
    if mode == AnalysisMode.RAW:
        return FitTest.MAX_DEVIATION
    return FitTest.CHI_SQUARED


class AnalysisRun:
    """State of one submitted source: tokens, histogram, cursor and lifecycle."""

    def __init__(
        self,
        tokens: Sequence[str] = (),
        mode: AnalysisMode = AnalysisMode.STRUCTURED,
        strategy: Optional[FitTest] = None,
        progress_floor: float = 0.0,
    ):
        self.run_id = next(_run_ids)
        self.tokens = list(tokens)
        self.mode = mode
        self.strategy = strategy or default_strategy(mode)
        self.progress_floor = progress_floor
        self.accumulator = FrequencyAccumulator()
        self.cursor = 0
        self.state = RunState.IDLE
        self.result: Optional[ResultEvent] = None

    @property
    def total_tokens(self) -> int:
        return len(self.tokens)

    @property
    def cancelled(self) -> bool:
        return self.state == RunState.CANCELLED

    def cancel(self):
        if self.state in (RunState.IDLE, RunState.RUNNING):
            self.state = RunState.CANCELLED

    def progress(self) -> float:
        """Overall percentage; the token loop fills the range above the floor."""
        if not self.tokens:
            return self.progress_floor
        span = 100.0 - self.progress_floor
        return min(100.0, self.progress_floor + span * self.cursor / self.total_tokens)

    def progress_event(self) -> ProgressEvent:
        return ProgressEvent(
            run_id=self.run_id,
            cursor=self.cursor,
            total_tokens=self.total_tokens,
            percentage=self.progress(),
            histogram=list(self.accumulator.snapshot()),
        )


class IncrementalRunner:
    """
    Feeds a run's tokens through the accumulator one at a time.

    After every token a ProgressEvent goes to the progress sink and control is
    handed back to the event loop, which is where cancellation is observed.
    Once all tokens are in, the dataset is gated and tested and a single
    ResultEvent goes to the result sink. Cancelled runs report nothing.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        progress_sink: Optional[ProgressSink] = None,
        result_sink: Optional[ResultSink] = None,
    ):
        self.settings = settings or get_settings()
        self.progress_sink = progress_sink or NullSink()
        self.result_sink = result_sink or NullSink()

    async def steps(self, run: AnalysisRun) -> AsyncIterator[ProgressEvent]:
        if run.cancelled:
            return
        run.accumulator.reset()
        run.cursor = 0
        run.state = RunState.RUNNING
        logger.info(
            "Run %d started: %d tokens, mode=%s, test=%s",
            run.run_id, run.total_tokens, run.mode.value, run.strategy.value,
        )

        try:
            for token in run.tokens:
                if run.cancelled:
                    return
                digit = run.accumulator.record(token)
                run.cursor += 1
                logger.debug("Run %d token %r -> digit %d", run.run_id, token, digit)
                yield run.progress_event()
                await asyncio.sleep(self.settings.step_delay)
        except asyncio.CancelledError:
            run.cancel()
            raise

        if not run.cancelled:
            run.state = RunState.COMPLETED

    async def run(self, run: AnalysisRun) -> Optional[ResultEvent]:
        async for event in self.steps(run):
            await _deliver(self.progress_sink.on_progress, event)

        if run.state != RunState.COMPLETED:
            logger.info(
                "Run %d cancelled after %d/%d tokens",
                run.run_id, run.cursor, run.total_tokens,
            )
            return None

        result = self.finalize(run)
        run.result = result
        logger.info("Run %d completed: %s", run.run_id, result.status.value)
        await _deliver(self.result_sink.on_result, result)
        return result

    def finalize(self, run: AnalysisRun) -> ResultEvent:
        s = self.settings
        histogram = run.accumulator.snapshot()
        total_valid = run.accumulator.total_valid()

        if total_valid == 0:
            return self._result(run, VerdictStatus.NO_DATA)

        compliance = None
        if run.mode == AnalysisMode.STRUCTURED:
            if total_valid < s.min_sample:
                compliance = ComplianceVerdict(
                    eligible=False,
                    reason=IneligibleReason.INSUFFICIENT_SAMPLE,
                    sample_size=total_valid,
                )
            else:
                compliance = check_compliance(run.tokens, s.min_sample, s.min_spread)
            if not compliance.eligible:
                return self._result(run, VerdictStatus.INELIGIBLE, compliance=compliance)

        verdict = run_test(histogram, run.strategy, s.significance_level, s.max_deviation)
        status = VerdictStatus.ANOMALOUS if verdict.anomalous else VerdictStatus.CONSISTENT
        return self._result(run, status, verdict=verdict, compliance=compliance)

    def _result(
        self,
        run: AnalysisRun,
        status: VerdictStatus,
        verdict: Optional[BenfordVerdict] = None,
        compliance: Optional[ComplianceVerdict] = None,
    ) -> ResultEvent:
        histogram = run.accumulator.snapshot()
        table = [
            DigitRow(
                digit=int(row["digit"]),
                count=int(row["count"]),
                percent=float(row["percent"]),
                expected_percent=float(row["expected_percent"]),
                deviation=float(row["deviation"]),
            )
            for row in digit_table(histogram).to_dict("records")
        ]
        return ResultEvent(
            run_id=run.run_id,
            status=status,
            mode=run.mode,
            verdict=verdict,
            compliance=compliance,
            histogram=list(histogram),
            total_valid=run.accumulator.total_valid(),
            invalid_count=run.accumulator.invalid_count(),
            message=self._message(run, status, verdict, compliance),
            table=table,
        )

    def _message(self, run, status, verdict, compliance) -> str:
        s = self.settings
        if status == VerdictStatus.NO_DATA:
            return "No valid leading digits were found, so there is nothing to compare against Benford's Law."

        if status == VerdictStatus.INELIGIBLE:
            if compliance.reason == IneligibleReason.INSUFFICIENT_SAMPLE:
                return (
                    f"Insufficient numbers for analysis (need at least {s.min_sample} valid "
                    f"numbers, found {compliance.sample_size}). For text analysis, check image "
                    "quality or try a different file. For raw image analysis, ensure the image is a JPEG."
                )
            return (
                "The numbers may not be suitable for Benford's Law (too uniform or constrained: "
                f"the max/min ratio must exceed {s.min_spread:g}). Results would be unreliable."
            )

        if verdict.strategy == FitTest.CHI_SQUARED:
            detail = f"chi-squared p-value: {verdict.p_value_or_deviation:.4f}"
        else:
            detail = f"max deviation: {verdict.p_value_or_deviation:.2f} points"

        if status == VerdictStatus.ANOMALOUS:
            if run.mode == AnalysisMode.RAW:
                caveat = "For raw image data this may indicate a synthetic image."
            else:
                caveat = "This may suggest data manipulation, but could also result from OCR errors."
            return (
                "Potential anomaly: the first-digit distribution deviates significantly "
                f"from Benford's Law ({detail}). {caveat}"
            )
        return (
            f"Consistent with Benford's Law ({detail}). This suggests natural data, "
            "but does not guarantee authenticity."
        )


class AnalysisSession:
    """
    Owns the single active run. Every submission cancels whatever run is in
    flight (last submission wins); there is no queueing.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        progress_sink: Optional[ProgressSink] = None,
        result_sink: Optional[ResultSink] = None,
    ):
        self.settings = settings or get_settings()
        self.runner = IncrementalRunner(self.settings, progress_sink, result_sink)
        self.current: Optional[AnalysisRun] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def task(self) -> Optional[asyncio.Task]:
        """The task driving the most recently started run."""
        return self._task

    def cancel(self):
        if self.current is not None:
            self.current.cancel()

    def _replace(self, run: AnalysisRun):
        self.cancel()
        self.current = run

    def _start(self, run: AnalysisRun) -> AnalysisRun:
        self._task = asyncio.get_running_loop().create_task(self.runner.run(run))
        return run

    def submit(
        self,
        tokens: Sequence[str],
        mode: AnalysisMode = AnalysisMode.STRUCTURED,
        strategy: Optional[FitTest] = None,
    ) -> AnalysisRun:
        """Starts a run over already extracted tokens. Needs a running event loop."""
        run = AnalysisRun(tokens, mode, strategy)
        self._replace(run)
        if not run.tokens:
            run.cancel()
            raise EmptySourceError("No valid numbers found in the source.")
        return self._start(run)

    async def submit_source(
        self,
        source,
        mode: Optional[AnalysisMode] = None,
        strategy: Optional[FitTest] = None,
    ) -> Optional[AnalysisRun]:
        """
        Runs an external producer, then starts a run over its tokens.

        Producers that report their own progress get the first
        ``producer_share`` percent of the bar. Their progress events are
        delivered before the run's own events start. Returns None when
        another submission arrived while the producer was still working.
        """
        mode = mode or source.mode
        floor = self.settings.producer_share if source.reports_progress else 0.0
        run = AnalysisRun(mode=mode, strategy=strategy, progress_floor=floor)
        self._replace(run)
        deliveries: List[asyncio.Future] = []

        def on_progress(fraction: float):
            if run.state != RunState.IDLE:
                return
            event = ProgressEvent(
                run_id=run.run_id,
                cursor=0,
                total_tokens=0,
                percentage=max(0.0, min(1.0, fraction)) * floor,
                histogram=[0] * 10,
            )
            outcome = self.runner.progress_sink.on_progress(event)
            if inspect.isawaitable(outcome):
                deliveries.append(asyncio.ensure_future(outcome))

        try:
            tokens = await source.tokens(on_progress)
        except ProducerFailure as e:
            await self._flush(run, deliveries)
            await self._abandon(run, e)
            raise
        except Exception as e:
            await self._flush(run, deliveries)
            failure = ProducerFailure(source.name, str(e) or type(e).__name__, e)
            await self._abandon(run, failure)
            raise failure from e

        await self._flush(run, deliveries)
        if run.cancelled:
            logger.info("Run %d superseded before its producer finished", run.run_id)
            return None
        if not tokens:
            run.cancel()
            raise EmptySourceError(f"No valid numbers extracted from {source.name}.")

        run.tokens = list(tokens)
        return self._start(run)

    async def _flush(self, run: AnalysisRun, deliveries: List[asyncio.Future]):
        outcomes = await asyncio.gather(*deliveries, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                logger.error("Progress delivery failed for run %d: %s", run.run_id, outcome)

    async def _abandon(self, run: AnalysisRun, failure: ProducerFailure):
        logger.warning("Producer failed for run %d: %s", run.run_id, failure)
        if run.cancelled:
            return
        run.cancel()
        reset = ProgressEvent(
            run_id=run.run_id, cursor=0, total_tokens=0, percentage=0.0, histogram=[0] * 10
        )
        await _deliver(self.runner.progress_sink.on_progress, reset)

    async def wait(self) -> Optional[ResultEvent]:
        """Waits for the most recently started run to finish or stop."""
        if self._task is None:
            return None
        return await self._task


async def analyze(
    tokens: Sequence[str],
    mode: AnalysisMode = AnalysisMode.STRUCTURED,
    strategy: Optional[FitTest] = None,
    settings: Optional[Settings] = None,
    progress_sink: Optional[ProgressSink] = None,
    result_sink: Optional[ResultSink] = None,
) -> ResultEvent:
    """Runs a single analysis to completion."""
    tokens = list(tokens)
    if not tokens:
        raise EmptySourceError("No valid numbers found in the source.")
    runner = IncrementalRunner(settings, progress_sink, result_sink)
    return await runner.run(AnalysisRun(tokens, mode, strategy))
