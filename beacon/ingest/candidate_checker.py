"""URL candidate checker.

Pulls pending candidate URLs, fetches each one within its retailer's request
budget, decides whether the page is a live purchasable product page and
writes the new status and score back. Candidates are processed one at a time
with a short pause in between.
"""

import asyncio
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Protocol

from beacon import metrics
from beacon.config import settings
from beacon.ingest.budget import BudgetController
from beacon.ingest.candidate_metrics import CandidateMetrics
from beacon.ingest.config_resolver import CheckerOptions, ConfigResolver
from beacon.ingest.fetch_pipeline import Fetcher, PipelineResult, plan_fetch, run_fetch_pipeline
from beacon.ingest.html_evaluator import Evidence, build_reason, evaluate_html, is_live_allowed
from beacon.ingest.http_fetcher import FetchError
from beacon.logging_config import get_logger
from beacon.ingest.registry import RetailerRegistry
from beacon.ingest.repository import CandidateRecord, CandidateRepository, CandidateUpdate
from beacon.notify.drop_signals import DropSignal

logger = logging.getLogger(__name__)

LIVE_SIGNAL_TYPE = "url_live"
LIVE_SIGNAL_SOURCE = "url-candidate-checker"

SCORE_LIVE = 0.25
SCORE_VALID = 0.05
SCORE_NOT_FOUND = -0.30
SCORE_TRANSIENT = -0.05
SCORE_OTHER_ERROR = -0.02
DEFAULT_SCORE = 0.5

NOT_FOUND_STATUSES = (404, 410)
NOT_FOUND_ERROR_RE = re.compile(r"404|410")
TRANSIENT_ERROR_RE = re.compile(r"403|429|timeout|ETIMEDOUT|ECONNRESET|ENOTFOUND", re.IGNORECASE)


class SignalPublisher(Protocol):
    async def publish(self, signal: DropSignal) -> bool: ...

    async def record_first_seen(self, product_id: str, retailer_id: str, seen_at: Optional[datetime] = None) -> bool: ...


@dataclass(frozen=True)
class BatchResult:
    checked: int
    live_found: int


@dataclass(frozen=True)
class Verdict:
    """Status change for one candidate; ``event`` names the counter to bump."""

    status: str
    delta: float
    reason: str
    event: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.status == "live"


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def apply_delta(score: Optional[float], delta: float) -> float:
    """Add a delta to a score, treating missing/NaN as 0.5, clamped to [0, 1]."""
    if score is None or not math.isfinite(score):
        score = DEFAULT_SCORE
    return clamp01(score + delta)


def verdict_for_page(slug: Optional[str], evidence: Evidence) -> Verdict:
    """Verdict for a 2xx response."""
    if is_live_allowed(slug, evidence):
        return Verdict("live", SCORE_LIVE, build_reason("live", evidence), "live")
    if evidence.product_page or evidence.jsonld:
        return Verdict("valid", SCORE_VALID, build_reason("valid", evidence), "valid")
    return Verdict("unknown", SCORE_TRANSIENT, build_reason("page", evidence))


def verdict_for_status(status_code: int) -> Verdict:
    """Verdict for a non-2xx response."""
    reason = f"http_{status_code}"
    if status_code in NOT_FOUND_STATUSES:
        return Verdict("invalid", SCORE_NOT_FOUND, reason, "invalid")
    return Verdict("unknown", SCORE_TRANSIENT, reason)


def verdict_for_block(block_type: Optional[str]) -> Verdict:
    """Verdict for a 2xx body that is still an anti-bot wall after any refetch."""
    return Verdict("unknown", SCORE_TRANSIENT, f"blocked:{block_type or 'unknown'}")


def verdict_for_error(reason: str) -> Verdict:
    """Verdict for a fetch that raised; status stays unknown."""
    if NOT_FOUND_ERROR_RE.search(reason):
        delta = SCORE_NOT_FOUND
    elif TRANSIENT_ERROR_RE.search(reason):
        delta = SCORE_TRANSIENT
    else:
        delta = SCORE_OTHER_ERROR
    return Verdict("unknown", delta, reason, "errors")


def error_reason(exc: Exception) -> str:
    if isinstance(exc, FetchError):
        return exc.code
    return type(exc).__name__


class CandidateChecker:
    """Checks batches of candidate URLs against their retailers."""

    def __init__(
        self,
        repository: CandidateRepository,
        registry: RetailerRegistry,
        budget: BudgetController,
        resolver: ConfigResolver,
        fetcher: Fetcher,
        signals: Optional[SignalPublisher] = None,
        candidate_metrics: Optional[CandidateMetrics] = None,
        options: Optional[CheckerOptions] = None,
        evaluator: Callable[[str, str], Evidence] = evaluate_html,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        live_confidence: Optional[int] = None,
    ):
        self.repository = repository
        self.registry = registry
        self.budget = budget
        self.resolver = resolver
        self.fetcher = fetcher
        self.signals = signals
        self.candidate_metrics = candidate_metrics or CandidateMetrics()
        self.options = options or CheckerOptions.from_environment(resolver.environment)
        self.evaluator = evaluator
        self._sleep = sleep
        self.live_confidence = live_confidence or settings.url_candidate_confidence

    async def check_batch(self, limit: int = 25) -> BatchResult:
        """
        Check up to ``limit`` pending candidates.

        Returns:
            BatchResult with the number of candidates checked (budget skips
            excluded) and how many went live
        """
        candidates = await self.repository.fetch_pending(limit)
        if not candidates:
            metrics.record_batch_run(True)
            return BatchResult(checked=0, live_found=0)

        checked = 0
        live_found = 0
        for candidate in candidates:
            slug = await self.registry.slug_for(candidate.retailer_id)
            if slug and not await self.budget.try_consume(slug):
                metrics.record_budget_denied(slug)
                logger.debug(f"Budget exhausted for {slug}, deferring candidate {candidate.id}")
                continue

            verdict = await self.check_candidate(candidate, slug)
            checked += 1
            if verdict.is_live:
                live_found += 1

            await self._sleep(self.options.delay_ms / 1000.0)

        logger.info(f"URL candidate batch done: checked={checked} live={live_found} of {len(candidates)}")
        metrics.record_batch_run(True)
        return BatchResult(checked=checked, live_found=live_found)

    async def check_candidate(self, candidate: CandidateRecord, slug: Optional[str]) -> Verdict:
        """Fetch, classify and persist one already-admitted candidate."""
        log = get_logger(__name__, retailer=slug or "unknown", candidate_id=candidate.id)
        await self._count(slug, "requests")
        try:
            result = await self._fetch(candidate, slug)
            if result.blocked:
                await self._count(slug, "blocked")
            response = result.response
            if response.ok and result.blocked_final:
                verdict = verdict_for_block(result.final_block.block_type)
            elif response.ok:
                verdict = verdict_for_page(slug, self.evaluator(candidate.url, response.body))
            else:
                verdict = verdict_for_status(response.status)
        except Exception as e:
            reason = error_reason(e)
            if not isinstance(e, FetchError):
                log.warning(f"Unexpected error checking candidate {candidate.id}: {e!r}")
            verdict = verdict_for_error(reason)

        if verdict.event:
            await self._count(slug, verdict.event)

        checked_at = datetime.utcnow()
        if verdict.is_live:
            try:
                await self._emit_live(candidate, checked_at)
            except Exception as e:
                log.error(f"Failed to emit live signal for candidate {candidate.id}: {e!r}")

        update = CandidateUpdate(
            status=verdict.status,
            score=apply_delta(candidate.score, verdict.delta),
            reason=verdict.reason,
            checked_at=checked_at,
        )
        try:
            await self.repository.save_result(candidate.id, update)
        except Exception as e:
            log.error(f"Failed to persist candidate {candidate.id}: {e!r}")
        log.debug(f"Candidate {candidate.id} -> {verdict.status} ({verdict.reason})")
        return verdict

    async def _fetch(self, candidate: CandidateRecord, slug: Optional[str]) -> PipelineResult:
        render_behavior = await self.resolver.render_behavior(slug)
        session_reuse = await self.resolver.session_reuse(slug)
        plan = plan_fetch(self.options, render_behavior, session_reuse)
        result = await run_fetch_pipeline(self.fetcher, candidate.url, plan, self.options)
        metrics.record_candidate_fetch(slug or "unknown", result.elapsed_seconds, result.rendered)
        return result

    async def _count(self, slug: Optional[str], event: str) -> None:
        if slug:
            await self.candidate_metrics.record(slug, event)

    async def _emit_live(self, candidate: CandidateRecord, seen_at: datetime) -> None:
        if self.signals is None:
            return
        try:
            await self.signals.record_first_seen(candidate.product_id, candidate.retailer_id, seen_at)
        except Exception as e:
            logger.warning(f"Could not record first-seen for {candidate.product_id}: {e}")
        await self.signals.publish(DropSignal(
            product_id=candidate.product_id,
            retailer_id=candidate.retailer_id,
            signal_type=LIVE_SIGNAL_TYPE,
            signal_value=candidate.url,
            source=LIVE_SIGNAL_SOURCE,
            confidence=self.live_confidence,
            observed_at=seen_at,
        ))
