"""Candidate fetch pipeline: fetch, check for a block, optionally refetch rendered.

The steps are separate functions so the refetch policy can be tested without
an HTTP client:

    plan = plan_fetch(options, render_behavior, session_reuse)
    first = await fetcher.get(url, plan.initial_options())
    if should_refetch(plan, detect_block(...).blocked, options): ...

``run_fetch_pipeline`` strings them together.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from beacon.ingest.block_detection import BlockCheck, detect_block
from beacon.ingest.config_resolver import CheckerOptions
from beacon.ingest.http_fetcher import FetchError, FetchOptions, FetchResponse

logger = logging.getLogger(__name__)


class Fetcher(Protocol):
    async def get(self, url: str, options: Optional[FetchOptions] = None) -> FetchResponse: ...


@dataclass(frozen=True)
class FetchPlan:
    """How one candidate is fetched."""

    timeout_ms: int
    render_timeout_ms: int
    render_behavior: str
    use_session: bool

    @property
    def render_first(self) -> bool:
        return self.render_behavior == "always"

    def initial_options(self) -> FetchOptions:
        return FetchOptions(
            timeout_ms=self.timeout_ms,
            render=self.render_first,
            use_session=self.use_session,
        )

    def refetch_options(self) -> FetchOptions:
        return FetchOptions(
            timeout_ms=self.render_timeout_ms,
            render=True,
            use_session=self.use_session,
        )


@dataclass
class PipelineResult:
    """
    Outcome of one candidate fetch.

    ``block`` judges the first response (what triggered any refetch);
    ``final_block`` judges the response that is kept.
    """

    response: FetchResponse
    block: BlockCheck
    final_block: BlockCheck
    refetched: bool = False
    elapsed_seconds: float = 0.0

    @property
    def blocked(self) -> bool:
        return self.block.blocked

    @property
    def blocked_final(self) -> bool:
        return self.final_block.blocked

    @property
    def rendered(self) -> bool:
        return self.response.rendered


def plan_fetch(options: CheckerOptions, render_behavior: str, session_reuse: bool) -> FetchPlan:
    return FetchPlan(
        timeout_ms=options.timeout_ms,
        render_timeout_ms=max(options.timeout_ms, options.render_min_timeout_ms),
        render_behavior=render_behavior,
        use_session=session_reuse,
    )


def should_refetch(plan: FetchPlan, blocked: bool, options: CheckerOptions) -> bool:
    """
    Decide whether to refetch with rendering.

    A blocked page is re-rendered when the retailer renders ``on_block`` and
    render-on-block is enabled globally. The global force flag re-renders
    pages that were not blocked. A page fetched rendered is never refetched.
    """
    if plan.render_first:
        return False
    if blocked:
        return plan.render_behavior == "on_block" and options.render_on_block
    return options.force_render


async def run_fetch_pipeline(
    fetcher: Fetcher,
    url: str,
    plan: FetchPlan,
    options: CheckerOptions,
    clock=time.monotonic,
) -> PipelineResult:
    """
    Fetch a candidate URL with at most one rendered refetch.

    Raises:
        FetchError: the first fetch failed at transport level. A failed
            refetch never raises; the first response is kept.
    """
    start = clock()
    response = await fetcher.get(url, plan.initial_options())
    block = detect_block(response.status, response.body)
    final_block = block
    refetched = False

    if should_refetch(plan, block.blocked, options):
        try:
            response = await fetcher.get(url, plan.refetch_options())
            refetched = True
            final_block = detect_block(response.status, response.body)
        except FetchError as e:
            logger.info(f"Rendered refetch failed for {url}, keeping first response: {e.code}")

    return PipelineResult(
        response=response,
        block=block,
        final_block=final_block,
        refetched=refetched,
        elapsed_seconds=clock() - start,
    )
