"""Tests for the fetch / block check / rendered refetch pipeline."""

import pytest

from beacon.ingest.config_resolver import CheckerOptions
from beacon.ingest.fetch_pipeline import plan_fetch, run_fetch_pipeline, should_refetch
from beacon.ingest.http_fetcher import FetchError, FetchResponse


class ScriptedFetcher:
    """Replays scripted responses and records the options of every call."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def get(self, url, options=None):
        self.calls.append(options)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


CAPTCHA = FetchResponse(status=403, body="captcha")


def test_render_timeout_has_a_floor():
    plan = plan_fetch(CheckerOptions(timeout_ms=8000, render_min_timeout_ms=12000), "on_block", True)
    assert plan.render_timeout_ms == 12000
    plan = plan_fetch(CheckerOptions(timeout_ms=20000, render_min_timeout_ms=12000), "on_block", True)
    assert plan.render_timeout_ms == 20000


def test_refetch_policy():
    options = CheckerOptions()
    on_block = plan_fetch(options, "on_block", True)
    assert should_refetch(on_block, True, options)
    assert not should_refetch(on_block, False, options)
    assert not should_refetch(plan_fetch(options, "never", True), True, options)
    assert not should_refetch(plan_fetch(options, "always", True), True, options)
    assert not should_refetch(on_block, True, CheckerOptions(render_on_block=False))
    assert should_refetch(on_block, False, CheckerOptions(force_render=True))


@pytest.mark.asyncio
async def test_blocked_page_is_refetched_once_rendered():
    options = CheckerOptions(timeout_ms=8000, render_min_timeout_ms=12000)
    plan = plan_fetch(options, "on_block", True)
    rendered = FetchResponse(status=403, body="captcha", rendered=True)
    fetcher = ScriptedFetcher(CAPTCHA, rendered)

    result = await run_fetch_pipeline(fetcher, "https://www.target.com/p/x", plan, options)

    assert len(fetcher.calls) == 2
    assert fetcher.calls[0].render is False
    assert fetcher.calls[1].render is True
    assert fetcher.calls[1].timeout_ms >= 12000
    assert result.refetched
    assert result.blocked
    assert result.response is rendered
    assert result.blocked_final


@pytest.mark.asyncio
async def test_final_block_judges_the_kept_response():
    options = CheckerOptions()
    plan = plan_fetch(options, "on_block", True)
    rendered = FetchResponse(status=200, body="<h1>Booster Box</h1>", rendered=True)
    fetcher = ScriptedFetcher(CAPTCHA, rendered)

    result = await run_fetch_pipeline(fetcher, "https://www.target.com/p/x", plan, options)

    assert result.blocked
    assert not result.blocked_final
    assert result.response is rendered


@pytest.mark.asyncio
async def test_blocked_2xx_stays_blocked_after_refetch():
    options = CheckerOptions()
    plan = plan_fetch(options, "on_block", True)
    wall = FetchResponse(status=200, body="Please complete the captcha")
    fetcher = ScriptedFetcher(wall, wall)

    result = await run_fetch_pipeline(fetcher, "https://www.walmart.com/ip/555", plan, options)

    assert result.refetched
    assert result.blocked_final
    assert result.final_block.block_type == "captcha"


@pytest.mark.asyncio
async def test_failed_refetch_keeps_first_response():
    options = CheckerOptions()
    plan = plan_fetch(options, "on_block", False)
    fetcher = ScriptedFetcher(CAPTCHA, FetchError("ETIMEDOUT"))

    result = await run_fetch_pipeline(fetcher, "https://www.target.com/p/x", plan, options)

    assert result.response is CAPTCHA
    assert not result.refetched
    assert result.blocked_final
    assert fetcher.calls[0].use_session is False


@pytest.mark.asyncio
async def test_always_renders_first_and_never_refetches():
    options = CheckerOptions()
    plan = plan_fetch(options, "always", True)
    fetcher = ScriptedFetcher(CAPTCHA)

    result = await run_fetch_pipeline(fetcher, "https://www.target.com/p/x", plan, options)

    assert len(fetcher.calls) == 1
    assert fetcher.calls[0].render is True
    assert not result.refetched


@pytest.mark.asyncio
async def test_first_fetch_error_propagates():
    options = CheckerOptions()
    fetcher = ScriptedFetcher(FetchError("ECONNRESET"))
    with pytest.raises(FetchError):
        await run_fetch_pipeline(fetcher, "https://x.test/p/1", plan_fetch(options, "on_block", True), options)
