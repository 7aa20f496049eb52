"""Layered runtime configuration for the URL candidate checker.

Per-retailer settings are resolved through an ordered list of providers:
the dynamic config store (Redis keys ``config:url_candidate:<setting>:<slug>``)
first, then the process environment (``URL_CANDIDATE_<SETTING>_<SLUG>``), then
a hard-coded default. A provider that errors is skipped, so an unreachable
store degrades to environment values instead of failing the poll.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Protocol, Sequence, TypeVar

import redis.asyncio as redis

from beacon.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIG_KEY_PREFIX = "config:url_candidate"

SETTING_QPM = "qpm"
SETTING_QPM_BURST = "qpm_burst"
SETTING_RENDER_BEHAVIOR = "render_behavior"
SETTING_SESSION_REUSE = "session_reuse"

# Environment variable prefix per setting; burst windows are dynamic-only
ENV_PREFIXES = {
    SETTING_QPM: "URL_CANDIDATE_QPM",
    SETTING_RENDER_BEHAVIOR: "URL_CANDIDATE_RENDER_BEHAVIOR",
    SETTING_SESSION_REUSE: "URL_CANDIDATE_SESSION_REUSE",
}

DEFAULT_QPM = 6
RENDER_BEHAVIORS = ("always", "on_block", "never")
DEFAULT_RENDER_BEHAVIOR = "on_block"
DEFAULT_SESSION_REUSE = True

_TRUE_VALUES = {"true", "1", "yes"}
_FALSE_VALUES = {"false", "0", "no"}


def config_key(setting: str, slug: str) -> str:
    """Dynamic store key for a per-retailer setting."""
    return f"{CONFIG_KEY_PREFIX}:{setting}:{slug}"


def normalize_slug_for_env(slug: str) -> str:
    """``best-buy`` -> ``BEST_BUY``."""
    return re.sub(r"[^A-Z0-9]", "_", slug.upper())


def env_key(setting: str, slug: str) -> Optional[str]:
    prefix = ENV_PREFIXES.get(setting)
    if prefix is None:
        return None
    return f"{prefix}_{normalize_slug_for_env(slug)}"


# ---------------------------------------------------------------------------
# Value parsers: return None when the raw value must be ignored
# ---------------------------------------------------------------------------

def _parse_float(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        value = float(str(raw).strip())
    except ValueError:
        return None
    return value if value == value else None  # NaN


def parse_positive_number(raw: Optional[str]) -> Optional[float]:
    """Parse a budget value; zero, negative and garbage are ignored."""
    value = _parse_float(raw)
    return value if value is not None and value > 0 else None


def parse_non_negative_number(raw: Optional[str]) -> Optional[float]:
    """Parse a delay; zero is allowed, negative and garbage are ignored."""
    value = _parse_float(raw)
    return value if value is not None and value >= 0 else None


def parse_render_behavior(raw: Optional[str]) -> Optional[str]:
    value = (raw or "").strip().lower()
    return value if value in RENDER_BEHAVIORS else None


def parse_bool(raw: Optional[str]) -> Optional[bool]:
    value = (raw or "").strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return None


# ---------------------------------------------------------------------------
# Stores and providers
# ---------------------------------------------------------------------------

class ConfigStore(Protocol):
    """Simple string key/value store holding dynamic overrides."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...


class RedisConfigStore:
    """Dynamic override store backed by Redis string keys."""

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def get(self, key: str) -> Optional[str]:
        client = await self._get_redis()
        return await client.get(key)

    async def set(self, key: str, value: str) -> None:
        client = await self._get_redis()
        await client.set(key, value)

    async def delete(self, key: str) -> None:
        client = await self._get_redis()
        await client.delete(key)


class ConfigProvider(Protocol):
    name: str

    async def lookup(self, setting: str, slug: str) -> Optional[str]: ...


class DynamicStoreProvider:
    """Reads ``config:url_candidate:<setting>:<slug>`` from a ConfigStore."""

    name = "dynamic"

    def __init__(self, store: ConfigStore):
        self.store = store

    async def lookup(self, setting: str, slug: str) -> Optional[str]:
        return await self.store.get(config_key(setting, slug))


class EnvironmentProvider:
    """Reads ``URL_CANDIDATE_<SETTING>_<SLUG>`` style variables."""

    name = "environment"

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = environ if environ is not None else os.environ

    async def lookup(self, setting: str, slug: str) -> Optional[str]:
        key = env_key(setting, slug)
        if key is None:
            return None
        return self.environ.get(key) or None

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Plain global lookup (``URL_CANDIDATE_QPM_DEFAULT`` and friends)."""
        value = self.environ.get(name)
        return value if value not in (None, "") else default


class ConfigResolver:
    """Resolve per-retailer settings across ordered providers."""

    def __init__(
        self,
        providers: Sequence[ConfigProvider],
        environment: Optional[EnvironmentProvider] = None,
    ):
        self.providers = list(providers)
        self.environment = environment or next(
            (p for p in self.providers if isinstance(p, EnvironmentProvider)),
            EnvironmentProvider(),
        )

    @classmethod
    def from_store(
        cls,
        store: Optional[ConfigStore],
        environ: Optional[Mapping[str, str]] = None,
    ) -> "ConfigResolver":
        """Standard chain: dynamic store (if any) then environment."""
        environment = EnvironmentProvider(environ)
        providers: list[ConfigProvider] = []
        if store is not None:
            providers.append(DynamicStoreProvider(store))
        providers.append(environment)
        return cls(providers, environment)

    async def resolve(
        self,
        settings_in_order: Sequence[str],
        slug: Optional[str],
        parser: Callable[[Optional[str]], Optional[T]],
    ) -> Optional[T]:
        """
        Return the first parseable value.

        Providers are consulted in order; within a provider the settings are
        tried in the given order (e.g. ``qpm`` then ``qpm_burst``).

        Args:
            settings_in_order: Setting names to try within each provider
            slug: Retailer slug, or None for "no per-retailer override"
            parser: Converts a raw string, returning None to reject it

        Returns:
            Parsed value or None when no provider supplies a usable one
        """
        if not slug:
            return None
        for provider in self.providers:
            for setting in settings_in_order:
                try:
                    raw = await provider.lookup(setting, slug)
                except Exception as e:
                    logger.debug(
                        "Config provider %s failed for %s/%s: %s",
                        provider.name, setting, slug, e,
                    )
                    break
                parsed = parser(raw)
                if parsed is not None:
                    return parsed
        return None

    async def requests_per_minute(self, slug: Optional[str]) -> int:
        """Effective per-retailer budget (override > burst > env > default > 6)."""
        value = await self.resolve([SETTING_QPM, SETTING_QPM_BURST], slug, parse_positive_number)
        if value is None:
            value = parse_positive_number(self.environment.get("URL_CANDIDATE_QPM_DEFAULT"))
        if value is None:
            value = DEFAULT_QPM
        return max(1, int(value))

    async def render_behavior(self, slug: Optional[str]) -> str:
        value = await self.resolve([SETTING_RENDER_BEHAVIOR], slug, parse_render_behavior)
        return value or DEFAULT_RENDER_BEHAVIOR

    async def session_reuse(self, slug: Optional[str]) -> bool:
        value = await self.resolve([SETTING_SESSION_REUSE], slug, parse_bool)
        return DEFAULT_SESSION_REUSE if value is None else value


@dataclass(frozen=True)
class CheckerOptions:
    """Static (environment level) knobs of the candidate checker."""

    timeout_ms: int = 8000
    delay_ms: int = 250
    render_on_block: bool = True
    force_render: bool = False
    render_min_timeout_ms: int = 12000

    @classmethod
    def from_environment(cls, environment: Optional[EnvironmentProvider] = None) -> "CheckerOptions":
        env = environment or EnvironmentProvider()

        def _int(name: str, default: int, parse=parse_positive_number) -> int:
            value = parse(env.get(name))
            return int(value) if value is not None else default

        def _flag(name: str, default: bool) -> bool:
            raw = env.get(name)
            if raw is None:
                return default
            return raw.strip().lower() != "false" if default else raw.strip().lower() == "true"

        return cls(
            timeout_ms=_int("URL_CANDIDATE_TIMEOUT_MS", cls.timeout_ms),
            delay_ms=_int("URL_CANDIDATE_DELAY_MS", cls.delay_ms, parse_non_negative_number),
            render_on_block=_flag("URL_CANDIDATE_RENDER_ON_BLOCK", cls.render_on_block),
            force_render=_flag("URL_CANDIDATE_FORCE_RENDER", cls.force_render),
            render_min_timeout_ms=_int(
                "URL_CANDIDATE_RENDER_MIN_TIMEOUT_MS", cls.render_min_timeout_ms
            ),
        )
