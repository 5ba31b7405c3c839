import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from localflags.flag_definition_cache import (
    FlagDefinitionCacheData,
    FlagDefinitionCacheProvider,
    call_hook,
)
from localflags.poller import Poller
from localflags.request import LOCAL_EVALUATION_PATH, APIError, get

log = logging.getLogger("localflags")

MIN_POLL_INTERVAL = 0.1
DEFAULT_POLL_INTERVAL = 30
DEFAULT_MAX_POLL_INTERVAL = 60

BACKOFF_STATUSES = (401, 403, 429)


@dataclass(frozen=True)
class RuleSet:
    """
    An immutable snapshot of everything needed for local evaluation.

    A new snapshot replaces the old one wholesale, so a reader holding a
    reference never sees a half-updated rule set.
    """

    flags: List[dict] = field(default_factory=list)
    group_type_mapping: Dict[str, str] = field(default_factory=dict)
    cohorts: Dict[str, Any] = field(default_factory=dict)
    flags_by_key: Dict[str, dict] = field(default_factory=dict)
    loaded_at: Optional[datetime] = None

    @classmethod
    def from_definitions(cls, data: Any) -> "RuleSet":
        flags = list(data.get("flags") or [])
        return cls(
            flags=flags,
            group_type_mapping=dict(data.get("group_type_mapping") or {}),
            cohorts=dict(data.get("cohorts") or {}),
            flags_by_key={flag["key"]: flag for flag in flags if flag.get("key")},
            loaded_at=datetime.now(timezone.utc),
        )

    def to_cache_data(self) -> FlagDefinitionCacheData:
        return {
            "flags": list(self.flags),
            "group_type_mapping": dict(self.group_type_mapping),
            "cohorts": dict(self.cohorts),
        }


class FlagDefinitionsLoader:
    """
    Owns the local rule set: fetches it, keeps it fresh and backs off when the
    server tells us to.

    All state lives on one event loop, so the backoff window is a plain
    timestamp checked before each on-demand fetch.
    """

    def __init__(
        self,
        personal_api_key: str,
        project_api_key: str,
        host: Optional[str] = None,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_poll_interval: float = DEFAULT_MAX_POLL_INTERVAL,
        timeout: Optional[float] = 10,
        strict_local_evaluation: bool = False,
        cache_provider: Optional[FlagDefinitionCacheProvider] = None,
        on_load: Optional[Callable[[int], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        custom_headers: Optional[dict] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.personal_api_key = personal_api_key
        self.project_api_key = project_api_key
        self.host = host
        self.poll_interval = max(MIN_POLL_INTERVAL, poll_interval)
        self.max_poll_interval = max_poll_interval
        self.timeout = timeout
        self.strict_local_evaluation = strict_local_evaluation
        self.cache_provider = cache_provider
        self.on_load = on_load
        self.on_error = on_error
        self.custom_headers = custom_headers
        self.clock = clock

        self.rule_set = RuleSet()
        self.etag: Optional[str] = None
        self.loaded_successfully_once = False
        self.backoff_count = 0
        self.next_fetch_allowed_at: Optional[float] = None

        self._loading: Optional[asyncio.Future] = None
        self.poller = Poller(
            interval=self.polling_interval,
            execute=lambda: self.load(force_reload=True),
        )

    def polling_interval(self) -> float:
        """
        Seconds until the next poll. Doubles on every 401/403/429 in a row, up to
        `max_poll_interval`.
        """
        if self.backoff_count == 0:
            return self.poll_interval
        return min(self.max_poll_interval, self.poll_interval * 2**self.backoff_count)

    def is_ready(self) -> bool:
        return self.loaded_successfully_once and len(self.rule_set.flags) > 0

    def start(self):
        """Kick off the first load and start polling. Needs a running event loop."""
        self.poller.start()
        return asyncio.ensure_future(self.load())

    async def stop(self):
        await self.poller.stop()
        # the rule set doesn't outlive the client
        self._replace_rule_set(RuleSet())
        self.etag = None
        if self.cache_provider is not None:
            try:
                await call_hook(self.cache_provider, "shutdown")
            except Exception as e:
                log.error("[FEATURE FLAGS] Error in flag definition cache shutdown: %s", e)

    async def load(self, force_reload: bool = False):
        if self.loaded_successfully_once and not force_reload:
            return

        # The poller forces reloads and has already waited out the backoff
        if (
            not force_reload
            and self.next_fetch_allowed_at is not None
            and self.clock() < self.next_fetch_allowed_at
        ):
            log.debug("[FEATURE FLAGS] Skipping fetch, in backoff period")
            return

        if self._loading is None:
            loading = asyncio.ensure_future(self._load())
            loading.add_done_callback(self._loading_done)
            self._loading = loading

        # shielded so one impatient caller can't cancel everybody's load
        await asyncio.shield(self._loading)

    def _loading_done(self, future: asyncio.Future):
        if self._loading is future:
            self._loading = None

    async def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self.load(), timeout)
        except asyncio.TimeoutError:
            log.debug("[FEATURE FLAGS] Timed out waiting for flag definitions")
        return self.is_ready()

    async def _load(self):
        try:
            should_fetch = True
            if self.cache_provider is not None:
                try:
                    should_fetch = bool(
                        await call_hook(self.cache_provider, "should_fetch_flag_definitions")
                    )
                except Exception as e:
                    # fail open: fetch ourselves
                    log.error(
                        "[FEATURE FLAGS] Error in should_fetch_flag_definitions: %s", e
                    )
                    should_fetch = True

            if not should_fetch:
                if await self._load_from_cache():
                    return
                if self.loaded_successfully_once:
                    # keep the stale flags, another worker is fetching
                    return

            await self._fetch(notify_cache=should_fetch)
        except Exception:
            log.exception(
                "[FEATURE FLAGS] Fetching feature flags failed. We will retry in %s seconds.",
                self.polling_interval(),
            )

    async def _load_from_cache(self) -> bool:
        try:
            cached = await call_hook(self.cache_provider, "get_flag_definitions")
        except Exception as e:
            log.error("[FEATURE FLAGS] Failed to load flag definitions from cache: %s", e)
            return False

        if not cached:
            return False

        self._replace_rule_set(RuleSet.from_definitions(cached))
        log.debug(
            "[FEATURE FLAGS] Loaded flags from cache (%s flags)", len(self.rule_set.flags)
        )
        self._notify_loaded()
        return True

    async def _fetch(self, notify_cache: bool):
        try:
            response = await get(
                self.personal_api_key,
                f"{LOCAL_EVALUATION_PATH}?token={self.project_api_key}&send_cohorts",
                self.host,
                timeout=self.timeout,
                etag=self.etag,
                headers=self.custom_headers,
            )
        except APIError as e:
            self._handle_api_error(e)
            return

        if response.not_modified:
            log.debug("[FEATURE FLAGS] Flags not modified (304), using cached data")
            self.etag = response.etag or self.etag
            self.loaded_successfully_once = True
            self._clear_backoff()
            return

        data = response.data
        if not isinstance(data, dict) or "flags" not in data:
            log.error("[FEATURE FLAGS] Invalid response when getting feature flags: %s", data)
            return

        # forget the old etag if the server stopped sending one
        self.etag = response.etag
        self._replace_rule_set(RuleSet.from_definitions(data))
        self._clear_backoff()

        if self.cache_provider is not None and notify_cache:
            try:
                await call_hook(
                    self.cache_provider,
                    "on_flag_definitions_received",
                    self.rule_set.to_cache_data(),
                )
            except Exception as e:
                # the flags made it to memory anyway
                log.error("[FEATURE FLAGS] Failed to store flag definitions in cache: %s", e)

        self._notify_loaded()

    def _handle_api_error(self, e: APIError):
        if e.status == 401:
            self._begin_backoff()
            self._report(
                e,
                "[FEATURE FLAGS] Error loading feature flags: your project key or personal API key is invalid. "
                "Setting next polling interval to %ss. More information: https://posthog.com/docs/api/overview",
            )
        elif e.status == 402:
            log.warning(
                "[FEATURE FLAGS] Feature flags quota limit exceeded - unsetting all local flags. "
                "Learn more about billing limits at https://posthog.com/docs/billing/limits-alerts"
            )
            self._replace_rule_set(RuleSet())
            # the cleared rule set no longer corresponds to the stored etag
            self.etag = None
        elif e.status == 403:
            self._begin_backoff()
            self._report(
                e,
                "[FEATURE FLAGS] Your personal API key does not have permission to fetch feature flag "
                "definitions for local evaluation. Setting next polling interval to %ss.",
            )
        elif e.status == 429:
            self._begin_backoff()
            self._report(
                e,
                "[FEATURE FLAGS] You are being rate limited. Setting next polling interval to %ss.",
            )
        else:
            log.error("[FEATURE FLAGS] Error loading feature flags: %s", e)

    def _report(self, e: Exception, message: str):
        log.error(message, self.polling_interval())
        if self.on_error is not None:
            try:
                self.on_error(e)
            except Exception:
                log.exception("[FEATURE FLAGS] Error in on_error callback")

    def _begin_backoff(self):
        self.backoff_count += 1
        self.next_fetch_allowed_at = self.clock() + self.polling_interval()

    def _clear_backoff(self):
        self.backoff_count = 0
        self.next_fetch_allowed_at = None

    def _replace_rule_set(self, rule_set: RuleSet):
        self.rule_set = rule_set

    def _notify_loaded(self):
        flags = self.rule_set.flags
        self.loaded_successfully_once = True

        if self.on_load is not None:
            try:
                self.on_load(len(flags))
            except Exception:
                log.exception("[FEATURE FLAGS] Error in on_feature_flags_loaded callback")

        self._warn_about_experience_continuity_flags(flags)

    def _warn_about_experience_continuity_flags(self, flags: List[dict]):
        # strict mode never falls back, so there is nothing to warn about
        if self.strict_local_evaluation:
            return

        continuity_flags = [
            flag.get("key") for flag in flags if flag.get("ensure_experience_continuity")
        ]
        if continuity_flags:
            log.warning(
                "[FEATURE FLAGS] You are using local evaluation but %s flag(s) have experience continuity "
                "enabled: %s. Experience continuity is incompatible with local evaluation and will cause "
                "a server request on every flag evaluation. Either disable experience continuity on these "
                "flags, use strict_local_evaluation=True, or pass only_evaluate_locally=True per call.",
                len(continuity_flags),
                ", ".join(continuity_flags),
            )
