import asyncio
import unittest

import mock

from localflags import flag_definitions
from localflags.flag_definitions import FlagDefinitionsLoader, RuleSet
from localflags.poller import Poller
from localflags.request import APIError, GetResponse
from localflags.test.test_utils import FAKE_TEST_API_KEY, TEST_PERSONAL_API_KEY

SIMPLE_FLAG = {
    "id": 1,
    "key": "beta-feature",
    "active": True,
    "filters": {"groups": [{"properties": [], "rollout_percentage": 100}]},
}

CONTINUITY_FLAG = {
    "id": 2,
    "key": "sticky-feature",
    "active": True,
    "ensure_experience_continuity": True,
    "filters": {"groups": [{"properties": [], "rollout_percentage": 100}]},
}

DEFINITIONS = {
    "flags": [SIMPLE_FLAG],
    "group_type_mapping": {"0": "company"},
    "cohorts": {"5": {"type": "AND", "values": []}},
}


def ok(data=None, etag=None):
    return GetResponse(data=DEFINITIONS if data is None else data, etag=etag)


def not_modified(etag=None):
    return GetResponse(data=None, etag=etag, not_modified=True, status=304)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class SyncCache:
    def __init__(self, should_fetch=True, cached=None):
        self.should_fetch = should_fetch
        self.cached = cached
        self.received = []
        self.shutdown_called = False

    def get_flag_definitions(self):
        return self.cached

    def should_fetch_flag_definitions(self):
        return self.should_fetch

    def on_flag_definitions_received(self, data):
        self.received.append(data)

    def shutdown(self):
        self.shutdown_called = True


class AsyncCache(SyncCache):
    async def get_flag_definitions(self):
        return self.cached

    async def should_fetch_flag_definitions(self):
        return self.should_fetch

    async def on_flag_definitions_received(self, data):
        self.received.append(data)

    async def shutdown(self):
        self.shutdown_called = True


class TestRuleSet(unittest.TestCase):
    def test_from_definitions(self):
        rule_set = RuleSet.from_definitions(DEFINITIONS)

        self.assertEqual(rule_set.flags, [SIMPLE_FLAG])
        self.assertEqual(rule_set.flags_by_key, {"beta-feature": SIMPLE_FLAG})
        self.assertEqual(rule_set.group_type_mapping, {"0": "company"})
        self.assertEqual(rule_set.cohorts, DEFINITIONS["cohorts"])
        self.assertIsNotNone(rule_set.loaded_at)

    def test_from_definitions_with_nulls(self):
        rule_set = RuleSet.from_definitions(
            {"flags": None, "group_type_mapping": None, "cohorts": None}
        )
        self.assertEqual(rule_set.flags, [])
        self.assertEqual(rule_set.group_type_mapping, {})
        self.assertEqual(rule_set.cohorts, {})

    def test_to_cache_data(self):
        self.assertEqual(RuleSet.from_definitions(DEFINITIONS).to_cache_data(), DEFINITIONS)


class TestFlagDefinitionsLoader(unittest.IsolatedAsyncioTestCase):
    def make_loader(self, **kwargs):
        self.clock = FakeClock()
        kwargs.setdefault("poll_interval", 1)
        kwargs.setdefault("max_poll_interval", 60)
        return FlagDefinitionsLoader(
            TEST_PERSONAL_API_KEY, FAKE_TEST_API_KEY, clock=self.clock, **kwargs
        )

    @mock.patch("localflags.flag_definitions.get")
    async def test_load_replaces_rule_set(self, patch_get):
        patch_get.return_value = ok(etag='"abc123"')
        loader = self.make_loader()

        await loader.load()

        self.assertEqual(loader.rule_set.flags, [SIMPLE_FLAG])
        self.assertEqual(loader.rule_set.group_type_mapping, {"0": "company"})
        self.assertEqual(loader.etag, '"abc123"')
        self.assertTrue(loader.loaded_successfully_once)
        self.assertTrue(loader.is_ready())

        patch_get.assert_called_once_with(
            TEST_PERSONAL_API_KEY,
            f"/api/feature_flag/local_evaluation/?token={FAKE_TEST_API_KEY}&send_cohorts",
            None,
            timeout=10,
            etag=None,
            headers=None,
        )

    @mock.patch("localflags.flag_definitions.get")
    async def test_load_is_a_noop_once_loaded(self, patch_get):
        patch_get.return_value = ok()
        loader = self.make_loader()

        await loader.load()
        await loader.load()

        self.assertEqual(patch_get.call_count, 1)

    @mock.patch("localflags.flag_definitions.get")
    async def test_sends_etag_and_keeps_rule_set_on_304(self, patch_get):
        patch_get.side_effect = [ok(etag='"abc123"'), not_modified()]
        loader = self.make_loader()

        await loader.load()
        rule_set = loader.rule_set
        await loader.load(force_reload=True)

        self.assertEqual(patch_get.call_args_list[1].kwargs["etag"], '"abc123"')
        self.assertIs(loader.rule_set, rule_set)
        self.assertEqual(loader.etag, '"abc123"')

    @mock.patch("localflags.flag_definitions.get")
    async def test_304_with_new_etag_updates_etag(self, patch_get):
        patch_get.side_effect = [ok(etag='"abc123"'), not_modified(etag='"def456"')]
        loader = self.make_loader()

        await loader.load()
        await loader.load(force_reload=True)

        self.assertEqual(loader.etag, '"def456"')
        self.assertEqual(loader.rule_set.flags, [SIMPLE_FLAG])

    @mock.patch("localflags.flag_definitions.get")
    async def test_200_without_etag_clears_etag(self, patch_get):
        patch_get.side_effect = [ok(etag='"abc123"'), ok(etag=None)]
        loader = self.make_loader()

        await loader.load()
        await loader.load(force_reload=True)

        self.assertIsNone(loader.etag)

    @mock.patch("localflags.flag_definitions.get")
    async def test_invalid_response_is_ignored(self, patch_get):
        patch_get.return_value = ok(data={"unexpected": True})
        loader = self.make_loader()

        with mock.patch.object(flag_definitions.log, "error") as patch_error:
            await loader.load()

        self.assertFalse(loader.loaded_successfully_once)
        self.assertEqual(loader.rule_set.flags, [])
        patch_error.assert_called_once()

    @mock.patch("localflags.flag_definitions.get")
    async def test_network_errors_are_logged(self, patch_get):
        patch_get.side_effect = ConnectionError("boom")
        loader = self.make_loader()

        with mock.patch.object(flag_definitions.log, "exception") as patch_exception:
            await loader.load()

        patch_exception.assert_called_once()
        self.assertFalse(loader.loaded_successfully_once)

    @mock.patch("localflags.flag_definitions.get")
    async def test_quota_limit_clears_rule_set(self, patch_get):
        patch_get.side_effect = [ok(etag='"abc123"'), APIError(402, "quota")]
        loader = self.make_loader()

        await loader.load()
        with mock.patch.object(flag_definitions.log, "warning") as patch_warning:
            await loader.load(force_reload=True)

        self.assertEqual(loader.rule_set.flags, [])
        self.assertEqual(loader.rule_set.cohorts, {})
        self.assertIsNone(loader.etag)
        self.assertFalse(loader.is_ready())
        self.assertEqual(loader.backoff_count, 0)
        patch_warning.assert_called_once()

    @mock.patch("localflags.flag_definitions.get")
    async def test_backoff_doubles_and_caps(self, patch_get):
        patch_get.side_effect = [
            APIError(401, "unauthorized"),
            APIError(403, "forbidden"),
            APIError(429, "slow down"),
            APIError(429, "slow down"),
            APIError(429, "slow down"),
        ]
        on_error = mock.Mock()
        loader = self.make_loader(max_poll_interval=10, on_error=on_error)
        self.assertEqual(loader.polling_interval(), 1)

        intervals = []
        for _ in range(5):
            await loader.load(force_reload=True)
            intervals.append(loader.polling_interval())

        self.assertEqual(intervals, [2, 4, 8, 10, 10])
        self.assertEqual(loader.backoff_count, 5)
        self.assertEqual(on_error.call_count, 5)
        self.assertIsInstance(on_error.call_args.args[0], APIError)

    @mock.patch("localflags.flag_definitions.get")
    async def test_consecutive_401s_widen_the_retry_gap(self, patch_get):
        patch_get.side_effect = [APIError(401, "unauthorized")] * 3
        loader = self.make_loader()

        gaps = []
        for attempt in range(3):
            self.clock.now = attempt * 30
            await loader.load()
            gaps.append(loader.next_fetch_allowed_at - self.clock.now)

        self.assertEqual(gaps, [2, 4, 8])
        self.assertEqual(patch_get.call_count, 3)

    @mock.patch("localflags.flag_definitions.get")
    async def test_success_resets_backoff(self, patch_get):
        patch_get.side_effect = [APIError(429, "slow down"), ok()]
        loader = self.make_loader()

        await loader.load(force_reload=True)
        self.assertEqual(loader.polling_interval(), 2)

        await loader.load(force_reload=True)
        self.assertEqual(loader.backoff_count, 0)
        self.assertIsNone(loader.next_fetch_allowed_at)
        self.assertEqual(loader.polling_interval(), 1)

    @mock.patch("localflags.flag_definitions.get")
    async def test_304_resets_backoff(self, patch_get):
        patch_get.side_effect = [ok(etag='"abc"'), APIError(429, "slow down"), not_modified()]
        loader = self.make_loader()

        await loader.load()
        await loader.load(force_reload=True)
        self.assertEqual(loader.backoff_count, 1)

        await loader.load(force_reload=True)
        self.assertEqual(loader.backoff_count, 0)

    @mock.patch("localflags.flag_definitions.get")
    async def test_on_demand_loads_are_skipped_during_backoff(self, patch_get):
        patch_get.side_effect = [APIError(401, "unauthorized"), ok()]
        loader = self.make_loader()

        await loader.load()
        self.assertEqual(loader.next_fetch_allowed_at, 2)

        self.clock.now = 1
        await loader.load()
        self.assertEqual(patch_get.call_count, 1)

        self.clock.now = 2.5
        await loader.load()
        self.assertEqual(patch_get.call_count, 2)
        self.assertTrue(loader.is_ready())

    @mock.patch("localflags.flag_definitions.get")
    async def test_forced_reload_bypasses_backoff(self, patch_get):
        patch_get.side_effect = [APIError(401, "unauthorized"), ok()]
        loader = self.make_loader()

        await loader.load()
        self.clock.now = 0.5
        await loader.load(force_reload=True)

        self.assertEqual(patch_get.call_count, 2)
        self.assertTrue(loader.is_ready())

    @mock.patch("localflags.flag_definitions.get")
    async def test_other_errors_do_not_back_off(self, patch_get):
        patch_get.side_effect = APIError(500, "internal")
        loader = self.make_loader()

        await loader.load()

        self.assertEqual(loader.backoff_count, 0)
        self.assertIsNone(loader.next_fetch_allowed_at)

    @mock.patch("localflags.flag_definitions.get")
    async def test_on_load_receives_flag_count(self, patch_get):
        patch_get.side_effect = [ok(), APIError(500, "internal"), ok({"flags": [SIMPLE_FLAG, CONTINUITY_FLAG]})]
        on_load = mock.Mock()
        loader = self.make_loader(on_load=on_load)

        await loader.load()
        await loader.load(force_reload=True)
        await loader.load(force_reload=True)

        self.assertEqual(on_load.call_args_list, [mock.call(1), mock.call(2)])

    @mock.patch("localflags.flag_definitions.get")
    async def test_on_load_errors_are_swallowed(self, patch_get):
        patch_get.return_value = ok()
        loader = self.make_loader(on_load=mock.Mock(side_effect=ValueError("oops")))

        await loader.load()

        self.assertTrue(loader.is_ready())

    @mock.patch("localflags.flag_definitions.get")
    async def test_warns_about_experience_continuity_flags(self, patch_get):
        patch_get.return_value = ok({"flags": [SIMPLE_FLAG, CONTINUITY_FLAG]})
        loader = self.make_loader()

        with mock.patch.object(flag_definitions.log, "warning") as patch_warning:
            await loader.load()

        patch_warning.assert_called_once()
        self.assertIn("sticky-feature", patch_warning.call_args.args)

    @mock.patch("localflags.flag_definitions.get")
    async def test_no_continuity_warning_in_strict_mode(self, patch_get):
        patch_get.return_value = ok({"flags": [SIMPLE_FLAG, CONTINUITY_FLAG]})
        loader = self.make_loader(strict_local_evaluation=True)

        with mock.patch.object(flag_definitions.log, "warning") as patch_warning:
            await loader.load()

        patch_warning.assert_not_called()

    @mock.patch("localflags.flag_definitions.get")
    async def test_empty_rule_set_is_not_ready(self, patch_get):
        patch_get.return_value = ok({"flags": []})
        loader = self.make_loader()

        await loader.load()

        self.assertTrue(loader.loaded_successfully_once)
        self.assertFalse(loader.is_ready())

    @mock.patch("localflags.flag_definitions.get")
    async def test_concurrent_loads_share_one_request(self, patch_get):
        release = asyncio.Event()

        async def slow_get(*args, **kwargs):
            await release.wait()
            return ok()

        patch_get.side_effect = slow_get
        loader = self.make_loader()

        first = asyncio.ensure_future(loader.load())
        second = asyncio.ensure_future(loader.load())
        await asyncio.sleep(0)
        release.set()
        await asyncio.gather(first, second)

        self.assertEqual(patch_get.call_count, 1)
        self.assertTrue(loader.is_ready())

    @mock.patch("localflags.flag_definitions.get")
    async def test_wait_until_ready_times_out(self, patch_get):
        release = asyncio.Event()

        async def slow_get(*args, **kwargs):
            await release.wait()
            return ok()

        patch_get.side_effect = slow_get
        loader = self.make_loader()

        self.assertFalse(await loader.wait_until_ready(timeout=0.01))

        # the load itself was not cancelled by the impatient caller
        release.set()
        self.assertTrue(await loader.wait_until_ready(timeout=1))
        self.assertEqual(patch_get.call_count, 1)

    def test_poll_interval_has_a_floor(self):
        loader = self.make_loader(poll_interval=0)
        self.assertEqual(loader.polling_interval(), flag_definitions.MIN_POLL_INTERVAL)

    @mock.patch("localflags.flag_definitions.get")
    async def test_start_and_stop(self, patch_get):
        patch_get.return_value = ok(etag='"abc"')
        loader = self.make_loader()

        await loader.start()
        self.assertTrue(loader.poller.is_alive())
        self.assertTrue(loader.is_ready())

        await loader.stop()
        self.assertFalse(loader.poller.is_alive())
        self.assertEqual(loader.rule_set, RuleSet())
        self.assertIsNone(loader.etag)
        self.assertFalse(loader.is_ready())


class TestFlagDefinitionCacheProvider(unittest.IsolatedAsyncioTestCase):
    def make_loader(self, cache):
        return FlagDefinitionsLoader(
            TEST_PERSONAL_API_KEY, FAKE_TEST_API_KEY, cache_provider=cache
        )

    @mock.patch("localflags.flag_definitions.get")
    async def test_fetches_and_stores_definitions(self, patch_get):
        patch_get.return_value = ok()
        for cache in (SyncCache(), AsyncCache()):
            loader = self.make_loader(cache)

            await loader.load()

            self.assertEqual(cache.received, [DEFINITIONS])
            self.assertTrue(loader.is_ready())

    @mock.patch("localflags.flag_definitions.get")
    async def test_loads_from_cache_when_told_not_to_fetch(self, patch_get):
        for cache in (
            SyncCache(should_fetch=False, cached=DEFINITIONS),
            AsyncCache(should_fetch=False, cached=DEFINITIONS),
        ):
            loader = self.make_loader(cache)

            await loader.load()

            self.assertEqual(loader.rule_set.flags, [SIMPLE_FLAG])
            self.assertEqual(cache.received, [])

        patch_get.assert_not_called()

    @mock.patch("localflags.flag_definitions.get")
    async def test_empty_cache_falls_back_to_fetch_on_first_load(self, patch_get):
        patch_get.return_value = ok()
        cache = SyncCache(should_fetch=False, cached=None)
        loader = self.make_loader(cache)

        await loader.load()

        patch_get.assert_called_once()
        self.assertTrue(loader.is_ready())
        # another worker owns the cache, so we don't write to it
        self.assertEqual(cache.received, [])

    @mock.patch("localflags.flag_definitions.get")
    async def test_empty_cache_keeps_stale_flags(self, patch_get):
        patch_get.return_value = ok()
        cache = SyncCache()
        loader = self.make_loader(cache)
        await loader.load()

        cache.should_fetch = False
        await loader.load(force_reload=True)

        self.assertEqual(patch_get.call_count, 1)
        self.assertEqual(loader.rule_set.flags, [SIMPLE_FLAG])

    @mock.patch("localflags.flag_definitions.get")
    async def test_hook_errors_fail_open(self, patch_get):
        patch_get.return_value = ok()
        cache = mock.Mock()
        cache.should_fetch_flag_definitions.side_effect = RuntimeError("redis down")
        cache.on_flag_definitions_received.side_effect = RuntimeError("redis down")
        loader = self.make_loader(cache)

        await loader.load()

        patch_get.assert_called_once()
        self.assertTrue(loader.is_ready())

    @mock.patch("localflags.flag_definitions.get")
    async def test_get_flag_definitions_error_falls_back_to_fetch(self, patch_get):
        patch_get.return_value = ok()
        cache = mock.Mock()
        cache.should_fetch_flag_definitions.return_value = False
        cache.get_flag_definitions.side_effect = RuntimeError("redis down")
        loader = self.make_loader(cache)

        await loader.load()

        patch_get.assert_called_once()
        self.assertTrue(loader.is_ready())

    async def test_stop_calls_shutdown(self):
        for cache in (SyncCache(), AsyncCache()):
            loader = self.make_loader(cache)
            await loader.stop()
            self.assertTrue(cache.shutdown_called)

    async def test_shutdown_errors_are_logged(self):
        cache = mock.Mock()
        cache.shutdown.side_effect = RuntimeError("redis down")
        loader = self.make_loader(cache)

        with mock.patch.object(flag_definitions.log, "error") as patch_error:
            await loader.stop()

        patch_error.assert_called_once()


class TestPoller(unittest.IsolatedAsyncioTestCase):
    async def test_runs_until_stopped(self):
        calls = []
        done = asyncio.Event()

        async def execute():
            calls.append(1)
            if len(calls) == 3:
                done.set()

        poller = Poller(interval=lambda: 0, execute=execute)
        poller.start()
        await asyncio.wait_for(done.wait(), 1)
        await poller.stop()

        self.assertFalse(poller.is_alive())
        self.assertGreaterEqual(len(calls), 3)

    async def test_keeps_running_after_errors(self):
        calls = []
        done = asyncio.Event()

        async def execute():
            calls.append(1)
            if len(calls) == 2:
                done.set()
            raise RuntimeError("boom")

        poller = Poller(interval=lambda: 0, execute=execute)
        poller.start()
        await asyncio.wait_for(done.wait(), 1)
        await poller.stop()

        self.assertGreaterEqual(len(calls), 2)

    async def test_reads_interval_every_cycle(self):
        interval = mock.Mock(return_value=0)
        done = asyncio.Event()

        async def execute():
            if interval.call_count >= 2:
                done.set()

        poller = Poller(interval=interval, execute=execute)
        poller.start()
        await asyncio.wait_for(done.wait(), 1)
        await poller.stop()

        self.assertGreaterEqual(interval.call_count, 2)

    async def test_stop_without_start(self):
        poller = Poller(interval=lambda: 0, execute=mock.AsyncMock())
        await poller.stop()
        self.assertFalse(poller.is_alive())
