import unittest

import mock

import localflags
from localflags.test.test_utils import FAKE_TEST_API_KEY


class TestModule(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        localflags.default_client = None
        localflags.api_key = FAKE_TEST_API_KEY
        localflags.send = False

    async def asyncTearDown(self):
        if localflags.default_client is not None:
            await localflags.shutdown()
        localflags.default_client = None
        localflags.api_key = None
        localflags.send = True
        localflags.disabled = False

    def test_no_api_key(self):
        localflags.api_key = None
        with self.assertRaises(ValueError):
            localflags.setup()

    async def test_default_client_is_created_once(self):
        localflags.setup()
        client = localflags.default_client
        localflags.setup()

        self.assertIs(localflags.default_client, client)
        self.assertEqual(client.api_key, FAKE_TEST_API_KEY)
        self.assertIsNone(client.flag_definitions)

    async def test_settings_are_applied_on_every_call(self):
        localflags.setup()
        localflags.disabled = True

        self.assertIsNone(await localflags.get_feature_flag("beta-feature", "distinct_id"))
        self.assertTrue(localflags.default_client.disabled)

    async def test_overrides(self):
        localflags.override_feature_flags({"beta-feature": "variant-a"})

        self.assertEqual(await localflags.get_feature_flag("beta-feature", "distinct_id"), "variant-a")
        self.assertTrue(await localflags.feature_enabled("beta-feature", "distinct_id"))
        self.assertEqual(
            await localflags.get_all_flags("distinct_id", only_evaluate_locally=True),
            {"beta-feature": "variant-a"},
        )

    @mock.patch("localflags.client.flags")
    async def test_remote_evaluation(self, patch_flags):
        patch_flags.return_value = {
            "featureFlags": {"beta-feature": True},
            "featureFlagPayloads": {"beta-feature": "[1]"},
        }

        result = await localflags.get_feature_flag_result("beta-feature", "distinct_id")

        self.assertTrue(result.get_value())
        self.assertEqual(
            await localflags.get_feature_flag_payload("beta-feature", "distinct_id"), [1]
        )
        self.assertEqual(
            await localflags.get_all_flags_and_payloads("distinct_id"),
            {"featureFlags": {"beta-feature": True}, "featureFlagPayloads": {"beta-feature": [1]}},
        )

    async def test_local_evaluation_needs_personal_api_key(self):
        await localflags.load_feature_flags()

        self.assertFalse(localflags.is_local_evaluation_ready())
        self.assertFalse(await localflags.wait_for_local_evaluation_ready(timeout=0.1))
        self.assertEqual(localflags.feature_flag_definitions(), [])
