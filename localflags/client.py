import asyncio
import dataclasses
import inspect
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union
from uuid import uuid4

import aiohttp
import backoff
from dateutil.tz import tzutc

from localflags.feature_flags import (
    EvaluationContext,
    InconclusiveMatchError,
    compute_payload,
    evaluate_flag,
)
from localflags.flag_definition_cache import FlagDefinitionCacheProvider
from localflags.flag_definitions import FlagDefinitionsLoader, RuleSet
from localflags.request import (
    APIError,
    QuotaLimitError,
    batch_post,
    determine_server_host,
    flags,
)
from localflags.types import (
    FeatureFlag,
    FeatureFlagResult,
    FlagEvaluation,
    FlagMetadata,
    FlagsAndPayloads,
    FlagsResponse,
    FlagValue,
    normalize_flags_response,
    to_payloads,
    to_values,
)
from localflags.utils import (
    SizeLimitedDict,
    clean,
    guess_timezone,
    system_context,
)
from localflags.version import VERSION

MAX_DICT_SIZE = 50_000


class FeatureFlagError:
    """
    Values of the `$feature_flag_error` event property.

    Several of them can apply to one call, in which case they are comma-joined.
    """

    ERRORS_WHILE_COMPUTING = "errors_while_computing_flags"
    FLAG_MISSING = "flag_missing"
    QUOTA_LIMITED = "quota_limited"
    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection_error"
    UNKNOWN_ERROR = "unknown_error"

    @staticmethod
    def api_error(status: Union[int, str]) -> str:
        return f"api_error_{status}"


def fatal_exception(exc):
    if isinstance(exc, APIError):
        # retry on server errors and client errors
        # with 429 status code (rate limited),
        # don't retry on other client errors
        if not isinstance(exc.status, int):
            return False
        return (400 <= exc.status < 500) and exc.status != 429
    else:
        # retry on all other errors (eg. network)
        return False


def stringify_id(val):
    if val is None:
        return None
    if isinstance(val, str):
        return val
    return str(val)


class Client(object):
    """
    Evaluates feature flags locally from polled flag definitions and falls back
    to remote evaluation when a flag can't be decided locally.

    Examples:
        ```python
        from localflags import Client

        client = Client(
            "<project_api_key>",
            personal_api_key="<personal_api_key>",
        )
        if await client.feature_enabled("beta-feature", "distinct_id"):
            ...
        await client.shutdown()
        ```
    """

    log = logging.getLogger("localflags")

    def __init__(
        self,
        project_api_key: str,
        host=None,
        debug=False,
        send=True,
        emit=None,
        on_error=None,
        gzip=False,
        max_retries=3,
        timeout=15,
        poll_interval=30,
        max_poll_interval=60,
        personal_api_key=None,
        disabled=False,
        disable_geoip=True,
        feature_flags_request_timeout_seconds=3,
        strict_local_evaluation=False,
        enable_local_evaluation=True,
        flag_definition_cache_provider: Optional[FlagDefinitionCacheProvider] = None,
        on_feature_flags_loaded: Optional[Callable[[int], None]] = None,
        max_reported_cache_size=MAX_DICT_SIZE,
        custom_headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize a new client instance.

        Args:
            project_api_key: The project API key (token), public.
            host: The host to use for the client.
            personal_api_key: Enables local evaluation by polling flag definitions.
            strict_local_evaluation: Never fall back to remote evaluation.
            emit: Called with every `$feature_flag_called` event instead of
                sending it to the batch endpoint.

        Examples:
            ```python
            from localflags import Client

            client = Client('<project_api_key>', host='<app_host>')
            ```
        """
        # api_key: This should be the Team API Key (token), public
        self.api_key = project_api_key

        self.on_error = on_error
        self.debug = debug
        self.send = send
        self.emit = emit
        self.host = determine_server_host(host)
        self.gzip = gzip
        self.max_retries = max_retries
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.feature_flags_request_timeout_seconds = (
            feature_flags_request_timeout_seconds
        )
        self.disabled = disabled
        self.disable_geoip = disable_geoip
        self.strict_local_evaluation = strict_local_evaluation
        self.enable_local_evaluation = enable_local_evaluation
        self.custom_headers = custom_headers or {}
        self.distinct_ids_feature_flags_reported = SizeLimitedDict(
            max_reported_cache_size, set
        )

        self._flag_overrides: Dict[str, FlagValue] = {}
        self._payload_overrides: Dict[str, Any] = {}
        self._pending_sends: Set[asyncio.Task] = set()
        self._shutdown = False

        # personal_api_key: This should be a generated Personal API Key, private
        self.personal_api_key = personal_api_key

        self.flag_definitions: Optional[FlagDefinitionsLoader] = None
        if personal_api_key and enable_local_evaluation:
            self.flag_definitions = FlagDefinitionsLoader(
                personal_api_key,
                project_api_key,
                self.host,
                poll_interval=poll_interval,
                max_poll_interval=max_poll_interval,
                timeout=feature_flags_request_timeout_seconds,
                strict_local_evaluation=strict_local_evaluation,
                cache_provider=flag_definition_cache_provider,
                on_load=on_feature_flags_loaded,
                on_error=on_error,
                custom_headers=self.custom_headers,
            )
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                # no loop yet, the first flag call starts loading
                self.log.debug("[FEATURE FLAGS] Deferring flag definition load")
            else:
                self.flag_definitions.start()

    @property
    def debug(self):
        return self._debug

    @debug.setter
    def debug(self, value):
        self._debug = value
        if value:
            # Ensures that debug level messages are logged when debug mode is on.
            # Otherwise, defaults to WARNING level.
            logging.basicConfig()
            self.log.setLevel(logging.DEBUG)
        else:
            self.log.setLevel(logging.WARNING)

    def _rule_set(self) -> RuleSet:
        if self.flag_definitions is None:
            return RuleSet()
        return self.flag_definitions.rule_set

    def _replace_rule_set(self, **changes):
        if self.flag_definitions is None:
            raise ValueError(
                "Local evaluation requires a personal_api_key and enable_local_evaluation=True"
            )
        rule_set = self.flag_definitions.rule_set
        if "flags" in changes:
            flags = list(changes["flags"] or [])
            changes["flags"] = flags
            changes["flags_by_key"] = {
                flag["key"]: flag for flag in flags if flag.get("key") is not None
            }
        self.flag_definitions.rule_set = dataclasses.replace(rule_set, **changes)
        self.flag_definitions.loaded_successfully_once = True

    @property
    def feature_flags(self) -> List[dict]:
        """
        Get the local evaluation feature flags.
        """
        return self._rule_set().flags

    @feature_flags.setter
    def feature_flags(self, flags):
        """
        Set the local evaluation feature flags.
        """
        self._replace_rule_set(flags=flags)

    @property
    def feature_flags_by_key(self) -> Dict[str, dict]:
        return self._rule_set().flags_by_key

    @property
    def group_type_mapping(self) -> Dict[str, str]:
        return self._rule_set().group_type_mapping

    @group_type_mapping.setter
    def group_type_mapping(self, mapping):
        self._replace_rule_set(group_type_mapping=dict(mapping or {}))

    @property
    def cohorts(self) -> Dict[str, Any]:
        return self._rule_set().cohorts

    @cohorts.setter
    def cohorts(self, cohorts):
        self._replace_rule_set(cohorts=dict(cohorts or {}))

    def feature_flag_definitions(self):
        return self.feature_flags

    def override_feature_flags(self, overrides):
        """
        Override flag values locally, for tests and local development.

        Overrides win over both local and remote evaluation.

        Examples:
            ```python
            client.override_feature_flags(False)  # clear all overrides
            client.override_feature_flags(["flag-a", "flag-b"])  # enable flags
            client.override_feature_flags({"my-flag": "variant-a", "other-flag": True})
            client.override_feature_flags({
                "flags": {"my-flag": "variant-a"},
                "payloads": {"my-flag": {"discount": 20}},
            })
            ```
        """
        if overrides is False:
            self._flag_overrides = {}
            self._payload_overrides = {}
            return

        if isinstance(overrides, (list, tuple)):
            self._flag_overrides = {key: True for key in overrides}
            return

        if not isinstance(overrides, dict):
            raise TypeError(
                "overrides must be False, a list of flag keys or a dict of flag values"
            )

        if self._is_flags_and_payloads_override(overrides):
            if "flags" in overrides:
                flag_overrides = overrides["flags"]
                if flag_overrides is False:
                    self._flag_overrides = {}
                elif isinstance(flag_overrides, (list, tuple)):
                    self._flag_overrides = {key: True for key in flag_overrides}
                else:
                    self._flag_overrides = dict(flag_overrides)
            if "payloads" in overrides:
                payload_overrides = overrides["payloads"]
                self._payload_overrides = (
                    {} if payload_overrides is False else dict(payload_overrides)
                )
            return

        self._flag_overrides = dict(overrides)

    @staticmethod
    def _is_flags_and_payloads_override(overrides: dict) -> bool:
        # {"flags": True} overrides a flag called "flags", it isn't the options form
        if not overrides or not set(overrides) <= {"flags", "payloads"}:
            return False
        return all(
            value is False or isinstance(value, (dict, list, tuple))
            for value in overrides.values()
        )

    def is_local_evaluation_ready(self) -> bool:
        """True once flag definitions loaded successfully and contain at least one flag."""
        if self.flag_definitions is None:
            return False
        return self.flag_definitions.is_ready()

    async def wait_for_local_evaluation_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the first load of flag definitions.

        Returns:
            Whether local evaluation is ready, False when disabled or when the load
            yielded no flags.
        """
        if self.disabled or self.flag_definitions is None:
            return False
        self._ensure_polling()
        return await self.flag_definitions.wait_until_ready(timeout)

    async def load_feature_flags(self):
        """
        Load feature flags for local evaluation and start polling for changes.
        """
        if not self.personal_api_key:
            self.log.warning(
                "[FEATURE FLAGS] You have to specify a personal_api_key to use feature flags."
            )
            return
        if self.flag_definitions is None:
            self.log.warning("[FEATURE FLAGS] Local evaluation is disabled.")
            return

        self._ensure_polling()
        await self.flag_definitions.load(force_reload=True)

    async def reload_feature_flags(self):
        """Force an immediate reload of the flag definitions, even during backoff."""
        await self.load_feature_flags()

    def _ensure_polling(self):
        if self.flag_definitions is None or self._shutdown:
            return
        if not self.flag_definitions.poller.is_alive():
            self.flag_definitions.poller.start()

    async def _ensure_flags_loaded(self):
        if self.flag_definitions is None:
            return
        self._ensure_polling()
        await self.flag_definitions.load()

    def _evaluation_context(
        self,
        rule_set: RuleSet,
        distinct_id: str,
        groups: Dict[str, Any],
        person_properties: Dict[str, Any],
        group_properties: Dict[str, Dict[str, Any]],
    ) -> EvaluationContext:
        return EvaluationContext(
            distinct_id=distinct_id,
            groups=groups,
            person_properties=person_properties,
            group_properties=group_properties,
            group_type_mapping=rule_set.group_type_mapping,
            cohorts=rule_set.cohorts,
            flags_by_key=rule_set.flags_by_key,
        )

    def _locally_evaluate_flag(
        self,
        rule_set: RuleSet,
        key: str,
        distinct_id: str,
        groups: Dict[str, Any],
        person_properties: Dict[str, Any],
        group_properties: Dict[str, Dict[str, Any]],
    ) -> Tuple[Optional[FlagEvaluation], Optional[datetime]]:
        flag = rule_set.flags_by_key.get(key)
        if not flag:
            return None, None

        context = self._evaluation_context(
            rule_set, distinct_id, groups, person_properties, group_properties
        )
        try:
            evaluation = evaluate_flag(flag, context)
            self.log.debug(
                "Successfully computed flag locally: %s -> %s", key, evaluation.value
            )
            return evaluation, context.evaluated_at.get(key)
        except InconclusiveMatchError as e:
            self.log.debug("Failed to compute flag %s locally: %s", key, e)
        except Exception as e:
            self.log.exception(
                "[FEATURE FLAGS] Error while computing variant locally: %s", e
            )
        return None, None

    async def get_flags_decision(
        self,
        distinct_id,
        groups: Optional[dict] = None,
        person_properties=None,
        group_properties=None,
        disable_geoip=None,
        flag_keys_to_evaluate: Optional[List[str]] = None,
    ) -> FlagsResponse:
        """
        Ask the remote evaluation endpoint for flags.

        Examples:
            ```python
            decision = await client.get_flags_decision('user123')
            ```
        """
        if disable_geoip is None:
            disable_geoip = self.disable_geoip

        request_data: Dict[str, Any] = {
            "distinct_id": stringify_id(distinct_id),
            "groups": groups or {},
            "person_properties": person_properties or {},
            "group_properties": group_properties or {},
            "geoip_disable": disable_geoip,
        }
        if flag_keys_to_evaluate:
            request_data["flag_keys_to_evaluate"] = list(flag_keys_to_evaluate)

        resp_data = await flags(
            self.api_key,
            self.host,
            gzip=self.gzip,
            timeout=self.feature_flags_request_timeout_seconds,
            headers=self.custom_headers,
            token=self.api_key,
            **request_data,
        )

        return normalize_flags_response(resp_data)

    async def _get_feature_flag_result(
        self,
        key: str,
        distinct_id,
        *,
        override_match_value: Optional[FlagValue] = None,
        groups: Optional[Dict[str, Any]] = None,
        person_properties=None,
        group_properties=None,
        only_evaluate_locally=False,
        send_feature_flag_events=True,
        disable_geoip=None,
    ) -> Optional[FeatureFlagResult]:
        if self.disabled:
            return None

        distinct_id = stringify_id(distinct_id)
        groups = groups or {}

        if key in self._flag_overrides:
            return self._overridden_result(key, override_match_value)

        await self._ensure_flags_loaded()
        rule_set = self._rule_set()

        person_properties, group_properties = (
            self._add_local_person_and_group_properties(
                distinct_id, groups, person_properties, group_properties
            )
        )

        flag_result = None
        flag_details = None
        request_id = None
        evaluated_at: Any = None
        errors: List[str] = []
        remote_attempted = False

        evaluation, evaluated_at = self._locally_evaluate_flag(
            rule_set, key, distinct_id, groups, person_properties, group_properties
        )
        flag_was_locally_evaluated = evaluation is not None

        if evaluation is not None:
            lookup_match_value = (
                override_match_value
                if override_match_value is not None
                else evaluation.value
            )
            flag_result = FeatureFlagResult.from_value_and_payload(
                key,
                lookup_match_value,
                compute_payload(rule_set.flags_by_key[key], lookup_match_value),
            )
        elif not (only_evaluate_locally or self.strict_local_evaluation):
            remote_attempted = True
            try:
                response = await self.get_flags_decision(
                    distinct_id,
                    groups,
                    person_properties,
                    group_properties,
                    disable_geoip,
                    flag_keys_to_evaluate=[key],
                )
                request_id = response.get("requestId")
                evaluated_at = response.get("evaluatedAt")
                if response.get("errorsWhileComputingFlags"):
                    errors.append(FeatureFlagError.ERRORS_WHILE_COMPUTING)
                flag_details = (response.get("flags") or {}).get(key)
                if flag_details is None:
                    errors.append(FeatureFlagError.FLAG_MISSING)
                flag_result = FeatureFlagResult.from_flag_details(
                    flag_details, override_match_value
                )
                self.log.debug(
                    "Successfully computed flag remotely: #%s -> #%s", key, flag_result
                )
            except Exception as e:
                errors.append(self._error_code(e))
                if isinstance(e, QuotaLimitError):
                    self.log.warning("[FEATURE FLAGS] Unable to get flag remotely: %s", e)
                else:
                    self.log.exception("[FEATURE FLAGS] Unable to get flag remotely: %s", e)

        if send_feature_flag_events and (flag_was_locally_evaluated or remote_attempted):
            self._capture_feature_flag_called(
                distinct_id,
                key,
                flag_result.get_value() if flag_result else None,
                flag_result.payload if flag_result else None,
                flag_was_locally_evaluated,
                groups,
                disable_geoip,
                request_id,
                flag_details,
                evaluation,
                rule_set.flags_by_key.get(key),
                evaluated_at,
                errors,
            )

        return flag_result

    def _overridden_result(
        self, key: str, override_match_value: Optional[FlagValue]
    ) -> Optional[FeatureFlagResult]:
        value = (
            override_match_value
            if override_match_value is not None
            else self._flag_overrides[key]
        )
        if key in self._payload_overrides:
            payload = self._payload_overrides[key]
        else:
            flag = self._rule_set().flags_by_key.get(key)
            payload = compute_payload(flag, value) if flag else None
        return FeatureFlagResult.from_value_and_payload(key, value, payload)

    @staticmethod
    def _error_code(e: Exception) -> str:
        if isinstance(e, QuotaLimitError):
            return FeatureFlagError.QUOTA_LIMITED
        if isinstance(e, APIError):
            return FeatureFlagError.api_error(e.status)
        if isinstance(e, asyncio.TimeoutError):
            return FeatureFlagError.TIMEOUT
        if isinstance(e, aiohttp.ClientConnectionError):
            return FeatureFlagError.CONNECTION_ERROR
        return FeatureFlagError.UNKNOWN_ERROR

    async def get_feature_flag_result(
        self,
        key,
        distinct_id,
        *,
        groups=None,
        person_properties=None,
        group_properties=None,
        only_evaluate_locally=False,
        send_feature_flag_events=True,
        disable_geoip=None,
    ) -> Optional[FeatureFlagResult]:
        """
        Get a FeatureFlagResult object which contains the flag result and payload for a key by evaluating locally or remotely
        depending on whether local evaluation is enabled and the flag can be locally evaluated.
        This also captures the `$feature_flag_called` event unless `send_feature_flag_events` is `False`.

        Examples:
            ```python
            flag_result = await client.get_feature_flag_result('flag-key', 'distinct_id_of_your_user')
            if flag_result and flag_result.get_value() == 'variant-key':
                matched_flag_payload = flag_result.payload
            ```

        Returns:
            Optional[FeatureFlagResult]: The feature flag result or None if disabled/unknown.
        """
        return await self._get_feature_flag_result(
            key,
            distinct_id,
            groups=groups,
            person_properties=person_properties,
            group_properties=group_properties,
            only_evaluate_locally=only_evaluate_locally,
            send_feature_flag_events=send_feature_flag_events,
            disable_geoip=disable_geoip,
        )

    async def get_feature_flag(
        self,
        key,
        distinct_id,
        *,
        groups=None,
        person_properties=None,
        group_properties=None,
        only_evaluate_locally=False,
        send_feature_flag_events=True,
        disable_geoip=None,
    ) -> Optional[FlagValue]:
        """
        Get multivariate feature flag value for a user.

        Returns None, not False, when the flag could not be resolved.

        Examples:
            ```python
            enabled_variant = await client.get_feature_flag('flag-key', 'distinct_id_of_your_user')
            if enabled_variant == 'variant-key':
                # Do something differently for this user
                ...
            ```
        """
        feature_flag_result = await self.get_feature_flag_result(
            key,
            distinct_id,
            groups=groups,
            person_properties=person_properties,
            group_properties=group_properties,
            only_evaluate_locally=only_evaluate_locally,
            send_feature_flag_events=send_feature_flag_events,
            disable_geoip=disable_geoip,
        )
        return feature_flag_result.get_value() if feature_flag_result else None

    async def feature_enabled(
        self,
        key,
        distinct_id,
        *,
        groups=None,
        person_properties=None,
        group_properties=None,
        only_evaluate_locally=False,
        send_feature_flag_events=True,
        disable_geoip=None,
    ) -> Optional[bool]:
        """
        Check if a feature flag is enabled for a user.

        Examples:
            ```python
            if await client.feature_enabled('flag-key', 'distinct_id_of_your_user'):
                # Do something differently for this user
                ...
            ```
        """
        response = await self.get_feature_flag(
            key,
            distinct_id,
            groups=groups,
            person_properties=person_properties,
            group_properties=group_properties,
            only_evaluate_locally=only_evaluate_locally,
            send_feature_flag_events=send_feature_flag_events,
            disable_geoip=disable_geoip,
        )

        if response is None:
            return None
        return bool(response)

    async def get_feature_flag_payload(
        self,
        key,
        distinct_id,
        *,
        match_value: Optional[FlagValue] = None,
        groups=None,
        person_properties=None,
        group_properties=None,
        only_evaluate_locally=False,
        send_feature_flag_events=True,
        disable_geoip=None,
    ):
        """
        Get the JSON-decoded payload for a feature flag.

        Args:
            match_value: Look up the payload of this value instead of the evaluated one.

        Examples:
            ```python
            payload = await client.get_feature_flag_payload('flag-key', 'distinct_id_of_your_user')
            ```
        """
        if key in self._payload_overrides and not self.disabled:
            return self._payload_overrides[key]

        feature_flag_result = await self._get_feature_flag_result(
            key,
            distinct_id,
            override_match_value=match_value,
            groups=groups,
            person_properties=person_properties,
            group_properties=group_properties,
            only_evaluate_locally=only_evaluate_locally,
            send_feature_flag_events=send_feature_flag_events,
            disable_geoip=disable_geoip,
        )
        return feature_flag_result.payload if feature_flag_result else None

    async def get_all_flags(
        self,
        distinct_id,
        *,
        groups=None,
        person_properties=None,
        group_properties=None,
        only_evaluate_locally=False,
        disable_geoip=None,
        flag_keys_to_evaluate: Optional[List[str]] = None,
    ) -> Optional[Dict[str, FlagValue]]:
        """
        Get all feature flags for a user.

        Examples:
            ```python
            await client.get_all_flags('distinct_id_of_your_user')
            ```
        """
        response = await self.get_all_flags_and_payloads(
            distinct_id,
            groups=groups,
            person_properties=person_properties,
            group_properties=group_properties,
            only_evaluate_locally=only_evaluate_locally,
            disable_geoip=disable_geoip,
            flag_keys_to_evaluate=flag_keys_to_evaluate,
        )

        return response["featureFlags"]

    async def get_all_flags_and_payloads(
        self,
        distinct_id,
        *,
        groups=None,
        person_properties=None,
        group_properties=None,
        only_evaluate_locally=False,
        disable_geoip=None,
        flag_keys_to_evaluate: Optional[List[str]] = None,
    ) -> FlagsAndPayloads:
        """
        Get all feature flags and their payloads for a user.

        Args:
            flag_keys_to_evaluate: Only evaluate (and request) these flags.

        Examples:
            ```python
            await client.get_all_flags_and_payloads('distinct_id_of_your_user')
            ```
        """
        if self.disabled:
            return {"featureFlags": None, "featureFlagPayloads": None}

        distinct_id = stringify_id(distinct_id)
        groups = groups or {}

        await self._ensure_flags_loaded()

        person_properties, group_properties = (
            self._add_local_person_and_group_properties(
                distinct_id, groups, person_properties, group_properties
            )
        )

        response, fallback_to_remote = self._get_all_flags_and_payloads_locally(
            distinct_id,
            groups=groups,
            person_properties=person_properties,
            group_properties=group_properties,
            flag_keys_to_evaluate=flag_keys_to_evaluate,
        )

        if fallback_to_remote and not (
            only_evaluate_locally or self.strict_local_evaluation
        ):
            try:
                remote_response = await self.get_flags_decision(
                    distinct_id,
                    groups=groups,
                    person_properties=person_properties,
                    group_properties=group_properties,
                    disable_geoip=disable_geoip,
                    flag_keys_to_evaluate=flag_keys_to_evaluate,
                )
                response = {
                    "featureFlags": {
                        **(response["featureFlags"] or {}),
                        **(to_values(remote_response) or {}),
                    },
                    "featureFlagPayloads": {
                        **(response["featureFlagPayloads"] or {}),
                        **(to_payloads(remote_response) or {}),
                    },
                }
            except Exception as e:
                self.log.exception(
                    "[FEATURE FLAGS] Unable to get feature flags and payloads: %s", e
                )

        return self._apply_overrides(response, flag_keys_to_evaluate)

    def _get_all_flags_and_payloads_locally(
        self,
        distinct_id: str,
        *,
        groups: Dict[str, Any],
        person_properties: Dict[str, Any],
        group_properties: Dict[str, Dict[str, Any]],
        flag_keys_to_evaluate: Optional[List[str]] = None,
    ) -> Tuple[FlagsAndPayloads, bool]:
        rule_set = self._rule_set()

        flags: Dict[str, FlagValue] = {}
        payloads: Dict[str, Any] = {}
        fallback_to_remote = False

        if not rule_set.flags:
            return {"featureFlags": flags, "featureFlagPayloads": payloads}, True

        keys = set(flag_keys_to_evaluate) if flag_keys_to_evaluate else None
        # one pass, so upstream flags shared by several dependents run once
        context = self._evaluation_context(
            rule_set, distinct_id, groups, person_properties, group_properties
        )

        for flag in rule_set.flags:
            key = flag.get("key")
            if keys is not None and key not in keys:
                continue
            try:
                value = evaluate_flag(flag, context).value
                flags[key] = value
                matched_payload = compute_payload(flag, value)
                if matched_payload is not None:
                    payloads[key] = matched_payload
            except InconclusiveMatchError:
                # No need to log this, since it's just telling us to fall back to remote evaluation
                fallback_to_remote = True
            except Exception as e:
                self.log.exception(
                    "[FEATURE FLAGS] Error while computing variant and payload: %s", e
                )
                fallback_to_remote = True

        if keys is not None and not keys <= set(rule_set.flags_by_key):
            # asked for flags we don't know about locally
            fallback_to_remote = True

        return {
            "featureFlags": flags,
            "featureFlagPayloads": payloads,
        }, fallback_to_remote

    def _apply_overrides(
        self, response: FlagsAndPayloads, flag_keys_to_evaluate: Optional[List[str]]
    ) -> FlagsAndPayloads:
        if not self._flag_overrides and not self._payload_overrides:
            return response

        def wanted(key):
            return not flag_keys_to_evaluate or key in flag_keys_to_evaluate

        flags = dict(response["featureFlags"] or {})
        payloads = dict(response["featureFlagPayloads"] or {})
        flags.update(
            {key: value for key, value in self._flag_overrides.items() if wanted(key)}
        )
        payloads.update(
            {key: value for key, value in self._payload_overrides.items() if wanted(key)}
        )
        return {"featureFlags": flags, "featureFlagPayloads": payloads}

    def _capture_feature_flag_called(
        self,
        distinct_id: str,
        key: str,
        response: Optional[FlagValue],
        payload: Any,
        flag_was_locally_evaluated: bool,
        groups: Dict[str, Any],
        disable_geoip: Optional[bool],
        request_id: Optional[str],
        flag_details: Optional[FeatureFlag],
        evaluation: Optional[FlagEvaluation],
        flag_definition: Optional[dict],
        evaluated_at: Any,
        errors: List[str],
    ):
        feature_flag_reported_key = (
            f"{key}_{'::null::' if response is None else str(response)}"
        )

        if (
            feature_flag_reported_key
            in self.distinct_ids_feature_flags_reported[distinct_id]
        ):
            return

        properties: Dict[str, Any] = {
            "$feature_flag": key,
            "$feature_flag_response": response,
            "locally_evaluated": flag_was_locally_evaluated,
            f"$feature/{key}": response,
        }

        if payload is not None:
            properties["$feature_flag_payload"] = payload

        if request_id:
            properties["$feature_flag_request_id"] = request_id

        if isinstance(evaluated_at, datetime):
            properties["$feature_flag_evaluated_at"] = evaluated_at.isoformat()
        elif evaluated_at is not None:
            properties["$feature_flag_evaluated_at"] = evaluated_at

        if evaluation is not None:
            properties["$feature_flag_reason"] = evaluation.reason.description
            if flag_definition:
                if flag_definition.get("id"):
                    properties["$feature_flag_id"] = flag_definition["id"]
                if flag_definition.get("version"):
                    properties["$feature_flag_version"] = flag_definition["version"]
        elif isinstance(flag_details, FeatureFlag):
            if flag_details.reason and flag_details.reason.description:
                properties["$feature_flag_reason"] = flag_details.reason.description
            if isinstance(flag_details.metadata, FlagMetadata):
                if flag_details.metadata.version:
                    properties["$feature_flag_version"] = flag_details.metadata.version
                if flag_details.metadata.id:
                    properties["$feature_flag_id"] = flag_details.metadata.id

        if errors:
            properties["$feature_flag_error"] = ",".join(errors)

        self.capture(
            "$feature_flag_called",
            distinct_id=distinct_id,
            properties=properties,
            groups=groups,
            disable_geoip=disable_geoip,
        )
        self.distinct_ids_feature_flags_reported[distinct_id].add(
            feature_flag_reported_key
        )

    def capture(
        self,
        event: str,
        *,
        distinct_id,
        properties: Optional[Dict[str, Any]] = None,
        groups: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
        disable_geoip: Optional[bool] = None,
    ) -> Optional[str]:
        """
        Hand an event to the emitter. Returns the event uuid, or None when disabled.
        """
        if self.disabled:
            return None

        timestamp = guess_timezone(timestamp or datetime.now(tz=tzutc()))
        msg: Dict[str, Any] = {
            "event": event,
            "distinct_id": stringify_id(distinct_id),
            "properties": {
                **system_context(),
                **(properties or {}),
                "$lib": "localflags",
                "$lib_version": VERSION,
            },
            "timestamp": timestamp.isoformat(),
            "uuid": str(uuid4()),
        }

        if groups:
            msg["properties"]["$groups"] = groups

        if disable_geoip is None:
            disable_geoip = self.disable_geoip
        if disable_geoip:
            msg["properties"]["$geoip_disable"] = True

        msg = clean(msg)
        self.log.debug("queueing: %s", msg)

        if self.emit is not None:
            try:
                result = self.emit(msg)
                if inspect.isawaitable(result):
                    self._track(asyncio.ensure_future(result))
            except Exception as e:
                self.log.exception("Error in emit callback: %s", e)
            return msg["uuid"]

        # if send is False, return msg as if it was successfully queued
        if not self.send:
            return msg["uuid"]

        try:
            self._track(asyncio.get_running_loop().create_task(self._send(msg)))
        except RuntimeError:
            self.log.warning("No running event loop, dropping event %s", event)
            return None
        return msg["uuid"]

    def _track(self, task: "asyncio.Future"):
        self._pending_sends.add(task)  # type: ignore[arg-type]
        task.add_done_callback(self._pending_sends.discard)

    async def _send(self, msg):
        @backoff.on_exception(
            backoff.expo, Exception, max_tries=self.max_retries + 1, giveup=fatal_exception
        )
        async def send_request():
            await batch_post(
                self.api_key,
                self.host,
                gzip=self.gzip,
                timeout=self.timeout,
                batch=[msg],
            )

        try:
            await send_request()
        except Exception as e:
            self.log.error("error uploading: %s", e)
            if self.on_error:
                self.on_error(e, [msg])

    async def flush(self):
        """Wait until every event handed to the emitter has been sent."""
        if self._pending_sends:
            await asyncio.gather(*list(self._pending_sends), return_exceptions=True)

    async def shutdown(self):
        """
        Stop polling, flush pending events and release the flag definition cache.

        Examples:
            ```python
            await client.shutdown()
            ```
        """
        self._shutdown = True
        if self.flag_definitions is not None:
            await self.flag_definitions.stop()
        await self.flush()

    def _add_local_person_and_group_properties(
        self, distinct_id, groups, person_properties, group_properties
    ):
        all_person_properties = {
            "distinct_id": distinct_id,
            **(person_properties or {}),
        }

        all_group_properties = {}
        if groups:
            for group_name in groups:
                all_group_properties[group_name] = {
                    "$group_key": groups[group_name],
                    **((group_properties or {}).get(group_name) or {}),
                }

        return all_person_properties, all_group_properties
