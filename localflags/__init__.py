from typing import Callable, Dict, List, Optional, Any  # noqa: F401

from localflags.client import Client
from localflags.feature_flags import InconclusiveMatchError, RequiresServerEvaluation
from localflags.flag_definition_cache import (
    FlagDefinitionCacheData,
    FlagDefinitionCacheProvider,
)
from localflags.types import FeatureFlag, FeatureFlagResult, FlagsAndPayloads
from localflags.version import VERSION

__version__ = VERSION

__all__ = [
    "Client",
    "FeatureFlag",
    "FeatureFlagResult",
    "FlagDefinitionCacheData",
    "FlagDefinitionCacheProvider",
    "FlagsAndPayloads",
    "InconclusiveMatchError",
    "RequiresServerEvaluation",
]

"""Settings."""
api_key = None  # type: Optional[str]
host = None  # type: Optional[str]
on_error = None  # type: Optional[Callable]
debug = False  # type: bool
send = True  # type: bool
disabled = False  # type: bool
personal_api_key = None  # type: Optional[str]
poll_interval = 30  # type: int
disable_geoip = True  # type: bool
feature_flags_request_timeout_seconds = 3  # type: int
strict_local_evaluation = False  # type: bool
enable_local_evaluation = True  # type: bool

default_client = None  # type: Optional[Client]


def feature_enabled(
    key,  # type: str
    distinct_id,  # type: str
    groups=None,  # type: Optional[dict]
    person_properties=None,  # type: Optional[dict]
    group_properties=None,  # type: Optional[dict]
    only_evaluate_locally=False,  # type: bool
    send_feature_flag_events=True,  # type: bool
    disable_geoip=None,  # type: Optional[bool]
):
    """
    Use feature flags to enable or disable features for users.

    For example:
    ```python
    if await localflags.feature_enabled('beta feature', 'distinct id'):
        # do something
    if await localflags.feature_enabled('groups feature', 'distinct id', groups={"organization": "5"}):
        # do something
    ```

    You can call `await localflags.load_feature_flags()` first to make sure you're not doing unexpected requests.
    """
    return _proxy(
        "feature_enabled",
        key=key,
        distinct_id=distinct_id,
        groups=groups,
        person_properties=person_properties,
        group_properties=group_properties,
        only_evaluate_locally=only_evaluate_locally,
        send_feature_flag_events=send_feature_flag_events,
        disable_geoip=disable_geoip,
    )


def get_feature_flag(
    key,  # type: str
    distinct_id,  # type: str
    groups=None,  # type: Optional[dict]
    person_properties=None,  # type: Optional[dict]
    group_properties=None,  # type: Optional[dict]
    only_evaluate_locally=False,  # type: bool
    send_feature_flag_events=True,  # type: bool
    disable_geoip=None,  # type: Optional[bool]
):
    """
    Get the value of a feature flag: a variant key, True/False, or None when unknown.

    Example:
    ```python
    if await localflags.get_feature_flag('beta-feature', 'distinct_id') == 'test-variant':
        # do test variant code
    ```
    """
    return _proxy(
        "get_feature_flag",
        key=key,
        distinct_id=distinct_id,
        groups=groups,
        person_properties=person_properties,
        group_properties=group_properties,
        only_evaluate_locally=only_evaluate_locally,
        send_feature_flag_events=send_feature_flag_events,
        disable_geoip=disable_geoip,
    )


def get_feature_flag_result(
    key,  # type: str
    distinct_id,  # type: str
    groups=None,  # type: Optional[dict]
    person_properties=None,  # type: Optional[dict]
    group_properties=None,  # type: Optional[dict]
    only_evaluate_locally=False,  # type: bool
    send_feature_flag_events=True,  # type: bool
    disable_geoip=None,  # type: Optional[bool]
):
    """Get the value and payload of a feature flag as a FeatureFlagResult."""
    return _proxy(
        "get_feature_flag_result",
        key=key,
        distinct_id=distinct_id,
        groups=groups,
        person_properties=person_properties,
        group_properties=group_properties,
        only_evaluate_locally=only_evaluate_locally,
        send_feature_flag_events=send_feature_flag_events,
        disable_geoip=disable_geoip,
    )


def get_all_flags(
    distinct_id,  # type: str
    groups=None,  # type: Optional[dict]
    person_properties=None,  # type: Optional[dict]
    group_properties=None,  # type: Optional[dict]
    only_evaluate_locally=False,  # type: bool
    disable_geoip=None,  # type: Optional[bool]
    flag_keys_to_evaluate=None,  # type: Optional[List[str]]
):
    """
    Get all flags for a given user.

    Flags are key-value pairs where the key is the flag key and the value is the flag variant, or True, or False.
    """
    return _proxy(
        "get_all_flags",
        distinct_id=distinct_id,
        groups=groups,
        person_properties=person_properties,
        group_properties=group_properties,
        only_evaluate_locally=only_evaluate_locally,
        disable_geoip=disable_geoip,
        flag_keys_to_evaluate=flag_keys_to_evaluate,
    )


def get_feature_flag_payload(
    key,  # type: str
    distinct_id,  # type: str
    match_value=None,  # type: Optional[Any]
    groups=None,  # type: Optional[dict]
    person_properties=None,  # type: Optional[dict]
    group_properties=None,  # type: Optional[dict]
    only_evaluate_locally=False,  # type: bool
    send_feature_flag_events=True,  # type: bool
    disable_geoip=None,  # type: Optional[bool]
):
    return _proxy(
        "get_feature_flag_payload",
        key=key,
        distinct_id=distinct_id,
        match_value=match_value,
        groups=groups,
        person_properties=person_properties,
        group_properties=group_properties,
        only_evaluate_locally=only_evaluate_locally,
        send_feature_flag_events=send_feature_flag_events,
        disable_geoip=disable_geoip,
    )


def get_all_flags_and_payloads(
    distinct_id,  # type: str
    groups=None,  # type: Optional[dict]
    person_properties=None,  # type: Optional[dict]
    group_properties=None,  # type: Optional[dict]
    only_evaluate_locally=False,  # type: bool
    disable_geoip=None,  # type: Optional[bool]
    flag_keys_to_evaluate=None,  # type: Optional[List[str]]
):
    return _proxy(
        "get_all_flags_and_payloads",
        distinct_id=distinct_id,
        groups=groups,
        person_properties=person_properties,
        group_properties=group_properties,
        only_evaluate_locally=only_evaluate_locally,
        disable_geoip=disable_geoip,
        flag_keys_to_evaluate=flag_keys_to_evaluate,
    )


def override_feature_flags(overrides):
    """Override flag values locally. Pass False to clear every override."""
    return _proxy("override_feature_flags", overrides)


def feature_flag_definitions():
    """Returns loaded feature flags, if any. Helpful for debugging what flag information you have loaded."""
    return _proxy("feature_flag_definitions")


def load_feature_flags():
    """Load feature flag definitions and start polling for changes."""
    return _proxy("load_feature_flags")


def reload_feature_flags():
    """Reload feature flag definitions now, even while backing off."""
    return _proxy("reload_feature_flags")


def is_local_evaluation_ready():
    return _proxy("is_local_evaluation_ready")


def wait_for_local_evaluation_ready(timeout=None):
    return _proxy("wait_for_local_evaluation_ready", timeout)


def shutdown():
    """Stop polling and flush pending events"""
    return _proxy("shutdown")


def setup():
    global default_client
    if not default_client:
        if not api_key:
            raise ValueError("API key is required")
        default_client = Client(
            api_key,
            host=host,
            debug=debug,
            on_error=on_error,
            send=send,
            personal_api_key=personal_api_key,
            poll_interval=poll_interval,
            disabled=disabled,
            disable_geoip=disable_geoip,
            feature_flags_request_timeout_seconds=feature_flags_request_timeout_seconds,
            strict_local_evaluation=strict_local_evaluation,
            enable_local_evaluation=enable_local_evaluation,
        )

    # always set incase user changes it
    default_client.disabled = disabled
    default_client.debug = debug


def _proxy(method, *args, **kwargs):
    """Create a client if one doesn't exist and send to it."""
    setup()

    fn = getattr(default_client, method)
    return fn(*args, **kwargs)
