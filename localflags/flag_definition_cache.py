"""
Flag Definition Cache Provider interface for multi-worker environments.

This module provides an interface for external caching of feature flag definitions,
enabling multi-worker environments (Kubernetes, load-balanced servers, serverless
functions) to share flag definitions and reduce API calls.

Every hook may be a plain method or a coroutine function.

Usage:

    from localflags import Client
    from localflags.flag_definition_cache import FlagDefinitionCacheProvider

    cache = RedisFlagDefinitionCache(redis_client, "my-team")
    client = Client(
        "<project_api_key>",
        personal_api_key="<personal_api_key>",
        flag_definition_cache_provider=cache,
    )
"""

import inspect
import logging
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Union, runtime_checkable

from typing_extensions import Required, TypedDict

log = logging.getLogger("localflags")


class FlagDefinitionCacheData(TypedDict):
    """
    Data structure for cached flag definitions.

    Attributes:
        flags: List of feature flag definition dictionaries from the API.
        group_type_mapping: Mapping of group type indices to group names.
        cohorts: Dictionary of cohort definitions for local evaluation.
    """

    flags: Required[List[Dict[str, Any]]]
    group_type_mapping: Required[Dict[str, str]]
    cohorts: Required[Dict[str, Any]]


@runtime_checkable
class FlagDefinitionCacheProvider(Protocol):
    """
    Interface for external caching of feature flag definitions.

    The four methods handle the complete lifecycle of flag definition caching:

    1. `should_fetch_flag_definitions()` - Called before each load to determine
       if this worker should fetch new definitions. Use for distributed lock
       coordination to ensure only one worker fetches at a time.

    2. `get_flag_definitions()` - Called when `should_fetch_flag_definitions()`
       returns False. Returns cached definitions if available.

    3. `on_flag_definitions_received()` - Called after successfully fetching
       new definitions from the API. Store the data in your external cache
       and release any locks.

    4. `shutdown()` - Called when the client shuts down. Release any
       distributed locks and clean up resources.

    Error Handling:
        Errors are logged but never break flag evaluation. On error:
        - `should_fetch_flag_definitions()` errors default to fetching
        - `get_flag_definitions()` errors fall back to API fetch
        - `on_flag_definitions_received()` errors are logged but flags remain in memory
        - `shutdown()` errors are logged but shutdown continues
    """

    def get_flag_definitions(
        self,
    ) -> Union[Optional[FlagDefinitionCacheData], Awaitable[Optional[FlagDefinitionCacheData]]]:
        """
        Retrieve cached flag definitions.

        Returns:
            Cached flag definitions if available and valid, None otherwise.
        """
        ...

    def should_fetch_flag_definitions(self) -> Union[bool, Awaitable[bool]]:
        """
        Determine whether this instance should fetch new flag definitions.

        Returns:
            True if this instance should fetch from the API, False otherwise.
            When False, the client will call `get_flag_definitions()` instead.
        """
        ...

    def on_flag_definitions_received(
        self, data: FlagDefinitionCacheData
    ) -> Union[None, Awaitable[None]]:
        """
        Called after successfully receiving new flag definitions.

        Args:
            data: The flag definitions to cache, containing flags,
                  group_type_mapping, and cohorts.
        """
        ...

    def shutdown(self) -> Union[None, Awaitable[None]]:
        """
        Called when the client shuts down, even if this worker never fetched.
        """
        ...


async def call_hook(provider: FlagDefinitionCacheProvider, name: str, *args) -> Any:
    """Invoke a provider hook, awaiting it when it returns an awaitable."""
    result = getattr(provider, name)(*args)
    if inspect.isawaitable(result):
        result = await result
    return result
