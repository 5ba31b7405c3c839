import json
from dataclasses import dataclass
from typing import Any, List, Optional, TypedDict, Union, cast

FlagValue = Union[bool, str]


@dataclass(frozen=True)
class FlagReason:
    code: str
    condition_index: Optional[int]
    description: str

    @classmethod
    def from_json(cls, resp: Any) -> Optional["FlagReason"]:
        if not resp:
            return None
        return cls(
            code=resp.get("code", ""),
            condition_index=resp.get("condition_index"),
            description=resp.get("description", ""),
        )


@dataclass(frozen=True)
class FlagMetadata:
    id: int
    payload: Any
    version: int
    description: str

    @classmethod
    def from_json(cls, resp: Any) -> Optional["FlagMetadata"]:
        if not resp:
            return None
        return cls(
            id=resp.get("id", 0),
            payload=resp.get("payload"),
            version=resp.get("version", 0),
            description=resp.get("description", ""),
        )


@dataclass(frozen=True)
class LegacyFlagMetadata:
    payload: Any


@dataclass(frozen=True)
class FeatureFlag:
    """A single flag as answered by the remote evaluation endpoint."""

    key: str
    enabled: bool
    variant: Optional[str]
    reason: Optional[FlagReason]
    metadata: Union[FlagMetadata, LegacyFlagMetadata]

    def get_value(self) -> FlagValue:
        if self.enabled and self.variant:
            return self.variant
        return bool(self.enabled)

    @classmethod
    def from_json(cls, resp: Any) -> "FeatureFlag":
        metadata: Union[FlagMetadata, LegacyFlagMetadata, None] = None
        if resp.get("metadata"):
            metadata = FlagMetadata.from_json(resp.get("metadata"))
        if metadata is None:
            metadata = LegacyFlagMetadata(payload=None)

        return cls(
            key=resp.get("key"),
            enabled=bool(resp.get("enabled")),
            variant=resp.get("variant"),
            reason=FlagReason.from_json(resp.get("reason")),
            metadata=metadata,
        )

    @classmethod
    def from_value_and_payload(
        cls, key: str, value: FlagValue, payload: Any
    ) -> "FeatureFlag":
        enabled, variant = (True, value) if isinstance(value, str) else (value, None)
        return cls(
            key=key,
            enabled=enabled,
            variant=variant,
            reason=None,
            metadata=LegacyFlagMetadata(payload=payload),
        )


@dataclass(frozen=True)
class FlagEvaluation:
    """Outcome of evaluating one flag definition locally."""

    key: str
    value: FlagValue
    reason: FlagReason

    @property
    def variant(self) -> Optional[str]:
        return self.value if isinstance(self.value, str) else None

    @property
    def condition_index(self) -> Optional[int]:
        return self.reason.condition_index


def parse_payload(payload: Any) -> Any:
    """Payloads travel as JSON strings; hand back the decoded value when possible."""
    if isinstance(payload, str):
        try:
            return json.loads(payload)
        except ValueError:
            return payload
    return payload


@dataclass(frozen=True)
class FeatureFlagResult:
    """
    The public result of a flag lookup.

    Attributes:
        key: The flag key.
        enabled: Whether the flag is on for the caller.
        variant: The multivariate key, if any.
        payload: The JSON-decoded payload attached to the resolved value.
    """

    key: str
    enabled: bool
    variant: Optional[str]
    payload: Any

    def get_value(self) -> FlagValue:
        return self.variant if self.variant is not None else self.enabled

    @classmethod
    def from_value_and_payload(
        cls, key: str, value: Optional[FlagValue], payload: Any
    ) -> Optional["FeatureFlagResult"]:
        if value is None:
            return None
        enabled, variant = (True, value) if isinstance(value, str) else (value, None)
        return cls(
            key=key,
            enabled=enabled,
            variant=variant,
            payload=payload,
        )

    @classmethod
    def from_flag_details(
        cls,
        details: Optional[FeatureFlag],
        override_match_value: Optional[FlagValue] = None,
    ) -> Optional["FeatureFlagResult"]:
        if details is None:
            return None

        if override_match_value is not None:
            enabled, variant = (
                (True, override_match_value)
                if isinstance(override_match_value, str)
                else (override_match_value, None)
            )
        else:
            enabled, variant = details.enabled, details.variant

        return cls(
            key=details.key,
            enabled=enabled,
            variant=variant,
            payload=parse_payload(details.metadata.payload) if details.enabled else None,
        )


class FlagsResponse(TypedDict, total=False):
    flags: dict[str, FeatureFlag]
    errorsWhileComputingFlags: bool
    requestId: Optional[str]
    evaluatedAt: Optional[int]
    quotaLimited: Optional[List[str]]


class FlagsAndPayloads(TypedDict, total=True):
    featureFlags: Optional[dict[str, FlagValue]]
    featureFlagPayloads: Optional[dict[str, Any]]


def normalize_flags_response(resp: Any) -> FlagsResponse:
    """
    Normalize a remote evaluation response into the v2 shape.

    Args:
        resp: A v1 (`featureFlags`/`featureFlagPayloads`) or v2 (`flags`) response body.

    Returns:
        A FlagsResponse whose `flags` values are FeatureFlag records.
    """
    resp = dict(resp or {})
    resp.setdefault("requestId", None)
    resp.setdefault("errorsWhileComputingFlags", False)

    if "flags" in resp:
        flags = {}
        for key, value in (resp["flags"] or {}).items():
            if isinstance(value, FeatureFlag):
                flags[key] = value
                continue
            flags[key] = FeatureFlag.from_json({**value, "key": key})
        resp["flags"] = flags
    else:
        feature_flags = resp.pop("featureFlags", None) or {}
        feature_flag_payloads = resp.pop("featureFlagPayloads", None) or {}
        resp["flags"] = {
            key: FeatureFlag.from_value_and_payload(
                key, value, feature_flag_payloads.get(key)
            )
            for key, value in feature_flags.items()
        }
    return cast(FlagsResponse, resp)


def to_values(response: FlagsResponse) -> Optional[dict[str, FlagValue]]:
    if "flags" not in response:
        return None

    return {key: value.get_value() for key, value in response["flags"].items()}


def to_payloads(response: FlagsResponse) -> Optional[dict[str, Any]]:
    if "flags" not in response:
        return None

    return {
        key: parse_payload(value.metadata.payload)
        for key, value in response["flags"].items()
        if value.enabled and value.metadata.payload is not None
    }


def to_flags_and_payloads(resp: FlagsResponse) -> FlagsAndPayloads:
    return {
        "featureFlags": to_values(resp),
        "featureFlagPayloads": to_payloads(resp),
    }
