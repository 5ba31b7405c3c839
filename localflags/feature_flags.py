import datetime
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from localflags.cohorts import match_cohort, match_property_group
from localflags.errors import InconclusiveMatchError, RequiresServerEvaluation
from localflags.property_matching import match_property
from localflags.types import FlagEvaluation, FlagReason, FlagValue, parse_payload

__all__ = [
    "InconclusiveMatchError",
    "RequiresServerEvaluation",
    "EvaluationContext",
    "evaluate_flag",
    "evaluate_flag_dependency",
    "flag_evaluates_to_expected_value",
    "get_matching_variant",
    "hash_bucket",
    "match_cohort",
    "match_feature_flag_properties",
    "match_property",
    "match_property_group",
    "variant_lookup_table",
    "compute_payload",
]

__LONG_SCALE__ = float(0xFFFFFFFFFFFFFFF)

VARIANT_SALT = "variant"

log = logging.getLogger("localflags")


# This function takes a bucketing value and a feature flag key and returns a float between 0 and 1.
# Given the same inputs, it'll always return the same float, and the remote evaluator computes the
# exact same number. These floats are uniformly distributed between 0 and 1, so if we want to show
# this feature to 20% of traffic we can do hash_bucket(key, distinct_id) < 0.2
def hash_bucket(key: str, bucketing_value: str, salt: str = "") -> float:
    hash_key = f"{key}.{bucketing_value}{salt}"
    hash_val = int(hashlib.sha1(hash_key.encode("utf-8")).hexdigest()[:15], 16)
    return hash_val / __LONG_SCALE__


def _variants(flag) -> list:
    # Some filters can be explicitly set to null, which require accessing variants like so
    return ((flag.get("filters") or {}).get("multivariate") or {}).get("variants") or []


def variant_lookup_table(flag):
    lookup_table = []
    value_min = 0.0
    for variant in _variants(flag):
        value_max = value_min + variant["rollout_percentage"] / 100
        lookup_table.append(
            {"value_min": value_min, "value_max": value_max, "key": variant["key"]}
        )
        value_min = value_max
    return lookup_table


def get_matching_variant(flag, bucketing_value: str) -> Optional[str]:
    hash_value = hash_bucket(flag["key"], bucketing_value, salt=VARIANT_SALT)
    for variant in variant_lookup_table(flag):
        if variant["value_min"] <= hash_value < variant["value_max"]:
            return variant["key"]
    return None


@dataclass
class EvaluationContext:
    """
    Everything a single evaluation pass needs.

    `evaluation_cache` maps upstream flag keys to their value for the current
    pass, with None meaning "inconclusive". `evaluated_at` records when each
    top level flag was computed.
    """

    distinct_id: str
    groups: dict = field(default_factory=dict)
    person_properties: dict = field(default_factory=dict)
    group_properties: dict = field(default_factory=dict)
    group_type_mapping: Optional[dict] = None
    cohorts: dict = field(default_factory=dict)
    flags_by_key: dict = field(default_factory=dict)
    evaluation_cache: dict = field(default_factory=dict)
    evaluated_at: dict = field(default_factory=dict)


def flag_evaluates_to_expected_value(expected_value: Any, actual_value: Any) -> bool:
    """
    Compare an upstream flag's value with what a `flag_evaluates_to` condition expects.

    - Any non-empty variant counts as "on", so it satisfies an expected `True`.
    - Variants compare case-sensitively against an expected string.
    - Booleans must match exactly.
    - Anything else, including empty strings and numbers, never matches.
    """
    if isinstance(actual_value, str):
        if not actual_value:
            return False
        if isinstance(expected_value, bool):
            return expected_value
        if isinstance(expected_value, str):
            return actual_value == expected_value
        return False

    if isinstance(actual_value, bool) and isinstance(expected_value, bool):
        return actual_value == expected_value

    return False


def evaluate_flag_dependency(
    property, context: EvaluationContext, bucketing_value: str, properties: dict
) -> bool:
    """
    Evaluate a `flag_evaluates_to` condition.

    Every key of `dependency_chain` is evaluated in order through the pass
    cache, then the condition's target flag is compared with the expected value.
    Intermediate flags never go to the server: if any link is inconclusive, the
    whole dependent flag is.
    """
    flag_key = property.get("key", "unknown")

    if "dependency_chain" not in property:
        raise InconclusiveMatchError(
            f"Flag dependency property for '{flag_key}' is missing required 'dependency_chain' field"
        )

    dependency_chain = property["dependency_chain"]
    if not isinstance(dependency_chain, list):
        raise InconclusiveMatchError(
            f"Flag dependency property for '{flag_key}' has an invalid 'dependency_chain'"
        )

    # An empty chain is how the server marks a circular dependency
    if len(dependency_chain) == 0:
        log.debug("[FEATURE FLAGS] Circular dependency detected for flag: %s", flag_key)
        raise InconclusiveMatchError(
            f"Circular dependency detected for flag '{flag_key}'"
        )

    for dep_flag_key in dependency_chain:
        if dep_flag_key not in context.evaluation_cache:
            # None until resolved, so a cycle the server missed reads as inconclusive
            context.evaluation_cache[dep_flag_key] = None
            dep_flag = context.flags_by_key.get(dep_flag_key)
            if not dep_flag:
                raise InconclusiveMatchError(
                    f"Cannot evaluate flag dependency '{dep_flag_key}' - flag not found in local flags"
                )
            try:
                context.evaluation_cache[dep_flag_key] = _evaluate_upstream_flag(
                    dep_flag, context, bucketing_value, properties
                )
            except InconclusiveMatchError as e:
                raise InconclusiveMatchError(
                    f"Cannot evaluate flag dependency '{dep_flag_key}': {e}"
                ) from e

        if context.evaluation_cache[dep_flag_key] is None:
            raise InconclusiveMatchError(
                f"Flag dependency '{dep_flag_key}' was previously inconclusive"
            )

    operator = property.get("operator", "flag_evaluates_to")
    if operator != "flag_evaluates_to":
        raise InconclusiveMatchError(
            f"Flag dependency property for '{flag_key}' has invalid operator '{operator}'"
        )

    actual_value = context.evaluation_cache.get(flag_key)
    if actual_value is None:
        raise InconclusiveMatchError(
            f"Flag '{flag_key}' was not evaluated despite being in dependency chain"
        )

    return flag_evaluates_to_expected_value(property.get("value"), actual_value)


def _evaluate_upstream_flag(
    flag, context: EvaluationContext, bucketing_value: str, properties: dict
) -> FlagValue:
    if not flag.get("active"):
        return False
    if flag.get("ensure_experience_continuity"):
        raise InconclusiveMatchError(
            f"Flag '{flag.get('key')}' has experience continuity enabled"
        )
    if _is_group_scoped(flag):
        # group rollouts reuse the caller's bucketing, never their own identifier
        return match_feature_flag_properties(
            flag, bucketing_value, properties, context
        ).value
    return evaluate_flag(flag, context).value


def _is_group_scoped(flag) -> bool:
    return (flag.get("filters") or {}).get("aggregation_group_type_index") is not None


def is_condition_match(
    flag, bucketing_value: str, condition, properties: dict, context: EvaluationContext
) -> bool:
    def dependency_matcher(prop) -> bool:
        return evaluate_flag_dependency(prop, context, bucketing_value, properties)

    for prop in condition.get("properties") or []:
        property_type = prop.get("type")
        if property_type == "cohort":
            matches = match_cohort(
                prop.get("value"), context.cohorts, properties, dependency_matcher
            )
            if prop.get("negation", False):
                matches = not matches
        elif property_type == "flag":
            matches = dependency_matcher(prop)
        else:
            matches = match_property(prop, properties)
        if not matches:
            return False

    rollout_percentage = condition.get("rollout_percentage")
    if rollout_percentage is None:
        return True

    return hash_bucket(flag["key"], bucketing_value) < rollout_percentage / 100


def match_feature_flag_properties(
    flag, bucketing_value: str, properties: dict, context: EvaluationContext
) -> FlagEvaluation:
    """
    Walk the flag's condition sets in order and return the first match.

    An inconclusive condition set makes the whole flag inconclusive, even when a
    later set would match: only the server can tell which one takes precedence.
    """
    key = flag.get("key")
    flag_conditions = (flag.get("filters") or {}).get("groups") or []
    flag_variants = _variants(flag)
    valid_variant_keys = [variant["key"] for variant in flag_variants]

    for index, condition in enumerate(flag_conditions):
        if not is_condition_match(flag, bucketing_value, condition, properties, context):
            continue

        if not flag_variants:
            value: FlagValue = True
        else:
            variant_override = condition.get("variant")
            if variant_override and variant_override in valid_variant_keys:
                variant = variant_override
            else:
                variant = get_matching_variant(flag, bucketing_value)
            if variant is None:
                return FlagEvaluation(
                    key=key,
                    value=False,
                    reason=FlagReason(
                        code="no_variant_match",
                        condition_index=index,
                        description="Matched condition set but no variant rollout range",
                    ),
                )
            value = variant

        return FlagEvaluation(
            key=key,
            value=value,
            reason=FlagReason(
                code="condition_match",
                condition_index=index,
                description=f"Matched condition set {index + 1}",
            ),
        )

    return FlagEvaluation(
        key=key,
        value=False,
        reason=FlagReason(
            code="no_condition_match",
            condition_index=None,
            description="No matching condition set",
        ),
    )


def resolve_bucketing_value(flag, context: EvaluationContext) -> str:
    bucketing_identifier = flag.get("bucketing_identifier") or "distinct_id"
    if bucketing_identifier == "device_id":
        device_id = context.person_properties.get("$device_id")
        if device_id is None or device_id == "":
            raise InconclusiveMatchError(
                f"Flag '{flag.get('key')}' is bucketed by device_id but no $device_id was given"
            )
        return str(device_id)
    return str(context.distinct_id)


def evaluate_flag(flag, context: EvaluationContext) -> FlagEvaluation:
    """
    Compute one flag for the caller described by `context`.

    Raises InconclusiveMatchError when the answer has to come from the server.
    """
    key = flag.get("key")

    if not flag.get("active"):
        return FlagEvaluation(
            key=key,
            value=False,
            reason=FlagReason(
                code="flag_disabled",
                condition_index=None,
                description="Flag is disabled",
            ),
        )

    if flag.get("ensure_experience_continuity"):
        raise InconclusiveMatchError("Flag has experience continuity enabled")

    filters = flag.get("filters") or {}
    aggregation_group_type_index = filters.get("aggregation_group_type_index")

    if aggregation_group_type_index is None:
        bucketing_value = resolve_bucketing_value(flag, context)
        properties = context.person_properties
    else:
        if not context.group_type_mapping:
            raise InconclusiveMatchError(
                "Flag has groups but no group type mapping was loaded"
            )
        group_name = context.group_type_mapping.get(str(aggregation_group_type_index))
        if not group_name:
            log.warning(
                "[FEATURE FLAGS] Unknown group type index %s for feature flag %s",
                aggregation_group_type_index,
                key,
            )
            raise InconclusiveMatchError("Flag has unknown group type index")

        if group_name not in context.groups:
            # Don't failover to the server: we know this flag is off for callers
            # that did not pass the group.
            log.debug(
                "[FEATURE FLAGS] Can't compute group feature flag: %s without group names passed in",
                key,
            )
            return FlagEvaluation(
                key=key,
                value=False,
                reason=FlagReason(
                    code="no_group_type",
                    condition_index=None,
                    description=f"Group {group_name} was not provided",
                ),
            )

        bucketing_value = str(context.groups[group_name])
        properties = context.group_properties.get(group_name) or {}

    evaluation = match_feature_flag_properties(flag, bucketing_value, properties, context)
    context.evaluated_at[key] = datetime.datetime.now(datetime.timezone.utc)
    return evaluation


def compute_payload(flag, value: Optional[FlagValue]) -> Any:
    """Look up the payload attached to a resolved flag value, JSON-decoded."""
    if value is None or value is False:
        return None
    payloads = (flag.get("filters") or {}).get("payloads") or {}
    lookup_key = "true" if value is True else str(value)
    payload = payloads.get(lookup_key)
    if payload is None:
        return None
    return parse_payload(payload)
