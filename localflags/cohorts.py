import logging
from typing import Any, Callable, FrozenSet, Optional

from localflags.errors import InconclusiveMatchError, RequiresServerEvaluation
from localflags.property_matching import match_property

log = logging.getLogger("localflags")

# Resolves a `type: "flag"` condition for the caller currently being evaluated
DependencyMatcher = Callable[[dict], bool]


def match_cohort(
    cohort_id: Any,
    cohorts: Optional[dict],
    property_values: dict,
    dependency_matcher: Optional[DependencyMatcher] = None,
    _visiting: FrozenSet[str] = frozenset(),
) -> bool:
    """
    Match the caller's properties against a locally known cohort definition.

    Cohorts missing from the fetched definitions are static (precomputed
    membership lists) and can only be answered by the server.
    """
    cohort_id = str(cohort_id)
    if cohort_id not in (cohorts or {}):
        raise RequiresServerEvaluation(
            f"cohort {cohort_id} not found in local cohorts - "
            "likely a static cohort that requires server evaluation"
        )
    if cohort_id in _visiting:
        raise InconclusiveMatchError(f"Cohort {cohort_id} references itself")

    return match_property_group(
        cohorts[cohort_id],  # type: ignore[index]
        property_values,
        cohorts,
        dependency_matcher,
        _visiting | {cohort_id},
    )


def match_property_group(
    property_group: Optional[dict],
    property_values: dict,
    cohorts: Optional[dict],
    dependency_matcher: Optional[DependencyMatcher] = None,
    _visiting: FrozenSet[str] = frozenset(),
) -> bool:
    """
    Evaluate an AND/OR tree of property conditions, cohort references and
    nested groups.

    AND stops at the first conclusive false; an inconclusive entry ahead of it
    propagates. OR stops at the first conclusive true; inconclusive entries are
    remembered and only raised when nothing else matched. Anything needing the
    server (a static cohort) propagates immediately in both.
    """
    if not property_group:
        return True

    group_type = property_group.get("type")
    values = property_group.get("values")

    if not values:
        # empty groups are no-ops, always match
        return True

    error_matching_locally: Optional[InconclusiveMatchError] = None

    for entry in values:
        try:
            matches = _match_entry(
                entry, property_values, cohorts, dependency_matcher, _visiting
            )
        except RequiresServerEvaluation:
            raise
        except InconclusiveMatchError as e:
            if group_type == "AND":
                raise
            log.debug("Failed to compute property %s locally: %s", entry, e)
            error_matching_locally = e
            continue

        if group_type == "AND":
            if not matches:
                return False
        elif matches:
            return True

    if error_matching_locally is not None:
        raise InconclusiveMatchError(
            "Can't match cohort without a given cohort property value"
        ) from error_matching_locally

    # AND: every entry matched. OR: nothing matched.
    return group_type == "AND"


def _match_entry(
    entry: dict,
    property_values: dict,
    cohorts: Optional[dict],
    dependency_matcher: Optional[DependencyMatcher],
    visiting: FrozenSet[str],
) -> bool:
    if "values" in entry:
        return match_property_group(
            entry, property_values, cohorts, dependency_matcher, visiting
        )

    prop_type = entry.get("type")
    if prop_type == "cohort":
        matches = match_cohort(
            entry.get("value"),
            cohorts,
            property_values,
            dependency_matcher,
            visiting,
        )
    elif prop_type == "flag":
        if dependency_matcher is None:
            raise InconclusiveMatchError(
                f"Cannot evaluate flag dependency {entry.get('key')} without flag definitions"
            )
        matches = dependency_matcher(entry)
    else:
        matches = match_property(entry, property_values)

    # negation only flips answers we are sure about
    if entry.get("negation", False):
        return not matches
    return matches
