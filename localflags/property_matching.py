import datetime
import logging
import numbers
import re
from typing import Any, Optional

from dateutil import parser
from dateutil.relativedelta import relativedelta

from localflags.errors import InconclusiveMatchError
from localflags.utils import (
    convert_to_datetime_aware,
    is_valid_regex,
    str_icontains,
    try_parse_number,
)

log = logging.getLogger("localflags")

SUPPORTED_OPERATORS = (
    "exact",
    "is_not",
    "is_set",
    "icontains",
    "not_icontains",
    "regex",
    "not_regex",
    "gt",
    "gte",
    "lt",
    "lte",
    "is_date_before",
    "is_date_after",
)

# Operators that still give an answer when the property is present but None
NONE_VALUES_ALLOWED_OPERATORS = ("is_not", "is_set")

RELATIVE_DATE_REGEX = re.compile(r"^-?(?P<number>[0-9]+)(?P<interval>[hdwmy])$")
RELATIVE_DATE_UNITS = {
    "h": "hours",
    "d": "days",
    "w": "weeks",
    "m": "months",
    "y": "years",
}
# Anything at or above this many units is treated as garbage rather than a date
MAX_RELATIVE_DATE_MAGNITUDE = 10_000


def relative_date_parse_for_feature_flag_matching(
    value: str,
) -> Optional[datetime.datetime]:
    """
    Resolve a relative date token such as "-6h", "1d", "2w", "3m" or "1y" into an
    absolute UTC instant that far in the past.

    The sign is optional and ignored: "1d" and "-1d" both mean one day ago. Hours,
    days and weeks are fixed durations; months and years move the calendar fields,
    so "12m" equals "1y" but "4w" does not equal "1m".

    Returns None for anything that is not a well-formed token.
    """
    match = RELATIVE_DATE_REGEX.match(value)
    if not match:
        return None

    number = int(match.group("number"))
    if number >= MAX_RELATIVE_DATE_MAGNITUDE:
        return None

    unit = RELATIVE_DATE_UNITS[match.group("interval")]
    now = datetime.datetime.now(datetime.timezone.utc)
    try:
        return now - relativedelta(**{unit: number})
    except (ValueError, OverflowError):
        # past year 1
        return None


def _to_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _value_kind(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, numbers.Number):
        return "number"
    if isinstance(value, str):
        return "string"
    if value is None:
        return "null"
    return type(value).__name__


def _strict_equals(expected: Any, actual: Any) -> bool:
    # 1 == True in Python, so compare kinds before values
    if _value_kind(expected) != _value_kind(actual):
        return False
    return expected == actual


def _compute_exact_match(value: Any, override_value: Any) -> bool:
    if isinstance(value, list):
        return any(_strict_equals(val, override_value) for val in value)
    return _strict_equals(value, override_value)


def _compare(lhs, rhs, operator: str) -> bool:
    if operator == "gt":
        return lhs > rhs
    elif operator == "gte":
        return lhs >= rhs
    elif operator == "lt":
        return lhs < rhs
    elif operator == "lte":
        return lhs <= rhs
    raise ValueError(f"Invalid operator: {operator}")


def _parse_flag_date(value: Any) -> datetime.datetime:
    if isinstance(value, bool) or not isinstance(value, (str, datetime.date)):
        raise InconclusiveMatchError("The date set on the flag is not a valid format")

    if isinstance(value, datetime.datetime):
        return convert_to_datetime_aware(value)
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time(), datetime.timezone.utc)

    parsed_date = relative_date_parse_for_feature_flag_matching(value)
    if parsed_date is not None:
        return parsed_date

    try:
        return convert_to_datetime_aware(parser.isoparse(value))
    except (ValueError, OverflowError):
        pass
    try:
        return convert_to_datetime_aware(parser.parse(value))
    except (ValueError, OverflowError) as e:
        raise InconclusiveMatchError(
            "The date set on the flag is not a valid format"
        ) from e


def _parse_property_date(override_value: Any) -> datetime.datetime:
    if isinstance(override_value, datetime.datetime):
        return convert_to_datetime_aware(override_value)
    if isinstance(override_value, datetime.date):
        return datetime.datetime.combine(
            override_value, datetime.time(), datetime.timezone.utc
        )
    if isinstance(override_value, str):
        try:
            return convert_to_datetime_aware(parser.parse(override_value))
        except (ValueError, OverflowError) as e:
            raise InconclusiveMatchError(
                "The date provided is not a valid format"
            ) from e
    raise InconclusiveMatchError("The date provided must be a string or date object")


def match_property(property, property_values) -> bool:
    """
    Evaluate one `{key, operator, value}` condition against a property bag.

    Raises InconclusiveMatchError when the answer depends on data we were not given.
    """
    key = property.get("key")
    operator = property.get("operator") or "exact"
    value = property.get("value")

    if operator not in SUPPORTED_OPERATORS:
        raise InconclusiveMatchError(f"Unknown operator {operator}")

    if key not in property_values:
        # A missing value is never equal to anything, and is never set
        if operator == "is_not":
            return True
        if operator == "is_set":
            return False
        raise InconclusiveMatchError(
            f"Can't match property {key} without a given property value"
        )

    override_value = property_values[key]

    if operator == "is_set":
        return True

    if override_value is None and operator not in NONE_VALUES_ALLOWED_OPERATORS:
        log.debug(
            "Property %s cannot have a value of None with the %s operator",
            key,
            operator,
        )
        return False

    if operator == "exact":
        return _compute_exact_match(value, override_value)

    if operator == "is_not":
        return not _compute_exact_match(value, override_value)

    if operator == "icontains":
        return str_icontains(_to_string(override_value), _to_string(value))

    if operator == "not_icontains":
        return not str_icontains(_to_string(override_value), _to_string(value))

    if operator in ("regex", "not_regex"):
        pattern = _to_string(value)
        if not is_valid_regex(pattern):
            # an invalid pattern never matches, negated or not
            return False
        matched = re.search(pattern, _to_string(override_value)) is not None
        return matched if operator == "regex" else not matched

    if operator in ("gt", "gte", "lt", "lte"):
        # :TRICKY: compare numerically only when both sides are numbers,
        # otherwise fall back to comparing the string forms.
        lhs = try_parse_number(override_value)
        rhs = try_parse_number(value)
        if lhs is not None and rhs is not None:
            return _compare(lhs, rhs, operator)
        return _compare(_to_string(override_value), _to_string(value), operator)

    # is_date_before / is_date_after
    parsed_date = _parse_flag_date(value)
    override_date = _parse_property_date(override_value)
    if operator == "is_date_before":
        return override_date < parsed_date
    return override_date > parsed_date
