import logging
import numbers
import platform
import re
import sys
from collections import OrderedDict
from dataclasses import asdict, is_dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import distro  # For Linux OS detection
from dateutil.tz import tzlocal, tzutc

log = logging.getLogger("localflags")


def is_naive(dt):
    """Determines if a given datetime.datetime is naive."""
    return dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None


def guess_timezone(dt):
    """Attempts to convert a naive datetime to an aware datetime."""
    if is_naive(dt):
        # attempts to guess the datetime.datetime.now() local timezone
        # case, and then defaults to utc
        delta = datetime.now() - dt
        if delta.total_seconds() < 5:
            # this was created using datetime.datetime.now()
            # so we are in the local timezone
            return dt.replace(tzinfo=tzlocal())
        else:
            # at this point, the best we can do is guess UTC
            return dt.replace(tzinfo=tzutc())

    return dt


def convert_to_datetime_aware(date_obj):
    if date_obj.tzinfo is None:
        date_obj = date_obj.replace(tzinfo=timezone.utc)
    return date_obj


def remove_trailing_slash(host):
    if host.endswith("/"):
        return host[:-1]
    return host


def clean(item):
    """Coerce an event payload into JSON-friendly primitives."""
    if isinstance(item, Decimal):
        return float(item)
    if isinstance(item, UUID):
        return str(item)
    if isinstance(item, (str, bool, numbers.Number, datetime, date, type(None))):
        return item
    if isinstance(item, (set, list, tuple)):
        return [clean(value) for value in item]
    if isinstance(item, dict):
        return _clean_dict(item)
    if is_dataclass(item) and not isinstance(item, type):
        return _clean_dict(asdict(item))
    if isinstance(item, bytes):
        try:
            return item.decode("utf-8", "strict")
        except UnicodeDecodeError as e:
            log.warning("Error decoding: %s", e)
            return None
    return None


def _clean_dict(dict_):
    data = {}
    for k, v in dict_.items():
        try:
            data[k] = clean(v)
        except TypeError:
            log.warning(
                'Dictionary values must be serializeable to JSON "%s" value %s of type %s is unsupported.',
                k,
                v,
                type(v),
            )
    return data


def is_valid_regex(value) -> bool:
    try:
        re.compile(value)
        return True
    except re.error:
        return False


def str_icontains(source, search) -> bool:
    """
    Check if a string contains another string, ignoring case.

    Examples:
        >>> str_icontains("Hello World", "WORLD")
        True
        >>> str_icontains("Hello World", "python")
        False
    """
    return str(search).casefold() in str(source).casefold()


def try_parse_number(value) -> Optional[float]:
    """
    Parse `value` as a finite number, or return None.

    Booleans are not numbers here, and neither are strings with trailing garbage
    such as "123aloha".
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, numbers.Number):
        return float(value)  # type: ignore[arg-type]
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        if parsed != parsed or parsed in (float("inf"), float("-inf")):
            return None
        return parsed
    return None


class SizeLimitedDict(OrderedDict):
    """
    A bounded recency map: once `max_size` keys are stored, inserting a new key
    evicts the least recently touched one.
    """

    def __init__(self, max_size, default_factory=None, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.max_size = max_size
        self.default_factory = default_factory

    def __missing__(self, key):
        if self.default_factory is None:
            raise KeyError(key)
        value = self.default_factory()
        self[key] = value
        return value

    def __getitem__(self, key):
        value = super().__getitem__(key)
        self.move_to_end(key)
        return value

    def __setitem__(self, key, value):
        if key not in self and len(self) >= self.max_size:
            self.popitem(last=False)
        super().__setitem__(key, value)
        self.move_to_end(key)


def get_os_info():
    """
    Returns standardized OS name and version information.
    """
    os_name = ""
    os_version = ""

    platform_name = sys.platform

    if platform_name.startswith("win"):
        os_name = "Windows"
        os_version = platform.win32_ver()[0]
    elif platform_name == "darwin":
        os_name = "Mac OS X"
        os_version = platform.mac_ver()[0]
    elif platform_name.startswith("linux"):
        os_name = "Linux"
        os_version = distro.info()["version"]
    else:
        os_name = platform_name
        os_version = platform.release()

    return os_name, os_version


def system_context() -> dict[str, Any]:
    os_name, os_version = get_os_info()

    return {
        "$python_runtime": platform.python_implementation(),
        "$python_version": "%s.%s.%s" % (sys.version_info[:3]),
        "$os": os_name,
        "$os_version": os_version,
    }
