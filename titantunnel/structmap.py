"""Conversion between tagged dataclasses and flat string maps stored in Redis hashes."""

from __future__ import annotations

import dataclasses
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, TypeVar

TAG = "redis"

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_INT_RE = re.compile(r"[+-]?[0-9]+", re.ASCII)
_TIME_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2}) (\d{2}):(\d{2}):(\d{2})(?:\.(\d+))? "
    r"([+-])(\d{2})(\d{2}) ([A-Za-z0-9+\-]+)",
    re.ASCII,
)
_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}

_KINDS_BY_NAME: dict[str, type] = {
    "str": str,
    "bool": bool,
    "int": int,
    "float": float,
    "datetime": datetime,
    "datetime.datetime": datetime,
}

T = TypeVar("T")


def _tag_of(f: dataclasses.Field) -> str:
    tag = f.metadata.get(TAG, "")
    return tag if tag and tag != "-" else ""


def _kind_of(f: dataclasses.Field) -> Any:
    """The field's type, resolving the string form left by postponed annotations."""
    kind = f.type
    if isinstance(kind, str):
        return _KINDS_BY_NAME.get(kind.strip(), kind)
    return kind


def _format_offset(offset: timedelta) -> str:
    total = int(offset.total_seconds()) // 60
    sign = "-" if total < 0 else "+"
    hours, minutes = divmod(abs(total), 60)
    return f"{sign}{hours:02d}{minutes:02d}"


def _format_time(value: datetime) -> str:
    """Format a datetime as ``2006-01-02 15:04:05.9999999 -0700 MST``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    offset = value.utcoffset() or timedelta(0)
    offset_text = _format_offset(offset)
    name = value.tzname()
    if not name or not name.isalpha():
        name = offset_text
    frac = f"{value.microsecond:06d}".rstrip("0")
    frac = f".{frac}" if frac else ""
    return f"{value:%Y-%m-%d %H:%M:%S}{frac} {offset_text} {name}"


def _parse_time(text: str) -> datetime:
    """Parse a timestamp of the form ``2006-01-02 15:04:05[.frac] -0700 MST``."""
    match = _TIME_RE.fullmatch(text)
    if match is None:
        raise ValueError(f"cannot parse time {text!r}")
    year, month, day, hour, minute, second, frac, sign, oh, om, name = match.groups()
    minutes = int(oh) * 60 + int(om)
    if minutes >= 24 * 60:
        raise ValueError(f"time zone offset out of range in {text!r}")
    offset = timedelta(minutes=-minutes if sign == "-" else minutes)
    tz = timezone.utc if offset == timedelta(0) and name == "UTC" else timezone(offset, name)
    micro = int((frac or "").ljust(6, "0")[:6])
    return datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=tz
    )


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return _format_time(value)
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    return str(value)


def _parse_value(name: str, kind: Any, text: str) -> Any:
    if kind is str:
        return text
    if kind is bool:
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(f"invalid bool for field {name}: {text!r}")
    if kind is int:
        if not _INT_RE.fullmatch(text):
            raise ValueError(f"invalid int for field {name}: {text!r}")
        number = int(text)
        if not _INT64_MIN <= number <= _INT64_MAX:
            raise ValueError(f"invalid int for field {name}: {text!r} out of range")
        return number
    if kind is float:
        if text != text.strip() or "_" in text:
            raise ValueError(f"invalid float for field {name}: {text!r}")
        try:
            return float(text)
        except ValueError as exc:
            raise ValueError(f"invalid float for field {name}: {exc}") from exc
    if kind is datetime:
        idx = text.find(" m=")
        if idx != -1:
            text = text[:idx]
        try:
            return _parse_time(text)
        except ValueError as exc:
            raise ValueError(f"invalid time format for field {name}: {exc}") from exc
    raise ValueError(f"unsupported kind {kind!r} for field {name}")


def struct_to_map(obj: Any) -> dict[str, str]:
    """Return the tagged fields of a dataclass instance as a map of strings."""
    if not dataclasses.is_dataclass(obj) or isinstance(obj, type):
        raise TypeError(f"struct_to_map only accepts dataclass instances; got {type(obj).__name__}")
    return {
        tag: _format_value(getattr(obj, f.name))
        for f in dataclasses.fields(obj)
        if (tag := _tag_of(f))
    }


def map_to_struct(data: Mapping[str, str], cls: type[T]) -> T:
    """Build an instance of dataclass ``cls`` from a map of strings.

    Keys are the field tags, or the field names of untagged fields. Fields
    absent from ``data`` keep their defaults.
    """
    if not (isinstance(cls, type) and dataclasses.is_dataclass(cls)):
        raise TypeError("map_to_struct requires a dataclass type")
    values: dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        if not f.init:
            continue
        key = _tag_of(f) or f.name
        if key not in data:
            continue
        values[f.name] = _parse_value(f.name, _kind_of(f), data[key])
    return cls(**values)