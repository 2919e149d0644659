"""Hierarchical configuration sections and the simple policy engine's keys."""

from __future__ import annotations

import re
from datetime import timedelta
from typing import Any

FIXED_GAS_PRICE = "fixedGasPrice"
RESUBMIT_INTERVAL = "resubmitInterval"
GAS_ORACLE_CONFIG = "gasOracle"
GAS_ORACLE_MODE = "mode"
GAS_ORACLE_METHOD = "method"
GAS_ORACLE_TEMPLATE = "template"
GAS_ORACLE_QUERY_INTERVAL = "queryInterval"
HTTP_CONFIG_URL = "url"

GAS_ORACLE_MODE_DISABLED = "disabled"
GAS_ORACLE_MODE_RESTAPI = "restapi"
GAS_ORACLE_MODE_CONNECTOR = "connector"

DEFAULT_RESUBMIT_INTERVAL = "5m"
DEFAULT_GAS_ORACLE_QUERY_INTERVAL = "5m"
DEFAULT_GAS_ORACLE_METHOD = "GET"
DEFAULT_GAS_ORACLE_MODE = GAS_ORACLE_MODE_CONNECTOR

_UNITS = {
    "ns": timedelta(microseconds=0.001),
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}
_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``5m``, ``1h30m`` or ``250ms``."""
    s = text.strip()
    sign = 1
    if s[:1] in "+-" and s:
        sign = -1 if s[0] == "-" else 1
        s = s[1:]
    if s == "0":
        return timedelta(0)
    if not s:
        raise ValueError(f"invalid duration {text!r}")
    total = timedelta(0)
    pos = 0
    while pos < len(s):
        match = _PART.match(s, pos)
        if not match:
            raise ValueError(f"invalid duration {text!r}")
        total += _UNITS[match.group(2)] * float(match.group(1))
        pos = match.end()
    return total * sign


class ConfigSection:
    """A named set of keys with defaults, plus nested sub-sections."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._defaults: dict[str, Any] = {}
        self._values: dict[str, Any] = {}
        self._children: dict[str, ConfigSection] = {}

    def add_known_key(self, key: str, default: Any = None) -> None:
        self._defaults[key] = default

    def sub_section(self, name: str) -> "ConfigSection":
        if name not in self._children:
            full = f"{self.name}.{name}" if self.name else name
            self._children[name] = ConfigSection(full)
        return self._children[name]

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def get_string(self, key: str) -> str:
        value = self._values.get(key, self._defaults.get(key))
        return "" if value is None else str(value)

    def get_duration(self, key: str) -> timedelta:
        text = self.get_string(key)
        return parse_duration(text) if text else timedelta(0)


def init_simple_config(conf: ConfigSection) -> None:
    """Register the simple policy engine's keys and defaults."""
    conf.add_known_key(FIXED_GAS_PRICE)
    conf.add_known_key(RESUBMIT_INTERVAL, DEFAULT_RESUBMIT_INTERVAL)
    gas_oracle = conf.sub_section(GAS_ORACLE_CONFIG)
    gas_oracle.add_known_key(HTTP_CONFIG_URL)
    gas_oracle.add_known_key(GAS_ORACLE_METHOD, DEFAULT_GAS_ORACLE_METHOD)
    gas_oracle.add_known_key(GAS_ORACLE_MODE, DEFAULT_GAS_ORACLE_MODE)
    gas_oracle.add_known_key(GAS_ORACLE_QUERY_INTERVAL, DEFAULT_GAS_ORACLE_QUERY_INTERVAL)
    gas_oracle.add_known_key(GAS_ORACLE_TEMPLATE)