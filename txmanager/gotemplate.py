"""A small text template engine following Go's text/template syntax."""

from __future__ import annotations

import json
import math
import re
from decimal import Decimal
from typing import Any


class TemplateError(Exception):
    """Raised when a template cannot be parsed or executed."""


_WORD_PATTERN = re.compile(r'"(?:[^"\\]|\\.)*"|[^\s"]+')
_FIELD = re.compile(r"\.(?:[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*)?")
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?")
_FUNCTIONS = {"len", "print"}


def _go_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    tup = Decimal(repr(abs(value))).as_tuple()
    raw = "".join(map(str, tup.digits))
    dp = len(raw) + tup.exponent
    digits = raw.lstrip("0")
    dp -= len(raw) - len(digits)
    digits = digits.rstrip("0")
    nd = len(digits)
    exp = dp - 1
    if exp < -4 or exp >= 6:
        mantissa = digits[0] + ("." + digits[1:] if nd > 1 else "")
        return f"{sign}{mantissa}e{'-' if exp < 0 else '+'}{abs(exp):02d}"
    if dp <= 0:
        return f"{sign}0.{'0' * -dp}{digits}"
    if dp >= nd:
        return f"{sign}{digits}{'0' * (dp - nd)}"
    return f"{sign}{digits[:dp]}.{digits[dp:]}"


def _format(value: Any, top: bool = True) -> str:
    if value is None:
        return "<no value>" if top else "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return _go_float(value)
    if isinstance(value, dict):
        inner = " ".join(f"{k}:{_format(value[k], False)}" for k in sorted(value))
        return f"map[{inner}]"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_format(v, False) for v in value) + "]"
    return str(value)


def _parse_arg(word: str) -> tuple:
    if word.startswith('"'):
        return ("const", json.loads(word))
    if _FIELD.fullmatch(word):
        return ("field", [n for n in word.split(".") if n])
    if _NUMBER.fullmatch(word):
        return ("const", float(word) if any(c in word for c in ".eE") else int(word))
    if word in ("true", "false"):
        return ("const", word == "true")
    raise TemplateError(f"unexpected {word!r} in command")


def _parse_command(text: str, piped: bool) -> tuple:
    if not text or not re.fullmatch(r'(?:\s*(?:"(?:[^"\\]|\\.)*"|[^\s"]+))*\s*', text):
        raise TemplateError(f"malformed command {text!r}")
    words = _WORD_PATTERN.findall(text)
    if not words:
        raise TemplateError("missing value for command")
    head, rest = words[0], words[1:]
    if head in _FUNCTIONS:
        return ("func", head, [_parse_arg(w) for w in rest])
    if rest or piped:
        raise TemplateError(f"can't give argument to non-function {head!r}")
    return ("value", _parse_arg(head))


def _parse_pipeline(text: str) -> list:
    parts = [p.strip() for p in text.split("|")]
    return [_parse_command(p, i > 0) for i, p in enumerate(parts)]


class Template:
    """A parsed template that renders against a data value."""

    def __init__(self, source: str) -> None:
        self._nodes: list = []
        pos = 0
        trim_next = False
        while True:
            start = source.find("{{", pos)
            text = source[pos:] if start < 0 else source[pos:start]
            if trim_next:
                text = text.lstrip()
            if start < 0:
                self._nodes.append(text)
                break
            end = source.find("}}", start + 2)
            if end < 0:
                raise TemplateError("unclosed action")
            inner = source[start + 2:end]
            if inner.startswith("-") and inner[1:2].isspace():
                text = text.rstrip()
                inner = inner[1:]
            trim_next = inner.endswith("-") and inner[-2:-1].isspace()
            if trim_next:
                inner = inner[:-1]
            self._nodes.append(text)
            inner = inner.strip()
            if not (inner.startswith("/*") and inner.endswith("*/")):
                self._nodes.append(_parse_pipeline(inner))
            pos = end + 2

    def render(self, data: Any) -> str:
        out = []
        for node in self._nodes:
            if isinstance(node, str):
                out.append(node)
            else:
                out.append(_format(self._run(node, data)))
        return "".join(out)

    def _run(self, pipeline: list, data: Any) -> Any:
        result: Any = None
        for i, command in enumerate(pipeline):
            if command[0] == "value":
                result = self._eval(command[1], data)
                continue
            args = [self._eval(a, data) for a in command[2]]
            if i > 0:
                args.append(result)
            result = self._call(command[1], args)
        return result

    @staticmethod
    def _eval(arg: tuple, data: Any) -> Any:
        if arg[0] == "const":
            return arg[1]
        current = data
        for name in arg[1]:
            if current is None:
                raise TemplateError(f"nil pointer evaluating field {name!r}")
            if not isinstance(current, dict):
                raise TemplateError(f"can't evaluate field {name!r}")
            current = current.get(name)
        return current

    @staticmethod
    def _call(name: str, args: list) -> Any:
        if name == "len":
            if len(args) != 1:
                raise TemplateError("wrong number of args for len")
            value = args[0]
            if not isinstance(value, (str, list, tuple, dict)):
                raise TemplateError(f"len of {_format(value)}")
            return len(value)
        pieces = []
        for index, value in enumerate(args):
            if index and not isinstance(value, str) and not isinstance(args[index - 1], str):
                pieces.append(" ")
            pieces.append(_format(value, False))
        return "".join(pieces)