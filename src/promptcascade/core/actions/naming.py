"""Naming templates for generated child nodes.

Supported codes:
    {{n}}, {{nn}}, {{nnn}}  1-based sequence number, zero-padded to the code length
    {{A}} / {{a}}           Alphabetic sequence (A..Z, AA, AB...)
    {{date:FORMAT}}         Date with yyyy/yy/MMMM/MMM/MM/M/dd/d/EEEE/EEE/HH/H/mm/ss tokens
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime

logger = logging.getLogger(__name__)

TEMPLATE_CODE = re.compile(r"\{\{[^}]+\}\}")
SEQUENCE_CODE = re.compile(r"\{\{(n+)\}\}")
DATE_CODE = re.compile(r"\{\{date:([^}]+)\}\}")

_DATE_TOKENS: dict[str, Callable[[datetime], str]] = {
    "yyyy": lambda d: f"{d.year:04d}",
    "yy": lambda d: f"{d.year % 100:02d}",
    "MMMM": lambda d: d.strftime("%B"),
    "MMM": lambda d: d.strftime("%b"),
    "MM": lambda d: f"{d.month:02d}",
    "M": lambda d: str(d.month),
    "dd": lambda d: f"{d.day:02d}",
    "d": lambda d: str(d.day),
    "EEEE": lambda d: d.strftime("%A"),
    "EEE": lambda d: d.strftime("%a"),
    "HH": lambda d: f"{d.hour:02d}",
    "H": lambda d: str(d.hour),
    "mm": lambda d: f"{d.minute:02d}",
    "ss": lambda d: f"{d.second:02d}",
}
# Longest tokens first so "yyyy" wins over "yy"
_DATE_TOKEN_PATTERN = re.compile("|".join(sorted(_DATE_TOKENS, key=len, reverse=True)))


def number_to_alpha(index: int, uppercase: bool = True) -> str:
    """0 -> A, 25 -> Z, 26 -> AA."""
    base = ord("A") if uppercase else ord("a")
    result = ""
    n = index
    while True:
        result = chr(base + n % 26) + result
        n = n // 26 - 1
        if n < 0:
            return result


def format_date(date: datetime, pattern: str) -> str:
    return _DATE_TOKEN_PATTERN.sub(lambda m: _DATE_TOKENS[m.group(0)](date), pattern)


def has_template_code(text: str | None) -> bool:
    return bool(text and TEMPLATE_CODE.search(text))


def process_naming_template(template: str, index: int = 0, date: datetime | None = None) -> str:
    """Expand naming codes for the item at 0-based ``index``."""
    if not template:
        return ""
    date = date or datetime.now()
    number = index + 1

    result = SEQUENCE_CODE.sub(lambda m: str(number).zfill(len(m.group(1))), template)
    result = result.replace("{{A}}", number_to_alpha(index, True))
    result = result.replace("{{a}}", number_to_alpha(index, False))
    return DATE_CODE.sub(lambda m: format_date(date, m.group(1)), result)


def child_name(prefix: str, index: int, date: datetime | None = None) -> str:
    """Name for the ``index``-th generated child: template or "<prefix> <n>"."""
    if has_template_code(prefix):
        return process_naming_template(prefix, index, date)
    return f"{prefix} {index + 1}"
