"""Utility functions for the fiscal calculator.

This module provides helpers for parsing user input into ``Decimal`` values,
rounding monetary amounts to the three fractional digits used by Tunisian
dinar documents, and rendering document numbers from numbering templates
such as ``"PAC-{YYYY}-{SEQ:5}"``.
"""

from __future__ import annotations

import re
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Optional, Union

getcontext().prec = 28  # increase decimal precision to avoid rounding errors

THREE_PLACES = Decimal("0.001")
ZERO = Decimal("0.000")

_SEQ_PATTERN = re.compile(r"\{SEQ:(\d+)\}")


def round3(value: Union[Decimal, int, str]) -> Decimal:
    """Round a monetary value half-up to 3 fractional digits.

    Every intermediate step of the fiscal cascade goes through this function,
    so stored documents can be reproduced exactly.
    """
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(THREE_PLACES, rounding=ROUND_HALF_UP)


def decimal_from_str(value: str) -> Decimal:
    """Convert a numeric string into a ``Decimal``.

    The function strips any spaces and thousands separators and accepts a
    comma as decimal separator when no dot is present (``"75,5"``). It raises
    ``ValueError`` if conversion fails.
    """
    cleaned = str(value).strip().replace(" ", "")
    if "," in cleaned and "." not in cleaned:
        cleaned = cleaned.replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")
    try:
        return Decimal(cleaned)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid numeric value: {value}") from exc


def parse_percent(value: str) -> Decimal:
    """Parse a percentage string such as ``"19"`` or ``"19%"``.

    Unlike fractional rates, percentages are kept on the 0-100 scale.
    """
    value = str(value).strip()
    if value.endswith("%"):
        value = value[:-1]
    return decimal_from_str(value)


def format_amount(value: Optional[Decimal]) -> str:
    """Render a money value with exactly three decimals (``"1191.000"``)."""
    if value is None:
        return ""
    return f"{round3(value):.3f}"


def render_number(template: str, sequence: int, on: Optional[date] = None) -> str:
    """Render a document number from a numbering template.

    Supported placeholders are ``{YYYY}``, ``{YY}``, ``{MM}`` and
    ``{SEQ:n}`` where ``n`` is the zero-padded width of the counter.
    """
    on = on or date.today()
    number = template.replace("{YYYY}", f"{on.year:04d}")
    number = number.replace("{YY}", f"{on.year % 100:02d}")
    number = number.replace("{MM}", f"{on.month:02d}")
    return _SEQ_PATTERN.sub(lambda m: str(sequence).zfill(int(m.group(1))), number)
