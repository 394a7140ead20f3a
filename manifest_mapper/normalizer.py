"""
Label Normalization and Value Coercion.

Two concerns share this module because both must behave identically
everywhere they are applied:

* ``LabelNormalizer`` turns a raw column header into the key used by the
  dictionary (and a looser key used for fuzzy comparison).
* ``ValueCoercer`` turns a captured ``RawValue`` into the typed value a
  canonical field stores.  The persister and the auditor call the *same*
  coercer, so "expected value" during an audit is exactly what persistence
  should have written.

Coercion rules
--------------
DATE     spreadsheet serials (days since 1899-12-30), date/datetime cells,
         ISO strings and the usual manifest spellings.  ``03/04/2024`` is
         flagged ambiguous because day and month could be swapped.
NUMBER   currency symbols, thousands separators, ``(123)`` negatives and
         trailing unit suffixes are stripped.
INTEGER  NUMBER followed by an integral check.
TEXT     trimmed string; integral floats lose their ``.0``.
STATUS   trimmed, upper-cased text.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, List

from manifest_mapper.logging_setup import get_logger
from manifest_mapper.models import RawKind, RawValue
from manifest_mapper.schema import FieldType

logger = get_logger("normalizer")


class LabelNormalizer:
    """Stateless header normaliser.  All methods are pure functions."""

    _MULTI_SPACE_RE = re.compile(r"\s+")

    # Loose key: letters, digits and spaces only
    _PUNCT_RE = re.compile(r"[^a-z0-9\s]")

    _CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def normalize_label(self, raw: str) -> str:
        """Return the dictionary key for a raw header.

        Case and surrounding/internal whitespace are normalised, punctuation
        is kept so that ``"Cntr#"`` and ``"Cntr"`` stay distinct keys.
        """
        text = str(raw).strip().lower()
        text = text.replace("–", "-").replace("—", "-")
        text = self._MULTI_SPACE_RE.sub(" ", text)

        logger.debug("normalize_label: %r -> %r", raw, text)
        return text

    def match_key(self, raw: str) -> str:
        """Punctuation-free key used for fuzzy comparison.

        ``"ContainerNumber"`` and ``"container_number"`` both become
        ``"container number"``.
        """
        text = self._CAMEL_RE.sub(" ", str(raw).strip())
        text = text.lower().replace("_", " ")
        text = self._PUNCT_RE.sub(" ", text)
        return self._MULTI_SPACE_RE.sub(" ", text).strip()


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------

@dataclass
class Coercion:
    """Result of coercing one raw value.

    ``ok`` is False when the raw value could not be interpreted at all;
    ``ambiguous`` is True when it could, but more than one reading exists.
    """

    value: Any = None
    ok: bool = True
    ambiguous: bool = False
    warnings: List[str] = field(default_factory=list)


EXCEL_EPOCH = date(1899, 12, 30)
SERIAL_MIN = 20000
SERIAL_MAX = 60000


class ValueCoercer:
    """Coerce captured raw values into canonical field types.

    Parameters
    ----------
    day_first:
        Reading used for ambiguous ``a/b/yyyy`` dates.  The ambiguity is
        reported either way.
    """

    _CURRENCY_RE = re.compile(r"[$€£¥₹]|\b(?:usd|eur|gbp|inr|cny|rmb)\b",
                              re.IGNORECASE)
    _PAREN_NEG_RE = re.compile(r"^\((.+)\)$")
    _UNIT_RE = re.compile(
        r"\s*(?:kgs?|kilos?|lbs?|cbm|m3|pcs|pallets?|cartons?|ctns?)\.?$",
        re.IGNORECASE,
    )
    _NUMERIC_RE = re.compile(r"^[+-]?\d+(?:\.\d+)?$")
    _ISO_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$")
    _YMD_SLASH_RE = re.compile(r"^(\d{4})[/.](\d{1,2})[/.](\d{1,2})$")
    _DMY_RE = re.compile(r"^(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{2}|\d{4})$")
    _NAMED_FORMATS = (
        "%d-%b-%Y", "%d-%b-%y", "%d %b %Y", "%d %B %Y",
        "%b %d, %Y", "%B %d, %Y", "%b %d %Y", "%d-%B-%Y",
    )

    def __init__(self, day_first: bool = True) -> None:
        self._day_first = day_first

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def coerce(self, raw: RawValue, field_type: FieldType) -> Coercion:
        """Coerce *raw* according to *field_type*."""
        if raw.is_empty:
            return Coercion(None)

        if field_type is FieldType.DATE:
            return self._coerce_date(raw)
        if field_type is FieldType.NUMBER:
            return self._coerce_number(raw)
        if field_type is FieldType.INTEGER:
            return self._coerce_integer(raw)
        if field_type is FieldType.STATUS:
            return Coercion(raw.as_text().strip().upper())
        return Coercion(raw.as_text().strip())

    # ------------------------------------------------------------------ #
    # Dates
    # ------------------------------------------------------------------ #

    def _coerce_date(self, raw: RawValue) -> Coercion:
        if raw.kind is RawKind.DATE:
            value = raw.value
            return Coercion(value.date() if isinstance(value, datetime) else value)

        if raw.kind is RawKind.NUMBER:
            return self._from_serial(float(raw.value))

        text = raw.value.strip()
        if self._NUMERIC_RE.match(text):
            return self._from_serial(float(text))

        m = self._ISO_RE.match(text) or self._YMD_SLASH_RE.match(text)
        if m:
            return self._build_date(int(m.group(1)), int(m.group(2)), int(m.group(3)), text)

        m = self._DMY_RE.match(text)
        if m:
            return self._from_day_month(int(m.group(1)), int(m.group(2)), m.group(3), text)

        for fmt in self._NAMED_FORMATS:
            try:
                return Coercion(datetime.strptime(text, fmt).date())
            except ValueError:
                continue

        return self._failed(text, "unrecognised date")

    def _from_serial(self, serial: float) -> Coercion:
        if SERIAL_MIN < serial < SERIAL_MAX:
            return Coercion(EXCEL_EPOCH + timedelta(days=int(serial)))
        return self._failed(serial, "number outside spreadsheet date range")

    def _from_day_month(self, a: int, b: int, year_text: str, text: str) -> Coercion:
        year = int(year_text)
        if len(year_text) == 2:
            year += 2000

        if a > 12:
            return self._build_date(year, b, a, text)
        if b > 12:
            return self._build_date(year, a, b, text)

        day, month = (a, b) if self._day_first else (b, a)
        result = self._build_date(year, month, day, text)
        if result.ok and a != b:
            result.ambiguous = True
            result.warnings.append(f"{text!r}: day and month could be swapped")
        return result

    def _build_date(self, year: int, month: int, day: int, text: str) -> Coercion:
        try:
            return Coercion(date(year, month, day))
        except ValueError:
            return self._failed(text, "invalid calendar date")

    # ------------------------------------------------------------------ #
    # Numbers
    # ------------------------------------------------------------------ #

    def _coerce_number(self, raw: RawValue) -> Coercion:
        if raw.kind is RawKind.NUMBER:
            return Coercion(float(raw.value))
        if raw.kind is RawKind.DATE:
            return self._failed(raw.as_text(), "date where a number was expected")

        text = raw.value.strip()
        negative = False
        m = self._PAREN_NEG_RE.match(text)
        if m:
            text = m.group(1)
            negative = True
        text = self._CURRENCY_RE.sub("", text)
        text = self._UNIT_RE.sub("", text)
        text = text.replace(",", "").replace(" ", "")

        try:
            value = float(text)
        except ValueError:
            return self._failed(raw.value, "not a number")
        if math.isnan(value) or math.isinf(value):
            return self._failed(raw.value, "not a finite number")
        return Coercion(-value if negative else value)

    def _coerce_integer(self, raw: RawValue) -> Coercion:
        result = self._coerce_number(raw)
        if not result.ok:
            return result
        if not float(result.value).is_integer():
            return self._failed(raw.as_text(), "not a whole number")
        return Coercion(int(result.value))

    # ------------------------------------------------------------------ #

    @staticmethod
    def _failed(value: Any, reason: str) -> Coercion:
        logger.debug("coercion failed for %r: %s", value, reason)
        return Coercion(None, ok=False, warnings=[f"{value!r}: {reason}"])


def values_equal(a: Any, b: Any) -> bool:
    """Compare a persisted value with an expected coerced value."""
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, datetime):
        a = a.date()
    if isinstance(b, datetime):
        b = b.date()
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return math.isclose(float(a), float(b), rel_tol=1e-9, abs_tol=1e-6)
    return a == b

