"""
Numeric helpers for cluster evaluation: unit conversion, threshold
comparison, severity ordering and the raw-text threshold parser used when a
criterion record lacks structured min/max fields.
"""

import re
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field

from ..schemas.trial import Timeframe


# =============================================================================
# TIME AND SEVERITY TABLES
# =============================================================================

# Multipliers to weeks
TIME_CONVERSIONS: Dict[str, float] = {
    "days": 1 / 7,
    "weeks": 1.0,
    "months": 4.33,
    "years": 52.0,
}

SEVERITY_LEVELS: Dict[str, int] = {
    "none": 0,
    "minimal": 1,
    "mild": 1,
    "mild_to_moderate": 2,
    "moderate": 2,
    "moderate_to_severe": 3,
    "severe": 4,
    "very_severe": 5,
}

COMPARISONS = (">=", ">", "<=", "<", "==")

_NEGATED_COMPARISON = {">=": "<", ">": "<=", "<=": ">", "<": ">=", "==": "!="}


def normalize_time_unit(unit: Optional[str]) -> str:
    text = (unit or "weeks").strip().lower()
    for known in TIME_CONVERSIONS:
        if text == known or text == known.rstrip("s") or text in (known[0], known[:2], known[:3]):
            return known
    return text


def convert_to_weeks(timeframe: Any) -> float:
    """Convert a timeframe ({amount, unit}) to weeks. Missing amounts count as 0."""
    if timeframe is None:
        return 0.0
    if isinstance(timeframe, dict):
        timeframe = Timeframe.model_validate(timeframe)
    if timeframe.amount is None:
        return 0.0
    return timeframe.amount * TIME_CONVERSIONS.get(normalize_time_unit(timeframe.unit), 1.0)


def timeframe_matches(criterion_timeframe: Any, patient_timeframe: Any) -> bool:
    """Check the patient's timeframe against the criterion's relation."""
    if not criterion_timeframe:
        return True  # No restriction
    if not patient_timeframe:
        return False  # Patient didn't provide required timeframe

    if isinstance(criterion_timeframe, dict):
        criterion_timeframe = Timeframe.model_validate(criterion_timeframe)

    criterion_weeks = convert_to_weeks(criterion_timeframe)
    patient_weeks = convert_to_weeks(patient_timeframe)

    relation = (criterion_timeframe.relation or "").strip().lower()
    if relation in ("within", "before"):
        return patient_weeks <= criterion_weeks
    if relation in ("after", "for"):
        return patient_weeks >= criterion_weeks
    return False


def severity_level(severity: Optional[str]) -> Optional[int]:
    if not severity:
        return None
    key = re.sub(r"[\s\-]+", "_", str(severity).strip().lower())
    return SEVERITY_LEVELS.get(key)


def severity_matches(criterion_severity: Optional[str], patient_severity: Optional[str]) -> bool:
    """True if the patient's severity is at least the criterion's."""
    if not criterion_severity or criterion_severity == "none_specified":
        return True
    if not patient_severity or patient_severity == "none_specified":
        return False

    criterion_level = severity_level(criterion_severity)
    patient_level = severity_level(patient_severity)
    return (patient_level if patient_level is not None else 2) >= \
        (criterion_level if criterion_level is not None else 2)


# =============================================================================
# NUMERIC COMPARISON
# =============================================================================

def to_number(value: Any) -> Optional[float]:
    """Parse ints, floats, numeric strings and {"value": x} slots."""
    if isinstance(value, dict):
        value = value.get("value")
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return _parse_number(value)
    return None


def _parse_number(text: str) -> Optional[float]:
    text = text.strip()
    if "," in text:
        head, _, tail = text.rpartition(",")
        # "1,500" is a thousands separator, "30,5" a decimal comma
        text = head.replace(",", "") + tail if len(tail) == 3 else head.replace(",", "") + "." + tail
    match = re.search(r"-?\d+(?:\.\d+)?", text)
    return float(match.group()) if match else None


def normalize_comparison(operator: Optional[str], default: str = ">=") -> str:
    op_map = {
        ">=": ">=", "≥": ">=", "=>": ">=", "at least": ">=", "minimum": ">=", "min": ">=",
        ">": ">", "greater than": ">", "above": ">", "more than": ">",
        "<=": "<=", "≤": "<=", "=<": "<=", "at most": "<=", "maximum": "<=", "max": "<=",
        "<": "<", "less than": "<", "below": "<", "under": "<",
        "=": "==", "==": "==", "equals": "==", "equal to": "==",
    }
    if not operator:
        return default
    return op_map.get(str(operator).strip().lower(), default)


def negate_comparison(operator: str) -> str:
    return _NEGATED_COMPARISON.get(operator, operator)


def meets_threshold(patient_value: Any, threshold: Any, comparison: Optional[str] = ">=") -> bool:
    """Compare a patient value to a threshold. No threshold means no restriction."""
    if threshold is None:
        return True
    value = to_number(patient_value)
    limit = to_number(threshold)
    if value is None or limit is None:
        return False

    comparison = normalize_comparison(comparison)
    if comparison == ">=":
        return value >= limit
    if comparison == ">":
        return value > limit
    if comparison == "<=":
        return value <= limit
    if comparison == "<":
        return value < limit
    if comparison == "==":
        return abs(value - limit) < 0.01
    if comparison == "!=":
        return abs(value - limit) >= 0.01
    return False


def to_kilograms(value: Optional[float], unit: Optional[str] = "kg") -> Optional[float]:
    if value is None:
        return None
    unit = (unit or "kg").strip().lower()
    if unit in ("lb", "lbs", "pound", "pounds"):
        return round(value * 0.453592, 2)
    return value


def calculate_bmi(weight: Optional[float], height: Optional[float],
                  weight_unit: str = "kg", height_unit: str = "cm") -> Optional[float]:
    if not weight or not height:
        return None
    weight_kg = to_kilograms(weight, weight_unit)
    height_m = height * 0.0254 if (height_unit or "cm").lower() in ("in", "inch", "inches") else height / 100
    if height_m <= 0:
        return None
    return round(weight_kg / (height_m * height_m), 2)


# =============================================================================
# RAW-TEXT THRESHOLD PARSER
# =============================================================================

@dataclass
class ThresholdParse:
    """
    A threshold recovered from criterion text.

    `comparison` is the operator as written. `negated` is set when the
    phrase is wrapped in a prohibition ("must not weigh < 30 kg"), in which
    case the phrase states a requirement whose operator is `requirement`.
    """
    quantity: str
    value: float
    comparison: str
    unit: Optional[str] = None
    negated: bool = False

    @property
    def requirement(self) -> str:
        return negate_comparison(self.comparison) if self.negated else self.comparison


@dataclass
class ThresholdPatterns:
    """Regex fragments for extracting numeric constraints from criterion text."""

    comparators: List[Tuple[str, str]] = field(default_factory=lambda: [
        ("less than or equal to", "<="), ("greater than or equal to", ">="),
        ("more than or equal to", ">="), ("no more than", "<="), ("no less than", ">="),
        ("not more than", "<="), ("not less than", ">="), ("not exceeding", "<="),
        ("at least", ">="), ("at most", "<="), ("a minimum of", ">="), ("a maximum of", "<="),
        ("less than", "<"), ("fewer than", "<"), ("lower than", "<"), ("younger than", "<"),
        ("lighter than", "<"), ("below", "<"), ("under", "<"),
        ("greater than", ">"), ("more than", ">"), ("higher than", ">"), ("older than", ">"),
        ("heavier than", ">"), ("above", ">"), ("over", ">"), ("exceeding", ">"),
        ("≤", "<="), ("≥", ">="), ("<=", "<="), (">=", ">="), ("=<", "<="), ("=>", ">="),
        ("<", "<"), (">", ">"), ("=", "=="),
    ])

    postfixes: Dict[str, str] = field(default_factory=lambda: {
        "or older": ">=", "and older": ">=", "or more": ">=", "or above": ">=",
        "and above": ">=", "or greater": ">=", "or longer": ">=", "or higher": ">=",
        "or younger": "<=", "and younger": "<=", "or less": "<=", "or below": "<=",
        "and below": "<=", "or fewer": "<=", "or lower": "<=",
    })

    negation: str = (
        r"\b(?:must|should|shall|may|can|will|do|does|did)\s+not\b"
        r"|\b(?:cannot|can't|mustn't|shouldn't|won't)\b"
        r"|\bnot\s+(?:weigh|be|have)\b"
    )

    keywords: Dict[str, str] = field(default_factory=lambda: {
        "weight": r"\bweigh(?:t|ts|s|ing)?\b|\bbody\s+weight\b",
        "age": r"\bage[ds]?\b",
        "bmi": r"\bbmi\b|\bbody\s+mass\s+index\b",
        "duration": r"\bduration\b|\bdiagnos(?:ed|is)\b|\bhistory\b",
    })

    units: Dict[str, str] = field(default_factory=lambda: {
        "weight": r"kgs?|kilograms?|lbs?|pounds?",
        "age": r"years?|yrs?",
        "bmi": r"kg/m2|kg/m²",
        "duration": r"days?|weeks?|months?|years?",
    })

    number: str = r"\d+(?:[.,]\d+)?"


THRESHOLD_PATTERNS = ThresholdPatterns()


def _comparator_regex(patterns: ThresholdPatterns) -> str:
    words = sorted((w for w, _ in patterns.comparators), key=len, reverse=True)
    return "|".join(rf"\b{re.escape(w)}\b" if w[0].isalpha() else re.escape(w) for w in words)


def _clause_prefix(text: str, end: int) -> str:
    """Text from the start of the clause containing `end` up to `end`."""
    window = text[max(0, end - 60):end]
    cut = max(window.rfind(sep) for sep in (";", ".", ",", ":", "\n"))
    # Decimal points inside numbers are not clause breaks
    while cut > 0 and window[cut] == "." and cut + 1 < len(window) and window[cut + 1].isdigit():
        cut = max(window.rfind(sep, 0, cut) for sep in (";", ".", ",", ":", "\n"))
    return window[cut + 1:] if cut >= 0 else window


def parse_thresholds(raw_text: Optional[str], quantity: str,
                     patterns: ThresholdPatterns = THRESHOLD_PATTERNS) -> List[ThresholdParse]:
    """
    Recover numeric thresholds for a quantity from free text.

    Recognises ranges ("between 18 and 65 years"), simple phrasings
    ("weighing ≤ 100 kg", "18 years or older") and prohibitions
    ("must not weigh < 30.0 kg"). `quantity` is one of the keyword table
    entries or a measurement name such as "PASI". Returns [] when nothing
    is recognised.
    """
    if not raw_text or not isinstance(raw_text, str):
        return []

    text = raw_text.lower()
    cmp_re = _comparator_regex(patterns)
    num = patterns.number
    keyword = patterns.keywords.get(quantity, rf"\b{re.escape(quantity.lower())}\b")
    unit = patterns.units.get(quantity, r"%|points?")
    cmp_map = {w: op for w, op in patterns.comparators}
    negation = re.compile(patterns.negation)

    def build(value: str, comparison: str, unit_text: Optional[str], start: int) -> Optional[ThresholdParse]:
        number = _parse_number(value)
        if number is None:
            return None
        return ThresholdParse(
            quantity=quantity,
            value=number,
            comparison=comparison,
            unit=unit_text.strip() if unit_text else None,
            negated=bool(negation.search(_clause_prefix(text, start))),
        )

    # Ranges
    range_re = re.compile(
        rf"(?:{keyword})?[^0-9;]{{0,30}}?(?:between|from)\s*(?P<low>{num})\s*(?P<u1>{unit})?"
        rf"\s*(?:and|to|-|–)\s*(?P<high>{num})\s*(?P<unit>{unit})?"
    )
    # Keyword directly followed by a span: "aged 18-65 years"
    span_re = re.compile(
        rf"(?:{keyword})\s*(?P<low>{num})\s*(?P<u1>{unit})?\s*(?:-|–|to)\s*(?P<high>{num})\s*(?P<unit>{unit})?"
    )
    for regex in (range_re, span_re):
        match = regex.search(text)
        if match and (re.search(keyword, match.group(0)) or match.group("unit") or match.group("u1")):
            unit_text = match.group("unit") or match.group("u1")
            low = build(match.group("low"), ">=", unit_text, match.start("low"))
            high = build(match.group("high"), "<=", unit_text, match.start("low"))
            return [p for p in (low, high) if p is not None]

    # Percentages belong to other quantities ("weight loss of more than 5%")
    guard = "" if "%" in unit else r"(?![\d.,]*\s*%)"

    # Keyword, comparator, number: "weighing ≤ 100 kg", "PASI ≥ 12"
    keyed = re.compile(
        rf"(?:{keyword})[^0-9<>≤≥=;]{{0,30}}?(?P<cmp>{cmp_re})\s*(?P<num>{num}){guard}\s*(?P<unit>{unit})?"
    )
    # Comparator, number, unit without a keyword: "< 30 kg"
    unit_only = re.compile(rf"(?P<cmp>{cmp_re})\s*(?P<num>{num})\s*(?P<unit>{unit})\b")
    # Number, unit, postfix: "18 years of age or older"
    postfix_re = "|".join(re.escape(p) for p in sorted(patterns.postfixes, key=len, reverse=True))
    postfix = re.compile(
        rf"(?P<num>{num})\s*(?P<unit>{unit})(?:\s+of\s+age|\s+old)?\s*(?P<post>{postfix_re})"
    )

    for regex in (keyed, unit_only):
        match = regex.search(text)
        if match:
            parsed = build(match.group("num"), cmp_map[match.group("cmp")],
                           match.group("unit"), match.start("cmp"))
            return [parsed] if parsed else []

    match = postfix.search(text)
    if match:
        parsed = build(match.group("num"), patterns.postfixes[match.group("post")],
                       match.group("unit"), match.start("num"))
        return [parsed] if parsed else []

    return []


def parse_severity(raw_text: Optional[str]) -> Optional[str]:
    """Pick the severity named in criterion text, e.g. "moderate-to-severe psoriasis"."""
    if not raw_text:
        return None
    match = re.search(
        r"very[\s\-]+severe|moderate[\s\-]+to[\s\-]+severe|mild[\s\-]+to[\s\-]+moderate|severe|moderate|mild",
        raw_text.lower()
    )
    if not match:
        return None
    return re.sub(r"[\s\-]+", "_", match.group())
