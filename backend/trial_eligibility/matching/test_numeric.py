"""
Tests for numeric helpers and the raw-text threshold parser

Run with: python -m pytest backend/trial_eligibility/matching/test_numeric.py -v
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from trial_eligibility.matching.numeric import (
    calculate_bmi,
    convert_to_weeks,
    meets_threshold,
    normalize_comparison,
    parse_severity,
    parse_thresholds,
    severity_matches,
    timeframe_matches,
    to_kilograms,
    to_number,
)


def test_time_conversion():
    print("\n" + "="*60)
    print("TEST: Time Conversion")
    print("="*60)

    assert abs(convert_to_weeks({"amount": 14, "unit": "days"}) - 2.0) < 1e-9
    assert abs(convert_to_weeks({"amount": 6, "unit": "months"}) - 25.98) < 1e-9
    assert convert_to_weeks({"amount": 1, "unit": "years"}) == 52.0
    assert convert_to_weeks({"amount": 3, "unit": "week"}) == 3.0
    assert convert_to_weeks({"unit": "months"}) == 0.0
    assert convert_to_weeks(None) == 0.0

    print("\n[PASS] Time conversion tests passed!")


def test_timeframe_relations():
    print("\n" + "="*60)
    print("TEST: Timeframe Relations")
    print("="*60)

    within_12_weeks = {"amount": 12, "unit": "weeks", "relation": "within"}
    assert timeframe_matches(within_12_weeks, {"amount": 2, "unit": "months"})  # 8.66 weeks
    assert not timeframe_matches(within_12_weeks, {"amount": 1, "unit": "years"})

    for_6_months = {"amount": 6, "unit": "months", "relation": "for"}
    assert timeframe_matches(for_6_months, {"amount": 1, "unit": "years"})
    assert not timeframe_matches(for_6_months, {"amount": 10, "unit": "weeks"})

    assert timeframe_matches(None, {"amount": 1, "unit": "weeks"})  # no restriction
    assert not timeframe_matches(within_12_weeks, None)
    assert not timeframe_matches({"amount": 1, "unit": "weeks", "relation": "sometime"}, {"amount": 1})

    print("\n[PASS] Timeframe relation tests passed!")


def test_severity():
    print("\n" + "="*60)
    print("TEST: Severity Ordering")
    print("="*60)

    assert severity_matches("moderate", "severe")
    assert severity_matches("moderate", "Moderate")
    assert severity_matches("moderate_to_severe", "very severe")
    assert not severity_matches("severe", "mild")
    assert severity_matches(None, "mild")
    assert severity_matches("none_specified", "mild")
    assert not severity_matches("mild", None)
    # Unknown levels count as moderate
    assert severity_matches("moderate", "unusual")
    assert not severity_matches("severe", "unusual")

    assert parse_severity("Moderate-to-severe plaque psoriasis") == "moderate_to_severe"
    assert parse_severity("Severe disease") == "severe"
    assert parse_severity("No severity here") is None

    print("\n[PASS] Severity tests passed!")


def test_thresholds():
    print("\n" + "="*60)
    print("TEST: Threshold Comparison")
    print("="*60)

    assert meets_threshold(12, 10, ">=")
    assert meets_threshold({"value": 12}, "10", "greater than")
    assert not meets_threshold(9.5, 10, ">=")
    assert meets_threshold(10, 10, "==")
    assert meets_threshold(10.5, 10, "!=")
    assert meets_threshold(5, None)  # no threshold -> no restriction
    assert not meets_threshold(None, 10)
    assert normalize_comparison(None) == ">="
    assert normalize_comparison("at most") == "<="
    assert normalize_comparison("nonsense", default="<") == "<"

    assert to_number("1,500") == 1500.0
    assert to_number("30,5") == 30.5
    assert to_number(True) is None
    assert to_kilograms(220, "lbs") == 99.79
    assert calculate_bmi(70, 175) == 22.86
    assert calculate_bmi(70, None) is None

    print("\n[PASS] Threshold comparison tests passed!")


def test_parse_simple_phrasings():
    print("\n" + "="*60)
    print("TEST: Raw Text Parser - Simple Phrasings")
    print("="*60)

    parses = parse_thresholds("Body weight ≤ 100 kg at screening", "weight")
    print(f"\nParsed: {parses}")
    assert len(parses) == 1
    assert parses[0].value == 100.0
    assert parses[0].comparison == "<="
    assert parses[0].unit == "kg"
    assert not parses[0].negated

    parses = parse_thresholds("Subjects 18 years of age or older", "age")
    assert [(p.value, p.comparison) for p in parses] == [(18.0, ">=")]

    parses = parse_thresholds("Aged between 18 and 75 years", "age")
    assert [(p.value, p.comparison) for p in parses] == [(18.0, ">="), (75.0, "<=")]

    parses = parse_thresholds("Patients aged 18-65 years", "age")
    assert [(p.value, p.comparison) for p in parses] == [(18.0, ">="), (65.0, "<=")]

    parses = parse_thresholds("BMI greater than 40 kg/m2", "bmi")
    assert [(p.value, p.comparison) for p in parses] == [(40.0, ">")]

    parses = parse_thresholds("PASI >= 12 and BSA >= 10%", "BSA")
    assert [(p.value, p.comparison) for p in parses] == [(10.0, ">=")]

    # A percentage is not a weight
    assert parse_thresholds("Weight loss of more than 5% in 3 months", "weight") == []
    # "however" does not contain the comparator "over"
    assert parse_thresholds("however the weight was stable", "weight") == []
    assert parse_thresholds(None, "age") == []
    assert parse_thresholds("", "age") == []

    print("\n[PASS] Simple phrasing tests passed!")


def test_parse_double_negative():
    print("\n" + "="*60)
    print("TEST: Raw Text Parser - Double Negative")
    print("="*60)

    parses = parse_thresholds("Patients must not weigh < 30.0 kg", "weight")
    print(f"\nParsed: {parses}")
    assert len(parses) == 1
    parsed = parses[0]
    assert parsed.value == 30.0
    assert parsed.comparison == "<"
    assert parsed.negated
    assert parsed.requirement == ">="

    # Negation in an earlier clause does not leak
    parses = parse_thresholds("Must not be pregnant; weight < 50 kg", "weight")
    assert len(parses) == 1
    assert not parses[0].negated

    print("\n[PASS] Double negative tests passed!")


if __name__ == "__main__":
    print("\n" + "="*60)
    print("NUMERIC HELPERS - TEST SUITE")
    print("="*60)

    try:
        test_time_conversion()
        test_timeframe_relations()
        test_severity()
        test_thresholds()
        test_parse_simple_phrasings()
        test_parse_double_negative()

        print("\n" + "="*60)
        print("ALL TESTS PASSED!")
        print("="*60 + "\n")

    except AssertionError as e:
        print(f"\n[FAIL] TEST FAILED: {e}")
        sys.exit(1)
