"""
Tests for confidence thresholds and trial status derivation

Run with: python -m pytest backend/trial_eligibility/matching/test_calibration.py -v
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from pydantic import ValidationError

from trial_eligibility.matching.calibration import (
    ConfidenceDecision,
    ConfidenceThresholds,
    derive_trial_status,
    failure_reasons,
)
from trial_eligibility.schemas.trial import CriterionMatchResult, ExclusionStrength, TrialStatus


def result(matches, strength=ExclusionStrength.EXCLUSION, confidence=1.0, requires_ai=False, raw_text=""):
    return CriterionMatchResult(
        criterion_id="C1",
        nct_id="NCT001",
        matches=matches,
        confidence=confidence,
        exclusion_strength=strength,
        requires_ai=requires_ai,
        raw_text=raw_text,
    )


def test_thresholds():
    thresholds = ConfidenceThresholds()
    assert thresholds.classify(0.95) == ConfidenceDecision.EXCLUDE
    assert thresholds.classify(0.8) == ConfidenceDecision.EXCLUDE
    assert thresholds.classify(0.6) == ConfidenceDecision.REVIEW
    assert thresholds.classify(0.1) == ConfidenceDecision.IGNORE

    try:
        ConfidenceThresholds(exclude=0.4, review=0.5, ignore=0.3)
        assert False, "Expected ValidationError for unordered thresholds"
    except ValidationError:
        pass


def test_status_rules():
    print("\n" + "="*60)
    print("TEST: Status Derivation")
    print("="*60)

    t = ConfidenceThresholds()
    low_ai = result(False, confidence=0.4, requires_ai=True)

    assert derive_trial_status([], t) == TrialStatus.ELIGIBLE
    assert derive_trial_status([result(False)], t) == TrialStatus.ELIGIBLE
    assert derive_trial_status([result(True)], t) == TrialStatus.INELIGIBLE
    assert derive_trial_status([result(False, ExclusionStrength.INCLUSION)], t) == TrialStatus.INELIGIBLE
    assert derive_trial_status([result(True, ExclusionStrength.MANDATORY_EXCLUSION)], t) == TrialStatus.INELIGIBLE
    assert derive_trial_status([result(True), low_ai], t) == TrialStatus.NEEDS_REVIEW
    assert derive_trial_status([low_ai], t) == TrialStatus.NEEDS_REVIEW

    # Low confidence without external reasoning is not a review trigger
    assert derive_trial_status([result(False, confidence=0.5)], t) == TrialStatus.ELIGIBLE

    # Pure function of the inputs, whatever the order
    mixed = [result(True), low_ai, result(False, ExclusionStrength.INCLUSION)]
    assert derive_trial_status(mixed, t) == derive_trial_status(list(reversed(mixed)), t)

    print("\n[PASS] Status derivation tests passed!")


def test_failure_reasons():
    reasons = failure_reasons([
        result(True, raw_text="Active tuberculosis"),
        result(False, ExclusionStrength.INCLUSION),
        result(False, raw_text="Pregnancy"),
    ])
    assert reasons == ["Matched exclusion: Active tuberculosis", "Failed inclusion: C1"]


if __name__ == "__main__":
    print("\n" + "="*60)
    print("CALIBRATION - TEST SUITE")
    print("="*60)

    try:
        test_thresholds()
        test_status_rules()
        test_failure_reasons()

        print("\n" + "="*60)
        print("ALL TESTS PASSED!")
        print("="*60 + "\n")

    except AssertionError as e:
        print(f"\n[FAIL] TEST FAILED: {e}")
        sys.exit(1)
