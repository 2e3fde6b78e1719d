"""
Tests for the trial matcher and trial database loader

Run with: python -m pytest backend/trial_eligibility/matching/test_matcher.py -v
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from trial_eligibility.core.config import settings
from trial_eligibility.matching import evaluators
from trial_eligibility.matching.calibration import ConfidenceThresholds, sort_by_confidence
from trial_eligibility.matching.cascade import MatchingCascade
from trial_eligibility.matching.knowledge import KnowledgeResolver
from trial_eligibility.matching.matcher import TrialMatcher, create_matcher
from trial_eligibility.matching.trial_database import TrialDatabase, TrialDatabaseError
from trial_eligibility.schemas.patient import ClusterCode
from trial_eligibility.schemas.semantic import SemanticVerdict
from trial_eligibility.schemas.trial import Criterion, TrialStatus
from trial_eligibility.services.review_queue import PendingReviewStore


DATABASE = {
    "CLUSTER_AGE": {
        "cluster_code": "AGE",
        "criteria": [
            {"id": "AGE_1", "nct_id": "NCT001", "EXCLUSION_STRENGTH": "inclusion",
             "AGE_MIN": 18, "AGE_MAX": 65, "raw_text": "Aged 18 to 65"},
            {"id": "AGE_2", "nct_id": "NCT002", "EXCLUSION_STRENGTH": "inclusion", "AGE_MIN": 18},
            {"id": "AGE_3", "nct_id": "NCT003", "EXCLUSION_STRENGTH": "inclusion", "AGE_MIN": 18},
        ],
    },
    "CLUSTER_CMB": {
        "criteria": [
            {"id": "CMB_2", "nct_id": "NCT002", "EXCLUSION_STRENGTH": "exclusion",
             "raw_text": "History of cancer", "conditions": [{"CONDITION_TYPE": ["cancer"]}]},
            {"id": "CMB_3", "nct_id": "NCT003", "EXCLUSION_STRENGTH": "exclusion",
             "raw_text": "Autoimmune disease", "conditions": [{"CONDITION_TYPE": ["autoimmune disease"]}]},
        ],
    },
    "CLUSTER_PTH": {
        "cluster_code": "PTH",
        "criteria": [
            {"id": "PTH_4", "nct_id": "NCT004", "EXCLUSION_STRENGTH": "mandatory_exclude",
             "raw_text": "Prior XYZ-999", "conditions": [{"TREATMENT_TYPE": ["XYZ-999"]}]},
        ],
    },
    "metadata": {"exported": "2024-01-01"},
}

PATIENT = {
    "responses": {
        "AGE": {"age": 40},
        "CMB": [{"CONDITION_TYPE": ["breast cancer"]}, {"CONDITION_TYPE": ["lupus"]}],
        "PTH": [{"TREATMENT_TYPE": ["XYZ-999"]}],
    },
    "version": "1",
}


class FakeSemanticClient:
    def __init__(self, verdict):
        self.verdict = verdict
        self.calls = []

    async def semantic_match(self, patient_term, criterion_term, context="medical term"):
        self.calls.append((patient_term, criterion_term, context))
        return self.verdict


def make_matcher(client=None, review_queue=None, database=None) -> TrialMatcher:
    cascade = MatchingCascade(
        resolver=KnowledgeResolver(),
        semantic_client=client,
        thresholds=ConfidenceThresholds(),
        timeout=1.0,
        enabled=client is not None,
    )
    return TrialMatcher(database or TrialDatabase.from_mapping(DATABASE), cascade, review_queue)


def ids(trials):
    return [t.nct_id for t in trials]


def test_database_loading():
    print("\n" + "="*60)
    print("TEST: Trial Database Loading")
    print("="*60)

    database = TrialDatabase.from_mapping(DATABASE)
    print(f"\nTrials: {database.trial_ids()}")
    assert database.trial_ids() == ["NCT001", "NCT002", "NCT003", "NCT004"]
    assert len(database) == 4
    assert "NCT004" in database and "NCT999" not in database

    criteria = database.criteria_for("NCT002")
    assert [(code, c.id) for code, c in criteria] == [(ClusterCode.AGE, "AGE_2"), (ClusterCode.CMB, "CMB_2")]
    assert criteria[1][1].cluster_code == "CMB"  # taken from the key when not stated
    assert database.criteria_for("NCT999") == []

    print("\n[PASS] Database loading tests passed!")


def test_database_skips_bad_records():
    database = TrialDatabase.from_mapping({
        "CLUSTER_AGE": {"criteria": [
            {"id": "AGE_X"},                       # no trial id
            "not a record",
            {"id": "AGE_1", "nct_id": "NCT100", "AGE_MIN": 18},
        ]},
        "CLUSTER_NOPE": {"criteria": [{"id": "N_1", "nct_id": "NCT200"}]},
    })
    assert database.trial_ids() == ["NCT100"]


def test_database_errors():
    for bad in ([], "CLUSTER_AGE", {"metadata": {}}, {"CLUSTER_AGE": {"criteria": "none"}}):
        try:
            TrialDatabase.from_mapping(bad)
            assert False, f"Expected TrialDatabaseError for {bad!r}"
        except TrialDatabaseError:
            pass

    try:
        TrialDatabase.from_json_file("/nonexistent/trials.json")
        assert False, "Expected TrialDatabaseError for a missing file"
    except TrialDatabaseError:
        pass


def test_trial_statuses():
    """Eligible, ineligible and needs-review trials land in their own buckets."""
    print("\n" + "="*60)
    print("TEST: Trial Statuses")
    print("="*60)

    client = FakeSemanticClient(SemanticVerdict(match=True, confidence=0.4, reasoning="loosely related"))
    results = asyncio.run(make_matcher(client).match_patient(PATIENT))

    print(f"\nSummary: {results.summary()}")
    assert ids(results.eligible_trials) == ["NCT001"]
    assert ids(results.ineligible_trials) == ["NCT002", "NCT004"]  # sorted by confidence
    assert ids(results.needs_review_trials) == ["NCT003"]
    assert results.total_trials_evaluated == 4

    ineligible = results.ineligible_trials[0]
    assert ineligible.failure_reasons == ["Matched exclusion: History of cancer"]
    assert ineligible.confidence_score == 0.94

    flagged = results.needs_review_trials[0]
    assert flagged.flagged_count == 1
    assert flagged.criteria[1].requires_ai
    assert flagged.criteria[1].confidence == 0.4

    print("\n[PASS] Trial status tests passed!")


def test_every_trial_in_exactly_one_bucket():
    matcher = make_matcher()
    results = asyncio.run(matcher.match_patient(PATIENT))
    buckets = [ids(results.eligible_trials), ids(results.ineligible_trials), ids(results.needs_review_trials)]
    seen = [nct for bucket in buckets for nct in bucket]
    assert sorted(seen) == sorted(matcher.all_trial_ids())
    assert len(seen) == len(set(seen))

    # Without a semantic client the autoimmune criterion is a confident non-match
    assert "NCT003" in ids(results.eligible_trials)


def test_idempotent():
    matcher = make_matcher()
    first = asyncio.run(matcher.match_patient(PATIENT))
    second = asyncio.run(matcher.match_patient(PATIENT))
    for bucket in ("eligible_trials", "ineligible_trials", "needs_review_trials"):
        assert [t.model_dump() for t in getattr(first, bucket)] == \
            [t.model_dump() for t in getattr(second, bucket)]


def test_sort_is_stable():
    matcher = make_matcher()
    trials = [matcher.build_trial_result(nct, []) for nct in ("NCT_B", "NCT_A", "NCT_C")]
    assert ids(sort_by_confidence(trials)) == ["NCT_B", "NCT_A", "NCT_C"]


def test_empty_trial_is_eligible():
    trial = make_matcher().build_trial_result("NCT_EMPTY", [])
    assert trial.status == TrialStatus.ELIGIBLE
    assert trial.confidence_score == 1.0


def test_evaluator_crash_is_contained():
    """A failing evaluator yields a weak non-match instead of aborting the run."""
    print("\n" + "="*60)
    print("TEST: Evaluator Crash")
    print("="*60)

    def broken(criterion, ctx):
        raise RuntimeError("boom")

    original = evaluators.EVALUATORS[ClusterCode.AGE]
    evaluators.EVALUATORS[ClusterCode.AGE] = broken
    try:
        results = asyncio.run(make_matcher().match_patient(PATIENT))
    finally:
        evaluators.EVALUATORS[ClusterCode.AGE] = original

    assert results.total_trials_evaluated == 4
    trial = next(t for t in results.eligible_trials + results.ineligible_trials
                 + results.needs_review_trials if t.nct_id == "NCT001")
    age_result = trial.criteria[0]
    assert age_result.matches is False
    assert age_result.confidence == 0.5
    assert age_result.confidence_reason == "Error during evaluation"
    assert trial.status == TrialStatus.INELIGIBLE  # failed inclusion

    # Unknown cluster codes take the same path
    criterion = Criterion.model_validate({"id": "X_1", "nct_id": "NCT900", "cluster_code": "XYZ"})
    result = asyncio.run(make_matcher().evaluate_criterion(criterion, PATIENT))
    assert result.confidence == 0.5 and result.matches is False
    assert result.confidence_reason == "Error during evaluation"

    print("\n[PASS] Evaluator crash tests passed!")


def test_reviews_submitted_once():
    print("\n" + "="*60)
    print("TEST: Review Submission")
    print("="*60)

    store = PendingReviewStore()
    matcher = make_matcher(review_queue=store)

    results = asyncio.run(matcher.match_patient(PATIENT))
    flagged = next(t for t in results.ineligible_trials if t.nct_id == "NCT004")
    assert flagged.review_items[0].match_method == "direct_unverified"

    reviews = store.list_pending()
    print(f"\nQueued: {reviews}")
    assert len(reviews) == 1
    assert reviews[0].drug_name == "XYZ-999"
    assert reviews[0].trial_id == "NCT004"
    assert reviews[0].criterion_id == "PTH_4"

    asyncio.run(matcher.match_patient(PATIENT))
    assert store.get_stats()["total"] == 1

    print("\n[PASS] Review submission tests passed!")


def test_patient_metadata_is_lenient():
    """Odd timestamp or version values never abort a run."""
    print("\n" + "="*60)
    print("TEST: Patient Metadata")
    print("="*60)

    matcher = make_matcher()
    for metadata in (
        {"version": 1},
        {"version": 2.5, "timestamp": "yesterday"},
        {"timestamp": {"seconds": 5}, "version": ["v1"]},
        {"timestamp": 1700000000000},
    ):
        payload = {"responses": PATIENT["responses"], **metadata}
        results = asyncio.run(matcher.match_patient(payload))
        assert results.total_trials_evaluated == 4
        assert "NCT002" in ids(results.ineligible_trials)

    results = asyncio.run(matcher.match_patient({"responses": {"AGE": {"age": 40}}, "version": 1}))
    assert results.patient_response.version == "1"

    results = asyncio.run(matcher.match_patient({"responses": {}, "timestamp": "not a date"}))
    assert results.patient_response.timestamp is None

    results = asyncio.run(matcher.match_patient({"responses": {}, "timestamp": "2024-03-01T10:00:00Z"}))
    assert results.patient_response.timestamp.year == 2024

    print("\n[PASS] Patient metadata tests passed!")


def test_timeframe_fields_are_lenient():
    """A numeric reference or relation in TIMEFRAME does not drop the criterion."""
    database = TrialDatabase.from_mapping({
        "CLUSTER_PTH": {"criteria": [
            {"id": "PTH_1", "nct_id": "NCT500", "EXCLUSION_STRENGTH": "exclusion",
             "raw_text": "Adalimumab within 12 weeks",
             "conditions": [{"TREATMENT_TYPE": ["adalimumab"],
                             "TIMEFRAME": {"amount": 12, "unit": "weeks",
                                           "relation": "within", "reference": 0}}]},
            {"id": "PTH_2", "nct_id": "NCT501", "EXCLUSION_STRENGTH": "exclusion",
             "conditions": [{"TREATMENT_TYPE": ["adalimumab"],
                             "TIMEFRAME": {"amount": "12", "relation": 1, "reference": {"x": 1}}}]},
        ]},
    })
    assert database.trial_ids() == ["NCT500", "NCT501"]

    timeframe = database.criteria_for("NCT500")[0][1].conditions[0].TIMEFRAME
    assert timeframe.reference == "0"
    assert timeframe.relation == "within"

    timeframe = database.criteria_for("NCT501")[0][1].conditions[0].TIMEFRAME
    assert timeframe.amount == 12.0 and timeframe.unit == "weeks"
    assert timeframe.relation == "1"
    assert timeframe.reference is None

    patient = {"responses": {"PTH": [{"TREATMENT_TYPE": ["Humira"]}]}}
    results = asyncio.run(make_matcher(database=database).match_patient(patient))
    assert results.total_trials_evaluated == 2
    assert ids(results.ineligible_trials) == ["NCT500", "NCT501"]


def test_create_matcher():
    database = TrialDatabase.from_mapping(DATABASE)
    matcher = create_matcher(database)
    assert matcher.database is database
    assert not matcher.cascade.semantic_enabled

    original = settings.TRIAL_DATABASE_PATH
    settings.TRIAL_DATABASE_PATH = None
    try:
        create_matcher()
        assert False, "Expected ValueError without a database"
    except ValueError:
        pass
    finally:
        settings.TRIAL_DATABASE_PATH = original


if __name__ == "__main__":
    print("\n" + "="*60)
    print("TRIAL MATCHER - TEST SUITE")
    print("="*60)

    try:
        test_database_loading()
        test_database_skips_bad_records()
        test_database_errors()
        test_trial_statuses()
        test_every_trial_in_exactly_one_bucket()
        test_idempotent()
        test_sort_is_stable()
        test_empty_trial_is_eligible()
        test_evaluator_crash_is_contained()
        test_reviews_submitted_once()
        test_patient_metadata_is_lenient()
        test_timeframe_fields_are_lenient()
        test_create_matcher()

        print("\n" + "="*60)
        print("ALL TESTS PASSED!")
        print("="*60 + "\n")

    except AssertionError as e:
        print(f"\n[FAIL] TEST FAILED: {e}")
        sys.exit(1)
