"""
Cluster Evaluators

One evaluator per criterion category. Each takes a Criterion and the
EvaluationContext (patient response + cascade) and returns a ClusterVerdict.

Defaults shared by every evaluator:
- Missing or malformed patient slot -> matches=False, confidence 0.5
- Criterion with no usable fields and no parseable raw text ->
  requires_ai=True, matches=False, confidence 0.5 (logged for triage)

Term-list clusters (CMB, PTH, AIC) go through the MatchingCascade and are
coroutines; the numeric clusters are plain functions. EVALUATORS is the
single dispatch table keyed by ClusterCode.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from dataclasses import dataclass

from ..schemas.patient import ClusterCode, PatientResponse
from ..schemas.review import AISuggestion, ReviewPayload
from ..schemas.trial import Condition, Criterion
from .calibration import ConfidenceDecision
from .cascade import MatchOutcome, MatchingCascade, Vocabulary
from .knowledge import normalize_term
from .numeric import (
    ThresholdParse,
    calculate_bmi,
    convert_to_weeks,
    meets_threshold,
    normalize_comparison,
    normalize_time_unit,
    parse_severity,
    parse_thresholds,
    severity_matches,
    timeframe_matches,
    to_kilograms,
    to_number,
)

logger = logging.getLogger(__name__)

MISSING_DATA_CONFIDENCE = 0.5
MEASUREMENT_TYPES = ("BSA", "PASI", "IGA", "DLQI", "PGA")


@dataclass
class ClusterVerdict:
    """What an evaluator decided about one criterion."""
    matches: bool
    confidence: float
    patient_value: str = ""
    confidence_reason: str = ""
    requires_ai: bool = False
    ai_reasoning: Optional[str] = None
    ai_error: bool = False
    needs_admin_review: bool = False
    match_method: str = ""
    review_payload: Optional[ReviewPayload] = None


@dataclass
class EvaluationContext:
    patient: PatientResponse
    cascade: MatchingCascade


Evaluator = Callable[[Criterion, EvaluationContext], Union[ClusterVerdict, Awaitable[ClusterVerdict]]]


def _missing(label: str) -> ClusterVerdict:
    return ClusterVerdict(
        matches=False,
        confidence=MISSING_DATA_CONFIDENCE,
        patient_value=f"{label.capitalize()} not provided",
        confidence_reason=f"Missing patient {label} data",
        match_method="missing_data",
    )


def _unparseable(criterion: Criterion, cluster: ClusterCode, patient_value: str = "") -> ClusterVerdict:
    logger.warning(
        "Criterion %s (%s, %s) has no usable %s fields and no parseable text: %r",
        criterion.id, criterion.nct_id, cluster.value, cluster.value, criterion.raw_text[:120]
    )
    return ClusterVerdict(
        matches=False,
        confidence=MISSING_DATA_CONFIDENCE,
        requires_ai=True,
        patient_value=patient_value,
        confidence_reason="Criterion could not be parsed; needs manual interpretation",
        match_method="unparsed",
    )


def _slot_dict(ctx: EvaluationContext, cluster: ClusterCode) -> Optional[Dict[str, Any]]:
    slot = ctx.patient.slot(cluster)
    return slot if isinstance(slot, dict) else None


def _fmt(value: Optional[float]) -> str:
    if value is None:
        return "?"
    return str(int(value)) if float(value).is_integer() else str(value)


# =============================================================================
# RAW-TEXT FALLBACK
# =============================================================================

def _raw_text_verdict(
    criterion: Criterion,
    parses: List[ThresholdParse],
    patient_value: float,
    patient_label: str,
    convert: Callable[[ThresholdParse], float] = lambda p: p.value,
) -> ClusterVerdict:
    """
    Compare a patient value against thresholds recovered from criterion text.

    Plain phrasing is taken literally: the criterion matches when the patient
    satisfies the written comparison. Prohibitive phrasing ("must not weigh
    < 30 kg") states a requirement; inside an exclusion criterion it is
    inverted so that meeting the requirement means NOT excluded, and the
    result is flagged for review.
    """
    negated = any(p.negated for p in parses)
    requirement = ", ".join(f"{p.requirement} {_fmt(p.value)}{' ' + p.unit if p.unit else ''}" for p in parses)

    if negated and not criterion.is_inclusion:
        meets = all(meets_threshold(patient_value, convert(p), p.requirement) for p in parses)
        return ClusterVerdict(
            matches=not meets,
            confidence=0.85,
            patient_value=patient_label,
            confidence_reason=(
                f"Parsed from text with double negative in an exclusion criterion; "
                f"treated as minimum requirement ({requirement}). Likely mislabeled, needs review."
            ),
            needs_admin_review=True,
            match_method="raw_text_inverted",
        )

    if negated:
        matches = all(meets_threshold(patient_value, convert(p), p.requirement) for p in parses)
    else:
        matches = all(meets_threshold(patient_value, convert(p), p.comparison) for p in parses)
    return ClusterVerdict(
        matches=matches,
        confidence=0.9,
        patient_value=patient_label,
        confidence_reason=f"Parsed from criterion text ({requirement}). 90% due to text parsing.",
        match_method="raw_text",
    )


# =============================================================================
# NUMERIC CLUSTERS
# =============================================================================

def evaluate_age(criterion: Criterion, ctx: EvaluationContext) -> ClusterVerdict:
    slot = ctx.patient.slot(ClusterCode.AGE)
    age = to_number(slot.get("age") if isinstance(slot, dict) else slot)
    if age is None:
        return _missing("age")

    label = f"Patient age: {_fmt(age)} years"
    min_age = to_number(criterion.get("AGE_MIN"))
    max_age = to_number(criterion.get("AGE_MAX"))

    if min_age is None and max_age is None:
        parses = parse_thresholds(criterion.raw_text, "age")
        if not parses:
            return _unparseable(criterion, ClusterCode.AGE, label)
        return _raw_text_verdict(criterion, parses, age, label)

    matches = True
    if min_age is not None and age < min_age:
        matches = False
    if max_age is not None and age > max_age:
        matches = False

    if min_age is not None and max_age is not None:
        requirement = f"{_fmt(min_age)}-{_fmt(max_age)} years"
    elif min_age is not None:
        requirement = f">={_fmt(min_age)} years"
    else:
        requirement = f"<={_fmt(max_age)} years"

    return ClusterVerdict(
        matches=matches,
        confidence=1.0,
        patient_value=label,
        confidence_reason=f"Exact numeric comparison. Required: {requirement}",
        match_method="numeric",
    )


def _patient_body_measures(slot: Dict[str, Any]) -> Tuple[Optional[float], Optional[float]]:
    """Return (bmi, weight_kg); BMI is derived from weight and height when not given."""
    weight = slot.get("weight")
    weight_unit = weight.get("unit", "kg") if isinstance(weight, dict) else "kg"
    weight_kg = to_kilograms(to_number(weight), weight_unit)

    bmi = to_number(slot.get("bmi"))
    if bmi is None:
        height = slot.get("height")
        height_unit = height.get("unit", "cm") if isinstance(height, dict) else "cm"
        bmi = calculate_bmi(weight_kg, to_number(height), "kg", height_unit)
    return bmi, weight_kg


def evaluate_bmi(criterion: Criterion, ctx: EvaluationContext) -> ClusterVerdict:
    slot = _slot_dict(ctx, ClusterCode.BMI)
    if not slot:
        return _missing("BMI/weight")

    bmi, weight_kg = _patient_body_measures(slot)
    parts = []
    if bmi is not None:
        parts.append(f"BMI: {_fmt(bmi)}")
    if weight_kg is not None:
        parts.append(f"Weight: {_fmt(weight_kg)}kg")
    label = ", ".join(parts) or "No BMI/weight data"

    weight_unit = criterion.get("WEIGHT_UNIT") or "kg"
    limits = [
        ("BMI", bmi, to_number(criterion.get("BMI_MIN")), ">="),
        ("BMI", bmi, to_number(criterion.get("BMI_MAX")), "<="),
        ("Weight", weight_kg, to_kilograms(to_number(criterion.get("WEIGHT_MIN")), weight_unit), ">="),
        ("Weight", weight_kg, to_kilograms(to_number(criterion.get("WEIGHT_MAX")), weight_unit), "<="),
    ]
    limits = [limit for limit in limits if limit[2] is not None]

    if not limits:
        # No structured thresholds: fall back to the raw text
        for quantity, value, convert in (
            ("bmi", bmi, lambda p: p.value),
            ("weight", weight_kg, lambda p: to_kilograms(p.value, p.unit)),
        ):
            parses = parse_thresholds(criterion.raw_text, quantity)
            if not parses:
                continue
            if value is None:
                return _missing(quantity if quantity == "weight" else "BMI")
            return _raw_text_verdict(criterion, parses, value, label, convert)
        return _unparseable(criterion, ClusterCode.BMI, label)

    matches = True
    requirements = []
    for name, value, threshold, comparison in limits:
        unit = "kg" if name == "Weight" else ""
        requirements.append(f"{name} {comparison}{_fmt(threshold)}{unit}")
        if value is None:
            return _missing(name.lower() if name == "Weight" else "BMI")
        if not meets_threshold(value, threshold, comparison):
            matches = False

    return ClusterVerdict(
        matches=matches,
        confidence=1.0,
        patient_value=label,
        confidence_reason=f"Exact numeric comparison. Required: {', '.join(requirements)}",
        match_method="numeric",
    )


def _measurement_requirements(criterion: Criterion) -> List[Tuple[str, float, str]]:
    requirements = []
    for name in MEASUREMENT_TYPES:
        threshold = criterion.get(f"{name}_THRESHOLD")
        if threshold is None:
            threshold = criterion.get(f"{name}_MIN")
        threshold = to_number(threshold)
        if threshold is not None:
            requirements.append((name, threshold, normalize_comparison(criterion.get(f"{name}_COMPARISON"))))
    if requirements:
        return requirements

    # Raw text, e.g. "PASI >= 12 and BSA >= 10%"
    text = criterion.raw_text.upper()
    for name in MEASUREMENT_TYPES:
        if name not in text:
            continue
        for parsed in parse_thresholds(criterion.raw_text, name):
            requirements.append((name, parsed.value, parsed.requirement))
    return requirements


def evaluate_measurements(criterion: Criterion, ctx: EvaluationContext) -> ClusterVerdict:
    slot = _slot_dict(ctx, ClusterCode.AAO)
    if not slot:
        return _missing("measurement")

    slot = {str(k).upper(): v for k, v in slot.items()}
    patient_values = {name: to_number(slot.get(name)) for name in MEASUREMENT_TYPES}
    label = ", ".join(f"{n}: {_fmt(v)}" for n, v in patient_values.items() if v is not None) or "No measurements"

    requirements = _measurement_requirements(criterion)
    if not requirements:
        return _unparseable(criterion, ClusterCode.AAO, label)

    required_text = ", ".join(f"{n} {c} {_fmt(t)}" for n, t, c in requirements)
    available = [(n, t, c) for n, t, c in requirements if patient_values[n] is not None]
    if not available:
        return _missing("measurement")

    # Any one measurement meeting its threshold satisfies the criterion
    for name, threshold, comparison in available:
        if meets_threshold(patient_values[name], threshold, comparison):
            return ClusterVerdict(
                matches=True,
                confidence=1.0,
                patient_value=label,
                confidence_reason=f"Exact numeric comparison. {name} {_fmt(patient_values[name])} "
                                  f"meets {comparison} {_fmt(threshold)}",
                match_method="numeric",
            )

    partial = len(available) < len(requirements)
    return ClusterVerdict(
        matches=False,
        confidence=0.8 if partial else 1.0,
        patient_value=label,
        confidence_reason=(
            f"No measurement threshold met. Required: {required_text}."
            + (" 80% due to missing measurements." if partial else "")
        ),
        match_method="numeric",
    )


def evaluate_severity(criterion: Criterion, ctx: EvaluationContext) -> ClusterVerdict:
    slot = ctx.patient.slot(ClusterCode.SEV)
    patient_severity = slot.get("severity") if isinstance(slot, dict) else slot
    if not isinstance(patient_severity, str) or not patient_severity.strip():
        return _missing("severity")

    label = f"Patient severity: {patient_severity}"
    required = criterion.get("SEVERITY") or criterion.get("SEVERITY_MIN") or parse_severity(criterion.raw_text)
    if not required:
        return _unparseable(criterion, ClusterCode.SEV, label)

    matches = severity_matches(required, patient_severity)
    return ClusterVerdict(
        matches=matches,
        confidence=0.9,
        patient_value=label,
        confidence_reason=(
            f"Severity {'match' if matches else 'mismatch'}. Required: {required}. "
            "90% due to subjective severity assessment."
        ),
        match_method="severity",
    )


def evaluate_duration(criterion: Criterion, ctx: EvaluationContext) -> ClusterVerdict:
    slot = _slot_dict(ctx, ClusterCode.CPD)
    duration = to_number(slot.get("duration")) if slot else None
    if duration is None:
        return _missing("duration")

    patient_unit = normalize_time_unit(slot.get("unit") or "months")
    patient_weeks = convert_to_weeks({"amount": duration, "unit": patient_unit})
    label = f"Patient duration: {_fmt(duration)} {patient_unit}"

    criterion_unit = normalize_time_unit(criterion.get("DURATION_UNIT") or "months")
    limits = []
    for field_name, comparison in (("DURATION_MIN", ">="), ("DURATION_MAX", "<=")):
        amount = to_number(criterion.get(field_name))
        if amount is not None:
            limits.append((amount, criterion_unit, comparison))

    method = "duration"
    if not limits:
        parses = parse_thresholds(criterion.raw_text, "duration")
        limits = [(p.value, normalize_time_unit(p.unit or "months"), p.requirement) for p in parses]
        method = "raw_text"
    if not limits:
        return _unparseable(criterion, ClusterCode.CPD, label)

    matches = all(
        meets_threshold(patient_weeks, convert_to_weeks({"amount": amount, "unit": unit}), comparison)
        for amount, unit, comparison in limits
    )
    required_text = ", ".join(f"{c}{_fmt(a)} {u}" for a, u, c in limits)
    same_units = all(unit == patient_unit for _, unit, _ in limits)

    if method == "raw_text":
        confidence = 0.9
    else:
        confidence = 1.0 if matches or same_units else 0.9
    return ClusterVerdict(
        matches=matches,
        confidence=confidence,
        patient_value=label,
        confidence_reason=f"Duration comparison in weeks. Required: {required_text}",
        match_method=method,
    )


def evaluate_variant(criterion: Criterion, ctx: EvaluationContext) -> ClusterVerdict:
    slot = ctx.patient.slot(ClusterCode.NPV)
    variant = slot.get("variant") if isinstance(slot, dict) else slot
    if not isinstance(variant, str) or not variant.strip():
        return _missing("variant")

    label = f"Patient variant: {variant}"
    variants = criterion.get("VARIANT_TYPE") or []
    if isinstance(variants, str):
        variants = [variants]
    variants = [v for v in variants if isinstance(v, str) and v.strip()]
    if not variants:
        return _unparseable(criterion, ClusterCode.NPV, label)

    outcome = ctx.cascade.match_terms([variant], variants, Vocabulary.CONDITION)
    if outcome is not None:
        return ClusterVerdict(
            matches=True,
            confidence=outcome.confidence,
            patient_value=label,
            confidence_reason=f"Variant {outcome.method} match. Required: {' or '.join(variants)}",
            match_method=outcome.method,
        )
    return ClusterVerdict(
        matches=False,
        confidence=0.9,
        patient_value=label,
        confidence_reason=f"Variant mismatch. Required: {' or '.join(variants)}. 90% confidence in no-match.",
        match_method="no_match",
    )


def evaluate_biomarker(criterion: Criterion, ctx: EvaluationContext) -> ClusterVerdict:
    slot = _slot_dict(ctx, ClusterCode.BIO)
    if not slot:
        return _missing("biomarker")

    biomarker = criterion.get("BIOMARKER_TYPE")
    if isinstance(biomarker, list):
        biomarker = next((b for b in biomarker if isinstance(b, str)), None)
    threshold = criterion.get("THRESHOLD")
    if threshold is None:
        threshold = criterion.get("BIOMARKER_THRESHOLD")
    comparison = normalize_comparison(criterion.get("COMPARISON") or criterion.get("BIOMARKER_COMPARISON"))
    if not isinstance(biomarker, str) or not biomarker.strip():
        return _unparseable(criterion, ClusterCode.BIO)

    values = {normalize_term(str(k)): v for k, v in slot.items()}
    patient_value = to_number(values.get(normalize_term(biomarker)))
    if patient_value is None:
        return _missing(biomarker)

    label = f"{biomarker}: {_fmt(patient_value)}"
    required = f"{biomarker} {comparison} {_fmt(to_number(threshold))}" if threshold is not None else biomarker
    if meets_threshold(patient_value, threshold, comparison):
        return ClusterVerdict(
            matches=True,
            confidence=1.0,
            patient_value=label,
            confidence_reason=f"Exact biomarker comparison. Required: {required}",
            match_method="numeric",
        )
    return ClusterVerdict(
        matches=False,
        confidence=0.9,
        patient_value=label,
        confidence_reason=f"Biomarker mismatch. Required: {required}",
        match_method="numeric",
    )


def evaluate_flare(criterion: Criterion, ctx: EvaluationContext) -> ClusterVerdict:
    slot = _slot_dict(ctx, ClusterCode.FLR)
    count = to_number(slot.get("count")) if slot else None
    if count is None:
        return _missing("flare")

    required = to_number(criterion.get("FLARE_COUNT"))
    label = f"Patient flares: {_fmt(count)}"
    if required is None:
        return _unparseable(criterion, ClusterCode.FLR, label)

    timeframe = criterion.get("TIMEFRAME")
    patient_timeframe = slot.get("timeframe")
    if count >= required:
        if timeframe and patient_timeframe:
            if timeframe_matches(timeframe, patient_timeframe):
                return ClusterVerdict(
                    matches=True,
                    confidence=0.95,
                    patient_value=label,
                    confidence_reason=f"Flare count match with timeframe. Required: >={_fmt(required)} flares. "
                                      "95% due to timeframe interpretation.",
                    match_method="numeric",
                )
        else:
            return ClusterVerdict(
                matches=True,
                confidence=0.9,
                patient_value=label,
                confidence_reason=f"Flare count match. Required: >={_fmt(required)}. 90% due to missing timeframe.",
                match_method="numeric",
            )

    return ClusterVerdict(
        matches=False,
        confidence=0.8,
        patient_value=label,
        confidence_reason=f"Flare count or timeframe not met. Required: >={_fmt(required)}. "
                          "80% due to possible missing data.",
        match_method="numeric",
    )


# =============================================================================
# TERM-LIST CLUSTERS (CASCADE)
# =============================================================================

@dataclass(frozen=True)
class TermCluster:
    """How a list-valued cluster names its terms and qualifiers."""
    code: ClusterCode
    label: str
    term_field: str
    vocabulary: Vocabulary
    context: str
    class_fields: Tuple[str, ...] = ()
    qualifiers: Tuple[str, ...] = ()


COMORBIDITY = TermCluster(
    ClusterCode.CMB, "comorbidity", "CONDITION_TYPE", Vocabulary.CONDITION, "medical condition",
    qualifiers=("CONDITION_PATTERN", "SEVERITY", "TIMEFRAME"),
)
TREATMENT = TermCluster(
    ClusterCode.PTH, "treatment", "TREATMENT_TYPE", Vocabulary.DRUG, "drug",
    class_fields=("TREATMENT_PATTERN",), qualifiers=("TIMEFRAME",),
)
INFECTION = TermCluster(
    ClusterCode.AIC, "infection", "INFECTION_TYPE", Vocabulary.CONDITION, "infection",
    qualifiers=("SEVERITY", "TIMEFRAME"),
)


def _qualifiers_pass(criterion_condition: Condition, patient_condition: Condition,
                     qualifiers: Tuple[str, ...]) -> bool:
    """Severity, pattern and timeframe only restrict when both sides state them."""
    if "CONDITION_PATTERN" in qualifiers:
        wanted = {normalize_term(p) for p in criterion_condition.CONDITION_PATTERN}
        given = {normalize_term(p) for p in patient_condition.CONDITION_PATTERN}
        if wanted and given and not wanted & given:
            return False
    if "SEVERITY" in qualifiers and criterion_condition.SEVERITY and patient_condition.SEVERITY:
        if not severity_matches(criterion_condition.SEVERITY, patient_condition.SEVERITY):
            return False
    if "TIMEFRAME" in qualifiers and criterion_condition.TIMEFRAME and patient_condition.TIMEFRAME:
        if not timeframe_matches(criterion_condition.TIMEFRAME, patient_condition.TIMEFRAME):
            return False
    return True


def _criterion_terms(condition: Condition, cluster: TermCluster) -> List[str]:
    terms = list(condition.value(cluster.term_field) or [])
    for name in cluster.class_fields:
        terms.extend(condition.value(name) or [])
    return list(dict.fromkeys(terms))


def _strategy_verdict(outcome: MatchOutcome, criterion: Criterion, cluster: TermCluster) -> ClusterVerdict:
    label = f"Patient {cluster.label}: {outcome.patient_term}"
    if outcome.method == "direct_unverified":
        return ClusterVerdict(
            matches=True,
            confidence=outcome.confidence,
            patient_value=label,
            confidence_reason=(
                f'Direct string match (unverified). "{outcome.patient_term}" matched criterion term '
                f'"{outcome.criterion_term}". Not in the drug database; requires admin review.'
            ),
            needs_admin_review=True,
            match_method=outcome.method,
            review_payload=ReviewPayload(
                drug_name=outcome.patient_term,
                criterion_id=criterion.id,
                nct_id=criterion.nct_id,
                matched_with=outcome.criterion_term,
                match_method=outcome.method,
            ),
        )
    return ClusterVerdict(
        matches=True,
        confidence=outcome.confidence,
        patient_value=label,
        confidence_reason=f'{outcome.method.replace("_", " ").capitalize()} match. '
                          f'"{outcome.patient_term}" matched "{outcome.criterion_term}".',
        match_method=outcome.method,
    )


def _semantic_verdict(outcome: MatchOutcome, criterion: Criterion, cluster: TermCluster,
                      ctx: EvaluationContext) -> ClusterVerdict:
    decision = ctx.cascade.thresholds.classify(outcome.confidence)
    review_payload = None
    needs_review = decision != ConfidenceDecision.EXCLUDE
    if cluster.vocabulary == Vocabulary.DRUG:
        # Unknown drug classified by AI: an admin confirms before it joins the database
        needs_review = True
        review_payload = ReviewPayload(
            drug_name=outcome.patient_term,
            criterion_id=criterion.id,
            nct_id=criterion.nct_id,
            matched_with=outcome.criterion_term,
            match_method="semantic",
            ai_suggestion=AISuggestion(
                drug_class=outcome.suggested_class or "Unknown",
                confidence=outcome.confidence,
                reasoning=outcome.reasoning,
            ),
        )
    return ClusterVerdict(
        matches=True,
        confidence=outcome.confidence,
        patient_value=f"Patient {cluster.label}: {outcome.patient_term}",
        confidence_reason=f'AI semantic analysis. Criterion: "{outcome.criterion_term}". {outcome.reasoning or ""}'.strip(),
        requires_ai=True,
        ai_reasoning=outcome.reasoning,
        needs_admin_review=needs_review,
        match_method="semantic",
        review_payload=review_payload,
    )


async def _evaluate_terms(criterion: Criterion, ctx: EvaluationContext, cluster: TermCluster) -> ClusterVerdict:
    items = ctx.patient.slot_list(cluster.code)
    if items is None:
        return _missing(cluster.label)

    patient_conditions = [Condition.lenient(item) for item in items]
    criterion_conditions = criterion.effective_conditions()
    patient_terms = list(dict.fromkeys(t for c in patient_conditions for t in c.value(cluster.term_field)))
    criterion_terms = list(dict.fromkeys(t for c in criterion_conditions for t in _criterion_terms(c, cluster)))
    label = f"Patient {cluster.label}s: {', '.join(patient_terms) or 'none'}"

    if not criterion_terms:
        return _unparseable(criterion, cluster.code, label)

    # Best qualifying pair; exact matches (1.0) outrank every heuristic
    best: Optional[MatchOutcome] = None
    for criterion_condition in criterion_conditions:
        terms = _criterion_terms(criterion_condition, cluster)
        for patient_condition in patient_conditions:
            outcome = ctx.cascade.match_terms(patient_condition.value(cluster.term_field), terms, cluster.vocabulary)
            if outcome is None or not _qualifiers_pass(criterion_condition, patient_condition, cluster.qualifiers):
                continue
            if best is None or outcome.confidence > best.confidence:
                best = outcome
    if best is not None:
        return _strategy_verdict(best, criterion, cluster)

    semantic_terms = patient_terms
    if cluster.vocabulary == Vocabulary.DRUG:
        # Known drugs are settled by the database; only unknown names go to AI
        semantic_terms = [t for t in patient_terms if not ctx.cascade.resolver.is_known(t)]
    outcome = await ctx.cascade.match_semantic(semantic_terms, criterion_terms, cluster.context)
    if outcome is not None and outcome.matched:
        return _semantic_verdict(outcome, criterion, cluster, ctx)

    required = ", ".join(criterion_terms)
    return ClusterVerdict(
        matches=False,
        confidence=0.9,
        patient_value=label,
        confidence_reason=f"No match found. Criterion required: {required}. 90% confidence in no-match."
                          + (" AI check failed." if outcome is not None and outcome.error else ""),
        requires_ai=outcome is not None,
        ai_reasoning=outcome.reasoning if outcome is not None else None,
        ai_error=outcome.error if outcome is not None else False,
        match_method=outcome.method if outcome is not None else "no_match",
    )


async def evaluate_comorbidity(criterion: Criterion, ctx: EvaluationContext) -> ClusterVerdict:
    return await _evaluate_terms(criterion, ctx, COMORBIDITY)


async def evaluate_treatment_history(criterion: Criterion, ctx: EvaluationContext) -> ClusterVerdict:
    return await _evaluate_terms(criterion, ctx, TREATMENT)


async def evaluate_infection(criterion: Criterion, ctx: EvaluationContext) -> ClusterVerdict:
    return await _evaluate_terms(criterion, ctx, INFECTION)


# =============================================================================
# DISPATCH
# =============================================================================

EVALUATORS: Dict[ClusterCode, Evaluator] = {
    ClusterCode.AGE: evaluate_age,
    ClusterCode.BMI: evaluate_bmi,
    ClusterCode.CMB: evaluate_comorbidity,
    ClusterCode.PTH: evaluate_treatment_history,
    ClusterCode.AIC: evaluate_infection,
    ClusterCode.AAO: evaluate_measurements,
    ClusterCode.SEV: evaluate_severity,
    ClusterCode.CPD: evaluate_duration,
    ClusterCode.NPV: evaluate_variant,
    ClusterCode.BIO: evaluate_biomarker,
    ClusterCode.FLR: evaluate_flare,
}


async def evaluate_cluster(cluster: ClusterCode, criterion: Criterion, ctx: EvaluationContext) -> ClusterVerdict:
    """Dispatch to the cluster's evaluator. Unknown clusters get the weak default."""
    evaluator = EVALUATORS.get(cluster)
    if evaluator is None:
        return ClusterVerdict(
            matches=False,
            confidence=MISSING_DATA_CONFIDENCE,
            confidence_reason=f"No evaluator for cluster {cluster}",
        )
    result = evaluator(criterion, ctx)
    if inspect.isawaitable(result):
        result = await result
    return result
