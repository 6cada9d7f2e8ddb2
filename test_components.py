"""Unit tests for the individual pipeline stages"""

from datetime import date

import pytest
from pydantic import TypeAdapter, ValidationError

from candidate_generator import CandidateGenerator
from classifier import (
    StabilityFormularyClassifier, dlqi_from_stability_flag, formulary_status_for, is_patient_stable,
)
from contraindication_screener import ContraindicationScreener
from cost_calculator import CostCalculator, savings_percent
from dosing import (
    current_reduction_level, get_standard_dosing, next_dosing_step, parse_frequency, regimen_ratio,
)
from exceptions import InputValidationError
from models import (
    Candidate, CandidateType, ClinicalFinding, ContraindicationType, Diagnosis, DoseChangeRecommendation,
    FindingType, FormularyEntry, FormularyStatus, Quadrant, Recommendation, SeverityScoreType, SwitchRecommendation,
)
from orchestrator import parse_assessment_input
from ranker import Ranker
from rationale_composer import RationaleComposer, finding_specificity
from reference_data import ReferenceData, format_findings_for_prompt, label_needs_refresh, normalize_drug_name


# ==================== CLASSIFIER ====================

PSO, ECZ = Diagnosis.PSORIASIS, Diagnosis.ECZEMA
PASI, PGA, EASI, IGA = SeverityScoreType.PASI, SeverityScoreType.PGA, SeverityScoreType.EASI, SeverityScoreType.IGA


@pytest.mark.parametrize("is_stable, dlqi, severity, expected", [
    (True, 25, {}, True),
    (False, 1, {}, False),
    (None, 5, {}, True),
    (None, 5.5, {}, False),
    (None, None, {}, False),
    # Severity instrument for the diagnosis: in range, held 6+ months, DLQI <= 5
    (None, 3, dict(diagnosis=PSO, severity_score_type=PASI, severity_score=4.9, months_stable=6), True),
    (None, 3, dict(diagnosis=PSO, severity_score_type=PASI, severity_score=5, months_stable=12), False),
    (None, 3, dict(diagnosis=PSO, severity_score_type=PGA, severity_score=1, months_stable=12), True),
    (None, 3, dict(diagnosis=PSO, severity_score_type=PGA, severity_score=2, months_stable=12), False),
    (None, 3, dict(diagnosis=ECZ, severity_score_type=EASI, severity_score=6.5, months_stable=8), True),
    (None, 3, dict(diagnosis=ECZ, severity_score_type=EASI, severity_score=7, months_stable=8), False),
    (None, 4, dict(diagnosis=ECZ, severity_score_type=IGA, severity_score=1, months_stable=8), True),
    (None, 3, dict(diagnosis=PSO, severity_score_type=PASI, severity_score=2, months_stable=5), False),
    (None, 3, dict(diagnosis=PSO, severity_score_type=PASI, severity_score=2, months_stable=None), False),
    (None, 9, dict(diagnosis=PSO, severity_score_type=PASI, severity_score=2, months_stable=12), False),
    (None, None, dict(diagnosis=PSO, severity_score_type=PASI, severity_score=2, months_stable=12), False),
    (False, 3, dict(diagnosis=PSO, severity_score_type=PASI, severity_score=2, months_stable=12), False),
    # Instrument that does not apply to the diagnosis falls through to DLQI
    (None, 3, dict(diagnosis=PSO, severity_score_type=EASI, severity_score=20, months_stable=0), True),
    (None, 3, dict(diagnosis=PSO, severity_score_type=PASI, severity_score=None, months_stable=0), True),
])
def test_stability_predicate(is_stable, dlqi, severity, expected):
    assert is_patient_stable(is_stable, dlqi, **severity) is expected


def test_severity_score_payload_classifies_stable(reference, make_payload):
    payload = make_payload(severityScoreType="pasi", severityScore=1.8, severityDurationMonths=9, dlqiScore=3)
    del payload["monthsStable"]
    assessment = parse_assessment_input(payload)

    result = StabilityFormularyClassifier.classify(assessment, reference)

    assert assessment.severity_score_type == SeverityScoreType.PASI
    assert assessment.months_stable == 9
    assert result.quadrant == Quadrant.STABLE_NON_FORMULARY
    assert result.dose_change_eligible


def test_severity_score_out_of_range_classifies_unstable(reference, make_payload):
    payload = make_payload(severityScoreType="PASI", severityScore=11, dlqiScore=3)
    result = StabilityFormularyClassifier.classify(parse_assessment_input(payload), reference)

    assert result.quadrant == Quadrant.UNSTABLE_NON_FORMULARY


def test_unknown_severity_instrument_is_rejected(make_payload):
    with pytest.raises(InputValidationError):
        parse_assessment_input(make_payload(severityScoreType="SCORAD", severityScore=10))


def test_stability_flag_collapses_to_same_predicate():
    assert is_patient_stable(dlqi_score=dlqi_from_stability_flag("stable")) is True
    assert is_patient_stable(dlqi_score=dlqi_from_stability_flag("Unstable")) is False
    assert dlqi_from_stability_flag("unknown") is None


@pytest.mark.parametrize("drug, dlqi, quadrant, status", [
    ("Humira", 2, Quadrant.STABLE_NON_FORMULARY, FormularyStatus.NON_FORMULARY),
    ("Stelara", 2, Quadrant.STABLE_FORMULARY, FormularyStatus.FORMULARY),
    ("Stelara", 9, Quadrant.UNSTABLE_FORMULARY, FormularyStatus.FORMULARY),
    ("Cosentyx", 9, Quadrant.UNSTABLE_NON_FORMULARY, FormularyStatus.NON_FORMULARY),
    ("Tremfya", 2, Quadrant.STABLE_NON_FORMULARY, FormularyStatus.UNKNOWN),
])
def test_quadrant_classification(drug, dlqi, quadrant, status, reference, make_payload):
    payload = make_payload(currentBiologic={"drugName": drug}, dlqiScore=dlqi)
    result = StabilityFormularyClassifier.classify(parse_assessment_input(payload), reference)

    assert result.quadrant == quadrant
    assert result.formulary_status == status


def test_current_drug_resolves_by_generic_name(reference, make_payload):
    payload = make_payload(currentBiologic={"drugName": "adalimumab"})
    result = StabilityFormularyClassifier.classify(parse_assessment_input(payload), reference)

    assert result.current_entry.drug_name == "Humira"


def test_short_stability_blocks_dose_change(reference, make_payload):
    result = StabilityFormularyClassifier.classify(parse_assessment_input(make_payload(monthsStable=4)), reference)

    assert result.is_stable
    assert not result.dose_change_eligible


def test_formulary_status_tiers(reference):
    entries = {e.tier: e for e in reference.formulary}
    assert formulary_status_for(entries[1]) == FormularyStatus.FORMULARY
    assert formulary_status_for(entries[2]) == FormularyStatus.FORMULARY
    assert formulary_status_for(entries[3]) == FormularyStatus.NON_FORMULARY
    assert formulary_status_for(None) == FormularyStatus.UNKNOWN


# ==================== DOSING ====================

@pytest.mark.parametrize("text, expected", [
    ("Every 12 weeks", (12, "week")),
    ("every 2 weeks", (2, "week")),
    ("Every 3 days", (3, "day")),
    ("q4w", (4, "week")),
    ("Weekly", (1, "week")),
    ("every other week", (2, "week")),
    ("Once daily", (1, "day")),
    ("as needed", None),
    (None, None),
])
def test_parse_frequency(text, expected):
    assert parse_frequency(text) == expected


@pytest.mark.parametrize("frequency, level", [
    ("Every 12 weeks", 0),
    ("Every 13 weeks", 0),
    ("Every 16 weeks", 25),
    ("Every 24 weeks", 50),
    ("Every 12 days", 0),
    ("whenever", 0),
])
def test_reduction_level_from_interval(frequency, level):
    assert current_reduction_level(get_standard_dosing("Skyrizi"), None, frequency) == level


@pytest.mark.parametrize("drug, frequency, expected_frequency", [
    ("Skyrizi", "Every 12 weeks", "Every 16 weeks"),
    ("Skyrizi", "Every 16 weeks", "Every 24 weeks"),
    ("Humira", "Every 2 weeks", "Every 3 weeks"),
    ("Enbrel", "Weekly", "Every 2 weeks"),
    ("tremfya", "Every 8 weeks", "Every 11 weeks"),
])
def test_next_interval_step(drug, frequency, expected_frequency):
    step = next_dosing_step(drug, dose="40 mg", frequency=frequency)

    assert step.type == CandidateType.INTERVAL_EXTENSION
    assert step.new_frequency == expected_frequency
    assert step.new_dose == "40 mg"
    assert 0 < step.regimen_ratio < 1


def test_no_step_beyond_fifty_percent():
    assert next_dosing_step("Skyrizi", frequency="Every 24 weeks") is None


def test_unknown_drug_has_no_step():
    assert next_dosing_step("Unlisted-mab", frequency="Every 2 weeks") is None


def test_daily_oral_agent_steps_to_next_marketed_strength():
    step = next_dosing_step("Rinvoq", dose="30 mg", frequency="Once daily")

    assert step.type == CandidateType.DOSE_REDUCTION
    assert step.new_dose == "15 mg"
    assert step.new_frequency == "Once daily"
    assert step.regimen_ratio == pytest.approx(0.5)


@pytest.mark.parametrize("drug, dose", [
    ("Rinvoq", "15 mg"),
    ("upadacitinib", "10 mg"),
    ("Sotyktu", "6 mg"),
])
def test_daily_oral_agent_without_lower_strength_has_no_step(drug, dose):
    assert next_dosing_step(drug, dose=dose, frequency="Once daily") is None


def test_regimen_ratio_combines_interval_and_dose():
    standard = get_standard_dosing("Humira")
    assert regimen_ratio(standard, "40 mg", "Every 2 weeks", "40 mg", "Every 4 weeks") == pytest.approx(0.5)
    assert regimen_ratio(standard, "40 mg", None, "20 mg", "Every 2 weeks") == pytest.approx(0.5)
    assert regimen_ratio(None, None, None, None, None) == 1.0


# ==================== CANDIDATE GENERATOR ====================

def _classify(reference, payload):
    assessment = parse_assessment_input(payload)
    return assessment, StabilityFormularyClassifier.classify(assessment, reference)


def test_generator_order_and_cap(reference, make_payload):
    assessment, classification = _classify(reference, make_payload())
    candidates = CandidateGenerator.generate(assessment, classification, reference)

    assert [c.type for c in candidates] == [
        CandidateType.INTERVAL_EXTENSION, CandidateType.BIOSIMILAR_SWITCH, CandidateType.TIER_SWITCH,
    ]
    assert [c.drug_name for c in candidates] == ["Humira", "Amjevita", "Hadlima"]


def test_tier_switch_tie_break_prefers_lower_tier_then_cost(reference, make_payload):
    assessment, classification = _classify(reference, make_payload(dlqiScore=15))
    switches = CandidateGenerator.tier_switches(assessment, classification, reference, exclude=set(), limit=3)

    assert [c.drug_name for c in switches] == ["Amjevita", "Hadlima", "Enbrel"]


def test_generator_skips_failed_biosimilar(reference, make_payload):
    assessment, classification = _classify(reference, make_payload(failedTherapies=["amjevita"], dlqiScore=15))
    candidates = CandidateGenerator.generate(assessment, classification, reference)

    assert [c.drug_name for c in candidates] == ["Hadlima", "Enbrel"]
    assert candidates[0].type == CandidateType.BIOSIMILAR_SWITCH


def test_unknown_formulary_status_skips_switches(reference, make_payload):
    payload = make_payload(currentBiologic={"drugName": "Tremfya", "frequency": "Every 8 weeks"})
    assessment, classification = _classify(reference, payload)
    candidates = CandidateGenerator.generate(assessment, classification, reference)

    assert [c.type for c in candidates] == [CandidateType.INTERVAL_EXTENSION]


def test_other_diagnosis_generates_nothing(reference, make_payload):
    assessment, classification = _classify(reference, make_payload(diagnosis="OTHER"))
    assert assessment.diagnosis == Diagnosis.OTHER
    assert CandidateGenerator.generate(assessment, classification, reference) == []


# ==================== SCREENER ====================

def _candidate(**kwargs):
    defaults = dict(type=CandidateType.TIER_SWITCH, drug_name="Enbrel", generic_name="etanercept",
                    drug_class="TNF_INHIBITOR", tier=2)
    defaults.update(kwargs)
    return Candidate(**defaults)


def test_screener_flags_class_rule(reference, make_payload):
    assessment = parse_assessment_input(make_payload(contraindications=["heart failure"]))
    screened = ContraindicationScreener.screen_candidate(_candidate(), assessment, reference)

    assert screened.contraindicated
    assert screened.contraindication_reason == "TNF inhibitors can worsen heart failure and increase mortality"


def test_screener_flags_black_box_match(reference, make_payload):
    assessment = parse_assessment_input(make_payload(contraindications=["LYMPHOMA"]))
    screened = ContraindicationScreener.screen_candidate(_candidate(), assessment, reference)

    assert screened.contraindication_reason.startswith("Black box warning: Lymphoma")
    assert "History of lymphoma" in screened.contraindication_reason


def test_screener_flags_psoriatic_arthritis_gap(reference, make_payload):
    assessment = parse_assessment_input(make_payload(hasPsoriaticArthritis=True))
    candidate = _candidate(drug_name="Dupixent", generic_name="dupilumab", drug_class="IL4_13_INHIBITOR")

    screened = ContraindicationScreener.screen_candidate(candidate, assessment, reference)

    assert screened.contraindicated
    assert "psoriatic arthritis" in screened.contraindication_reason


def test_screener_psa_falls_back_to_indications(reference, make_payload):
    assessment = parse_assessment_input(make_payload(hasPsoriaticArthritis=True))
    cibinqo = _candidate(drug_name="Cibinqo", generic_name="abrocitinib", drug_class=None)
    rinvoq = _candidate(drug_name="Rinvoq", generic_name="upadacitinib", drug_class=None)

    assert ContraindicationScreener.screen_candidate(cibinqo, assessment, reference).contraindicated
    assert not ContraindicationScreener.screen_candidate(rinvoq, assessment, reference).contraindicated


def test_screener_flags_failed_therapy(reference, make_payload):
    assessment = parse_assessment_input(make_payload(failedTherapies=["Enbrel"]))
    screened = ContraindicationScreener.screen_candidate(_candidate(), assessment, reference)

    assert screened.contraindication_reason == "Enbrel is on the patient's failed therapy list"


def test_screener_leaves_clean_candidate_untouched(reference, make_payload):
    candidate = _candidate()
    assert ContraindicationScreener.screen_candidate(candidate, parse_assessment_input(make_payload()), reference) is candidate


def test_unknown_contraindication_text_is_dropped(make_payload):
    assessment = parse_assessment_input(make_payload(contraindications=["PREGNANCY", "seasonal allergies"]))
    assert assessment.contraindications == frozenset({ContraindicationType.PREGNANCY})


# ==================== COST CALCULATOR ====================

@pytest.mark.parametrize("savings, current, expected", [
    (48000, 84000, 57.1),
    (-5000, 75000, -6.7),
    (100, 0, None),
    (100, None, None),
    (None, 84000, None),
])
def test_savings_percent(savings, current, expected):
    assert savings_percent(savings, current) == expected


def test_negative_savings_are_not_clamped(reference, make_payload):
    payload = make_payload(currentBiologic={"drugName": "Cosentyx", "frequency": "Every 4 weeks"}, dlqiScore=12)
    assessment, classification = _classify(reference, payload)
    candidate = _candidate(drug_name="Taltz", generic_name="ixekizumab", drug_class="IL17_INHIBITOR")

    priced = CostCalculator.price(candidate, assessment, classification, reference)

    assert priced.annual_savings == -5000
    assert priced.savings_percent == -6.7
    assert priced.recommended_monthly_oop == 50


def test_same_drug_cost_is_prorated(reference, make_payload):
    assessment, classification = _classify(reference, make_payload())
    candidate = Candidate(type=CandidateType.INTERVAL_EXTENSION, drug_name="Humira",
                          new_frequency="Every 4 weeks", regimen_ratio=0.5)

    priced = CostCalculator.price(candidate, assessment, classification, reference)

    assert priced.recommended_annual_cost == 42000
    assert priced.recommended_monthly_oop == 75


def test_zero_current_cost_gives_null_percent(make_payload):
    reference = ReferenceData(formulary=(
        FormularyEntry("P", "Freebie", "freebiemab", "TNF_INHIBITOR", 3, annual_cost_wac=0),
        FormularyEntry("P", "Cheap", "cheapmab", "TNF_INHIBITOR", 1, annual_cost_wac=100),
    ))
    assessment, classification = _classify(reference, make_payload(planId="P", currentBiologic={"drugName": "Freebie"}))
    priced = CostCalculator.price(_candidate(drug_name="Cheap"), assessment, classification, reference)

    assert priced.annual_savings == -100
    assert priced.savings_percent is None
    assert priced.current_monthly_oop is None


# ==================== RATIONALE COMPOSER ====================

def test_specificity_levels():
    candidate = _candidate(drug_name="Amjevita", generic_name="adalimumab-atto")
    drug_level = ClinicalFinding("x", "c1", FindingType.EFFICACY, drug="adalimumab")
    class_level = ClinicalFinding("x", "c2", FindingType.EFFICACY, drug_class="TNF inhibitor")
    indication_level = ClinicalFinding("x", "c3", FindingType.EFFICACY, indication="PSORIASIS")
    other_drug = ClinicalFinding("x", "c4", FindingType.EFFICACY, drug="secukinumab")
    other_indication = ClinicalFinding("x", "c5", FindingType.EFFICACY, drug="adalimumab", indication="ECZEMA")

    assert finding_specificity(drug_level, candidate, "PSORIASIS") == 0
    assert finding_specificity(class_level, candidate, "PSORIASIS") == 1
    assert finding_specificity(indication_level, candidate, "PSORIASIS") == 2
    assert finding_specificity(other_drug, candidate, "PSORIASIS") is None
    assert finding_specificity(other_indication, candidate, "PSORIASIS") is None


def test_rationale_cites_at_most_two_reviewed_findings(reference, make_payload):
    assessment = parse_assessment_input(make_payload())
    candidate = _candidate(type=CandidateType.BIOSIMILAR_SWITCH, drug_name="Amjevita",
                           generic_name="adalimumab-atto", tier=1)

    composed = RationaleComposer.compose(candidate, assessment, reference)

    assert composed.evidence_sources == (
        "Adalimumab biosimilar equivalence review, Formulary Evidence Committee 2023",
        "TNF inhibitor switching safety registry 2021",
    )
    assert composed.rationale.startswith("Amjevita is a tier 1 biosimilar of Humira")
    assert composed.monitoring_plan == "Assess DLQI at 12-16 weeks post-switch."


def test_rationale_falls_back_without_evidence(make_payload):
    assessment = parse_assessment_input(make_payload())
    candidate = Candidate(type=CandidateType.INTERVAL_EXTENSION, drug_name="Humira", new_frequency="Every 3 weeks")

    composed = RationaleComposer.compose(candidate, assessment, ReferenceData())

    assert composed.evidence_sources == ()
    assert composed.rationale.endswith("supported by standard dosing guidelines.")


def test_unreviewed_findings_are_never_returned(reference):
    results = reference.find_clinical_findings(drug="adalimumab", finding_types=[FindingType.INTERVAL_EXTENSION])
    assert results == []


def test_findings_prompt_format(reference):
    text = format_findings_for_prompt(reference.find_clinical_findings(drug="dupilumab"))
    assert text.startswith("📄 Efficacy and Safety of Multiple Dupilumab Dose Regimens")
    assert "\nCitation: Worm M et al." in text
    assert "\nFinding: Dupilumab every 4 weeks" in text


def test_text_search_ranks_by_keyword_overlap(reference):
    results = reference.search_findings_text("dupilumab every 4 weeks eczema")
    assert results[0].drug == "dupilumab"


# ==================== REFERENCE DATA ====================

def test_brand_to_generic_normalization():
    assert normalize_drug_name("Humira") == "adalimumab"
    assert normalize_drug_name(" STELARA ") == "ustekinumab"
    assert normalize_drug_name("adalimumab-atto") == "adalimumab-atto"


def test_label_lookup_by_generic_and_staleness(reference):
    label = reference.get_drug_label_facts("etanercept")

    assert label.brand == "Enbrel"
    assert label.age_days(date(2026, 1, 31)) == 90
    assert not label_needs_refresh(label, 90, today=date(2026, 1, 31))
    assert label_needs_refresh(label, 90, today=date(2026, 2, 1))


# ==================== RANKER ====================

def test_ranker_prefers_same_drug_on_equal_savings():
    switch = _candidate(annual_savings=1000, rationale="r")
    same = Candidate(type=CandidateType.INTERVAL_EXTENSION, drug_name="Zeta", new_frequency="Every 3 weeks",
                     annual_savings=1000, rationale="r")

    ranked = Ranker.rank([switch, same])

    assert [r.drug_name for r in ranked] == ["Zeta", "Enbrel"]
    assert isinstance(ranked[0], DoseChangeRecommendation)
    assert isinstance(ranked[1], SwitchRecommendation)


def test_ranker_treats_null_savings_as_zero():
    unknown = _candidate(drug_name="Alpha", annual_savings=None, rationale="r")
    losing = _candidate(drug_name="Beta", annual_savings=-10, rationale="r")
    winning = _candidate(drug_name="Gamma", annual_savings=10, rationale="r")

    assert [r.drug_name for r in Ranker.rank([losing, unknown, winning])] == ["Gamma", "Alpha", "Beta"]


def test_ranker_surfaces_only_top_contraindicated_when_nothing_is_safe():
    flagged = [
        _candidate(drug_name="A", annual_savings=5, contraindicated=True, contraindication_reason="x", rationale="r"),
        _candidate(drug_name="B", annual_savings=50, contraindicated=True, contraindication_reason="y", rationale="r"),
    ]
    (only,) = Ranker.rank(flagged)

    assert only.drug_name == "B"
    assert only.rank == 1
    assert only.contraindicated


def test_ranker_hides_contraindicated_when_safe_options_exist():
    safe = _candidate(drug_name="Safe", annual_savings=1, rationale="r")
    flagged = _candidate(drug_name="Flagged", annual_savings=100, contraindicated=True,
                         contraindication_reason="x", rationale="r")

    assert [r.drug_name for r in Ranker.rank([flagged, safe])] == ["Safe"]


def test_ranker_empty_is_empty():
    assert Ranker.rank([]) == []


def test_recommendation_rejects_contraindication_without_reason():
    with pytest.raises(ValidationError):
        SwitchRecommendation(rank=1, type=CandidateType.TIER_SWITCH, drug_name="X",
                             rationale="r", contraindicated=True)


def test_recommendation_rejects_non_finite_money():
    with pytest.raises(ValidationError):
        SwitchRecommendation(rank=1, type=CandidateType.TIER_SWITCH, drug_name="X",
                             rationale="r", savings_percent=float("nan"))


def test_dose_change_requires_new_regimen():
    with pytest.raises(ValidationError):
        DoseChangeRecommendation(rank=1, type=CandidateType.DOSE_REDUCTION, drug_name="X", rationale="r")


def test_recommendation_union_dispatches_on_type():
    adapter = TypeAdapter(Recommendation)

    dose = adapter.validate_python({
        "rank": 1, "type": "INTERVAL_EXTENSION", "drugName": "Stelara",
        "rationale": "r", "newFrequency": "Every 16 weeks",
    })
    switch = adapter.validate_python({"rank": 2, "type": "BIOSIMILAR_SWITCH", "drugName": "Amjevita", "rationale": "r"})

    assert isinstance(dose, DoseChangeRecommendation)
    assert isinstance(switch, SwitchRecommendation)
    assert switch.to_output()["requiresPA"] is None
