import json
import random
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from prep_engine import (
    FIELDS,
    RISK_WEIGHTS,
    SCORE_CAP,
    Assessment,
    EligibilityStatus,
    RiskLevel,
    derive_snapshot,
)
from prep_output_adapter import snapshot_to_dict


# Complete, low-risk, counselled, safety screening done
BASE = {
    "inconsistent_condom_use": "no",
    "multiple_partners": "no",
    "recent_sti": "no",
    "partner_hiv_status_known": "no",
    "partner_multiple_partners": "no",
    "partner_injection_drug_use": "no",
    "pregnancy_trimester": "first",
    "plans_to_breastfeed": "no",
    "risk_reduction_counselling_provided": "yes",
    "client_interested_in_prep": "yes",
    "acute_hiv_symptoms": "no",
    "kidney_disease_history": "no",
    "drug_allergy_tenofovir": "no",
    "urinalysis_performed": "yes",
    "urinalysis_normal": "yes",
    "hepatitis_b_screening": "yes",
    "hepatitis_b_screening_result": "non_reactive",
    "syphilis_screening_performed": "yes",
    "syphilis_screening_result": "non_reactive",
}

POSITIVE_PARTNER = {"partner_hiv_status_known": "yes", "partner_hiv_status": "positive"}

WEIGHTED = {w["factor"]: w for w in RISK_WEIGHTS}


def _expected_score(data: dict) -> int:
    total = sum(w["points"] for w in RISK_WEIGHTS if data.get(w["factor"], "") in w["match"])
    return max(0, min(SCORE_CAP, total))


def _rand_weighted_answers(rng: random.Random) -> dict:
    out = {}
    for factor in WEIGHTED:
        out[factor] = rng.choice(("",) + FIELDS[factor].choices)
    return out


def test_score_equals_weight_table_sum_randomized():
    rng = random.Random(20240501)
    for _ in range(300):
        data = _rand_weighted_answers(rng)
        snap = derive_snapshot(data)
        assert snap.score == _expected_score(data)
        assert 0 <= snap.score <= SCORE_CAP
        assert sum(c["points"] for c in snap.contributions) == snap.score


def test_all_weights_sum_to_cap():
    assert sum(w["points"] for w in RISK_WEIGHTS) == SCORE_CAP
    everything = {w["factor"]: w["match"][0] for w in RISK_WEIGHTS}
    assert derive_snapshot(everything).score == SCORE_CAP


def test_score_monotonic_when_one_factor_flips_to_risk_value():
    rng = random.Random(7)
    for _ in range(150):
        data = _rand_weighted_answers(rng)
        factor = rng.choice(list(WEIGHTED))
        before = derive_snapshot({**data, factor: ""}).score
        after = derive_snapshot({**data, factor: WEIGHTED[factor]["match"][-1]}).score
        assert after >= before


def test_each_contribution_carries_its_justification():
    snap = derive_snapshot({
        **BASE,
        "inconsistent_condom_use": "yes",
        "condom_reasons": ["partner_refused", "not_available"],
        "recent_sti": "yes",
        "sti_types": ["syphilis"],
    })
    by_factor = {c["factor"]: c for c in snap.contributions}
    assert "Address specific barriers: partner_refused, not_available" in by_factor["inconsistent_condom_use"]["justification"]
    assert "Follow up on syphilis treatment completion" in by_factor["recent_sti"]["justification"]
    # justification strings also reach the bundle, first-seen order
    recs = snap.recommendations.risk_recommendations
    assert recs.index("Provide intensive counseling on consistent condom use during pregnancy") < recs.index(
        "Ensure complete STI treatment before PrEP initiation"
    )


def test_scenario_a_all_no_first_trimester_not_breastfeeding_is_low_risk():
    snap = derive_snapshot(BASE)
    assert snap.score == 0
    assert snap.level == RiskLevel.LOW
    assert snap.eligibility.status == EligibilityStatus.LOW_RISK
    assert snap.eligibility.eligible is False
    assert snap.eligibility.reason == "Low risk — reassess at 28 weeks or new exposure"


def test_scenario_b_nine_points_is_moderate_and_eligible():
    data = {
        **BASE,
        **POSITIVE_PARTNER,
        "recent_sti": "yes",
        "partner_not_on_art": "yes",
        "partner_detectable_viral_load": "yes",
    }
    snap = derive_snapshot(data)
    assert snap.score == 9
    assert snap.level == RiskLevel.MODERATE
    assert snap.eligibility.status == EligibilityStatus.ELIGIBLE
    assert snap.eligibility.eligible is True
    assert "Moderate risk (5–9 points)" in snap.eligibility.reason


def test_scenario_c_fourteen_points_is_high_and_eligible():
    data = {
        **BASE,
        **POSITIVE_PARTNER,
        "partner_not_on_art": "yes",
        "partner_detectable_viral_load": "yes",
        "partner_injection_drug_use": "yes",
        "recent_sti": "yes",
        "multiple_partners": "yes",
    }
    snap = derive_snapshot(data)
    assert snap.score == 14
    assert snap.level == RiskLevel.HIGH
    assert snap.eligibility.status == EligibilityStatus.ELIGIBLE
    assert "High risk (≥10 points)" in snap.eligibility.reason


def test_scenario_d_two_acute_symptoms_excluded_irrespective_of_score():
    for extra in ({}, {"multiple_partners": "yes", "recent_sti": "yes", "partner_injection_drug_use": "yes", "partner_multiple_partners": "yes"}):
        snap = derive_snapshot({
            **BASE,
            **extra,
            "acute_hiv_symptoms": "yes",
            "acute_symptoms_list": ["fever", "rash"],
        })
        assert snap.eligibility.status == EligibilityStatus.EXCLUDED
        assert snap.eligibility.eligible is False
        assert "acute_symptoms" in snap.eligibility.exclusions
        assert snap.level == RiskLevel.CONTRAINDICATED


def test_single_acute_symptom_does_not_exclude():
    snap = derive_snapshot({**BASE, "acute_hiv_symptoms": "yes", "acute_symptoms_list": ["fever"]})
    assert snap.eligibility.status == EligibilityStatus.LOW_RISK


def test_scenario_e_missing_urinalysis_and_counselling_is_incomplete():
    data = {**BASE, "urinalysis_performed": "no", "risk_reduction_counselling_provided": "no"}
    data.pop("urinalysis_normal")
    snap = derive_snapshot(data)
    assert snap.eligibility.status == EligibilityStatus.INCOMPLETE
    assert snap.eligibility.eligible is None
    assert snap.eligibility.critical_missing == (
        "Urinalysis required for safety screening",
        "Risk-reduction counseling required",
    )


def test_renal_concerns_never_eligible():
    rng = random.Random(99)
    renal_variants = [
        {"kidney_problems": True},
        {"urinalysis_performed": "yes", "urinalysis_normal": "no"},
        {"kidney_disease_history": "yes"},
        {"creatinine_confirmed": "no"},
    ]
    for _ in range(100):
        data = {**BASE, **_rand_weighted_answers(rng), **rng.choice(renal_variants)}
        snap = derive_snapshot(data)
        assert snap.eligibility.eligible is not True
        if snap.completion["risk"].is_complete:
            assert "renal" in snap.eligibility.exclusions


def test_unconfirmed_creatinine_clearance_is_contraindicated():
    high = {**BASE, "multiple_partners": "yes", "recent_sti": "yes", "partner_injection_drug_use": "yes", "partner_multiple_partners": "yes"}
    snap = derive_snapshot({**high, "creatinine_confirmed": "no"})
    assert snap.level == RiskLevel.CONTRAINDICATED
    assert "Creatinine clearance <50 ml/min" in snap.risk["contraindications"]
    assert "PrEP contraindicated - refer for nephrology consultation" in snap.risk["recommendations"]
    assert snap.eligibility.exclusions == ("renal",)
    assert snap.eligibility.eligible is False

    for value in ("yes", "pending"):
        snap = derive_snapshot({**high, "creatinine_confirmed": value})
        assert snap.level == RiskLevel.HIGH, value
        assert snap.eligibility.eligible is True, value

def test_drug_allergy_always_excluded_regardless_of_score():
    rng = random.Random(3)
    for _ in range(100):
        allergy = rng.choice([{"drug_allergies": True}, {"drug_allergy_tenofovir": "yes"}])
        weighted = {k: WEIGHTED[k]["match"][0] if rng.random() < 0.5 else "no" for k in WEIGHTED}
        weighted["pregnancy_trimester"] = rng.choice(FIELDS["pregnancy_trimester"].choices)
        weighted["plans_to_breastfeed"] = rng.choice(FIELDS["plans_to_breastfeed"].choices)
        weighted.pop("partner_not_on_art")
        weighted.pop("partner_detectable_viral_load")
        snap = derive_snapshot({**BASE, **weighted, **allergy})
        assert snap.completion["risk"].is_complete
        assert snap.eligibility.status == EligibilityStatus.EXCLUDED
        assert "drug_allergy" in snap.eligibility.exclusions


def test_client_declined_is_excluded_with_decline_reason():
    high = {**BASE, "multiple_partners": "yes", "recent_sti": "yes", "partner_injection_drug_use": "yes", "partner_multiple_partners": "yes"}
    snap = derive_snapshot({**high, "client_interested_in_prep": "no", "planned_next_steps": ["offer_prep_next_anc"]})
    assert snap.score == 10
    assert snap.eligibility.eligible is False
    assert snap.eligibility.exclusions == ("client_declined",)
    assert "Client declined PrEP" in snap.eligibility.reason


def test_multiple_exclusions_reported_together():
    snap = derive_snapshot({
        **BASE,
        "kidney_problems": True,
        "drug_allergies": True,
        "acute_hiv_symptoms": "yes",
        "acute_symptoms_list": ["fever", "rash", "headaches"],
    })
    assert snap.eligibility.exclusions == ("acute_symptoms", "renal", "drug_allergy")
    assert snap.eligibility.reason == (
        "Exclusion criteria: ≥2 acute HIV symptoms present; "
        "Renal function concerns (abnormal urinalysis or kidney problems); "
        "Known allergy to tenofovir or emtricitabine"
    )


def test_pending_until_risk_checklist_and_interest_answered():
    snap = derive_snapshot({**BASE, "plans_to_breastfeed": ""})
    assert snap.eligibility.status == EligibilityStatus.PENDING
    assert snap.eligibility.eligible is None
    assert snap.level == RiskLevel.UNKNOWN

    snap = derive_snapshot({**BASE, "client_interested_in_prep": ""})
    assert snap.eligibility.status == EligibilityStatus.PENDING


def test_contraindicated_overrides_band_even_while_incomplete():
    snap = derive_snapshot({"bone_density_issues": True})
    assert snap.level == RiskLevel.CONTRAINDICATED
    assert snap.risk["followUpFrequency"] == "Immediate specialist referral"
    assert "Bone density evaluation required" in snap.risk["contraindications"]


def test_empty_input_still_produces_a_snapshot():
    snap = derive_snapshot()
    assert snap.score == 0
    assert snap.level == RiskLevel.UNKNOWN
    assert snap.eligibility.status == EligibilityStatus.PENDING
    assert snap.completion["risk"].is_complete is False
    assert snap.recommendations.decision == "pending"


def test_derive_snapshot_is_idempotent_byte_identical():
    rng = random.Random(11)
    for _ in range(50):
        data = {**BASE, **_rand_weighted_answers(rng)}
        a = Assessment.from_answers(data)
        s1, s2 = derive_snapshot(a), derive_snapshot(a)
        assert s1 == s2
        j1 = json.dumps(snapshot_to_dict(s1, include_trace=True), sort_keys=True, ensure_ascii=False)
        j2 = json.dumps(snapshot_to_dict(s2, include_trace=True), sort_keys=True, ensure_ascii=False)
        assert j1 == j2


def test_snapshot_payloads_are_read_only():
    snap = derive_snapshot({**BASE, "multiple_partners": "yes", "recent_sti": "yes"})
    assert snap.contributions

    with pytest.raises(TypeError):
        snap.gates["tabs"]["prescription"] = True
    with pytest.raises(TypeError):
        snap.contributions[0]["points"] = 99
    with pytest.raises(TypeError):
        snap.visibility["sectionC"] = True
    with pytest.raises(TypeError):
        snap.completion["risk"] = None
    with pytest.raises(TypeError):
        snap.trace[0]["effect"] = ""
    with pytest.raises(AttributeError):
        snap.risk["recommendations"].append("Start PrEP today")
    with pytest.raises(AttributeError):
        snap.contributions[0]["justification"].append("edited")

    again = derive_snapshot({**BASE, "multiple_partners": "yes", "recent_sti": "yes"})
    assert snapshot_to_dict(again, include_trace=True) == snapshot_to_dict(snap, include_trace=True)

def test_trace_records_rule_firings():
    snap = derive_snapshot({**BASE, "recent_sti": "yes"})
    rules = [t["rule"] for t in snap.trace]
    assert rules[0] == "Engine_start"
    assert rules[-1] == "Engine_end"
    assert "Score_recent_sti" in rules
    assert "Eligibility_low_risk" in rules
