import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from answer_ingest.parser import normalize_answers, parse_answer_block, rehydrate


def test_rehydrate_accepts_loose_values_and_camel_case_keys():
    a, warnings = rehydrate({
        "inconsistentCondomUse": "Yes",
        "multiple_partners": False,
        "recentSti": "no",
        "pregnancyTrimester": "2nd trimester",
        "plansToBreastfeed": "not sure",
        "kidneyProblems": "no",
        "syphilis_screening_performed": "Yes",
        "syphilis_screening_result": "Non-Reactive",
        "hepatitis_b_screening_result": "positive",
        "acute_symptoms_list": "Fever, sore throat; rash",
    })
    assert warnings == []
    assert a.get("inconsistent_condom_use") == "yes"
    assert a.get("multiple_partners") == "no"
    assert a.get("recent_sti") == "no"
    assert a.get("pregnancy_trimester") == "second"
    assert a.get("plans_to_breastfeed") == "unsure"
    assert a.get("kidney_problems") is False
    assert a.get("syphilis_screening_result") == "non_reactive"
    assert a.get("hepatitis_b_screening_result") == "reactive"
    assert a.get("acute_symptoms_list") == ("fever", "sore-throat", "rash")


def test_rehydrate_absent_fields_stay_unanswered():
    a, warnings = rehydrate({"recent_sti": "yes"})
    assert warnings == []
    assert a.get("multiple_partners") == ""
    assert a.get("sti_types") == ()
    assert a.get("drug_allergies") is False

    empty, warnings = rehydrate(None)
    assert warnings == []
    assert not empty.has("client_interested_in_prep")


def test_rehydrate_reports_unknown_keys_and_bad_values_without_raising():
    a, warnings = rehydrate({
        "favourite_colour": "blue",
        "pregnancy_trimester": "fourth",
        "drug_allergies": "maybe",
        "sti_types": ["syphilis", "measles"],
    })
    assert warnings == [
        "Ignored unknown field 'favourite_colour'",
        "pregnancy_trimester: 'fourth' is not one of first, second, third",
        "drug_allergies: expected yes/no, got 'maybe'",
        "sti_types: dropped unrecognised value 'measles'",
    ]
    assert a.get("pregnancy_trimester") == ""
    assert a.get("sti_types") == ("syphilis",)


def test_normalize_answers_keeps_text_and_maps_unknown_choices():
    out, warnings = normalize_answers({
        "kidney_disease_history": "Unknown",
        "partner_not_on_art": "don't know",
        "next_counselling_date": " 2026-11-02 ",
    })
    assert warnings == []
    assert out == {
        "kidney_disease_history": "unknown",
        "partner_not_on_art": "unknown",
        "next_counselling_date": "2026-11-02",
    }


def test_parse_answer_block_labels_and_field_names():
    text = """
    ANC PrEP screening
    Inconsistent condom use: Yes
    Multiple partners: no
    recent_sti: No
    Partner HIV status knowledge: yes
    Partner HIV status: Positive
    Current trimester: third
    Acute HIV symptoms assessment: yes
    Acute HIV symptoms: fever, rash
    Unrelated line without colon
    """
    raw = parse_answer_block(text)
    assert raw == {
        "inconsistent_condom_use": "Yes",
        "multiple_partners": "no",
        "recent_sti": "No",
        "partner_hiv_status_known": "yes",
        "partner_hiv_status": "Positive",
        "pregnancy_trimester": "third",
        "acute_hiv_symptoms": "yes",
        "acute_symptoms_list": "fever, rash",
    }

    a, warnings = rehydrate(raw)
    assert warnings == []
    assert a.get("partner_hiv_status") == "positive"
    assert a.get("acute_symptoms_list") == ("fever", "rash")


def test_parse_answer_block_empty_text():
    assert parse_answer_block("") == {}
    assert parse_answer_block(None) == {}


def test_rehydrate_warns_on_non_list_multi_values():
    a, warnings = rehydrate({"recent_sti": "yes", "sti_types": 5, "acute_symptoms_list": {"fever": True}})
    assert warnings == [
        "sti_types: expected a list of values, got 5",
        "acute_symptoms_list: expected a list of values, got {'fever': True}",
    ]
    assert a.get("recent_sti") == "yes"
    assert a.get("sti_types") == ()

    a, warnings = rehydrate(["recent_sti", "yes"])
    assert warnings == ["Ignored answer record of type list"]
    assert not a.has("recent_sti")


def test_register_wording_for_urinalysis_and_partner_art():
    text = """
    Urinalysis performed: yes
    Urinalysis normal: Normal
    Partner HIV status knowledge: yes
    Partner HIV status: positive
    Partner ART status: Not on ART
    """
    a, warnings = rehydrate(parse_answer_block(text))
    assert warnings == []
    assert a.get("urinalysis_normal") == "yes"
    assert a.get("partner_not_on_art") == "yes"

    a, warnings = rehydrate({
        "urinalysis_performed": "yes",
        "urinalysis_normal": "Abnormal",
        "partner_hiv_status_known": "yes",
        "partner_hiv_status": "positive",
        "partner_not_on_art": "on ART",
    })
    assert warnings == []
    assert a.get("urinalysis_normal") == "no"
    assert a.get("partner_not_on_art") == "no"


def test_yes_no_matches_whole_words_only():
    out, warnings = normalize_answers({
        "multiple_partners": "nothing to report",
        "recent_sti": "yesterday",
        "drug_allergies": "none",
        "kidney_problems": "N",
    })
    assert out == {"drug_allergies": False, "kidney_problems": False}
    assert warnings == [
        "multiple_partners: 'nothing to report' is not one of yes, no",
        "recent_sti: 'yesterday' is not one of yes, no",
    ]
