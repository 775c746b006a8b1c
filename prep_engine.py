# prep_engine.py
# ANC PrEP v1.0: antenatal PrEP screening engine (risk score + eligibility)
#
# One explicit pipeline per answer change (derive_snapshot):
# - Risk score: additive 20-point table, each factor emitted with its justification
# - Risk level: Unknown / Low / Moderate / High; Contraindicated overrides the band
# - Completion: risk checklist + eligibility checklist (conditionally required fields)
# - Eligibility: completeness gate → absolute exclusions → critical-missing → risk band
# - Recommendations: prep_recommendations bundle (decision + screening results)
#
# Answer record:
#     - FIELDS is the only list of answer keys; unknown keys raise KeyError
#     - with_answer() clears dependent sub-answers via DEPENDENT_FIELDS
# Rule trace:
#     - trace: list of rule firings with values + effects

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

if TYPE_CHECKING:
    from prep_recommendations import RecommendationBundle

logger = logging.getLogger(__name__)


VERSION = {
    "engine": "anc-prep v1.0",
    "riskScore": "ANC PrEP 20-point score (High ≥10, Moderate 5–9, Low 0–4)",
    "eligibility": "Completeness gate + WHO/Zambian CG exclusions + critical safety checks",
}

SCORE_CAP = 20
HIGH_RISK_THRESHOLD = 10
MODERATE_RISK_THRESHOLD = 5


class RiskLevel(Enum):
    UNKNOWN = "Unknown"
    LOW = "Low"
    MODERATE = "Moderate"
    HIGH = "High"
    CONTRAINDICATED = "Contraindicated"


class EligibilityStatus(Enum):
    PENDING = "pending"
    INCOMPLETE = "incomplete"
    EXCLUDED = "excluded"
    ELIGIBLE = "eligible"
    LOW_RISK = "low_risk"


# ----------------------------
# Answer fields
# ----------------------------
@dataclass(frozen=True)
class FieldSpec:
    key: str
    label: str
    kind: str  # choice | multi | flag | text
    choices: Tuple[str, ...] = ()

    def blank(self) -> Any:
        if self.kind == "multi":
            return ()
        if self.kind == "flag":
            return False
        return ""


YES_NO = ("yes", "no")
YES_NO_PENDING = ("yes", "no", "pending")
SCREENING_RESULTS = ("reactive", "non_reactive")

ACUTE_SYMPTOMS = ("fever", "sore-throat", "aches", "pains", "swollen-glands", "mouth-sores", "headaches", "rash")
STI_TYPES = (
    "syphilis", "gonorrhea", "chlamydia", "trichomonas", "herpes", "hpv",
    "hepatitis_b", "pelvic_inflammatory_disease", "other",
)
CONDOM_REASONS = ("partner_refused", "not_available", "trusted_partner", "trying_to_conceive", "other")
COUNSELLING_NOT_PROVIDED_REASONS = (
    "client_declined", "time_resource_constraints", "language_communication_barrier",
    "client_not_ready", "provider_did_not_offer", "other",
)
LACK_OF_INTEREST_REASONS = (
    "does_not_perceive_risk", "prefers_other_methods", "concerned_side_effects_stigma",
    "discuss_with_partner", "decide_later_visit", "other",
)
PLANNED_NEXT_STEPS = (
    "schedule_future_counselling", "refer_peer_educator", "provide_educational_materials",
    "offer_prep_next_anc", "no_further_action", "other",
)

_FIELD_LIST = [
    # Client risk factors
    FieldSpec("inconsistent_condom_use", "Inconsistent condom use", "choice", YES_NO),
    FieldSpec("condom_reasons", "Reasons for inconsistent condom use", "multi", CONDOM_REASONS),
    FieldSpec("condom_other_reason", "Other condom use reason", "text"),
    FieldSpec("multiple_partners", "Multiple partners", "choice", YES_NO),
    FieldSpec("recent_sti", "Recent STI diagnosis", "choice", YES_NO),
    FieldSpec("sti_types", "STI types", "multi", STI_TYPES),
    FieldSpec("sti_other_specify", "Other STI", "text"),
    # Partner risk factors
    FieldSpec("partner_hiv_status_known", "Partner HIV status knowledge", "choice", YES_NO),
    FieldSpec("partner_hiv_status", "Partner HIV status", "choice", ("positive", "negative", "unknown")),
    FieldSpec("partner_not_on_art", "Partner ART status", "choice", ("yes", "no", "unknown")),
    FieldSpec("partner_detectable_viral_load", "Partner viral load", "choice", ("yes", "no", "unknown")),
    FieldSpec("partner_multiple_partners", "Partner multiple partners", "choice", YES_NO),
    FieldSpec("partner_injection_drug_use", "Partner injection drugs", "choice", YES_NO),
    # Pregnancy modifiers
    FieldSpec("pregnancy_trimester", "Current trimester", "choice", ("first", "second", "third")),
    FieldSpec("plans_to_breastfeed", "Plans to breastfeed", "choice", ("yes", "no", "unsure")),
    # Contraindication flags
    FieldSpec("kidney_problems", "Kidney problems", "flag"),
    FieldSpec("bone_density_issues", "Bone density issues", "flag"),
    FieldSpec("drug_allergies", "Drug allergies", "flag"),
    # Section A: risk reduction counselling
    FieldSpec("risk_reduction_counselling_provided", "Risk reduction counseling provided", "choice", YES_NO),
    FieldSpec("counselling_not_provided_reasons", "Reasons counseling not provided", "multi", COUNSELLING_NOT_PROVIDED_REASONS),
    FieldSpec("counselling_not_provided_other", "Other reason counseling not provided", "text"),
    # Section B: client interest
    FieldSpec("client_interested_in_prep", "Client interest in PrEP", "choice", YES_NO),
    FieldSpec("lack_of_interest_reasons", "Reasons for lack of interest", "multi", LACK_OF_INTEREST_REASONS),
    FieldSpec("lack_of_interest_other", "Other reason for lack of interest", "text"),
    # Section C: planned next steps
    FieldSpec("planned_next_steps", "Planned next steps", "multi", PLANNED_NEXT_STEPS),
    FieldSpec("planned_next_steps_other", "Other planned next steps", "text"),
    FieldSpec("next_counselling_date", "Next counseling date", "text"),
    # Section F: baseline safety screening
    FieldSpec("urinalysis_performed", "Urinalysis performed", "choice", YES_NO),
    FieldSpec("urinalysis_normal", "Urinalysis normal", "choice", YES_NO),
    FieldSpec("creatinine_confirmed", "Creatinine confirmed", "choice", YES_NO_PENDING),
    FieldSpec("hepatitis_b_screening", "Hepatitis B screening performed", "choice", YES_NO_PENDING),
    FieldSpec("hepatitis_b_screening_result", "Hepatitis B screening result", "choice", SCREENING_RESULTS),
    FieldSpec("syphilis_screening_performed", "Syphilis screening performed", "choice", YES_NO_PENDING),
    FieldSpec("syphilis_screening_result", "Syphilis screening result", "choice", SCREENING_RESULTS),
    # Section D: acute HIV symptoms
    FieldSpec("acute_hiv_symptoms", "Acute HIV symptoms assessment", "choice", YES_NO),
    FieldSpec("acute_symptoms_list", "Acute HIV symptoms", "multi", ACUTE_SYMPTOMS),
    # Section E: medical history
    FieldSpec("kidney_disease_history", "Kidney disease history", "choice", ("yes", "no", "unknown")),
    FieldSpec("drug_allergy_tenofovir", "Tenofovir/emtricitabine allergy", "choice", YES_NO),
]

FIELDS: Dict[str, FieldSpec] = {f.key: f for f in _FIELD_LIST}

RISK_TRIAD = ("inconsistent_condom_use", "multiple_partners", "recent_sti")


def _is(*values: str) -> Callable[[Any], bool]:
    return lambda v: v in values


def _includes(*values: str) -> Callable[[Any], bool]:
    return lambda v: any(x in (v or ()) for x in values)


# (parent, keep children while parent satisfies, children)
DEPENDENT_FIELDS: List[Tuple[str, Callable[[Any], bool], Tuple[str, ...]]] = [
    ("inconsistent_condom_use", _is("yes"), ("condom_reasons", "condom_other_reason")),
    ("condom_reasons", _includes("other"), ("condom_other_reason",)),
    ("recent_sti", _is("yes"), ("sti_types", "sti_other_specify")),
    ("sti_types", _includes("other"), ("sti_other_specify",)),
    ("partner_hiv_status_known", _is("yes"), ("partner_hiv_status",)),
    ("partner_hiv_status", _is("positive"), ("partner_not_on_art", "partner_detectable_viral_load")),
    ("risk_reduction_counselling_provided", _is("no"), ("counselling_not_provided_reasons", "counselling_not_provided_other")),
    ("counselling_not_provided_reasons", _includes("other"), ("counselling_not_provided_other",)),
    (
        "client_interested_in_prep",
        _is("no"),
        ("lack_of_interest_reasons", "lack_of_interest_other", "planned_next_steps", "planned_next_steps_other", "next_counselling_date"),
    ),
    ("lack_of_interest_reasons", _includes("other"), ("lack_of_interest_other",)),
    ("planned_next_steps", _includes("other"), ("planned_next_steps_other",)),
    ("planned_next_steps", _includes("schedule_future_counselling", "offer_prep_next_anc"), ("next_counselling_date",)),
    ("urinalysis_performed", _is("yes"), ("urinalysis_normal",)),
    ("hepatitis_b_screening", _is("yes"), ("hepatitis_b_screening_result",)),
    ("syphilis_screening_performed", _is("yes"), ("syphilis_screening_result",)),
    ("acute_hiv_symptoms", _is("yes"), ("acute_symptoms_list",)),
]


def coerce_answer(key: str, value: Any) -> Any:
    """Validate one answer against FIELDS and return its stored form."""
    spec = FIELDS[key]
    if value is None:
        return spec.blank()

    if spec.kind == "flag":
        if not isinstance(value, bool):
            raise ValueError(f"{key} expects a boolean, got {value!r}")
        return value

    if spec.kind == "text":
        if not isinstance(value, str):
            raise ValueError(f"{key} expects text, got {value!r}")
        return value

    if spec.kind == "multi":
        if isinstance(value, str):
            raise ValueError(f"{key} expects a list of values, got {value!r}")
        items: List[str] = []
        for item in value:
            if item not in spec.choices:
                raise ValueError(f"{key}: {item!r} is not one of {spec.choices}")
            if item not in items:
                items.append(item)
        return tuple(items)

    if value != "" and value not in spec.choices:
        raise ValueError(f"{key}: {value!r} is not one of {spec.choices}")
    return value


def _is_answered(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, tuple):
        return len(value) > 0
    return value not in ("", None)


def _apply_resets(answers: Dict[str, Any], changed: str) -> List[str]:
    cleared: List[str] = []
    queue = [changed]
    while queue:
        parent = queue.pop(0)
        for rule_parent, keep, children in DEPENDENT_FIELDS:
            if rule_parent != parent or keep(answers[parent]):
                continue
            for child in children:
                if _is_answered(answers[child]):
                    answers[child] = FIELDS[child].blank()
                    cleared.append(child)
                    queue.append(child)
    return cleared


# ----------------------------
# Assessment record
# ----------------------------
@dataclass(frozen=True)
class Assessment:
    answers: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({k: f.blank() for k, f in FIELDS.items()}))

    @classmethod
    def from_answers(cls, data: Optional[Mapping[str, Any]] = None) -> "Assessment":
        """Build a record from a partial mapping; absent fields are unanswered."""
        answers = {k: f.blank() for k, f in FIELDS.items()}
        for k, v in (data or {}).items():
            if k not in FIELDS:
                raise KeyError(f"Unknown assessment field: {k}")
            answers[k] = coerce_answer(k, v)
        return cls(MappingProxyType(answers))

    def get(self, k: str) -> Any:
        if k not in FIELDS:
            raise KeyError(f"Unknown assessment field: {k}")
        return self.answers[k]

    def has(self, k: str) -> bool:
        return _is_answered(self.get(k))

    def with_answer(self, k: str, value: Any) -> "Assessment":
        """Return a new record with k set; dependent sub-answers are cleared."""
        answers = dict(self.answers)
        answers[k] = coerce_answer(k, value)
        for parent, keep, children in DEPENDENT_FIELDS:
            if k in children and _is_answered(answers[k]) and not keep(answers[parent]):
                logger.debug("Answer %s dropped: not asked while %s=%r", k, parent, answers[parent])
                answers[k] = FIELDS[k].blank()
        cleared = _apply_resets(answers, k)
        if cleared:
            logger.debug("Answer %s=%r cleared dependent fields %s", k, answers[k], cleared)
        return Assessment(MappingProxyType(answers))

    def with_answers(self, updates: Mapping[str, Any]) -> "Assessment":
        a = self
        for k, v in updates.items():
            a = a.with_answer(k, v)
        return a

    def risk_triad(self) -> Tuple[str, ...]:
        return tuple(self.answers[k] for k in RISK_TRIAD)

    def to_dict(self) -> Dict[str, Any]:
        return {k: (list(v) if isinstance(v, tuple) else v) for k, v in self.answers.items()}


# ----------------------------
# Trace helper (auditable rules)
# ----------------------------
def add_trace(trace: List[Dict[str, Any]], rule: str, value: Any = None, effect: str = "") -> None:
    trace.append({"rule": rule, "value": value, "effect": effect})


def dedupe(items: Iterable[str]) -> List[str]:
    """First-seen order uniqueness."""
    seen = set()
    out = []
    for x in items:
        if x not in seen:
            seen.add(x)
            out.append(x)
    return out


def freeze(value: Any) -> Any:
    """Read-only view for snapshot payloads: dicts become mappingproxies, lists become tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


# ----------------------------
# Risk score (0–20) with per-factor justification
# ----------------------------
RISK_WEIGHTS: List[Dict[str, Any]] = [
    {"factor": "inconsistent_condom_use", "match": ("yes",), "points": 2, "label": "Inconsistent condom use"},
    {"factor": "multiple_partners", "match": ("yes",), "points": 2, "label": "Multiple sexual partners"},
    {"factor": "recent_sti", "match": ("yes",), "points": 3, "label": "Recent STI diagnosis"},
    {"factor": "partner_not_on_art", "match": ("yes",), "points": 3, "label": "HIV-positive partner not on ART"},
    {"factor": "partner_detectable_viral_load", "match": ("yes",), "points": 3, "label": "Partner with detectable viral load"},
    {"factor": "partner_multiple_partners", "match": ("yes",), "points": 2, "label": "Partner has multiple partners"},
    {"factor": "partner_injection_drug_use", "match": ("yes",), "points": 3, "label": "Partner injects drugs"},
    {"factor": "pregnancy_trimester", "match": ("second", "third"), "points": 1, "label": "Second or third trimester"},
    {"factor": "plans_to_breastfeed", "match": ("yes",), "points": 1, "label": "Plans to breastfeed"},
]

_FACTOR_JUSTIFICATION = {
    "inconsistent_condom_use": ["Provide intensive counseling on consistent condom use during pregnancy"],
    "multiple_partners": [
        "Counsel on reducing number of sexual partners",
        "Emphasize importance of partner reduction during pregnancy",
    ],
    "recent_sti": ["Ensure complete STI treatment before PrEP initiation"],
    "partner_not_on_art": [
        "Urgent partner linkage to HIV care and ART initiation",
        "Provide partner ART adherence support and education",
    ],
    "partner_detectable_viral_load": [
        "Partner viral load monitoring and ART adherence support",
        "Recent detectable viral load - intensify partner support",
    ],
    "partner_multiple_partners": [
        "Counsel on partner risk reduction and safer sex practices",
        "Address partner multiple sexual relationships",
    ],
    "partner_injection_drug_use": [
        "Partner substance abuse counseling and harm reduction",
        "Urgent partner injection drug use intervention and testing",
    ],
    "pregnancy_trimester": [],
    "plans_to_breastfeed": [],
}


def _justification(a: Assessment, factor: str) -> List[str]:
    lines = list(_FACTOR_JUSTIFICATION[factor])
    if factor == "inconsistent_condom_use" and a.has("condom_reasons"):
        lines.append(f"Address specific barriers: {', '.join(a.get('condom_reasons'))}")
    if factor == "recent_sti" and a.has("sti_types"):
        lines.append(f"Follow up on {', '.join(a.get('sti_types'))} treatment completion")
    return lines


def risk_score(a: Assessment, trace: List[Dict[str, Any]]) -> Dict[str, Any]:
    contributions: List[Dict[str, Any]] = []
    total = 0
    for w in RISK_WEIGHTS:
        value = a.get(w["factor"])
        if value not in w["match"]:
            continue
        total += w["points"]
        contributions.append({
            "factor": w["factor"],
            "label": w["label"],
            "points": w["points"],
            "justification": _justification(a, w["factor"]),
        })
        add_trace(trace, f"Score_{w['factor']}", value, f"+{w['points']} ({w['label']})")

    score = max(0, min(SCORE_CAP, total))
    add_trace(trace, "Score_total", score, f"Total risk score={score}/{SCORE_CAP}")
    return {"score": score, "contributions": contributions}


def score_band(score: int) -> RiskLevel:
    if score >= HIGH_RISK_THRESHOLD:
        return RiskLevel.HIGH
    if score >= MODERATE_RISK_THRESHOLD:
        return RiskLevel.MODERATE
    return RiskLevel.LOW


# ----------------------------
# Contraindications (level override)
# ----------------------------
def acute_symptom_count(a: Assessment) -> int:
    return len(a.get("acute_symptoms_list"))


def urinalysis_abnormal(a: Assessment) -> bool:
    return a.get("urinalysis_performed") == "yes" and a.get("urinalysis_normal") == "no"


def contraindications(a: Assessment, trace: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    found: List[Dict[str, Any]] = []

    def hit(code: str, label: str, recs: List[str]) -> None:
        found.append({"code": code, "label": label, "recommendations": recs})
        add_trace(trace, f"Contraindication_{code}", True, label)

    if a.get("kidney_problems"):
        hit("kidney_problems", "Kidney function assessment required (eGFR <60)", [
            "Defer PrEP until kidney function evaluated - Alternative prevention methods",
            "Nephrology consultation required before PrEP consideration",
        ])
    if a.get("bone_density_issues"):
        hit("bone_density_issues", "Bone density evaluation required", [
            "Defer PrEP until bone health evaluated - Use alternative prevention",
            "Endocrinology consultation for bone health assessment",
        ])
    if a.get("drug_allergies"):
        hit("drug_allergies", "Drug allergy assessment required", [
            "Allergy evaluation required before PrEP - Consider alternative prevention",
            "Document specific drug allergies and alternative regimen options",
        ])
    if a.get("drug_allergy_tenofovir") == "yes":
        hit("drug_allergy_tenofovir", "Allergy to tenofovir/emtricitabine - absolute contraindication", [
            "PrEP contraindicated - do not initiate",
        ])
    if a.get("kidney_disease_history") == "yes":
        hit("kidney_disease_history", "History of kidney disease - defer PrEP", [
            "Defer PrEP and refer for further renal assessment",
            "Repeat renal testing after two weeks if recently abnormal",
        ])
    if urinalysis_abnormal(a):
        hit("urinalysis_abnormal", "Abnormal urinalysis - defer PrEP until further renal assessment", [
            "Defer PrEP until further renal assessment is complete",
        ])
    if a.get("creatinine_confirmed") == "no":
        hit("creatinine_clearance", "Creatinine clearance <50 ml/min", [
            "PrEP contraindicated - refer for nephrology consultation",
        ])
    if acute_symptom_count(a) >= 2:
        hit("acute_hiv_symptoms", "Acute HIV symptoms present - defer PrEP pending HIV RNA testing", [
            "Defer PrEP and perform HIV RNA or antigen/antibody testing immediately",
        ])
    return found


def risk_level(score: int, risk_complete: bool, contra: List[Dict[str, Any]], trace: List[Dict[str, Any]]) -> RiskLevel:
    if contra:
        level = RiskLevel.CONTRAINDICATED
    elif not risk_complete:
        level = RiskLevel.UNKNOWN
    else:
        level = score_band(score)
    add_trace(trace, "Risk_level", level.value, f"score={score}; complete={risk_complete}; contraindications={len(contra)}")
    return level


# ----------------------------
# Risk-engine recommendations
# ----------------------------
def _pregnancy_scenarios(a: Assessment, score: int) -> List[str]:
    trimester = a.get("pregnancy_trimester")
    breastfeed = a.get("plans_to_breastfeed")
    out = []
    if score >= MODERATE_RISK_THRESHOLD:
        if trimester == "first" and breastfeed == "yes":
            out.append("SCENARIO: First trimester, plans to breastfeed - Start PrEP now with monthly follow-up and postpartum continuation through CWC")
        if trimester == "third" and score >= HIGH_RISK_THRESHOLD and breastfeed == "yes":
            out.append("SCENARIO: Third trimester, high risk, plans to breastfeed - Initiate PrEP now with postpartum handover instructions and 6-week continuation")
        if trimester == "second" and breastfeed == "unsure":
            out.append("SCENARIO: Second trimester, unsure about breastfeeding - Initiate PrEP if risk score ≥ moderate, reassess at delivery")
    if breastfeed == "yes" and (a.get("partner_not_on_art") == "yes" or a.get("partner_detectable_viral_load") == "yes"):
        out.append("SCENARIO: Breastfeeding planned with partner HIV risk - Initiate PrEP with adherence support and viral suppression monitoring")
    return out


def _has_specific_scenario(a: Assessment, score: int) -> bool:
    trimester = a.get("pregnancy_trimester")
    breastfeed = a.get("plans_to_breastfeed")
    return (
        (trimester == "first" and breastfeed == "yes")
        or (trimester == "third" and score >= HIGH_RISK_THRESHOLD and breastfeed == "yes")
        or (trimester == "second" and breastfeed == "unsure")
    )


_TRIMESTER_GUIDANCE = {
    "third": "Third trimester: Final window for PrEP initiation. Prioritize postpartum handover and 6-week follow-up",
    "second": "Second trimester: Still eligible for PrEP. May need faster follow-up and adherence counseling",
    "first": "First trimester: Optimal timing for PrEP initiation with maximum prevention benefit across pregnancy and breastfeeding",
}

_BREASTFEEDING_GUIDANCE_HIGH = {
    "yes": "Plans to breastfeed: Recommend PrEP continuation postpartum until breastfeeding ends",
    "no": "Not breastfeeding: Consider safe PrEP discontinuation at 6-12 weeks postpartum",
    "unsure": "Unsure about breastfeeding: Reassess at delivery for continuation decision",
}

_BREASTFEEDING_GUIDANCE_MODERATE = {
    "yes": "Plans to breastfeed: Discuss PrEP benefits/risks and postpartum options",
    "unsure": "Unsure about breastfeeding: Discuss PrEP timing and delivery reassessment",
}


def risk_recommendations(
    a: Assessment,
    score: int,
    level: RiskLevel,
    contributions: List[Dict[str, Any]],
    contra: List[Dict[str, Any]],
) -> Dict[str, Any]:
    recs: List[str] = []
    for c in contributions:
        recs.extend(c["justification"])
    for c in contra:
        recs.extend(c["recommendations"])

    recs.extend(_pregnancy_scenarios(a, score))

    follow_up = ""
    if level == RiskLevel.CONTRAINDICATED:
        follow_up = "Immediate specialist referral"
    elif level == RiskLevel.HIGH:
        follow_up = "Monthly follow-up"
        recs.append("Strongly recommend and initiate PrEP with enhanced adherence support")
        recs.append("Intensive adherence counseling and monitoring")
    elif level == RiskLevel.MODERATE:
        follow_up = "Monthly follow-up"
        recs.append("Offer PrEP; provide focused counselling and schedule close follow-up")
        recs.append("Regular adherence support and risk reduction counseling")
    elif level == RiskLevel.LOW:
        follow_up = "Reassess at 28 weeks"
        recs.append("Reassess at 28 weeks or if new exposure occurs")
        recs.append("Continue risk reduction counseling and prevention education")

    if score >= MODERATE_RISK_THRESHOLD and not contra and not _has_specific_scenario(a, score):
        trimester = a.get("pregnancy_trimester")
        breastfeed = a.get("plans_to_breastfeed")
        if score >= HIGH_RISK_THRESHOLD:
            if trimester in _TRIMESTER_GUIDANCE:
                recs.append(_TRIMESTER_GUIDANCE[trimester])
            if breastfeed in _BREASTFEEDING_GUIDANCE_HIGH:
                recs.append(_BREASTFEEDING_GUIDANCE_HIGH[breastfeed])
        elif breastfeed in _BREASTFEEDING_GUIDANCE_MODERATE:
            recs.append(_BREASTFEEDING_GUIDANCE_MODERATE[breastfeed])

    if a.get("partner_hiv_status") == "positive":
        recs.append("Couple HIV testing and counseling")
        if a.get("partner_not_on_art") == "yes":
            recs.append("Urgent partner ART linkage - high transmission risk")
        elif a.get("partner_detectable_viral_load") == "yes":
            recs.append("Partner HIV viral load monitoring and ART adherence support")
        elif a.get("partner_not_on_art") == "no" and a.get("partner_detectable_viral_load") == "no":
            recs.append("Continue partner ART adherence support - low transmission risk")

    if a.has("pregnancy_trimester") and score >= MODERATE_RISK_THRESHOLD:
        recs.append("Monthly pregnancy monitoring during PrEP use")
        recs.append("Fetal growth assessment if on PrEP")

    actions: List[str] = []
    if level == RiskLevel.HIGH:
        actions = [
            "Strongly recommend PrEP initiation with comprehensive adherence support",
            "Schedule intensive monthly follow-up appointments",
            "Provide partner HIV testing and linkage to care",
            "Implement pregnancy monitoring protocol during PrEP use",
            "Prescribe PrEP regimen and provide adherence counseling",
        ]
    elif level == RiskLevel.MODERATE:
        actions = [
            "Offer PrEP counseling and discuss benefits/risks",
            "Provide comprehensive risk reduction education",
            "Schedule monthly follow-up for adherence support",
            "Assess partner HIV status and provide couple counseling",
        ]

    return {
        "recommendations": dedupe(recs),
        "followUpFrequency": follow_up,
        "clinicalActions": actions,
        "contraindications": [c["label"] for c in contra],
    }


# ----------------------------
# Completion + section visibility
# ----------------------------
@dataclass(frozen=True)
class CompletionStatus:
    is_complete: bool
    completed_count: int
    total_count: int
    missing_fields: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isComplete": self.is_complete,
            "completedCount": self.completed_count,
            "totalCount": self.total_count,
            "missingFields": list(self.missing_fields),
        }


def _completion(a: Assessment, keys: List[str]) -> CompletionStatus:
    missing = [FIELDS[k].label for k in keys if not a.has(k)]
    return CompletionStatus(
        is_complete=not missing,
        completed_count=len(keys) - len(missing),
        total_count=len(keys),
        missing_fields=tuple(missing),
    )


RISK_CHECKLIST: List[Tuple[str, Optional[Callable[[Assessment], bool]]]] = [
    ("inconsistent_condom_use", None),
    ("multiple_partners", None),
    ("recent_sti", None),
    ("partner_hiv_status_known", None),
    ("partner_hiv_status", lambda a: a.get("partner_hiv_status_known") == "yes"),
    ("partner_not_on_art", lambda a: a.get("partner_hiv_status") == "positive"),
    ("partner_detectable_viral_load", lambda a: a.get("partner_hiv_status") == "positive"),
    ("partner_multiple_partners", None),
    ("partner_injection_drug_use", None),
    ("pregnancy_trimester", None),
    ("plans_to_breastfeed", None),
]


def risk_completion(a: Assessment) -> CompletionStatus:
    keys = [k for k, applies in RISK_CHECKLIST if applies is None or applies(a)]
    return _completion(a, keys)


def section_visibility(a: Assessment) -> Dict[str, bool]:
    interested = a.get("client_interested_in_prep")
    return {
        "sectionA": True,
        "sectionB": True,
        "sectionC": interested == "no",
        "sectionD": interested == "yes",
        "sectionE": interested == "yes",
        "sectionF": True,
    }


def eligibility_completion(a: Assessment, visibility: Dict[str, bool]) -> CompletionStatus:
    keys = ["risk_reduction_counselling_provided", "client_interested_in_prep"]
    if visibility["sectionC"]:
        keys.append("planned_next_steps")
    if visibility["sectionD"]:
        keys.append("acute_hiv_symptoms")
    if visibility["sectionE"]:
        keys.append("kidney_disease_history")
    keys += ["urinalysis_performed", "hepatitis_b_screening", "syphilis_screening_performed"]
    if a.get("hepatitis_b_screening") == "yes":
        keys.append("hepatitis_b_screening_result")
    if a.get("syphilis_screening_performed") == "yes":
        keys.append("syphilis_screening_result")
    return _completion(a, keys)


def required_sections_complete(a: Assessment) -> bool:
    """Section B answered, plus D/E when the client is interested."""
    if not (a.has("risk_reduction_counselling_provided") and a.has("client_interested_in_prep")):
        return False
    if a.get("client_interested_in_prep") == "yes":
        return a.has("acute_hiv_symptoms") and a.has("kidney_disease_history")
    return True


# ----------------------------
# Eligibility decision
# ----------------------------
@dataclass(frozen=True)
class EligibilityDecision:
    eligible: Optional[bool]
    status: EligibilityStatus
    reason: str
    exclusions: Tuple[str, ...] = ()
    critical_missing: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eligible": self.eligible,
            "status": self.status.value,
            "reason": self.reason,
            "exclusions": list(self.exclusions),
            "criticalMissing": list(self.critical_missing),
        }


EXCLUSION_REASONS = {
    "acute_symptoms": "≥2 acute HIV symptoms present",
    "renal": "Renal function concerns (abnormal urinalysis or kidney problems)",
    "drug_allergy": "Known allergy to tenofovir or emtricitabine",
    "client_declined": "Client declined PrEP",
}

LOW_RISK_REASON = "Low risk — reassess at 28 weeks or new exposure"


def renal_concern(a: Assessment) -> bool:
    return (
        a.get("kidney_problems")
        or urinalysis_abnormal(a)
        or a.get("kidney_disease_history") == "yes"
        or a.get("creatinine_confirmed") == "no"
    )


def absolute_exclusions(a: Assessment) -> List[str]:
    codes = []
    if acute_symptom_count(a) >= 2:
        codes.append("acute_symptoms")
    if renal_concern(a):
        codes.append("renal")
    if a.get("drug_allergies") or a.get("drug_allergy_tenofovir") == "yes":
        codes.append("drug_allergy")
    if a.get("client_interested_in_prep") == "no":
        codes.append("client_declined")
    return codes


def critical_missing(a: Assessment) -> List[str]:
    items = []
    if a.get("urinalysis_performed") != "yes":
        items.append("Urinalysis required for safety screening")
    if a.get("risk_reduction_counselling_provided") != "yes":
        items.append("Risk-reduction counseling required")
    return items


def evaluate_eligibility(
    a: Assessment,
    score: int,
    risk_done: CompletionStatus,
    trace: List[Dict[str, Any]],
) -> EligibilityDecision:
    if not risk_done.is_complete or not a.has("client_interested_in_prep"):
        add_trace(trace, "Eligibility_gate", list(risk_done.missing_fields), "Pending (risk checklist or client interest missing)")
        return EligibilityDecision(None, EligibilityStatus.PENDING, "Assessment incomplete - continue completing fields")

    codes = absolute_exclusions(a)
    if codes:
        reasons = [EXCLUSION_REASONS[c] for c in codes]
        add_trace(trace, "Eligibility_excluded", codes, "Absolute exclusion(s) fired")
        return EligibilityDecision(
            False,
            EligibilityStatus.EXCLUDED,
            f"Exclusion criteria: {'; '.join(reasons)}",
            exclusions=tuple(codes),
        )

    missing = critical_missing(a)
    if missing:
        add_trace(trace, "Eligibility_incomplete", missing, "Critical safety requirements missing")
        return EligibilityDecision(
            None,
            EligibilityStatus.INCOMPLETE,
            f"Critical requirements missing: {'; '.join(missing)}",
            critical_missing=tuple(missing),
        )

    if score >= HIGH_RISK_THRESHOLD:
        add_trace(trace, "Eligibility_high_risk", score, "Eligible (high risk)")
        return EligibilityDecision(True, EligibilityStatus.ELIGIBLE, "High risk (≥10 points) - Strongly recommend PrEP initiation")
    if score >= MODERATE_RISK_THRESHOLD:
        add_trace(trace, "Eligibility_moderate_risk", score, "Eligible (moderate risk)")
        return EligibilityDecision(True, EligibilityStatus.ELIGIBLE, "Moderate risk (5–9 points) - Offer PrEP with focused counseling")

    add_trace(trace, "Eligibility_low_risk", score, "Not currently recommended (low risk)")
    return EligibilityDecision(False, EligibilityStatus.LOW_RISK, LOW_RISK_REASON)


# ----------------------------
# Access gates
# ----------------------------
def access_gates(a: Assessment, risk_done: CompletionStatus, visibility: Dict[str, bool], decision: EligibilityDecision) -> Dict[str, Any]:
    sections_de = True
    if visibility["sectionD"] and not a.has("acute_hiv_symptoms"):
        sections_de = False
    if visibility["sectionE"] and not a.has("kidney_disease_history"):
        sections_de = False

    return {
        "clinicalSafetyAvailable": (
            a.get("risk_reduction_counselling_provided") == "yes" and a.get("client_interested_in_prep") == "yes"
        ),
        "sectionFAccessible": risk_done.is_complete and sections_de,
        "requiredSectionsComplete": required_sections_complete(a),
        "tabs": {
            "assessment": True,
            "eligibility": risk_done.is_complete,
            "prescription": decision.eligible is True,
            "follow-up": decision.eligible is True,
        },
    }


def can_access_tab(snapshot: "Snapshot", tab: str) -> bool:
    return bool(snapshot.gates["tabs"].get(tab, False))


# ----------------------------
# Caller-surfaced validation (non-fatal)
# ----------------------------
def validation_messages(a: Assessment) -> List[str]:
    errors: List[str] = []

    if a.get("risk_reduction_counselling_provided") == "no":
        if not a.has("counselling_not_provided_reasons"):
            errors.append("Please select at least one reason why counseling was not provided.")
        elif "other" in a.get("counselling_not_provided_reasons") and not a.get("counselling_not_provided_other").strip():
            errors.append("Please specify the other reason for not providing counseling.")

    if a.get("client_interested_in_prep") == "no":
        if not a.has("lack_of_interest_reasons"):
            errors.append("Please select at least one reason for lack of interest in PrEP.")
        elif "other" in a.get("lack_of_interest_reasons") and not a.get("lack_of_interest_other").strip():
            errors.append("Please specify the other reason for lack of interest.")

        steps = a.get("planned_next_steps")
        if not steps:
            errors.append("Please select at least one planned next step for follow-up.")
        if "other" in steps and not a.get("planned_next_steps_other").strip():
            errors.append("Please specify the other planned next steps.")
        if ("schedule_future_counselling" in steps or "offer_prep_next_anc" in steps) and not a.has("next_counselling_date"):
            errors.append("Please provide a date for the scheduled counseling follow-up.")

    if "other" in a.get("sti_types") and not a.get("sti_other_specify").strip():
        errors.append("Please specify the other STI type.")
    if "other" in a.get("condom_reasons") and not a.get("condom_other_reason").strip():
        errors.append("Please specify the other reason for inconsistent condom use.")

    return errors


# ----------------------------
# Snapshot
# ----------------------------
@dataclass(frozen=True)
class Snapshot:
    score: int
    level: RiskLevel
    contributions: Tuple[Mapping[str, Any], ...]
    risk: Mapping[str, Any]
    eligibility: EligibilityDecision
    recommendations: "RecommendationBundle"
    completion: Mapping[str, CompletionStatus]
    visibility: Mapping[str, bool]
    gates: Mapping[str, Any]
    validation_messages: Tuple[str, ...]
    risk_triad: Tuple[str, ...]
    trace: Tuple[Mapping[str, Any], ...] = ()


AssessmentInput = Union[Assessment, Mapping[str, Any], None]


def _as_assessment(data: AssessmentInput) -> Assessment:
    if isinstance(data, Assessment):
        return data
    return Assessment.from_answers(data)


# ----------------------------
# Public API
# ----------------------------
def derive_snapshot(data: AssessmentInput = None) -> Snapshot:
    """Recompute every derived value from the answer record in one pass."""
    from prep_recommendations import build_recommendations

    a = _as_assessment(data)
    trace: List[Dict[str, Any]] = []
    add_trace(trace, "Engine_start", VERSION["engine"], "Begin evaluation")

    rs = risk_score(a, trace)
    score = rs["score"]
    risk_done = risk_completion(a)
    contra = contraindications(a, trace)
    level = risk_level(score, risk_done.is_complete, contra, trace)
    risk = risk_recommendations(a, score, level, rs["contributions"], contra)

    decision = evaluate_eligibility(a, score, risk_done, trace)
    bundle = build_recommendations(
        decision,
        score,
        level,
        {
            "syphilis_screening_result": a.get("syphilis_screening_result"),
            "hepatitis_b_screening_result": a.get("hepatitis_b_screening_result"),
        },
        risk["recommendations"],
        trace,
    )

    visibility = section_visibility(a)
    completion = {"risk": risk_done, "eligibility": eligibility_completion(a, visibility)}
    gates = access_gates(a, risk_done, visibility, decision)

    add_trace(trace, "Engine_end", VERSION["engine"], "Evaluation complete")
    logger.debug(
        "Snapshot score=%s level=%s status=%s risk_complete=%s",
        score, level.value, decision.status.value, risk_done.is_complete,
    )

    return Snapshot(
        score=score,
        level=level,
        contributions=freeze(rs["contributions"]),
        risk=freeze(risk),
        eligibility=decision,
        recommendations=bundle,
        completion=freeze(completion),
        visibility=freeze(visibility),
        gates=freeze(gates),
        validation_messages=tuple(validation_messages(a)),
        risk_triad=a.risk_triad(),
        trace=freeze(trace),
    )


def render_quick_text(a: Assessment, snap: Snapshot) -> str:
    lines = []
    lines.append(f"ANC PrEP {VERSION['engine']} — Quick Reference")
    lines.append(f"Risk score: {snap.score}/{SCORE_CAP} ({snap.level.value})")

    rc = snap.completion["risk"]
    if not rc.is_complete:
        lines.append(f"Risk assessment: {rc.completed_count}/{rc.total_count} complete (missing: {', '.join(rc.missing_fields)})")

    if snap.contributions:
        lines.append("Drivers: " + "; ".join(f"{c['label']} (+{c['points']})" for c in snap.contributions))
    if snap.risk["contraindications"]:
        lines.append("Contraindications: " + "; ".join(snap.risk["contraindications"]))

    d = snap.eligibility
    lines.append(f"Eligibility: {d.status.value} — {d.reason}")

    ec = snap.completion["eligibility"]
    if not ec.is_complete:
        lines.append(f"Eligibility checklist: {ec.completed_count}/{ec.total_count} (missing: {', '.join(ec.missing_fields)})")

    b = snap.recommendations
    if b.clinical_context:
        lines.append("")
        lines.append(b.clinical_context)
    if b.immediate_actions:
        lines.append("Next: " + " / ".join(b.immediate_actions))
    if b.follow_up_timeline:
        lines.append(f"Follow-up: {b.follow_up_timeline}")
    for g in b.screening_guidance:
        lines.append(f"Screening: {g}")

    if snap.validation_messages:
        lines.append("")
        lines.append("Before saving:")
        lines.extend(f"• {m}" for m in snap.validation_messages)
    return "\n".join(lines)
