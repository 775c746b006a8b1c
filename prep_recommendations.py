# prep_recommendations.py
# Clinical recommendation bundle: lookup keyed by (eligibility status, exclusion/score band)
# plus reactive-screening addenda that never overwrite the main branch.
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import prep_engine as engine

EligibilityDecision = engine.EligibilityDecision
EligibilityStatus = engine.EligibilityStatus


@dataclass(frozen=True)
class RecommendationBundle:
    decision: str
    clinical_context: str = ""
    immediate_actions: Tuple[str, ...] = ()
    monitoring_requirements: Tuple[str, ...] = ()
    follow_up_timeline: str = ""
    safety_considerations: Tuple[str, ...] = ()
    alternative_options: Tuple[str, ...] = ()
    protocol_references: Tuple[str, ...] = ()
    screening_guidance: Tuple[str, ...] = ()
    risk_recommendations: Tuple[str, ...] = field(default=())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision,
            "clinicalContext": self.clinical_context,
            "immediateActions": list(self.immediate_actions),
            "monitoringRequirements": list(self.monitoring_requirements),
            "followUpTimeline": self.follow_up_timeline,
            "safetyConsiderations": list(self.safety_considerations),
            "alternativeOptions": list(self.alternative_options),
            "protocolReferences": list(self.protocol_references),
            "screeningGuidance": list(self.screening_guidance),
            "riskRecommendations": list(self.risk_recommendations),
        }


DECISION_BY_STATUS = {
    EligibilityStatus.EXCLUDED: "contraindicated",
    EligibilityStatus.ELIGIBLE: "eligible",
    EligibilityStatus.LOW_RISK: "conditional",
    EligibilityStatus.PENDING: "pending",
    EligibilityStatus.INCOMPLETE: "pending",
}


# ----------------------------
# Main branches
# ----------------------------
EXCLUSION_BRANCHES: Dict[str, Dict[str, Any]] = {
    "renal": {
        "context": "Abnormal renal function detected through urinalysis or reported kidney problems. PrEP containing tenofovir requires normal kidney function for safe use.",
        "immediateActions": [
            "Order serum creatinine and calculate eGFR",
            "Refer to nephrology if eGFR <60 mL/min/1.73m²",
            "Investigate and treat underlying renal condition",
        ],
        "alternativeOptions": [
            "Focus on intensive risk reduction counseling",
            "Provide condoms and safer sex education",
            "Consider partner-based interventions (partner testing, ART initiation)",
        ],
        "timeline": "Reassess kidney function in 3 months; consider PrEP if function normalizes",
        "references": ["WHO PrEP Guidelines 2017", "Zambian ART Guidelines 2020"],
    },
    "acute_symptoms": {
        "context": "Multiple acute HIV symptoms present suggest possible acute HIV infection. HIV testing required before PrEP initiation.",
        "immediateActions": [
            "Perform HIV rapid test immediately",
            "If negative, order HIV RNA/DNA PCR for acute infection",
            "Counsel on window period and repeat testing",
        ],
        "alternativeOptions": [
            "Provide condoms and safer sex education while HIV status is confirmed",
        ],
        "timeline": "Repeat HIV testing in 2-4 weeks if initial tests negative",
        "references": ["WHO HIV Testing Guidelines", "Zambian HTS Guidelines"],
    },
    "drug_allergy": {
        "context": "Known allergy to tenofovir or emtricitabine components of PrEP regimen.",
        "immediateActions": [
            "Document specific allergy details",
            "Consider allergy testing if uncertainty exists",
        ],
        "alternativeOptions": [
            "Alternative PrEP regimens if available",
            "Enhanced behavioral interventions",
            "Partner-focused prevention strategies",
        ],
        "timeline": "",
        "references": ["WHO PrEP Guidelines 2017"],
    },
    "client_declined": {
        "context": "Client declined PrEP at this visit. Continue prevention support and keep PrEP available.",
        "immediateActions": [
            "Document reasons for declining PrEP",
            "Provide risk reduction counseling and condoms",
            "Offer PrEP again at the next ANC visit",
        ],
        "alternativeOptions": [
            "Consistent condom use",
            "Partner HIV testing and treatment",
            "Regular risk reassessment",
        ],
        "timeline": "Revisit PrEP interest at the next ANC visit",
        "references": ["WHO PrEP Guidelines 2017", "Zambian PrEP Implementation Guidelines"],
    },
}

ELIGIBLE_SAFETY = [
    "Monitor for side effects (nausea, headache) in first month",
    "Emphasize consistent daily dosing",
    "Address any adherence barriers promptly",
]
ELIGIBLE_REFERENCES = ["WHO PrEP Guidelines 2017", "Zambian PrEP Implementation Guidelines"]


def _excluded(decision: EligibilityDecision) -> Dict[str, Any]:
    contexts: List[str] = []
    actions: List[str] = []
    alternatives: List[str] = []
    timelines: List[str] = []
    refs: List[str] = []
    for code in decision.exclusions:
        branch = EXCLUSION_BRANCHES[code]
        contexts.append(branch["context"])
        actions += branch["immediateActions"]
        alternatives += branch["alternativeOptions"]
        if branch["timeline"]:
            timelines.append(branch["timeline"])
        refs += branch["references"]
    return {
        "clinical_context": " ".join(contexts),
        "immediate_actions": engine.dedupe(actions),
        "alternative_options": engine.dedupe(alternatives),
        "follow_up_timeline": "; ".join(engine.dedupe(timelines)),
        "protocol_references": engine.dedupe(refs),
    }


def _eligible(score: int) -> Dict[str, Any]:
    if score >= engine.HIGH_RISK_THRESHOLD:
        return {
            "clinical_context": (
                f"High HIV acquisition risk identified ({score}/{engine.SCORE_CAP} points). "
                "Strong clinical indication for PrEP initiation with comprehensive support."
            ),
            "immediate_actions": [
                "Initiate PrEP (TDF/FTC) with first dose today",
                "Provide intensive adherence counseling",
                "Schedule 1-month follow-up appointment",
                "Provide emergency contact information",
            ],
            "monitoring_requirements": [
                "Monthly follow-up for first 3 months",
                "HIV testing every 3 months",
                "Creatinine monitoring every 6 months",
                "STI screening every 6 months",
            ],
            "follow_up_timeline": "1 month (adherence check), 3 months (HIV/STI screening), then quarterly",
            "safety_considerations": list(ELIGIBLE_SAFETY),
            "protocol_references": list(ELIGIBLE_REFERENCES),
        }
    return {
        "clinical_context": (
            f"Moderate HIV acquisition risk identified ({score}/{engine.SCORE_CAP} points). "
            "PrEP recommended with focused counseling and support."
        ),
        "immediate_actions": [
            "Offer PrEP initiation with counseling",
            "Provide risk reduction education",
            "Schedule follow-up in 1 month",
        ],
        "monitoring_requirements": [
            "Follow-up in 1 month for adherence assessment",
            "HIV testing every 3 months",
            "STI screening every 6 months",
        ],
        "follow_up_timeline": "1 month (adherence), then quarterly monitoring",
        "safety_considerations": list(ELIGIBLE_SAFETY),
        "protocol_references": list(ELIGIBLE_REFERENCES),
    }


def _low_risk(score: int) -> Dict[str, Any]:
    return {
        "clinical_context": (
            f"Lower HIV acquisition risk identified ({score}/{engine.SCORE_CAP} points). "
            "Focus on risk reduction counseling with PrEP as option if risk increases."
        ),
        "immediate_actions": [
            "Provide comprehensive risk reduction counseling",
            "Discuss safer sex practices and consistent condom use",
            "Assess partner HIV status and linkage to care",
        ],
        "alternative_options": [
            "Intensive behavioral counseling",
            "Partner HIV testing and treatment",
            "Regular risk reassessment",
        ],
        "follow_up_timeline": "3-6 months for risk reassessment",
        "protocol_references": ["WHO PrEP Guidelines 2017"],
    }


def _incomplete(decision: EligibilityDecision) -> Dict[str, Any]:
    return {
        "clinical_context": "Critical safety requirements must be completed before a PrEP decision can be made.",
        "immediate_actions": list(decision.critical_missing),
    }


# ----------------------------
# Reactive screening addenda
# ----------------------------
SYPHILIS_TIMELINE = "Reassess for PrEP eligibility after completing syphilis treatment (typically 1-4 weeks)"


def _apply_screening_addenda(parts: Dict[str, Any], screening: Dict[str, Optional[str]], trace: List[Dict[str, Any]]) -> None:
    if screening.get("syphilis_screening_result") == "reactive":
        parts.setdefault("screening_guidance", []).append(
            "Syphilis positive - Complete benzathine penicillin treatment course before PrEP initiation"
        )
        parts.setdefault("immediate_actions", []).append(
            "Initiate syphilis treatment with benzathine penicillin 2.4 million units IM"
        )
        main = parts.get("follow_up_timeline", "")
        parts["follow_up_timeline"] = f"{SYPHILIS_TIMELINE}; {main}" if main else SYPHILIS_TIMELINE
        engine.add_trace(trace, "Addendum_syphilis", "reactive", "Treatment before initiation")

    if screening.get("hepatitis_b_screening_result") == "reactive":
        parts.setdefault("screening_guidance", []).append(
            "Hepatitis B positive - PrEP can be started with enhanced monitoring"
        )
        parts.setdefault("monitoring_requirements", []).append("Monitor ALT every 3 months during PrEP use")
        parts.setdefault("safety_considerations", []).append(
            "If PrEP is discontinued, refer immediately for hepatitis B care to prevent flare"
        )
        engine.add_trace(trace, "Addendum_hepatitis_b", "reactive", "Enhanced ALT monitoring")


# ----------------------------
# Public API
# ----------------------------
def build_recommendations(
    decision: EligibilityDecision,
    score: int,
    level: "engine.RiskLevel",
    screening: Dict[str, Optional[str]],
    risk_recommendations: Optional[List[str]] = None,
    trace: Optional[List[Dict[str, Any]]] = None,
) -> RecommendationBundle:
    trace = trace if trace is not None else []
    label = DECISION_BY_STATUS[decision.status]

    if decision.status == EligibilityStatus.EXCLUDED:
        parts = _excluded(decision)
    elif decision.status == EligibilityStatus.ELIGIBLE:
        parts = _eligible(score)
        if level == engine.RiskLevel.CONTRAINDICATED:
            parts["safety_considerations"].append(
                "Risk assessment flagged a contraindication - complete specialist review before prescribing"
            )
    elif decision.status == EligibilityStatus.LOW_RISK:
        parts = _low_risk(score)
    elif decision.status == EligibilityStatus.INCOMPLETE:
        parts = _incomplete(decision)
    else:
        parts = {}
    engine.add_trace(trace, "Recommendation_branch", decision.status.value, f"decision={label}")

    _apply_screening_addenda(parts, screening, trace)

    return RecommendationBundle(
        decision=label,
        clinical_context=parts.get("clinical_context", ""),
        immediate_actions=tuple(engine.dedupe(parts.get("immediate_actions", []))),
        monitoring_requirements=tuple(engine.dedupe(parts.get("monitoring_requirements", []))),
        follow_up_timeline=parts.get("follow_up_timeline", ""),
        safety_considerations=tuple(engine.dedupe(parts.get("safety_considerations", []))),
        alternative_options=tuple(engine.dedupe(parts.get("alternative_options", []))),
        protocol_references=tuple(engine.dedupe(parts.get("protocol_references", []))),
        screening_guidance=tuple(parts.get("screening_guidance", [])),
        risk_recommendations=tuple(engine.dedupe(risk_recommendations or [])),
    )
