# prep_output_adapter.py
# Output adapter: converts a derived snapshot into the camelCase record contract
# consumed by the form layer and the persistence collaborator.

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import prep_engine as engine
from prep_config import config


def thaw(value: Any) -> Any:
    """Plain JSON-ready copy of a frozen snapshot payload."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(v) for v in value]
    return value


def _contribution(c: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "factor": c["factor"],
        "label": c["label"],
        "points": c["points"],
        "justification": list(c["justification"]),
    }


def snapshot_to_dict(snap: engine.Snapshot, include_trace: Optional[bool] = None) -> Dict[str, Any]:
    """
    CamelCase snapshot contract.
    Equal snapshots always serialise to equal dicts (no timestamps, stable key order).
    """
    if include_trace is None:
        include_trace = config.INCLUDE_TRACE

    out: Dict[str, Any] = {
        "score": snap.score,
        "maxScore": engine.SCORE_CAP,
        "level": snap.level.value,
        "contributions": [_contribution(c) for c in snap.contributions],
        "risk": thaw(snap.risk),
        "eligibility": snap.eligibility.to_dict(),
        "recommendations": snap.recommendations.to_dict(),
        "completion": {k: v.to_dict() for k, v in snap.completion.items()},
        "sectionVisibility": dict(snap.visibility),
        "gates": thaw(snap.gates),
        "validationMessages": list(snap.validation_messages),
    }
    if include_trace:
        out["trace"] = thaw(snap.trace)
    return out


def build_final_assessment_record(
    a: engine.Assessment,
    snap: engine.Snapshot,
    assessed_by: Optional[str] = None,
    assessment_date: Optional[str] = None,
) -> Dict[str, Any]:
    """Raw answers + last snapshot, denormalised for audit/history on explicit save."""
    messages: List[str] = list(snap.validation_messages)
    return {
        "answers": a.to_dict(),
        "snapshot": snapshot_to_dict(snap),
        "engineVersion": dict(engine.VERSION),
        "assessedBy": assessed_by or config.ASSESSED_BY,
        "assessmentDate": assessment_date or datetime.now().isoformat(timespec="seconds"),
        "validationMessages": messages,
        "readyToSave": not messages,
    }
