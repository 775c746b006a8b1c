# answer_ingest/parser.py
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

from prep_engine import FIELDS, Assessment, FieldSpec

logger = logging.getLogger(__name__)


_TRIMESTER_WORDS = {
    "1": "first", "1st": "first", "first": "first",
    "2": "second", "2nd": "second", "second": "second",
    "3": "third", "3rd": "third", "third": "third",
}

_RESULT_WORDS = {
    "positive": "reactive", "reactive": "reactive",
    "negative": "non_reactive", "non_reactive": "non_reactive", "nonreactive": "non_reactive",
}

_YES_WORDS = ("yes", "y", "true")
_NO_WORDS = ("no", "n", "false", "none")

# Field-specific wording seen on paper registers
_FIELD_WORDS = {
    "urinalysis_normal": {"normal": "yes", "abnormal": "no"},
    "partner_not_on_art": {"not on art": "yes", "on art": "no"},
}


def _norm(s: Any) -> str:
    return str(s if s is not None else "").strip()


def _yesno(s: Any) -> Optional[str]:
    if isinstance(s, bool):
        return "yes" if s else "no"
    t = _norm(s).lower().rstrip(".")
    if t in _YES_WORDS:
        return "yes"
    if t in _NO_WORDS:
        return "no"
    return None


def _snake(key: str) -> str:
    """clientInterestedInPrep -> client_interested_in_prep"""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key.strip()).lower()


def _candidates(raw: str) -> List[str]:
    t = raw.lower()
    return [t, t.replace(" ", "_"), t.replace("-", "_"), t.replace(" ", "-"), t.replace("_", "-")]


def _choice(spec: FieldSpec, raw: Any) -> Optional[str]:
    if raw is None or _norm(raw) == "":
        return ""
    text = _norm(raw)
    for c in _candidates(text):
        if c in spec.choices:
            return c

    word = _FIELD_WORDS.get(spec.key, {}).get(text.lower())
    if word is not None:
        return word
    if text.lower() in ("not sure", "don't know", "dont know", "undecided"):
        for c in ("unsure", "unknown"):
            if c in spec.choices:
                return c
    if spec.key == "pregnancy_trimester":
        word = text.lower().split()[0]
        return _TRIMESTER_WORDS.get(word)
    if spec.choices == ("reactive", "non_reactive"):
        return _RESULT_WORDS.get(text.lower().replace("-", "_").replace(" ", "_"))
    if "yes" in spec.choices:
        yn = _yesno(raw)
        if yn in spec.choices:
            return yn
    return None


def _multi(spec: FieldSpec, raw: Any, warnings: List[str]) -> Optional[Tuple[str, ...]]:
    if isinstance(raw, str):
        items = re.split(r"[;,]", raw)
    elif raw is None:
        items = []
    elif isinstance(raw, (list, tuple, set, frozenset)):
        items = list(raw)
    else:
        warnings.append(f"{spec.key}: expected a list of values, got {raw!r}")
        return None
    out: List[str] = []
    for item in items:
        text = _norm(item)
        if not text:
            continue
        match = next((c for c in _candidates(text) if c in spec.choices), None)
        if match is None:
            warnings.append(f"{spec.key}: dropped unrecognised value {text!r}")
        elif match not in out:
            out.append(match)
    return tuple(out)


def _flag(raw: Any) -> Optional[bool]:
    if isinstance(raw, bool):
        return raw
    yn = _yesno(raw)
    if yn is None:
        return None
    return yn == "yes"


def normalize_answers(data: Optional[Mapping[str, Any]]) -> Tuple[Dict[str, Any], List[str]]:
    """
    Best-effort cleanup of a saved or pasted answer record.
    Returns (answers keyed by field name, warnings). Never raises on bad values.
    """
    out: Dict[str, Any] = {}
    warnings: List[str] = []

    if data is not None and not isinstance(data, Mapping):
        return out, [f"Ignored answer record of type {type(data).__name__}"]

    for raw_key, raw in (data or {}).items():
        key = raw_key if raw_key in FIELDS else _snake(str(raw_key))
        spec = FIELDS.get(key)
        if spec is None:
            warnings.append(f"Ignored unknown field {raw_key!r}")
            continue

        if spec.kind == "multi":
            values = _multi(spec, raw, warnings)
            if values is None:
                continue
            out[key] = values
        elif spec.kind == "flag":
            v = _flag(raw)
            if v is None:
                warnings.append(f"{key}: expected yes/no, got {raw!r}")
                continue
            out[key] = v
        elif spec.kind == "text":
            out[key] = _norm(raw)
        else:
            v = _choice(spec, raw)
            if v is None:
                warnings.append(f"{key}: {raw!r} is not one of {', '.join(spec.choices)}")
                continue
            out[key] = v

    return out, warnings


def rehydrate(initial_data: Optional[Mapping[str, Any]]) -> Tuple[Assessment, List[str]]:
    """Rebuild an Assessment from a previously saved record; absent fields stay unanswered."""
    answers, warnings = normalize_answers(initial_data)
    for w in warnings:
        logger.warning("Rehydrate: %s", w)
    return Assessment.from_answers(answers), warnings


def _line_value(text: str, label_regex: str) -> Optional[str]:
    """
    Extracts 'Label: value' lines (case-insensitive, multiline).
    label_regex should be regex-safe.
    """
    pat = re.compile(rf"^\s*{label_regex}\s*:\s*(.*?)\s*$", re.IGNORECASE | re.MULTILINE)
    m = pat.search(text or "")
    return _norm(m.group(1)) if m else None


def parse_answer_block(text: str) -> Dict[str, Any]:
    """
    Extract answers from a pasted 'Label: value' block.
    Each field matches on its clinician-facing label or its field name, e.g.

        Inconsistent condom use: Yes
        recent_sti: no
        Acute HIV symptoms: fever, rash

    Returns raw strings keyed by field name; feed the result to rehydrate().
    """
    t = text or ""
    out: Dict[str, Any] = {}
    for key, spec in FIELDS.items():
        v = _line_value(t, re.escape(spec.label))
        if v is None:
            v = _line_value(t, re.escape(key))
        if v is not None:
            out[key] = v
    return out
