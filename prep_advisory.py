"""Advisory state machine for clinician-facing interruptions.

Two independent channels share one immutable state value:

- risk: raised once the risk checklist is complete (and the level is not
  Contraindicated); closing it latches until the condom-use / multiple-partners /
  recent-STI answers change.
- deferral: raised when the decision is "not eligible" and the upstream sections
  are answered; acknowledgement persists until the assessment is discarded.

Each channel moves idle -> pending -> shown -> acknowledged. Every hop taken by a
call is listed in ``AdvisoryState.events`` so the caller can decide what to show.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from prep_engine import RiskLevel, Snapshot

logger = logging.getLogger(__name__)


class AdvisoryPhase(Enum):
    """Advisory channel lifecycle."""
    IDLE = "idle"
    PENDING = "pending"            # Raised, not yet presented
    SHOWN = "shown"                # Presented to the clinician
    ACKNOWLEDGED = "acknowledged"  # Closed by the clinician (latched)


@dataclass(frozen=True)
class AdvisoryChannel:
    phase: AdvisoryPhase = AdvisoryPhase.IDLE
    acknowledged_triad: Optional[Tuple[str, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "acknowledgedTriad": list(self.acknowledged_triad) if self.acknowledged_triad is not None else None,
        }


@dataclass(frozen=True)
class AdvisoryState:
    risk: AdvisoryChannel = field(default_factory=AdvisoryChannel)
    deferral: AdvisoryChannel = field(default_factory=AdvisoryChannel)
    events: Tuple[str, ...] = ()

    @property
    def risk_shown(self) -> bool:
        return self.risk.phase == AdvisoryPhase.SHOWN

    @property
    def deferral_shown(self) -> bool:
        return self.deferral.phase == AdvisoryPhase.SHOWN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk": self.risk.to_dict(),
            "deferral": self.deferral.to_dict(),
            "events": list(self.events),
        }


def _hop(channel: str, old: AdvisoryPhase, new: AdvisoryPhase, why: str) -> str:
    logger.info("%s advisory: %s -> %s (%s)", channel, old.value, new.value, why)
    return f"{channel}:{old.value}->{new.value}"


def _next_risk(ch: AdvisoryChannel, snap: Snapshot, events: list) -> AdvisoryChannel:
    risk_complete = snap.completion["risk"].is_complete

    if ch.phase == AdvisoryPhase.ACKNOWLEDGED and snap.risk_triad != ch.acknowledged_triad:
        events.append(_hop("risk", ch.phase, AdvisoryPhase.IDLE, "risk answers changed"))
        ch = AdvisoryChannel()

    if ch.phase == AdvisoryPhase.SHOWN and not risk_complete:
        events.append(_hop("risk", ch.phase, AdvisoryPhase.IDLE, "risk checklist no longer complete"))
        return AdvisoryChannel()

    if ch.phase == AdvisoryPhase.IDLE and risk_complete and snap.level != RiskLevel.CONTRAINDICATED:
        events.append(_hop("risk", ch.phase, AdvisoryPhase.PENDING, f"risk checklist complete, level {snap.level.value}"))
        ch = replace(ch, phase=AdvisoryPhase.PENDING)

    if ch.phase == AdvisoryPhase.PENDING:
        events.append(_hop("risk", ch.phase, AdvisoryPhase.SHOWN, "present"))
        ch = replace(ch, phase=AdvisoryPhase.SHOWN)
    return ch


def _next_deferral(ch: AdvisoryChannel, snap: Snapshot, events: list) -> AdvisoryChannel:
    if (
        ch.phase == AdvisoryPhase.IDLE
        and snap.eligibility.eligible is False
        and snap.gates["requiredSectionsComplete"]
    ):
        events.append(_hop("deferral", ch.phase, AdvisoryPhase.PENDING, snap.eligibility.status.value))
        ch = replace(ch, phase=AdvisoryPhase.PENDING)

    if ch.phase == AdvisoryPhase.PENDING:
        events.append(_hop("deferral", ch.phase, AdvisoryPhase.SHOWN, "present"))
        ch = replace(ch, phase=AdvisoryPhase.SHOWN)
    return ch


def evaluate_advisory_transition(previous: Optional[AdvisoryState], snapshot: Snapshot) -> AdvisoryState:
    """Advance both advisory channels against a freshly derived snapshot."""
    prev = previous or AdvisoryState()
    events: list = []
    risk = _next_risk(prev.risk, snapshot, events)
    deferral = _next_deferral(prev.deferral, snapshot, events)
    return AdvisoryState(risk=risk, deferral=deferral, events=tuple(events))


def acknowledge_risk_advisory(state: AdvisoryState, snapshot: Snapshot) -> AdvisoryState:
    """Clinician closed the risk advisory; latch until the risk triad changes."""
    if state.risk.phase != AdvisoryPhase.SHOWN:
        logger.debug("Ignoring risk acknowledgement in phase %s", state.risk.phase.value)
        return replace(state, events=())
    event = _hop("risk", state.risk.phase, AdvisoryPhase.ACKNOWLEDGED, "closed by clinician")
    risk = AdvisoryChannel(AdvisoryPhase.ACKNOWLEDGED, snapshot.risk_triad)
    return replace(state, risk=risk, events=(event,))


def acknowledge_deferral(state: AdvisoryState) -> AdvisoryState:
    """Clinician acknowledged the deferral notice; persists until discard."""
    if state.deferral.phase != AdvisoryPhase.SHOWN:
        logger.debug("Ignoring deferral acknowledgement in phase %s", state.deferral.phase.value)
        return replace(state, events=())
    event = _hop("deferral", state.deferral.phase, AdvisoryPhase.ACKNOWLEDGED, "acknowledged by clinician")
    return replace(state, deferral=AdvisoryChannel(AdvisoryPhase.ACKNOWLEDGED), events=(event,))


def discard_assessment(state: Optional[AdvisoryState] = None) -> AdvisoryState:
    """Assessment discarded or restarted: every latch is cleared."""
    logger.info("Advisory state discarded")
    return AdvisoryState()
