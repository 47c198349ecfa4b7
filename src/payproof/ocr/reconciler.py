"""Winner selection and provenance-aware form filling."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from payproof.models.payment import PaymentFieldState, Provenance
from payproof.models.receipt import ExtractionResult, FieldCandidate, FieldKind, RawExtraction
from payproof.ocr import scoring
from payproof.ocr.parser import signal_score

logger = logging.getLogger(__name__)

UNAVAILABLE_SOURCE = "unavailable"
DEFAULT_MIN_CONFIDENCE = 0.5


def _rank(candidate: FieldCandidate) -> tuple:
    position = candidate.span[0] if candidate.span else float("inf")
    return (-candidate.confidence, -candidate.specificity, position)


def select_winners(
    candidates: Sequence[FieldCandidate],
    raw: RawExtraction,
    *,
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
) -> ExtractionResult:
    """Pick at most one candidate per field kind.

    The winner is the most confident candidate at or above ``min_confidence``;
    ties go to the more specific pattern, then to the earlier match.
    """

    winners: Dict[FieldKind, Optional[FieldCandidate]] = {}
    for kind in FieldKind:
        eligible = [c for c in candidates if c.kind == kind and c.confidence >= min_confidence]
        winners[kind] = min(eligible, key=_rank) if eligible else None

    if raw.source == UNAVAILABLE_SOURCE:
        status = "unavailable"
    elif not raw.raw_text.strip():
        status = "empty"
    else:
        status = "ok"

    manual_entry = (
        status != "ok"
        or all(winner is None for winner in winners.values())
        or signal_score(raw.raw_text) < scoring.MANUAL_ENTRY_SIGNAL
    )
    return ExtractionResult(
        raw=raw,
        candidates=list(candidates),
        winners=winners,
        status=status,
        manual_entry=manual_entry,
    )


def unavailable_result(source: str = UNAVAILABLE_SOURCE) -> ExtractionResult:
    return select_winners([], RawExtraction(raw_text="", source=source))


def reset_fields(kinds: Iterable[FieldKind] = tuple(FieldKind)) -> List[PaymentFieldState]:
    return [PaymentFieldState(kind=kind) for kind in kinds]


def apply_to_form(
    result: ExtractionResult, states: Sequence[PaymentFieldState]
) -> List[PaymentFieldState]:
    """Merge extraction winners into the current field states.

    Unset, empty fields with a winner become auto-filled. Auto-filled fields
    follow the latest winner. User-modified fields are returned untouched.
    """

    updated: List[PaymentFieldState] = []
    for state in states:
        winner = result.winner(state.kind)
        if state.provenance is Provenance.USER_MODIFIED or winner is None:
            updated.append(state)
        elif state.provenance is Provenance.AUTO_FILLED:
            updated.append(state.model_copy(update={"value": winner.value, "suggested": winner.value}))
        elif not (state.value or "").strip():
            updated.append(
                state.model_copy(
                    update={
                        "value": winner.value,
                        "suggested": winner.value,
                        "provenance": Provenance.AUTO_FILLED,
                    }
                )
            )
        else:
            updated.append(state)
    return updated


def _normalized(value: Optional[str]) -> str:
    return (value or "").strip()


def record_edit(state: PaymentFieldState, value: Optional[str]) -> PaymentFieldState:
    """Apply a user edit.

    An auto-filled field becomes user-modified the first time its value
    differs from the suggestion and stays that way, even if the suggestion is
    typed back in.
    """

    provenance = state.provenance
    if provenance is Provenance.AUTO_FILLED and _normalized(value) != _normalized(state.suggested):
        provenance = Provenance.USER_MODIFIED
    return state.model_copy(update={"value": value, "provenance": provenance})


class PaymentForm:
    """The five editable payment fields of one registration attempt."""

    def __init__(self, states: Optional[Iterable[PaymentFieldState]] = None) -> None:
        self._states: Dict[FieldKind, PaymentFieldState] = {
            state.kind: state for state in reset_fields()
        }
        for state in states or ():
            self._states[state.kind] = state

    def reset(self) -> None:
        self._states = {state.kind: state for state in reset_fields()}

    def apply(self, result: ExtractionResult) -> None:
        for state in apply_to_form(result, list(self._states.values())):
            self._states[state.kind] = state

    def edit(self, kind: FieldKind, value: Optional[str]) -> PaymentFieldState:
        state = record_edit(self._states[kind], value)
        self._states[kind] = state
        return state

    def get(self, kind: FieldKind) -> PaymentFieldState:
        return self._states[kind]

    def value(self, kind: FieldKind) -> Optional[str]:
        return self._states[kind].value

    def states(self) -> List[PaymentFieldState]:
        return [self._states[kind] for kind in FieldKind]

    def as_mapping(self) -> Mapping[FieldKind, PaymentFieldState]:
        return dict(self._states)


__all__ = [
    "PaymentForm",
    "apply_to_form",
    "record_edit",
    "reset_fields",
    "select_winners",
    "unavailable_result",
]
