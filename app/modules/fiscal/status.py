"""
Fiscal document lifecycle.

Provider status strings are normalised into a closed set of states. Anything
the provider reports outside that set is kept verbatim as a provider-defined
status (``FiscalStatus.UNKNOWN`` marks it) and never moves the local status.
"""
import enum
import logging
from typing import Dict, FrozenSet, Optional, Tuple

logger = logging.getLogger(__name__)


class FiscalStatus(str, enum.Enum):
    SUBMITTED = "submitted"      # Row persisted, provider call not confirmed
    PROCESSING = "processing"    # Provider accepted, authorization pending
    ERROR = "error"              # Provider or transport failure
    AUTHORIZED = "authorized"
    REJECTED = "rejected"        # Authorization error reported by the provider
    DENIED = "denied"            # Denegada: number is consumed, cannot be reissued
    UNKNOWN = "unknown"          # Provider-defined status outside this set


# Focus NFe status strings and the canonical names themselves
PROVIDER_STATUS_MAP: Dict[str, FiscalStatus] = {
    "processando_autorizacao": FiscalStatus.PROCESSING,
    "autorizado": FiscalStatus.AUTHORIZED,
    "erro_autorizacao": FiscalStatus.REJECTED,
    "denegado": FiscalStatus.DENIED,
    "submitted": FiscalStatus.SUBMITTED,
    "processing": FiscalStatus.PROCESSING,
    "error": FiscalStatus.ERROR,
    "authorized": FiscalStatus.AUTHORIZED,
    "rejected": FiscalStatus.REJECTED,
    "denied": FiscalStatus.DENIED,
}

_REACHABLE = frozenset({
    FiscalStatus.PROCESSING,
    FiscalStatus.ERROR,
    FiscalStatus.AUTHORIZED,
    FiscalStatus.REJECTED,
    FiscalStatus.DENIED,
})

ALLOWED_TRANSITIONS: Dict[FiscalStatus, FrozenSet[FiscalStatus]] = {
    FiscalStatus.SUBMITTED: _REACHABLE,
    FiscalStatus.PROCESSING: _REACHABLE,
    FiscalStatus.ERROR: _REACHABLE,
    FiscalStatus.REJECTED: frozenset({
        FiscalStatus.PROCESSING,
        FiscalStatus.REJECTED,
        FiscalStatus.AUTHORIZED,
        FiscalStatus.ERROR,
    }),
    FiscalStatus.AUTHORIZED: frozenset({FiscalStatus.AUTHORIZED}),
    FiscalStatus.DENIED: frozenset({FiscalStatus.DENIED}),
}

PENDING_STATUSES = (FiscalStatus.SUBMITTED.value, FiscalStatus.PROCESSING.value)


def normalize_status(raw) -> Tuple[Optional[FiscalStatus], Optional[str]]:
    """
    Map a raw provider status to ``(FiscalStatus, raw_string)``.

    Returns ``(None, None)`` when the provider sent no usable status.
    """
    if not isinstance(raw, str) or not raw.strip():
        return None, None
    cleaned = raw.strip()
    return PROVIDER_STATUS_MAP.get(cleaned.lower(), FiscalStatus.UNKNOWN), cleaned


def coerce_status(value: str) -> FiscalStatus:
    """Stored status column back to the enum"""
    try:
        return FiscalStatus(value)
    except ValueError:
        return FiscalStatus.UNKNOWN


def can_transition(current: str, target: FiscalStatus) -> bool:
    if target is FiscalStatus.UNKNOWN or target is FiscalStatus.SUBMITTED:
        return False
    allowed = ALLOWED_TRANSITIONS.get(coerce_status(current))
    if allowed is None:
        # Rows carrying a legacy or provider-defined status are never terminal
        return True
    return target in allowed
