from __future__ import annotations

import logging

from compliance.data_models import ClaimLockState, ClaimReference, ClaimStatus, DeclarationId, LockState
from compliance.errors import DeclarationLocked

logger = logging.getLogger(__name__)

ACTIVE_CLAIM_STATUSES = frozenset({
    ClaimStatus.PENDING,
    ClaimStatus.UNDER_REVIEW,
    ClaimStatus.GUEST_RESPONSE_PENDING,
})
TERMINAL_CLAIM_STATUSES = frozenset({
    ClaimStatus.APPROVED,
    ClaimStatus.DENIED,
    ClaimStatus.PAID,
    ClaimStatus.RESOLVED,
})

UNLOCK_HINT = "Unlocks when the claim is approved, denied, paid or resolved."


def normalize_claim_status(status: ClaimStatus | str) -> ClaimStatus | None:
    if isinstance(status, ClaimStatus):
        return status
    try:
        return ClaimStatus(str(status).strip().upper())
    except ValueError:
        return None


def is_active_status(status: ClaimStatus | str) -> bool:
    normalized = normalize_claim_status(status)
    if normalized is None:
        # Unrecognized statuses keep the lock closed until someone maps them.
        logger.warning("Unknown claim status %r treated as active", status)
        return True
    return normalized in ACTIVE_CLAIM_STATUSES


def transition(state: LockState, claim_status: ClaimStatus | str) -> LockState:
    if is_active_status(claim_status):
        return LockState.LOCKED
    if state is LockState.LOCKED:
        logger.info("Declaration lock released on claim status %s", claim_status)
    return LockState.UNLOCKED


def resolve_lock_state(claim: ClaimReference | None) -> ClaimLockState:
    if claim is None:
        return ClaimLockState(has_active_claim=False, state=LockState.UNLOCKED)
    state = transition(LockState.UNLOCKED, claim.status)
    if state is LockState.UNLOCKED:
        return ClaimLockState(has_active_claim=False, state=LockState.UNLOCKED)
    status = getattr(claim.status, "value", str(claim.status))
    return ClaimLockState(
        has_active_claim=True,
        state=LockState.LOCKED,
        active_claim=claim,
        reason=(
            f"Claim {claim.claim_id} ({status}) filed {claim.filed_at.date().isoformat()} is open; "
            "usage declarations cannot change while a claim is being adjudicated."
        ),
        unlocks_when=UNLOCK_HINT,
    )


def check_declaration_change(
    vehicle_id: str,
    lock_state: ClaimLockState,
    current_id: DeclarationId,
    new_id: DeclarationId,
) -> bool:
    """Return True when a write is needed, False for an idempotent no-op.

    Raises DeclarationLocked whenever the vehicle has an active claim, including
    when the requested declaration equals the current one.
    """
    if lock_state.locked and lock_state.active_claim is not None:
        raise DeclarationLocked(vehicle_id, lock_state.active_claim)
    return new_id != current_id
