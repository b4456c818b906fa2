"""Enrollment lifecycle of a user's second factor.

    no_secret --generate_secret--> pending_verification --enable--> enabled
    enabled --disable--> no_secret

A failed ``enable`` leaves the record pending; calling ``generate_secret``
again while pending discards the previous secret. Re-running ``enable`` on an
enabled record only rotates the backup codes.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from twofactor.services.errors import AlreadyEnabled, InvalidTransition

if TYPE_CHECKING:
    from twofactor.services.store import TotpRecord


class EnrollmentState(str, Enum):
    no_secret = 'no_secret'
    pending_verification = 'pending_verification'
    enabled = 'enabled'


TRANSITIONS: dict[EnrollmentState, set[EnrollmentState]] = {
    EnrollmentState.no_secret: {EnrollmentState.pending_verification},
    EnrollmentState.pending_verification: {EnrollmentState.pending_verification, EnrollmentState.enabled},
    EnrollmentState.enabled: {EnrollmentState.enabled, EnrollmentState.no_secret},
}


def state_of(record: TotpRecord | None) -> EnrollmentState:
    if record is None:
        return EnrollmentState.no_secret
    if record.enabled:
        return EnrollmentState.enabled
    return EnrollmentState.pending_verification


def can_transition(current: EnrollmentState, target: EnrollmentState) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: EnrollmentState, target: EnrollmentState) -> None:
    if can_transition(current, target):
        return
    if current is EnrollmentState.enabled and target is EnrollmentState.pending_verification:
        raise AlreadyEnabled('Two-factor authentication is already enabled; disable it first')
    raise InvalidTransition(f'Cannot move from {current.value} to {target.value}')
