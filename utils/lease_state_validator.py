"""
Lease State Transition Validator
================================

Transition tables for provider-issued leased resources. Each lease kind has its own
state machine; the monitor validates every status change against these tables so a
resolved lease can never be resurrected (e.g. CANCELLED -> WAITING).
"""

import logging
from typing import Dict, Set, Optional, Tuple
from models import LeaseKind, LeaseStatus
from utils.exception_handler import LeaseStateError

logger = logging.getLogger(__name__)


class StateTransitionError(LeaseStateError):
    """Raised when an invalid state transition is attempted"""
    pass


class LeaseStateValidator:
    """Validates lease state transitions per lease kind"""

    SMS_TRANSITIONS: Dict[LeaseStatus, Set[LeaseStatus]] = {
        # WAITING: number issued, no SMS yet
        LeaseStatus.WAITING: {
            LeaseStatus.READY,
            LeaseStatus.CODE_RECEIVED,
            LeaseStatus.RETRY,
            LeaseStatus.CANCELLED,
        },
        # READY: requester told the provider the SMS has been requested
        LeaseStatus.READY: {
            LeaseStatus.CODE_RECEIVED,
            LeaseStatus.RETRY,
            LeaseStatus.CANCELLED,
        },
        # RETRY: waiting for a re-sent code
        LeaseStatus.RETRY: {
            LeaseStatus.CODE_RECEIVED,
            LeaseStatus.CANCELLED,
        },
        # CODE_RECEIVED: code delivered; may ask for another one or confirm
        LeaseStatus.CODE_RECEIVED: {
            LeaseStatus.RETRY,
            LeaseStatus.COMPLETED,
        },
        LeaseStatus.COMPLETED: set(),
        LeaseStatus.CANCELLED: set(),
    }

    BOOST_TRANSITIONS: Dict[LeaseStatus, Set[LeaseStatus]] = {
        LeaseStatus.PROCESSING: {
            LeaseStatus.IN_PROGRESS,
            LeaseStatus.COMPLETED,
            LeaseStatus.PARTIAL,
            LeaseStatus.CANCELLED,
        },
        LeaseStatus.IN_PROGRESS: {
            LeaseStatus.PROCESSING,
            LeaseStatus.COMPLETED,
            LeaseStatus.PARTIAL,
            LeaseStatus.CANCELLED,
        },
        LeaseStatus.COMPLETED: set(),
        LeaseStatus.PARTIAL: set(),
        LeaseStatus.CANCELLED: set(),
    }

    PROXY_TRANSITIONS: Dict[LeaseStatus, Set[LeaseStatus]] = {
        LeaseStatus.ACTIVE: {LeaseStatus.EXPIRED},
        LeaseStatus.EXPIRED: set(),
    }

    TRANSITIONS_BY_KIND: Dict[LeaseKind, Dict[LeaseStatus, Set[LeaseStatus]]] = {
        LeaseKind.SMS_NUMBER: SMS_TRANSITIONS,
        LeaseKind.SOCIAL_BOOST: BOOST_TRANSITIONS,
        LeaseKind.PROXY: PROXY_TRANSITIONS,
    }

    # States in which the owner may still cancel and be refunded
    CANCELLABLE_STATES: Dict[LeaseKind, Set[LeaseStatus]] = {
        LeaseKind.SMS_NUMBER: {LeaseStatus.WAITING, LeaseStatus.READY, LeaseStatus.RETRY},
        LeaseKind.SOCIAL_BOOST: {LeaseStatus.PROCESSING, LeaseStatus.IN_PROGRESS},
        LeaseKind.PROXY: set(),
    }

    # States that the monitor keeps polling
    ACTIVE_STATES: Dict[LeaseKind, Set[LeaseStatus]] = {
        LeaseKind.SMS_NUMBER: {
            LeaseStatus.WAITING, LeaseStatus.READY, LeaseStatus.RETRY, LeaseStatus.CODE_RECEIVED
        },
        LeaseKind.SOCIAL_BOOST: {LeaseStatus.PROCESSING, LeaseStatus.IN_PROGRESS},
        LeaseKind.PROXY: {LeaseStatus.ACTIVE},
    }

    @classmethod
    def is_terminal(cls, kind: LeaseKind, status: LeaseStatus) -> bool:
        return not cls.TRANSITIONS_BY_KIND[kind].get(status)

    @classmethod
    def active_values(cls, kind: LeaseKind) -> Set[str]:
        return {s.value for s in cls.ACTIVE_STATES[kind]}

    @classmethod
    def cancellable_values(cls, kind: LeaseKind) -> Set[str]:
        return {s.value for s in cls.CANCELLABLE_STATES[kind]}

    @classmethod
    def validate_transition(
        cls,
        kind: LeaseKind,
        from_status: LeaseStatus,
        to_status: LeaseStatus,
        lease_id: Optional[int] = None,
    ) -> Tuple[bool, str]:
        """
        Validate if a state transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        lease_ref = f"Lease {lease_id}" if lease_id else "Lease"

        if from_status == to_status:
            return True, "No status change required"

        table = cls.TRANSITIONS_BY_KIND.get(kind)
        if table is None or from_status not in table:
            return False, f"Unknown state {from_status.value} for {kind.value} lease"

        if to_status in table[from_status]:
            logger.debug(f"✅ VALID_TRANSITION: {lease_ref} {from_status.value} -> {to_status.value}")
            return True, "Valid state transition"

        allowed = ", ".join(sorted(s.value for s in table[from_status])) or "none (terminal)"
        error_msg = (
            f"Invalid transition: {from_status.value} -> {to_status.value}. "
            f"Valid transitions from {from_status.value}: {allowed}"
        )
        logger.warning(f"🚫 INVALID_TRANSITION: {lease_ref} {error_msg}")
        return False, error_msg

    @classmethod
    def assert_transition(
        cls,
        kind: LeaseKind,
        from_status: LeaseStatus,
        to_status: LeaseStatus,
        lease_id: Optional[int] = None,
    ) -> None:
        """Raise StateTransitionError if the transition is invalid"""
        is_valid, reason = cls.validate_transition(kind, from_status, to_status, lease_id)
        if not is_valid:
            raise StateTransitionError(reason)
