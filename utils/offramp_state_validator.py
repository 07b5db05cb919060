"""
Off-ramp State Transition Validator
===================================

Single source of truth for which status changes an off-ramp transaction may
make. The ledger refuses any claim whose edge is not listed here, so a row can
never jump from PENDING straight to COMPLETED or leave a terminal state.
"""

import logging
from typing import Dict, Set, Optional, Tuple
from models import OfframpStatus
from utils.offramp_errors import StateTransitionError

logger = logging.getLogger(__name__)


class OfframpStateValidator:
    """
    Validates off-ramp state transitions.

    Happy path:
        PENDING -> TOKEN_RECEIVED -> SWAPPING -> USDC_RECEIVED -> PAYING -> COMPLETED

    Failure edges:
    - any non-terminal state -> FAILED (retries exhausted)
    - TOKEN_RECEIVED / USDC_RECEIVED -> REFUNDED (admin pushed funds back)
    - SWAPPING -> TOKEN_RECEIVED (stalled swap released for re-drive)
    - PAYING -> USDC_RECEIVED (payout rejected, left for retry)
    """

    VALID_TRANSITIONS: Dict[OfframpStatus, Set[OfframpStatus]] = {
        OfframpStatus.PENDING: {
            OfframpStatus.TOKEN_RECEIVED,
            OfframpStatus.FAILED
        },

        # TOKEN_RECEIVED: deposit detected, swap not yet submitted
        OfframpStatus.TOKEN_RECEIVED: {
            OfframpStatus.SWAPPING,
            OfframpStatus.FAILED,
            OfframpStatus.REFUNDED
        },

        # SWAPPING: swap claimed and possibly broadcast
        OfframpStatus.SWAPPING: {
            OfframpStatus.USDC_RECEIVED,
            OfframpStatus.TOKEN_RECEIVED,
            OfframpStatus.FAILED
        },

        # USDC_RECEIVED: settlement asset held, payout not yet submitted
        OfframpStatus.USDC_RECEIVED: {
            OfframpStatus.PAYING,
            OfframpStatus.FAILED,
            OfframpStatus.REFUNDED
        },

        # PAYING: payout claimed and possibly submitted
        OfframpStatus.PAYING: {
            OfframpStatus.COMPLETED,
            OfframpStatus.USDC_RECEIVED,
            OfframpStatus.FAILED
        },

        OfframpStatus.COMPLETED: set(),  # Terminal
        OfframpStatus.FAILED: set(),     # Terminal - manual review
        OfframpStatus.REFUNDED: set()    # Terminal
    }

    TERMINAL_STATES: Set[OfframpStatus] = {
        OfframpStatus.COMPLETED,
        OfframpStatus.FAILED,
        OfframpStatus.REFUNDED
    }

    # Side effect in flight: another worker owns the row
    IN_FLIGHT_STATES: Set[OfframpStatus] = {
        OfframpStatus.SWAPPING,
        OfframpStatus.PAYING
    }

    # Timestamp column stamped when a row enters each state
    STAGE_TIMESTAMPS: Dict[OfframpStatus, str] = {
        OfframpStatus.TOKEN_RECEIVED: "token_received_at",
        OfframpStatus.SWAPPING: "swapping_at",
        OfframpStatus.USDC_RECEIVED: "usdc_received_at",
        OfframpStatus.PAYING: "paying_at",
        OfframpStatus.COMPLETED: "completed_at",
        OfframpStatus.FAILED: "failed_at",
        OfframpStatus.REFUNDED: "refunded_at",
    }

    @classmethod
    def validate_transition(
        cls,
        from_status: OfframpStatus,
        to_status: OfframpStatus,
        transaction_id: Optional[str] = None
    ) -> Tuple[bool, str]:
        """
        Validate if a state transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        tx_ref = f"Offramp {transaction_id}" if transaction_id else "Offramp"

        if from_status == to_status:
            return False, f"Already in {from_status.value}"

        valid_next_states = cls.VALID_TRANSITIONS.get(from_status, set())

        if to_status in valid_next_states:
            logger.debug(f"✅ VALID_TRANSITION: {tx_ref} {from_status.value} -> {to_status.value}")
            return True, "Valid state transition"

        error_msg = (
            f"Invalid transition: {from_status.value} -> {to_status.value}. "
            f"Valid transitions from {from_status.value}: "
            f"{sorted(s.value for s in valid_next_states)}"
        )
        logger.error(
            f"❌ INVALID_TRANSITION: {tx_ref} {from_status.value} -> {to_status.value} "
            f"Valid options: {sorted(s.value for s in valid_next_states)}"
        )
        return False, error_msg

    @classmethod
    def require_transition(
        cls,
        from_status: OfframpStatus,
        to_status: OfframpStatus,
        transaction_id: Optional[str] = None
    ) -> None:
        """Raise StateTransitionError unless the edge is in the table"""
        is_valid, reason = cls.validate_transition(from_status, to_status, transaction_id)
        if not is_valid:
            raise StateTransitionError(reason)

    @classmethod
    def get_valid_next_states(cls, current_status: OfframpStatus) -> Set[OfframpStatus]:
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: OfframpStatus) -> bool:
        return status in cls.TERMINAL_STATES

    @classmethod
    def stage_timestamp_field(cls, status: OfframpStatus) -> Optional[str]:
        return cls.STAGE_TIMESTAMPS.get(status)


# User-facing wording, derived from stored status only
USER_STATUS_MESSAGES: Dict[OfframpStatus, str] = {
    OfframpStatus.PENDING: "Waiting for deposit",
    OfframpStatus.TOKEN_RECEIVED: "Deposit received - processing",
    OfframpStatus.SWAPPING: "Processing",
    OfframpStatus.USDC_RECEIVED: "Processing",
    OfframpStatus.PAYING: "Sending to your bank",
    OfframpStatus.COMPLETED: "Completed",
    OfframpStatus.FAILED: "Failed - contact support",
    OfframpStatus.REFUNDED: "Refunded",
}


def user_facing_status(status: str) -> str:
    return USER_STATUS_MESSAGES[OfframpStatus(status)]
