"""
Bounty State Transition Validator
================================

Guards the bounty lifecycle:

    OPEN -> ACTIVE          roster filled
    OPEN -> CANCELLED       creator cancellation
    OPEN -> EXPIRED         end date passed before the roster filled
    ACTIVE -> COMPLETED     settlement with at least one winner
    ACTIVE -> CANCELLED     creator cancellation or settlement with no winner

COMPLETED, CANCELLED and EXPIRED are terminal.
"""

import logging
from typing import Dict, FrozenSet, Optional, Set

from models import BountyStatus, TERMINAL_BOUNTY_STATUSES
from utils.exception_handler import InvalidBountyState

logger = logging.getLogger(__name__)


class BountyStateValidator:
    """Validates bounty state transitions"""

    VALID_TRANSITIONS: Dict[BountyStatus, Set[BountyStatus]] = {
        BountyStatus.OPEN: {
            BountyStatus.ACTIVE,
            BountyStatus.CANCELLED,
            BountyStatus.EXPIRED,
        },
        BountyStatus.ACTIVE: {
            BountyStatus.COMPLETED,
            BountyStatus.CANCELLED,
        },
        # Terminal states, no transitions allowed
        BountyStatus.COMPLETED: set(),
        BountyStatus.CANCELLED: set(),
        BountyStatus.EXPIRED: set(),
    }

    TERMINAL_STATES: FrozenSet[BountyStatus] = TERMINAL_BOUNTY_STATUSES

    @classmethod
    def is_valid_transition(cls, from_status: BountyStatus, to_status: BountyStatus) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, set())

    @classmethod
    def require_transition(
        cls,
        from_status: BountyStatus,
        to_status: BountyStatus,
        bounty_id: Optional[str] = None,
    ) -> None:
        """Raise InvalidBountyState unless ``from_status -> to_status`` is allowed"""
        if cls.is_valid_transition(from_status, to_status):
            return

        valid_next_states = cls.VALID_TRANSITIONS.get(from_status, set())
        logger.warning(
            f"⚠️ INVALID_TRANSITION: Bounty {bounty_id or '?'} {from_status.value} -> {to_status.value} "
            f"Valid options: {sorted(s.value for s in valid_next_states)}"
        )
        raise InvalidBountyState(
            f"Bounty is {from_status.value}; cannot move to {to_status.value}",
            bounty_id=bounty_id, status=from_status.value
        )

    @classmethod
    def sources_for(cls, to_status: BountyStatus) -> Set[BountyStatus]:
        """All states that may move to ``to_status``; used as the WHERE guard of a conditional update"""
        return {source for source, targets in cls.VALID_TRANSITIONS.items() if to_status in targets}

    @classmethod
    def is_terminal_state(cls, status: BountyStatus) -> bool:
        return status in cls.TERMINAL_STATES
