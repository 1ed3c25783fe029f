from __future__ import annotations

import uuid


class DealError(Exception):
    """Base error for deal pipeline failures surfaced to the caller."""

    code = "deal_error"


class DealNotFoundError(DealError):
    code = "deal_not_found"

    def __init__(self, deal_id: uuid.UUID) -> None:
        self.deal_id = deal_id
        super().__init__("deal not found")


class DealAccessDeniedError(DealError):
    """Raised when the caller does not own the deal."""

    code = "deal_access_denied"

    def __init__(self, deal_id: uuid.UUID) -> None:
        self.deal_id = deal_id
        super().__init__("deal is not owned by caller")


class InvalidDealStateError(DealError):
    """Raised when a transition or edit is not allowed from the deal's current state."""

    code = "deal_invalid_state"


class InvalidDealActionError(InvalidDealStateError):
    code = "deal_invalid_action"

    def __init__(self, action: str | None) -> None:
        self.action = action
        super().__init__("Invalid action")


class DealConflictError(InvalidDealStateError):
    """Raised when a guarded update lost a race with another writer."""

    code = "deal_conflict"


class DealValidationError(DealError):
    code = "deal_validation_failed"
