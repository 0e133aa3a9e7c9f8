"""
Error taxonomy for order fulfillment.

Every error carries a stable ``code`` and a ``details`` dict so that the
HTTP layer can hand staff enough information to act on it (current
balance, required amount, offending card, ...).
"""
from typing import Any, Dict, Optional


class OrderDeskError(Exception):
    code = "orderdesk_error"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


# -- lookups -----------------------------------------------------------------

class NotFound(OrderDeskError):
    code = "not_found"
    status_code = 404


class OrderNotFound(NotFound):
    code = "order_not_found"

    def __init__(self, order_number: str):
        super().__init__(f"Order #{order_number} not found", order_number=order_number)


class UserNotFound(NotFound):
    code = "user_not_found"

    def __init__(self, user_id: Optional[int], order_number: Optional[str] = None):
        super().__init__(
            f"User not found for order #{order_number}" if order_number else f"User {user_id} not found",
            user_id=user_id,
            order_number=order_number,
        )


class CardNotFound(NotFound):
    code = "card_not_found"

    def __init__(self, card_id: int):
        super().__init__(f"Card with id {card_id} not found", card_id=card_id)


class TicketNotFound(NotFound):
    code = "ticket_not_found"

    def __init__(self, order_number: str):
        super().__init__(f"Order #{order_number} has no open ticket", order_number=order_number)


# -- state invariants --------------------------------------------------------

class PoolExhausted(OrderDeskError):
    code = "pool_exhausted"
    status_code = 409

    def __init__(self):
        super().__init__("No unused cards available in inventory")


class InsufficientFunds(OrderDeskError):
    code = "insufficient_funds"
    status_code = 402

    def __init__(self, order_number: str, balance_cents: int, required_cents: int):
        super().__init__(
            f"Insufficient funds for order #{order_number}: "
            f"balance {balance_cents} < required {required_cents}",
            order_number=order_number,
            balance_cents=balance_cents,
            required_cents=required_cents,
        )


class AlreadyResolved(OrderDeskError):
    code = "already_resolved"
    status_code = 409

    def __init__(self, order_number: str, status: str):
        super().__init__(f"Order #{order_number} is already {status}", order_number=order_number, status=status)


class NotResolvable(OrderDeskError):
    code = "not_resolvable"
    status_code = 409

    def __init__(self, order_number: str, status: str):
        super().__init__(
            f"Order #{order_number} cannot be resolved while {status}",
            order_number=order_number,
            status=status,
        )


class AlreadyClaimed(OrderDeskError):
    code = "already_claimed"
    status_code = 409

    def __init__(self, order_number: str, claimed_by: str):
        super().__init__(
            f"Order #{order_number} is already claimed by {claimed_by}",
            order_number=order_number,
            claimed_by=claimed_by,
        )


class CardAlreadyUsed(OrderDeskError):
    code = "card_already_used"
    status_code = 409

    def __init__(self, card_id: int):
        super().__init__(f"Card with id {card_id} has already been used", card_id=card_id)


# -- record validation -------------------------------------------------------

class DuplicateCard(OrderDeskError):
    code = "duplicate_card"
    status_code = 409


class MalformedRecord(OrderDeskError):
    code = "malformed_record"
    status_code = 422


# -- collaborators -----------------------------------------------------------

class TransportFailure(OrderDeskError):
    code = "transport_failure"
    status_code = 502


class StoreFailure(OrderDeskError):
    code = "store_failure"
    status_code = 503


class OperationTimeout(OrderDeskError):
    code = "timeout"
    status_code = 408
