# Overview: Typed failure taxonomy for the order, inventory, and payment engine.

"""
Fulfillment errors.

Every invariant violation in the order/stock/payment workflow is raised as a
subclass of FulfillmentError. Each carries a stable machine-readable code and
the HTTP status the API layer returns for it, so routes never have to parse
message strings.

    EMPTY_CART            400  cart had no lines
    INVALID_ITEM          400  unknown/inactive product, bad variant, bad qty
    INSUFFICIENT_STOCK    409  a line asks for more than is on hand
    NEGATIVE_STOCK        409  ledger oversell guard tripped (should not happen)
    INVALID_TRANSITION    409  payment status change not in the state table
    AMOUNT_MISMATCH       409  gateway amount disagrees with order/transaction
    TRANSACTION_CONFLICT  409  lock timeout/deadlock survived all retries
    ORDER_NOT_FOUND       404
"""

from __future__ import annotations


class FulfillmentError(Exception):
    code = "FULFILLMENT_ERROR"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": str(self), "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class EmptyCart(FulfillmentError):
    code = "EMPTY_CART"

    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class InvalidItem(FulfillmentError):
    code = "INVALID_ITEM"

    def __init__(self, message: str, *, product_id=None, variant_id=None):
        super().__init__(message, details={"product_id": product_id, "variant_id": variant_id})
        self.product_id = product_id
        self.variant_id = variant_id


class InsufficientStock(FulfillmentError):
    code = "INSUFFICIENT_STOCK"
    status_code = 409

    def __init__(self, *, product_id: int, variant_id: int | None, requested: int, available: int, name: str | None = None):
        label = name or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {label}: requested {requested}, available {available}",
            details={
                "product_id": product_id,
                "variant_id": variant_id,
                "requested_quantity": requested,
                "available": available,
            },
        )
        self.product_id = product_id
        self.variant_id = variant_id
        self.requested = requested
        self.available = available


class NegativeStock(FulfillmentError):
    code = "NEGATIVE_STOCK"
    status_code = 409

    def __init__(self, *, product_id: int, variant_id: int | None, previous_stock: int, delta: int):
        super().__init__(
            "Stock movement would make stock negative",
            details={
                "product_id": product_id,
                "variant_id": variant_id,
                "previous_stock": previous_stock,
                "quantity_delta": delta,
            },
        )


class OrderNotFound(FulfillmentError):
    code = "ORDER_NOT_FOUND"
    status_code = 404

    def __init__(self, order_id):
        super().__init__(f"Order {order_id} not found", details={"order_id": order_id})
        self.order_id = order_id


class InvalidTransition(FulfillmentError):
    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot change payment status from '{current}' to '{target}'",
            details={"current_status": current, "requested_status": target},
        )
        self.current = current
        self.target = target


class DuplicateTransaction(FulfillmentError):
    """Repeat delivery of an already-applied gateway transaction.

    Raised inside the payment service only; callers see an idempotent success.
    """
    code = "DUPLICATE_TRANSACTION"
    status_code = 200

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction {transaction_id} already processed")
        self.transaction_id = transaction_id


class AmountMismatch(FulfillmentError):
    code = "AMOUNT_MISMATCH"
    status_code = 409

    def __init__(self, message: str, *, expected, received):
        super().__init__(message, details={"expected": str(expected), "received": str(received)})


class TransactionConflict(FulfillmentError):
    code = "TRANSACTION_CONFLICT"
    status_code = 409

    def __init__(self, message: str = "Concurrent update conflict, please retry", attempts: int | None = None):
        super().__init__(message, details={"attempts": attempts} if attempts else None)
