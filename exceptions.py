"""Errors raised while pricing a cart against the promotion catalog."""


class PromotionError(Exception):
    """Base exception for all engine errors."""
    def __init__(self, message="Promotion evaluation failed", status_code=500):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def to_dict(self):
        return {"detail": self.message}


class ProductNotFound(PromotionError):
    """A requested product reference does not resolve in the catalog."""
    def __init__(self, product_ref):
        super().__init__(f"Product '{product_ref}' not found", 404)
        self.product_ref = product_ref


class CatalogUnavailable(PromotionError):
    """The rule or price store could not be reached."""
    def __init__(self, message="Promotion catalog is unavailable"):
        super().__init__(message, 503)


class InvalidRuleData(PromotionError):
    """A stored rule violates an invariant; the rule is skipped, not fatal."""
    def __init__(self, rule_id, reason):
        super().__init__(f"Rule {rule_id} is invalid: {reason}", 422)
        self.rule_id = rule_id
        self.reason = reason


class NegativeOrZeroQuantity(PromotionError):
    """A cart line asked for zero or fewer units."""
    def __init__(self, product_ref, quantity):
        super().__init__(f"Quantity for '{product_ref}' must be positive, got {quantity}", 422)
        self.product_ref = product_ref
        self.quantity = quantity
