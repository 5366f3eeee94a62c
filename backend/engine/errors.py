"""Exception types raised by the reconciliation engine."""


class ReconciliationError(Exception):
    """Base class for engine errors."""


class SaleValidationError(ReconciliationError, ValueError):
    """Sale line inputs rejected before any calculation runs."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class PayloadError(ReconciliationError, ValueError):
    """Inbound envelope is structurally unusable (no id, no object)."""
