class TimebillError(Exception):
    """Base class for errors raised by the store and the invoice pipeline."""
    pass


class NotFoundError(TimebillError):
    """The requested record does not exist or belongs to another user."""
    pass


class PersistenceError(TimebillError):
    """A write was rejected; nothing was changed in the store."""
    pass


class DuplicateInvoiceNumberError(PersistenceError):
    """Another invoice already uses this number. Recompute the number and retry."""

    def __init__(self, invoice_number: str):
        super().__init__(f"Invoice number {invoice_number} is already in use")
        self.invoice_number = invoice_number


class InvalidStatusTransitionError(TimebillError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot change invoice status from {current} to {requested}")
        self.current = current
        self.requested = requested


class ImmutableTimecardError(TimebillError):
    """Billed timecards can be neither edited nor deleted."""
    pass
