class TicketTriggerError(Exception):
    """Base class for trigger engine errors.

    Every engine exception inherits from here so hosts can catch the whole
    family with a single ``except TicketTriggerError`` clause.
    """

    def __init__(self, detail: str = "Trigger engine error"):
        self.detail = detail
        super().__init__(detail)


class RuleValidationError(TicketTriggerError):
    """Raised when a rule definition is rejected before it is persisted."""

    def __init__(self, detail: str = "Invalid rule definition"):
        super().__init__(detail)


class RuleInvariantError(TicketTriggerError):
    """Raised when malformed rule data reaches the dispatcher.

    This is fatal: the dispatch cycle is aborted and the error propagates to
    the commit caller.
    """

    def __init__(self, detail: str = "Malformed rule reached the dispatcher"):
        super().__init__(detail)


class ResolutionFailure(TicketTriggerError):
    """Raised when an attribute, recipient, or calendar lookup cannot complete."""

    def __init__(self, detail: str = "Lookup failed"):
        super().__init__(detail)


class ExecutionFailure(TicketTriggerError):
    """Raised when a single perform action cannot complete."""

    def __init__(self, detail: str = "Perform action failed", *, action: str | None = None):
        self.action = action
        super().__init__(detail)


class AttributeValidationError(ExecutionFailure):
    """Raised by record access when a write targets an invalid attribute or value."""

    def __init__(self, detail: str = "Invalid attribute value", *, action: str | None = None):
        super().__init__(detail, action=action)


class DeliveryError(ExecutionFailure):
    """Raised when the outbound message capability rejects a message."""

    def __init__(self, detail: str = "Message delivery failed", *, action: str | None = None):
        super().__init__(detail, action=action)


class SecurityPolicyBlock(TicketTriggerError):
    """Signals that a ``discard`` security policy suppressed an outbound action.

    Informational: it is reported on the execution result, never raised to
    the commit caller.
    """

    def __init__(self, detail: str = "Outbound action discarded by security policy"):
        super().__init__(detail)


class TriggerNotFoundError(TicketTriggerError):
    """Raised when a stored trigger does not exist."""

    def __init__(self, detail: str = "Trigger not found"):
        super().__init__(detail)
