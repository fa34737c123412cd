from . import (
    attribute_resolver,
    calendar_service,
    condition_evaluator,
    macro_service,
    perform_executor,
    recipient_resolver,
    secure_mailing,
    transaction,
    trigger_dispatcher,
)

__all__ = [
    "attribute_resolver",
    "calendar_service",
    "condition_evaluator",
    "macro_service",
    "perform_executor",
    "recipient_resolver",
    "secure_mailing",
    "transaction",
    "trigger_dispatcher",
]
"""Trigger engine services."""
