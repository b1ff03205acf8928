"""Ticket intake: validation, ambiguity screening and work-item creation."""

from tdd_orchestrator.intake.tickets import (
    INTAKE_SIGNAL_ID,
    IntakeResult,
    TicketValidationError,
    assess_ambiguity,
    criterion_ambiguity,
    enqueue_ticket,
    intake_ticket,
    load_ticket,
    parse_ticket,
)

__all__ = [
    "INTAKE_SIGNAL_ID",
    "IntakeResult",
    "TicketValidationError",
    "assess_ambiguity",
    "criterion_ambiguity",
    "enqueue_ticket",
    "intake_ticket",
    "load_ticket",
    "parse_ticket",
]
