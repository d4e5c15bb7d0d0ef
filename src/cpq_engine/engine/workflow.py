"""
Quote status transitions.

DRAFT → PENDING_APPROVAL (approval required) or APPROVED (auto-approved)
PENDING_APPROVAL → APPROVED | REJECTED
APPROVED → ACCEPTED | REJECTED
ACCEPTED → FINALIZED
Any non-terminal status → CANCELLED
"""
import logging
from datetime import datetime
from typing import Optional

from .errors import PreconditionError
from .models import Quote, QuoteStatus

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {QuoteStatus.FINALIZED, QuoteStatus.REJECTED, QuoteStatus.CANCELLED}

VALID_TRANSITIONS: dict[QuoteStatus, set[QuoteStatus]] = {
    QuoteStatus.DRAFT: {QuoteStatus.PENDING_APPROVAL, QuoteStatus.APPROVED, QuoteStatus.CANCELLED},
    QuoteStatus.PENDING_APPROVAL: {QuoteStatus.APPROVED, QuoteStatus.REJECTED, QuoteStatus.CANCELLED},
    QuoteStatus.APPROVED: {QuoteStatus.ACCEPTED, QuoteStatus.REJECTED, QuoteStatus.CANCELLED},
    QuoteStatus.ACCEPTED: {QuoteStatus.FINALIZED, QuoteStatus.CANCELLED},
    QuoteStatus.FINALIZED: set(),
    QuoteStatus.REJECTED: set(),
    QuoteStatus.CANCELLED: set(),
}


def can_transition(current: QuoteStatus, target: QuoteStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def transition(quote: Quote, target: QuoteStatus):
    """Move quote to target status or raise PreconditionError."""
    target = QuoteStatus(target)
    if not can_transition(quote.status, target):
        message = f"Cannot change quote {quote.id} from {quote.status.value} to {target.value}"
        logger.warning(message)
        raise PreconditionError(message)

    previous = quote.status
    quote.status = target
    logger.info("Quote %s: %s → %s", quote.id, previous.value, target.value)


def submit(quote: Quote, now: Optional[datetime] = None) -> QuoteStatus:
    """
    Submit a draft quote.

    Uses quote.requires_approval from the last recompute: approval needed
    goes to PENDING_APPROVAL, otherwise the quote is auto-approved.
    """
    if quote.status != QuoteStatus.DRAFT:
        raise PreconditionError(f"Only draft quotes can be submitted (quote {quote.id} is {quote.status.value})")
    if not quote.customer_id:
        raise PreconditionError("Quote must have a customer before submission")
    if not quote.line_items:
        raise PreconditionError("Quote must have at least one line item before submission")

    if quote.requires_approval:
        transition(quote, QuoteStatus.PENDING_APPROVAL)
    else:
        transition(quote, QuoteStatus.APPROVED)
        quote.approved_by = "system"
        quote.approved_at = now or datetime.now()
    return quote.status


def approve(quote: Quote, approved_by: str, now: Optional[datetime] = None) -> QuoteStatus:
    if quote.status != QuoteStatus.PENDING_APPROVAL:
        raise PreconditionError(f"Only quotes pending approval can be approved (quote {quote.id} is {quote.status.value})")
    transition(quote, QuoteStatus.APPROVED)
    quote.approved_by = approved_by
    quote.approved_at = now or datetime.now()
    return quote.status


def reject(quote: Quote, reason: Optional[str] = None) -> QuoteStatus:
    transition(quote, QuoteStatus.REJECTED)
    quote.rejection_reason = reason
    return quote.status


def accept(quote: Quote) -> QuoteStatus:
    transition(quote, QuoteStatus.ACCEPTED)
    return quote.status


def finalize(quote: Quote) -> QuoteStatus:
    transition(quote, QuoteStatus.FINALIZED)
    return quote.status


def cancel(quote: Quote) -> QuoteStatus:
    transition(quote, QuoteStatus.CANCELLED)
    return quote.status
