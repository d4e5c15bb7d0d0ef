"""
Contract Service - Scheduled contract status maintenance.

DRAFT contracts whose window has started become ACTIVE; ACTIVE contracts
past their end date become EXPIRED.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from ..engine.models import Contract, ContractStatus
from ..engine.money import to_date, within_window

logger = logging.getLogger(__name__)


@dataclass
class ContractSyncReport:
    """Result of a contract status sync."""
    activated: int = 0
    expired: int = 0
    activated_ids: list[str] = field(default_factory=list)
    expired_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "activated": self.activated,
            "expired": self.expired,
            "activatedIds": list(self.activated_ids),
            "expiredIds": list(self.expired_ids),
        }


def sync_contract_status(contracts: list[Contract], now: Optional[datetime] = None) -> ContractSyncReport:
    """Activate started DRAFT contracts and expire ended ACTIVE ones, in place."""
    today: date = to_date(now) or date.today()
    report = ContractSyncReport()

    for contract in contracts:
        if contract.status == ContractStatus.DRAFT:
            if within_window(today, contract.start_date, contract.end_date):
                contract.status = ContractStatus.ACTIVE
                report.activated += 1
                report.activated_ids.append(contract.id)
        elif contract.status == ContractStatus.ACTIVE:
            if contract.end_date is not None and contract.end_date < today:
                contract.status = ContractStatus.EXPIRED
                report.expired += 1
                report.expired_ids.append(contract.id)

    logger.info("Contract sync %s: %d activated, %d expired", today, report.activated, report.expired)
    return report
