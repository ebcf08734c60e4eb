"""
Shared fixtures: an in-memory ledger with one registered client
"""

import pytest
from datetime import date

from bingo_ledger.config import BingoConfig
from bingo_ledger.governance import Actor, Role
from bingo_ledger.loans import LoanDraft, LoanService
from bingo_ledger.models import LoanProduct
from bingo_ledger.storage import InMemoryStorage


ADMIN = Actor(id="admin-1", role=Role.ADMIN)
MANAGER = Actor(id="manager-1", role=Role.MANAGER)
STAFF = Actor(id="staff-1", role=Role.STAFF)
GUEST = Actor(id="guest-1", role=Role.GUEST)


@pytest.fixture
def service():
    """Loan service over fresh in-memory storage"""
    return LoanService(InMemoryStorage(), config=BingoConfig(database_url="memory://"))


@pytest.fixture
def client_id(service):
    client = service.clients.register_client(
        STAFF, "Amina", "Nakato", "+256772123456", "CM90012345ABCD", "walk-in registration"
    )
    return client.id


@pytest.fixture
def bike_loan(service, client_id):
    """
    Factory for bike loans: 2,600,000 sale, 600,000 down, 50,000 a week from
    2026-02-01, moved to the requested administrative status. Originated by
    an administrator since 2,000,000 financed is above the large-loan limit.
    """
    def make(status="active", **terms):
        values = dict(sale_price=2_600_000, deposit=600_000, weekly_installment=50_000)
        values.update(terms)
        draft = LoanDraft(client_id=client_id, product=LoanProduct.BIKE, start_date=date(2026, 2, 1), **values)
        loan = service.create_loan(ADMIN, draft, "new bike hire-purchase")
        return advance(service, loan.id, status)
    return make


@pytest.fixture
def cash_loan(service, client_id):
    """Factory for cash loans: 1,000,000 at 12% over 12 months from 2026-01-15"""
    def make(status="active", **terms):
        values = dict(principal=1_000_000, annual_interest_rate_pct=12, term_months=12)
        values.update(terms)
        draft = LoanDraft(client_id=client_id, product=LoanProduct.CASH, start_date=date(2026, 1, 15), **values)
        loan = service.create_loan(STAFF, draft, "working capital loan")
        return advance(service, loan.id, status)
    return make


PATH = ["pending", "approved", "disbursed", "active"]


def advance(service, loan_id, status):
    """Walk a draft loan along the origination path up to status"""
    loan = service.get_loan(loan_id)
    if status == "draft":
        return loan
    for step in PATH[:PATH.index(status) + 1]:
        loan = service.transition_loan(MANAGER, loan_id, step, f"moving loan to {step}")
    return loan
