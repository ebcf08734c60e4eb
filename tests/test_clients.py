"""
Test suite for the client register
"""

import pytest

from bingo_ledger.audit import AuditAction, AuditTrail
from bingo_ledger.clients import ClientRegistry, KYCStatus
from bingo_ledger.errors import AccessDenied, InvalidTerms, NotFound
from bingo_ledger.governance import Actor, GovernanceGate, Role
from bingo_ledger.storage import InMemoryStorage

MANAGER = Actor(id="manager-1", role=Role.MANAGER)
STAFF = Actor(id="staff-1", role=Role.STAFF)


class TestClientRegistry:
    """Test client registration and KYC"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.registry = ClientRegistry(self.storage, self.audit, GovernanceGate(self.audit))

    def _register(self, id_number="CM90012345ABCD", phone="+256 772-123456"):
        return self.registry.register_client(STAFF, " Amina ", "Nakato", phone, id_number, "walk-in registration")

    def test_register_client(self):
        client = self._register()

        assert client.full_name == "Amina Nakato"
        assert client.phone == "+256772123456"
        assert client.kyc_status == KYCStatus.PENDING
        assert client.created_by == "staff-1"
        assert self.registry.get_client(client.id) == client

        entries = self.audit.entries_for("client", client.id)
        assert [e.action for e in entries] == [AuditAction.CLIENT_REGISTERED]

    @pytest.mark.parametrize("phone", ["12345", "+25677212345678901", "0772-abc-456", ""])
    def test_invalid_phone(self, phone):
        with pytest.raises(InvalidTerms):
            self._register(phone=phone)

    def test_duplicate_id_number(self):
        self._register()
        with pytest.raises(InvalidTerms):
            self._register(id_number="cm90012345abcd", phone="0701234567")
        assert len(self.registry.list_clients()) == 1

    def test_unknown_client(self):
        with pytest.raises(NotFound):
            self.registry.get_client("missing")

    def test_update_kyc(self):
        client = self._register()
        updated = self.registry.update_kyc(MANAGER, client.id, KYCStatus.VERIFIED, "national ID checked",
                                           notes="original ID sighted")

        assert updated.kyc_status == KYCStatus.VERIFIED
        assert updated.kyc_notes == "original ID sighted"
        assert self.registry.list_clients(KYCStatus.VERIFIED) == [updated]

        entry = self.audit.entries_for("client", client.id)[-1]
        assert entry.action == AuditAction.CLIENT_KYC_UPDATED
        assert entry.before == {'kyc_status': 'pending', 'kyc_notes': ''}
        assert entry.after == {'kyc_status': 'verified', 'kyc_notes': 'original ID sighted'}

    def test_staff_cannot_update_kyc(self):
        client = self._register()
        with pytest.raises(AccessDenied):
            self.registry.update_kyc(STAFF, client.id, KYCStatus.VERIFIED, "national ID checked")
        assert self.registry.get_client(client.id).kyc_status == KYCStatus.PENDING
