"""
Tests for customer management
"""

import pytest

from lendbook.storage import InMemoryStorage
from lendbook.audit import AuditTrail, AuditEventType
from lendbook.customers import CustomerManager, CustomerStatus, Address, BankAccount
from lendbook.exceptions import InvalidInputError, NotFoundError


class TestCustomerManager:
    """Test customer creation, updates and soft deletion"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.manager = CustomerManager(self.storage, self.audit_trail)

    def create(self, email="ravi@example.com", **kwargs):
        params = dict(first_name="Ravi", last_name="Kumar", email=email, phone="+91-9000000001")
        params.update(kwargs)
        return self.manager.create_customer(**params)

    def test_create_customer(self):
        customer = self.create(
            email="Ravi@Example.com",
            pan_number="abcde1234f",
            address=Address(street="1 MG Road", city="Pune"),
            bank_details=BankAccount(account_number="1234567890", ifsc_code="hdfc0001234")
        )

        assert customer.email == "ravi@example.com"
        assert customer.full_name == "Ravi Kumar"
        assert customer.pan_number == "ABCDE1234F"
        assert customer.status == CustomerStatus.ACTIVE

        loaded = self.manager.get_customer(customer.id)
        assert loaded.address.city == "Pune"
        assert loaded.address.country == "India"
        assert loaded.bank_details.ifsc_code == "HDFC0001234"

        events = self.audit_trail.get_events_for_entity("customer", customer.id)
        assert events[0].event_type == AuditEventType.CUSTOMER_CREATED

    def test_duplicate_email_rejected(self):
        self.create()
        with pytest.raises(InvalidInputError):
            self.create(email="RAVI@example.com")

    @pytest.mark.parametrize("email", ["", "not-an-email", "a@b", "@example.com"])
    def test_invalid_email_rejected(self, email):
        with pytest.raises(InvalidInputError):
            self.create(email=email)

    def test_missing_phone_rejected(self):
        with pytest.raises(InvalidInputError):
            self.create(phone="")

    def test_update_customer(self):
        customer = self.create()
        updated = self.manager.update_customer(customer.id, phone="+91-9111111111", status="suspended", notes=None)

        assert updated.phone == "+91-9111111111"
        assert updated.status == CustomerStatus.SUSPENDED
        assert self.manager.get_customer(customer.id).phone == "+91-9111111111"

        events = self.audit_trail.get_events_by_type(AuditEventType.CUSTOMER_UPDATED)
        assert events[0].metadata["changed_fields"] == ["phone", "status"]

    def test_update_rejects_unknown_field(self):
        customer = self.create()
        with pytest.raises(InvalidInputError):
            self.manager.update_customer(customer.id, is_deleted=True)

    def test_update_rejects_invalid_status(self):
        customer = self.create()
        with pytest.raises(InvalidInputError):
            self.manager.update_customer(customer.id, status="retired")

    def test_update_rejects_taken_email(self):
        self.create(email="first@example.com")
        second = self.create(email="second@example.com")
        with pytest.raises(InvalidInputError):
            self.manager.update_customer(second.id, email="first@example.com")

    def test_soft_delete(self):
        customer = self.create()
        self.manager.delete_customer(customer.id)

        with pytest.raises(NotFoundError):
            self.manager.require_customer(customer.id)

        record = self.manager.get_customer(customer.id)
        assert record.is_deleted
        assert record.status == CustomerStatus.INACTIVE
        assert self.manager.list_customers() == []
        assert len(self.manager.list_customers(include_deleted=True)) == 1

    def test_deleted_email_can_be_reused(self):
        customer = self.create()
        self.manager.delete_customer(customer.id)
        assert self.create().id != customer.id

    def test_require_missing_customer(self):
        with pytest.raises(NotFoundError):
            self.manager.require_customer("missing")

    def test_list_and_search(self):
        self.create(email="ravi@example.com")
        anita = self.create(email="anita@example.com", first_name="Anita", last_name="Shah", phone="+91-9222222222")
        self.manager.update_customer(anita.id, status=CustomerStatus.SUSPENDED)

        assert len(self.manager.list_customers()) == 2
        assert [c.id for c in self.manager.list_customers(search="shah")] == [anita.id]
        assert [c.id for c in self.manager.list_customers(search="92222")] == [anita.id]
        assert [c.id for c in self.manager.list_customers(status=CustomerStatus.SUSPENDED)] == [anita.id]
