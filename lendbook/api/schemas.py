"""
Pydantic schemas for API requests
"""

from decimal import Decimal
from datetime import date
from typing import Optional
from pydantic import BaseModel, Field

from ..customers import Address, BankAccount
from ..loans import BankDetails


class AddressModel(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: str = "India"

    def to_address(self) -> Address:
        return Address(street=self.street, city=self.city, state=self.state, country=self.country)


class BankAccountModel(BaseModel):
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    ifsc_code: Optional[str] = None
    bank_name: Optional[str] = None

    def to_bank_account(self) -> BankAccount:
        return BankAccount(**self.model_dump())


class BankDetailsModel(BaseModel):
    account_holder_name: Optional[str] = None
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    ifsc_code: Optional[str] = None
    branch: Optional[str] = None
    upi_id: Optional[str] = None
    transaction_id: Optional[str] = None

    def to_bank_details(self) -> BankDetails:
        return BankDetails(**self.model_dump())


# Calculator schemas
class LoanEstimateRequest(BaseModel):
    principal: Decimal = Field(..., description="Loan amount")
    monthly_interest_rate: Decimal = Field(..., description="Percent per month")
    loan_duration_months: int
    interest_type: Optional[str] = None
    start_date: Optional[date] = None
    manual_emi: Optional[Decimal] = None


# Customer schemas
class CreateCustomerRequest(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone: str
    address: Optional[AddressModel] = None
    pan_number: Optional[str] = None
    bank_details: Optional[BankAccountModel] = None
    notes: Optional[str] = None


class UpdateCustomerRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[AddressModel] = None
    pan_number: Optional[str] = None
    bank_details: Optional[BankAccountModel] = None
    status: Optional[str] = None
    notes: Optional[str] = None


# Lender schemas
class UpdateLenderRequest(BaseModel):
    business_name: Optional[str] = None
    owner_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[AddressModel] = None
    pan_number: Optional[str] = None
    bank_details: Optional[BankAccountModel] = None
    terms_and_conditions: Optional[str] = None
    loan_prefix: Optional[str] = None
    invoice_prefix: Optional[str] = None
    contract_prefix: Optional[str] = None
    receipt_prefix: Optional[str] = None


# Loan schemas
class CreateLoanRequest(BaseModel):
    customer_id: str
    principal: Decimal
    monthly_interest_rate: Decimal
    loan_duration_months: int
    interest_type: Optional[str] = None
    start_date: Optional[date] = None
    manual_emi: Optional[Decimal] = None
    notes: Optional[str] = None


class UpdateLoanRequest(BaseModel):
    customer_id: Optional[str] = None
    principal: Optional[Decimal] = None
    monthly_interest_rate: Optional[Decimal] = None
    loan_duration_months: Optional[int] = None
    interest_type: Optional[str] = None
    start_date: Optional[date] = None
    manual_emi: Optional[Decimal] = None
    notes: Optional[str] = None


class LoanStatusRequest(BaseModel):
    status: str


class CancelLoanRequest(BaseModel):
    reason: Optional[str] = None


class ForecloseLoanRequest(BaseModel):
    discount: Decimal = Decimal('0')
    settlement_amount: Optional[Decimal] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    bank_details: Optional[BankDetailsModel] = None
    settlement_date: Optional[date] = None


# Payment schemas
class RecordPaymentRequest(BaseModel):
    loan_id: str
    amount_paid: Decimal
    payment_method: Optional[str] = None
    payment_date: Optional[date] = None
    reference_id: Optional[str] = None
    notes: Optional[str] = None
    bank_details: Optional[BankDetailsModel] = None


class UpdatePaymentRequest(BaseModel):
    payment_method: Optional[str] = None
    payment_date: Optional[date] = None
    reference_id: Optional[str] = None
    notes: Optional[str] = None
    bank_details: Optional[BankDetailsModel] = None
    amount_paid: Optional[Decimal] = None


# Invoice schemas
class InvoiceRunRequest(BaseModel):
    as_of: Optional[date] = None
