"""
Entity catalogue for the synchronized Tally record kinds.

Each EntityType maps to one export report, the record tag inside the
report's response, the list sections every record must carry and a mapper
that turns a normalized Raw Record into staging columns plus a pydantic
payload.
"""
from __future__ import annotations
import hashlib
import json
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional, Union
from pydantic import BaseModel, Field
from loguru import logger

from .parsing import parse_amount, parse_bool, parse_int, parse_tally_date

RawRecord = dict[str, Union[str, list["RawRecord"]]]


class EntityType(str, Enum):
    CUSTOMER = "CUSTOMER"
    INVOICE = "INVOICE"
    PAYMENT = "PAYMENT"
    JOURNAL = "JOURNAL"
    DEBITNOTE = "DEBITNOTE"

    @classmethod
    def parse(cls, value: Union[str, "EntityType"]) -> "EntityType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(
                f"Unknown entity type: {value}. Valid: {[e.value for e in cls]}"
            ) from None


# ---------------------------------------------------------------------------
# Raw Record accessors
# ---------------------------------------------------------------------------

def scalar(record: RawRecord, *keys: str, default: str = "") -> str:
    """Return the first non-empty scalar among ``keys``."""
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return default


def section(record: RawRecord, key: str) -> list[RawRecord]:
    value = record.get(key)
    return value if isinstance(value, list) else []


def extract_alter_id(record: RawRecord) -> Optional[int]:
    """
    Return the record's change id.

    None when the report sent no id or an unparseable one; such records are
    staged without being compared to the cursor.
    """
    raw = scalar(record, "ALTER_ID", "ALTERID")
    if not raw:
        return None
    alter_id = parse_int(raw, default=None)
    if alter_id is None:
        logger.warning(f"Unparseable alter id {raw!r}; record will be staged without one")
    return alter_id


# ---------------------------------------------------------------------------
# Payload models
# ---------------------------------------------------------------------------

class InvoiceRef(BaseModel):
    invoice_number: str
    invoice_date: Optional[date] = None
    amount: Decimal = Decimal("0")


class BillRef(BaseModel):
    bill_id: str = ""
    bill_type: str = ""
    bill_credit_period: str = ""
    bill_amount: Decimal = Decimal("0")


class LedgerLine(BaseModel):
    customer_id: str = ""
    ledger_name: str = ""
    parent: str = ""
    ledger_group: str = ""
    amount: Decimal = Decimal("0")
    conversion_rate: Decimal = Decimal("1")
    currency_symbol: str = ""
    currency: str = ""
    is_debit: bool = False
    invoice_details: list[InvoiceRef] = Field(default_factory=list)


class InventoryLine(BaseModel):
    item_name: str = ""
    quantity: str = ""
    rate: str = ""
    amount: Decimal = Decimal("0")


class CustomerRecord(BaseModel):
    customer_id: str
    name: str
    email: str = ""
    phone: str = ""
    mobile: str = ""
    address: str = ""
    group: str = ""
    gstin: str = ""
    state: str = ""
    country: str = ""
    bill_by_bill: bool = True
    opening_balance: Decimal = Decimal("0")
    current_balance: Decimal = Decimal("0")
    invoice_details: list[InvoiceRef] = Field(default_factory=list)


class InvoiceRecord(BaseModel):
    invoice_id: str
    invoice_number: str
    voucher_type: str = ""
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    customer_id: str = ""
    status: str = ""
    type: str = ""
    total: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")
    address: str = ""
    state: str = ""
    country: str = ""
    company_name: str = ""
    irn: str = ""
    ewaybill_number: str = ""
    has_inventory_entries: bool = False
    lines: list[InventoryLine] = Field(default_factory=list)
    ledger_entries: list[LedgerLine] = Field(default_factory=list)


class PaymentRecord(BaseModel):
    receipt_id: str
    receipt_number: str = ""
    customer_id: str = ""
    receipt_date: Optional[date] = None
    amount: Decimal = Decimal("0")
    transaction_type: str = ""
    bill_details: list[BillRef] = Field(default_factory=list)


class JournalRecord(BaseModel):
    master_id: str = ""
    voucher_number: str = ""
    ref_number: str = ""
    voucher_date: Optional[date] = None
    ref_date: Optional[date] = None
    narration: str = ""
    entry_type: str = "JVENTRY"
    ledger_entries: list[LedgerLine] = Field(default_factory=list)


class DebitNoteRecord(BaseModel):
    invoice_id: str
    invoice_number: str = ""
    voucher_type: str = ""
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    customer_id: str = ""
    status: str = ""
    total: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")
    bill_details: list[BillRef] = Field(default_factory=list)
    ledger_entries: list[LedgerLine] = Field(default_factory=list)


@dataclass
class MappedRecord:
    """Staging columns derived from one Raw Record."""

    external_id: str
    alter_id: Optional[int]
    voucher_number: str
    record_date: Optional[date]
    party_name: str
    amount: Decimal
    payload: BaseModel

    def payload_json(self) -> dict:
        return self.payload.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Shared sub-record mappers
# ---------------------------------------------------------------------------

def _due_date(issue: Optional[date], due_raw: str) -> Optional[date]:
    """Due date from the report, or issue date + 2 days when the report has none."""
    due = parse_tally_date(due_raw)
    if due is not None:
        return due
    return issue + timedelta(days=2) if issue else None


def _invoice_refs(record: RawRecord) -> list[InvoiceRef]:
    refs = []
    for inv in section(record, "INVOICE_DETAILS"):
        number = scalar(inv, "INVOICE_NUMBER")
        if not number:
            continue
        refs.append(
            InvoiceRef(
                invoice_number=number,
                invoice_date=parse_tally_date(scalar(inv, "INVOICE_DATE")),
                amount=parse_amount(scalar(inv, "AMOUNT")),
            )
        )
    return refs


def _bill_refs(record: RawRecord) -> list[BillRef]:
    bills = section(record, "BILL_DETAILS") + section(record, "BILLALLOCATIONS")
    return [
        BillRef(
            bill_id=scalar(b, "BILL_ID", "NAME"),
            bill_type=scalar(b, "BILL_TYPE", "BILLTYPE"),
            bill_credit_period=scalar(b, "BILL_CREDITPERIOD", "BILLCREDITPERIOD"),
            bill_amount=parse_amount(scalar(b, "BILL_AMOUNT", "AMOUNT")),
        )
        for b in bills
    ]


def _ledger_lines(record: RawRecord) -> list[LedgerLine]:
    entries = section(record, "LEDGER_ENTRIES") + section(record, "ALLLEDGERENTRIES")
    lines = []
    for entry in entries:
        rate = scalar(entry, "CONVERSION_RATE", "CONVERSATION_RATE")
        lines.append(
            LedgerLine(
                customer_id=scalar(entry, "CUSTOMER_ID"),
                ledger_name=scalar(entry, "LEDGERNAME"),
                parent=scalar(entry, "PARENT"),
                ledger_group=scalar(entry, "LEDGERGROUP"),
                amount=parse_amount(scalar(entry, "AMOUNT")),
                conversion_rate=parse_amount(rate) if rate else Decimal("1"),
                currency_symbol=scalar(entry, "CURRENCYSYMBOL"),
                currency=scalar(entry, "CURRENCY"),
                is_debit=parse_bool(scalar(entry, "IS_DEBIT", "ISDEEMEDPOSITIVE")),
                invoice_details=_invoice_refs(entry),
            )
        )
    return lines


def _inventory_lines(record: RawRecord) -> list[InventoryLine]:
    entries = section(record, "ALLINVENTORYENTRIES") + section(record, "INVENTORY_ITEMS")
    return [
        InventoryLine(
            item_name=scalar(e, "STOCKITEMNAME", "ITEM_NAME"),
            quantity=scalar(e, "BILLEDQTY", "ACTUALQTY", "QUANTITY"),
            rate=scalar(e, "RATE"),
            amount=parse_amount(scalar(e, "AMOUNT")),
        )
        for e in entries
    ]


def _customer_id(record: RawRecord) -> str:
    value = scalar(record, "CUSTOMER_ID")
    return "" if value == "0" else value


# ---------------------------------------------------------------------------
# Per-entity mappers
# ---------------------------------------------------------------------------

def map_customer(record: RawRecord) -> tuple[BaseModel, str, Optional[date], str, Decimal]:
    payload = CustomerRecord(
        customer_id=_customer_id(record),
        name=scalar(record, "NAME"),
        email=scalar(record, "EMAIL"),
        phone=scalar(record, "PHONE"),
        mobile=scalar(record, "MOBILE"),
        address=scalar(record, "ADDRESS"),
        group=scalar(record, "GROUP", "PARENT"),
        gstin=scalar(record, "GSTIN", "PARTYGSTIN"),
        state=scalar(record, "STATE", "LEDGERSTATE"),
        country=scalar(record, "COUNTRY"),
        bill_by_bill=parse_bool(scalar(record, "BILL_BY_BILL"), default=True),
        opening_balance=parse_amount(scalar(record, "OPENING_BALANCE", "OPENINGBALANCE")),
        current_balance=parse_amount(scalar(record, "CURRENT_BALANCE", "CLOSINGBALANCE")),
        invoice_details=_invoice_refs(record),
    )
    return payload, "", None, payload.name, payload.current_balance


def map_invoice(record: RawRecord) -> tuple[BaseModel, str, Optional[date], str, Decimal]:
    issue = parse_tally_date(scalar(record, "ISSUE_DATE", "DATE"))
    payload = InvoiceRecord(
        invoice_id=scalar(record, "INVOICE_ID", "GUID"),
        invoice_number=scalar(record, "INVOICE_NUMBER", "VOUCHERNUMBER"),
        voucher_type=scalar(record, "VOUCHER_TYPE", "VCHTYPE", "VOUCHERTYPENAME"),
        issue_date=issue,
        due_date=_due_date(issue, scalar(record, "DUE_DATE")),
        customer_id=_customer_id(record),
        status=scalar(record, "STATUS"),
        type=scalar(record, "TYPE"),
        total=parse_amount(scalar(record, "TOTAL", "AMOUNT")),
        balance=parse_amount(scalar(record, "BALANCE")),
        address=scalar(record, "ADDRESS"),
        state=scalar(record, "STATE"),
        country=scalar(record, "COUNTRY"),
        company_name=scalar(record, "COMPANY_NAME", "PARTYLEDGERNAME"),
        irn=scalar(record, "IRN"),
        ewaybill_number=scalar(record, "EWAYBILL_NUM"),
        has_inventory_entries=parse_bool(scalar(record, "INVENTORY_ENTRIES")),
        lines=_inventory_lines(record),
        ledger_entries=_ledger_lines(record),
    )
    return payload, payload.invoice_number, issue, payload.company_name or payload.customer_id, payload.total


def map_payment(record: RawRecord) -> tuple[BaseModel, str, Optional[date], str, Decimal]:
    received = parse_tally_date(scalar(record, "RECEIPT_DATE", "DATE"))
    payload = PaymentRecord(
        receipt_id=scalar(record, "RECEIPT_ID", "GUID"),
        receipt_number=scalar(record, "RECEIPT_NUMBER", "VOUCHERNUMBER"),
        customer_id=_customer_id(record) or scalar(record, "CUSTOMER_NAME"),
        receipt_date=received,
        amount=parse_amount(scalar(record, "RECEIPT_AMOUNT", "AMOUNT")),
        transaction_type=scalar(record, "TRANSACTION_TYPE"),
        bill_details=_bill_refs(record),
    )
    return payload, payload.receipt_number, received, payload.customer_id, payload.amount


def map_journal(record: RawRecord) -> tuple[BaseModel, str, Optional[date], str, Decimal]:
    voucher_date = parse_tally_date(scalar(record, "DATE"))
    ledger_entries = _ledger_lines(record)
    payload = JournalRecord(
        master_id=scalar(record, "MASTER_ID", "MASTERID"),
        voucher_number=scalar(record, "VOUCHER_NUMBER", "VOUCHERNUMBER"),
        ref_number=scalar(record, "REF_NUMBER"),
        voucher_date=voucher_date,
        ref_date=parse_tally_date(scalar(record, "REF_DATE")),
        narration=scalar(record, "NARRATION"),
        entry_type=scalar(record, "ENTRY_TYPE", default="JVENTRY"),
        ledger_entries=ledger_entries,
    )
    debit_total = sum((line.amount for line in ledger_entries if line.is_debit), Decimal("0"))
    party = next((line.ledger_name for line in ledger_entries if line.customer_id), "")
    return payload, payload.voucher_number, voucher_date, party, debit_total


def map_debit_note(record: RawRecord) -> tuple[BaseModel, str, Optional[date], str, Decimal]:
    issue = parse_tally_date(scalar(record, "ISSUE_DATE", "DATE"))
    payload = DebitNoteRecord(
        invoice_id=scalar(record, "INVOICE_ID", "GUID"),
        invoice_number=scalar(record, "INVOICE_NUMBER", "VOUCHERNUMBER"),
        voucher_type=scalar(record, "VOUCHER_TYPE", default="credit_note"),
        issue_date=issue,
        due_date=_due_date(issue, scalar(record, "DUE_DATE")),
        customer_id=_customer_id(record),
        status=scalar(record, "STATUS"),
        total=parse_amount(scalar(record, "TOTAL", "AMOUNT")),
        balance=parse_amount(scalar(record, "BALANCE")),
        bill_details=_bill_refs(record),
        ledger_entries=_ledger_lines(record),
    )
    return payload, payload.invoice_number, issue, payload.customer_id, payload.total


@dataclass(frozen=True)
class EntitySpec:
    entity_type: EntityType
    report: str
    record_tag: str
    id_fields: tuple[str, ...]
    number_fields: tuple[str, ...]
    list_sections: tuple[str, ...]
    mapper: Callable[[RawRecord], tuple]
    # Tally object type whose alter ids bound this entity's changes
    object_type: str = "Voucher"


ENTITY_SPECS: dict[EntityType, EntitySpec] = {
    EntityType.CUSTOMER: EntitySpec(
        entity_type=EntityType.CUSTOMER,
        report="ZorrofinCust",
        record_tag="CUSTOMER",
        id_fields=("GUID", "CUSTOMER_ID", "MASTER_ID", "MASTERID"),
        number_fields=("NAME",),
        list_sections=("INVOICE_DETAILS",),
        mapper=map_customer,
        object_type="Ledger",
    ),
    EntityType.INVOICE: EntitySpec(
        entity_type=EntityType.INVOICE,
        report="ZeroFinnSales",
        record_tag="INVOICE",
        id_fields=("GUID", "INVOICE_ID", "MASTER_ID", "MASTERID"),
        number_fields=("INVOICE_NUMBER", "VOUCHERNUMBER"),
        list_sections=("ALLINVENTORYENTRIES", "LEDGER_ENTRIES"),
        mapper=map_invoice,
    ),
    EntityType.PAYMENT: EntitySpec(
        entity_type=EntityType.PAYMENT,
        report="ZeroFinnReceipt",
        record_tag="RECEIPT",
        id_fields=("GUID", "RECEIPT_ID", "MASTER_ID", "MASTERID"),
        number_fields=("RECEIPT_NUMBER", "VOUCHERNUMBER"),
        list_sections=("BILL_DETAILS",),
        mapper=map_payment,
    ),
    EntityType.JOURNAL: EntitySpec(
        entity_type=EntityType.JOURNAL,
        report="ZorrofinJV",
        record_tag="JVENTRY",
        id_fields=("GUID", "MASTER_ID", "MASTERID"),
        number_fields=("VOUCHER_NUMBER", "VOUCHERNUMBER"),
        list_sections=("LEDGER_ENTRIES",),
        mapper=map_journal,
    ),
    EntityType.DEBITNOTE: EntitySpec(
        entity_type=EntityType.DEBITNOTE,
        report="ZorrofinDebitNote",
        record_tag="DEBITNOTE",
        id_fields=("GUID", "INVOICE_ID", "MASTER_ID", "MASTERID"),
        number_fields=("INVOICE_NUMBER", "VOUCHERNUMBER"),
        list_sections=("BILL_DETAILS", "LEDGER_ENTRIES"),
        mapper=map_debit_note,
    ),
}


def get_spec(entity_type: Union[str, EntityType]) -> EntitySpec:
    return ENTITY_SPECS[EntityType.parse(entity_type)]


# Fields that change on every revision of the same source record
_VOLATILE_FIELDS = {"ALTER_ID", "ALTERID"}


def derive_external_id(spec: EntitySpec, record: RawRecord) -> str:
    """
    Derive a stable identifier for a source record.

    Priority:
    1. A source identifier (GUID, report id, master id); "0" counts as empty
    2. type/number/date/party when the record has a document number
    3. A hash of the record without its change id
    """
    for key in spec.id_fields:
        value = scalar(record, key)
        if value and value != "0":
            return value

    record_date = scalar(record, "DATE", "ISSUE_DATE", "RECEIPT_DATE")
    party = scalar(record, "CUSTOMER_ID", "PARTYLEDGERNAME", "CUSTOMER_NAME", "NAME")
    number = scalar(record, *spec.number_fields)
    if number:
        vtype = scalar(record, "VOUCHER_TYPE", "VCHTYPE", default=spec.entity_type.value)
        return f"{vtype}/{number}/{record_date}/{party}"

    stable = {k: v for k, v in record.items() if k not in _VOLATILE_FIELDS}
    digest = hashlib.sha256(
        json.dumps(stable, sort_keys=True, ensure_ascii=False).encode("utf-8")
    ).hexdigest()[:16]
    return f"{spec.entity_type.value}/{record_date}/{party}#{digest}"


def map_record(spec: EntitySpec, record: RawRecord) -> MappedRecord:
    """Map a Raw Record to staging columns with the entity's mapper."""
    payload, number, record_date, party, amount = spec.mapper(record)
    return MappedRecord(
        external_id=derive_external_id(spec, record),
        alter_id=extract_alter_id(record),
        voucher_number=number,
        record_date=record_date,
        party_name=party,
        amount=amount,
        payload=payload,
    )
