from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

FieldType = Literal["string", "text", "integer", "numeric", "boolean", "timestamp", "array", "json"]


class FieldSpec(BaseModel):
    # First Bubble field present and not null wins
    source: list[str]
    type: FieldType = "string"


class EntityConfig(BaseModel):
    type_name: str
    table: str
    conflict_column: str = "bubble_id"
    fields: dict[str, FieldSpec] = Field(default_factory=dict)


class FileField(BaseModel):
    column: str
    subfolder: str
    is_array: bool = False


class FileTable(BaseModel):
    table: str
    id_column: str = "bubble_id"
    date_column: str = "created_date"
    fields: list[FileField] = Field(default_factory=list)


class ConfigModel(BaseModel):
    entities: dict[str, EntityConfig]
    files: dict[str, FileTable] = Field(default_factory=dict)


# Dependency order for a full package sync
SYNC_ORDER = [
    "agents",
    "users",
    "customers",
    "invoices",
    "invoice_items",
    "seda_registrations",
    "invoice_templates",
    "payments",
    "submitted_payments",
]


def _f(*source: str, type: str = "string") -> dict[str, Any]:
    return {"source": list(source), "type": type}


_PAYMENT_FIELDS = {
    "amount": _f("Amount", type="numeric"),
    "payment_date": _f("Payment Date", type="timestamp"),
    "payment_method": _f("Payment Method"),
    "payment_method_v2": _f("Payment Method V2"),
    "payment_index": _f("Payment Index", type="integer"),
    "remark": _f("Remark", type="text"),
    "issuer_bank": _f("Issuer Bank"),
    "terminal": _f("Terminal"),
    "epp_month": _f("EPP Month", type="integer"),
    "epp_type": _f("EPP Type"),
    "bank_charges": _f("Bank Charges", type="numeric"),
    "verified_by": _f("Verified By"),
    "attachment": _f("Attachment", type="array"),
    "linked_invoice": _f("Linked Invoice"),
    "linked_customer": _f("Linked Customer"),
    "linked_agent": _f("Linked Agent"),
    "created_by": _f("Created By"),
}

DEFAULT_CONFIG: dict[str, Any] = {
    "entities": {
        "agents": {
            "type_name": "agent",
            "table": "agent",
            "fields": {
                "name": _f("Name"),
                "email": _f("email", "Email"),
                "contact": _f("Contact"),
                "agent_type": _f("Agent Type"),
                "address": _f("Address", type="text"),
                "bankin_account": _f("bankin_account"),
                "banker": _f("banker"),
            },
        },
        "users": {
            "type_name": "user",
            "table": "user",
            "fields": {
                "linked_agent_profile": _f("Linked Agent Profile"),
                "agent_code": _f("agent_code"),
                "dealership": _f("Dealership"),
                "profile_picture": _f("Profile Picture"),
                "user_signed_up": _f("user_signed_up", type="boolean"),
                "access_level": _f("Access Level", type="array"),
            },
        },
        "customers": {
            "type_name": "Customer_Profile",
            "table": "customer",
            "conflict_column": "customer_id",
            "fields": {
                "name": _f("Name", "name"),
                "email": _f("Email", "email"),
                "phone": _f("Contact", "Whatsapp", "phone"),
                "address": _f("Address", type="text"),
                "city": _f("City"),
                "state": _f("State"),
                "postcode": _f("Postcode"),
                "ic_number": _f("IC Number", "IC No"),
                "created_by": _f("Created By"),
            },
        },
        "invoices": {
            "type_name": "invoice",
            "table": "invoice",
            "fields": {
                "invoice_id": _f("Invoice ID", type="integer"),
                "invoice_number": _f("Invoice Number"),
                "amount": _f("Amount", type="numeric"),
                "total_amount": _f("Total Amount", type="numeric"),
                "status": _f("Status"),
                "invoice_date": _f("Invoice Date", type="timestamp"),
                "linked_customer": _f("Linked Customer"),
                "linked_agent": _f("Linked Agent"),
                "linked_payment": _f("Linked Payment", type="array"),
                "linked_seda_registration": _f(
                    "Linked SEDA Registration", "Linked SEDA registration"
                ),
                "linked_invoice_item": _f(
                    "Linked Invoice Item", "Linked invoice item", type="array"
                ),
                "created_by": _f("Created By"),
            },
        },
        "invoice_items": {
            "type_name": "invoice_item",
            "table": "invoice_item",
            "fields": {
                "description": _f("DESCRIPTION", type="text"),
                "qty": _f("QTY", type="numeric"),
                "amount": _f("AMOUNT", type="numeric"),
                "unit_price": _f("UNIT PRICE", type="numeric"),
                "is_a_package": _f("is a Package?", type="boolean"),
                "linked_invoice": _f("Linked Invoice"),
                "created_by": _f("Created By"),
            },
        },
        "seda_registrations": {
            "type_name": "seda_registration",
            "table": "seda_registration",
            "fields": {
                "city": _f("CITY"),
                "state": _f("STATE"),
                "agent": _f("Agent"),
                "linked_customer": _f("Linked Customer"),
                "linked_invoice": _f("Linked Invoice", type="array"),
                "created_by": _f("Created By"),
                "project_price": _f("Project Price", type="numeric"),
                "system_size": _f("System Size", type="numeric"),
                "system_size_in_form_kwp": _f("System Size in FORM kWp", type="numeric"),
                "sunpeak_hours": _f("??SunPeak Hours", type="numeric"),
                "reg_status": _f("Reg Status"),
                "redex_status": _f("Redex-Status"),
                "seda_status": _f("SEDA Status"),
                "drawing_system_submitted": _f("Drawing (SYSTEM) Submitted"),
                "customer_signature": _f("Customer Signature"),
                "ic_copy_front": _f("IC Copy Front"),
                "ic_copy_back": _f("IC Copy Back"),
                "tnb_bill_1": _f("TNB Bill 1"),
                "tnb_bill_2": _f("TNB Bill 2"),
                "tnb_bill_3": _f("TNB Bill 3"),
                "nem_cert": _f("NEM Cert"),
                "mykad_pdf": _f("Mykad PDF"),
                "property_ownership_prove": _f("Property Ownership Prove"),
                "check_tnb_bill_and_meter_image": _f("Check TNB Bill and Meter Image"),
                "roof_images": _f("Roof Images", type="array"),
                "site_images": _f("Site Images", type="array"),
                "drawing_pdf_system": _f("Drawing PDF System", type="array"),
                "drawing_system_actual": _f("Drawing System Actual", type="array"),
                "drawing_engineering_seda_pdf": _f("Drawing Engineering Seda PDF", type="array"),
            },
        },
        "invoice_templates": {
            "type_name": "invoice_template",
            "table": "invoice_template",
            "fields": {
                "template_name": _f("Template Name"),
                "company_name": _f("Company Name"),
                "company_address": _f("Company Address", type="text"),
                "company_phone": _f("Company Phone"),
                "company_email": _f("Company Email"),
                "sst_registration_no": _f("SST Registration No"),
                "bank_name": _f("Bank Name"),
                "bank_account_no": _f("Bank Account No"),
                "bank_account_name": _f("Bank Account Name"),
                "logo_url": _f("Logo URL"),
                "terms_and_conditions": _f("Terms and Conditions", type="text"),
                "disclaimer": _f("Disclaimer", type="text"),
                "active": _f("Active", type="boolean"),
                "is_default": _f("Is Default", type="boolean"),
                "apply_sst": _f("Apply SST", type="boolean"),
                "created_by": _f("Created By"),
            },
        },
        "payments": {
            "type_name": "payment",
            "table": "payment",
            "fields": _PAYMENT_FIELDS,
        },
        "submitted_payments": {
            "type_name": "submit_payment",
            "table": "submitted_payment",
            "fields": {**_PAYMENT_FIELDS, "status": _f("Status")},
        },
    },
    "files": {
        "seda_registration": {
            "table": "seda_registration",
            "fields": [
                {"column": "customer_signature", "subfolder": "seda/signatures"},
                {"column": "ic_copy_front", "subfolder": "seda/ic_copies"},
                {"column": "ic_copy_back", "subfolder": "seda/ic_copies"},
                {"column": "tnb_bill_1", "subfolder": "seda/tnb_bills"},
                {"column": "tnb_bill_2", "subfolder": "seda/tnb_bills"},
                {"column": "tnb_bill_3", "subfolder": "seda/tnb_bills"},
                {"column": "nem_cert", "subfolder": "seda/certificates"},
                {"column": "mykad_pdf", "subfolder": "seda/mykad"},
                {"column": "property_ownership_prove", "subfolder": "seda/ownership"},
                {"column": "check_tnb_bill_and_meter_image", "subfolder": "seda/checks"},
                {"column": "roof_images", "subfolder": "seda/roof_images", "is_array": True},
                {"column": "site_images", "subfolder": "seda/site_images", "is_array": True},
                {"column": "drawing_pdf_system", "subfolder": "seda/drawings", "is_array": True},
                {"column": "drawing_system_actual", "subfolder": "seda/drawings", "is_array": True},
                {
                    "column": "drawing_engineering_seda_pdf",
                    "subfolder": "seda/drawings",
                    "is_array": True,
                },
            ],
        },
        "user": {
            "table": "user",
            "fields": [{"column": "profile_picture", "subfolder": "users/profiles"}],
        },
        "payment": {
            "table": "payment",
            "fields": [
                {"column": "attachment", "subfolder": "payments/attachments", "is_array": True}
            ],
        },
        "submitted_payment": {
            "table": "submitted_payment",
            "fields": [
                {"column": "attachment", "subfolder": "payments/submitted", "is_array": True}
            ],
        },
        "invoice_template": {
            "table": "invoice_template",
            "fields": [{"column": "logo_url", "subfolder": "templates/logos"}],
        },
    },
}


def load_config(path: str | Path | None = None) -> ConfigModel:
    """Return the entity/file config, from a JSON file when a path is given."""
    if path is None:
        return ConfigModel.model_validate(DEFAULT_CONFIG)
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {p}")
    data = json.loads(p.read_text(encoding="utf-8"))
    return ConfigModel.model_validate(data)
