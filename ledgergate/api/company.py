"""
Company overview API

Read-only views assembled from downstream reads. These are forwarded live,
never captured.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from ledgergate.api.deps import get_executor
from ledgergate.services.auth import verify_api_key
from ledgergate.services.executor import Executor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["company"], dependencies=[Depends(verify_api_key)])


def _as_dict(data: Any) -> Dict[str, Any]:
    return data if isinstance(data, dict) else {}


@router.get("/company")
def get_company(executor: Executor = Depends(get_executor)):
    vat_info = _as_dict(executor.forward_read("GET", "/vat_info"))
    invoice_info = _as_dict(executor.forward_read("GET", "/invoice_info"))
    bank_accounts = executor.forward_read("GET", "/bank_accounts")

    company = {
        "name": invoice_info.get("invoice_company_name") or "Unknown",
        "address": invoice_info.get("address") or None,
        "email": invoice_info.get("email") or None,
        "phone": invoice_info.get("phone") or None,
        "fax": invoice_info.get("fax") or None,
        "website": invoice_info.get("webpage") or None,
        "vatNumber": vat_info.get("vat_number") or None,
        "taxNumber": vat_info.get("tax_refnumber") or None,
        "bankAccounts": bank_accounts or [],
        "invoiceSettings": {
            "emailSubject": invoice_info.get("invoice_email_subject") or None,
            "emailBody": invoice_info.get("invoice_email_body") or None,
        },
    }
    return {"success": True, "company": company}


@router.get("/accounts")
def get_accounts(executor: Executor = Depends(get_executor)):
    return {"success": True, "accounts": executor.forward_read("GET", "/accounts")}
