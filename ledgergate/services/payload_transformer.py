"""
Payload reshaping for the downstream API.

Callers write journal entries in a simplified form:

    {"description": "Office supplies",
     "transactions": [{"debit_account": "5140", "credit_account": "1020", "amount": "125.50"}]}

The downstream API wants native postings, one line per side:

    {"description": "Office supplies", "title": "Office supplies",
     "postings": [{"accounts_id": 5140, "type": "D", "amount": 125.5, ...},
                  {"accounts_id": 1020, "type": "C", "amount": 125.5, ...}]}

Every other endpoint family is passed through untouched.
"""
from __future__ import annotations

import json
import logging
import math
import re
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

from ledgergate.services.errors import TransformError

logger = logging.getLogger(__name__)

_JOURNALS_PATH = re.compile(r"(^|/)journals(/|$)")


class EndpointFamily(str, Enum):
    JOURNALS = "journals"
    GENERIC = "generic"


def family_for_path(path: str) -> EndpointFamily:
    clean = (path or "").split("?", 1)[0]
    if _JOURNALS_PATH.search(clean):
        return EndpointFamily.JOURNALS
    return EndpointFamily.GENERIC


def _coerce_amount(value: Any, index: int) -> float:
    if isinstance(value, bool) or value is None:
        raise TransformError(f"transactions[{index}].amount must be numeric, got {value!r}")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise TransformError(f"transactions[{index}].amount must be numeric, got {value!r}") from None
    # Decimal accepts values like 1e400 that overflow to inf as floats
    result = float(amount) if amount.is_finite() else math.nan
    if not math.isfinite(result):
        raise TransformError(f"transactions[{index}].amount must be finite, got {value!r}")
    return result


def _coerce_account(value: Any, index: int, side: str) -> int:
    if isinstance(value, bool):
        raise TransformError(f"transactions[{index}].{side}_account must be an account number")
    try:
        return int(str(value).strip())
    except ValueError:
        raise TransformError(
            f"transactions[{index}].{side}_account must be an account number, got {value!r}"
        ) from None


class PayloadTransformer:
    def __init__(self, base_currency: str = "EUR") -> None:
        self.base_currency = base_currency

    def _posting(self, account_id: int, side: str, amount: float) -> Dict[str, Any]:
        return {
            "accounts_id": account_id,
            "type": side,
            "amount": amount,
            "base_amount": amount,
            "cl_currencies_id": self.base_currency,
            "is_deleted": False,
        }

    def expand_transactions(self, transactions: Any) -> List[Dict[str, Any]]:
        if not isinstance(transactions, list):
            raise TransformError("transactions must be a list")
        postings: List[Dict[str, Any]] = []
        for index, tx in enumerate(transactions):
            if not isinstance(tx, dict):
                raise TransformError(f"transactions[{index}] must be an object")
            debit = tx.get("debit_account")
            credit = tx.get("credit_account")
            if not debit and not credit:
                raise TransformError(f"transactions[{index}] has neither debit_account nor credit_account")
            amount = _coerce_amount(tx.get("amount"), index)
            if debit:
                postings.append(self._posting(_coerce_account(debit, index, "debit"), "D", amount))
            if credit:
                postings.append(self._posting(_coerce_account(credit, index, "credit"), "C", amount))
        return postings

    def transform_journal(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Expand simplified transactions; payloads that already carry postings are returned as-is."""
        if "postings" in payload:
            return payload
        outbound = dict(payload)
        if "transactions" in outbound:
            outbound["postings"] = self.expand_transactions(outbound.pop("transactions"))
        if not outbound.get("title") and outbound.get("description"):
            outbound["title"] = outbound["description"]
        return outbound

    def transform(self, family: EndpointFamily, raw_body: Optional[str]) -> Optional[str]:
        if raw_body is None or family != EndpointFamily.JOURNALS:
            return raw_body
        try:
            payload = json.loads(raw_body)
        except json.JSONDecodeError as exc:
            raise TransformError(f"body is not valid JSON: {exc.msg}") from None
        if not isinstance(payload, dict) or "postings" in payload:
            return raw_body
        outbound = self.transform_journal(payload)
        logger.debug("Expanded journal payload into %d postings", len(outbound.get("postings") or []))
        return json.dumps(outbound)
