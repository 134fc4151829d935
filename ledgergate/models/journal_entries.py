"""Journal entry payloads: the simplified write format and the downstream posting schema."""
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import Field, model_validator

from ledgergate.models.base import LGPassthroughModel

AccountRef = Union[int, str]
AmountValue = Union[int, float, str]


class SimplifiedTransaction(LGPassthroughModel):
    """One debit/credit pair as written by callers."""

    debit_account: Optional[AccountRef] = None
    credit_account: Optional[AccountRef] = None
    amount: AmountValue
    description: Optional[str] = None

    @model_validator(mode="after")
    def _has_an_account(self):
        if not self.debit_account and not self.credit_account:
            raise ValueError("debit_account or credit_account is required")
        return self


class Posting(LGPassthroughModel):
    """A single debit ("D") or credit ("C") line in the downstream schema."""

    accounts_id: int
    type: Literal["D", "C"]
    amount: float
    base_amount: float
    cl_currencies_id: str
    is_deleted: bool = False


class JournalEntryPayload(LGPassthroughModel):
    """
    Body of a journal entry write.

    Either the simplified `transactions` list or native `postings`; any other
    downstream field (effective_date, document_number, ...) passes through.
    """

    title: Optional[str] = None
    description: Optional[str] = None
    transactions: Optional[List[SimplifiedTransaction]] = None
    postings: Optional[List[Dict[str, Any]]] = Field(default=None)
