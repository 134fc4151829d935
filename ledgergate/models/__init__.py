from ledgergate.models.base import LGBaseModel, LGPassthroughModel
from ledgergate.models.journal_entries import JournalEntryPayload, Posting, SimplifiedTransaction
from ledgergate.models.requests import (
    AddChangesRequest,
    CreateChangesetRequest,
    ProposeChangeRequest,
    ResolveRequest,
)

__all__ = [
    "AddChangesRequest",
    "CreateChangesetRequest",
    "JournalEntryPayload",
    "LGBaseModel",
    "LGPassthroughModel",
    "Posting",
    "ProposeChangeRequest",
    "ResolveRequest",
    "SimplifiedTransaction",
]
