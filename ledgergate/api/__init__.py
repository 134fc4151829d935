from ledgergate.api.changes import router as changes_router
from ledgergate.api.changesets import router as changesets_router
from ledgergate.api.company import router as company_router
from ledgergate.api.proposals import router as proposals_router
from ledgergate.api.proxy import router as proxy_router

__all__ = ["changes_router", "changesets_router", "company_router", "proposals_router", "proxy_router"]
