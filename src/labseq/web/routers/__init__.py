from labseq.web.routers.audit import router as audit_router
from labseq.web.routers.counters import router as counters_router
from labseq.web.routers.identifiers import router as identifiers_router
from labseq.web.routers.records import router as records_router

__all__ = [
    "audit_router",
    "counters_router",
    "identifiers_router",
    "records_router",
]
