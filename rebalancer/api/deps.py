"""
Shared request dependencies and error translation for the API routers.
"""
from fastapi import Header, HTTPException

from rebalancer.services.errors import (
    AlreadyRunning,
    InvalidTransition,
    NoEligibleCandidates,
    RebalancerError,
    RunAborted,
    SuggestionNotFound,
)

ERROR_STATUS = {
    SuggestionNotFound: 404,
    AlreadyRunning: 409,
    InvalidTransition: 409,
    NoEligibleCandidates: 422,
    RunAborted: 503,
}


async def get_tenant_id(x_tenant_id: str = Header(..., min_length=1, description="Tenant identifier")) -> str:
    return x_tenant_id.strip()


def http_error(e: RebalancerError) -> HTTPException:
    """Map a domain error to an HTTPException carrying its code and message."""
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(e, error_type):
            return HTTPException(status_code=status_code, detail=e.to_dict())
    return HTTPException(status_code=500, detail=e.to_dict())
