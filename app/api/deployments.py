"""
Read-only deployment status API.

Status is written exclusively by the build pipeline; this router only reads it.
"""
from fastapi import APIRouter, Depends, HTTPException, Path

from app.core.status import StatusTracker
from app.schemas.deployment import IDENTIFIER_PATTERN, DeploymentStatusResponse

router = APIRouter(prefix="/deployments", tags=["deployments"])

_tracker = StatusTracker()


def get_status_tracker() -> StatusTracker:
    """Dependency, overridden in tests."""
    return _tracker


@router.get("/{deployment_id}", response_model=DeploymentStatusResponse)
def get_deployment(
    deployment_id: str = Path(..., pattern=IDENTIFIER_PATTERN.pattern),
    tracker: StatusTracker = Depends(get_status_tracker),
) -> DeploymentStatusResponse:
    """Get deployment status and its build logs."""
    status = tracker.get(deployment_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Deployment not found: {deployment_id}")
    return status
