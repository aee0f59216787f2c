from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from microjournal.api.deps import current_user_id, get_endpoint_registry
from microjournal.core.logging import redact_token
from microjournal.features.notifications.registry import MAX_TOKEN_LENGTH, PushEndpointRegistry

router = APIRouter(prefix="/v1/push")


class EndpointRegistration(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


@router.post("/endpoints", status_code=status.HTTP_201_CREATED)
def register_endpoint(
    body: EndpointRegistration,
    user_id: int = Depends(current_user_id),
    registry: PushEndpointRegistry = Depends(get_endpoint_registry),
):
    endpoint = registry.register(user_id, body.token)
    return {
        "user_id": endpoint.user_id,
        "token": redact_token(endpoint.token),
        "registered_at": endpoint.registered_at.isoformat() if endpoint.registered_at else None,
    }
