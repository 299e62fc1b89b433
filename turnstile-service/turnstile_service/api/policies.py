from fastapi import APIRouter, Request, HTTPException

from ..errors import PolicyStoreError
from ..models.policy import Policy

router = APIRouter(prefix="/api/policies")


def _get_policy_service(request: Request):
    svc = request.app.state.policy_service
    if not svc:
        raise HTTPException(status_code=503, detail="Policy service not available")
    return svc


@router.get("/{user_id}")
async def get_policy(request: Request, user_id: str):
    svc = _get_policy_service(request)
    policy = await svc.get_policy(user_id)
    return policy.model_dump()


@router.put("/")
async def save_policy(request: Request, body: Policy):
    svc = _get_policy_service(request)
    try:
        saved = await svc.save_policy(body)
    except PolicyStoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return saved.model_dump()


@router.post("/{user_id}/rate-limit/reset")
async def reset_rate_limit(request: Request, user_id: str):
    svc = _get_policy_service(request)
    try:
        counter = await svc.reset_rate_limit(user_id)
    except PolicyStoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return counter.model_dump()
