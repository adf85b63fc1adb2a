"""Endpoint de consumo de créditos del usuario."""

from fastapi import APIRouter, Depends

from lexia.ai.usage import CreditGate
from lexia.api.deps import get_credit_gate, get_current_user


router = APIRouter(prefix="/lexia/usage", tags=["usage"])


@router.get("")
async def get_usage(
    user_id: str = Depends(get_current_user),
    credits: CreditGate = Depends(get_credit_gate),
) -> dict:
    """Créditos restantes del período actual. Es una lectura: no consume créditos."""
    plan = await credits.get_user_plan(user_id)
    status = await credits.check_remaining(user_id)
    return {
        "plan": plan.slug,
        "allowed": status.allowed,
        "remaining": status.remaining,
        "limit": status.limit,
        "used": max(0.0, status.limit - status.remaining),
    }
