"""
Checkouts Router — kiosk checkout / return, loyalty cards and the overdue sweep.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_assignment_ledger, get_db, get_loyalty_ledger
from core.config import Settings, get_settings
from core.enums import IdentifierType
from loyalty.assignments import AssignmentLedger
from loyalty.ledger import LoyaltyLedger
from loyalty.rewards import get_next_tier_info
from workers.escalation import run_escalation

router = APIRouter(prefix="/api/v1/checkouts", tags=["checkouts"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class TrolleyRef(BaseModel):
    trolley_id: UUID | None = None
    rfid_tag: str | None = None

    @model_validator(mode="after")
    def _require_one_ref(self):
        if self.trolley_id is None and not self.rfid_tag:
            raise ValueError("trolley_id or rfid_tag is required")
        return self


class CheckoutRequest(TrolleyRef):
    identifier: str = Field(min_length=1, max_length=255)
    identifier_type: IdentifierType = IdentifierType.CARD
    store_id: UUID


class ReturnRequest(TrolleyRef):
    identifier: str = Field(min_length=1, max_length=255)
    return_lat: float | None = None
    return_lon: float | None = None


class ValidateCardRequest(BaseModel):
    card_number: str = Field(min_length=1, max_length=20)


class AssignmentResponse(BaseModel):
    assignment_id: UUID
    trolley_id: UUID
    store_id: UUID
    customer_identifier: str
    identifier_type: str
    customer_name: str | None
    checkout_at: datetime
    expected_return_at: datetime
    returned_at: datetime | None
    status: str
    points_awarded: int
    bonus_points: int
    penalty_points: int
    duration_minutes: int | None

    model_config = {"from_attributes": True}


class CardResponse(BaseModel):
    card_number: str
    customer_name: str
    phone_number: str | None
    points_balance: int
    tier: str
    total_trolley_returns: int
    consecutive_returns: int
    is_active: bool

    model_config = {"from_attributes": True}


# ─── Loyalty cards ──────────────────────────────────────────────────────────


@router.post("/validate-card")
async def validate_card(
    body: ValidateCardRequest,
    loyalty: LoyaltyLedger = Depends(get_loyalty_ledger),
    db: AsyncSession = Depends(get_db),
):
    """Kiosk pre-check before checkout. An unknown or blocked card is valid=false, not an error."""
    validation = await loyalty.validate_card(body.card_number)
    await db.commit()
    if not validation.valid:
        return {"valid": False, "error": validation.error}

    card = validation.card
    next_tier = get_next_tier_info(card.tier, card.total_trolley_returns)
    return {
        "valid": True,
        "card": CardResponse.model_validate(card),
        "next_tier": next_tier,
    }


# ─── Checkout / return ──────────────────────────────────────────────────────


@router.post("/checkout", status_code=201)
async def checkout_trolley(
    body: CheckoutRequest,
    ledger: AssignmentLedger = Depends(get_assignment_ledger),
):
    assignment = await ledger.checkout(
        identifier=body.identifier,
        identifier_type=body.identifier_type,
        store_id=body.store_id,
        trolley_id=body.trolley_id,
        rfid_tag=body.rfid_tag,
    )
    return {
        "message": "Trolley checked out successfully",
        "assignment": AssignmentResponse.model_validate(assignment),
    }


@router.post("/return")
async def return_trolley(
    body: ReturnRequest,
    ledger: AssignmentLedger = Depends(get_assignment_ledger),
):
    result = await ledger.return_trolley(
        identifier=body.identifier,
        trolley_id=body.trolley_id,
        rfid_tag=body.rfid_tag,
        return_lat=body.return_lat,
        return_lon=body.return_lon,
    )
    response = {
        "message": result.message,
        "return_details": {
            "duration_minutes": result.duration_minutes,
            "on_time": result.on_time,
            "checkout_time": result.assignment.checkout_at,
            "return_time": result.assignment.returned_at,
        },
        "assignment": AssignmentResponse.model_validate(result.assignment),
    }
    if result.rewards is not None:
        rewards = result.rewards
        response["rewards"] = {
            "points_awarded": rewards.points_awarded,
            "bonus_points": rewards.bonus_points,
            "breakdown": rewards.breakdown.to_dict(),
            "message": rewards.message,
            "transaction_id": rewards.transaction.transaction_id,
            "next_tier": rewards.next_tier,
        }
        if rewards.tier_upgrade is not None:
            response["tier_upgrade"] = {"from": rewards.tier_upgrade[0], "to": rewards.tier_upgrade[1]}
    return response


# ─── Queries ────────────────────────────────────────────────────────────────


@router.get("/history/{identifier}")
async def get_customer_history(
    identifier: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    ledger: AssignmentLedger = Depends(get_assignment_ledger),
):
    history = await ledger.get_customer_history(identifier, limit=limit, offset=offset)
    return {
        **history,
        "assignments": [AssignmentResponse.model_validate(a) for a in history["assignments"]],
    }


@router.get("/active/{store_id}")
async def get_active_checkouts(
    store_id: UUID,
    ledger: AssignmentLedger = Depends(get_assignment_ledger),
):
    active = await ledger.get_active_checkouts(store_id)
    return {
        "active_checkouts": active["active_checkouts"],
        "overdue_checkouts": active["overdue_checkouts"],
        "checkouts": [
            {
                **AssignmentResponse.model_validate(c).model_dump(),
                "is_overdue": c.assignment_id in active["overdue_ids"],
            }
            for c in active["checkouts"]
        ],
    }


# ─── Escalation ─────────────────────────────────────────────────────────────


@router.post("/escalation-sweep")
async def trigger_escalation_sweep(
    request: Request,
    settings: Settings = Depends(get_settings),
):
    """Run the overdue sweep now, under the same lock as the hourly job."""
    return await run_escalation(
        settings,
        database=request.app.state.database,
        redis=request.app.state.redis,
    )
