from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from core.auth import get_current_user, require_admin
from core.config import settings
from core.database import get_db
from core.models import User
from core.rate_limit import limiter
from ledger.custody import CustodyService, get_custody_service
from onramp.schemas import CreatePaymentIntentRequest
from onramp.service import SettlementService, get_settlement_service

router = APIRouter(prefix="/api/onramp", tags=["Onramp"])


@router.get("/processors")
def list_processors(
    current_user: User = Depends(get_current_user),
    service: SettlementService = Depends(get_settlement_service),
):
    return {"success": True, "data": {"processors": service.get_available_processors()}}


@router.post("/wallet")
def provision_wallet(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    custody: CustodyService = Depends(get_custody_service),
):
    address = custody.provision_wallet(db, current_user)
    return {"success": True, "data": {"walletAddress": address}}


@router.post("/payment-intents")
@limiter.limit(settings.RATE_LIMIT_PAYMENT_INTENTS)
def create_payment_intent(
    request: Request,
    payload: CreatePaymentIntentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: SettlementService = Depends(get_settlement_service),
):
    data = service.begin_purchase(db, current_user.id, payload.amount, payload.processor)
    return {"success": True, "data": data}


@router.get("/transactions/{transaction_id}")
def get_onramp_status(
    transaction_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: SettlementService = Depends(get_settlement_service),
):
    return {"success": True, "data": service.get_onramp_status(db, transaction_id, current_user.id)}


@router.get("/history")
def get_onramp_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: SettlementService = Depends(get_settlement_service),
):
    return {"success": True, "data": service.get_onramp_history(db, current_user.id, limit, offset)}


@router.get("/stats")
def get_onramp_stats(
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    return {"success": True, "data": service.get_onramp_stats(db, from_date, to_date)}
