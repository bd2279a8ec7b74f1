from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.auth import require_admin
from core.database import get_db
from ledger.client import LedgerClient, get_ledger_client
from reconciliation.repair import reconcile_sc_rewards
from rewards.service import RewardService, get_reward_service

router = APIRouter(prefix="/api/sc-rewards", tags=["SC Rewards"])


@router.get("")
def list_rewards(
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    store_id: Optional[str] = None,
    reason: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
    service: RewardService = Depends(get_reward_service),
):
    data = service.list_sc_rewards(db, status, user_id, store_id, reason, start, end, limit, offset)
    return {"success": True, "data": data}


@router.get("/stats")
def reward_stats(
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
    service: RewardService = Depends(get_reward_service),
):
    return {"success": True, "data": service.get_sc_reward_stats(db)}


@router.post("/reconcile")
def reconcile_rewards(
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
    ledger: LedgerClient = Depends(get_ledger_client),
):
    report = reconcile_sc_rewards(db, ledger)
    return {"success": True, "data": report.to_dict()}


@router.get("/orders/{order_id}")
def rewards_for_order(
    order_id: str,
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
    service: RewardService = Depends(get_reward_service),
):
    return {"success": True, "data": service.get_sc_rewards_for_order(db, order_id)}


@router.get("/{reward_id}/validate")
def validate_reward(
    reward_id: str,
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
    service: RewardService = Depends(get_reward_service),
):
    return {"success": True, "data": service.validate_sc_reward(db, reward_id)}


@router.post("/{reward_id}/retry")
def retry_reward(
    reward_id: str,
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
    service: RewardService = Depends(get_reward_service),
):
    return {"success": True, "data": service.retry_sc_reward(db, reward_id)}


@router.get("/{reward_id}")
def get_reward(
    reward_id: str,
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
    service: RewardService = Depends(get_reward_service),
):
    return {"success": True, "data": service.get_sc_reward(db, reward_id)}
