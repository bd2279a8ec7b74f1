from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from core.database import get_db
from onramp.service import SettlementService, get_settlement_service
from payments.manager import PaymentServiceManager, get_payment_manager
from webhooks.verification import verify_and_parse

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/{processor}")
async def receive_webhook(
    processor: str,
    request: Request,
    db: Session = Depends(get_db),
    service: SettlementService = Depends(get_settlement_service),
    manager: PaymentServiceManager = Depends(get_payment_manager),
):
    payload = await request.body()
    event = verify_and_parse(processor, payload, request.headers, manager)

    # minting blocks on confirmation, keep it off the event loop
    result = await run_in_threadpool(service.on_processor_notification, db, event)

    return {"received": True, **result.to_dict()}
