from celery import shared_task
from sqlalchemy.orm import Session

from core.database import SessionLocal
from rewards.service import get_reward_service


@shared_task(name="rewards.award_purchase_reward")
def award_purchase_reward_task(
    buyer_id: str,
    seller_id: str,
    amount_spent: str,
    seller_is_verified: bool,
    order_id: str | None = None,
    store_id: str | None = None,
):
    db: Session = SessionLocal()
    try:
        award = get_reward_service().award_purchase_reward(
            db,
            buyer_id=buyer_id,
            seller_id=seller_id,
            amount_spent=amount_spent,
            seller_is_verified=seller_is_verified,
            order_id=order_id,
            store_id=store_id,
        )
        return award.to_dict()
    finally:
        db.close()
