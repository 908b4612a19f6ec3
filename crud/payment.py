from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from database_models import Payment


class PaymentRepository:
    """Repository for one-off PayPal orders."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_order_id(self, order_id: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment).where(Payment.paypal_order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def create_payment(self, payment_data: dict) -> Payment:
        payment = Payment(**payment_data)
        self.db.add(payment)
        await self.db.flush()
        await self.db.refresh(payment)
        return payment

    async def update_status(self, order_id: str, updates: dict) -> Optional[Payment]:
        """
        Update a payment looked up by PayPal order id.

        Returns:
            Updated Payment, or None if no payment matches the order id
        """
        payment = await self.get_by_order_id(order_id)
        if payment is None:
            return None
        for key, value in updates.items():
            if hasattr(payment, key):
                setattr(payment, key, value)
        await self.db.flush()
        await self.db.refresh(payment)
        return payment
