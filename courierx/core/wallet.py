"""
Wallet service: the service boundary in front of the ledger.

Thresholds (minimum recharge, refund caps) live here, not in the ledger.
Top-ups are written only after the payment gateway confirms the payment,
and each top-up produces one immutable receipt.
"""
import secrets
import string
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courierx.config import get_settings
from courierx.core.errors import ValidationError
from courierx.core.ledger import LedgerStore, WalletSummary, to_money
from courierx.database.connection import get_session_factory
from courierx.database.models import PAISE, LedgerEntry, LedgerEntryType, WalletReceipt, utcnow
from courierx.integrations.payment_gateway import PaymentGateway

logger = structlog.get_logger(__name__)

COMPANY_DETAILS: Dict[str, str] = {
    "name": "CourierX International Pvt. Ltd.",
    "address": "Plot 14, Sector 18, Udyog Vihar, Gurugram, Haryana 122015",
    "gstin": "06AABCC1234F1Z5",
    "email": "billing@courierx.in",
}


def generate_receipt_number(now: Optional[datetime] = None) -> str:
    """RCP + yy + mm + six random alphanumerics."""
    now = now or utcnow()
    alphabet = string.ascii_uppercase + string.digits
    return f"RCP{now:%y%m}" + "".join(secrets.choice(alphabet) for _ in range(6))


def split_inclusive_gst(total: Decimal, rate: Decimal) -> tuple[Decimal, Decimal]:
    """Split a GST-inclusive total into (base, gst). base + gst == total exactly."""
    base = (total / (Decimal("1") + rate)).quantize(PAISE, rounding=ROUND_HALF_UP)
    return base, total - base


def receipt_to_dict(receipt: WalletReceipt) -> Dict[str, Any]:
    return {
        "receipt_number": receipt.receipt_number,
        "transaction_id": receipt.transaction_id,
        "base_amount": str(receipt.base_amount),
        "gst_amount": str(receipt.gst_amount),
        "total_amount": str(receipt.total_amount),
        "payment_method": receipt.payment_method,
        "issued_by": receipt.issued_by,
        "issued_at": receipt.issued_at.isoformat(),
    }


class WalletService:
    """Add funds, deduct, refund, and read wallet state for one user at a time."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        ledger: Optional[LedgerStore] = None,
        gateway: Optional[PaymentGateway] = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory
        self.ledger = ledger or LedgerStore()
        self._gateway = gateway
        self.min_recharge = settings.wallet_min_recharge
        self.gst_rate = settings.gst_rate

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    @property
    def gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = PaymentGateway()
        return self._gateway

    async def add_funds(
        self,
        user_id: str,
        amount: Any,
        payment_ref: str,
        description: str = "Wallet recharge",
    ) -> Dict[str, Any]:
        """
        Credit the wallet for a confirmed payment and issue its receipt.

        Calling again with the same payment_ref returns the original entry
        and receipt instead of crediting twice.
        A payment_ref already credited to another wallet is rejected.

        Raises:
            ValidationError: Below minimum recharge, or the payment does not match
                or was already used by another wallet
            UpstreamFailure: The payment gateway is unavailable
        """
        amount = to_money(amount)
        if amount < self.min_recharge:
            raise ValidationError(f"Minimum recharge amount is ₹{self.min_recharge}")

        # Confirmation happens before any ledger write.
        confirmation = await self.gateway.confirm_payment(payment_ref)
        if confirmation.amount != amount:
            logger.warning(
                "wallet_payment_amount_mismatch",
                user_id=user_id,
                payment_ref=payment_ref,
                requested=str(amount),
                confirmed=str(confirmation.amount),
            )
            raise ValidationError(
                f"Payment {payment_ref} was for {confirmation.amount}, not {amount}",
                user_message="Payment amount does not match the recharge amount.",
            )
        if confirmation.user_id is not None and confirmation.user_id != user_id:
            logger.warning(
                "wallet_payment_owner_mismatch",
                user_id=user_id,
                payment_ref=payment_ref,
                payment_user_id=confirmation.user_id,
            )
            raise ValidationError(
                f"Payment {payment_ref} belongs to another user",
                user_message="This payment cannot be used for this wallet.",
            )

        async with self.session_factory() as db:
            async with db.begin():
                entry = await self.ledger.credit(
                    db,
                    user_id,
                    amount,
                    payment_ref,
                    description,
                    details={"payment_method": confirmation.payment_method},
                )
                receipt = await self._issue_receipt(
                    db, entry, payment_ref, confirmation.payment_method
                )
                summary = await self.ledger.summary(db, user_id)

        logger.info(
            "wallet_funds_added",
            user_id=user_id,
            amount=str(amount),
            payment_ref=payment_ref,
            receipt_number=receipt.receipt_number,
        )
        return {
            "entry_id": str(entry.id),
            "receipt": receipt_to_dict(receipt),
            "wallet": summary.to_dict(),
        }

    async def _issue_receipt(
        self,
        db: AsyncSession,
        entry: LedgerEntry,
        transaction_id: str,
        payment_method: str,
    ) -> WalletReceipt:
        existing = (
            await db.execute(select(WalletReceipt).where(WalletReceipt.ledger_entry_id == entry.id))
        ).scalar_one_or_none()
        if existing is not None:
            return existing

        base, gst = split_inclusive_gst(entry.amount, self.gst_rate)
        receipt = WalletReceipt(
            receipt_number=generate_receipt_number(),
            user_id=entry.user_id,
            ledger_entry_id=entry.id,
            transaction_id=transaction_id,
            base_amount=base,
            gst_amount=gst,
            total_amount=entry.amount,
            payment_method=payment_method,
            issued_by=dict(COMPANY_DETAILS),
        )
        db.add(receipt)
        await db.flush()
        return receipt

    async def deduct_funds(
        self,
        user_id: str,
        amount: Any,
        shipment_id: Any,
        description: str,
        idempotency_key: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Debit the wallet against a shipment.

        Without an idempotency_key the shipment's booking key is used, so a
        retry of the same deduction replays it. A second, different deduction
        against the same shipment needs its own key.

        Raises:
            InsufficientFunds: available < amount at the moment of deduction
            ValidationError: The key was already used for a different amount
        """
        async with self.session_factory() as db:
            async with db.begin():
                return await self.ledger.debit(
                    db, user_id, amount, shipment_id, description, idempotency_key=idempotency_key
                )

    async def process_refund(
        self,
        user_id: str,
        amount: Any,
        shipment_id: Any,
        description: str,
        idempotency_key: Optional[str] = None,
    ) -> LedgerEntry:
        """Refund against a shipment, capped at what was debited and not yet refunded."""
        amount = to_money(amount)
        async with self.session_factory() as db:
            async with db.begin():
                await self.ledger.lock_account(db, user_id)
                refundable = await self.ledger.net_debited(db, user_id, str(shipment_id))
                if amount > refundable:
                    raise ValidationError(
                        f"Refund {amount} exceeds refundable amount {refundable}",
                        user_message="Refund exceeds the amount charged for this shipment.",
                    )
                return await self.ledger.refund(
                    db, user_id, amount, shipment_id, description, idempotency_key=idempotency_key
                )

    async def place_hold(
        self,
        user_id: str,
        amount: Any,
        shipment_id: Any,
        description: str,
        idempotency_key: str,
    ) -> LedgerEntry:
        async with self.session_factory() as db:
            async with db.begin():
                return await self.ledger.hold(
                    db, user_id, amount, shipment_id, description, idempotency_key
                )

    async def release_hold(
        self,
        user_id: str,
        shipment_id: Any,
        description: str,
        idempotency_key: str,
    ) -> Decimal:
        async with self.session_factory() as db:
            async with db.begin():
                return await self.ledger.release_holds(
                    db, user_id, shipment_id, description, idempotency_key
                )

    async def get_summary(self, user_id: str) -> WalletSummary:
        async with self.session_factory() as db:
            return await self.ledger.summary(db, user_id)

    async def transaction_history(
        self,
        user_id: str,
        entry_type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        parsed_type: Optional[LedgerEntryType] = None
        if entry_type is not None:
            try:
                parsed_type = LedgerEntryType(entry_type)
            except ValueError:
                raise ValidationError(f"Unknown transaction type: {entry_type}")
        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")

        async with self.session_factory() as db:
            return await self.ledger.history(
                db, user_id, parsed_type, start, end, limit=limit, offset=offset
            )

    async def get_receipts(self, user_id: str) -> List[Dict[str, Any]]:
        async with self.session_factory() as db:
            rows = (
                await db.execute(
                    select(WalletReceipt)
                    .where(WalletReceipt.user_id == user_id)
                    .order_by(WalletReceipt.issued_at.desc())
                )
            ).scalars().all()
        return [receipt_to_dict(row) for row in rows]


