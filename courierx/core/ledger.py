"""
Append-only wallet ledger.

Balances are never stored. Every read sums the user's entries:

    balance   = Σcredit + Σrefund − Σdebit ± Σadjustment
    held      = Σhold − Σrelease
    available = balance − held

Writers that depend on availability lock the user's WalletAccount row first,
so concurrent deductions for one user run one after another and the sum of
successful deductions never exceeds what was available.

Methods take the caller's session and never commit; the caller owns the
transaction so ledger writes land atomically with shipment transitions.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from courierx.core.errors import InsufficientFunds, ValidationError
from courierx.database.models import PAISE, LedgerEntry, LedgerEntryType, WalletAccount
from courierx.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ZERO = Decimal("0.00")
T = LedgerEntryType


@dataclass(frozen=True)
class WalletSummary:
    balance: Decimal
    held: Decimal
    available: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            "balance": str(self.balance),
            "held": str(self.held),
            "available": str(self.available),
        }


def to_money(value: Any) -> Decimal:
    """Coerce to an exact two-place Decimal, rejecting sub-paisa amounts."""
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    if amount != amount.quantize(PAISE):
        raise ValidationError(f"Amount {amount} has more than two decimal places")
    return amount.quantize(PAISE)


class LedgerStore:
    """Reads and appends ledger entries inside a caller-owned transaction."""

    async def lock_account(self, db: AsyncSession, user_id: str) -> WalletAccount:
        """
        Lock (creating if needed) the user's wallet account row.

        Held until the caller's transaction ends.
        """
        stmt = select(WalletAccount).where(WalletAccount.user_id == user_id).with_for_update()
        account = (await db.execute(stmt)).scalar_one_or_none()
        if account is not None:
            return account

        try:
            async with db.begin_nested():
                db.add(WalletAccount(user_id=user_id))
        except IntegrityError:
            # Created concurrently; fall through to the locked read.
            pass
        return (await db.execute(stmt)).scalar_one()

    async def _sums_by_type(
        self,
        db: AsyncSession,
        user_id: str,
        reference_id: Optional[str] = None,
    ) -> Dict[str, Decimal]:
        conditions = [LedgerEntry.user_id == user_id]
        if reference_id is not None:
            conditions.append(LedgerEntry.reference_id == reference_id)

        stmt = (
            select(LedgerEntry.type, func.sum(LedgerEntry.amount))
            .where(and_(*conditions))
            .group_by(LedgerEntry.type)
        )
        sums = {entry_type.value: ZERO for entry_type in LedgerEntryType}
        for entry_type, total in (await db.execute(stmt)).all():
            sums[entry_type] = total if total is not None else ZERO

        if sums[T.ADJUSTMENT.value]:
            sums["adjustment_net"] = await self._adjustment_net(db, conditions)
        else:
            sums["adjustment_net"] = ZERO
        return sums

    async def _adjustment_net(self, db: AsyncSession, conditions: List[Any]) -> Decimal:
        stmt = select(LedgerEntry).where(and_(*conditions, LedgerEntry.type == T.ADJUSTMENT.value))
        net = ZERO
        for entry in (await db.execute(stmt)).scalars():
            direction = (entry.details or {}).get("direction", "credit")
            net += entry.amount if direction == "credit" else -entry.amount
        return net

    async def summary(self, db: AsyncSession, user_id: str) -> WalletSummary:
        sums = await self._sums_by_type(db, user_id)
        balance = (
            sums[T.CREDIT.value]
            + sums[T.REFUND.value]
            - sums[T.DEBIT.value]
            + sums["adjustment_net"]
        )
        held = sums[T.HOLD.value] - sums[T.RELEASE.value]
        return WalletSummary(balance=balance, held=held, available=balance - held)

    async def net_debited(self, db: AsyncSession, user_id: str, reference_id: str) -> Decimal:
        """Amount debited against a reference and not yet refunded."""
        sums = await self._sums_by_type(db, user_id, reference_id)
        return sums[T.DEBIT.value] - sums[T.REFUND.value]

    async def held_for(self, db: AsyncSession, user_id: str, reference_id: str) -> Decimal:
        sums = await self._sums_by_type(db, user_id, reference_id)
        return sums[T.HOLD.value] - sums[T.RELEASE.value]

    async def find_by_key(
        self, db: AsyncSession, user_id: str, idempotency_key: str
    ) -> Optional[LedgerEntry]:
        stmt = select(LedgerEntry).where(
            LedgerEntry.user_id == user_id,
            LedgerEntry.idempotency_key == idempotency_key,
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _check_replay(
        existing: LedgerEntry, entry_type: LedgerEntryType, amount: Decimal
    ) -> LedgerEntry:
        """Return the stored entry for a reused key, or raise if it records a different movement."""
        if existing.type != entry_type.value or existing.amount != amount:
            logger.warning(
                "ledger_idempotency_mismatch",
                user_id=existing.user_id,
                idempotency_key=existing.idempotency_key,
                stored_type=existing.type,
                stored_amount=str(existing.amount),
                requested_type=entry_type.value,
                requested_amount=str(amount),
            )
            raise ValidationError(
                f"Idempotency key {existing.idempotency_key} was already used for a "
                f"{existing.type} of {existing.amount}, not a {entry_type.value} of {amount}"
            )
        return existing

    async def append(
        self,
        db: AsyncSession,
        *,
        user_id: str,
        entry_type: LedgerEntryType,
        amount: Any,
        description: str,
        idempotency_key: str,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        """
        Insert one entry, or return the existing entry for the same key.

        The caller must already hold the account lock when availability matters.
        """
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationError("Ledger amounts must be positive")

        existing = await self.find_by_key(db, user_id, idempotency_key)
        if existing is not None:
            logger.info(
                "ledger_entry_duplicate",
                user_id=user_id,
                idempotency_key=idempotency_key,
                entry_id=str(existing.id),
            )
            return self._check_replay(existing, entry_type, amount)

        entry = LedgerEntry(
            id=uuid.uuid4(),
            user_id=user_id,
            type=entry_type.value,
            amount=amount,
            description=description,
            reference_id=reference_id,
            reference_type=reference_type,
            idempotency_key=idempotency_key,
            details=details,
        )
        db.add(entry)
        await db.flush()

        metrics.record_ledger_entry(entry_type.value, amount)
        logger.info(
            "ledger_entry_appended",
            user_id=user_id,
            entry_id=str(entry.id),
            type=entry_type.value,
            amount=str(amount),
            reference_id=reference_id,
        )
        return entry

    async def credit(
        self,
        db: AsyncSession,
        user_id: str,
        amount: Any,
        payment_ref: str,
        description: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        """
        Credit a confirmed payment. A payment reference is credited at most
        once across all wallets.
        """
        claimed = await db.execute(
            select(LedgerEntry.user_id).where(
                LedgerEntry.reference_type == "payment",
                LedgerEntry.reference_id == payment_ref,
                LedgerEntry.user_id != user_id,
            )
        )
        if claimed.first() is not None:
            logger.warning("ledger_payment_already_claimed", user_id=user_id, payment_ref=payment_ref)
            raise ValidationError(
                f"Payment {payment_ref} was already credited to another wallet",
                user_message="This payment has already been used.",
            )
        await self.lock_account(db, user_id)
        return await self.append(
            db,
            user_id=user_id,
            entry_type=T.CREDIT,
            amount=amount,
            description=description,
            idempotency_key=f"payment:{payment_ref}",
            reference_id=payment_ref,
            reference_type="payment",
            details=details,
        )

    async def debit(
        self,
        db: AsyncSession,
        user_id: str,
        amount: Any,
        shipment_id: Any,
        description: str,
        idempotency_key: Optional[str] = None,
        require_available: Optional[Decimal] = None,
    ) -> LedgerEntry:
        """
        Deduct from the wallet, failing with InsufficientFunds if the
        available balance (checked under the account lock) is short.

        `require_available` raises the bar above `amount`, e.g. for a
        minimum balance rule enforced by a service.
        """
        amount = to_money(amount)
        key = idempotency_key or f"debit:{shipment_id}"
        await self.lock_account(db, user_id)

        existing = await self.find_by_key(db, user_id, key)
        if existing is not None:
            return self._check_replay(existing, T.DEBIT, amount)

        current = await self.summary(db, user_id)
        needed = max(amount, require_available or ZERO)
        if current.available < needed:
            logger.info(
                "ledger_insufficient_funds",
                user_id=user_id,
                required=str(needed),
                available=str(current.available),
            )
            raise InsufficientFunds(required=needed, available=current.available)

        return await self.append(
            db,
            user_id=user_id,
            entry_type=T.DEBIT,
            amount=amount,
            description=description,
            idempotency_key=key,
            reference_id=str(shipment_id),
            reference_type="shipment",
        )

    async def refund(
        self,
        db: AsyncSession,
        user_id: str,
        amount: Any,
        shipment_id: Any,
        description: str,
        idempotency_key: Optional[str] = None,
    ) -> LedgerEntry:
        await self.lock_account(db, user_id)
        return await self.append(
            db,
            user_id=user_id,
            entry_type=T.REFUND,
            amount=amount,
            description=description,
            idempotency_key=idempotency_key or f"refund:{shipment_id}:{uuid.uuid4().hex}",
            reference_id=str(shipment_id),
            reference_type="shipment",
        )

    async def hold(
        self,
        db: AsyncSession,
        user_id: str,
        amount: Any,
        shipment_id: Any,
        description: str,
        idempotency_key: str,
    ) -> LedgerEntry:
        """Record an outstanding charge against a shipment without moving balance."""
        await self.lock_account(db, user_id)
        return await self.append(
            db,
            user_id=user_id,
            entry_type=T.HOLD,
            amount=amount,
            description=description,
            idempotency_key=idempotency_key,
            reference_id=str(shipment_id),
            reference_type="shipment",
        )

    async def release_holds(
        self,
        db: AsyncSession,
        user_id: str,
        shipment_id: Any,
        description: str,
        idempotency_key: str,
    ) -> Decimal:
        """Release everything still held for a shipment. Returns the released amount."""
        await self.lock_account(db, user_id)
        outstanding = await self.held_for(db, user_id, str(shipment_id))
        if outstanding <= ZERO:
            return ZERO
        await self.append(
            db,
            user_id=user_id,
            entry_type=T.RELEASE,
            amount=outstanding,
            description=description,
            idempotency_key=idempotency_key,
            reference_id=str(shipment_id),
            reference_type="shipment",
        )
        return outstanding

    async def convert_holds(
        self,
        db: AsyncSession,
        user_id: str,
        shipment_id: Any,
        description: str,
        key_suffix: str,
    ) -> Decimal:
        """Release a shipment's holds and debit the same amount in one step."""
        outstanding = await self.release_holds(
            db, user_id, shipment_id, f"Release for {description}", f"release:{shipment_id}:{key_suffix}"
        )
        if outstanding > ZERO:
            await self.debit(
                db,
                user_id,
                outstanding,
                shipment_id,
                description,
                idempotency_key=f"debit:{shipment_id}:{key_suffix}",
            )
        return outstanding

    async def adjust(
        self,
        db: AsyncSession,
        user_id: str,
        amount: Any,
        direction: str,
        description: str,
        idempotency_key: str,
    ) -> LedgerEntry:
        if direction not in ("credit", "debit"):
            raise ValidationError("Adjustment direction must be 'credit' or 'debit'")
        await self.lock_account(db, user_id)
        return await self.append(
            db,
            user_id=user_id,
            entry_type=T.ADJUSTMENT,
            amount=amount,
            description=description,
            idempotency_key=idempotency_key,
            reference_type="adjustment",
            details={"direction": direction},
        )

    async def history(
        self,
        db: AsyncSession,
        user_id: str,
        entry_type: Optional[LedgerEntryType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """
        Entries newest first, each with the balance as of that entry.

        The running balance is computed over the full history so filters and
        paging never change the number shown next to an entry.
        """
        all_entries = (
            await db.execute(
                select(LedgerEntry)
                .where(LedgerEntry.user_id == user_id)
                .order_by(LedgerEntry.created_at, LedgerEntry.id)
            )
        ).scalars().all()

        running = ZERO
        rows: List[Dict[str, Any]] = []
        for entry in all_entries:
            running += balance_effect(entry)
            rows.append({**entry_to_dict(entry), "running_balance": str(running)})

        def keep(row: Dict[str, Any], entry: LedgerEntry) -> bool:
            if entry_type is not None and entry.type != entry_type.value:
                return False
            created = entry.created_at.replace(tzinfo=None)
            if start is not None and created < start.replace(tzinfo=None):
                return False
            if end is not None and created > end.replace(tzinfo=None):
                return False
            return True

        filtered = [row for row, entry in zip(rows, all_entries) if keep(row, entry)]
        filtered.reverse()
        return filtered[offset: offset + limit]


def balance_effect(entry: LedgerEntry) -> Decimal:
    if entry.type in (T.CREDIT.value, T.REFUND.value):
        return entry.amount
    if entry.type == T.DEBIT.value:
        return -entry.amount
    if entry.type == T.ADJUSTMENT.value:
        direction = (entry.details or {}).get("direction", "credit")
        return entry.amount if direction == "credit" else -entry.amount
    return ZERO


def entry_to_dict(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": str(entry.id),
        "type": entry.type,
        "amount": str(entry.amount),
        "description": entry.description,
        "reference_id": entry.reference_id,
        "reference_type": entry.reference_type,
        "created_at": entry.created_at.isoformat(),
    }
