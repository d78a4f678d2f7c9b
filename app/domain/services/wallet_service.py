"""
Wallet Service - wallet balances and the transaction ledger

Every balance change is one conditional UPDATE on the wallet row plus one
Transaction row carrying balance_before/balance_after taken from the
updated row, so two concurrent debits can never push a balance below zero.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Tuple

import bcrypt
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from app.core.config import settings
from app.core.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidPinError,
    PinNotSetError,
    WalletLockedError,
    BankDetailsUnverifiedError,
    TransactionNotFoundError,
    TransactionAlreadyProcessedError,
    UserNotFoundError,
    InvalidUserRoleError,
    OrderNotFoundError,
    OrderAlreadyPaidError,
    NotAuthorizedError,
    PaymentDeclinedError,
    PaymentProviderError,
    ValidationException,
)
from app.core.logging import get_logger
from app.core.validation import AmountValidator, PinValidator, BankDetailsValidator
from app.db.models.order import Order, OrderStatus, PaymentStatus, PaymentMethod
from app.db.models.transaction import Transaction, TransactionType, TransactionStatus
from app.db.models.user import User
from app.db.models.wallet import Wallet
from app.domain.money import ZERO, round_money, percent_of, to_decimal
from app.domain.services.payments.base_processor import BasePaymentProcessor
from app.state_machine import Actor, OrderStateMachine

logger = get_logger(__name__)


def compute_withdrawal_fee(amount: Decimal) -> Decimal:
    """Percentage fee with a fixed floor: max(amount × rate, minimum)"""
    fee = percent_of(amount, settings.WITHDRAWAL_FEE_RATE)
    return max(fee, round_money(settings.WITHDRAWAL_MIN_FEE))


def _validated_amount(amount: Any) -> Decimal:
    is_valid, _ = AmountValidator.validate(amount)
    if not is_valid:
        raise InvalidAmountError(amount)
    return round_money(amount)


class WalletService:
    """Wallet balances, PIN, bank details and ledger entries"""

    def __init__(self, db: AsyncSession, processor: BasePaymentProcessor | None = None):
        self.db = db
        self.processor = processor

    # ==================== Wallet rows ====================

    async def get_or_create_wallet(
        self, user_id: int, for_update: bool = False
    ) -> Wallet:
        """Get existing wallet or create one (flushed, not committed)"""
        query = select(Wallet).where(Wallet.user_id == user_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        wallet = result.scalar_one_or_none()

        if not wallet:
            wallet = Wallet(
                user_id=user_id,
                balance=ZERO,
                pending_balance=ZERO,
                total_earnings=ZERO,
                currency=settings.PAYMENT_CURRENCY.upper(),
            )
            self.db.add(wallet)
            await self.db.flush()

        return wallet

    async def get_wallet(self, user_id: int) -> Wallet:
        wallet = await self.get_or_create_wallet(user_id)
        await self.db.commit()
        return wallet

    # ==================== Ledger primitives ====================

    async def _write_transaction(
        self,
        wallet: Wallet,
        tx_type: TransactionType,
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        description: str,
        *,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        order_id: int | None = None,
        reference: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Transaction:
        transaction = Transaction(
            user_id=wallet.user_id,
            order_id=order_id,
            type=tx_type,
            amount=amount,
            currency=wallet.currency,
            status=status,
            description=description,
            reference=reference,
            extra_metadata=metadata or {},
            balance_before=balance_before,
            balance_after=balance_after,
            processed_at=datetime.utcnow() if status == TransactionStatus.COMPLETED else None,
        )
        self.db.add(transaction)
        await self.db.flush()
        return transaction

    async def debit(
        self,
        wallet: Wallet,
        amount: Decimal,
        tx_type: TransactionType,
        description: str,
        **tx_kwargs: Any,
    ) -> Transaction:
        """
        Atomic check-and-debit.

        Raises:
            InsufficientBalanceError: balance < amount; nothing is written
        """
        amount = round_money(amount)
        result = await self.db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id, Wallet.balance >= amount)
            .values(balance=Wallet.balance - amount)
            .returning(Wallet.balance)
            .execution_options(synchronize_session=False)
        )
        balance_after = result.scalar_one_or_none()
        if balance_after is None:
            await self.db.refresh(wallet)
            raise InsufficientBalanceError(wallet.user_id, wallet.balance, amount)

        balance_after = round_money(balance_after)
        set_committed_value(wallet, "balance", balance_after)
        return await self._write_transaction(
            wallet, tx_type, amount, balance_after + amount, balance_after, description, **tx_kwargs
        )

    async def credit(
        self,
        wallet: Wallet,
        amount: Decimal,
        tx_type: TransactionType,
        description: str,
        **tx_kwargs: Any,
    ) -> Transaction:
        amount = round_money(amount)
        result = await self.db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .values(balance=Wallet.balance + amount)
            .returning(Wallet.balance)
            .execution_options(synchronize_session=False)
        )
        balance_after = round_money(result.scalar_one())
        set_committed_value(wallet, "balance", balance_after)
        return await self._write_transaction(
            wallet, tx_type, amount, balance_after - amount, balance_after, description, **tx_kwargs
        )

    async def accrue_pending_earnings(self, user_id: int, amount: Decimal) -> Wallet:
        """
        Add delivered-order earnings to pending_balance and total_earnings.

        Available balance is untouched, so no Transaction is written; the
        settlement sweep writes the earning entry when it releases the money.
        """
        amount = round_money(amount)
        wallet = await self.get_or_create_wallet(user_id)
        result = await self.db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .values(
                pending_balance=Wallet.pending_balance + amount,
                total_earnings=Wallet.total_earnings + amount,
            )
            .returning(Wallet.pending_balance, Wallet.total_earnings)
            .execution_options(synchronize_session=False)
        )
        pending, total = result.one()
        set_committed_value(wallet, "pending_balance", round_money(pending))
        set_committed_value(wallet, "total_earnings", round_money(total))
        return wallet

    # ==================== PIN ====================

    async def set_pin(self, user_id: int, pin: str) -> Wallet:
        is_valid, error = PinValidator.validate(pin)
        if not is_valid:
            raise ValidationException(error, field="pin")

        wallet = await self.get_or_create_wallet(user_id)
        wallet.pin_hash = bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
        wallet.is_pin_set = True
        await self.db.commit()
        logger.info("Wallet PIN set", extra_data={"user_id": user_id})
        return wallet

    @staticmethod
    def _pin_matches(wallet: Wallet, pin: str | None) -> bool:
        if not pin or not wallet.pin_hash:
            return False
        return bcrypt.checkpw(pin.encode("utf-8"), wallet.pin_hash.encode("utf-8"))

    def _require_pin(self, wallet: Wallet, pin: str | None) -> None:
        if not wallet.is_pin_set:
            raise PinNotSetError(wallet.user_id)
        if not self._pin_matches(wallet, pin):
            logger.warning("Wallet PIN rejected", extra_data={"user_id": wallet.user_id})
            raise InvalidPinError()

    async def verify_pin(self, user_id: int, pin: str) -> bool:
        wallet = await self.get_or_create_wallet(user_id)
        if not wallet.is_pin_set:
            raise PinNotSetError(user_id)
        return self._pin_matches(wallet, pin)

    # ==================== Top-up / pay ====================

    async def top_up(
        self,
        user_id: int,
        amount: Decimal,
        payment_method: str,
        idempotency_key: str | None = None,
    ) -> Transaction:
        """
        Charge a card and credit the wallet.

        Only a synchronous success credits; anything else is a decline.
        Re-sending the same idempotency key returns the original credit.
        """
        amount = _validated_amount(amount)
        if self.processor is None:
            raise PaymentProviderError("no payment processor configured for top-ups")

        key = idempotency_key or f"topup-{user_id}-{uuid.uuid4().hex}"
        intent = await self.processor.create_payment_intent(
            amount=amount,
            currency=settings.PAYMENT_CURRENCY,
            payment_method=payment_method,
            metadata={"user_id": user_id, "order_type": "wallet_top_up"},
            idempotency_key=key,
        )
        if not intent.succeeded:
            raise PaymentDeclinedError(
                f"payment was not completed (status: {intent.status})",
                details={"payment_intent_id": intent.id},
            )

        existing = await self.db.execute(
            select(Transaction).where(Transaction.reference == intent.id)
        )
        already = existing.scalar_one_or_none()
        if already is not None:
            return already

        try:
            wallet = await self.get_or_create_wallet(user_id, for_update=True)
            if not wallet.is_active:
                raise WalletLockedError(user_id)
            transaction = await self.credit(
                wallet,
                amount,
                TransactionType.TOP_UP,
                f"Wallet top-up of {amount}",
                reference=intent.id,
                metadata={"payment_intent_id": intent.id},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Wallet topped up",
            extra_data={"user_id": user_id, "amount": str(amount), "transaction_id": transaction.id}
        )
        return transaction

    async def pay_order_with_wallet(self, user_id: int, order_id: int, pin: str) -> Tuple[Order, Transaction]:
        """Pay a pending order from the wallet and confirm it"""
        try:
            result = await self.db.execute(
                select(Order).where(Order.id == order_id).with_for_update()
            )
            order = result.scalar_one_or_none()
            if order is None:
                raise OrderNotFoundError(order_id)
            if order.customer_id != user_id:
                raise NotAuthorizedError(
                    "Order does not belong to the acting user",
                    details={"order_id": order_id},
                )
            if order.payment_status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
                raise OrderAlreadyPaidError(order_id)

            state_machine = OrderStateMachine(self.db)
            state_machine.check_transition(order, OrderStatus.CONFIRMED, Actor.system())

            wallet = await self.get_or_create_wallet(user_id, for_update=True)
            if not wallet.is_active:
                raise WalletLockedError(user_id)
            self._require_pin(wallet, pin)

            transaction = await self.debit(
                wallet,
                order.total,
                TransactionType.PAYMENT,
                f"Payment for order {order.order_number}",
                order_id=order.id,
                reference=f"order-payment-{order.order_number}",
            )

            order.payment_method = PaymentMethod.WALLET
            order.payment_status = PaymentStatus.COMPLETED
            state_machine.transition(
                order, OrderStatus.CONFIRMED, Actor.system(), note="Paid from wallet"
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Order paid from wallet",
            extra_data={"order_id": order.id, "user_id": user_id, "amount": str(order.total)}
        )
        return order, transaction

    async def refund_order_to_wallet(self, order: Order) -> Transaction:
        """
        Return a wallet-paid order's total. Caller commits.

        Idempotent per order through the unique reference.
        """
        reference = f"order-refund-{order.order_number}"
        existing = await self.db.execute(
            select(Transaction).where(Transaction.reference == reference)
        )
        already = existing.scalar_one_or_none()
        if already is not None:
            return already

        wallet = await self.get_or_create_wallet(order.customer_id, for_update=True)
        return await self.credit(
            wallet,
            order.total,
            TransactionType.REFUND,
            f"Refund for cancelled order {order.order_number}",
            order_id=order.id,
            reference=reference,
        )

    # ==================== Bank details ====================

    async def update_bank_details(
        self,
        user_id: int,
        account_name: str,
        bank_name: str,
        account_number: str,
    ) -> Wallet:
        """Store bank details; any change requires admin re-verification"""
        is_valid, error = BankDetailsValidator.validate_account_number(account_number)
        if not is_valid:
            raise ValidationException(error, field="account_number")
        is_valid, error = BankDetailsValidator.validate_bank_name(bank_name)
        if not is_valid:
            raise ValidationException(error, field="bank_name")
        if not account_name or not account_name.strip():
            raise ValidationException("Account name is required", field="account_name")

        wallet = await self.get_or_create_wallet(user_id)
        wallet.bank_account_name = account_name.strip()
        wallet.bank_name = bank_name.strip()
        wallet.bank_account_number = BankDetailsValidator.normalize_account_number(account_number)
        wallet.bank_details_verified = False
        await self.db.commit()

        logger.info(
            "Bank details updated",
            extra_data={
                "user_id": user_id,
                "account": BankDetailsValidator.mask(wallet.bank_account_number),
            }
        )
        return wallet

    async def verify_bank_details(self, user_id: int) -> Wallet:
        wallet = await self.get_or_create_wallet(user_id)
        if not wallet.has_bank_details:
            raise ValidationException("No bank details to verify", field="bank_details")
        wallet.bank_details_verified = True
        await self.db.commit()
        return wallet

    # ==================== Withdrawal to bank ====================

    async def withdraw_to_bank(
        self,
        user_id: int,
        amount: Decimal,
        pin: str,
    ) -> Tuple[Transaction, Transaction]:
        """
        Move available balance to the user's bank account.

        Writes a pending ``withdrawal`` of amount and a completed ``debit`` of
        the fee. The payout worker (or an admin) later completes or fails the
        withdrawal.

        Returns:
            (withdrawal transaction, fee transaction)
        """
        amount = _validated_amount(amount)

        user = await self.db.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        if not user.can_withdraw:
            raise InvalidUserRoleError(user_id, user.role.value, "vendor or rider")

        try:
            wallet = await self.get_or_create_wallet(user_id, for_update=True)
            if not wallet.is_active:
                raise WalletLockedError(user_id)
            self._require_pin(wallet, pin)
            if not wallet.has_bank_details or not wallet.bank_details_verified:
                raise BankDetailsUnverifiedError(user_id)

            fee = compute_withdrawal_fee(amount)
            if wallet.balance < amount + fee:
                raise InsufficientBalanceError(user_id, wallet.balance, amount + fee)

            last4 = wallet.bank_account_number[-4:]
            withdrawal = await self.debit(
                wallet,
                amount,
                TransactionType.WITHDRAWAL,
                f"Withdrawal to {wallet.bank_name} account ending {last4}",
                status=TransactionStatus.PENDING,
                metadata={
                    "bank_account_name": wallet.bank_account_name,
                    "bank_name": wallet.bank_name,
                    "bank_account_number": wallet.bank_account_number,
                    "fee": str(fee),
                },
            )
            fee_tx = await self.debit(
                wallet,
                fee,
                TransactionType.DEBIT,
                f"Withdrawal fee for transaction #{withdrawal.id}",
                metadata={"withdrawal_transaction_id": withdrawal.id},
            )
            withdrawal.extra_metadata = {
                **withdrawal.extra_metadata,
                "fee_transaction_id": fee_tx.id,
            }
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Withdrawal requested",
            extra_data={
                "user_id": user_id,
                "transaction_id": withdrawal.id,
                "amount": str(amount),
                "fee": str(fee),
                "account": BankDetailsValidator.mask(wallet.bank_account_number),
            }
        )
        return withdrawal, fee_tx

    async def _get_pending_withdrawal(self, transaction_id: int) -> Transaction:
        result = await self.db.execute(
            select(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.type == TransactionType.WITHDRAWAL,
            )
            .with_for_update()
        )
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        if transaction.status != TransactionStatus.PENDING:
            raise TransactionAlreadyProcessedError(transaction_id, transaction.status.value)
        return transaction

    async def complete_withdrawal(self, transaction_id: int, payout_reference: str | None = None) -> Transaction:
        try:
            transaction = await self._get_pending_withdrawal(transaction_id)
            transaction.status = TransactionStatus.COMPLETED
            transaction.processed_at = datetime.utcnow()
            if payout_reference:
                transaction.extra_metadata = {
                    **(transaction.extra_metadata or {}),
                    "payout_reference": payout_reference,
                }
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Withdrawal completed",
            extra_data={"transaction_id": transaction_id, "user_id": transaction.user_id}
        )
        return transaction

    async def fail_withdrawal(self, transaction_id: int, reason: str) -> Transaction:
        """Mark a withdrawal failed and refund amount + fee to the wallet"""
        try:
            transaction = await self._get_pending_withdrawal(transaction_id)
            transaction.status = TransactionStatus.FAILED
            transaction.failure_reason = reason[:500]
            transaction.processed_at = datetime.utcnow()

            fee = to_decimal((transaction.extra_metadata or {}).get("fee", "0"))
            wallet = await self.get_or_create_wallet(transaction.user_id, for_update=True)
            refund = await self.credit(
                wallet,
                transaction.amount + fee,
                TransactionType.REFUND,
                f"Refund of failed withdrawal #{transaction.id}",
                reference=f"withdrawal-refund-{transaction.id}",
                metadata={"withdrawal_transaction_id": transaction.id, "fee": str(fee)},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.warning(
            "Withdrawal failed and refunded",
            extra_data={
                "transaction_id": transaction_id,
                "user_id": transaction.user_id,
                "refund_transaction_id": refund.id,
                "reason": reason,
            }
        )
        return transaction

    async def get_pending_withdrawals(self, limit: int = 50) -> List[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .where(
                Transaction.type == TransactionType.WITHDRAWAL,
                Transaction.status == TransactionStatus.PENDING,
            )
            .order_by(Transaction.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    # ==================== History ====================

    async def get_transactions(
        self,
        user_id: int,
        limit: int = 20,
        offset: int = 0,
        tx_type: TransactionType | None = None,
    ) -> List[Transaction]:
        """Transaction history for a user, newest first"""
        query = select(Transaction).where(Transaction.user_id == user_id)
        if tx_type is not None:
            query = query.where(Transaction.type == tx_type)
        result = await self.db.execute(
            query.order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())
