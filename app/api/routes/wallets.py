"""
Wallet API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, List

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user, require_admin
from app.core.validation import (
    BankDetailsValidator,
    amount_validator,
    pin_validator,
    account_number_validator,
    sanitized_text_validator,
)
from app.db.database import get_db
from app.db.models.transaction import TransactionType, TransactionStatus
from app.db.models.user import User
from app.domain.services.payments import BasePaymentProcessor, get_payment_processor
from app.domain.services.wallet_service import WalletService

router = APIRouter()


# ==================== Schemas ====================

class WalletResponse(BaseModel):
    user_id: int
    balance: Decimal
    pending_balance: Decimal
    total_earnings: Decimal
    currency: str
    is_active: bool
    is_pin_set: bool
    bank_name: str | None = None
    bank_account_name: str | None = None
    bank_account_number: str | None = None
    bank_details_verified: bool

    model_config = {"from_attributes": True}

    @field_validator("bank_account_number")
    @classmethod
    def mask_account(cls, v: str | None) -> str | None:
        # מספר חשבון מלא לא יוצא מה-API
        return BankDetailsValidator.mask(v) if v else None


class TransactionResponse(BaseModel):
    id: int
    order_id: int | None
    type: TransactionType
    amount: Decimal
    currency: str
    status: TransactionStatus
    description: str | None
    reference: str | None
    balance_before: Decimal
    balance_after: Decimal
    created_at: datetime | None
    processed_at: datetime | None
    failure_reason: str | None

    model_config = {"from_attributes": True}


class PinRequest(BaseModel):
    pin: str

    @field_validator("pin")
    @classmethod
    def validate_pin(cls, v: str) -> str:
        return pin_validator(v)


class TopUpRequest(BaseModel):
    amount: Decimal
    payment_method: str = Field(min_length=1, max_length=255)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        return amount_validator(v)


class PayOrderRequest(BaseModel):
    order_id: int
    pin: str


class WithdrawRequest(BaseModel):
    amount: Decimal
    pin: str

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        return amount_validator(v)


class WithdrawResponse(BaseModel):
    withdrawal: TransactionResponse
    fee: TransactionResponse
    balance: Decimal


class BankDetailsRequest(BaseModel):
    account_name: str = Field(min_length=1, max_length=150)
    bank_name: str
    account_number: str

    @field_validator("account_number")
    @classmethod
    def validate_account_number(cls, v: str) -> str:
        return account_number_validator(v)

    @field_validator("account_name")
    @classmethod
    def validate_account_name(cls, v: str) -> str:
        return sanitized_text_validator(v, max_length=150)


class FailWithdrawalRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


# ==================== Own wallet ====================

@router.get("/me", response_model=WalletResponse, summary="הארנק שלי")
async def get_my_wallet(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await WalletService(db).get_wallet(user.id)


@router.get(
    "/me/transactions",
    response_model=List[TransactionResponse],
    summary="היסטוריית תנועות",
    description="תנועות הארנק מהחדשה לישנה, עם סינון אופציונלי לפי סוג.",
)
async def get_my_transactions(
    limit: int = 20,
    offset: int = 0,
    type: TransactionType | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await WalletService(db).get_transactions(
        user.id, limit=min(max(limit, 1), 100), offset=max(offset, 0), tx_type=type
    )


@router.post("/pin", response_model=WalletResponse, summary="הגדרת PIN לארנק")
async def set_pin(
    data: PinRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await WalletService(db).set_pin(user.id, data.pin)


@router.post("/pin/verify", summary="אימות PIN")
async def verify_pin(
    data: PinRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    valid = await WalletService(db).verify_pin(user.id, data.pin)
    return {"valid": valid}


@router.post(
    "/top-up",
    response_model=TransactionResponse,
    summary="טעינת ארנק בכרטיס",
    description="רק חיוב שהצליח מיידית נזקף לארנק; כל מצב אחר מוחזר כסירוב.",
)
async def top_up(
    data: TopUpRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=128),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    processor: BasePaymentProcessor = Depends(get_payment_processor),
):
    service = WalletService(db, processor)
    return await service.top_up(user.id, data.amount, data.payment_method, idempotency_key)


@router.post(
    "/pay-order",
    summary="תשלום הזמנה מהארנק",
    description="מחייב את הארנק בסכום ההזמנה ומאשר אותה.",
)
async def pay_order(
    data: PayOrderRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    service = WalletService(db)
    order, transaction = await service.pay_order_with_wallet(user.id, data.order_id, data.pin)
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "transaction": TransactionResponse.model_validate(transaction),
    }


@router.post(
    "/withdraw",
    response_model=WithdrawResponse,
    summary="משיכה לחשבון בנק",
    description="לספקים ושליחים בלבד. עמלה: 2% ולא פחות מ-$1. המשיכה ממתינה לאישור העברה.",
)
async def withdraw(
    data: WithdrawRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    service = WalletService(db)
    withdrawal, fee_tx = await service.withdraw_to_bank(user.id, data.amount, data.pin)
    return WithdrawResponse(
        withdrawal=TransactionResponse.model_validate(withdrawal),
        fee=TransactionResponse.model_validate(fee_tx),
        balance=fee_tx.balance_after,
    )


@router.put(
    "/bank-details",
    response_model=WalletResponse,
    summary="עדכון פרטי בנק",
    description="כל שינוי מאפס את האימות ודורש אישור אדמין מחדש.",
)
async def update_bank_details(
    data: BankDetailsRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await WalletService(db).update_bank_details(
        user.id, data.account_name, data.bank_name, data.account_number
    )


# ==================== Admin ====================

@router.post(
    "/{user_id}/bank-details/verify",
    response_model=WalletResponse,
    summary="אימות פרטי בנק (אדמין)",
)
async def verify_bank_details(
    user_id: int,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await WalletService(db).verify_bank_details(user_id)


@router.post(
    "/withdrawals/{transaction_id}/complete",
    response_model=TransactionResponse,
    summary="אישור משיכה (אדמין)",
)
async def complete_withdrawal(
    transaction_id: int,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await WalletService(db).complete_withdrawal(transaction_id)


@router.post(
    "/withdrawals/{transaction_id}/fail",
    response_model=TransactionResponse,
    summary="דחיית משיכה (אדמין)",
    description="מסמן את המשיכה כנכשלה ומחזיר לארנק את הסכום והעמלה.",
)
async def fail_withdrawal(
    transaction_id: int,
    data: FailWithdrawalRequest,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await WalletService(db).fail_withdrawal(transaction_id, data.reason)
