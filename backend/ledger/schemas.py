from datetime import datetime
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

CENT = Decimal("0.01")


def to_cents(value: Optional[Decimal]) -> Optional[Decimal]:
    if value is None:
        return value
    return value.quantize(CENT, rounding=ROUND_HALF_EVEN)


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    details: list[ApiErrorDetail] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)


class ApiErrorResponse(BaseModel):
    success: bool = False
    error: ApiErrorPayload


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: str
    storageBackend: str


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(min_length=8, max_length=128)
    name: Optional[str] = Field(default=None, max_length=200)
    initialBalance: Decimal = Field(default=Decimal("0"), ge=Decimal("0"), max_digits=14, decimal_places=2)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        v = value.strip().lower()
        if "@" not in v or "." not in v.split("@")[-1]:
            raise ValueError("invalid email format")
        return v

    @field_validator("initialBalance")
    @classmethod
    def quantize_initial_balance(cls, value: Decimal) -> Decimal:
        return to_cents(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(min_length=8, max_length=128)
    rememberMe: bool = False

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return value.strip().lower()


class AuthResponse(BaseModel):
    token: str
    userId: UUID
    email: str
    name: Optional[str] = None


class UserBalanceResponse(BaseModel):
    userId: UUID
    currentBalance: Decimal
    accountCount: int


class AccountCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    accountType: str = Field(default="General", min_length=1, max_length=50)
    initialBalance: Decimal = Field(default=Decimal("0"), ge=Decimal("0"), max_digits=14, decimal_places=2)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("name must not be empty")
        return v

    @field_validator("initialBalance")
    @classmethod
    def quantize_initial_balance(cls, value: Decimal) -> Decimal:
        return to_cents(value)


class AccountResponse(BaseModel):
    id: UUID
    name: str
    accountType: str
    initialBalance: Decimal
    currentBalance: Decimal
    createdAt: datetime


class AccountAuditResponse(BaseModel):
    accountId: UUID
    initialBalance: Decimal
    expectedBalance: Decimal
    currentBalance: Decimal
    entryCount: int
    consistent: bool


class LedgerEntryResponse(BaseModel):
    id: UUID
    accountId: UUID
    kind: str
    referenceId: UUID
    delta: Decimal
    balanceAfter: Decimal
    createdAt: datetime


class BalanceChangeResponse(BaseModel):
    accountId: UUID
    previousBalance: Decimal
    newBalance: Decimal
    delta: Decimal
    overdrawn: bool = False


class ExpenseCreate(BaseModel):
    accountId: UUID
    amount: Decimal = Field(gt=Decimal("0"), max_digits=14, decimal_places=2)
    occurredAt: datetime
    category: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("amount")
    @classmethod
    def quantize_amount(cls, value: Decimal) -> Decimal:
        return to_cents(value)


class ExpenseUpdate(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=Decimal("0"), max_digits=14, decimal_places=2)
    occurredAt: Optional[datetime] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("amount")
    @classmethod
    def quantize_amount(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        return to_cents(value)


class ExpenseResponse(BaseModel):
    id: UUID
    accountId: UUID
    amount: Decimal
    occurredAt: datetime
    category: str
    description: Optional[str] = None
    createdAt: datetime


class IncomeCreate(BaseModel):
    accountId: UUID
    amount: Decimal = Field(gt=Decimal("0"), max_digits=14, decimal_places=2)
    occurredAt: datetime
    source: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("amount")
    @classmethod
    def quantize_amount(cls, value: Decimal) -> Decimal:
        return to_cents(value)


class IncomeUpdate(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=Decimal("0"), max_digits=14, decimal_places=2)
    occurredAt: Optional[datetime] = None
    source: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("amount")
    @classmethod
    def quantize_amount(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        return to_cents(value)


class IncomeResponse(BaseModel):
    id: UUID
    accountId: UUID
    amount: Decimal
    occurredAt: datetime
    source: str
    description: Optional[str] = None
    createdAt: datetime


class ExpenseMutationResponse(BaseModel):
    success: bool = True
    expense: Optional[ExpenseResponse] = None
    balances: list[BalanceChangeResponse]


class IncomeMutationResponse(BaseModel):
    success: bool = True
    income: Optional[IncomeResponse] = None
    balances: list[BalanceChangeResponse]


class TransferCreate(BaseModel):
    sourceAccountId: UUID
    destinationAccountId: UUID
    amount: Decimal = Field(gt=Decimal("0"), max_digits=14, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("amount")
    @classmethod
    def quantize_amount(cls, value: Decimal) -> Decimal:
        return to_cents(value)


class TransferResponse(BaseModel):
    id: UUID
    sourceAccountId: UUID
    destinationAccountId: UUID
    amount: Decimal
    description: Optional[str] = None
    createdAt: datetime


class TransferMutationResponse(BaseModel):
    success: bool = True
    transfer: TransferResponse
    balances: list[BalanceChangeResponse]


class SavingGoalCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    targetAmount: Decimal = Field(gt=Decimal("0"), max_digits=14, decimal_places=2)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("name must not be empty")
        return v

    @field_validator("targetAmount")
    @classmethod
    def quantize_target(cls, value: Decimal) -> Decimal:
        return to_cents(value)


class SavingGoalResponse(BaseModel):
    id: UUID
    name: str
    targetAmount: Decimal
    currentSavedAmount: Decimal
    isCompleted: bool
    createdAt: datetime


class GoalAllocationCreate(BaseModel):
    accountId: UUID
    amount: Decimal = Field(gt=Decimal("0"), max_digits=14, decimal_places=2)

    @field_validator("amount")
    @classmethod
    def quantize_amount(cls, value: Decimal) -> Decimal:
        return to_cents(value)


class GoalAllocationResponse(BaseModel):
    success: bool = True
    savingGoal: SavingGoalResponse
    balances: list[BalanceChangeResponse]
