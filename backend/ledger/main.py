from decimal import Decimal
import logging
from typing import Any
from uuid import UUID

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .access import SESSION_COOKIE_NAME, create_session, require_token, require_user, revoke_session
from .config import settings
from .engine import BalanceChange
from .errors import LedgerError, Unauthorized
from .logging_config import configure_logging
from .persistence import get_persistence
from .schemas import (
    AccountAuditResponse,
    AccountCreate,
    AccountResponse,
    ApiErrorDetail,
    ApiErrorPayload,
    ApiErrorResponse,
    AuthResponse,
    BalanceChangeResponse,
    ExpenseCreate,
    ExpenseMutationResponse,
    ExpenseResponse,
    ExpenseUpdate,
    GoalAllocationCreate,
    GoalAllocationResponse,
    HealthResponse,
    IncomeCreate,
    IncomeMutationResponse,
    IncomeResponse,
    IncomeUpdate,
    LedgerEntryResponse,
    LoginRequest,
    RegisterRequest,
    SavingGoalCreate,
    SavingGoalResponse,
    TransferCreate,
    TransferMutationResponse,
    TransferResponse,
    UserBalanceResponse,
)
from .services import ledger

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Ledger API",
    version="0.1.0",
    description="Personal finance ledger keeping account balances consistent with expenses, incomes, transfers and saving goals.",
)

persistence = get_persistence()


def build_error_response(
    status_code: int,
    code: str,
    message: str,
    details: list[ApiErrorDetail] | None = None,
    context: dict[str, Any] | None = None,
) -> JSONResponse:
    payload = ApiErrorResponse(
        error=ApiErrorPayload(code=code, message=message, details=details or [], context=context or {})
    )
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(payload, custom_encoder={Decimal: str}),
    )


@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError) -> JSONResponse:
    logger.info("%s %s rejected: %s %s", request.method, request.url.path, exc.kind, exc.message)
    body = exc.to_payload()
    return build_error_response(exc.status_code, body["code"], body["message"], context=body["context"])


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: list[ApiErrorDetail] = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
        details.append(ApiErrorDetail(field=loc or "body", message=err.get("msg", "validation error")))
    return build_error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "VALIDATION_ERROR", "Invalid request payload", details)


@app.exception_handler(ValueError)
async def value_error_exception_handler(request: Request, exc: ValueError) -> JSONResponse:
    return build_error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "VALIDATION_ERROR",
        "Invalid request payload",
        [ApiErrorDetail(field="body", message=str(exc))],
    )


def _account_response(row: dict[str, Any]) -> AccountResponse:
    return AccountResponse(
        id=row["id"],
        name=row["name"],
        accountType=row["account_type"],
        initialBalance=row["initial_balance"],
        currentBalance=row["current_balance"],
        createdAt=row["created_at"],
    )


def _expense_response(row: dict[str, Any]) -> ExpenseResponse:
    return ExpenseResponse(
        id=row["id"],
        accountId=row["account_id"],
        amount=row["amount"],
        occurredAt=row["occurred_at"],
        category=row["category"],
        description=row.get("description"),
        createdAt=row["created_at"],
    )


def _income_response(row: dict[str, Any]) -> IncomeResponse:
    return IncomeResponse(
        id=row["id"],
        accountId=row["account_id"],
        amount=row["amount"],
        occurredAt=row["occurred_at"],
        source=row["source"],
        description=row.get("description"),
        createdAt=row["created_at"],
    )


def _goal_response(row: dict[str, Any]) -> SavingGoalResponse:
    return SavingGoalResponse(
        id=row["id"],
        name=row["name"],
        targetAmount=row["target_amount"],
        currentSavedAmount=row["current_saved_amount"],
        isCompleted=row["is_completed"],
        createdAt=row["created_at"],
    )


def _transfer_response(row: dict[str, Any]) -> TransferResponse:
    return TransferResponse(
        id=row["id"],
        sourceAccountId=row["source_account_id"],
        destinationAccountId=row["destination_account_id"],
        amount=row["amount"],
        description=row.get("description"),
        createdAt=row["created_at"],
    )


def _balances(changes: list[BalanceChange]) -> list[BalanceChangeResponse]:
    return [
        BalanceChangeResponse(
            accountId=change.account_id,
            previousBalance=change.before,
            newBalance=change.after,
            delta=change.delta,
            overdrawn=change.overdrawn,
        )
        for change in changes
    ]


@app.get("/api/v1/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok", storageBackend=settings.storage_backend)


@app.post("/api/v1/auth/register", response_model=AuthResponse, status_code=201)
def auth_register(payload: RegisterRequest, response: Response) -> AuthResponse:
    user = persistence.register_user(payload.email, payload.password, payload.name, payload.initialBalance)
    token = create_session(user["id"])
    response.set_cookie(SESSION_COOKIE_NAME, token, httponly=True, samesite="lax", secure=False)
    logger.info("user registered id=%s", user["id"])
    return AuthResponse(token=token, userId=user["id"], email=user["email"], name=user.get("name"))


@app.post("/api/v1/auth/login", response_model=AuthResponse)
def auth_login(payload: LoginRequest, response: Response) -> AuthResponse:
    user = persistence.authenticate_user(payload.email, payload.password)
    if user is None:
        raise Unauthorized("invalid email or password")
    token = create_session(user["id"])
    if payload.rememberMe:
        response.set_cookie(SESSION_COOKIE_NAME, token, httponly=True, samesite="lax", secure=False, max_age=60 * 60 * 24 * 30)
    else:
        response.set_cookie(SESSION_COOKIE_NAME, token, httponly=True, samesite="lax", secure=False)
    return AuthResponse(token=token, userId=user["id"], email=user["email"], name=user.get("name"))


@app.get("/api/v1/auth/me", response_model=AuthResponse)
def auth_me(token: str = Depends(require_token), user_id: UUID = Depends(require_user)) -> AuthResponse:
    user = persistence.get_user_by_id(user_id)
    if user is None:
        raise Unauthorized("user not found")
    return AuthResponse(token=token, userId=user["id"], email=user["email"], name=user.get("name"))


@app.post("/api/v1/auth/logout")
def auth_logout(response: Response, token: str = Depends(require_token)) -> dict[str, bool]:
    revoke_session(token)
    response.delete_cookie(SESSION_COOKIE_NAME)
    return {"ok": True}


@app.get("/api/v1/users/me/balance", response_model=UserBalanceResponse)
def get_user_balance(user_id: UUID = Depends(require_user)) -> UserBalanceResponse:
    total, count = ledger.total_balance(persistence, user_id)
    return UserBalanceResponse(userId=user_id, currentBalance=total, accountCount=count)


@app.post("/api/v1/accounts", response_model=AccountResponse, status_code=201)
def create_account(payload: AccountCreate, user_id: UUID = Depends(require_user)) -> AccountResponse:
    return _account_response(persistence.create_account(user_id, payload))


@app.get("/api/v1/accounts", response_model=list[AccountResponse])
def list_accounts(user_id: UUID = Depends(require_user)) -> list[AccountResponse]:
    return [_account_response(row) for row in persistence.list_accounts(user_id)]


@app.delete("/api/v1/accounts/{account_id}")
def delete_account(account_id: UUID, user_id: UUID = Depends(require_user)) -> dict[str, bool]:
    persistence.delete_account(user_id, account_id)
    return {"deleted": True}


@app.get("/api/v1/accounts/{account_id}/entries", response_model=list[LedgerEntryResponse])
def list_account_entries(account_id: UUID, user_id: UUID = Depends(require_user)) -> list[LedgerEntryResponse]:
    return [
        LedgerEntryResponse(
            id=row["id"],
            accountId=row["account_id"],
            kind=row["kind"],
            referenceId=row["reference_id"],
            delta=row["delta"],
            balanceAfter=row["balance_after"],
            createdAt=row["created_at"],
        )
        for row in ledger.list_account_entries(persistence, user_id, account_id)
    ]


@app.get("/api/v1/accounts/{account_id}/audit", response_model=AccountAuditResponse)
def audit_account(account_id: UUID, user_id: UUID = Depends(require_user)) -> AccountAuditResponse:
    report = ledger.audit_account(persistence, user_id, account_id)
    return AccountAuditResponse(
        accountId=report["account_id"],
        initialBalance=report["initial_balance"],
        expectedBalance=report["expected_balance"],
        currentBalance=report["current_balance"],
        entryCount=report["entry_count"],
        consistent=report["consistent"],
    )


@app.post("/api/v1/expenses", response_model=ExpenseMutationResponse, status_code=201)
def create_expense(payload: ExpenseCreate, user_id: UUID = Depends(require_user)) -> ExpenseMutationResponse:
    result = ledger.record_expense(persistence, user_id, payload)
    return ExpenseMutationResponse(expense=_expense_response(result.entity), balances=_balances(result.changes))


@app.get("/api/v1/expenses", response_model=list[ExpenseResponse])
def list_expenses(user_id: UUID = Depends(require_user)) -> list[ExpenseResponse]:
    return [_expense_response(row) for row in persistence.list_entries("expense", user_id)]


@app.put("/api/v1/expenses/{expense_id}", response_model=ExpenseMutationResponse)
def update_expense(expense_id: UUID, payload: ExpenseUpdate, user_id: UUID = Depends(require_user)) -> ExpenseMutationResponse:
    result = ledger.alter_expense(persistence, user_id, expense_id, payload)
    return ExpenseMutationResponse(expense=_expense_response(result.entity), balances=_balances(result.changes))


@app.delete("/api/v1/expenses/{expense_id}", response_model=ExpenseMutationResponse)
def delete_expense(expense_id: UUID, user_id: UUID = Depends(require_user)) -> ExpenseMutationResponse:
    result = ledger.remove_expense(persistence, user_id, expense_id)
    return ExpenseMutationResponse(balances=_balances(result.changes))


@app.post("/api/v1/incomes", response_model=IncomeMutationResponse, status_code=201)
def create_income(payload: IncomeCreate, user_id: UUID = Depends(require_user)) -> IncomeMutationResponse:
    result = ledger.record_income(persistence, user_id, payload)
    return IncomeMutationResponse(income=_income_response(result.entity), balances=_balances(result.changes))


@app.get("/api/v1/incomes", response_model=list[IncomeResponse])
def list_incomes(user_id: UUID = Depends(require_user)) -> list[IncomeResponse]:
    return [_income_response(row) for row in persistence.list_entries("income", user_id)]


@app.put("/api/v1/incomes/{income_id}", response_model=IncomeMutationResponse)
def update_income(income_id: UUID, payload: IncomeUpdate, user_id: UUID = Depends(require_user)) -> IncomeMutationResponse:
    result = ledger.alter_income(persistence, user_id, income_id, payload)
    return IncomeMutationResponse(income=_income_response(result.entity), balances=_balances(result.changes))


@app.delete("/api/v1/incomes/{income_id}", response_model=IncomeMutationResponse)
def delete_income(income_id: UUID, user_id: UUID = Depends(require_user)) -> IncomeMutationResponse:
    result = ledger.remove_income(persistence, user_id, income_id)
    return IncomeMutationResponse(balances=_balances(result.changes))


@app.post("/api/v1/transfers", response_model=TransferMutationResponse, status_code=201)
def create_transfer(payload: TransferCreate, user_id: UUID = Depends(require_user)) -> TransferMutationResponse:
    result = ledger.transfer_funds(persistence, user_id, payload)
    return TransferMutationResponse(transfer=_transfer_response(result.entity), balances=_balances(result.changes))


@app.get("/api/v1/transfers", response_model=list[TransferResponse])
def list_transfers(user_id: UUID = Depends(require_user)) -> list[TransferResponse]:
    return [_transfer_response(row) for row in persistence.list_transfers(user_id)]


@app.post("/api/v1/saving-goals", response_model=SavingGoalResponse, status_code=201)
def create_saving_goal(payload: SavingGoalCreate, user_id: UUID = Depends(require_user)) -> SavingGoalResponse:
    return _goal_response(persistence.create_goal(user_id, payload))


@app.get("/api/v1/saving-goals", response_model=list[SavingGoalResponse])
def list_saving_goals(user_id: UUID = Depends(require_user)) -> list[SavingGoalResponse]:
    return [_goal_response(row) for row in persistence.list_goals(user_id)]


@app.post("/api/v1/saving-goals/{goal_id}/allocate", response_model=GoalAllocationResponse)
def allocate_to_saving_goal(
    goal_id: UUID,
    payload: GoalAllocationCreate,
    user_id: UUID = Depends(require_user),
) -> GoalAllocationResponse:
    result = ledger.allocate_to_goal(persistence, user_id, goal_id, payload)
    return GoalAllocationResponse(savingGoal=_goal_response(result.entity), balances=_balances(result.changes))
