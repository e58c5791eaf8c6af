"""
GroupBalanceEngine - FastAPI Web Backend

This module serves as the HTTP entry point for the group balance engine
using FastAPI.

Features:
    - Record, update and delete expenses and settlements
    - Per-currency balances and simplified debts of a group
    - Per-member balance breakdown
    - Member removal guarded by ownership and outstanding balances

Endpoints:
    POST   /groups/{group_id}/expenses                    - Add expense
    PUT    /groups/{group_id}/expenses/{expense_id}       - Update expense
    DELETE /groups/{group_id}/expenses/{expense_id}       - Soft-delete expense
    POST   /groups/{group_id}/settlements                 - Add settlement
    PUT    /groups/{group_id}/settlements/{settlement_id} - Update settlement
    DELETE /groups/{group_id}/settlements/{settlement_id} - Delete settlement
    GET    /groups/{group_id}/balances                    - Balances view
    GET    /groups/{group_id}/members/{member_id}/balance - Member breakdown
    DELETE /groups/{group_id}/members/{member_id}         - Remove member

Authentication happens upstream; the acting member id arrives in the
X-User-Id header.

Usage:
    uvicorn main:app --reload
"""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from config.logging_config import configure_logging
from errors import ConcurrentUpdateError
from expenses import Expense, add_expense, delete_expense, update_expense
from group_balances import ensure_member_can_leave, get_group_balances, get_member_balance
from members import is_admin, remove_member
from settlements import Settlement, add_settlement, delete_settlement, update_settlement
from splitter import SPLIT_TYPES
from utils import explain_member_balance


configure_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# Pydantic Models for Request/Response Validation
# =============================================================================

class SplitInput(BaseModel):
    """Per-participant input for exact and percentage splits."""
    participant_id: str = Field(..., min_length=1)
    amount: Optional[Decimal] = Field(None, ge=0, description="Exact amount (exact splits)")
    percentage: Optional[Decimal] = Field(None, ge=0, le=100, description="Percentage (percentage splits)")


class ExpenseCreate(BaseModel):
    """Request model for adding an expense."""
    payer_id: str = Field(..., min_length=1, description="Member id of payer")
    amount: Decimal = Field(..., gt=0, description="Expense amount (must be > 0)")
    currency: str = Field(..., pattern=r"^[A-Z]{3}$", description="ISO 4217 currency code")
    split_type: str = Field("equal", description=f"One of {SPLIT_TYPES}")
    participant_ids: list[str] = Field(..., min_length=1, description="Members sharing the expense")
    splits: Optional[list[SplitInput]] = Field(None, description="Required for exact and percentage splits")
    description: Optional[str] = None


class ExpenseUpdate(BaseModel):
    """Request model for updating an expense; omitted fields are kept."""
    payer_id: Optional[str] = None
    amount: Optional[Decimal] = Field(None, gt=0)
    currency: Optional[str] = Field(None, pattern=r"^[A-Z]{3}$")
    split_type: Optional[str] = None
    participant_ids: Optional[list[str]] = None
    splits: Optional[list[SplitInput]] = None
    description: Optional[str] = None


class SplitResponse(BaseModel):
    participant_id: str
    amount: float
    percentage: Optional[float] = None


class ExpenseResponse(BaseModel):
    """Response model for expense data."""
    id: str
    group_id: str
    payer_id: str
    participant_ids: list[str]
    split_type: str
    splits: list[SplitResponse]
    amount: float
    currency: str
    description: Optional[str]
    version: int
    deleted_at: Optional[str]


class SettlementCreate(BaseModel):
    """Request model for recording a settlement."""
    payer_id: str = Field(..., min_length=1)
    payee_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., pattern=r"^[A-Z]{3}$")
    note: Optional[str] = None


class SettlementUpdate(BaseModel):
    """Request model for updating a settlement."""
    amount: Optional[Decimal] = Field(None, gt=0)
    currency: Optional[str] = Field(None, pattern=r"^[A-Z]{3}$")
    note: Optional[str] = None


class SettlementResponse(BaseModel):
    """Response model for settlement data."""
    id: str
    group_id: str
    payer_id: str
    payee_id: str
    amount: float
    currency: str
    note: Optional[str]
    created_by: Optional[str]


class SimplifiedDebt(BaseModel):
    """One suggested payment; serialized with "from" and "to" keys."""
    model_config = ConfigDict(populate_by_name=True)

    from_member: str = Field(..., alias="from")
    to_member: str = Field(..., alias="to")
    amount: float


class CurrencyBalances(BaseModel):
    netBalances: dict[str, float]
    simplifiedDebts: list[SimplifiedDebt]


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Group Balance Engine",
    description="Balances and simplified debts for shared group expenses",
    version="1.0.0"
)


# =============================================================================
# Helper Functions
# =============================================================================

def _raw_splits(splits: Optional[list[SplitInput]]) -> Optional[list[dict]]:
    if splits is None:
        return None
    return [split.model_dump(exclude_none=True) for split in splits]


def _expense_response(expense: Expense) -> ExpenseResponse:
    """Convert Expense object to its response model."""
    return ExpenseResponse(
        id=expense.id,
        group_id=expense.group_id,
        payer_id=expense.payer_id,
        participant_ids=expense.participant_ids,
        split_type=expense.split_type,
        splits=[
            SplitResponse(
                participant_id=split["participant_id"],
                amount=float(split["amount"]),
                percentage=float(split["percentage"]) if split.get("percentage") is not None else None
            )
            for split in expense.splits
        ],
        amount=float(expense.amount),
        currency=expense.currency,
        description=expense.description,
        version=expense.version,
        deleted_at=expense.deleted_at
    )


def _settlement_response(settlement: Settlement) -> SettlementResponse:
    """Convert Settlement object to its response model."""
    return SettlementResponse(
        id=settlement.id,
        group_id=settlement.group_id,
        payer_id=settlement.payer_id,
        payee_id=settlement.payee_id,
        amount=float(settlement.amount),
        currency=settlement.currency,
        note=settlement.note,
        created_by=settlement.created_by
    )


def _to_http_error(error: Exception) -> HTTPException:
    """
    Map engine exceptions to HTTP errors.

    ValueError covers ValidationError, MembershipError and
    OutstandingBalanceError. ConcurrentUpdateError is a conflict (409).
    Any other RuntimeError (DataIntegrityError, BalanceInvariantError, a
    missing Firestore client) means balances are unavailable.
    """
    if isinstance(error, HTTPException):
        return error
    if isinstance(error, PermissionError):
        return HTTPException(status_code=403, detail=str(error))
    if isinstance(error, LookupError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ValueError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, ConcurrentUpdateError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, RuntimeError):
        return HTTPException(status_code=503, detail=str(error))
    logger.exception("Unhandled error", exc_info=error)
    return HTTPException(status_code=500, detail=str(error))


# =============================================================================
# API Endpoints
# =============================================================================

@app.post("/groups/{group_id}/expenses", response_model=ExpenseResponse, status_code=201)
async def create_group_expense(
    group_id: str,
    expense_data: ExpenseCreate,
    x_user_id: Optional[str] = Header(None)
):
    """
    Add an expense to a group.

    Request flow:
        1. Validate input using Pydantic model
        2. Call add_expense() from expenses.py (splits computed there)
        3. Return created expense data
    """
    try:
        expense = add_expense(
            group_id=group_id,
            payer_id=expense_data.payer_id,
            amount=expense_data.amount,
            currency=expense_data.currency,
            split_type=expense_data.split_type,
            participant_ids=expense_data.participant_ids,
            raw_splits=_raw_splits(expense_data.splits),
            description=expense_data.description,
            created_by=x_user_id
        )
        return _expense_response(expense)
    except Exception as e:
        raise _to_http_error(e)


@app.put("/groups/{group_id}/expenses/{expense_id}", response_model=ExpenseResponse)
async def update_group_expense(
    group_id: str,
    expense_id: str,
    expense_data: ExpenseUpdate,
    x_user_id: Optional[str] = Header(None)
):
    """Replace an expense with a new version; splits are recomputed."""
    try:
        expense = update_expense(
            group_id=group_id,
            expense_id=expense_id,
            payer_id=expense_data.payer_id,
            amount=expense_data.amount,
            currency=expense_data.currency,
            split_type=expense_data.split_type,
            participant_ids=expense_data.participant_ids,
            raw_splits=_raw_splits(expense_data.splits),
            description=expense_data.description,
            updated_by=x_user_id
        )
        return _expense_response(expense)
    except Exception as e:
        raise _to_http_error(e)


@app.delete("/groups/{group_id}/expenses/{expense_id}", response_model=ExpenseResponse)
async def delete_group_expense(group_id: str, expense_id: str, x_user_id: Optional[str] = Header(None)):
    """Soft-delete an expense."""
    try:
        return _expense_response(delete_expense(group_id, expense_id, deleted_by=x_user_id))
    except Exception as e:
        raise _to_http_error(e)


@app.post("/groups/{group_id}/settlements", response_model=SettlementResponse, status_code=201)
async def create_group_settlement(
    group_id: str,
    settlement_data: SettlementCreate,
    x_user_id: Optional[str] = Header(None)
):
    """Record a payment between two members."""
    try:
        settlement = add_settlement(
            group_id=group_id,
            payer_id=settlement_data.payer_id,
            payee_id=settlement_data.payee_id,
            amount=settlement_data.amount,
            currency=settlement_data.currency,
            note=settlement_data.note,
            created_by=x_user_id
        )
        return _settlement_response(settlement)
    except Exception as e:
        raise _to_http_error(e)


@app.put("/groups/{group_id}/settlements/{settlement_id}", response_model=SettlementResponse)
async def update_group_settlement(
    group_id: str,
    settlement_id: str,
    settlement_data: SettlementUpdate,
    x_user_id: str = Header(...)
):
    """Update amount, currency or note of a settlement (creator only)."""
    try:
        settlement = update_settlement(
            group_id=group_id,
            settlement_id=settlement_id,
            actor_id=x_user_id,
            amount=settlement_data.amount,
            currency=settlement_data.currency,
            note=settlement_data.note
        )
        return _settlement_response(settlement)
    except Exception as e:
        raise _to_http_error(e)


@app.delete("/groups/{group_id}/settlements/{settlement_id}", status_code=204)
async def delete_group_settlement(group_id: str, settlement_id: str, x_user_id: str = Header(...)):
    """Delete a settlement (creator or group admin)."""
    try:
        delete_settlement(group_id, settlement_id, x_user_id, actor_is_admin=is_admin(group_id, x_user_id))
    except Exception as e:
        raise _to_http_error(e)


@app.get("/groups/{group_id}/balances", response_model=dict[str, CurrencyBalances], response_model_by_alias=True)
async def get_balances(group_id: str):
    """
    Get the balances view of a group.

    Request flow:
        1. Read roster, expenses and settlements in one snapshot
        2. Aggregate net balances per currency (balances.py)
        3. Simplify debts per currency (simplifier.py)
        4. Return {currency: {netBalances, simplifiedDebts}}
    """
    try:
        group_balances = get_group_balances(group_id)
    except Exception as e:
        logger.error("Balances unavailable for group %s: %s", group_id, e)
        raise _to_http_error(e)

    return {
        currency: CurrencyBalances(
            netBalances={member_id: float(amount) for member_id, amount in data["net_balances"].items()},
            simplifiedDebts=[
                SimplifiedDebt(from_member=debt["from"], to_member=debt["to"], amount=float(debt["amount"]))
                for debt in data["simplified_debts"]
            ]
        )
        for currency, data in group_balances.items()
    }


@app.get("/groups/{group_id}/members/{member_id}/balance")
async def get_member_balance_breakdown(group_id: str, member_id: str):
    """Explain who a member owes and who owes them, per currency."""
    try:
        explanation = explain_member_balance(member_id, get_member_balance(group_id, member_id))
    except Exception as e:
        raise _to_http_error(e)

    for entry in explanation["currencies"]:
        entry["net_balance"] = float(entry["net_balance"])
        for item in entry["owes"] + entry["owed_by"]:
            item["amount"] = float(item["amount"])
    return explanation


@app.delete("/groups/{group_id}/members/{member_id}", status_code=204)
async def remove_group_member(group_id: str, member_id: str, x_user_id: Optional[str] = Header(None)):
    """
    Remove a member from a group, or leave it when X-User-Id is the member.

    The member is marked as departed, not deleted. Refused with 403 when
    someone other than the owner removes another member, with 400 for the
    owner, the last member or an outstanding balance in any currency, and
    with 503 when balances cannot be computed.
    """
    try:
        ensure_member_can_leave(group_id, member_id, actor_id=x_user_id)
        remove_member(group_id, member_id)
    except Exception as e:
        raise _to_http_error(e)


# =============================================================================
# Health Check Endpoint
# =============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint to verify API is running."""
    return {"status": "healthy", "service": "Group Balance Engine"}


# =============================================================================
# Run with: python main.py
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
