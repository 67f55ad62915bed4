from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..errors import NotFoundError
from ..models import AccountCreate, AccountUpdate, ApiResponse
from ..services.accounts import AccountService
from ..services.queries import QueryService
from .deps import get_accounts, get_queries

router = APIRouter(
    prefix="/accounts",
    tags=["Accounts"],
    responses={404: {"description": "Not found"}},
)


@router.post("", response_model=ApiResponse, status_code=201)
async def create_account(payload: AccountCreate, accounts: AccountService = Depends(get_accounts)):
    account = await accounts.create_account(
        payload.user_id, payload.account_number, payload.balance, payload.currency
    )
    return ApiResponse(success=True, message="Account created successfully", data=account)


@router.get("/number/{account_number}", response_model=ApiResponse)
async def get_account_by_number(account_number: str, queries: QueryService = Depends(get_queries)):
    account = await queries.get_account_by_number(account_number)
    return ApiResponse(success=True, message="Account retrieved successfully", data=account)


@router.get("/{account_id}", response_model=ApiResponse)
async def get_account(account_id: int, queries: QueryService = Depends(get_queries)):
    account = await queries.get_account(account_id)
    return ApiResponse(success=True, message="Account retrieved successfully", data=account)


@router.put("/{account_id}", response_model=ApiResponse)
async def update_account(
    account_id: int, payload: AccountUpdate, accounts: AccountService = Depends(get_accounts)
):
    """Change an account's status. Nothing else about an account is mutable here."""
    account = await accounts.update_account(account_id, payload.status)
    return ApiResponse(success=True, message="Account updated successfully", data=account)


@router.delete("/{account_id}", response_model=ApiResponse)
async def delete_account(account_id: int, accounts: AccountService = Depends(get_accounts)):
    if not await accounts.delete_account(account_id):
        raise NotFoundError("Account not found", account_id=account_id)
    return ApiResponse(success=True, message="Account deleted successfully")


@router.get("/{account_id}/transactions", response_model=ApiResponse)
async def get_account_transactions(
    account_id: int,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    queries: QueryService = Depends(get_queries),
):
    """Transfers in and out of an account, newest first."""
    transactions = await queries.get_account_transactions(account_id, limit)
    return ApiResponse(
        success=True, message="Transactions retrieved successfully", data=transactions
    )
