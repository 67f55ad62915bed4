from fastapi import APIRouter, Depends

from ..models import ApiResponse, TransferRequest
from ..services.queries import QueryService
from ..services.transfer import TransferEngine
from .deps import get_engine, get_queries

router = APIRouter(
    tags=["Transactions"],
    responses={404: {"description": "Not found"}},
)


@router.post("/transfers", response_model=ApiResponse, status_code=201)
async def transfer(request: TransferRequest, engine: TransferEngine = Depends(get_engine)):
    """Move funds between two accounts as one atomic unit."""
    transaction = await engine.transfer(
        request.from_account_id,
        request.to_account_id,
        request.amount,
        request.description,
    )
    return ApiResponse(success=True, message="Transfer completed successfully", data=transaction)


@router.get("/transactions/{transaction_id}", response_model=ApiResponse)
async def get_transaction(transaction_id: int, queries: QueryService = Depends(get_queries)):
    transaction = await queries.get_transaction(transaction_id)
    return ApiResponse(
        success=True, message="Transaction retrieved successfully", data=transaction
    )
