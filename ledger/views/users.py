from fastapi import APIRouter, Depends

from ..models import ApiResponse, UserCreate, UserUpdate
from ..services.queries import QueryService
from ..services.users import UserService
from .deps import get_queries, get_users

router = APIRouter(
    prefix="/users",
    tags=["Users"],
    responses={404: {"description": "Not found"}},
)


@router.post("", response_model=ApiResponse, status_code=201)
async def create_user(payload: UserCreate, users: UserService = Depends(get_users)):
    user = await users.create_user(payload.name, payload.email)
    return ApiResponse(success=True, message="User created successfully", data=user)


@router.get("", response_model=ApiResponse)
async def list_users(users: UserService = Depends(get_users)):
    return ApiResponse(
        success=True, message="Users retrieved successfully", data=await users.list_users()
    )


@router.get("/{user_id}", response_model=ApiResponse)
async def get_user(user_id: int, users: UserService = Depends(get_users)):
    return ApiResponse(
        success=True, message="User retrieved successfully", data=await users.get_user(user_id)
    )


@router.put("/{user_id}", response_model=ApiResponse)
async def update_user(user_id: int, payload: UserUpdate, users: UserService = Depends(get_users)):
    user = await users.update_user(user_id, name=payload.name, email=payload.email)
    return ApiResponse(success=True, message="User updated successfully", data=user)


@router.delete("/{user_id}", response_model=ApiResponse)
async def delete_user(user_id: int, users: UserService = Depends(get_users)):
    await users.delete_user(user_id)
    return ApiResponse(success=True, message="User deleted successfully")


@router.get("/{user_id}/accounts", response_model=ApiResponse)
async def get_user_accounts(user_id: int, queries: QueryService = Depends(get_queries)):
    """All accounts owned by a user."""
    accounts = await queries.get_user_accounts(user_id)
    return ApiResponse(success=True, message="Accounts retrieved successfully", data=accounts)
