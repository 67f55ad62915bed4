from starlette.requests import Request

from ..services.accounts import AccountService
from ..services.queries import QueryService
from ..services.transfer import TransferEngine
from ..services.users import UserService


def get_users(request: Request) -> UserService:
    return request.app.state.users


def get_accounts(request: Request) -> AccountService:
    return request.app.state.accounts


def get_queries(request: Request) -> QueryService:
    return request.app.state.queries


def get_engine(request: Request) -> TransferEngine:
    return request.app.state.engine
