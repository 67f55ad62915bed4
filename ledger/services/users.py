import re
from typing import List, Optional

from ..errors import InvalidInputError, NotFoundError
from ..logging_config import get_logger
from ..models import User
from ..stores.base import Storage

logger = get_logger("ledger.services.users")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _clean_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise InvalidInputError("Name is required")
    return name


def _clean_email(email: Optional[str]) -> str:
    email = (email or "").strip().lower()
    if not email:
        raise InvalidInputError("Email is required")
    if not EMAIL_PATTERN.match(email):
        raise InvalidInputError("Invalid email format", email=email)
    return email


class UserService:
    def __init__(self, storage: Storage):
        self.storage = storage

    async def create_user(self, name: str, email: str) -> User:
        user = await self.storage.users.create(_clean_name(name), _clean_email(email))
        logger.info("Created user id=%s", user.id)
        return user

    async def get_user(self, user_id: int) -> User:
        user = await self.storage.users.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found", user_id=user_id)
        return user

    async def list_users(self) -> List[User]:
        return await self.storage.users.list_all()

    async def update_user(
        self, user_id: int, name: Optional[str] = None, email: Optional[str] = None
    ) -> User:
        user = await self.storage.users.update(
            user_id,
            name=_clean_name(name) if name is not None else None,
            email=_clean_email(email) if email is not None else None,
        )
        if user is None:
            raise NotFoundError("User not found", user_id=user_id)
        return user

    async def delete_user(self, user_id: int) -> None:
        if not await self.storage.users.delete(user_id):
            raise NotFoundError("User not found", user_id=user_id)
        logger.info("Deleted user id=%s", user_id)
