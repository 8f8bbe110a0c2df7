"""Users router."""

from fastapi import APIRouter, Depends, status
import structlog

from ..dependencies import get_current_user, get_user_repository
from ..exceptions import AlreadyExistsError
from ..models import User
from ..repository import UserRepository
from ..schemas import UserCreate, UserRead

logger = structlog.get_logger()

router = APIRouter(prefix="/users", tags=["users"])


@router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
async def create_user(
    user_in: UserCreate,
    users: UserRepository = Depends(get_user_repository),
) -> User:
    """Register a new user."""
    if await users.find_by_name(user_in.name):
        raise AlreadyExistsError("User with this name already exists")

    user = await users.save(User(name=user_in.name, email=user_in.email))
    logger.info("user_created", user_id=user.id, name=user.name)
    return user


@router.get("/me", response_model=UserRead)
async def read_current_user(user: User = Depends(get_current_user)) -> User:
    return user
