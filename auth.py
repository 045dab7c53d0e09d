import logging

from fastapi import APIRouter, Depends, Request, status
from passlib.context import CryptContext

from config import Settings
from errors import ForbiddenError, UnauthorizedError
from models import Role, User
from schemas import UserCreate, UserResponse, LoginRequest
from storage import Storage

logger = logging.getLogger(__name__)

SESSION_USER_KEY = "user_id"

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

router = APIRouter(prefix="/api", tags=["Auth"])


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def authenticate_user(storage: Storage, username: str, password: str):
    user = await storage.get_user_by_username(username)
    if not user or not verify_password(password, user.password):
        return None
    return user


async def get_current_user(request: Request, storage: Storage = Depends(get_storage)) -> User:
    """Resolve the session cookie to a stored user"""
    user_id = request.session.get(SESSION_USER_KEY)
    if user_id is None:
        raise UnauthorizedError()
    user = await storage.get_user(user_id)
    if user is None:
        # user no longer exists behind this session
        logger.warning(f"Session references unknown user {user_id}")
        request.session.clear()
        raise UnauthorizedError()
    return user


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register(
    user: UserCreate,
    request: Request,
    storage: Storage = Depends(get_storage),
    app_settings: Settings = Depends(get_settings)
):
    """Register a new user and log them in"""
    logger.info(f"Registering user: {user.username}")
    if user.role == Role.admin and not app_settings.ALLOW_ADMIN_REGISTRATION:
        logger.warning(f"Rejected self-registration as admin: {user.username}")
        raise ForbiddenError("Admin accounts cannot be self-registered")
    data = user.model_dump(exclude={"password"})
    db_user = await storage.create_user(User(**data, password=get_password_hash(user.password)))
    request.session[SESSION_USER_KEY] = db_user.id
    logger.info(f"User registered with ID: {db_user.id}")
    return db_user


@router.post("/login", response_model=UserResponse)
async def login(credentials: LoginRequest, request: Request, storage: Storage = Depends(get_storage)):
    user = await authenticate_user(storage, credentials.username, credentials.password)
    if not user:
        logger.warning(f"Failed login attempt for username: {credentials.username}")
        raise UnauthorizedError("Invalid username or password")
    request.session[SESSION_USER_KEY] = user.id
    logger.info(f"User logged in: {user.id}")
    return user


@router.post("/logout")
async def logout(request: Request):
    request.session.clear()
    return {"detail": "Logged out"}


@router.get("/user", response_model=UserResponse)
async def read_current_user(current_user: User = Depends(get_current_user)):
    return current_user
