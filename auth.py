# auth.py
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import APIRouter, Depends, Request, status
from fastapi.exceptions import HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Settings
from db import get_db
from errors import ErrorKind, Result
from idempotency import IdempotencyGuard
from mailer import MailError
from models import Role, User
from schemas import ChangePasswordIn, ForgotPasswordIn, LoginIn, ResetPasswordIn, UserCreate, UserOut

logger = logging.getLogger(__name__)

router = APIRouter()
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer = HTTPBearer(auto_error=False)

ALGORITHM = "HS256"
PASSWORD_RE = re.compile(r"^(?=.*[!@#$%^&*])[A-Za-z\d!@#$%^&*]{8,}$")
CPF_RE = re.compile(r"^\d{11}$")


def hash_password(p: str) -> str:
    return pwd_context.hash(p)


def verify_password(p: str, hp: str) -> bool:
    return pwd_context.verify(p, hp)


def create_token(user: User, settings: Settings) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "role": user.role.value,
        "jti": uuid.uuid4().hex,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)).timestamp()),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGORITHM)


def create_reset_token(user: User, settings: Settings) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "purpose": "reset",
        "jti": uuid.uuid4().hex,
        "exp": int((now + timedelta(minutes=settings.RESET_TOKEN_EXPIRE_MINUTES)).timestamp()),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str, settings: Settings) -> dict | None:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.PyJWTError:
        return None


def get_token_claims(
    request: Request, creds: HTTPAuthorizationCredentials | None = Depends(bearer)
) -> dict:
    if creds is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Token não fornecido")
    claims = decode_token(creds.credentials, request.app.state.settings)
    if not claims or "jti" not in claims:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Token inválido ou expirado")
    revoked: IdempotencyGuard = request.app.state.revoked_tokens
    if revoked.is_claimed(claims["jti"]):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Token revogado")
    return claims


def get_current_user(claims: dict = Depends(get_token_claims), db: Session = Depends(get_db)) -> User:
    user = db.get(User, int(claims["sub"]))
    if not user:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Usuário não encontrado")
    return user


def get_optional_user(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> User | None:
    if creds is None:
        return None
    return get_current_user(get_token_claims(request, creds), db)


def require_roles(*required: Role):
    def checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in required:
            raise HTTPException(status.HTTP_403_FORBIDDEN, "Permissão insuficiente")
        return user
    return checker


def require_self_or_admin(user_id: int, user: User = Depends(get_current_user)) -> User:
    if user.id != user_id and user.role != Role.ADMIN:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Permissão insuficiente")
    return user


def _with_token(user: User, settings: Settings, message: str) -> dict:
    return {"message": message, "user": UserOut.model_validate(user), "token": create_token(user, settings)}


# === СЕРВИСЫ ===
def create_user(db: Session, data: UserCreate, actor: User | None = None) -> Result[User]:
    try:
        role = Role(data.role.upper())
    except ValueError:
        return Result.failure(ErrorKind.INVALID_INPUT, "Role inválida")
    # only admins hand out staff roles; self-registration is always STUDENT
    if role != Role.STUDENT and (actor is None or actor.role != Role.ADMIN):
        return Result.failure(ErrorKind.UNAUTHORIZED, "Apenas administradores podem criar usuários com esta role")
    if not PASSWORD_RE.match(data.password):
        return Result.failure(
            ErrorKind.INVALID_INPUT,
            "A senha deve ter no mínimo 8 caracteres e incluir pelo menos um caractere especial.",
        )
    if not CPF_RE.match(data.cpf):
        return Result.failure(ErrorKind.INVALID_INPUT, "O CPF deve ser valido")
    if db.scalar(select(User).where(User.cpf == data.cpf)):
        return Result.failure(ErrorKind.CONFLICT, "Já existe um usuário cadastrado com este CPF.")
    if db.scalar(select(User).where(User.email == data.email)):
        return Result.failure(ErrorKind.CONFLICT, "Já existe um usuário cadastrado com este email.")

    user = User(
        name=data.name,
        email=data.email,
        hashed_password=hash_password(data.password),
        role=role,
        cpf=data.cpf,
        profession=data.profession,
        state="Brasília-DF",
        about="Bem-vindo(a)!",
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("user %s registered as %s", user.id, role.value)
    return Result.success(user, "Usuário criado com sucesso")


def authenticate(db: Session, email: str, password: str) -> Result[User]:
    user = db.scalar(select(User).where(User.email == email))
    if not user or not verify_password(password, user.hashed_password):
        return Result.failure(ErrorKind.UNAUTHENTICATED, "Usuário ou senha inválidos")
    return Result.success(user, "Login realizado com sucesso")


def change_password(db: Session, user: User, current: str, new: str) -> Result[None]:
    if not verify_password(current, user.hashed_password):
        return Result.failure(ErrorKind.INVALID_INPUT, "Senha atual incorreta")
    if len(new) < 6:
        return Result.failure(ErrorKind.INVALID_INPUT, "A nova senha deve ter no mínimo 6 caracteres.")
    if verify_password(new, user.hashed_password):
        return Result.failure(ErrorKind.INVALID_INPUT, "A nova senha deve ser diferente da atual.")
    user.hashed_password = hash_password(new)
    db.commit()
    return Result.success(None, "Senha alterada com sucesso")


def reset_password(
    db: Session, token: str, password: str, settings: Settings, used_tokens: IdempotencyGuard
) -> Result[None]:
    claims = decode_token(token, settings)
    if not claims or claims.get("purpose") != "reset" or "jti" not in claims:
        return Result.failure(ErrorKind.UNAUTHENTICATED, "Token inválido ou expirado")
    user = db.get(User, int(claims["sub"]))
    if not user:
        return Result.failure(ErrorKind.NOT_FOUND, "Usuário não encontrado")
    remaining = int(claims["exp"] - datetime.now(timezone.utc).timestamp())
    if not used_tokens.claim(claims["jti"], ttl_seconds=remaining):
        return Result.failure(ErrorKind.UNAUTHENTICATED, "Token já utilizado")
    user.hashed_password = hash_password(password)
    db.commit()
    return Result.success(None, "Senha alterada com sucesso")


# === РЕГИСТРАЦИЯ ===
@router.post("/user", status_code=status.HTTP_201_CREATED)
def register(
    payload: UserCreate,
    request: Request,
    actor: User | None = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    result = create_user(db, payload, actor)
    user = result.unwrap()
    return _with_token(user, request.app.state.settings, result.message)


# === ЛОГИН ===
@router.post("/login")
def login(payload: LoginIn, request: Request, db: Session = Depends(get_db)):
    result = authenticate(db, payload.email, payload.password)
    user = result.unwrap()
    body = _with_token(user, request.app.state.settings, result.message)
    body["courses"] = [c.course_id for c in user.entitlements]
    return body


# === ЛОГАУТ ===
@router.post("/user/logout")
def logout(request: Request, claims: dict = Depends(get_token_claims)):
    remaining = int(claims["exp"] - datetime.now(timezone.utc).timestamp())
    request.app.state.revoked_tokens.claim(claims["jti"], ttl_seconds=remaining)
    return {"message": "Logout realizado com sucesso"}


@router.put("/user/{user_id}/change-password")
def change_user_password(
    user_id: int,
    payload: ChangePasswordIn,
    user: User = Depends(require_self_or_admin),
    db: Session = Depends(get_db),
):
    target = db.get(User, user_id)
    if not target:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Usuário não encontrado")
    result = change_password(db, target, payload.current_password, payload.new_password)
    result.unwrap()
    return {"message": result.message}


@router.post("/forgot-password")
def forgot_password(payload: ForgotPasswordIn, request: Request, db: Session = Depends(get_db)):
    settings: Settings = request.app.state.settings
    user = db.scalar(select(User).where(User.email == payload.email))
    if not user:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Usuário não encontrado")
    link = f"{settings.CLIENT_URL}/reset-password?token={create_reset_token(user, settings)}"
    try:
        request.app.state.mailer.send_password_reset(user, link)
    except MailError as e:
        logger.error("password reset mail for user=%s failed: %s", user.id, e)
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Não foi possível enviar o email")
    return {"message": "Email enviado com sucesso"}


@router.post("/reset-password")
def reset_user_password(payload: ResetPasswordIn, request: Request, db: Session = Depends(get_db)):
    state = request.app.state
    result = reset_password(db, payload.token, payload.password, state.settings, state.used_reset_tokens)
    result.unwrap()
    return {"message": result.message}
