# users.py
import logging
import shutil
import uuid
from pathlib import Path

from fastapi import APIRouter, Depends, File, Request, UploadFile, status
from fastapi.exceptions import HTTPException
from fastapi.responses import Response
from sqlalchemy import select
from sqlalchemy.orm import Session

from auth import CPF_RE, create_token, require_roles, require_self_or_admin
from db import get_db
from entitlements import EntitlementStore
from errors import ErrorKind, Result
from models import Role, User
from schemas import CourseOut, ProfilePictureIn, UserOut, UserUpdate

logger = logging.getLogger(__name__)

router = APIRouter()

ALLOWED_PICTURE_TYPES = {"image/png": ".png", "image/jpeg": ".jpg", "image/webp": ".webp"}


def _get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Usuário não encontrado")
    return user


def update_user(db: Session, user: User, data: UserUpdate) -> Result[User]:
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    if "cpf" in changes and not CPF_RE.match(changes["cpf"]):
        return Result.failure(ErrorKind.INVALID_INPUT, "O CPF deve ser valido")
    if "email" in changes and changes["email"] != user.email:
        if db.scalar(select(User).where(User.email == changes["email"])):
            return Result.failure(ErrorKind.CONFLICT, "Já existe um usuário cadastrado com este email.")
    if "cpf" in changes and changes["cpf"] != user.cpf:
        if db.scalar(select(User).where(User.cpf == changes["cpf"])):
            return Result.failure(ErrorKind.CONFLICT, "Já existe um usuário cadastrado com este CPF.")
    for key, value in changes.items():
        setattr(user, key, value)
    db.commit()
    db.refresh(user)
    return Result.success(user, "Usuário atualizado com sucesso")


def _user_with_token(request: Request, user: User, message: str) -> dict:
    return {
        "message": message,
        "user": UserOut.model_validate(user),
        "token": create_token(user, request.app.state.settings),
    }


@router.get("/users", response_model=list[UserOut], dependencies=[Depends(require_roles(Role.ADMIN))])
def list_users(db: Session = Depends(get_db)):
    return list(db.scalars(select(User).order_by(User.id)))


@router.get("/user/{user_id}", dependencies=[Depends(require_self_or_admin)])
def get_user(user_id: int, db: Session = Depends(get_db)):
    user = _get_user(db, user_id)
    courses = EntitlementStore(db).courses_for(user.id)
    return {
        "message": "Usuário encontrado",
        "user": UserOut.model_validate(user),
        "courses": [CourseOut.model_validate(c) for c in courses],
    }


@router.put("/user/{user_id}", dependencies=[Depends(require_self_or_admin)])
def put_user(user_id: int, payload: UserUpdate, request: Request, db: Session = Depends(get_db)):
    result = update_user(db, _get_user(db, user_id), payload)
    return _user_with_token(request, result.unwrap(), result.message)


@router.delete("/user/{user_id}", status_code=status.HTTP_204_NO_CONTENT, dependencies=[Depends(require_self_or_admin)])
def delete_user(user_id: int, db: Session = Depends(get_db)):
    db.delete(_get_user(db, user_id))
    db.commit()
    logger.info("user %s deleted", user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# === PROFILE PICTURE ===
@router.post("/user/{user_id}/profile-picture", dependencies=[Depends(require_self_or_admin)])
def add_profile_picture(user_id: int, payload: ProfilePictureIn, request: Request, db: Session = Depends(get_db)):
    user = _get_user(db, user_id)
    user.profile_picture = payload.profile_picture
    db.commit()
    return _user_with_token(request, user, "Foto de perfil atualizada com sucesso.")


@router.post("/user/{user_id}/profile-picture/upload", dependencies=[Depends(require_self_or_admin)])
def upload_profile_picture(
    user_id: int,
    request: Request,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    user = _get_user(db, user_id)
    suffix = ALLOWED_PICTURE_TYPES.get(file.content_type or "")
    if not suffix:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Formato de imagem não suportado")

    upload_dir = Path(request.app.state.settings.UPLOAD_DIR)
    filename = f"{user.id}-{uuid.uuid4().hex}{suffix}"
    with (upload_dir / filename).open("wb") as out:
        shutil.copyfileobj(file.file, out)

    user.profile_picture = f"/static/uploads/{filename}"
    db.commit()
    return _user_with_token(request, user, "Foto de perfil atualizada com sucesso.")


@router.delete("/user/{user_id}/profile-picture", dependencies=[Depends(require_self_or_admin)])
def remove_profile_picture(user_id: int, request: Request, db: Session = Depends(get_db)):
    user = _get_user(db, user_id)
    user.profile_picture = None
    db.commit()
    return _user_with_token(request, user, "Foto de perfil removida com sucesso")
