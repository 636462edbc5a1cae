import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import crud
from auth_models import User
from auth_utils import hash_password, verify_password
from database import transaction
from exceptions import ConflictError, NotFoundError
from models import UserSettings
from schemas import SettingsPatch

logger = logging.getLogger(__name__)


def register_user(db: Session, email: str, password: str) -> User:
    """
    Create a user together with default settings.
    """
    if crud.get_user_by_email(db, email):
        raise ConflictError("User already exists")

    try:
        with transaction(db):
            user = crud.create_user(db, email, hash_password(password))
            crud.create_settings(db, user.id)
    except IntegrityError as e:
        # Lost a race with another signup for the same email
        raise ConflictError("User already exists") from e

    db.refresh(user)
    logger.info(f"Registered user {user.id}")
    return user


def authenticate(db: Session, email: str, password: str) -> User | None:
    user = crud.get_user_by_email(db, email)
    if not user or not verify_password(password, user.password_hash):
        return None
    return user


def get_settings(db: Session, user_id: int) -> UserSettings:
    settings = crud.get_settings(db, user_id)
    if settings is None:
        raise NotFoundError(f"No settings found for user {user_id}")
    return settings


def update_settings(db: Session, user_id: int, patch: SettingsPatch) -> UserSettings:
    settings = get_settings(db, user_id)
    with transaction(db):
        crud.update_settings(db, settings, patch)
    db.refresh(settings)
    return settings
