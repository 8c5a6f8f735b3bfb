"""
Сервис аутентификации пользователей.

Обрабатывает регистрацию и вход пользователей в систему.
"""

import logging

from sqlalchemy.orm import Session

from rapidfire.errors import Unauthenticated, UsernameTaken
from rapidfire.models import User
from rapidfire.security import hash_password, verify_access_token, verify_password

logger = logging.getLogger(__name__)


class AuthService:
    """Сервис для управления аутентификацией пользователей."""

    def register(self, db: Session, username: str, password: str) -> User:
        """
        Регистрация нового пользователя.

        Аргументы:
            db (Session): Сессия базы данных
            username (str): Имя пользователя
            password (str): Пароль

        Возвращает:
            User: Объект зарегистрированного пользователя

        Выбрасывает:
            UsernameTaken: Если имя пользователя уже занято
        """
        # Проверка существования пользователя
        existing = db.query(User).filter(User.username == username).first()
        if existing:
            raise UsernameTaken()
        # Создание нового пользователя
        user = User(username=username, password_hash=hash_password(password))
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info("Registered user %s (%s)", user.username, user.id)
        return user

    def login(self, db: Session, username: str, password: str) -> User:
        """
        Вход пользователя в систему.

        Выбрасывает:
            Unauthenticated: При неверных учетных данных
        """
        user = db.query(User).filter(User.username == username).first()
        if not user:
            raise Unauthenticated("Invalid credentials")
        valid, needs_rehash = verify_password(password, user.password_hash)
        if not valid:
            raise Unauthenticated("Invalid credentials")
        if needs_rehash:
            user.password_hash = hash_password(password)
            db.commit()
        return user

    def user_from_token(self, db: Session, token: str | None) -> User:
        user_id = verify_access_token(token)
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise Unauthenticated("User not found")
        return user


# Экземпляр сервиса для использования в приложении
auth_service = AuthService()
