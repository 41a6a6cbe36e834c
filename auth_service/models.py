"""Define los modelos de las tablas 'users' y 'password_reset_tokens' usando SQLAlchemy ORM."""

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey

from auth_service.db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """
    Modelo SQLAlchemy que representa la tabla 'users'.
    Almacena los datos de perfil, la contraseña hasheada y la pregunta secreta de recuperación.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)

    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    mother_last_name = Column(String(100), nullable=False)

    username = Column(String(100), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)

    # La columna se llama 'password' pero solo guarda el hash bcrypt, nunca el texto plano.
    hashed_password = Column("password", String(255), nullable=False)

    phone = Column(String(30), nullable=False)

    secret_question = Column(String(255), nullable=False)
    secret_answer = Column(String(255), nullable=False)


class PasswordResetToken(Base):
    """
    Marca de un solo uso para los tokens de restablecimiento.

    El id es el 'jti' del JWT emitido. purpose es "email" (enlace enviado por
    correo) o "recovery" (emitido tras responder la pregunta secreta).
    """
    __tablename__ = "password_reset_tokens"

    id = Column(String(36), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    purpose = Column(String(20), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<PasswordResetToken(id={self.id}, user_id={self.user_id}, purpose={self.purpose})>"
