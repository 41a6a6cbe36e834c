"""Modelos Pydantic (schemas) para validación de datos de entrada/salida en el Servicio de Autenticación.

El cliente web envía y recibe los campos en camelCase; los alias hacen la traducción.
"""

from pydantic import BaseModel, Field, ConfigDict, AfterValidator
from typing import Annotated, Optional


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def check_hashable_password(password: str) -> str:
    """bcrypt no admite bytes NUL; se rechazan como dato de entrada inválido (400)."""
    if "\x00" in password:
        raise ValueError("la contraseña no puede contener caracteres nulos")
    return password


# Contraseña que se va a hashear (registro y restablecimientos).
HashablePassword = Annotated[str, AfterValidator(check_hashable_password)]


# --- Schemas de Usuario ---

class UserCreate(CamelModel):
    """Schema para los datos requeridos al registrar un nuevo usuario (todos obligatorios)."""
    first_name: str = Field(..., alias="firstName")
    last_name: str = Field(..., alias="lastName")
    mother_last_name: str = Field(..., alias="motherLastName")
    username: str
    email: str
    password: HashablePassword
    phone: str
    secret_question: str = Field(..., alias="secretQuestion")
    secret_answer: str = Field(..., alias="secretAnswer")


class LoginRequest(BaseModel):
    username: str
    password: str


# --- Schemas de Recuperación ---

class EmailRequest(BaseModel):
    """Solo el correo. Se deja opcional para responder con el mensaje propio cuando falta."""
    email: Optional[str] = None


class RecoverPasswordRequest(CamelModel):
    email: str
    secret_question: str = Field(..., alias="secretQuestion")
    secret_answer: str = Field(..., alias="secretAnswer")


class ResetPasswordRequest(BaseModel):
    password: HashablePassword


class DirectResetPasswordRequest(CamelModel):
    """El recoveryToken es el devuelto por /api/recover-password tras acertar la respuesta secreta."""
    email: str
    password: HashablePassword
    recovery_token: str = Field(..., alias="recoveryToken")


# --- Schemas de Respuesta ---

class MessageResponse(BaseModel):
    message: str


class LoginResponse(BaseModel):
    """Respuesta del login. Nunca incluye la contraseña."""
    message: str
    token: str
    username: str


class SecretQuestionResponse(CamelModel):
    secret_question: str = Field(..., alias="secretQuestion")


class RecoverPasswordResponse(CamelModel):
    message: str
    recovery_token: str = Field(..., alias="recoveryToken")


class TokenPayload(BaseModel):
    """Schema que representa el payload decodificado de un token de sesión válido."""
    id: int
    username: str
    exp: Optional[int] = None
