"""Funciones de utilidad para el servicio de autenticación: hash de contraseñas, tokens JWT y respuesta secreta."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from passlib.context import CryptContext
from jose import JWTError, jwt

# Configuración del logger
logger = logging.getLogger(__name__)

# Costo del hash adaptativo (equivalente a bcrypt.hash(password, 10)).
BCRYPT_ROUNDS = 10

# Tipos de token ('typ' dentro del payload).
SESSION = "session"
EMAIL_RESET = "email"
RECOVERY = "recovery"
RESET_PURPOSES = (EMAIL_RESET, RECOVERY)


pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=BCRYPT_ROUNDS,
)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verifica una contraseña plana contra un hash almacenado (comparación en tiempo constante).
    Una contraseña que bcrypt no acepta (p. ej. con bytes NUL) simplemente no coincide.
    """
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError as e:
        logger.warning(f"Contraseña rechazada por el hasher durante la verificación: {type(e).__name__}")
        return False


def get_password_hash(password: str) -> str:
    """Genera el hash de una contraseña plana usando bcrypt con sal aleatoria."""
    return pwd_context.hash(password)


def secret_answer_matches(stored_answer: str, submitted_answer: str) -> bool:
    """Compara la respuesta secreta ignorando mayúsculas y espacios en los extremos."""
    return stored_answer.strip().lower() == submitted_answer.strip().lower()


class InvalidTokenError(Exception):
    """Token con firma inválida, expirado, mal formado o de otro tipo."""


# --- Utilidades para Tokens JWT ---
class TokenService:
    """
    Emite y verifica los JWT del servicio.

    - Token de sesión: {id, username, typ="session"}, expira en session_minutes.
    - Token de restablecimiento: {id, typ, jti}, expira en reset_minutes. typ es
      "email" (enlace por correo) o "recovery" (tras la pregunta secreta).

    Los métodos de emisión aceptan `now` para poder simular el reloj en pruebas.
    """

    def __init__(self, secret_key: str, algorithm: str = "HS256",
                 session_minutes: int = 60, reset_minutes: int = 15):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.session_minutes = session_minutes
        self.reset_minutes = reset_minutes

    def _encode(self, data: Dict, minutes: int, now: Optional[datetime]) -> Tuple[str, datetime]:
        issued_at = now or datetime.now(timezone.utc)
        expire = issued_at + timedelta(minutes=minutes)
        to_encode = data.copy()
        to_encode.update({"iat": issued_at, "exp": expire})
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm), expire

    def create_session_token(self, user_id: int, username: str, now: Optional[datetime] = None) -> str:
        token, _ = self._encode(
            {"id": user_id, "username": username, "typ": SESSION},
            self.session_minutes,
            now,
        )
        return token

    def create_reset_token(self, user_id: int, purpose: str, jti: str,
                           now: Optional[datetime] = None) -> Tuple[str, datetime]:
        """Devuelve el token y su fecha de expiración (para guardarla junto al jti)."""
        if purpose not in RESET_PURPOSES:
            raise ValueError(f"Tipo de token de restablecimiento desconocido: {purpose}")
        return self._encode({"id": user_id, "typ": purpose, "jti": jti}, self.reset_minutes, now)

    def decode(self, token: str, purpose: str) -> Dict:
        """
        Decodifica y valida un token (firma, expiración y tipo).

        Raises:
            InvalidTokenError: en cualquier fallo; no se distingue entre expirado e inválido.
        """
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            logger.warning(f"Fallo en decodificación de token: {e}")
            raise InvalidTokenError(str(e)) from e

        if payload.get("typ") != purpose:
            logger.warning(f"Token de tipo '{payload.get('typ')}' usado donde se esperaba '{purpose}'.")
            raise InvalidTokenError("wrong token type")
        if not isinstance(payload.get("id"), int):
            raise InvalidTokenError("missing user id")
        if purpose in RESET_PURPOSES and not payload.get("jti"):
            raise InvalidTokenError("missing jti")
        return payload
