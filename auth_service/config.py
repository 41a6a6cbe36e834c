"""Configuración del servicio de autenticación, leída del entorno (.env incluido)."""

import os
import logging
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

INSECURE_DEV_SECRET = "clave_secreta_insegura_por_defecto_cambiar_urgentemente"

POOL_MODES = ("pool", "single")


class Settings(BaseModel):
    """Valores de configuración tipados. Se construye una vez y se pasa a create_app()."""

    database_url: str
    db_pool_mode: str = "pool"
    db_pool_size: int = Field(10, ge=1)

    jwt_secret: str = INSECURE_DEV_SECRET
    jwt_algorithm: str = "HS256"
    session_token_minutes: int = 60
    reset_token_minutes: int = 15

    gmail_user: Optional[str] = None
    gmail_pass: Optional[str] = None
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    mail_from_name: str = "Soporte"

    frontend_url: str = "http://localhost:3000"
    cors_origins: List[str] = ["http://localhost:3000"]
    port: int = 5000

    @field_validator("db_pool_mode")
    @classmethod
    def check_pool_mode(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in POOL_MODES:
            raise ValueError(f"DB_POOL_MODE debe ser uno de {POOL_MODES}, no '{v}'")
        return v

    @field_validator("frontend_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Lee las variables de entorno (cargando antes el archivo .env si existe).

        Si no hay DATABASE_URL, arma la URL de MariaDB/MySQL a partir de
        DB_HOST, DB_USER, DB_PASS y DB_NAME.
        """
        load_dotenv()

        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            required_db_vars = {"DB_USER", "DB_PASS", "DB_HOST", "DB_NAME"}
            missing_vars = required_db_vars - set(os.environ)
            if missing_vars:
                logger.error(f"Faltan variables de entorno para la base de datos: {', '.join(sorted(missing_vars))}")
            database_url = "mysql+pymysql://{}:{}@{}/{}".format(
                os.getenv("DB_USER", ""),
                os.getenv("DB_PASS", ""),
                os.getenv("DB_HOST", "localhost"),
                os.getenv("DB_NAME", ""),
            )

        jwt_secret = os.getenv("JWT_SECRET")
        if not jwt_secret:
            logger.warning("JWT_SECRET no está definida en las variables de entorno. Usando clave insegura por defecto para desarrollo.")
            jwt_secret = INSECURE_DEV_SECRET

        if not os.getenv("GMAIL_USER") or not os.getenv("GMAIL_PASS"):
            logger.warning("GMAIL_USER/GMAIL_PASS no configurados. El envío de correos de recuperación fallará.")

        cors_origins = [
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
            if origin.strip()
        ]

        return cls(
            database_url=database_url,
            db_pool_mode=os.getenv("DB_POOL_MODE", "pool"),
            db_pool_size=int(os.getenv("DB_POOL_SIZE", 10)),
            jwt_secret=jwt_secret,
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            session_token_minutes=int(os.getenv("SESSION_TOKEN_MINUTES", 60)),
            reset_token_minutes=int(os.getenv("RESET_TOKEN_MINUTES", 15)),
            gmail_user=os.getenv("GMAIL_USER"),
            gmail_pass=os.getenv("GMAIL_PASS"),
            smtp_server=os.getenv("SMTP_SERVER", "smtp.gmail.com"),
            smtp_port=int(os.getenv("SMTP_PORT", 587)),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
            cors_origins=cors_origins,
            port=int(os.getenv("PORT", 5000)),
        )
