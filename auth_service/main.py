"""Servicio de autenticación: registro, login y recuperación de contraseña (correo o pregunta secreta)."""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, APIRouter, Depends, HTTPException, status, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth_service import schemas
from auth_service.config import Settings
from auth_service.db import Base, get_db, create_engine_for, create_session_factory, check_connection
from auth_service.mailer import SmtpMailer, MailDeliveryError, build_reset_link
from auth_service.models import User, PasswordResetToken, utcnow
from auth_service.utils import (
    get_password_hash,
    verify_password,
    secret_answer_matches,
    TokenService,
    InvalidTokenError,
    SESSION,
    EMAIL_RESET,
    RECOVERY,
)

# Configura logger
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

SERVER_ERROR = "Error en el servidor"
INVALID_TOKEN = "Token inválido o expirado"
USER_NOT_FOUND = "Usuario no encontrado"
EMAIL_NOT_FOUND = "Correo no encontrado"
PASSWORD_RESET_OK = "Contraseña restablecida con éxito"

# --- Métricas Prometheus ---
REQUEST_COUNT = Counter(
    "auth_requests_total",
    "Total requests processed by Auth Service",
    ["method", "endpoint", "status_code"]
)
REQUEST_LATENCY = Histogram(
    "auth_request_latency_seconds",
    "Request latency in seconds for Auth Service",
    ["endpoint"]
)


# --- Middleware para Métricas ---
async def metrics_middleware(request: Request, call_next):
    start_time = time.time()
    response = None
    status_code = 500 # Default a 500

    try:
        response = await call_next(request)
        status_code = response.status_code
    except Exception as exc:
        logger.error(f"Unhandled exception during request processing: {exc}", exc_info=True)
        response = JSONResponse(status_code=500, content={"message": SERVER_ERROR})
    finally:
        latency = time.time() - start_time
        # Plantilla de la ruta, no la URL: /api/reset-password/{token} lleva el token en el path.
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        REQUEST_LATENCY.labels(endpoint=endpoint).observe(latency)
        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=getattr(response, "status_code", status_code)
        ).inc()

    return response


# --- Manejadores de errores: el cliente siempre recibe {"message": ...} ---
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Solo las ubicaciones: los errores incluyen el valor recibido (p. ej. la contraseña).
    fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
    logger.warning(f"Petición inválida a {request.url.path}: campos {fields}")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"message": "Datos de entrada inválidos"})


async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Error de base de datos en {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"message": SERVER_ERROR})


async def mail_exception_handler(request: Request, exc: MailDeliveryError):
    logger.error(f"Error al enviar correo en {request.url.path}: {exc}")
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"message": SERVER_ERROR})


# --- Dependencias inyectadas desde app.state ---
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_tokens(request: Request) -> TokenService:
    return request.app.state.tokens


def get_mailer(request: Request):
    return request.app.state.mailer


# --- Tokens de restablecimiento de un solo uso ---
def issue_reset_token(db: Session, tokens: TokenService, user_id: int, purpose: str) -> str:
    """
    Firma un token de restablecimiento y guarda su jti como pendiente de uso.
    De paso borra las marcas del usuario que ya expiraron o se usaron.
    """
    db.query(PasswordResetToken).filter(
        PasswordResetToken.user_id == user_id,
        or_(PasswordResetToken.used_at.isnot(None), PasswordResetToken.expires_at < utcnow()),
    ).delete(synchronize_session=False)

    jti = str(uuid.uuid4())
    token, expires_at = tokens.create_reset_token(user_id, purpose, jti)
    db.add(PasswordResetToken(id=jti, user_id=user_id, purpose=purpose, expires_at=expires_at))
    db.commit()
    return token


def claim_reset_token(db: Session, payload: dict, purpose: str) -> bool:
    """
    Marca el token como usado dentro de la transacción actual.

    Devuelve False si el jti no existe o ya fue usado. La actualización condicional
    garantiza que dos peticiones concurrentes con el mismo token no ganen ambas.
    """
    claimed = (
        db.query(PasswordResetToken)
        .filter(
            PasswordResetToken.id == payload["jti"],
            PasswordResetToken.user_id == payload["id"],
            PasswordResetToken.purpose == purpose,
            PasswordResetToken.used_at.is_(None),
        )
        .update({PasswordResetToken.used_at: utcnow()}, synchronize_session=False)
    )
    return claimed == 1


# --- Endpoints de API ---
router = APIRouter(prefix="/api", tags=["Authentication"])


@router.post("/register", response_model=schemas.MessageResponse)
def register(user: schemas.UserCreate, db: Session = Depends(get_db)):
    """
    Registers a new user. Fails if the username or the email already exists.
    The password is stored only as a bcrypt hash; no token is issued.
    """
    logger.info(f"Registration attempt for username: {user.username}")
    db_user = db.query(User).filter(or_(User.username == user.username, User.email == user.email)).first()
    if db_user:
        logger.warning(f"Registration failed: username {user.username} or email {user.email} already exists.")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="El usuario o correo ya existe")

    new_user = User(
        first_name=user.first_name,
        last_name=user.last_name,
        mother_last_name=user.mother_last_name,
        username=user.username,
        email=user.email,
        hashed_password=get_password_hash(user.password),
        phone=user.phone,
        secret_question=user.secret_question,
        secret_answer=user.secret_answer,
    )

    try:
        db.add(new_user)
        db.commit()
        db.refresh(new_user)
    except IntegrityError:
        # Otro registro con el mismo usuario/correo se insertó entre la consulta y el INSERT.
        db.rollback()
        logger.warning(f"Registration failed: duplicate detected on insert for username {user.username}.")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="El usuario o correo ya existe")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error al insertar en la base de datos para {user.username}: {e}", exc_info=True)
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Error al registrar el usuario")

    logger.info(f"User created with ID: {new_user.id} for username: {user.username}")
    return {"message": "Usuario registrado con éxito"}


@router.post("/login", response_model=schemas.LoginResponse)
def login(
    credentials: schemas.LoginRequest,
    db: Session = Depends(get_db),
    tokens: TokenService = Depends(get_tokens),
):
    """Authenticates by username and password and returns a one-hour session token."""
    logger.info(f"Login attempt for user: {credentials.username}")
    user = db.query(User).filter(User.username == credentials.username).first()
    if not user:
        logger.warning(f"Login failed: user {credentials.username} not found.")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=USER_NOT_FOUND)

    if not verify_password(credentials.password, user.hashed_password):
        logger.warning(f"Login failed: wrong password for user_id {user.id}.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Contraseña incorrecta")

    token = tokens.create_session_token(user.id, user.username)
    logger.info(f"Login successful for user_id: {user.id}")
    return {"message": "Inicio de sesión exitoso", "token": token, "username": user.username}


@router.post("/get-secret-question", response_model=schemas.SecretQuestionResponse)
def get_secret_question(request_data: schemas.EmailRequest, db: Session = Depends(get_db)):
    """Returns the secret question registered for an email."""
    if not request_data.email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="El correo es obligatorio")

    user = db.query(User).filter(User.email == request_data.email).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=EMAIL_NOT_FOUND)

    return {"secretQuestion": user.secret_question}


@router.post("/forgot-password", response_model=schemas.MessageResponse)
def forgot_password(
    request_data: schemas.EmailRequest,
    db: Session = Depends(get_db),
    tokens: TokenService = Depends(get_tokens),
    mailer=Depends(get_mailer),
    settings: Settings = Depends(get_settings),
):
    """
    Emails a 15-minute, single-use reset link to the user.
    The token travels only by email; the response never contains it.
    """
    user = None
    if request_data.email:
        user = db.query(User).filter(User.email == request_data.email).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=EMAIL_NOT_FOUND)

    # Copias locales: tras el commit, leer user.* recargaría la fila y retendría
    # una conexión durante el envío SMTP.
    user_id, user_email = user.id, user.email
    token = issue_reset_token(db, tokens, user_id, EMAIL_RESET)
    mailer.send_password_reset(user_email, build_reset_link(settings.frontend_url, token))

    logger.info(f"Reset link sent for user_id: {user_id}")
    return {"message": "Correo enviado con éxito"}


@router.post("/recover-password", response_model=schemas.RecoverPasswordResponse)
def recover_password(
    request_data: schemas.RecoverPasswordRequest,
    db: Session = Depends(get_db),
    tokens: TokenService = Depends(get_tokens),
):
    """
    Checks the secret answer (trimmed, case-insensitive). On success returns a
    15-minute, single-use recovery token required by /reset-password-direct.
    """
    user = (
        db.query(User)
        .filter(User.email == request_data.email, User.secret_question == request_data.secret_question)
        .first()
    )
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Usuario no encontrado o pregunta incorrecta")

    if not secret_answer_matches(user.secret_answer, request_data.secret_answer):
        logger.warning(f"Recovery failed: wrong secret answer for user_id {user.id}.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Respuesta secreta incorrecta")

    user_id = user.id
    recovery_token = issue_reset_token(db, tokens, user_id, RECOVERY)
    logger.info(f"Secret answer verified for user_id: {user_id}")
    return {
        "message": "Respuesta correcta, procede a restablecer la contraseña",
        "recoveryToken": recovery_token,
    }


@router.post("/reset-password/{token}", response_model=schemas.MessageResponse)
def reset_password(
    token: str,
    request_data: schemas.ResetPasswordRequest,
    db: Session = Depends(get_db),
    tokens: TokenService = Depends(get_tokens),
):
    """Sets a new password using the emailed reset token. Each token works once."""
    try:
        payload = tokens.decode(token, EMAIL_RESET)
    except InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_TOKEN)

    hashed_password = get_password_hash(request_data.password)

    if not claim_reset_token(db, payload, EMAIL_RESET):
        logger.warning(f"Reset token {payload['jti']} unknown or already used.")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_TOKEN)

    updated = (
        db.query(User)
        .filter(User.id == payload["id"])
        .update({User.hashed_password: hashed_password}, synchronize_session=False)
    )
    if updated == 0:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=USER_NOT_FOUND)

    db.commit()
    logger.info(f"Password reset (email link) for user_id: {payload['id']}")
    return {"message": PASSWORD_RESET_OK}


@router.post("/reset-password-direct", response_model=schemas.MessageResponse)
def reset_password_direct(
    request_data: schemas.DirectResetPasswordRequest,
    db: Session = Depends(get_db),
    tokens: TokenService = Depends(get_tokens),
):
    """
    Sets a new password after a successful /recover-password. Requires the
    recovery token issued there, bound to the same account, usable once.
    """
    try:
        payload = tokens.decode(request_data.recovery_token, RECOVERY)
    except InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_TOKEN)

    hashed_password = get_password_hash(request_data.password)

    if not claim_reset_token(db, payload, RECOVERY):
        logger.warning(f"Recovery token {payload['jti']} unknown or already used.")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_TOKEN)

    updated = (
        db.query(User)
        .filter(User.id == payload["id"], User.email == request_data.email)
        .update({User.hashed_password: hashed_password}, synchronize_session=False)
    )
    if updated == 0:
        # El token queda sin usar: se revierte también la marca.
        db.rollback()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=USER_NOT_FOUND)

    db.commit()
    logger.info(f"Password reset (secret answer) for user_id: {payload['id']}")
    return {"message": PASSWORD_RESET_OK}


@router.get("/verify", response_model=schemas.TokenPayload)
def verify(token: Optional[str] = None, tokens: TokenService = Depends(get_tokens)):
    """
    Validates a session token (query parameter 'token') and returns its payload.
    """
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_TOKEN)
    try:
        payload = tokens.decode(token, SESSION)
    except InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_TOKEN)

    return {"id": payload["id"], "username": payload.get("username", ""), "exp": payload.get("exp")}


# --- Endpoints de Salud y Métricas ---
monitoring_router = APIRouter(tags=["Monitoring"])


@monitoring_router.get("/metrics")
def metrics():
    """Exposes application metrics for Prometheus."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@monitoring_router.get("/health")
def health_check():
    """Performs a basic health check of the service."""
    return {"status": "ok", "service": "auth_service"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Verifica la conexión y crea las tablas si no existen al iniciar.
    engine = app.state.engine
    check_connection(engine)
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables verified/created.")
    yield
    engine.dispose()
    logger.info("Conexiones a la base de datos cerradas.")


def create_app(settings: Optional[Settings] = None, mailer=None) -> FastAPI:
    """
    Construye la aplicación con sus dependencias explícitas.

    Args:
        settings: configuración; por defecto se lee del entorno.
        mailer: objeto con send_password_reset(to_email, reset_link); por defecto SMTP.
    """
    settings = settings or Settings.from_env()

    app = FastAPI(
        title="Auth Service",
        description="Handles user registration, login and password recovery.",
        version="1.0.0",
        lifespan=lifespan,
    )

    engine = create_engine_for(settings)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.state.tokens = TokenService(
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
        session_minutes=settings.session_token_minutes,
        reset_minutes=settings.reset_token_minutes,
    )
    app.state.mailer = mailer or SmtpMailer(settings)

    # --- Configuración de CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )
    app.middleware("http")(metrics_middleware)

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(MailDeliveryError, mail_exception_handler)

    app.include_router(router)
    app.include_router(monitoring_router)
    return app


def run():
    """Punto de entrada del comando auth-service: escucha en PORT (5000 por defecto)."""
    settings = Settings.from_env()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
