"""Acceso a la base de datos de usuarios (MariaDB/MySQL) usando SQLAlchemy.

El motor y la fábrica de sesiones se crean por aplicación (create_engine_for /
create_session_factory) y viven en app.state; no hay conexión global de módulo.
"""

import logging
from fastapi import Request
from sqlalchemy import create_engine, exc
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import QueuePool

from auth_service.config import Settings

logger = logging.getLogger(__name__)

# Clase base para los modelos declarativos (User, PasswordResetToken).
Base = declarative_base()


def create_engine_for(settings: Settings) -> Engine:
    """
    Crea el motor de SQLAlchemy según la estrategia configurada en DB_POOL_MODE.

    - "pool": pool de DB_POOL_SIZE conexiones (sin overflow), como el pool de 10 conexiones original.
    - "single": una única conexión persistente; las peticiones esperan su turno para usarla.
    """
    if settings.db_pool_mode == "single":
        pool_size = 1
    else:
        pool_size = settings.db_pool_size

    connect_args = {"check_same_thread": False} if settings.is_sqlite else {}

    engine = create_engine(
        settings.database_url,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=0,
        # pool_pre_ping=True ayuda a manejar conexiones inactivas en el pool.
        pool_pre_ping=True,
        connect_args=connect_args,
    )
    logger.info(f"Motor de base de datos creado (modo={settings.db_pool_mode}, conexiones={pool_size}).")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def check_connection(engine: Engine) -> None:
    """Intenta conectar para verificar credenciales y disponibilidad al inicio."""
    try:
        with engine.connect():
            logger.info("Conexión a la base de datos establecida exitosamente.")
    except exc.SQLAlchemyError as e:
        logger.critical(f"Error al conectar con la base de datos: {e}", exc_info=True)
        raise


# --- Función de Dependencia para FastAPI ---
def get_db(request: Request):
    """
    Generador de dependencia de FastAPI para obtener una sesión de base de datos.
    Cualquier excepción de la ruta (incluidas las HTTPException) revierte la
    transacción pendiente; la sesión se cierra siempre.
    """
    db = request.app.state.session_factory()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
