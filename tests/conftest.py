# tests/conftest.py
import pytest
from fastapi.testclient import TestClient

from auth_service.config import Settings
from auth_service.main import create_app
from auth_service.models import User

TEST_SECRET = "clave_secreta_de_pruebas"
FRONTEND_URL = "http://localhost:3000"

USER_PAYLOAD = {
    "firstName": "Karla",
    "lastName": "Pérez",
    "motherLastName": "López",
    "username": "karla",
    "email": "karla@example.com",
    "password": "password123",
    "phone": "5512345678",
    "secretQuestion": "¿Cuál es tu color favorito?",
    "secretAnswer": "blue",
}


class FakeMailer:
    """Guarda los correos en memoria en lugar de enviarlos por SMTP."""

    def __init__(self):
        self.sent = []

    def send_password_reset(self, to_email, reset_link):
        self.sent.append({"to": to_email, "link": reset_link})

    @property
    def last_token(self):
        return self.sent[-1]["link"].rsplit("/", 1)[-1]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'auth.db'}",
        db_pool_mode="single",
        jwt_secret=TEST_SECRET,
        frontend_url=FRONTEND_URL,
        cors_origins=[FRONTEND_URL],
    )


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def app(settings, mailer):
    return create_app(settings, mailer=mailer)


@pytest.fixture
def client(app):
    """Cliente de pruebas; el bloque with ejecuta el lifespan (crea las tablas)."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def tokens(app):
    return app.state.tokens


@pytest.fixture
def find_user(app, client):
    """
    Busca un usuario directamente en la base de datos.
    La sesión se cierra antes de devolver, para no retener la única conexión del modo "single".
    """
    def _find(**filters):
        with app.state.session_factory() as session:
            user = session.query(User).filter_by(**filters).first()
            if user is not None:
                session.expunge(user)
            return user
    return _find


@pytest.fixture
def count_users(app, client):
    def _count(**filters):
        with app.state.session_factory() as session:
            return session.query(User).filter_by(**filters).count()
    return _count


@pytest.fixture
def user_payload():
    return dict(USER_PAYLOAD)


@pytest.fixture
def registered_user(client, user_payload):
    """Registra el usuario de prueba y devuelve el payload usado."""
    r = client.post("/api/register", json=user_payload)
    assert r.status_code == 200, r.text
    return user_payload
