# tests/test_recovery.py
"""Pregunta secreta, enlace por correo y restablecimiento de contraseña."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from auth_service.mailer import MailDeliveryError
from auth_service.models import PasswordResetToken
from auth_service.utils import EMAIL_RESET, RECOVERY, verify_password
from conftest import FRONTEND_URL


def login(client, username, password):
    return client.post("/api/login", json={"username": username, "password": password})


def recover(client, user, answer=None):
    return client.post("/api/recover-password", json={
        "email": user["email"],
        "secretQuestion": user["secretQuestion"],
        "secretAnswer": answer if answer is not None else user["secretAnswer"],
    })


# --- Pregunta secreta ---

def test_get_secret_question(client, registered_user):
    r = client.post("/api/get-secret-question", json={"email": registered_user["email"]})

    assert r.status_code == 200
    assert r.json() == {"secretQuestion": registered_user["secretQuestion"]}


@pytest.mark.parametrize("body", [{}, {"email": ""}, {"email": None}])
def test_get_secret_question_requires_email(client, body):
    r = client.post("/api/get-secret-question", json=body)

    assert r.status_code == 400
    assert r.json() == {"message": "El correo es obligatorio"}


def test_get_secret_question_unknown_email(client):
    r = client.post("/api/get-secret-question", json={"email": "nadie@example.com"})

    assert r.status_code == 404


# --- Enlace por correo ---

def test_forgot_password_emails_link_and_hides_token(client, registered_user, mailer):
    r = client.post("/api/forgot-password", json={"email": registered_user["email"]})

    assert r.status_code == 200
    assert r.json() == {"message": "Correo enviado con éxito"}
    assert len(mailer.sent) == 1
    assert mailer.sent[0]["to"] == registered_user["email"]
    assert mailer.sent[0]["link"].startswith(f"{FRONTEND_URL}/reset-password/")
    assert mailer.last_token not in r.text


def test_forgot_password_unknown_email(client, mailer):
    r = client.post("/api/forgot-password", json={"email": "nadie@example.com"})

    assert r.status_code == 404
    assert r.json() == {"message": "Correo no encontrado"}
    assert mailer.sent == []


def test_forgot_password_mail_failure_is_server_error(app, client, registered_user):
    class FailingMailer:
        def send_password_reset(self, to_email, reset_link):
            raise MailDeliveryError("smtp down")

    app.state.mailer = FailingMailer()
    r = client.post("/api/forgot-password", json={"email": registered_user["email"]})

    assert r.status_code == 500
    assert r.json() == {"message": "Error en el servidor"}


def test_reset_password_with_emailed_token(client, registered_user, mailer, find_user):
    client.post("/api/forgot-password", json={"email": registered_user["email"]})

    r = client.post(f"/api/reset-password/{mailer.last_token}", json={"password": "nueva_clave"})

    assert r.status_code == 200
    assert r.json() == {"message": "Contraseña restablecida con éxito"}
    user = find_user(email=registered_user["email"])
    assert user.hashed_password != "nueva_clave"
    assert verify_password("nueva_clave", user.hashed_password)
    assert login(client, registered_user["username"], "nueva_clave").status_code == 200
    assert login(client, registered_user["username"], registered_user["password"]).status_code == 401


def test_reset_token_is_single_use(client, registered_user, mailer):
    client.post("/api/forgot-password", json={"email": registered_user["email"]})
    token = mailer.last_token

    assert client.post(f"/api/reset-password/{token}", json={"password": "primera"}).status_code == 200

    r = client.post(f"/api/reset-password/{token}", json={"password": "segunda"})
    assert r.status_code == 400
    assert r.json() == {"message": "Token inválido o expirado"}
    assert login(client, registered_user["username"], "primera").status_code == 200


def test_reset_token_older_than_fifteen_minutes_is_rejected(client, registered_user, tokens, find_user):
    user = find_user(email=registered_user["email"])
    issued = datetime.now(timezone.utc) - timedelta(minutes=16)
    token, _ = tokens.create_reset_token(user.id, EMAIL_RESET, "expired-jti", now=issued)

    r = client.post(f"/api/reset-password/{token}", json={"password": "nueva_clave"})

    assert r.status_code == 400
    assert r.json() == {"message": "Token inválido o expirado"}


@pytest.mark.parametrize("token", ["no-es-un-jwt", "a.b.c"])
def test_reset_password_rejects_garbage_token(client, token):
    r = client.post(f"/api/reset-password/{token}", json={"password": "nueva_clave"})

    assert r.status_code == 400


def test_reset_token_without_issued_record_is_rejected(client, registered_user, tokens, find_user):
    """Un JWT bien firmado cuyo jti nunca se registró no sirve."""
    user = find_user(email=registered_user["email"])
    token, _ = tokens.create_reset_token(user.id, EMAIL_RESET, "never-issued")

    r = client.post(f"/api/reset-password/{token}", json={"password": "nueva_clave"})

    assert r.status_code == 400


def test_recovery_token_does_not_work_as_email_link(client, registered_user):
    recovery_token = recover(client, registered_user).json()["recoveryToken"]

    r = client.post(f"/api/reset-password/{recovery_token}", json={"password": "nueva_clave"})

    assert r.status_code == 400


# --- Pregunta secreta + restablecimiento directo ---

@pytest.mark.parametrize("answer", ["blue", "Blue ", "  BLUE", "bLuE\t"])
def test_secret_answer_ignores_case_and_surrounding_spaces(client, registered_user, answer):
    r = recover(client, registered_user, answer=answer)

    assert r.status_code == 200
    body = r.json()
    assert body["message"] == "Respuesta correcta, procede a restablecer la contraseña"
    assert body["recoveryToken"]


@pytest.mark.parametrize("answer", ["red", "b lue", "blues"])
def test_wrong_secret_answer_is_unauthorized(client, registered_user, answer):
    r = recover(client, registered_user, answer=answer)

    assert r.status_code == 401
    assert r.json() == {"message": "Respuesta secreta incorrecta"}


def test_recover_password_with_wrong_question(client, registered_user):
    r = client.post("/api/recover-password", json={
        "email": registered_user["email"],
        "secretQuestion": "¿Nombre de tu mascota?",
        "secretAnswer": registered_user["secretAnswer"],
    })

    assert r.status_code == 404


def test_direct_reset_after_secret_answer(client, registered_user, tokens):
    recovery_token = recover(client, registered_user).json()["recoveryToken"]
    assert tokens.decode(recovery_token, RECOVERY)["jti"]

    r = client.post("/api/reset-password-direct", json={
        "email": registered_user["email"],
        "password": "nueva_clave",
        "recoveryToken": recovery_token,
    })

    assert r.status_code == 200
    assert login(client, registered_user["username"], "nueva_clave").status_code == 200


def test_direct_reset_requires_recovery_token(client, registered_user):
    """Sin verificar la respuesta secreta no se puede cambiar la contraseña de nadie."""
    r = client.post("/api/reset-password-direct", json={
        "email": registered_user["email"],
        "password": "robada",
    })

    assert r.status_code == 400
    assert login(client, registered_user["username"], "robada").status_code == 401
    assert login(client, registered_user["username"], registered_user["password"]).status_code == 200


def test_direct_reset_rejects_emailed_token(client, registered_user, mailer):
    client.post("/api/forgot-password", json={"email": registered_user["email"]})

    r = client.post("/api/reset-password-direct", json={
        "email": registered_user["email"],
        "password": "nueva_clave",
        "recoveryToken": mailer.last_token,
    })

    assert r.status_code == 400


def test_recovery_token_is_single_use(client, registered_user):
    recovery_token = recover(client, registered_user).json()["recoveryToken"]
    body = {"email": registered_user["email"], "password": "primera", "recoveryToken": recovery_token}

    assert client.post("/api/reset-password-direct", json=body).status_code == 200
    r = client.post("/api/reset-password-direct", json={**body, "password": "segunda"})

    assert r.status_code == 400
    assert login(client, registered_user["username"], "primera").status_code == 200


def test_recovery_token_bound_to_its_account(client, registered_user, user_payload):
    other = {**user_payload, "username": "otro", "email": "otro@example.com"}
    assert client.post("/api/register", json=other).status_code == 200
    recovery_token = recover(client, registered_user).json()["recoveryToken"]

    r = client.post("/api/reset-password-direct", json={
        "email": other["email"],
        "password": "robada",
        "recoveryToken": recovery_token,
    })

    assert r.status_code == 404
    assert r.json() == {"message": "Usuario no encontrado"}
    assert login(client, "otro", "robada").status_code == 401

    # El intento fallido no consume el token.
    r = client.post("/api/reset-password-direct", json={
        "email": registered_user["email"],
        "password": "nueva_clave",
        "recoveryToken": recovery_token,
    })
    assert r.status_code == 200


def test_database_failure_is_server_error(app, client):
    broken_engine = create_engine("sqlite:////nonexistent-dir/auth.db")
    app.state.session_factory = sessionmaker(bind=broken_engine)

    r = client.post("/api/get-secret-question", json={"email": "karla@example.com"})

    assert r.status_code == 500
    assert r.json() == {"message": "Error en el servidor"}


def test_emailed_reset_rejects_password_with_nul(client, registered_user, mailer):
    client.post("/api/forgot-password", json={"email": registered_user["email"]})
    token = mailer.last_token

    r = client.post(f"/api/reset-password/{token}", json={"password": "a\u0000b"})
    assert r.status_code == 400

    # El token sigue disponible para un intento válido.
    assert client.post(f"/api/reset-password/{token}", json={"password": "nueva_clave"}).status_code == 200


def test_direct_reset_rejects_password_with_nul(client, registered_user):
    recovery_token = recover(client, registered_user).json()["recoveryToken"]
    body = {"email": registered_user["email"], "password": "a\u0000b", "recoveryToken": recovery_token}

    assert client.post("/api/reset-password-direct", json=body).status_code == 400
    assert client.post("/api/reset-password-direct", json={**body, "password": "nueva_clave"}).status_code == 200


def test_issuing_a_token_prunes_expired_and_used_records(app, client, registered_user, mailer, tokens, find_user):
    user = find_user(email=registered_user["email"])
    with app.state.session_factory() as session:
        session.add(PasswordResetToken(
            id="old-expired",
            user_id=user.id,
            purpose=EMAIL_RESET,
            expires_at=datetime.now(timezone.utc) - timedelta(hours=1),
        ))
        session.commit()

    client.post("/api/forgot-password", json={"email": registered_user["email"]})
    used = mailer.last_token
    assert client.post(f"/api/reset-password/{used}", json={"password": "nueva_clave"}).status_code == 200

    client.post("/api/forgot-password", json={"email": registered_user["email"]})

    with app.state.session_factory() as session:
        remaining = [row.id for row in session.query(PasswordResetToken).filter_by(user_id=user.id)]
    assert remaining == [tokens.decode(mailer.last_token, EMAIL_RESET)["jti"]]


def test_forgot_password_sends_mail_without_holding_a_connection(app, client, registered_user):
    """En modo "single" la única conexión debe estar libre mientras se envía el correo."""
    checked_out = []

    class PoolWatchingMailer:
        def send_password_reset(self, to_email, reset_link):
            checked_out.append(app.state.engine.pool.checkedout())

    app.state.mailer = PoolWatchingMailer()
    r = client.post("/api/forgot-password", json={"email": registered_user["email"]})

    assert r.status_code == 200
    assert checked_out == [0]
