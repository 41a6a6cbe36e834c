"""
Email Service

Envía el correo con el enlace de restablecimiento de contraseña vía SMTP (Gmail por defecto).
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from auth_service.config import Settings

logger = logging.getLogger(__name__)

RESET_SUBJECT = "Recuperación de contraseña"


class MailDeliveryError(Exception):
    """No se pudo entregar el correo al servidor SMTP."""


def build_reset_link(frontend_url: str, token: str) -> str:
    return f"{frontend_url}/reset-password/{token}"


class SmtpMailer:
    """Cliente SMTP con STARTTLS; las credenciales salen de GMAIL_USER/GMAIL_PASS."""

    def __init__(self, settings: Settings):
        self.server = settings.smtp_server
        self.port = settings.smtp_port
        self.sender_email = settings.gmail_user
        self.sender_password = settings.gmail_pass
        self.sender_name = settings.mail_from_name

    def send_password_reset(self, to_email: str, reset_link: str) -> None:
        """
        Envía el enlace de restablecimiento.

        Raises:
            MailDeliveryError: credenciales ausentes o fallo SMTP/de red.
        """
        if not self.sender_email or not self.sender_password:
            logger.error("Email credentials not configured. Set GMAIL_USER and GMAIL_PASS environment variables.")
            raise MailDeliveryError("SMTP credentials not configured")

        message = MIMEMultipart()
        message["From"] = f'"{self.sender_name}" <{self.sender_email}>'
        message["To"] = to_email
        message["Subject"] = RESET_SUBJECT

        body = f"""<p>Para restablecer tu contraseña, haz clic en el siguiente enlace:</p>
<a href="{reset_link}">{reset_link}</a>"""
        message.attach(MIMEText(body, "html"))

        try:
            with smtplib.SMTP(self.server, self.port) as server:
                server.starttls()
                server.login(self.sender_email, self.sender_password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP error sending password reset email to {to_email}: {e}")
            raise MailDeliveryError(str(e)) from e

        logger.info(f"Password reset email sent to {to_email}")
