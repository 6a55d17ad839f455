"""SMTP delivery for billing notices.

``send_email`` never raises: a failed delivery is logged and reported as
``False`` so a reminder sweep carries on with the next subscription.
"""
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from app.config import settings

logger = logging.getLogger(__name__)


def _get_smtp_config() -> dict:
    return {
        "host": settings.smtp_host,
        "port": settings.smtp_port,
        "username": settings.smtp_username or None,
        "password": settings.smtp_password or None,
        "use_tls": settings.smtp_use_tls,
        "from_email": settings.smtp_from_email,
        "from_name": settings.smtp_from_name,
    }


def _build_message(
    config: dict, to_email: str, subject: str, body_html: str, body_text: str | None
) -> MIMEMultipart:
    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = f"{config['from_name']} <{config['from_email']}>"
    message["To"] = to_email
    # Plain part first, HTML last.
    if body_text:
        message.attach(MIMEText(body_text, "plain"))
    message.attach(MIMEText(body_html, "html"))
    return message


def _deliver(config: dict, to_email: str, message: MIMEMultipart) -> None:
    server = smtplib.SMTP(config["host"], config["port"])
    if config["use_tls"]:
        server.starttls()
    if config["username"] and config["password"]:
        server.login(config["username"], config["password"])
    server.sendmail(config["from_email"], to_email, message.as_string())
    server.quit()


def send_email(
    to_email: str,
    subject: str,
    body_html: str,
    body_text: str | None = None,
) -> bool:
    config = _get_smtp_config()
    message = _build_message(config, to_email, subject, body_html, body_text)
    try:
        _deliver(config, to_email, message)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Failed to send email to %s: %s", to_email, exc)
        return False
    logger.info("Email sent to %s", to_email)
    return True
