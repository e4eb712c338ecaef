import smtplib
from email.message import EmailMessage

from flask import current_app

from utils.logger import get_logger

logger = get_logger(__name__)


def send_email(to_email: str, subject: str, body: str):
    """Returns (ok, error)."""
    host = current_app.config.get("SMTP_HOST")
    port = current_app.config.get("SMTP_PORT", 587)
    username = current_app.config.get("SMTP_USERNAME")
    password = current_app.config.get("SMTP_PASSWORD")
    from_email = current_app.config.get("SMTP_FROM_EMAIL") or username
    use_tls = current_app.config.get("SMTP_USE_TLS", True)

    if not host or not from_email:
        return False, "Email not configured"

    msg = EmailMessage()
    msg["From"] = from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    try:
        with smtplib.SMTP(host, port, timeout=10) as server:
            if use_tls:
                server.starttls()
            if username and password:
                server.login(username, password)
            server.send_message(msg)
        return True, None
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("email_send_failed", subject=subject, error=str(exc))
        return False, str(exc)


def verification_code_message(code: str, ttl_seconds: int):
    minutes = max(1, ttl_seconds // 60)
    return (
        "Your verification code",
        f"Your verification code is {code}.\n"
        f"It expires in {minutes} minutes. If you did not try to sign in, change your password.",
    )


def account_locked_message(account: str, ip, attempts: int, duration_minutes: int):
    return (
        "Account locked",
        f"Account {account} was locked after {attempts} failed login attempts "
        f"from {ip or 'an unknown address'}.\n"
        f"The lock lifts automatically in {duration_minutes} minutes.",
    )
