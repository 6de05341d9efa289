"""
auth/notify.py -- Outbound notifications (verification codes, password-change notices).

The auth core only depends on the Notifier protocol: send_code() and
send_password_changed() return True on success and False on failure and never
raise. Two implementations:

  SmtpNotifier -- smtplib with STARTTLS, used when SMTP_HOST is configured.
  LogNotifier  -- development fallback; logs that a message would have been
                  sent. The code itself is never logged.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.text import MIMEText
from typing import Protocol

from core.config import Settings, get_settings

logger = logging.getLogger("minimarket.auth.notify")


class Notifier(Protocol):
    def send_code(self, destination: str, code: str) -> bool: ...

    def send_password_changed(self, destination: str) -> bool: ...


def redact_email(email: str) -> str:
    """Return a log-safe form of an address, e.g. ju***@tienda.pe."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class LogNotifier:
    def send_code(self, destination: str, code: str) -> bool:
        logger.info("Verification code issued for %s (dev mode, not sent)", redact_email(destination))
        return True

    def send_password_changed(self, destination: str) -> bool:
        logger.info("Password-change notice for %s (dev mode, not sent)", redact_email(destination))
        return True


class SmtpNotifier:
    def __init__(self, settings: Settings) -> None:
        self._cfg = settings

    def _send(self, to_email: str, subject: str, body: str) -> bool:
        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self._cfg.mail_from or self._cfg.smtp_user
        msg["To"] = to_email
        try:
            with smtplib.SMTP(self._cfg.smtp_host, self._cfg.smtp_port, timeout=10) as server:
                if self._cfg.smtp_use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self._cfg.smtp_user:
                    server.login(self._cfg.smtp_user, self._cfg.smtp_password)
                server.sendmail(msg["From"], [to_email], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email to %s failed: %s", redact_email(to_email), exc)
            return False
        logger.info("Email '%s' sent to %s", subject, redact_email(to_email))
        return True

    def send_code(self, destination: str, code: str) -> bool:
        minutes = max(1, self._cfg.passcode_expire_seconds // 60)
        body = f"Tu código de verificación es: {code}\n\nEl código vence en {minutes} minutos."
        return self._send(destination, "Código de verificación", body)

    def send_password_changed(self, destination: str) -> bool:
        body = (
            "Se ha actualizado la contraseña de tu cuenta. "
            "Si no fuiste tú, contacta con soporte inmediatamente."
        )
        return self._send(destination, "Tu contraseña ha sido actualizada", body)


def build_notifier(settings: Settings | None = None) -> Notifier:
    cfg = settings or get_settings()
    if cfg.smtp_host:
        return SmtpNotifier(cfg)
    logger.warning("SMTP_HOST not set -- verification codes will be logged, not emailed")
    return LogNotifier()
