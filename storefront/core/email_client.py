"""
Outgoing mail for order receipts.

NotificationService renders each receipt (the customer copy and one copy
per active admin) and hands the parts to `send_email`. This module turns
them into a multipart message from the store's sender address and delivers
it with the SMTP_* settings:

    SMTP_HOST=smtp.example.com
    SMTP_PORT=465
    SMTP_USERNAME=orders@example.com
    SMTP_PASSWORD=<app password>
    SMTP_FROM_EMAIL=orders@example.com   # defaults to SMTP_USERNAME
    SMTP_REPLY_TO=support@example.com    # optional
    SMTP_USE_SSL=true                    # else STARTTLS when SMTP_USE_TLS
"""
import logging
import smtplib
from contextlib import contextmanager
from email.message import EmailMessage
from email.utils import formataddr, formatdate, make_msgid
from typing import Iterator

from storefront.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


def is_configured() -> bool:
    return bool(settings.SMTP_HOST and settings.SMTP_USERNAME and settings.SMTP_PASSWORD)


def sender_address() -> str:
    email = settings.SMTP_FROM_EMAIL or settings.SMTP_USERNAME or ""
    return formataddr((settings.SMTP_FROM_NAME or settings.BRAND_NAME, email))


def build_message(
    to_email: str,
    subject: str,
    text_body: str,
    html_body: str | None = None,
) -> EmailMessage:
    """
    Plain text receipt, with the HTML rendering as an alternative part
    when there is one.
    """
    sender = settings.SMTP_FROM_EMAIL or settings.SMTP_USERNAME or ""
    msg = EmailMessage()
    msg["From"] = sender_address()
    msg["To"] = to_email
    msg["Subject"] = subject
    msg["Date"] = formatdate(usegmt=True)
    msg["Message-ID"] = make_msgid(domain=sender.rpartition("@")[2] or None)
    if settings.SMTP_REPLY_TO:
        msg["Reply-To"] = settings.SMTP_REPLY_TO
    msg.set_content(text_body)
    if html_body:
        msg.add_alternative(html_body, subtype="html")
    return msg


@contextmanager
def smtp_connection() -> Iterator[smtplib.SMTP]:
    """
    Logged-in SMTP session. SMTP_SSL when SMTP_USE_SSL (port 465), else
    plain SMTP upgraded with STARTTLS when SMTP_USE_TLS (port 587).
    """
    if settings.SMTP_USE_SSL:
        server: smtplib.SMTP = smtplib.SMTP_SSL(
            settings.SMTP_HOST, settings.SMTP_PORT, timeout=settings.SMTP_TIMEOUT_SECONDS
        )
    else:
        server = smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=settings.SMTP_TIMEOUT_SECONDS)
    try:
        if settings.SMTP_USE_TLS and not settings.SMTP_USE_SSL:
            server.starttls()
        server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        yield server
    finally:
        try:
            server.quit()
        except smtplib.SMTPException as e:
            logger.debug("SMTP quit failed: %s", e)


def send_email(
    to_email: str,
    subject: str,
    text_body: str,
    html_body: str | None = None,
) -> None:
    """
    Deliver one message to one recipient.

    Raises
    ------
    RuntimeError:
        SMTP_HOST, SMTP_USERNAME or SMTP_PASSWORD is missing.
    smtplib.SMTPException:
        The connection, login or send failed; NotificationService retries.
    """
    if not is_configured():
        raise RuntimeError("SMTP is not configured (set SMTP_HOST, SMTP_USERNAME and SMTP_PASSWORD)")

    msg = build_message(to_email, subject, text_body, html_body)
    with smtp_connection() as server:
        server.send_message(msg)
    logger.info("Email sent: %s", subject)
