"""Notification service (Mailgun/SendGrid email) for one-time sign-in links."""
import logging

import httpx

from app.config import get_settings
from app.services.audit_log import mask_email

log = logging.getLogger("uvicorn.error")

MAILGUN_US_BASE = "https://api.mailgun.net"
MAILGUN_EU_BASE = "https://api.eu.mailgun.net"


def send_email(to_email: str, subject: str, html_content: str, text_content: str | None = None) -> bool:
    """Send email via Mailgun (preferred) or SendGrid. Returns True if sent."""
    settings = get_settings()
    if settings.mailgun_api_key and settings.mailgun_domain:
        return _send_email_mailgun(to_email, subject, html_content, text_content=text_content, settings=settings)
    if settings.sendgrid_api_key:
        return _send_email_sendgrid(to_email, subject, html_content, text_content=text_content, settings=settings)
    log.warning(
        "[Email] NOT SENT: to=%s subject=%s. Set MAILGUN_API_KEY and MAILGUN_DOMAIN (or SENDGRID_API_KEY) in .env.",
        mask_email(to_email), subject,
    )
    return False


def _send_email_mailgun(to_email: str, subject: str, html_content: str, text_content: str | None = None, settings=None) -> bool:
    if settings is None:
        settings = get_settings()
    base = (settings.mailgun_base_url or MAILGUN_US_BASE).strip().rstrip("/")
    domain = (settings.mailgun_domain or "").strip().lower()
    from_addr = (settings.mailgun_from_email or "").strip()
    from_domain = from_addr.split("@")[-1].lower() if "@" in from_addr else ""
    if domain and from_domain != domain:
        # Mailgun only delivers when the sender matches the sending domain
        from_addr = f"noreply@{domain}"
    data = {
        "from": f"{settings.mailgun_from_name} <{from_addr}>",
        "to": to_email,
        "subject": subject,
        "text": text_content or "",
        "html": html_content or "",
    }
    try:
        with httpx.Client(timeout=10.0) as client:
            r = client.post(f"{base}/v3/{domain}/messages", auth=("api", settings.mailgun_api_key), data=data)
            if 200 <= r.status_code < 300:
                log.info("[Mailgun] sent: to=%s status=%s", mask_email(to_email), r.status_code)
                return True
            if r.status_code == 401 and base == MAILGUN_US_BASE:
                log.info("[Mailgun] 401 with US endpoint. Retrying with EU endpoint...")
                r2 = client.post(
                    f"{MAILGUN_EU_BASE}/v3/{domain}/messages", auth=("api", settings.mailgun_api_key), data=data
                )
                if 200 <= r2.status_code < 300:
                    return True
                log.error("[Mailgun] EU request failed: status=%s body=%s", r2.status_code, r2.text[:500])
                return False
            log.error("[Mailgun] API failed: status=%s to=%s body=%s", r.status_code, mask_email(to_email), r.text[:500])
            return False
    except httpx.HTTPError as e:
        log.error("[Mailgun] Exception: to=%s error=%s: %s", mask_email(to_email), type(e).__name__, e)
        return False


def _send_email_sendgrid(to_email: str, subject: str, html_content: str, text_content: str | None = None, settings=None) -> bool:
    if settings is None:
        settings = get_settings()
    from sendgrid import SendGridAPIClient
    from sendgrid.helpers.mail import Mail

    message = Mail(
        from_email=(settings.sendgrid_from_email, settings.sendgrid_from_name),
        to_emails=to_email,
        subject=subject,
        html_content=html_content,
        plain_text_content=text_content or "",
    )
    try:
        SendGridAPIClient(settings.sendgrid_api_key).send(message)
    except Exception as e:  # sendgrid raises python_http_client errors and urllib errors
        log.error("[SendGrid] send failed: to=%s error=%s", mask_email(to_email), e)
        return False
    return True


def send_magic_link_email(to_email: str, link: str, expires_minutes: int | None = None) -> bool:
    """Send a one-time sign-in link."""
    settings = get_settings()
    minutes = expires_minutes or settings.magic_link_expire_minutes
    subject = f"[{settings.app_name}] Your sign-in link"
    text = (
        f"Your payment is confirmed. Sign in with this link: {link}\n"
        f"It works once and expires in {minutes} minutes. If it has expired, request a new one from the sign-in page."
    )
    html = f"""
    <p>Hello,</p>
    <p>Your payment is confirmed. Click below to sign in to your premium account:</p>
    <p><a href="{link}">Sign in to {settings.app_name}</a></p>
    <p>This link works once and expires in {minutes} minutes.</p>
    <p>- {settings.app_name}</p>
    """
    return send_email(to_email, subject, html, text_content=text)
