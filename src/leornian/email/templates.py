"""
Transactional email templates.

Each template function returns (subject, html_body, text_body). Markup uses
inline styles only; user-supplied values are HTML-escaped.
"""

from __future__ import annotations

from html import escape

APP_NAME = "Leornian"

GREEN = "#2F9E6E"
INK = "#1F2933"
MUTED = "#52606D"
PAPER = "#F5F7FA"
RULE = "#E4E7EB"


def _layout(heading: str, body_html: str) -> str:
    """Wrap a card body in the shared page shell."""
    return f"""\
<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"><title>{APP_NAME}</title></head>
<body style="margin: 0; padding: 32px 16px; background-color: {PAPER}; font-family: Helvetica, Arial, sans-serif;">
    <div style="max-width: 560px; margin: 0 auto; background: #FFFFFF;
        border: 1px solid {RULE}; border-radius: 10px; padding: 32px;">
        <p style="color: {GREEN}; font-size: 20px; font-weight: 700; margin: 0 0 24px 0;">{APP_NAME}</p>
        <h1 style="color: {INK}; font-size: 22px; margin: 0 0 16px 0;">{heading}</h1>
        {body_html}
    </div>
    <p style="max-width: 560px; margin: 16px auto 0; color: {MUTED}; font-size: 12px; text-align: center;">
        You received this email because of activity on your {APP_NAME} account.
    </p>
</body>
</html>"""


def _paragraph(text: str) -> str:
    return f'<p style="color: {MUTED}; font-size: 15px; line-height: 1.6; margin: 0 0 16px 0;">{text}</p>'


def _action(url: str, label: str) -> str:
    """Call-to-action link plus the raw URL as a fallback."""
    safe_url = escape(url, quote=True)
    return (
        f'<p style="margin: 24px 0;"><a href="{safe_url}" style="background-color: {GREEN}; color: #FFFFFF; '
        f'padding: 12px 24px; border-radius: 6px; text-decoration: none; font-weight: 600;">{label}</a></p>'
        f'<p style="color: {MUTED}; font-size: 12px; word-break: break-all; margin: 0;">{safe_url}</p>'
    )


def _greeting(name: str | None) -> str:
    return f"Hi {escape(name or 'there')},"


def verify_email(name: str | None, verify_url: str, expires_hours: int = 24) -> tuple[str, str, str]:
    """
    E-mail address verification, sent on registration and on resend.

    Returns:
        (subject, html_body, text_body)
    """
    subject = f"Verify your {APP_NAME} email address"
    html_body = _layout(
        "Confirm your email",
        _paragraph(_greeting(name))
        + _paragraph("Confirm this address to finish setting up your account and start messaging your coach.")
        + _action(verify_url, "Verify email")
        + _paragraph(f"The link expires in {expires_hours} hours."),
    )
    text_body = (
        f"{_greeting(name)}\n\n"
        f"Confirm your email address by opening this link:\n\n{verify_url}\n\n"
        f"The link expires in {expires_hours} hours.\n\n"
        f"-- {APP_NAME}"
    )
    return subject, html_body, text_body


def password_reset(name: str | None, reset_url: str, expires_minutes: int = 60) -> tuple[str, str, str]:
    """
    Password reset link.

    Returns:
        (subject, html_body, text_body)
    """
    subject = f"Reset your {APP_NAME} password"
    html_body = _layout(
        "Reset your password",
        _paragraph(_greeting(name))
        + _paragraph("Someone asked to reset the password for this account. If it was you, choose a new one below.")
        + _action(reset_url, "Choose a new password")
        + _paragraph(f"The link expires in {expires_minutes} minutes. If you did not ask for this, ignore it."),
    )
    text_body = (
        f"{_greeting(name)}\n\n"
        f"Reset your password with this link:\n\n{reset_url}\n\n"
        f"The link expires in {expires_minutes} minutes. "
        f"If you did not request a reset, your password stays the same.\n\n"
        f"-- {APP_NAME}"
    )
    return subject, html_body, text_body


def password_changed(name: str | None) -> tuple[str, str, str]:
    """Notification after a successful password change or reset."""
    subject = f"Your {APP_NAME} password was changed"
    html_body = _layout(
        "Password changed",
        _paragraph(_greeting(name))
        + _paragraph("The password for your account was just changed and every other session was signed out.")
        + _paragraph("If this was not you, reset your password right away and contact support."),
    )
    text_body = (
        f"{_greeting(name)}\n\n"
        f"The password for your account was just changed and every other session was signed out.\n\n"
        f"If this was not you, reset your password right away and contact support.\n\n"
        f"-- {APP_NAME}"
    )
    return subject, html_body, text_body


def welcome(name: str | None, app_url: str) -> tuple[str, str, str]:
    """Sent once, after the address is confirmed."""
    subject = f"Welcome to {APP_NAME}"
    html_body = _layout(
        "You're all set",
        _paragraph(_greeting(name))
        + _paragraph("Your email is confirmed. Your coach can now reach you, and you can message them any time.")
        + _action(app_url, f"Open {APP_NAME}"),
    )
    text_body = (
        f"{_greeting(name)}\n\n"
        f"Your email is confirmed. Open {APP_NAME} here:\n\n{app_url}\n\n"
        f"-- {APP_NAME}"
    )
    return subject, html_body, text_body
