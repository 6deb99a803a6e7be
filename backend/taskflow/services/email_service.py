"""
Email Service for project invitation notifications.
Uses SMTP to send emails.
"""
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from datetime import datetime
from typing import Tuple
import logging

from ..core.settings import settings

logger = logging.getLogger(__name__)

ROLE_DESCRIPTIONS = {
    "collaborator": "Create and edit all tasks and project details",
    "member": "View and edit the tasks you created or are assigned to",
    "viewer": "Read-only access to the project",
}


def invitation_link(token: str) -> str:
    return f"{settings.APP_URL.rstrip('/')}/invite/{token}"


def send_project_invitation_email(
    to_email: str,
    project_name: str,
    inviter_name: str,
    role: str,
    token: str,
    expires_at: datetime,
) -> Tuple[bool, str]:
    """
    Send a project invitation email.
    Returns (success, message).
    """
    link = invitation_link(token)
    expiry = expires_at.strftime("%d %B %Y %H:%M UTC")

    if not settings.SMTP_USER or not settings.SMTP_PASSWORD:
        logger.warning("SMTP not configured. Invitation to %s for project %r not emailed", to_email, project_name)
        return True, "Email sending simulated (SMTP not configured)."

    from_email = settings.SMTP_FROM_EMAIL or settings.SMTP_USER
    role_description = ROLE_DESCRIPTIONS.get(role, "")

    try:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"{inviter_name} invited you to {project_name}"
        msg["From"] = f"{settings.SMTP_FROM_NAME} <{from_email}>"
        msg["To"] = to_email

        text_content = f"""
Hello,

{inviter_name} invited you to join the project "{project_name}" as {role}.
{role_description}

Accept the invitation:
{link}

This invitation expires on {expiry}.

If you were not expecting this invitation, you can ignore this email.

{settings.SMTP_FROM_NAME}
"""

        html_content = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
        .header {{ background-color: #7C3AED; color: white; padding: 20px; text-align: center; border-radius: 8px 8px 0 0; }}
        .content {{ background: #f9fafb; padding: 30px; border: 1px solid #e5e7eb; }}
        .role {{ display: inline-block; background-color: #EDE9FE; color: #7C3AED; padding: 6px 12px; border-radius: 20px; font-weight: bold; }}
        .button {{ display: inline-block; padding: 14px 28px; background-color: #7C3AED; color: white; text-decoration: none; border-radius: 5px; margin: 20px 0; font-weight: bold; }}
        .footer {{ text-align: center; color: #6b7280; font-size: 12px; padding: 20px; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h1>Project invitation</h1>
        </div>
        <div class="content">
            <p><strong>{inviter_name}</strong> invited you to join <strong>{project_name}</strong>.</p>
            <p>Role: <span class="role">{role}</span></p>
            <p>{role_description}</p>
            <p><a class="button" href="{link}">Accept invitation</a></p>
            <p>This invitation expires on <strong>{expiry}</strong>.</p>
        </div>
        <div class="footer">
            <p>{settings.SMTP_FROM_NAME}</p>
        </div>
    </div>
</body>
</html>
"""

        msg.attach(MIMEText(text_content, "plain"))
        msg.attach(MIMEText(html_content, "html"))

        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT) as server:
            server.starttls()
            server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
            server.sendmail(from_email, to_email, msg.as_string())

        logger.info("Invitation email sent to %s", to_email)
        return True, "Invitation email sent."

    except smtplib.SMTPAuthenticationError:
        logger.error("SMTP authentication failed")
        return False, "Email service configuration error."
    except (smtplib.SMTPException, OSError) as e:
        logger.error("SMTP error: %s", str(e))
        return False, f"Failed to send email: {str(e)}"
    except Exception as e:
        logger.exception("Unexpected error sending invitation email")
        return False, f"Failed to send email: {str(e)}"
