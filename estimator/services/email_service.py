"""
Email service for sending estimates to customers.
Uses Flask-Mail for SMTP integration with UTF-8 support.
"""
import logging
from typing import Optional

from flask import current_app
from flask_mail import Mail, Message

from estimator.models import Customer, Estimate

logger = logging.getLogger(__name__)

mail = Mail()


def init_mail(app):
    """Initialize Flask-Mail with app."""
    mail.init_app(app)


def _mail_enabled() -> bool:
    """
    Check if mail is properly configured and enabled.
    Prevents errors in dev or misconfigured environments.
    """
    cfg = current_app.config
    return bool(
        not cfg.get("MAIL_SUPPRESS_SEND", False)
        and cfg.get("MAIL_SERVER")
        and cfg.get("MAIL_USERNAME")
    )


def send_estimate_email(estimate: Estimate, customer: Optional[Customer], pdf_bytes: bytes) -> bool:
    """
    Email an estimate PDF to the customer's contact address.

    Returns:
        True if sent (or mail is disabled), False if it could not be sent
    """
    to_email = customer.contactemail if customer else None
    if not to_email:
        logger.warning(f"[EMAIL] Estimate {estimate.estimateid} has no customer email, not sent")
        return False

    try:
        if not _mail_enabled():
            logger.warning(f"[MAIL DISABLED] Estimate email skipped for {to_email}")
            return True

        business = current_app.config.get('BUSINESS_NAME', '')
        subject = f"Estimate {estimate.estimateid} - {estimate.projectname}"
        text_body = f"""
Hello {customer.customername},

Please find attached estimate {estimate.estimateid} for {estimate.projectname}.
Total: ${estimate.grandtotal:,.2f}

{business}
"""

        msg = Message(subject=subject, recipients=[to_email], body=text_body)
        msg.attach(f"{estimate.estimateid}.pdf", 'application/pdf', pdf_bytes)

        logger.info(f"[EMAIL] Sending estimate {estimate.estimateid} to {to_email}...")
        mail.send(msg)
        logger.info(f"[EMAIL] ✓ Estimate {estimate.estimateid} sent to {to_email}")
        return True

    except Exception as e:
        logger.exception(f"[EMAIL] ✗ Failed to send estimate {estimate.estimateid} to {to_email}: {e}")
        return False
