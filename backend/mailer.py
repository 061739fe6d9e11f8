"""
Transactional email through Resend.
When RESEND_API_KEY is unset, delivery is skipped and logged.
"""
import logging
from datetime import datetime

import resend

import config
from errors import MarketError

logger = logging.getLogger(__name__)

OTP_TEMPLATE = """\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; color: #333;">
  <h1 style="color: #667eea;">{subject}</h1>
  <p>Hello,</p>
  <p>Please use the code below to proceed with your request on Ku-isoko:</p>
  <p style="font-size: 32px; font-weight: bold; letter-spacing: 5px; color: #667eea;">{code}</p>
  <p><strong>This code expires in {minutes} minutes.</strong> If you didn't request it, ignore this email.</p>
  <p>Never share this code with anyone.</p>
  <p style="color: #666; font-size: 12px;">&copy; {year} Ku-isoko</p>
</div>
"""

WELCOME_TEMPLATE = """\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; color: #333;">
  <h1 style="color: #667eea;">Welcome to Ku-isoko!</h1>
  <p>Hello {name},</p>
  <p>Your account has been created and verified. You can now explore products from our sellers
  or manage your own store if you're a seller.</p>
  <p style="color: #666; font-size: 12px;">&copy; {year} Ku-isoko</p>
</div>
"""


class EmailDeliveryFailed(MarketError):
    code = "EMAIL_FAILED"
    status_code = 502
    default_message = "Failed to send email"


def _send(to: str, subject: str, html: str) -> bool:
    if not config.RESEND_API_KEY:
        logger.info("Email delivery disabled, not sending %r to %s", subject, to)
        return False
    resend.api_key = config.RESEND_API_KEY
    resend.Emails.send({"from": config.EMAIL_FROM, "to": [to], "subject": subject, "html": html})
    return True


def send_otp_email(email: str, code: str, subject: str = "Password Reset OTP") -> bool:
    html = OTP_TEMPLATE.format(subject=subject, code=code, minutes=config.OTP_TTL_MINUTES,
                               year=datetime.now().year)
    try:
        return _send(email, subject, html)
    except Exception as exc:
        logger.error("OTP email to %s failed: %s", email, exc)
        raise EmailDeliveryFailed()


def send_welcome_email(email: str, name: str) -> bool:
    html = WELCOME_TEMPLATE.format(name=name, year=datetime.now().year)
    try:
        return _send(email, "Welcome to Ku-isoko - Account Created", html)
    except Exception as exc:
        # the account is already verified; a missing welcome mail is not an error
        logger.warning("Welcome email to %s failed: %s", email, exc)
        return False
