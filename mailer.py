import logging
import smtplib
from email.message import EmailMessage
from string import Template
from typing import Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

TEMPLATES: Dict[str, Dict[str, str]] = {
    "verification": {
        "subject": "Confirm your FarmMarket registration",
        "body": "Hello $firstName,\n\nPlease confirm your email address:\n$verificationUrl\n",
    },
    "password_reset": {
        "subject": "FarmMarket password reset",
        "body": "Hello $firstName,\n\nUse this link to set a new password (valid for 1 hour):\n$resetUrl\n",
    },
    "order_confirmation": {
        "subject": "Order $orderNumber confirmed",
        "body": (
            "Hello $customerName,\n\nThank you for your order $orderNumber.\n"
            "Scheduled for: $deliveryDate\nTotal: $total\n"
        ),
    },
    "notification": {
        "subject": "$title",
        "body": "Hello $firstName,\n\n$message\n\n$actionUrl\n",
    },
    "promotional_offer": {
        "subject": "$offerTitle",
        "body": (
            "Hello $firstName,\n\n$description\n\nUse code $promoCode before $expiryDate.\n$shopUrl\n"
        ),
    },
}


class Mailer:
    """Templated email delivery over SMTP. Disabled when SMTP_HOST is not set."""

    def __init__(self, settings):
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.user = settings.smtp_user
        self.password = settings.smtp_password
        self.sender = settings.email_from

    @property
    def enabled(self) -> bool:
        return bool(self.host)

    def render(self, template: str, data: dict) -> EmailMessage:
        if template not in TEMPLATES:
            raise KeyError(f"Unknown email template: {template}")
        entry = TEMPLATES[template]
        values = {k: "" if v is None else v for k, v in (data or {}).items()}
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["Subject"] = Template(entry["subject"]).safe_substitute(values)
        msg.set_content(Template(entry["body"]).safe_substitute(values))
        return msg

    def send(self, to: str, template: str, data: Optional[dict] = None) -> bool:
        msg = self.render(template, data or {})
        msg["To"] = to
        if not self.enabled:
            logger.info("SMTP not configured, skipping email %s to %s", template, to)
            return False
        with smtplib.SMTP(self.host, self.port, timeout=15) as client:
            client.starttls()
            if self.user and self.password:
                client.login(self.user, self.password)
            client.send_message(msg)
        logger.info("Email %s sent to %s", template, to)
        return True

    def send_bulk(self, recipients: Iterable[dict], template: str,
                  data_for: Callable[[dict], dict]) -> List[dict]:
        results = []
        for recipient in recipients:
            email = recipient.get("email")
            try:
                sent = self.send(email, template, data_for(recipient))
                results.append({"email": email, "sent": sent})
            except Exception as e:
                logger.warning("Bulk email to %s failed: %s", email, e)
                results.append({"email": email, "sent": False, "error": str(e)})
        return results
