from postmarker.core import PostmarkClient
from database import database
from models import MessageLog, EmailTemplateAlias
from datetime import datetime, timezone
import os
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

# Email sender configuration
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "listings@example.com")

# Built-in plain text bodies; placeholders use {{name}} like stored templates
BUILT_IN_TEMPLATES = {
    EmailTemplateAlias.DOWNGRADE_REQUESTED: (
        "Downgrade request received",
        "Hi {{owner_name}},\n\n"
        "We received your request to move {{listing_name}} to the {{target_plan_name}} plan. "
        "An admin will review it before your plan changes.\n",
    ),
    EmailTemplateAlias.DOWNGRADE_APPROVED: (
        "Your plan change was approved",
        "Hi {{owner_name}},\n\n"
        "Your request to move {{listing_name}} to the {{target_plan_name}} plan was approved. "
        "Features from your previous plan are now disabled.\n",
    ),
    EmailTemplateAlias.DOWNGRADE_REJECTED: (
        "Your plan change was not approved",
        "Hi {{owner_name}},\n\n"
        "Your request to move {{listing_name}} to the {{target_plan_name}} plan was not approved. "
        "Your current plan stays in place.\n",
    ),
    EmailTemplateAlias.PLAN_DOWNGRADED: (
        "Your plan has changed",
        "Hi {{owner_name}},\n\n"
        "{{listing_name}} is now on the {{target_plan_name}} plan. "
        "Only the features of the selected plan remain active.\n",
    ),
}


def render_template(alias: EmailTemplateAlias, template_model: Dict[str, Any]) -> tuple:
    subject, body = BUILT_IN_TEMPLATES[alias]
    for key, value in template_model.items():
        placeholder = "{{" + key + "}}"
        body = body.replace(placeholder, str(value) if value is not None else "")
        subject = subject.replace(placeholder, str(value) if value is not None else "")
    return subject, body


class EmailService:
    def __init__(self):
        postmark_token = os.getenv("POSTMARK_SERVER_TOKEN")
        if not postmark_token:
            logger.warning("POSTMARK_SERVER_TOKEN not set - emails will be logged but not sent")
            self.client = None
        else:
            self.client = PostmarkClient(server_token=postmark_token)
            logger.info("Postmark email client initialized")

    async def send_email(
        self,
        recipient: Optional[str],
        template_alias: EmailTemplateAlias,
        template_model: Dict[str, Any],
        owner_id: Optional[str] = None,
    ) -> Optional[MessageLog]:
        """Send a notification. Never raises; failures end up in message_logs."""
        if not recipient:
            logger.info(f"Skipping {template_alias.value} email: no recipient")
            return None

        subject, text_body = render_template(template_alias, template_model)
        try:
            message_log = MessageLog(
                owner_id=owner_id,
                recipient=recipient,
                template_alias=template_alias,
                subject=subject,
                status="queued"
            )
        except ValueError as e:
            logger.warning(f"Skipping {template_alias.value} email to invalid recipient {recipient!r}: {e}")
            return None

        try:
            if self.client:
                response = self.client.emails.send(
                    From=DEFAULT_SENDER,
                    To=recipient,
                    Subject=subject,
                    TextBody=text_body,
                    Tag=template_alias.value
                )
                message_log.postmark_message_id = response["MessageID"]
                message_log.status = "sent"
                message_log.sent_at = datetime.now(timezone.utc)
                logger.info(f"Email sent to {recipient}: {template_alias.value}")
            else:
                message_log.status = "logged"
                logger.info(f"Email (not sent, no Postmark token) to {recipient}: {subject}")
        except Exception as e:
            message_log.status = "failed"
            message_log.error_message = str(e)
            logger.error(f"Failed to send {template_alias.value} email to {recipient}: {e}")

        try:
            db = database.get_db()
            await db.message_logs.insert_one(message_log.model_dump())
        except Exception as e:
            logger.error(f"Failed to record message log: {e}")

        return message_log


email_service = EmailService()
