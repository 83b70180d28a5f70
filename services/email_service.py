"""Transactional email delivery through the Brevo API"""

import asyncio
import logging
from typing import List, Optional

import sib_api_v3_sdk
from sib_api_v3_sdk.rest import ApiException

from config import Config

logger = logging.getLogger(__name__)


class BrevoEmailService:
    """Thin async wrapper around Brevo's transactional email endpoint"""

    def __init__(self, api_key: Optional[str] = None):
        """Initialize email service with Brevo API"""
        api_key = api_key if api_key is not None else Config.BREVO_API_KEY
        if not api_key:
            logger.warning("BREVO_API_KEY not configured - booking emails will be skipped")
            self.api_client = None
            self.transactional_emails_api = None
            return

        configuration = sib_api_v3_sdk.Configuration()
        configuration.api_key["api-key"] = api_key
        self.api_client = sib_api_v3_sdk.ApiClient(configuration)
        self.transactional_emails_api = sib_api_v3_sdk.TransactionalEmailsApi(self.api_client)

    @property
    def is_configured(self) -> bool:
        return self.transactional_emails_api is not None

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
        to_name: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> bool:
        """
        Send a single transactional email

        Returns:
            bool: True if Brevo accepted the message, False otherwise
        """
        if not self.is_configured:
            logger.warning(f"Email service not configured - skipping '{subject}' to {to_email}")
            return False

        try:
            send_smtp_email = sib_api_v3_sdk.SendSmtpEmail(
                to=[sib_api_v3_sdk.SendSmtpEmailTo(email=to_email, name=to_name)],
                sender=sib_api_v3_sdk.SendSmtpEmailSender(
                    email=Config.FROM_EMAIL, name=Config.FROM_NAME
                ),
                subject=subject,
                html_content=html_content,
                text_content=text_content,
                tags=tags,
            )

            api_response = await self._send_email_with_retry(send_smtp_email, to_email)
            logger.info(
                f"📧 Email '{subject}' sent to {to_email} - Message ID: {getattr(api_response, 'message_id', None)}"
            )
            return True

        except ApiException as e:
            logger.error(f"Error sending email to {to_email}: {e}")
            return False
        except Exception as e:
            logger.error(f"Unexpected error sending email to {to_email}: {e}")
            return False

    async def _send_email_with_retry(
        self, send_smtp_email: sib_api_v3_sdk.SendSmtpEmail, recipient_email: str,
        max_retries: int = 3, timeout: float = 30.0
    ):
        """Send email with non-blocking I/O, timeout, and retry logic"""
        for attempt in range(max_retries):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(
                        self.transactional_emails_api.send_transac_email,
                        send_smtp_email
                    ),
                    timeout=timeout
                )

            except asyncio.TimeoutError:
                logger.warning(
                    f"Email send timeout (attempt {attempt + 1}/{max_retries}) for {recipient_email}"
                )
                if attempt == max_retries - 1:
                    raise

            except ApiException as e:
                logger.warning(
                    f"Email API error (attempt {attempt + 1}/{max_retries}) for {recipient_email}: {e}"
                )
                if attempt == max_retries - 1:
                    raise

            if attempt < max_retries - 1:
                await asyncio.sleep((2 ** attempt) * 0.5)  # 0.5s, 1s

        return None
