"""
Email service for sending OTPs and registration notifications.
Uses fastapi-mail; every send is bounded by a timeout and reports success
as a bool instead of raising.
"""
import asyncio
from typing import Optional

from fastapi_mail import FastMail, ConnectionConfig, MessageSchema, MessageType

from core.logger import logger
import config


def build_mail_client() -> Optional[FastMail]:
    """FastMail client from SMTP settings, or None when SMTP is not configured."""
    if not (config.SMTP_USER and config.SMTP_PASSWORD):
        logger.warning("SMTP credentials not set (SMTP_USER/SMTP_PASSWORD). Emails will not be sent.")
        return None
    try:
        mail_conf = ConnectionConfig(
            MAIL_USERNAME=config.SMTP_USER,
            MAIL_PASSWORD=config.SMTP_PASSWORD,
            MAIL_FROM=config.SMTP_FROM_EMAIL or config.SMTP_USER,
            MAIL_FROM_NAME=config.SMTP_FROM_NAME,
            MAIL_PORT=config.SMTP_PORT,
            MAIL_SERVER=config.SMTP_HOST,
            MAIL_STARTTLS=config.SMTP_USE_TLS,
            MAIL_SSL_TLS=config.SMTP_USE_SSL,
            USE_CREDENTIALS=True,
            VALIDATE_CERTS=True,
            TIMEOUT=int(config.EMAIL_SEND_TIMEOUT_SECONDS),
        )
    except ValueError as e:
        # pydantic rejects malformed settings (e.g. a bad MAIL_FROM address)
        logger.error(f"Failed to initialize FastAPI-Mail: {e}", exc_info=True)
        return None
    logger.info("FastAPI-Mail initialized successfully")
    return FastMail(mail_conf)


class EmailService:
    """Best-effort outbound email."""

    def __init__(
        self,
        fm: Optional[FastMail] = None,
        timeout_seconds: float = None,
        environment: str = None,
    ):
        self.fm = fm
        self.timeout_seconds = timeout_seconds or config.EMAIL_SEND_TIMEOUT_SECONDS
        self.environment = environment or config.ENVIRONMENT

    @classmethod
    def from_config(cls) -> "EmailService":
        return cls(fm=build_mail_client())

    async def _send(self, to_email: str, subject: str, html_body: str) -> bool:
        if self.fm is None:
            logger.warning(f"Mail client not configured; email to {to_email} not sent")
            return False
        message = MessageSchema(
            subject=subject,
            recipients=[to_email],
            body=html_body,
            subtype=MessageType.html,
        )
        try:
            await asyncio.wait_for(self.fm.send_message(message), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f"Timed out after {self.timeout_seconds}s sending email to {to_email}")
            return False
        except Exception as e:
            logger.error(f"Failed to send email to {to_email}: {e}", exc_info=True)
            return False
        logger.info(f"Email '{subject}' sent successfully to {to_email}")
        return True

    async def send_otp(self, to_email: str, otp: str, username: str) -> bool:
        """
        Send the login verification code.

        Args:
            to_email: Recipient email address
            otp: OTP code to send
            username: Greeting name

        Returns:
            True if sent successfully, False otherwise
        """
        if self.environment == "development":
            # Development side channel so login works without SMTP
            logger.info(f"[DEV MODE] OTP for {to_email}: {otp}")

        html_body = f"""
        <html>
        <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
                <h2 style="color: #667eea;">{config.SMTP_FROM_NAME}</h2>
                <p>Hello <strong>{username}</strong>,</p>
                <p>Use the following verification code to finish signing in:</p>
                <div style="background-color: #f4f4f4; padding: 20px; text-align: center; margin: 20px 0; border-radius: 5px;">
                    <h1 style="color: #667eea; font-size: 32px; margin: 0; letter-spacing: 5px;">{otp}</h1>
                </div>
                <p>This code will expire in {config.OTP_EXPIRY_MINUTES} minutes.</p>
                <p style="color: #666; font-size: 12px;">If you didn't request this code, please ignore this email. Never share it with anyone.</p>
            </div>
        </body>
        </html>
        """
        return await self._send(to_email, "Your Verification Code - Course Registration System", html_body)

    async def send_registration_confirmation(
        self,
        to_email: str,
        username: str,
        course_name: str,
        course_code: str,
    ) -> bool:
        html_body = f"""
        <html>
        <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
                <h2 style="color: #28a745;">Course Registration Confirmed</h2>
                <p>Hello <strong>{username}</strong>,</p>
                <p>You are registered for <strong>{course_code} - {course_name}</strong>.</p>
                <p style="color: #666; font-size: 12px;">This is an automated message. Please do not reply.</p>
            </div>
        </body>
        </html>
        """
        return await self._send(to_email, "Course Registration Confirmed", html_body)
