import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import structlog
from fastapi import Request

import settings

logger = structlog.get_logger(__name__)

AUTO_NOTICE = "\n\nThis is an automated message. Please do not reply to this email."


class Mailer:
    """Plain-text SMTP sender. Every send is best-effort: failures are logged."""

    def __init__(self, host=None, port=587, user=None, password=None, sender=settings.EMAIL_FROM,
                 app_name=settings.APP_NAME, app_url=settings.APP_URL, api_url=settings.API_URL,
                 admin_email=settings.ADMIN_EMAIL):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.app_name = app_name
        self.app_url = app_url.rstrip("/")
        self.api_url = api_url.rstrip("/")
        self.admin_email = admin_email

    def send(self, to_email, subject, body, reply_to=None):
        if not self.host:
            logger.info("email.skipped", to=to_email, subject=subject, reason="SMTP not configured")
            return False

        msg = MIMEMultipart()
        msg["From"] = f'"{self.app_name}" <{self.sender}>'
        msg["To"] = to_email
        msg["Subject"] = subject
        if reply_to:
            msg["Reply-To"] = reply_to
        msg.attach(MIMEText(body + AUTO_NOTICE, "plain"))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as server:
                server.starttls()
                if self.user:
                    server.login(self.user, self.password)
                server.sendmail(self.sender, [to_email], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("email.send_failed", to=to_email, subject=subject, error=str(exc))
            return False
        logger.info("email.sent", to=to_email, subject=subject)
        return True

    def send_verification(self, email, first_name, token):
        url = f"{self.api_url}/auth/verify-email?token={token}"
        body = (
            f"Hi {first_name},\n\n"
            f"Welcome to {self.app_name}! Please verify your email address to finish registering:\n\n"
            f"{url}\n\n"
            "This link expires in 24 hours."
        )
        return self.send(email, f"Welcome to {self.app_name} - Verify Your Email", body)

    def send_password_reset(self, email, first_name, token):
        url = f"{self.app_url}/reset-password?token={token}"
        body = (
            f"Hi {first_name},\n\n"
            f"We received a request to reset the password of your {self.app_name} account.\n\n"
            f"{url}\n\n"
            "This link expires in 1 hour. If you didn't request it, ignore this email."
        )
        return self.send(email, f"Reset Your Password - {self.app_name}", body)

    def send_volunteer_notice(self, volunteer):
        if not self.admin_email:
            return False
        body = (
            "Hello Admin,\n\n"
            "A new volunteer has registered and is awaiting approval:\n\n"
            f"Name: {volunteer['first_name']} {volunteer['last_name']}\n"
            f"Email: {volunteer['email']}\n"
            f"Phone: {volunteer.get('phone') or 'Not provided'}\n"
            f"Location: {volunteer.get('location') or 'Not provided'}\n\n"
            f"Review applications at {self.app_url}/admin/volunteers"
        )
        subject = f"New Volunteer Registration - {volunteer['first_name']} {volunteer['last_name']}"
        return self.send(self.admin_email, subject, body)

    def send_contact(self, name, email, subject, message, phone=None):
        if self.admin_email:
            body = (
                f"Name: {name}\nEmail: {email}\n"
                + (f"Phone: {phone}\n" if phone else "")
                + f"Subject: {subject}\n\n{message}"
            )
            self.send(self.admin_email, f"Contact Form: {subject} - {self.app_name}", body, reply_to=email)
        confirmation = (
            f"Hi {name},\n\n"
            "Thank you for reaching out. We have received your message and will get back to you "
            "as soon as possible, typically within 24 hours.\n\n"
            f"Subject: {subject}\n\n{message}"
        )
        return self.send(email, f"Thank you for contacting {self.app_name}", confirmation)


def create_mailer():
    return Mailer(
        host=settings.SMTP_HOST,
        port=settings.SMTP_PORT,
        user=settings.SMTP_USER,
        password=settings.SMTP_PASSWORD,
    )


def get_mailer(request: Request):
    return request.app.state.mailer
