import logging
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Optional, Protocol

from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import Settings, get_settings
from models import Category, User


logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates" / "email"


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    text: Optional[str] = None


class Mailer(Protocol):
    def send(self, message: EmailMessage) -> None:
        ...


class SmtpMailer:
    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.timeout = timeout

    def send(self, message: EmailMessage) -> None:
        msg = MIMEMultipart("alternative")
        msg["From"] = self.sender
        msg["To"] = message.to
        msg["Subject"] = message.subject
        if message.text:
            msg.attach(MIMEText(message.text, "plain", "utf-8"))
        msg.attach(MIMEText(message.html, "html", "utf-8"))

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)
        logger.info(f"mail_sent: to={message.to} subject={message.subject!r}")


class LogMailer:
    """Keeps messages in memory instead of sending them; used when SMTP is unset."""

    def __init__(self) -> None:
        self.outbox: list[EmailMessage] = []

    def send(self, message: EmailMessage) -> None:
        self.outbox.append(message)
        logger.info(f"mail_logged: to={message.to} subject={message.subject!r}")


def build_mailer(settings: Optional[Settings] = None) -> Mailer:
    settings = settings or get_settings()
    if not settings.smtp_host:
        logger.warning("mailer: MONETASIS_SMTP_HOST not set, emails will only be logged")
        return LogMailer()
    return SmtpMailer(
        host=settings.smtp_host,
        port=settings.smtp_port,
        sender=settings.mail_sender,
        username=settings.smtp_username,
        password=settings.smtp_password,
    )


def format_currency(cents: int) -> str:
    return f"R$ {cents / 100:,.2f}"


class EmailRenderer:
    def __init__(
        self, directory: Path = TEMPLATE_DIR, frontend_url: Optional[str] = None
    ) -> None:
        self.env = Environment(
            loader=FileSystemLoader(str(directory)),
            autoescape=select_autoescape(["html"]),
        )
        self.env.filters["currency"] = format_currency
        self.frontend_url = frontend_url or get_settings().frontend_url

    def render(self, template: str, **context: object) -> str:
        ctx = {"frontend_url": self.frontend_url}
        ctx.update(context)
        return self.env.get_template(template).render(**ctx)

    def biweekly_report(self, user: User, report: dict[str, object]) -> EmailMessage:
        start = report["start"]
        end = report["end"]
        return EmailMessage(
            to=user.email,
            subject=f"Your biweekly report: {start:%d/%m} to {end:%d/%m}",
            html=self.render("biweekly_report.html", user=user, report=report),
            text=(
                f"Hi {user.name}, between {start:%d/%m} and {end:%d/%m} you earned "
                f"{format_currency(report['income_cents'])} and spent "
                f"{format_currency(report['expense_cents'])}."
            ),
        )

    def spending_alert(
        self, user: User, category: Category, spent_cents: int
    ) -> EmailMessage:
        share = (
            spent_cents * 100 / user.monthly_income_cents
            if user.monthly_income_cents
            else 0.0
        )
        return EmailMessage(
            to=user.email,
            subject=f"Spending alert: {category.name}",
            html=self.render(
                "spending_alert.html",
                user=user,
                category=category,
                spent_cents=spent_cents,
                share=share,
            ),
        )

    def achievement(self, user: User, milestone: int) -> EmailMessage:
        return EmailMessage(
            to=user.email,
            subject=f"Achievement unlocked: {milestone} transaction{'s' if milestone != 1 else ''}",
            html=self.render("achievement.html", user=user, milestone=milestone),
        )

    def reengagement(self, user: User, days_inactive: int) -> EmailMessage:
        return EmailMessage(
            to=user.email,
            subject="We miss you at MonetaSis",
            html=self.render(
                "reengagement.html", user=user, days_inactive=days_inactive
            ),
        )

    def welcome(self, user: User) -> EmailMessage:
        return EmailMessage(
            to=user.email,
            subject="Welcome to MonetaSis!",
            html=self.render("welcome.html", user=user),
        )
