"""
Donation confirmation email

The template and SMTP settings are loaded once when the service starts; sends
run on a small thread pool so neither the request nor the settlement worker
ever waits on them.
"""
import re
import smtplib
import logging
import mimetypes
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date as Date
from email.message import EmailMessage
from email.utils import formataddr
from pathlib import Path
from typing import Any, Dict, Optional

from common.error_handling import NotificationError

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "感謝你的慷慨參與 — 因著你的奉獻，我們一起贏得城市的 1%"
FALLBACK_HTML = "<p>感謝你在這個 FORWARD 季節中的慷慨參與。</p>"
DEFAULT_TEMPLATE_PATH = Path(__file__).parent / "templates" / "giving_success.html"
BANNER_CID = "giving-banner"
SENDER_NAME = "The Hope"

_SUBJECT_RE = re.compile(r"<!--\s*subject:(.*?)-->", re.IGNORECASE | re.DOTALL)
_TOKEN_RE = re.compile(r"{{\s*([^}\s]+)\s*}}")
_BANNER_RE = re.compile(r"{{\s*banner\s*}}")

CURRENCY_SYMBOLS = {"TWD": "$", "USD": "US$"}

@dataclass
class EmailTemplate:
    html: str
    subject: str = DEFAULT_SUBJECT

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "EmailTemplate":
        """Read the template; an optional `<!-- subject: ... -->` comment sets the subject"""
        path = Path(path) if path else DEFAULT_TEMPLATE_PATH
        try:
            contents = path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to read email template at {path}, using fallback copy: {e}")
            return cls(html=FALLBACK_HTML)

        match = _SUBJECT_RE.search(contents)
        if not match:
            return cls(html=contents)
        return cls(
            html=contents.replace(match.group(0), "", 1).lstrip(),
            subject=match.group(1).strip() or DEFAULT_SUBJECT,
        )

    def render(self, context: Dict[str, Any]) -> str:
        """Fill `{{ token }}` placeholders; unknown tokens render empty. `{{banner}}` is kept."""
        def substitute(match):
            token = match.group(1)
            if token == "banner":
                return match.group(0)
            value = context.get(token)
            return "" if value is None else str(value)

        return _TOKEN_RE.sub(substitute, self.html)

@dataclass
class Banner:
    path: Path
    cid: str = BANNER_CID

    @classmethod
    def resolve(cls, raw_path: str) -> Optional["Banner"]:
        if not raw_path:
            return None
        path = Path(raw_path).resolve()
        if not path.exists():
            logger.warning(f"Banner image missing at {path}. Skipping attachment.")
            return None
        return cls(path=path)

    @property
    def markup(self) -> str:
        return (
            '<div style="text-align:center; margin-bottom: 16px;">\n'
            f'    <img src="cid:{self.cid}" alt="{SENDER_NAME}" style="max-width: 100%;" />\n'
            '  </div>'
        )

def insert_banner(html: str, banner: Optional[Banner]) -> str:
    if banner is None:
        return _BANNER_RE.sub("", html)
    if _BANNER_RE.search(html):
        return _BANNER_RE.sub(banner.markup, html)
    return banner.markup + html

def format_currency_display(amount, currency: str = "TWD") -> str:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        return ""
    symbol = CURRENCY_SYMBOLS.get(currency)
    if symbol is None:
        return f"{currency} {value:,.0f}"
    return f"{symbol}{value:,.0f}"

def format_display_date(value) -> str:
    if not value:
        return ""
    if isinstance(value, Date):
        return value.strftime("%Y/%m/%d")
    parts = str(value).split("-")
    if len(parts) == 3 and all(parts):
        return "/".join(parts)
    return str(value)

def format_payment_method(method: Optional[str]) -> str:
    if not method or not isinstance(method, str):
        return ""
    return " ".join(method.split("_")).upper()

def build_context(receipt_name: Optional[str], amount, currency: str, giving_date, payment_type: Optional[str]) -> Dict[str, str]:
    return {
        "greeting": (receipt_name or "").strip() or "家人",
        "amountDisplay": format_currency_display(amount, currency),
        "paymentMethod": format_payment_method(payment_type),
        "givingDate": format_display_date(giving_date),
    }

@dataclass
class GivingMailer:
    """Sends the confirmation email through Gmail SMTP"""
    sender_email: str
    app_password: str
    template: EmailTemplate
    banner: Optional[Banner] = None
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 465
    timeout: float = 30.0
    smtp_factory: Any = field(default=smtplib.SMTP_SSL, repr=False)

    @property
    def enabled(self) -> bool:
        return bool(self.sender_email and self.app_password)

    @classmethod
    def from_settings(cls, settings) -> "GivingMailer":
        mailer = cls(
            sender_email=settings.google_sender_email,
            app_password=settings.google_app_password,
            template=EmailTemplate.load(settings.giving_email_template_path or None),
            banner=Banner.resolve(settings.giving_email_banner_path),
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
        )
        if not mailer.enabled:
            logger.warning("GOOGLE_SENDER_EMAIL / GOOGLE_APP_PASSWORD not set, confirmation emails are disabled")
        return mailer

    def build_message(self, recipient: str, context: Dict[str, Any], subject: str = None) -> EmailMessage:
        html = insert_banner(self.template.render(context), self.banner)

        message = EmailMessage()
        message["From"] = formataddr((SENDER_NAME, self.sender_email))
        message["To"] = recipient
        message["Subject"] = subject or self.template.subject or DEFAULT_SUBJECT
        message.set_content("感謝你的奉獻。")
        message.add_alternative(html, subtype="html")

        if self.banner is not None:
            mime_type, _ = mimetypes.guess_type(str(self.banner.path))
            maintype, subtype = (mime_type or "image/png").split("/", 1)
            html_part = message.get_payload()[1]
            html_part.add_related(
                self.banner.path.read_bytes(),
                maintype=maintype,
                subtype=subtype,
                cid=f"<{self.banner.cid}>",
                filename=self.banner.path.name,
            )
        return message

    def send(self, recipient: str, context: Dict[str, Any], subject: str = None) -> None:
        if not self.enabled:
            raise NotificationError("Email credentials are not configured")
        message = self.build_message(recipient, context, subject)
        try:
            with self.smtp_factory(self.smtp_host, self.smtp_port, timeout=self.timeout) as smtp:
                smtp.login(self.sender_email, self.app_password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Failed to send donation email to {recipient}", original_error=e) from e
        logger.info(f"Donation email sent to {recipient}")

class NotificationDispatcher:
    """Bounded pool for fire-and-forget confirmation emails"""

    def __init__(self, mailer: GivingMailer, max_workers: int = 2):
        self.mailer = mailer
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="giving-mail")

    def notify_success(self, recipient: Optional[str], context: Dict[str, Any]) -> Optional[Future]:
        if not recipient:
            logger.warning("Missing recipient email. Skipping send.")
            return None
        if not self.mailer.enabled:
            logger.warning("Email credentials not ready. Skipping send.")
            return None

        try:
            future = self.executor.submit(self.mailer.send, recipient, context)
        except RuntimeError as e:
            # pool already shut down
            logger.error(f"Failed to dispatch giving confirmation email: {e}")
            return None
        future.add_done_callback(self._log_outcome)
        return future

    @staticmethod
    def _log_outcome(future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error(f"Failed to dispatch giving confirmation email: {error}")

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
