"""
Channel senders: SMTP email and Twilio SMS.

Both clients are blocking, so callers run them with asyncio.to_thread().
Errors are raised as DeliveryError with `permanent` set when retrying can
never help (refused recipient, invalid phone number).
"""
import logging
import smtplib
import socket
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client as TwilioClient

from core.exceptions import DeliveryError

logger = logging.getLogger(__name__)


class EmailSender:
    def __init__(self, host: str, port: int, user: str, password: str, from_name: str = "SubManager", timeout: float = 30.0):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_name = from_name
        self.timeout = timeout

    def send(self, to: str, subject: str, body: str) -> None:
        msg = MIMEMultipart()
        msg["From"] = f'"{self.from_name}" <{self.user}>'
        msg["To"] = to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.user, self.password)
                server.send_message(msg)
        except smtplib.SMTPRecipientsRefused as e:
            raise DeliveryError(f"recipient refused: {to}", permanent=True) from e
        except smtplib.SMTPResponseException as e:
            # 5xx on the data/rcpt phase is a hard bounce, 4xx is a soft one
            permanent = 500 <= e.smtp_code < 600 and not isinstance(e, smtplib.SMTPAuthenticationError)
            raise DeliveryError(f"smtp {e.smtp_code}: {e.smtp_error!r}", permanent=permanent) from e
        except (smtplib.SMTPException, socket.timeout, OSError) as e:
            raise DeliveryError(f"smtp unavailable: {e}") from e
        logger.info("[EMAIL] To %s: %s", to, subject)


class SmsSender:
    def __init__(self, account_sid: str, auth_token: str, from_number: str):
        self.client = TwilioClient(account_sid, auth_token)
        self.from_number = from_number

    def send(self, to: str, body: str) -> None:
        try:
            self.client.messages.create(to=to, from_=self.from_number, body=body)
        except TwilioRestException as e:
            # 4xx: invalid / unroutable number, blocked recipient
            permanent = e.status is not None and 400 <= e.status < 500 and e.status != 429
            raise DeliveryError(f"twilio {e.status} ({e.code}): {e.msg}", permanent=permanent) from e
        except (TwilioException, OSError) as e:
            raise DeliveryError(f"twilio unavailable: {e}") from e
        logger.info("[SMS][Twilio] To %s: %s", to, body)
