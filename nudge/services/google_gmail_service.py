"""
Google Gmail API client for sending nudges.
Builds the RFC 2822 envelope and performs messages.send with a bearer token.
"""

import asyncio
import base64
from email.header import Header
from email.mime.text import MIMEText

import httpx

from nudge.config import settings
from nudge.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"


class GoogleGmailError(Exception):
    """messages.send failure. `status_code` drives outcome classification."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}


class GmailTimeoutError(GoogleGmailError):
    """The send did not complete within the request timeout."""

    pass


def looks_like_html(body: str) -> bool:
    return body.strip().startswith("<") or "<div" in body or "<p" in body


def build_raw_message(recipient: str, subject: str, body: str, sender: str | None = None) -> str:
    """
    Build a single-part UTF-8 message and encode it for messages.send.

    Returns:
        str: base64url encoding of the message bytes, without padding
    """
    subtype = "html" if looks_like_html(body) else "plain"
    msg = MIMEText(body, subtype, "utf-8")
    msg["To"] = recipient
    msg["Subject"] = Header(subject, "utf-8")
    if sender:
        msg["From"] = sender

    return base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii").rstrip("=")


class GoogleGmailService:
    """
    Gmail send client.

    A 429 surfaces immediately unless `rate_limit_retries` is raised, in which
    case it is retried after a fixed backoff. Every failure surfaces as
    GoogleGmailError carrying the HTTP status.
    """

    def __init__(
        self,
        timeout: float = settings.GMAIL_SEND_TIMEOUT_SECONDS,
        rate_limit_retries: int = settings.GMAIL_RATE_LIMIT_RETRIES,
        rate_limit_backoff: float = settings.GMAIL_RATE_LIMIT_BACKOFF_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep=asyncio.sleep,
    ):
        self.timeout = timeout
        self.rate_limit_retries = rate_limit_retries
        self.rate_limit_backoff = rate_limit_backoff
        self._transport = transport
        self._sleep = sleep

    async def send_message(self, access_token: str, raw_message: str) -> dict:
        """
        Send an encoded message.

        Returns:
            dict: Sent message resource (id, threadId, labelIds)

        Raises:
            GmailTimeoutError: If Gmail did not answer within the timeout
            GoogleGmailError: On any other failure, with status_code when known
        """
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            retries_left = self.rate_limit_retries
            while True:
                try:
                    # httpx timeouts are per phase; this bounds the whole request
                    async with asyncio.timeout(self.timeout):
                        response = await client.post(
                            GMAIL_SEND_URL, headers=headers, json={"raw": raw_message}
                        )
                except (TimeoutError, httpx.TimeoutException) as e:
                    logger.error("Gmail send timed out", timeout=self.timeout)
                    raise GmailTimeoutError("Gmail did not respond in time", error_code="timeout") from e
                except httpx.RequestError as e:
                    logger.error("Gmail unreachable", error=str(e), error_type=type(e).__name__)
                    raise GoogleGmailError(f"Network error: {e}", error_code="network_error") from e

                if response.status_code != 429 or retries_left == 0:
                    break
                retries_left -= 1
                logger.warning(
                    "Gmail rate limited, backing off",
                    retries_left=retries_left,
                    wait_time=self.rate_limit_backoff,
                )
                await self._sleep(self.rate_limit_backoff)

        if response.is_error:
            raise _send_error(response)

        try:
            sent = response.json() if response.content else {}
        except ValueError as e:
            raise GoogleGmailError(
                "Gmail accepted the message but returned an unreadable body",
                status_code=response.status_code,
            ) from e
        logger.info("Gmail accepted message", message_id=sent.get("id"))
        return sent


STATUS_MESSAGES = {
    400: "Invalid Gmail request format.",
    401: "Gmail authorization expired. Please reconnect.",
    403: "Gmail access denied. Please check permissions.",
    429: "Too many Gmail requests. Please try again later.",
    500: "Gmail service temporarily unavailable.",
    503: "Gmail service temporarily unavailable.",
}


def _send_error(response: httpx.Response) -> GoogleGmailError:
    """Translate a failed messages.send response. Gmail nests details under "error"."""
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    detail = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(detail, dict):
        reason = detail.get("message") or "unknown error"
    else:
        reason = str(detail or response.reason_phrase or "unknown error")

    logger.error("Gmail send rejected", status_code=response.status_code, reason=reason)
    return GoogleGmailError(
        STATUS_MESSAGES.get(response.status_code, f"Gmail error: {reason}"),
        error_code=str(response.status_code),
        status_code=response.status_code,
        response_data=payload if isinstance(payload, dict) else {},
    )
