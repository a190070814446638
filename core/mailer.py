"""
mailer.py -- Outbound email through the Microsoft Graph sendMail API.

Flow:
  1. Client-credentials grant against login.microsoftonline.com for a Graph
     access token (scope https://graph.microsoft.com/.default). The token is
     cached until shortly before its expiry.
  2. POST /v1.0/users/{sender}/sendMail with an HTML body.

When AAD_* / MAIL_SENDER_ID are not configured the mailer runs disabled:
send() logs the recipient and subject (never the body, which may carry a code
or invitation link) and returns False.

Failures raise MailerError. Callers decide whether a failed delivery is fatal;
the API layer persists the invitation or OTP first and reports partial success.
"""

import logging
import time
from typing import Optional

import requests

from core.config import Settings

logger = logging.getLogger("ccm.mailer")

_LOGIN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
_SEND_URL = "https://graph.microsoft.com/v1.0/users/{sender}/sendMail"
_SCOPE = "https://graph.microsoft.com/.default"

# Refresh the cached token this many seconds before Graph says it expires.
_TOKEN_SKEW_SECONDS = 60


class MailerError(Exception):
    """Token acquisition or message delivery failed."""


class GraphMailer:
    """Send HTML email as a fixed mailbox via Microsoft Graph.

    Args:
        tenant_id, client_id, client_secret: Azure AD app registration.
        sender_id: User id or UPN of the sending mailbox.
        timeout:   Per-request timeout in seconds.
        session:   Optional requests.Session (tests pass a stub).
    """

    def __init__(
        self,
        tenant_id: str = "",
        client_id: str = "",
        client_secret: str = "",
        sender_id: str = "",
        timeout: int = 10,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._tenant_id = tenant_id
        self._client_id = client_id
        self._client_secret = client_secret
        self._sender_id = sender_id
        self._timeout = timeout
        self._session = session or requests.Session()
        # Only Microsoft endpoints are contacted; no reason to follow long chains.
        self._session.max_redirects = 3
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "GraphMailer":
        return cls(
            tenant_id=settings.aad_tenant_id,
            client_id=settings.aad_client_id,
            client_secret=settings.aad_client_secret,
            sender_id=settings.mail_sender_id,
            timeout=settings.mail_timeout_seconds,
        )

    @property
    def enabled(self) -> bool:
        return bool(self._tenant_id and self._client_id and self._client_secret and self._sender_id)

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        try:
            resp = self._session.post(
                _LOGIN_URL.format(tenant=self._tenant_id),
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "scope": _SCOPE,
                },
                timeout=self._timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Graph token request failed: %s", e)
            raise MailerError("Could not acquire access token.") from e
        token = body.get("access_token")
        if not token:
            raise MailerError("Could not acquire access token.")
        self._token = token
        self._token_expires_at = time.monotonic() + max(int(body.get("expires_in", 0)) - _TOKEN_SKEW_SECONDS, 0)
        return token

    def send(self, to: str, subject: str, html_body: str) -> bool:
        """Deliver one message. Returns False when mail is disabled.

        Raises:
            MailerError: missing arguments, token failure, or a non-2xx reply.
        """
        if not to or not subject or not html_body:
            raise MailerError("Mail options (to, subject, body) are required.")
        if not self.enabled:
            logger.info("Mail disabled; skipped message to %s: %r", to, subject)
            return False

        message = {
            "message": {
                "subject": subject,
                "body": {"contentType": "HTML", "content": html_body},
                "toRecipients": [{"emailAddress": {"address": to}}],
            },
            "saveToSentItems": "true",
        }
        token = self._access_token()
        try:
            resp = self._session.post(
                _SEND_URL.format(sender=self._sender_id),
                json=message,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self._timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Graph sendMail failed for %s: %s", to, e)
            raise MailerError("Failed to send email.") from e
        logger.info("Mail sent to %s: %r", to, subject)
        return True

    def close(self) -> None:
        self._session.close()
