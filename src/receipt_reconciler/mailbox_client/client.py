"""
Mailbox API client implementation.
"""

import base64
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..schemas.models import parse_timestamp

logger = logging.getLogger(__name__)


class MailboxError(Exception):
    """Base exception for mailbox client errors."""
    pass


class MailboxAPIError(MailboxError):
    """API returned an error response."""
    def __init__(self, status_code: int, message: str, response_body: Optional[str] = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Mailbox API error {status_code}: {message}")


class MailboxAuthError(MailboxAPIError):
    """Credential expired or revoked (HTTP 401/403)."""
    pass


class MailboxConnectionError(MailboxError):
    """Failed to connect to the mailbox service."""
    pass


@dataclass
class MailboxAttachment:
    """Attachment metadata (content is fetched separately)."""
    id: str
    filename: str
    mime_type: str
    size: int = 0

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == "application/pdf" or (
            self.mime_type == "application/octet-stream"
            and self.filename.lower().endswith(".pdf")
        )


@dataclass
class MailboxMessage:
    """Mailbox message headers, body and attachment list."""
    id: str
    subject: str = ""
    sender: str = ""
    date: Optional[datetime] = None
    snippet: str = ""
    body: str = ""
    attachments: list[MailboxAttachment] = field(default_factory=list)

    @property
    def has_pdf(self) -> bool:
        return any(a.is_pdf for a in self.attachments)

    @classmethod
    def from_api_response(cls, data: dict) -> "MailboxMessage":
        """Create from mailbox API response."""
        return cls(
            id=str(data["id"]),
            subject=data.get("subject") or "",
            sender=data.get("from") or "",
            date=parse_timestamp(data.get("date")),
            snippet=data.get("snippet") or "",
            body=data.get("body") or "",
            attachments=[
                MailboxAttachment(
                    id=str(a["id"]),
                    filename=a.get("filename") or "",
                    mime_type=(a.get("mime_type") or "application/octet-stream").lower(),
                    size=a.get("size") or 0,
                )
                for a in data.get("attachments", [])
            ],
        )


@dataclass
class AttachmentContent:
    """Downloaded attachment bytes."""
    data: bytes
    mime_type: str
    size: int


class MailboxClient:
    """
    Client for the mailbox API.

    The client is a plain handle owned by its caller; create one per
    worker and pass it to the services that need it.

    Features:
    - Search messages per account with date bounds
    - Fetch message metadata and attachment content
    - Revoke account credentials
    - Automatic retry with backoff and request pacing
    """

    DEFAULT_TIMEOUT = 30
    DEFAULT_MAX_RESULTS = 20

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        request_delay_ms: int = 0,
        max_results: int = DEFAULT_MAX_RESULTS,
    ):
        """
        Initialize mailbox client.

        Args:
            base_url: Mailbox API URL (e.g., "http://mailbox.local:8025")
            token: API token for authentication
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts for transient failures
            backoff_factor: Backoff factor for retries
            request_delay_ms: Minimum pause between requests
            max_results: Messages requested per search
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.request_delay = request_delay_ms / 1000
        self.max_results = max_results
        self._last_request_at = 0.0

        # Configure session with retry
        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        })

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "POST"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    @classmethod
    def from_config(cls, config: Any) -> "MailboxClient":
        """Create from a MailboxConfig section."""
        return cls(
            base_url=config.base_url,
            token=config.token,
            timeout=config.timeout_seconds,
            max_retries=config.max_retries,
            request_delay_ms=config.request_delay_ms,
            max_results=config.max_results,
        )

    def _throttle(self) -> None:
        if not self.request_delay:
            return
        wait = self.request_delay - (time.monotonic() - self._last_request_at)
        if wait > 0:
            time.sleep(wait)

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_data: Optional[dict] = None,
    ) -> requests.Response:
        """Make an API request with error handling."""
        url = f"{self.base_url}{endpoint}"
        self._throttle()

        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            raise MailboxConnectionError(f"Failed to connect to mailbox at {self.base_url}: {e}")
        except requests.exceptions.Timeout as e:
            raise MailboxConnectionError(f"Request to mailbox timed out: {e}")
        except requests.exceptions.RequestException as e:
            raise MailboxError(f"Request failed: {e}")
        finally:
            self._last_request_at = time.monotonic()

        if not response.ok:
            error_cls = MailboxAuthError if response.status_code in (401, 403) else MailboxAPIError
            raise error_cls(
                status_code=response.status_code,
                message=response.reason,
                response_body=response.text,
            )

        return response

    def test_connection(self) -> bool:
        """Test connection to the mailbox API."""
        try:
            self._request("GET", "/api/")
            return True
        except MailboxError as e:
            logger.error(f"Mailbox connection test failed: {e}")
            return False

    def search_messages(
        self,
        account_id: str,
        query: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        max_results: Optional[int] = None,
    ) -> list[str]:
        """
        Search an account for messages.

        The query is passed through unchanged; date bounds are inclusive.

        Returns:
            Message ids, best match first
        """
        params: dict[str, Any] = {
            "q": query,
            "max_results": max_results or self.max_results,
        }
        if date_from:
            params["after"] = date_from.isoformat()
        if date_to:
            # API bound is exclusive
            params["before"] = (date_to + timedelta(days=1)).isoformat()

        response = self._request("GET", f"/api/accounts/{account_id}/messages", params=params)
        data = response.json()
        return [str(m["id"]) for m in data.get("messages", [])]

    def fetch_message(self, account_id: str, message_id: str) -> MailboxMessage:
        """Fetch headers, body and attachment list of a message."""
        response = self._request("GET", f"/api/accounts/{account_id}/messages/{message_id}")
        return MailboxMessage.from_api_response(response.json())

    def fetch_attachment(
        self, account_id: str, message_id: str, attachment_id: str
    ) -> AttachmentContent:
        """
        Download attachment bytes.

        The API returns base64url encoded data.
        """
        response = self._request(
            "GET",
            f"/api/accounts/{account_id}/messages/{message_id}/attachments/{attachment_id}",
        )
        data = response.json()
        encoded = data.get("data") or ""
        # Restore stripped padding
        content = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
        return AttachmentContent(
            data=content,
            mime_type=(data.get("mime_type") or "application/octet-stream").lower(),
            size=data.get("size") or len(content),
        )

    def search_attachments(
        self,
        account_id: str,
        queries: list[str],
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[MailboxMessage]:
        """
        Run several searches and return the distinct messages with attachments.

        Args:
            account_id: External account id
            queries: Search queries, most specific first
            date_from: Earliest message date
            date_to: Latest message date

        Returns:
            Messages in first-seen order
        """
        seen: set[str] = set()
        messages: list[MailboxMessage] = []

        for query in queries:
            for message_id in self.search_messages(account_id, query, date_from, date_to):
                if message_id in seen:
                    continue
                seen.add(message_id)
                message = self.fetch_message(account_id, message_id)
                if message.attachments:
                    messages.append(message)

        logger.debug(
            f"Attachment search on {account_id}: {len(queries)} queries, "
            f"{len(messages)} messages with attachments"
        )
        return messages

    def revoke_credential(self, account_id: str, credential: Optional[str] = None) -> None:
        """Revoke the stored credential of an account."""
        self._request(
            "POST",
            f"/api/accounts/{account_id}/revoke",
            json_data={"credential": credential} if credential else None,
        )
        logger.info(f"Revoked mailbox credential for {account_id}")
