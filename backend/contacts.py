"""
Contact Directory — Looks up contact attributes for conditions and templates.

``Contact.<attr> == 'value'`` conditions and ``{{contact.name}}`` tokens
resolve against the ContactInfo returned here. The directory is an
external collaborator: the CRM owns contacts, the flow engine only reads.

Backends:
  - InMemoryContactDirectory  (tests, demos, embedding callers)
  - RestContactDirectory      (GET {base_url}{contact_path}, bearer auth)
"""
from __future__ import annotations

import abc
from typing import Any, Iterable, Optional

import httpx
import structlog
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import ContactsConfig, get_settings
from models.schemas import ContactInfo

logger = structlog.get_logger()


class ContactLookupError(Exception):
    """The contact backend could not be reached or answered with an error."""


class ContactDirectory(abc.ABC):
    """Abstract base for all contact lookups."""

    @abc.abstractmethod
    async def get_contact(self, contact_id: str) -> Optional[ContactInfo]:
        """Fetch one contact, or None when it does not exist."""
        ...

    async def close(self):
        pass


class InMemoryContactDirectory(ContactDirectory):

    def __init__(self, contacts: Iterable[ContactInfo] = ()):
        self._contacts: dict[str, ContactInfo] = {c.id: c for c in contacts}

    def upsert(self, contact: ContactInfo) -> None:
        self._contacts[contact.id] = contact

    async def get_contact(self, contact_id: str) -> Optional[ContactInfo]:
        contact = self._contacts.get(contact_id)
        return contact.model_copy(deep=True) if contact else None


_CORE_FIELDS = {"id", "name", "phone", "phoneNumber", "email", "tags", "attributes", "customFields"}


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def contact_from_payload(contact_id: str, payload: dict[str, Any]) -> ContactInfo:
    """
    Map a CRM contact document onto ContactInfo. Unknown fields become
    attributes; scalar fields are coerced to text (CRMs send phones as numbers).
    Raises ValueError when the document is not an object.
    """
    if not isinstance(payload, dict):
        raise ValueError(f"expected a contact object, got {type(payload).__name__}")
    if isinstance(payload.get("data"), dict):
        payload = payload["data"]
    attributes = {k: v for k, v in payload.items() if k not in _CORE_FIELDS}
    for extra in ("customFields", "attributes"):
        if isinstance(payload.get(extra), dict):
            attributes.update(payload[extra])
    tags = payload.get("tags") or []
    if isinstance(tags, str):
        tags = [t.strip() for t in tags.split(",") if t.strip()]
    elif not isinstance(tags, list):
        tags = [tags]
    return ContactInfo(
        id=_text(payload.get("id") or contact_id),
        name=_text(payload.get("name")),
        phone=_text(payload.get("phone") or payload.get("phoneNumber")),
        email=_text(payload.get("email")),
        tags=[str(t) for t in tags],
        attributes=attributes,
    )


class RestContactDirectory(ContactDirectory):
    """
    REST contact lookup.
    Transport failures are retried (3 attempts, exponential backoff);
    404 means the contact does not exist.
    """

    def __init__(self, config: ContactsConfig = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_settings().contacts
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_token:
                headers["Authorization"] = f"Bearer {self.config.auth_token}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout,
            )
        return self.client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _fetch(self, contact_id: str) -> httpx.Response:
        client = await self._get_client()
        url = self.config.contact_path.replace("{contact_id}", contact_id)
        return await client.get(url)

    async def get_contact(self, contact_id: str) -> Optional[ContactInfo]:
        try:
            response = await self._fetch(contact_id)
        except httpx.TransportError as e:
            logger.error("contact_lookup_unreachable", contact_id=contact_id, error=str(e))
            raise ContactLookupError(f"contact backend unreachable: {e}") from e

        if response.status_code == 404:
            return None
        try:
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPStatusError, ValueError) as e:
            logger.error("contact_lookup_failed", contact_id=contact_id,
                         status=response.status_code, error=str(e))
            raise ContactLookupError(f"contact lookup failed: {e}") from e
        try:
            return contact_from_payload(contact_id, payload)
        except (ValidationError, ValueError) as e:
            logger.error("contact_payload_invalid", contact_id=contact_id, error=str(e))
            raise ContactLookupError(f"invalid contact payload: {e}") from e

    async def close(self):
        if self.client:
            await self.client.aclose()
            self.client = None


def create_contact_directory(config: ContactsConfig = None) -> ContactDirectory:
    """Factory function to create the configured contact directory."""
    config = config or get_settings().contacts
    if config.backend == "rest" and config.base_url and not config.base_url.startswith("${"):
        return RestContactDirectory(config)
    if config.backend == "rest":
        logger.warning("using_memory_contacts", reason="contacts base_url not configured")
    return InMemoryContactDirectory()
