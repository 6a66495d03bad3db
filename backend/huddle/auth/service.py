"""Bearer-token identity verification against an HTTP userinfo endpoint.

The identity provider is a black box: we send the client's token and get
back either a profile (verified identity) or a rejection.

1. GET ``userinfo_url`` with ``Authorization: Bearer <token>``
2. 200 with a subject -> VerifiedIdentity
3. 401/403, a missing subject, or a transport failure -> AuthenticationError

A verified identity replaces the client-supplied persistent identity and
fills in display name, avatar and email from the provider's profile.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from huddle.chat.errors import AuthenticationError
from huddle.chat.models import IdentityInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedIdentity:
    """Profile returned by the identity provider for a valid token."""
    subject: str
    name: Optional[str] = None
    email: Optional[str] = None
    picture: Optional[str] = None


class IdentityVerifier:
    """Resolves tokens to verified identities over HTTP."""

    def __init__(
        self,
        userinfo_url: str,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.userinfo_url = userinfo_url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def verify(self, token: str) -> VerifiedIdentity:
        """Verify a bearer token.

        Returns:
            The VerifiedIdentity of the token's owner.

        Raises:
            AuthenticationError: If the provider rejects the token or cannot
                be reached.
        """
        if not token:
            raise AuthenticationError("empty token")

        headers = {"Authorization": f"Bearer {token}"}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.get(self.userinfo_url, headers=headers)
        except httpx.HTTPError as e:
            raise AuthenticationError(f"identity provider unreachable: {e}") from e

        if resp.status_code in (401, 403):
            raise AuthenticationError(f"token rejected ({resp.status_code})")
        try:
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPStatusError, ValueError) as e:
            raise AuthenticationError(f"bad identity provider response: {e}") from e

        subject = data.get("sub") or data.get("id")
        if not subject:
            raise AuthenticationError("identity provider returned no subject")

        return VerifiedIdentity(
            subject=str(subject),
            name=data.get("name") or data.get("username") or data.get("email"),
            email=data.get("email"),
            picture=data.get("picture") or data.get("image_url"),
        )


def apply_verified_identity(identity: IdentityInfo, verified: VerifiedIdentity) -> IdentityInfo:
    """Overlay a verified profile onto client-supplied join fields.

    The verified subject always wins; profile name, avatar and email win
    when the provider has them.
    """
    return identity.model_copy(update={
        "persistentIdentity": verified.subject,
        "displayName": verified.name or identity.displayName,
        "avatar": verified.picture or identity.avatar,
        "email": verified.email or identity.email,
        "authenticated": True,
    })
