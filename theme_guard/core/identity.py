# theme_guard/core/identity.py
"""
Caller identity, derived once per request by the dispatch layer.

The raw network address never leaves this module: everything downstream
(rate-limit keys, session binding, audit entries) sees only a salted hash.
"""

import hashlib
import ipaddress
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

# Proxy headers in order of preference
PROXY_HEADERS = ("CF-Connecting-IP", "X-Forwarded-For", "X-Real-IP")


def public_address(value: str) -> Optional[str]:
    """The normalized address if `value` is a routable IP, else None"""
    try:
        address = ipaddress.ip_address(value.strip())
    except ValueError:
        return None
    if (address.is_private or address.is_reserved or address.is_loopback
            or address.is_link_local or address.is_multicast or address.is_unspecified):
        return None
    return str(address)


def get_real_ip(request: Request, trust_proxy_headers: bool = True) -> str:
    """
    Get the client address, considering proxy headers.
    Important for deployments behind a CDN or load balancer.

    A header value is used only when it is a routable IP address; anything
    else (garbage, private or reserved ranges) falls through to the next
    header and finally to the socket peer.
    """
    if trust_proxy_headers:
        for header in PROXY_HEADERS:
            value = request.headers.get(header)
            if not value:
                continue
            # The last X-Forwarded-For entry is the one our own proxy appended
            address = public_address(value.split(",")[-1])
            if address:
                return address

    return get_remote_address(request) or "0.0.0.0"


def hash_value(value: str, salt: str) -> str:
    return hashlib.sha256(f"{value}_{salt}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class RequestIdentity:
    """Hashed caller address plus the authenticated user id, if any"""
    address_hash: str
    user_id: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    def rate_limit_identifier(self, include_user_id: bool = False) -> str:
        """
        Identifier used in rate-limit keys.

        `include_user_id` is a deployment-wide policy: with it, authenticated
        callers get their own bucket per (address, user); without it every
        caller is limited by address alone.
        """
        if include_user_id and self.user_id:
            return hashlib.sha256(f"{self.address_hash}_{self.user_id}".encode("utf-8")).hexdigest()
        return self.address_hash


class IdentityResolver:
    """Builds a RequestIdentity from an incoming request"""

    def __init__(self, salt: Optional[str] = None, trust_proxy_headers: bool = True):
        if not salt:
            salt = secrets.token_hex(32)
            logger.warning("No IDENTITY_SALT set. Generated a temporary salt for this process.")
        self._salt = salt
        self.trust_proxy_headers = trust_proxy_headers

    def hash_address(self, address: str) -> str:
        return hash_value(address, self._salt)

    def resolve(self, request: Request, user_id: Optional[str] = None) -> RequestIdentity:
        address = get_real_ip(request, self.trust_proxy_headers)
        return RequestIdentity(
            address_hash=self.hash_address(address),
            user_id=str(user_id) if user_id else None,
        )
