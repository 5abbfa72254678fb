"""Verification of the `X-Twilio-Signature` header on voice webhooks.

Twilio signs each webhook with HMAC-SHA1 over the full request URL followed by
every POST parameter (name then value, sorted by name), keyed with the account
auth token. Behind a proxy the URL Twilio signed is the public one, not the one
the app observes, so both are tried.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from collections.abc import Iterable
from dataclasses import dataclass

_LOGGER = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Twilio-Signature"


@dataclass(slots=True, frozen=True)
class SignedRequest:
    """The parts of an inbound webhook that participate in its signature.

    Attributes:
        observed_url: Full URL as seen by the application.
        path: Request path, re-rooted on the public base URL.
        query: Raw query string, or ``""``.
        params: Form (or query) parameters in arrival order.
        signature: Value of the signature header, or ``""`` when absent.
    """

    observed_url: str
    path: str
    query: str
    params: tuple[tuple[str, str], ...]
    signature: str


def sign(auth_token: str, url: str, params: Iterable[tuple[str, str]]) -> str:
    """Returns the base64 signature Twilio would send for `url` and `params`."""
    payload = url + "".join(f"{name}{value}" for name, value in sorted(params, key=lambda item: item[0]))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def signed_url_candidates(request: SignedRequest, public_base_url: str) -> list[str]:
    """Lists the URLs Twilio may have signed, observed URL first."""
    public_url = public_base_url.rstrip("/") + request.path
    if request.query:
        public_url += f"?{request.query}"
    if public_url == request.observed_url:
        return [request.observed_url]
    return [request.observed_url, public_url]


class SignatureVerifier:
    """Checks webhook signatures for one Twilio account."""

    def __init__(self, auth_token: str, public_base_url: str) -> None:
        self._auth_token = auth_token
        self._public_base_url = public_base_url

    def verify(self, request: SignedRequest) -> bool:
        """Returns whether the request carries a valid signature.

        An empty auth token or a missing header never verifies.
        """
        if not self._auth_token:
            _LOGGER.error("Twilio signature check requested without an auth token.")
            return False
        if not request.signature:
            _LOGGER.debug("Webhook has no Twilio signature header.", extra={"path": request.path})
            return False

        for url in signed_url_candidates(request, self._public_base_url):
            if hmac.compare_digest(request.signature, sign(self._auth_token, url, request.params)):
                _LOGGER.debug("Twilio signature verified.", extra={"url": url})
                return True
        _LOGGER.debug(
            "Twilio signature mismatch.",
            extra={"path": request.path, "observed_url": request.observed_url},
        )
        return False
