# src/bucket_ferry/signer.py
"""
Request authentication for both provider families.

S3-compatible requests are signed with SigV4 using botocore's signer, either
immediately (headers) or as a presigned URL (query string). Azure requests
are authorized by the SAS token already embedded in the endpoint; for those
the core only checks that a token is present and has not expired.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional
from urllib.parse import parse_qsl

from botocore.auth import SIGV4_TIMESTAMP, S3SigV4Auth, S3SigV4QueryAuth, SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials

from bucket_ferry.endpoint import StorageEndpoint
from bucket_ferry.exceptions import AuthError, ConfigurationError

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_REGION: str = "us-east-1"
SERVICE_NAME: str = "s3"
MIN_PRESIGN_EXPIRY_S: int = 1
MAX_PRESIGN_EXPIRY_S: int = 7 * 24 * 3600

_SIGNATURE_RE: re.Pattern[str] = re.compile(r"Signature=([0-9a-f]{64})")


def _add_auth(auth: SigV4Auth, request: AWSRequest, now: Optional[datetime]) -> None:
    """
    Signs `request` in place, at `now` when given and at the current time otherwise.

    botocore stamps the wall clock inside `add_auth`, so an explicit instant
    is applied by running its signing steps on a preset timestamp.
    """
    if now is None:
        auth.add_auth(request)
        return
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    request.context["timestamp"] = now.strftime(SIGV4_TIMESTAMP)
    auth._modify_request_before_signing(request)
    canonical_request: str = auth.canonical_request(request)
    string_to_sign: str = auth.string_to_sign(request, canonical_request)
    auth._inject_signature_to_request(request, auth.signature(string_to_sign, request))


@dataclass(frozen=True)
class SignedRequest:
    """
    A request ready to send.

    Attributes:
        method (str): The HTTP method.
        url (str): The request URL.
        headers (Dict[str, str]): Headers including the authorization ones.
        signature (str): The hex SigV4 signature.
    """

    method: str
    url: str
    headers: Dict[str, str]
    signature: str


class S3Signer:
    """
    SigV4 signer for S3-compatible APIs.

    The signing key is derived from (secret key, date, region, "s3"), so two
    calls at the same instant with the same inputs produce the same
    signature, and changing any signed component changes it.
    """

    def __init__(self, access_key: str, secret_key: str, region: Optional[str]) -> None:
        """
        Initialize the signer.

        Args:
            access_key (str): The access key id.
            secret_key (str): The secret access key.
            region (str, optional): Signing region; defaults to us-east-1.

        Raises:
            AuthError: If either credential is empty.
        """
        if not access_key or not secret_key:
            raise AuthError("S3 signing requires both an access key and a secret key.")
        self._credentials: Credentials = Credentials(access_key, secret_key)
        self._region: str = region or DEFAULT_REGION

    @property
    def region(self) -> str:
        return self._region

    def sign(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: bytes = b"",
        now: Optional[datetime] = None,
    ) -> SignedRequest:
        """
        Signs a request for immediate use.

        Args:
            method (str): The HTTP method.
            url (str): The full request URL, query string included.
            headers (Mapping[str, str], optional): Extra headers to sign.
            body (bytes): The request payload; its SHA-256 is signed.
            now (datetime, optional): The signing instant; naive values are
                taken as UTC. Defaults to the current time.

        Returns:
            SignedRequest: The request with `Authorization`, `X-Amz-Date`
                and `X-Amz-Content-SHA256` headers set.
        """
        request: AWSRequest = AWSRequest(
            method=method.upper(), url=url, headers=dict(headers or {}), data=body
        )
        _add_auth(S3SigV4Auth(self._credentials, SERVICE_NAME, self._region), request, now)
        authorization: str = request.headers["Authorization"]
        match: Optional[re.Match[str]] = _SIGNATURE_RE.search(authorization)
        return SignedRequest(
            method=request.method,
            url=request.url,
            headers={k: v for k, v in request.headers.items()},
            signature=match.group(1) if match else "",
        )

    def presign(
        self, method: str, url: str, expires_in: int, now: Optional[datetime] = None
    ) -> str:
        """
        Produces a presigned URL valid for `expires_in` seconds.

        Args:
            method (str): The HTTP method the URL will be used with.
            url (str): The unsigned object URL.
            expires_in (int): Lifetime in seconds, clamped to 1 s .. 7 days.
            now (datetime, optional): The signing instant; defaults to now.

        Returns:
            str: The URL with the X-Amz-* query parameters and signature.
        """
        expires: int = min(max(int(expires_in), MIN_PRESIGN_EXPIRY_S), MAX_PRESIGN_EXPIRY_S)
        request: AWSRequest = AWSRequest(method=method.upper(), url=url)
        _add_auth(
            S3SigV4QueryAuth(self._credentials, SERVICE_NAME, self._region, expires=expires),
            request,
            now,
        )
        return request.url


def parse_sas_expiry(sas_token: str) -> Optional[datetime]:
    """
    Reads the signed expiry (`se`) of a SAS token.

    Args:
        sas_token (str): The SAS query string.

    Returns:
        datetime, optional: The expiry in UTC, or None if the token has none.

    Raises:
        ConfigurationError: If `se` is present but not an ISO-8601 time.
    """
    params: Dict[str, str] = dict(parse_qsl(sas_token))
    raw: Optional[str] = params.get("se")
    if not raw:
        return None
    try:
        expiry: datetime = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as e:
        raise ConfigurationError(f"SAS token has an unreadable expiry '{raw}'.") from e
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry


def validate_sas(endpoint: StorageEndpoint, now: Optional[datetime] = None) -> None:
    """
    Checks that an Azure endpoint carries a usable SAS token.

    Args:
        endpoint (StorageEndpoint): An Azure Blob endpoint.
        now (datetime, optional): The reference time; defaults to now (UTC).

    Raises:
        ConfigurationError: If the endpoint has no SAS signature.
        AuthError: If the token's signed expiry has passed.
    """
    token: str = endpoint.sas_token or ""
    if not any(name == "sig" for name, _ in parse_qsl(token)):
        raise ConfigurationError(
            f"Azure endpoint '{endpoint.host}' has no SAS signature (sig=)."
        )
    expiry: Optional[datetime] = parse_sas_expiry(token)
    current: datetime = now or datetime.now(timezone.utc)
    if expiry is not None and expiry <= current:
        raise AuthError(
            f"SAS token for '{endpoint.host}' expired at {expiry.isoformat()}."
        )
