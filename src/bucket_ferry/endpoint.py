# src/bucket_ferry/endpoint.py
"""
Parses free-form endpoint strings into typed `StorageEndpoint` descriptors.

Azure SAS URLs are recognized by their host (`*.blob.core.*`) or by a `sig`
query parameter; anything else is treated as an S3-compatible endpoint.
Parsing is pure: no DNS lookups, no network calls.
"""

import ipaddress
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import ParseResult, parse_qsl, quote, urlparse, urlunparse

from bucket_ferry.exceptions import ConfigurationError
from bucket_ferry.models import Provider

AWS_HOST_SUFFIX: str = ".amazonaws.com"


@dataclass(frozen=True)
class StorageEndpoint:
    """
    A resolved storage endpoint.

    Attributes:
        provider (Provider): Which API family the endpoint speaks.
        host (str): Host name, including ":port" when one was given.
        scheme (str): "http" or "https".
        path_style (bool): Whether S3 buckets go in the path rather than
            the host name. Always False for Azure.
        region (str, optional): Signing region for S3 endpoints.
        base_path (str): Path prefix of an S3 endpoint behind a gateway,
            without a trailing slash.
        sas_token (str, optional): Azure SAS query string, percent-encoded.
        container (str, optional): Container a container-scoped SAS is
            bound to.
    """

    provider: Provider
    host: str
    scheme: str
    path_style: bool
    region: Optional[str] = None
    base_path: str = ""
    sas_token: Optional[str] = None
    container: Optional[str] = None

    @property
    def base_url(self) -> str:
        """The endpoint URL without any bucket, key or query string."""
        return f"{self.scheme}://{self.host}{self.base_path}"

    @property
    def account(self) -> Tuple[Provider, str, str]:
        """Identifies the storage account, ignoring SAS tokens, containers and scheme."""
        return (self.provider, self.host.lower(), self.base_path)

    @property
    def url(self) -> str:
        """A URL that parses back into an equal descriptor."""
        if self.provider == Provider.AZURE_BLOB:
            path: str = f"/{self.container}" if self.container else ""
            query: str = f"?{self.sas_token}" if self.sas_token else ""
            return f"{self.scheme}://{self.host}{path}{query}"
        return self.base_url

    def object_url(self, bucket: str, key: Optional[str] = None) -> str:
        """
        Builds the unsigned URL of a bucket or object.

        Args:
            bucket (str): The bucket or container name.
            key (str, optional): The object key; omitted for bucket URLs.

        Returns:
            str: The URL. Azure URLs carry the SAS token as query string.
        """
        safe_key: str = quote(key, safe="/~") if key else ""
        if self.provider == Provider.AZURE_BLOB:
            path: str = f"/{bucket}" + (f"/{safe_key}" if key else "")
            query: str = f"?{self.sas_token}" if self.sas_token else ""
            return f"{self.scheme}://{self.host}{path}{query}"
        if self.path_style:
            return f"{self.base_url}/{bucket}" + (f"/{safe_key}" if key else "")
        return f"{self.scheme}://{bucket}.{self.host}{self.base_path}/{safe_key}"

    @staticmethod
    def redacted(url: str) -> str:
        """Strips the query string (SAS tokens, signatures) from a URL for logging."""
        parsed: ParseResult = urlparse(url)
        if not parsed.query:
            return url
        return urlunparse(parsed._replace(query="redacted"))


def _is_ip_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
        return True
    except ValueError:
        return False


def is_local_or_private_host(host: str) -> bool:
    """
    Returns True for localhost, mDNS names and private IPv4 ranges.

    Args:
        host (str): A host name without port.
    """
    lower: str = host.lower()
    if lower == "localhost" or lower.endswith(".local"):
        return True
    try:
        address = ipaddress.ip_address(lower.strip("[]"))
    except ValueError:
        return False
    return address.is_private or address.is_loopback


def _looks_like_azure(parsed: ParseResult) -> bool:
    host: str = (parsed.hostname or "").lower()
    if ".blob.core." in f".{host}":
        return True
    return any(name.lower() == "sig" for name, _ in parse_qsl(parsed.query))


def parse_endpoint(
    raw: str,
    region: Optional[str] = None,
    path_style: Optional[bool] = None,
) -> StorageEndpoint:
    """
    Resolves an endpoint string into a `StorageEndpoint`.

    Args:
        raw (str): An endpoint URL, bare host name or Azure SAS URL.
        region (str, optional): Signing region hint for S3 endpoints.
        path_style (bool, optional): Forces path-style (True) or
            virtual-host style (False) bucket addressing for S3.

    Returns:
        StorageEndpoint: The resolved, immutable descriptor.

    Raises:
        ConfigurationError: If the string is empty, not a URL or has no host.
    """
    trimmed: str = (raw or "").strip()
    if not trimmed:
        raise ConfigurationError("Endpoint must not be empty.")

    has_scheme: bool = "://" in trimmed
    candidate: str = trimmed if has_scheme else f"https://{trimmed}"
    try:
        parsed: ParseResult = urlparse(candidate)
        port: Optional[int] = parsed.port
    except ValueError as e:
        raise ConfigurationError(f"Endpoint '{trimmed}' is not a valid URL: {e}") from e

    hostname: Optional[str] = parsed.hostname
    if not hostname:
        raise ConfigurationError(f"Endpoint '{trimmed}' has no host.")
    if parsed.scheme not in ("http", "https"):
        raise ConfigurationError(
            f"Endpoint '{trimmed}' has unsupported scheme '{parsed.scheme}'."
        )

    host: str = hostname if port is None else f"{hostname}:{port}"

    if _looks_like_azure(parsed):
        segments: List[str] = [s for s in parsed.path.split("/") if s]
        return StorageEndpoint(
            provider=Provider.AZURE_BLOB,
            host=host,
            scheme=parsed.scheme,
            path_style=False,
            region=None,
            sas_token=parsed.query or None,
            container=segments[0] if segments else None,
        )

    if has_scheme:
        scheme: str = parsed.scheme
    else:
        scheme = "http" if is_local_or_private_host(hostname) else "https"

    if path_style is None:
        # Virtual-host addressing needs wildcard DNS, which only AWS
        # guarantees; IPs and explicit ports never have it.
        path_style = (
            not hostname.lower().endswith(AWS_HOST_SUFFIX)
            or _is_ip_address(hostname)
            or port is not None
        )

    return StorageEndpoint(
        provider=Provider.S3,
        host=host,
        scheme=scheme,
        path_style=path_style,
        region=region or None,
        base_path=parsed.path.rstrip("/"),
    )
