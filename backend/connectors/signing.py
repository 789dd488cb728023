"""RSA-PSS request signing for authenticated platform endpoints.

The signed message is ``timestamp + METHOD + path`` where ``path`` carries the full
API prefix (``/trade-api/v2/...``) and no query string. Signatures use SHA-256 with
MGF1(SHA-256) and a digest-length salt, base64-encoded.
"""

from __future__ import annotations

import base64
import re
import time
from typing import Any, Callable
from urllib.parse import urlparse

import httpx
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from loguru import logger

from predictwatch.core.config import Settings, get_settings

from .fetcher import UpstreamFetchError

ACCESS_KEY_HEADER = "KALSHI-ACCESS-KEY"
ACCESS_TIMESTAMP_HEADER = "KALSHI-ACCESS-TIMESTAMP"
ACCESS_SIGNATURE_HEADER = "KALSHI-ACCESS-SIGNATURE"

PKCS8_CONVERSION_HINT = (
    "Convert the key to PKCS#8 and paste the result instead: "
    "openssl pkcs8 -topk8 -nocrypt -in key.pem -out key_pkcs8.pem"
)

_PEM_BLOCK = re.compile(
    r"-----BEGIN (?P<label>[A-Z ]+)-----(?P<body>.+?)-----END (?P=label)-----",
    re.DOTALL,
)


class PrivateKeyFormatError(ValueError):
    """The configured private key cannot be used for request signing."""


class AuthenticatedRequestError(RuntimeError):
    """Network-layer failure (DNS, refused connection, timeout) on a signed request."""


def normalize_pem(pem: str) -> str:
    """Unify line endings and expand literal ``\\n`` sequences pasted from env files."""

    text = pem.replace("\\n", "\n").replace("\r\n", "\n").replace("\r", "\n")
    return text.strip()


def _reencode_as_pkcs8(pem: str) -> bytes:
    """Decode the armored DER body (PKCS#1 or mislabeled PKCS#8) and emit a PKCS#8 PEM."""

    match = _PEM_BLOCK.search(pem)
    if not match:
        raise ValueError("no PEM block found")
    body = "".join(match.group("body").split())
    der = base64.b64decode(body, validate=True)
    key = serialization.load_der_private_key(der, password=None)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_private_key(pem: str) -> rsa.RSAPrivateKey:
    """Load an unencrypted RSA private key, attempting one PKCS#8 re-encoding on rejection."""

    if not pem or not pem.strip():
        raise PrivateKeyFormatError("A private key is required for authenticated requests.")

    normalized = normalize_pem(pem)
    try:
        key = serialization.load_pem_private_key(normalized.encode("utf-8"), password=None)
    except TypeError as exc:
        raise PrivateKeyFormatError(
            "The private key is password protected; provide an unencrypted key. "
            + PKCS8_CONVERSION_HINT
        ) from exc
    except (ValueError, UnsupportedAlgorithm) as exc:
        logger.warning("Private key rejected ({}); retrying as PKCS#8", exc)
        try:
            key = serialization.load_pem_private_key(_reencode_as_pkcs8(normalized), password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as convert_exc:
            raise PrivateKeyFormatError(
                "Unsupported private key format. " + PKCS8_CONVERSION_HINT
            ) from convert_exc

    if not isinstance(key, rsa.RSAPrivateKey):
        raise PrivateKeyFormatError("Request signing requires an RSA private key.")
    return key


def signing_message(timestamp: str, method: str, path: str) -> bytes:
    path_without_query = path.split("?", 1)[0]
    return f"{timestamp}{method.upper()}{path_without_query}".encode("utf-8")


def sign_request(
    private_key: rsa.RSAPrivateKey | str,
    timestamp: str,
    method: str,
    path: str,
    *,
    salt_length: int | Any = padding.PSS.DIGEST_LENGTH,
) -> str:
    """Return the base64 RSA-PSS signature over ``timestamp + method + path``."""

    key = load_private_key(private_key) if isinstance(private_key, str) else private_key
    signature = key.sign(
        signing_message(timestamp, method, path),
        padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=salt_length),
        hashes.SHA256(),
    )
    return base64.b64encode(signature).decode("utf-8")


def _milliseconds() -> str:
    return str(int(time.time() * 1000))


class SignedRequestClient:
    """GET client for endpoints that require a signed API key."""

    def __init__(
        self,
        *,
        api_base: str,
        api_key_id: str,
        private_key_pem: str,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
        clock: Callable[[], str] = _milliseconds,
    ) -> None:
        cfg = settings or get_settings()
        self.api_base = api_base.rstrip("/")
        self.api_key_id = api_key_id
        self.timeout = cfg.http_timeout_seconds
        self._private_key = load_private_key(private_key_pem)
        self._clock = clock
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=self.timeout)

    def signing_path(self, path: str) -> str:
        request_path = path if path.startswith("/") else f"/{path}"
        prefix = urlparse(self.api_base).path.rstrip("/")
        return f"{prefix}{request_path}".split("?", 1)[0]

    def headers_for(self, method: str, path: str) -> dict[str, str]:
        timestamp = self._clock()
        signature = sign_request(self._private_key, timestamp, method, self.signing_path(path))
        return {
            "Accept": "application/json",
            ACCESS_KEY_HEADER: self.api_key_id,
            ACCESS_TIMESTAMP_HEADER: timestamp,
            ACCESS_SIGNATURE_HEADER: signature,
        }

    def get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        request_path = path if path.startswith("/") else f"/{path}"
        url = f"{self.api_base}{request_path}"
        headers = self.headers_for("GET", request_path)
        try:
            response = self.client.get(url, params=params, headers=headers, timeout=self.timeout)
        except httpx.TransportError as exc:
            raise AuthenticatedRequestError(f"fetch failed ({exc.__class__.__name__}: {exc})") from exc

        if response.is_error:
            raise UpstreamFetchError(
                f"GET {request_path} returned {response.status_code}: "
                f"{response.text[:500] or response.reason_phrase}",
                url=url,
                status_code=response.status_code,
                body=response.text[:500],
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamFetchError(
                f"GET {request_path} returned a non-JSON body",
                url=url,
                status_code=response.status_code,
                body=response.text[:500],
            ) from exc
        return payload if isinstance(payload, dict) else {"data": payload}

    def collect(self, path: str, *, items_key: str, page_size: int = 200) -> list[dict[str, Any]]:
        """Follow cursors on a signed listing endpoint until exhausted."""

        results: list[dict[str, Any]] = []
        cursor: str | None = None
        seen_cursors: set[str] = set()
        while True:
            params: dict[str, Any] = {"limit": page_size}
            if cursor:
                params["cursor"] = cursor
            payload = self.get(path, params)
            items = payload.get(items_key)
            if isinstance(items, list):
                results.extend(item for item in items if isinstance(item, dict))
            cursor = payload.get("cursor") or None
            if not cursor:
                return results
            cursor = str(cursor)
            if cursor in seen_cursors:
                raise UpstreamFetchError(
                    f"GET {path} repeated cursor {cursor!r}",
                    url=f"{self.api_base}{path}",
                )
            seen_cursors.add(cursor)

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "SignedRequestClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = [
    "AuthenticatedRequestError",
    "PrivateKeyFormatError",
    "SignedRequestClient",
    "load_private_key",
    "normalize_pem",
    "sign_request",
    "signing_message",
]
