"""
PKCE (RFC 7636) helpers for login initiation. S256 only.
Verifier generation, challenge derivation and the provider authorize URL.
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from urllib.parse import urlencode

from pkce_client.errors import CryptoUnavailable

# RFC 7636 section 4.1: unreserved characters
UNRESERVED_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
VERIFIER_MIN_LENGTH = 43
VERIFIER_MAX_LENGTH = 128


@dataclass(frozen=True)
class PkcePair:
    code_verifier: str
    code_challenge: str


def generate_verifier(length: int = 64) -> str:
    """
    Random code_verifier of `length` chars from the unreserved set.
    66 symbols give ~6 bits per char, so the default 64 chars carry ~387 bits (>= 256 required).
    """
    if not VERIFIER_MIN_LENGTH <= length <= VERIFIER_MAX_LENGTH:
        raise ValueError(f"code_verifier length must be between 43 and 128, got {length}")
    try:
        return "".join(secrets.choice(UNRESERVED_CHARS) for _ in range(length))
    except NotImplementedError as e:
        # os.urandom has no source on this platform
        raise CryptoUnavailable("no secure random source available") from e


def _sha256(data: bytes) -> bytes:
    try:
        hasher = hashlib.new("sha256")
    except ValueError as e:
        raise CryptoUnavailable("SHA-256 is not available in this environment") from e
    hasher.update(data)
    return hasher.digest()


def derive_challenge(verifier: str) -> str:
    """code_challenge = BASE64URL(SHA256(ascii(verifier))), no padding."""
    digest = _sha256(verifier.encode("ascii"))
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce() -> PkcePair:
    """Fresh verifier and its S256 challenge, one pair per login attempt."""
    verifier = generate_verifier()
    return PkcePair(code_verifier=verifier, code_challenge=derive_challenge(verifier))


def build_authorize_url(
    *,
    authorize_url: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    code_challenge: str,
) -> str:
    """Build provider /authorize URL with the PKCE parameters."""
    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "code_challenge_method": "S256",
        "code_challenge": code_challenge,
        "scope": scope,
    }
    return f"{authorize_url}?{urlencode(params)}"
