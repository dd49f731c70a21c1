"""PKCE (RFC 7636) and state helpers."""

import base64
import hashlib
import hmac
import secrets
import string

# RFC 7636 section 4.1 unreserved characters
UNRESERVED_CHARACTERS = string.ascii_letters + string.digits + "-._~"

CODE_VERIFIER_LENGTH = 128
STATE_LENGTH = 32


def generate_random_string(length: int) -> str:
    """Draw a random string from the unreserved alphabet."""
    return "".join(secrets.choice(UNRESERVED_CHARACTERS) for _ in range(length))


def derive_code_challenge(code_verifier: str) -> str:
    """Compute the S256 code challenge for a verifier.

    Returns:
        Unpadded base64url encoding of sha256(code_verifier).
    """
    digest = hashlib.sha256(code_verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_code_challenge(code_verifier: str, code_challenge: str) -> bool:
    """Whether a verifier derives the given challenge."""
    return constant_time_equals(derive_code_challenge(code_verifier), code_challenge)


def constant_time_equals(received: str | None, expected: str | None) -> bool:
    """Compare two secrets without leaking timing.

    Empty values and values of different length never match.
    """
    if not received or not expected:
        return False
    if len(received) != len(expected):
        return False
    return hmac.compare_digest(received.encode(), expected.encode())
