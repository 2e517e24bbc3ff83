import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List


class AuthError(Exception):
    pass


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("ascii"))


def _b64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).decode("ascii").rstrip("=")


def _normalize_strings(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(x).strip() for x in value if str(x).strip()]
    if isinstance(value, str):
        return [x for x in value.split() if x]
    return []


@dataclass(frozen=True)
class AuthClaims:
    sub: str
    scopes: List[str]
    roles: List[str]
    raw: Dict[str, Any]

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes

    def has_role(self, role: str) -> bool:
        return role in self.roles


class HmacJwtVerifier:
    """
    HS256 bearer-token verifier for the device management routes.
    Scopes come from `scope` (space separated) or `permissions`; roles from `roles`.
    """

    def __init__(self, secret: str, issuer: str = "", audience: str = "", leeway_seconds: int = 0):
        self.secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    def verify(self, token: str) -> AuthClaims:
        parts = token.split(".")
        if len(parts) != 3:
            raise AuthError("Malformed JWT")
        header_b64, payload_b64, signature_b64 = parts

        try:
            header = json.loads(_b64url_decode(header_b64))
            provided_sig = _b64url_decode(signature_b64)
        except ValueError:
            raise AuthError("Malformed JWT")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise AuthError("Unsupported algorithm")

        signing_input = f"{header_b64}.{payload_b64}".encode("ascii")
        expected_sig = hmac.new(self.secret, signing_input, hashlib.sha256).digest()
        if not hmac.compare_digest(expected_sig, provided_sig):
            raise AuthError("Invalid signature")

        try:
            payload = json.loads(_b64url_decode(payload_b64))
        except ValueError:
            raise AuthError("Malformed JWT")
        if not isinstance(payload, dict):
            raise AuthError("Malformed JWT")

        now = int(datetime.now(timezone.utc).timestamp())
        exp = payload.get("exp")
        if exp is not None and now > int(exp) + self.leeway_seconds:
            raise AuthError("JWT expired")
        nbf = payload.get("nbf")
        if nbf is not None and now + self.leeway_seconds < int(nbf):
            raise AuthError("JWT not active yet")

        if self.issuer and payload.get("iss") != self.issuer:
            raise AuthError("Invalid issuer")
        if self.audience:
            aud = payload.get("aud")
            if isinstance(aud, list):
                if self.audience not in aud:
                    raise AuthError("Invalid audience")
            elif aud != self.audience:
                raise AuthError("Invalid audience")

        return AuthClaims(
            sub=str(payload.get("sub", "unknown")),
            scopes=_normalize_strings(payload.get("scope", payload.get("permissions"))),
            roles=_normalize_strings(payload.get("roles")),
            raw=payload,
        )

    def issue_for_tests(self, claims: Dict[str, Any]) -> str:
        """
        Test helper used by unit tests.
        """
        header = {"alg": "HS256", "typ": "JWT"}
        header_b64 = _b64url_encode(json.dumps(header, separators=(",", ":")).encode("utf-8"))
        payload_b64 = _b64url_encode(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
        signature = hmac.new(
            self.secret,
            f"{header_b64}.{payload_b64}".encode("ascii"),
            hashlib.sha256,
        ).digest()
        return f"{header_b64}.{payload_b64}.{_b64url_encode(signature)}"


def require_scope_or_role(claims: AuthClaims, scope: str, role: str) -> None:
    if claims.has_scope(scope) or claims.has_role(role):
        return
    raise AuthError(f"Requires scope '{scope}' or role '{role}'")
