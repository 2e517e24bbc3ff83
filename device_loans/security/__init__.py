from device_loans.security.jwt_hmac import AuthClaims, AuthError, HmacJwtVerifier, require_scope_or_role

__all__ = ["AuthClaims", "AuthError", "HmacJwtVerifier", "require_scope_or_role"]
