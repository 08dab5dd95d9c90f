"""Verification of bearer tokens into authenticated claims."""

from __future__ import annotations

import time
from typing import Any, Dict, List, Mapping, Optional

import jwt
import requests

from ..config import TenancyConfig
from ..errors import AuthorizationError

JWKS_CACHE_SECONDS = 300


class ClaimsVerifier:
    """Validate JWTs with a shared secret (HS256) or a JWKS endpoint."""

    def __init__(
        self,
        jwt_secret: Optional[str] = None,
        jwks_url: Optional[str] = None,
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        leeway: int = 30,
    ) -> None:
        if not jwt_secret and not jwks_url:
            raise ValueError("ClaimsVerifier needs a jwt_secret or a jwks_url")
        self.jwt_secret = jwt_secret
        self.jwks_url = jwks_url
        self.audience = audience
        self.issuer = issuer
        self.leeway = leeway
        self._jwks_cache: List[Mapping[str, Any]] = []
        self._last_fetch: float = 0

    @classmethod
    def from_config(cls, config: TenancyConfig) -> Optional["ClaimsVerifier"]:
        if not config.jwt_secret and not config.jwks_url:
            return None
        return cls(
            jwt_secret=config.jwt_secret,
            jwks_url=config.jwks_url,
            audience=config.audience,
            issuer=config.issuer,
            leeway=config.leeway,
        )

    def _fetch_jwks(self) -> None:
        resp = requests.get(self.jwks_url, timeout=5)
        resp.raise_for_status()
        self._jwks_cache = resp.json().get("keys", [])
        self._last_fetch = time.time()

    def _decode_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {"leeway": self.leeway}
        if self.audience:
            options["audience"] = self.audience
        else:
            options["options"] = {"verify_aud": False}
        if self.issuer:
            options["issuer"] = self.issuer
        return options

    def verify(self, token: str) -> Dict[str, Any]:
        """Validate ``token`` and return its claims.

        Raises:
            AuthorizationError: If the token is malformed, expired or signed
                by an unknown key.
        """
        try:
            if self.jwt_secret:
                return jwt.decode(
                    token, self.jwt_secret, algorithms=["HS256"], **self._decode_options()
                )
            return self._verify_with_jwks(token)
        except jwt.PyJWTError as exc:
            raise AuthorizationError(f"Invalid token: {exc}") from exc

    def _verify_with_jwks(self, token: str) -> Dict[str, Any]:
        now = time.time()
        if not self._jwks_cache or now - self._last_fetch > JWKS_CACHE_SECONDS:
            self._fetch_jwks()

        header = jwt.get_unverified_header(token)
        for key in self._jwks_cache:
            if key.get("kid") == header.get("kid"):
                return jwt.decode(
                    token,
                    jwt.algorithms.RSAAlgorithm.from_jwk(key),
                    algorithms=[header.get("alg", "RS256")],
                    **self._decode_options(),
                )
        raise jwt.exceptions.InvalidSignatureError("No matching JWK found.")

    def claims_from_headers(self, headers: Mapping[str, str]) -> Optional[Dict[str, Any]]:
        """Verify the ``Authorization: Bearer`` token in ``headers``, if any."""
        authorization = get_header(headers, "Authorization")
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise AuthorizationError("Authorization header must be a bearer token")
        return self.verify(token.strip())


def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None
