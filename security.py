import logging
import threading
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx
from fastapi import Depends, Header, Request
from jose import JWTError, jwt
from pymongo.database import Database

from config import get_settings
from database import USERS, get_db
from errors import AuthError, DependencyError, ForbiddenError

logger = logging.getLogger(__name__)

FIREBASE_ISSUER = "https://securetoken.google.com/{project_id}"


class IdentityVerifier(Protocol):
    def verify(self, token: str) -> str:
        """Return the verified principal email or raise AuthError."""
        ...


def _email_claim(claims: Dict[str, Any]) -> str:
    email = claims.get("email")
    if not email:
        raise AuthError("Unauthorized access: Token carries no email")
    return email


class JWTIdentityVerifier:
    """Verifies identity-provider ID tokens and returns their ``email`` claim."""

    def __init__(self, key: str, algorithms: List[str], audience: Optional[str] = None):
        self._key = key
        self._algorithms = algorithms
        self._audience = audience

    def verify(self, token: str) -> str:
        if not self._key:
            raise AuthError("Token verification is not configured")
        try:
            claims: Dict[str, Any] = jwt.decode(
                token,
                self._key,
                algorithms=self._algorithms,
                audience=self._audience,
                options={"verify_aud": self._audience is not None},
            )
        except JWTError as e:
            raise AuthError(f"Unauthorized access: Invalid token ({e})")
        return _email_claim(claims)


class JWKSCache:
    """Signing keys by ``kid``, refreshed hourly or when an unknown kid shows up."""

    def __init__(self, url: str, fetch: Optional[Callable[[str], Dict[str, Any]]] = None,
                 ttl: timedelta = timedelta(hours=1)):
        self._url = url
        self._fetch = fetch or self._fetch_over_http
        self._ttl = ttl
        self._keys: Optional[Dict[str, Dict[str, Any]]] = None
        self._fetched_at: Optional[datetime] = None
        self._lock = threading.Lock()

    def get_signing_key(self, kid: str) -> Dict[str, Any]:
        if self._should_refresh() or kid not in (self._keys or {}):
            self._refresh()
        if kid not in (self._keys or {}):
            raise AuthError(f"Unauthorized access: Unknown signing key {kid}")
        return self._keys[kid]

    def _should_refresh(self) -> bool:
        if self._keys is None or self._fetched_at is None:
            return True
        return datetime.now(timezone.utc) - self._fetched_at > self._ttl

    def _refresh(self) -> None:
        with self._lock:
            jwks = self._fetch(self._url)
            self._keys = {key["kid"]: key for key in jwks.get("keys", []) if "kid" in key}
            self._fetched_at = datetime.now(timezone.utc)
            logger.info("Loaded %d signing keys from %s", len(self._keys), self._url)

    @staticmethod
    def _fetch_over_http(url: str) -> Dict[str, Any]:
        try:
            response = httpx.get(url, timeout=10.0)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise DependencyError(f"Could not load token signing keys: {e}")


class FirebaseIdentityVerifier:
    """Verifies Firebase ID tokens against Google's rotating signing keys."""

    def __init__(self, project_id: str, keys: JWKSCache):
        self._project_id = project_id
        self._keys = keys

    def verify(self, token: str) -> str:
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except JWTError as e:
            raise AuthError(f"Unauthorized access: Invalid token ({e})")
        if not kid:
            raise AuthError("Unauthorized access: Token has no key id")
        key = self._keys.get_signing_key(kid)
        try:
            claims: Dict[str, Any] = jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                audience=self._project_id,
                issuer=FIREBASE_ISSUER.format(project_id=self._project_id),
            )
        except JWTError as e:
            raise AuthError(f"Unauthorized access: Invalid token ({e})")
        if not claims.get("sub"):
            raise AuthError("Unauthorized access: Token has no subject")
        return _email_claim(claims)


@lru_cache
def get_identity_verifier() -> IdentityVerifier:
    settings = get_settings()
    if settings.firebase_project_id:
        return FirebaseIdentityVerifier(
            settings.firebase_project_id, JWKSCache(settings.firebase_jwks_url)
        )
    return JWTIdentityVerifier(
        settings.auth_token_secret,
        settings.algorithms,
        settings.auth_token_audience,
    )


# ---------------------------
# Gates
# ---------------------------

def verify_token(
    request: Request,
    authorization: Optional[str] = Header(None),
    verifier: IdentityVerifier = Depends(get_identity_verifier),
) -> str:
    if not authorization:
        raise AuthError("Unauthorized access: No token provided")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Unauthorized access: Invalid auth scheme")
    try:
        email = verifier.verify(token.strip()).lower()
    except AuthError as e:
        logger.warning("Token verification failed for %s: %s", request.url.path, e.message)
        raise
    request.state.decoded_email = email
    return email


def verify_admin(email: str = Depends(verify_token), db: Database = Depends(get_db)) -> Dict[str, Any]:
    user = db[USERS].find_one({"email": email})
    if not user or user.get("role") != "admin":
        raise ForbiddenError("Forbidden access: Admins only")
    return user
