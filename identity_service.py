"""
Client for the external identity service.

All lookups are keyed by opaque string ids and need a session token. The token
is obtained lazily, kept in a disk cache so sibling workers and later runs can
reuse it, and re-obtained when the service answers 401 (session inactive).

Read methods return plain dicts with the handful of fields the loader uses,
or None when the service does not know the id or cannot be reached.
"""
import logging
import time
from typing import Any, Dict, List, Optional

import requests
from diskcache import Cache


def _dig(doc: Dict[str, Any], dotted: str) -> Any:
    value: Any = doc
    for part in dotted.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


class IdentityServiceClient:
    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        token_cache: Optional[Cache] = None,
        timeout: float = 30,
        max_attempts: int = 3,
        token_ttl: int = 3600,
        http: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.token_cache = token_cache
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.token_ttl = token_ttl
        self.http = http or requests.Session()
        self.logger = logger or logging.getLogger("etl.identity_service")
        self._token: Optional[str] = None

    @classmethod
    def from_config(cls, cfg, token_cache: Optional[Cache] = None, logger=None):
        return cls(
            base_url=cfg.get("identity_service.base_url"),
            username=cfg.get_env_value("identity_service.username_env"),
            password=cfg.get_env_value("identity_service.password_env"),
            token_cache=token_cache,
            timeout=cfg.get("identity_service.timeout_seconds", 30),
            max_attempts=cfg.get("identity_service.max_attempts", 3),
            token_ttl=cfg.get("identity_service.token_ttl_seconds", 3600),
            logger=logger,
        )

    @property
    def _token_key(self) -> str:
        return f"identity_service_token:{self.base_url}:{self.username}"

    def session_token(self) -> str:
        if self._token:
            return self._token
        if self.token_cache is not None:
            cached = self.token_cache.get(self._token_key)
            if cached:
                self._token = cached
                return cached
        return self.authenticate()

    def authenticate(self) -> str:
        response = self.http.post(
            f"{self.base_url}/sessions",
            json={"username": self.username, "password": self.password},
            timeout=self.timeout,
        )
        response.raise_for_status()
        token = response.json()["session"]
        self._token = token
        if self.token_cache is not None:
            # Store with TTL so an abandoned token is not reused forever
            self.token_cache.set(self._token_key, token, expire=self.token_ttl)
        self.logger.info("Obtained new identity service session")
        return token

    def _forget_token(self) -> None:
        self._token = None
        if self.token_cache is not None:
            self.token_cache.delete(self._token_key)

    def _get(self, path: str) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}/{path}"
        reauthenticated = False
        attempt = 0
        while attempt < self.max_attempts:
            try:
                response = self.http.get(
                    url,
                    headers={"X-Session": self.session_token()},
                    timeout=self.timeout,
                )
            except requests.exceptions.RequestException as e:
                self.logger.warning(f"Identity service request failed for {path}: {e}")
                attempt += 1
                if attempt < self.max_attempts:
                    time.sleep(0.5 * (2**attempt))
                continue

            if response.status_code == 401 and not reauthenticated:
                self._forget_token()
                reauthenticated = True
                continue
            if response.status_code == 404:
                return None
            if response.status_code == 429 or response.status_code >= 500:
                self.logger.warning(
                    f"Identity service returned HTTP {response.status_code} for {path}"
                )
                attempt += 1
                if attempt < self.max_attempts:
                    time.sleep(0.5 * (2**attempt))
                continue
            if response.status_code != 200:
                self.logger.warning(
                    f"Identity service returned HTTP {response.status_code} for {path}"
                )
                return None
            return response.json()

        self.logger.warning(f"Giving up on {path} after {self.max_attempts} attempts")
        return None

    def read_identity(self, identity_id: str) -> Optional[Dict[str, Any]]:
        doc = self._get(f"identities/{identity_id}")
        if doc is None:
            return None
        country = _dig(doc, "mainAddress.country")
        return {
            "classification": doc.get("classification"),
            "country": country.upper() if country else None,
            "share_subscriptions": _as_bool(_dig(doc, "syndicate.shareSubscriptions")),
            "include_identity": _as_bool(doc.get("includeIdentity")),
        }

    def read_identity_paths(self, identity_id: str) -> Optional[List[List[str]]]:
        """
        Ancestor paths of an identity. Each path starts at the identity itself
        and walks up to a root: [self, parent, grandparent, ..., root].
        """
        doc = self._get(f"identities/{identity_id}/paths")
        if doc is None:
            return None
        return [list(path) for path in doc.get("paths", []) if path]

    def read_license(self, license_id: str) -> Optional[Dict[str, Any]]:
        doc = self._get(f"licenses/{license_id}")
        if doc is None:
            return None
        return {
            "identity_id": doc.get("identityId"),
            "subscription_id": doc.get("subscriptionId"),
        }

    def read_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        doc = self._get(f"subscriptions/{subscription_id}")
        if doc is None:
            return None
        return {"product_id": doc.get("productId")}

    def read_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        doc = self._get(f"products/{product_id}")
        if doc is None:
            return None
        return {"name": doc.get("name")}
