# ================================================================
#  SP-API AUTH MODULE (LWA ONLY)
#  ---------------------------------------------------------------
#  - Exchange the LWA refresh token for an access token
#  - Cache the token until shortly before it expires
# ================================================================

import datetime
import logging
import time
from typing import Callable, Dict, Optional

import requests

from config import lwa_credentials

logger = logging.getLogger("spapi_auth")

LWA_TOKEN_URL = "https://api.amazon.com/auth/o2/token"
MAX_ATTEMPTS = 3


class SpApiAuth:
    def __init__(self, credentials_loader: Optional[Callable[[], Dict[str, str]]] = None):
        self._credentials_loader = credentials_loader or lwa_credentials
        self._lwa_token = None
        self._lwa_expiry = None

    def _now(self) -> datetime.datetime:
        return datetime.datetime.now(datetime.timezone.utc)

    # Retries with exponential backoff (1s, 2s) on 429/timeouts/connection errors;
    # any other HTTP error is raised immediately.
    def get_lwa_access_token(self) -> str:
        if self._lwa_token and self._lwa_expiry and self._lwa_expiry > self._now():
            return self._lwa_token

        creds = self._credentials_loader()
        data = {
            "grant_type": "refresh_token",
            "refresh_token": creds["refresh_token"],
            "client_id": creds["client_id"],
            "client_secret": creds["client_secret"],
        }

        for attempt in range(1, MAX_ATTEMPTS + 1):
            wait_time = 2 ** (attempt - 1)
            try:
                resp = requests.post(LWA_TOKEN_URL, data=data, timeout=15)
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
                logger.warning(f"[Auth] Token request failed ({exc.__class__.__name__}), attempt {attempt}/{MAX_ATTEMPTS}")
                if attempt < MAX_ATTEMPTS:
                    time.sleep(wait_time)
                    continue
                logger.error(f"[Auth] Token request failed after {MAX_ATTEMPTS} attempts")
                raise

            if resp.status_code == 200:
                payload = resp.json()
                self._lwa_token = payload["access_token"]
                self._lwa_expiry = self._now() + datetime.timedelta(
                    seconds=payload.get("expires_in", 3600) - 60
                )
                logger.info("[Auth] Successfully obtained LWA token")
                return self._lwa_token

            if resp.status_code == 429 and attempt < MAX_ATTEMPTS:
                logger.warning(f"[Auth] Token request rate limited (429), waiting {wait_time}s before retry {attempt}/{MAX_ATTEMPTS}")
                time.sleep(wait_time)
                continue

            logger.error(f"[Auth] Token request failed {resp.status_code}: {resp.text}")
            resp.raise_for_status()

        raise RuntimeError(f"[Auth] Failed to obtain LWA token after {MAX_ATTEMPTS} attempts")

    def invalidate(self) -> None:
        self._lwa_token = None
        self._lwa_expiry = None
