#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Login + token refresh for the assignment API.

- login(): POST <api_base>/login -> {"access": ..., "refresh": ...}
- refresh(): POST <api_base>/refresh {"refresh": ...}
- CredentialCell holds the current bearer token. Dispatchers only read it;
  SessionProvider / TokenRefresher are the only writers.
- TokenRefresher refreshes on a fixed interval in a daemon thread. A failed
  refresh is logged and the old token is kept until the next cycle.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

DEFAULT_API_BASE = "https://sag.unemi.edu.ec/api/1.0"
DEFAULT_REFRESH_INTERVAL_S = 5 * 60

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class SessionError(RuntimeError):
    pass


@dataclass(frozen=True)
class ClientMeta:
    user_agent: str = DEFAULT_USER_AGENT
    platform: str = "Win32"
    screen_size: str = "1920 x 1080"


class CredentialCell:
    """Single shared bearer token. Attribute assignment is the only write."""

    def __init__(self, token: Optional[str] = None):
        self._token = token

    @property
    def token(self) -> Optional[str]:
        return self._token

    def set(self, token: str) -> None:
        self._token = token


def build_requests_session(timeout_s: float, max_retries: int) -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=max_retries,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=("GET", "POST"),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.request = _wrap_timeout(session.request, timeout_s)
    return session


def _wrap_timeout(func, timeout_s: float):
    def wrapped(*args, **kwargs):
        kwargs.setdefault("timeout", timeout_s)
        return func(*args, **kwargs)
    return wrapped


class SessionProvider:
    def __init__(
        self,
        username: str,
        password: str,
        api_base: str = DEFAULT_API_BASE,
        credentials: Optional[CredentialCell] = None,
        timeout_s: float = 30.0,
        max_transport_retries: int = 3,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.username = username
        self.password = password
        self.api_base = api_base.rstrip("/")
        self.credentials = credentials or CredentialCell()
        self.refresh_token: Optional[str] = None
        self.session = session or build_requests_session(timeout_s, max_transport_retries)
        self.log = logger or logging.getLogger(__name__)

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self.session.post(f"{self.api_base}{path}", json=body)
            payload = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise SessionError(f"POST {path} failed: {type(e).__name__}: {e}") from e
        if not isinstance(payload, dict):
            raise SessionError(f"POST {path} returned non-object JSON")
        return payload

    def login(self, meta: Optional[ClientMeta] = None) -> str:
        meta = meta or ClientMeta()
        payload = self._post("/login", {
            "username": self.username,
            "password": self.password,
            "clientNavegador": meta.user_agent,
            "clientOS": meta.platform,
            "clientScreensize": meta.screen_size,
            "captcha": "",
        })
        access = payload.get("access")
        if not access:
            raise SessionError("Login response has no access token")

        self.credentials.set(access)
        self.refresh_token = payload.get("refresh") or None
        self.log.info("Login OK. Token obtained.")
        return access

    def refresh(self) -> Optional[str]:
        if not self.refresh_token:
            self.log.warning("No refresh token available; keeping current access token.")
            return None

        payload = self._post("/refresh", {"refresh": self.refresh_token})
        access = payload.get("access")
        if not access:
            raise SessionError("Refresh response has no access token")

        self.credentials.set(access)
        self.refresh_token = payload.get("refresh") or self.refresh_token
        self.log.info("Token refreshed.")
        return access


class TokenRefresher:
    """Calls provider.refresh() every interval_s until stop()."""

    def __init__(self, provider: SessionProvider, interval_s: float = DEFAULT_REFRESH_INTERVAL_S):
        self.provider = provider
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> None:
        try:
            self.provider.refresh()
        except SessionError as e:
            self.provider.log.warning("Refresh token error: %s", e)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            self.run_once()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="token-refresher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
