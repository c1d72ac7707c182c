#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Async client for the assignment lookup endpoint:
  POST <api_base>/app/revisar_cupo_asignado
  {"action": "get_list_assigned", "id": <key>, "requestedAt": <iso>}

Classification of the JSON body (first match wins):
  1. data.list_standby is a list     -> SUCCESS (audit + success record)
  2. message contains the sentinel   -> TERMINAL_SIGNAL (audit only, no retry)
  3. any other message               -> TERMINAL_MESSAGE (audit only, no retry)
  4. anything else / network failure -> transient, retried after
     backoff_base * 2**attempt seconds up to max_attempts, then RETRY_EXHAUSTED

attempt() never raises: every failure ends up inside the audit record.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from session_provider import DEFAULT_API_BASE, CredentialCell

LOOKUP_PATH = "/app/revisar_cupo_asignado"
LOOKUP_ACTION = "get_list_assigned"

DEFAULT_SENTINEL = "invalid literal for int() with base 10"
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE_S = 1.0


def now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


class OutcomeKind(Enum):
    SUCCESS = "success"
    TERMINAL_SIGNAL = "terminal_signal"
    TERMINAL_MESSAGE = "terminal_message"
    RETRY_EXHAUSTED = "retry_exhausted"


@dataclass
class Outcome:
    kind: OutcomeKind
    key: str
    index: int
    attempts: int
    audit: Dict[str, Any]
    success: Optional[Dict[str, Any]] = None


def audit_entry(key: str, index: int, at: str, response: Any) -> Dict[str, Any]:
    return {key: {"index": index, "at": at, "response": response}}


def success_entry(key: str, index: int, at: str, data: Any) -> Dict[str, Any]:
    return {"index": index, "fullID": key, "data": data, "at": at}


def classify_payload(payload: Any, sentinel: str) -> Optional[OutcomeKind]:
    """Return the terminal kind for payload, or None when it must be retried."""
    if not isinstance(payload, dict):
        return None

    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("list_standby"), list):
        return OutcomeKind.SUCCESS

    msg = payload.get("message")
    if isinstance(msg, str) and msg:
        if sentinel and sentinel.lower() in msg.lower():
            return OutcomeKind.TERMINAL_SIGNAL
        return OutcomeKind.TERMINAL_MESSAGE

    return None


class LookupClient:
    def __init__(
        self,
        session: Optional[aiohttp.ClientSession],
        credentials: CredentialCell,
        api_base: str = DEFAULT_API_BASE,
        sentinel: str = DEFAULT_SENTINEL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base_s: float = DEFAULT_BACKOFF_BASE_S,
        timeout_s: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.session = session
        self.credentials = credentials
        self.url = api_base.rstrip("/") + LOOKUP_PATH
        self.sentinel = sentinel
        self.max_attempts = max_attempts
        self.backoff_base_s = backoff_base_s
        self.timeout_s = timeout_s
        self.sleep = sleep
        self.log = logger or logging.getLogger(__name__)

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base_s * (2 ** attempt)

    async def post_lookup(self, key: str) -> Any:
        """One POST; returns the decoded JSON body (None for an empty body)."""
        assert self.session is not None
        body = {
            "action": LOOKUP_ACTION,
            "id": key,
            "requestedAt": now_iso(),
        }
        headers = {
            "Authorization": f"Bearer {self.credentials.token}",
            "Content-Type": "application/json",
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        async with self.session.post(self.url, json=body, headers=headers, timeout=timeout) as resp:
            return await resp.json(content_type=None)

    async def attempt(self, key: str, index: int, attempt: int = 1) -> Outcome:
        last_err: Optional[str] = None
        last_payload: Any = None

        while True:
            try:
                payload = await self.post_lookup(key)
                at = now_iso()
                kind = classify_payload(payload, self.sentinel)
                if kind is not None:
                    self.log.debug("%s [%s] -> %s (attempt=%s)", key, index, kind.value, attempt)
                    success = None
                    if kind is OutcomeKind.SUCCESS:
                        success = success_entry(key, index, at, payload["data"]["list_standby"])
                    return Outcome(kind, key, index, attempt, audit_entry(key, index, at, payload), success)

                last_payload = payload
                last_err = "malformed payload"
            except asyncio.TimeoutError:
                last_err = "timeout"
            except aiohttp.ClientError as e:
                last_err = f"aiohttp error: {e}"
            except ValueError as e:
                last_err = f"JSON parse error: {e}"
            except Exception as e:
                last_err = f"unexpected error: {type(e).__name__}: {e}"

            if attempt >= self.max_attempts:
                break

            delay = self.backoff_delay(attempt)
            self.log.warning("Retrying %s [%s] after backoff: attempt=%s sleep=%.1fs reason=%s",
                             key, index, attempt, delay, last_err)
            await self.sleep(delay)
            attempt += 1

        response: Dict[str, Any] = {"error": f"failed after {self.max_attempts} attempts: {last_err}"}
        if last_payload is not None:
            response["last_response"] = last_payload
        return Outcome(OutcomeKind.RETRY_EXHAUSTED, key, index, attempt,
                       audit_entry(key, index, now_iso(), response))
