from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from config import get_settings
from results import Lookup

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawTransaction:
    description: Any
    category: Any
    amount: Any
    occurred_at: Any

    def as_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "category": self.category,
            "amount": self.amount,
            "occurred_at": self.occurred_at,
        }


def _parse_payload(payload: Any) -> list[RawTransaction]:
    if isinstance(payload, dict):
        payload = payload.get("transactions", payload.get("data"))
    if not isinstance(payload, list):
        raise ValueError("Unexpected banking response")
    items: list[RawTransaction] = []
    for row in payload:
        if not isinstance(row, dict):
            raise ValueError("Unexpected transaction row in banking response")
        # fields are validated per item by the ingestor
        items.append(
            RawTransaction(
                description=row.get("description"),
                category=row.get("category"),
                amount=row.get("amount"),
                occurred_at=row.get("occurred_at", row.get("date")),
            )
        )
    return items


class BankingClient:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_secs: Optional[float] = None,
        opener: Callable[..., Any] = urlopen,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.banking_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.banking_timeout_secs
        self.max_retries = (
            max_retries if max_retries is not None else settings.banking_max_retries
        )
        self.backoff_secs = (
            backoff_secs if backoff_secs is not None else settings.banking_backoff_secs
        )
        self._opener = opener
        self._sleep = sleep

    def fetch_transactions(self, connection_token: str) -> Lookup[list[RawTransaction]]:
        """Fetch the transactions visible through a linked bank connection.

        Transient failures (network errors, timeouts, 5xx) are retried with
        exponential backoff. An unknown connection token is reported as
        ``not_found``; everything else that survives the retries comes back as
        ``upstream_failure``. Nothing is returned unless the whole response
        was received and parsed.
        """
        url = f"{self.base_url}/transactions?{urlencode({'token': connection_token})}"
        attempts = self.max_retries + 1
        last_error = "no attempt made"
        for attempt in range(1, attempts + 1):
            req = Request(url, headers={"Accept": "application/json"})
            try:
                with self._opener(req, timeout=self.timeout) as resp:
                    payload = json.loads(resp.read().decode("utf-8"))
                return Lookup.found(_parse_payload(payload))
            except HTTPError as exc:
                if exc.code == 404:
                    return Lookup.not_found("Bank connection not found")
                if exc.code in (401, 403):
                    return Lookup.failed(f"Banking authorization failed ({exc.code})")
                last_error = f"HTTP {exc.code}"
                if exc.code < 500:
                    return Lookup.failed(last_error)
            except (URLError, TimeoutError, OSError) as exc:
                last_error = str(exc) or exc.__class__.__name__
            except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as exc:
                return Lookup.failed(f"Unexpected banking response: {exc}")

            logger.warning(
                f"banking_fetch_failed: attempt={attempt}/{attempts} error={last_error}"
            )
            if attempt < attempts:
                self._sleep(self.backoff_secs * (2 ** (attempt - 1)))
        return Lookup.failed(f"Banking service unavailable: {last_error}")
