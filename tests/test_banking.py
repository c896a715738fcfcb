import io
import json
from urllib.error import HTTPError, URLError

from banking import BankingClient
from results import LookupStatus


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def _opener(*outcomes):
    calls = []
    queue = list(outcomes)

    def opener(req, timeout):
        calls.append((req.full_url, timeout))
        outcome = queue.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResponse(json.dumps(outcome).encode("utf-8"))

    opener.calls = calls
    return opener


def _http_error(code: int) -> HTTPError:
    return HTTPError("https://bank.test/transactions", code, "error", {}, None)


def _client(opener, sleeps):
    return BankingClient(
        base_url="https://bank.test/",
        timeout=3,
        max_retries=2,
        backoff_secs=0.5,
        opener=opener,
        sleep=sleeps.append,
    )


def test_fetch_parses_transactions() -> None:
    opener = _opener(
        [
            {
                "description": "Groceries",
                "category": "Food",
                "amount": 42.0,
                "date": "2024-03-01T00:00:00",
            }
        ]
    )
    sleeps: list[float] = []

    lookup = _client(opener, sleeps).fetch_transactions("tok en")

    assert lookup.status == LookupStatus.found
    assert lookup.value[0].description == "Groceries"
    assert lookup.value[0].occurred_at == "2024-03-01T00:00:00"
    assert opener.calls == [("https://bank.test/transactions?token=tok+en", 3)]
    assert sleeps == []


def test_fetch_accepts_wrapped_payload() -> None:
    opener = _opener({"transactions": []})

    lookup = _client(opener, []).fetch_transactions("t")

    assert lookup.ok
    assert lookup.value == []


def test_transient_failures_are_retried_with_backoff() -> None:
    opener = _opener(URLError("connection reset"), _http_error(503), [])
    sleeps: list[float] = []

    lookup = _client(opener, sleeps).fetch_transactions("t")

    assert lookup.ok
    assert sleeps == [0.5, 1.0]
    assert len(opener.calls) == 3


def test_exhausted_retries_report_upstream_failure() -> None:
    opener = _opener(TimeoutError(), TimeoutError(), TimeoutError())
    sleeps: list[float] = []

    lookup = _client(opener, sleeps).fetch_transactions("t")

    assert lookup.status == LookupStatus.upstream_failure
    assert "unavailable" in lookup.error
    assert sleeps == [0.5, 1.0]


def test_unknown_connection_is_not_found_without_retry() -> None:
    opener = _opener(_http_error(404))

    lookup = _client(opener, []).fetch_transactions("t")

    assert lookup.status == LookupStatus.not_found
    assert len(opener.calls) == 1


def test_authorization_failure_is_not_retried() -> None:
    opener = _opener(_http_error(401))

    lookup = _client(opener, []).fetch_transactions("t")

    assert lookup.status == LookupStatus.upstream_failure
    assert "authorization" in lookup.error


def test_malformed_payload_is_an_upstream_failure() -> None:
    opener = _opener({"unexpected": True})

    lookup = _client(opener, []).fetch_transactions("t")

    assert lookup.status == LookupStatus.upstream_failure
