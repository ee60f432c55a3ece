"""
Tests for dns01.propagation.

PropagationVerifier._query is patched so no packets leave the machine; the
per-nameserver answers are scripted by the tests.
"""
from __future__ import annotations

import threading
import time
from collections import defaultdict
from unittest.mock import patch

import dns.exception
import dns.message
import dns.rrset
import pytest

from autocert.errors import PropagationTimeoutError, ProvisionError, RenewalCancelledError
from dns01.propagation import PropagationVerifier, parse_nameserver, txt_values

NAME = "_acme-challenge.example.test."
VALUE = "expected-token"


def _scripted(answers):
    """Build a _query replacement: answers[ns] is a callable(attempt) -> list or raises."""
    attempts = defaultdict(int)
    lock = threading.Lock()

    def query(self, nameserver, name, timeout):
        with lock:
            attempts[nameserver] += 1
            n = attempts[nameserver]
        return answers[nameserver](n)

    return query, attempts


# ─── Helpers ──────────────────────────────────────────────────────────────────


class TestParseNameserver:
    @pytest.mark.parametrize("nameserver, expected", [
        ("ns1.example.net", ("ns1.example.net", 53)),
        ("127.0.0.1:5353", ("127.0.0.1", 5353)),
        ("[::1]:5353", ("::1", 5353)),
        ("[2001:db8::1]", ("2001:db8::1", 53)),
        ("2001:db8::1", ("2001:db8::1", 53)),
    ])
    def test_forms(self, nameserver, expected):
        assert parse_nameserver(nameserver) == expected


class TestTxtValues:
    def _response(self, *rdatas):
        query = dns.message.make_query(NAME, "TXT")
        response = dns.message.make_response(query)
        response.answer.append(dns.rrset.from_text(NAME, 60, "IN", "TXT", *rdatas))
        return response

    def test_plain_value(self):
        assert txt_values(self._response(f'"{VALUE}"')) == [VALUE]

    def test_embedded_quotes_are_stripped(self):
        assert txt_values(self._response(f'"\\"{VALUE}\\""')) == [VALUE]

    def test_split_strings_are_joined(self):
        assert txt_values(self._response('"expected-" "token"')) == [VALUE]

    def test_multiple_records(self):
        assert sorted(txt_values(self._response('"a"', '"b"'))) == ["a", "b"]


# ─── Verifier ─────────────────────────────────────────────────────────────────


class TestPropagationVerifier:
    """Fan-out / fan-in behaviour of PropagationVerifier.verify."""

    def _verifier(self, nameservers=("a", "b", "c"), **kwargs):
        kwargs.setdefault("timeout", 1.0)
        kwargs.setdefault("interval", 0.01)
        return PropagationVerifier(list(nameservers), **kwargs)

    def test_requires_nameservers(self):
        with pytest.raises(ValueError):
            PropagationVerifier([])

    def test_all_nameservers_agree(self):
        query, attempts = _scripted({ns: (lambda n: [VALUE]) for ns in "abc"})

        with patch.object(PropagationVerifier, "_query", query):
            self._verifier().verify(NAME, VALUE)

        assert set(attempts) == {"a", "b", "c"}

    def test_one_lagging_nameserver_fails_the_whole_check(self):
        query, _ = _scripted({
            "a": lambda n: [VALUE],
            "b": lambda n: [VALUE],
            "c": lambda n: [],
        })

        with patch.object(PropagationVerifier, "_query", query):
            with pytest.raises(PropagationTimeoutError) as exc_info:
                self._verifier(timeout=0.3).verify(NAME, VALUE)

        assert exc_info.value.pending == ["c"]
        assert isinstance(exc_info.value, ProvisionError)

    def test_wrong_value_is_not_success(self):
        query, _ = _scripted({"a": lambda n: ["stale-token"]})

        with patch.object(PropagationVerifier, "_query", query):
            with pytest.raises(PropagationTimeoutError):
                self._verifier(["a"], timeout=0.2).verify(NAME, VALUE)

    def test_eventual_propagation(self):
        query, attempts = _scripted({
            "a": lambda n: [VALUE],
            "b": lambda n: [VALUE] if n >= 3 else [],
        })

        with patch.object(PropagationVerifier, "_query", query):
            self._verifier(["a", "b"]).verify(NAME, VALUE)

        assert attempts["b"] >= 3

    def test_transport_errors_are_retried(self):
        def flaky(n):
            if n == 1:
                raise dns.exception.Timeout()
            if n == 2:
                raise OSError("network unreachable")
            return ["other", VALUE]

        query, attempts = _scripted({"a": flaky})

        with patch.object(PropagationVerifier, "_query", query):
            self._verifier(["a"]).verify(NAME, VALUE)

        assert attempts["a"] == 3

    def test_stop_event_cancels(self):
        query, _ = _scripted({"a": lambda n: [], "b": lambda n: []})
        stop = threading.Event()
        stop.set()

        start = time.monotonic()
        with patch.object(PropagationVerifier, "_query", query):
            with pytest.raises(RenewalCancelledError):
                self._verifier(["a", "b"], timeout=30).verify(NAME, VALUE, stop)

        assert time.monotonic() - start < 5

    def test_workers_stop_after_failure(self):
        query, attempts = _scripted({"a": lambda n: [], "b": lambda n: []})

        with patch.object(PropagationVerifier, "_query", query):
            with pytest.raises(PropagationTimeoutError):
                self._verifier(["a", "b"], timeout=0.2).verify(NAME, VALUE)
            time.sleep(0.1)
            settled = dict(attempts)
            time.sleep(0.2)

        assert dict(attempts) == settled

    def test_settle_delay(self):
        query, _ = _scripted({"a": lambda n: [VALUE]})

        start = time.monotonic()
        with patch.object(PropagationVerifier, "_query", query):
            self._verifier(["a"], settle_delay=0.2).verify(NAME, VALUE)

        assert time.monotonic() - start >= 0.2

    def test_settle_delay_is_cancellable(self):
        query, _ = _scripted({"a": lambda n: [VALUE]})
        stop = threading.Event()
        threading.Timer(0.1, stop.set).start()

        with patch.object(PropagationVerifier, "_query", query):
            with pytest.raises(RenewalCancelledError):
                self._verifier(["a"], settle_delay=30).verify(NAME, VALUE, stop)

    def test_no_worker_outlives_verify(self):
        query, _ = _scripted({"a": lambda n: [], "b": lambda n: [VALUE]})

        with patch.object(PropagationVerifier, "_query", query):
            with pytest.raises(PropagationTimeoutError):
                self._verifier(["a", "b"], timeout=0.2).verify(NAME, VALUE)

        assert not [t for t in threading.enumerate() if t.name.startswith("dns-propagation")]
