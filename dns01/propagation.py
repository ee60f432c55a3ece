"""
Multi-nameserver propagation check for DNS-01 TXT records.

The CA may validate as soon as the provisioner returns, so a record must be
visible on every authoritative nameserver first. One worker per nameserver
polls independently until it sees the expected value or the shared deadline
passes. The first worker that gives up (or a set stop event) aborts the rest:
verification succeeds only if all of them succeed.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Sequence, Tuple

import dns.exception
import dns.inet
import dns.message
import dns.query
import dns.rdatatype
import dns.resolver

from autocert.errors import PropagationTimeoutError, RenewalCancelledError
from dns01.provisioner import strip_quotes

logger = logging.getLogger(__name__)

DEFAULT_PROPAGATION_TIMEOUT = 60.0
DEFAULT_CHECK_INTERVAL = 0.1
DEFAULT_QUERY_TIMEOUT = 2.0
DNS_PORT = 53


def parse_nameserver(nameserver: str) -> Tuple[str, int]:
    """Split ``host``, ``host:port``, ``[v6]:port`` or a bare IPv6 address."""
    if nameserver.startswith("["):
        host, _, rest = nameserver[1:].partition("]")
        port = rest.lstrip(":")
        return host, int(port) if port else DNS_PORT
    if nameserver.count(":") == 1:
        host, port = nameserver.split(":")
        return host, int(port)
    return nameserver, DNS_PORT


def txt_values(response: dns.message.Message) -> List[str]:
    """Return every TXT string in the answer section, quotes stripped."""
    values = []
    for rrset in response.answer:
        if rrset.rdtype != dns.rdatatype.TXT:
            continue
        for rdata in rrset:
            joined = b"".join(rdata.strings).decode("utf-8", errors="replace")
            values.append(strip_quotes(joined))
    return values


class PropagationVerifier:
    """Confirm a TXT record is served by all of *nameservers*."""

    def __init__(
        self,
        nameservers: Sequence[str],
        timeout: float = DEFAULT_PROPAGATION_TIMEOUT,
        interval: float = DEFAULT_CHECK_INTERVAL,
        settle_delay: float = 0.0,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT,
    ) -> None:
        if not nameservers:
            raise ValueError("at least one nameserver is required")
        self.nameservers = list(nameservers)
        self.timeout = timeout
        self.interval = interval
        self.settle_delay = settle_delay
        self.query_timeout = query_timeout

    # ── Public ────────────────────────────────────────────────────────────

    def verify(self, name: str, value: str, stop_event: Optional[threading.Event] = None) -> None:
        """
        Block until every nameserver answers *name* with *value*.

        Raises PropagationTimeoutError when the deadline passes first and
        RenewalCancelledError when *stop_event* is set.
        """
        deadline = time.monotonic() + self.timeout
        abort = threading.Event()
        logger.info("Waiting for %s to propagate to %d nameserver(s)", name, len(self.nameservers))

        executor = ThreadPoolExecutor(
            max_workers=len(self.nameservers), thread_name_prefix="dns-propagation"
        )
        futures: Dict[Future, str] = {
            executor.submit(self._poll, ns, name, value, deadline, abort): ns
            for ns in self.nameservers
        }
        succeeded: set = set()
        failed: Optional[str] = None
        cancelled = False
        try:
            pending = set(futures)
            while pending:
                done, pending = wait(pending, timeout=self.interval, return_when=FIRST_COMPLETED)
                for fut in done:
                    if not fut.result():
                        failed = futures[fut]
                        break
                    succeeded.add(futures[fut])
                    logger.debug("%s visible on %s", name, futures[fut])
                if failed is not None:
                    break
                if stop_event is not None and stop_event.is_set():
                    cancelled = True
                    break
        finally:
            abort.set()
            executor.shutdown(wait=True, cancel_futures=True)

        if cancelled:
            raise RenewalCancelledError(f"propagation check for {name} cancelled")
        if failed is not None:
            still_pending = [ns for ns in self.nameservers if ns not in succeeded]
            raise PropagationTimeoutError(name, still_pending)

        logger.info("%s propagated to all nameservers", name)
        if self.settle_delay > 0:
            logger.debug("Holding %.1fs for resolver caches to settle", self.settle_delay)
            if stop_event is not None:
                if stop_event.wait(self.settle_delay):
                    raise RenewalCancelledError(f"propagation check for {name} cancelled")
            else:
                time.sleep(self.settle_delay)

    # ── Internal ──────────────────────────────────────────────────────────

    def _poll(self, nameserver: str, name: str, value: str, deadline: float,
              abort: threading.Event) -> bool:
        """Query *nameserver* until *value* shows up. False on deadline or abort."""
        while not abort.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("%s not visible on %s before deadline", name, nameserver)
                return False
            try:
                if value in self._query(nameserver, name, min(self.query_timeout, remaining)):
                    return True
            except (dns.exception.DNSException, OSError, ValueError) as exc:
                logger.debug("Query for %s at %s failed, retrying: %s", name, nameserver, exc)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                continue
            if abort.wait(min(self.interval, remaining)):
                break
        return False

    def _query(self, nameserver: str, name: str, timeout: float) -> List[str]:
        """Ask one nameserver for the TXT values at *name*."""
        host, port = parse_nameserver(nameserver)
        address = host if dns.inet.is_address(host) else self._resolve(host, timeout)
        query = dns.message.make_query(name, dns.rdatatype.TXT)
        response = dns.query.udp(query, address, timeout=timeout, port=port)
        return txt_values(response)

    @staticmethod
    def _resolve(host: str, timeout: float) -> str:
        answer = dns.resolver.resolve(host, "A", lifetime=timeout)
        return answer[0].address
