# -*- coding: utf-8 -*-
"""DNS utility functions"""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Optional
from collections.abc import Sequence

import dns.asyncresolver
import dns.exception
import dns.resolver
from dns.nameserver import Nameserver

from checkspf._constants import DNS_NAMESERVERS, DNS_TIMEOUT, DNS_TIMEOUT_RETRIES

"""Copyright 2019-2025 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""

ZERO_WIDTH_RE = re.compile(r"[\u200B-\u200D\uFEFF]")  # includes ZWSP, ZWNJ, ZWJ, BOM
UNDECODABLE_TXT_RECORD = "Undecodable characters"


class DNSException(Exception):
    """Raised when a DNS query fails or times out"""

    def __init__(self, error):
        if isinstance(error, dns.exception.Timeout):
            if "timeout" in error.kwargs:
                error.kwargs["timeout"] = round(error.kwargs["timeout"], 1)
        self.error = error
        Exception.__init__(self, str(error))


def normalize_domain(domain: str) -> str:
    """
    Normalize an input domain by removing zero-width characters, the
    trailing dot, and lowering it

    Args:
        domain (str): A domain or subdomain

    Returns:
        str: A normalized domain
    """
    domain = unicodedata.normalize("NFC", domain)
    domain = ZERO_WIDTH_RE.sub("", domain)
    return domain.strip().rstrip(".").lower()


class DNSResolver(object):
    """
    Answers the TXT, A, AAAA and MX queries needed to expand SPF records

    A domain that does not exist, or that has no records of the requested
    type, yields an empty list. Any other failure raises
    :exc:`checkspf.utils.DNSException`.

    The configuration is fixed at construction, so one instance can be
    shared by any number of concurrent validations.
    """

    def __init__(
        self,
        *,
        nameservers: Optional[Sequence[str | Nameserver]] = DNS_NAMESERVERS,
        resolver: Optional[dns.asyncresolver.Resolver] = None,
        timeout: float = DNS_TIMEOUT,
        timeout_retries: int = DNS_TIMEOUT_RETRIES,
    ):
        """
        Args:
            nameservers (list): A list of nameservers to query
            resolver (dns.asyncresolver.Resolver): A resolver object to use
                                                   for DNS requests
            timeout (float): number of seconds to wait for an answer from DNS
            timeout_retries (int): The number of times to reattempt a query
                                   after a timeout
        """
        self.timeout = float(timeout)
        self.timeout_retries = timeout_retries
        if resolver is None:
            resolver = dns.asyncresolver.Resolver(configure=nameservers is None)
            if nameservers is not None:
                resolver.nameservers = list(nameservers)
            resolver.timeout = self.timeout
            resolver.lifetime = self.timeout
        self._resolver = resolver

    @property
    def nameservers(self) -> list:
        return list(self._resolver.nameservers)

    async def _resolve(
        self, domain: str, record_type: str, _attempt: int = 0
    ) -> dns.resolver.Answer:
        try:
            return await self._resolver.resolve(
                domain, record_type, lifetime=self.timeout
            )
        except dns.resolver.LifetimeTimeout as e:
            _attempt += 1
            if _attempt > self.timeout_retries:
                raise DNSException(e)
            logging.debug(
                f"Timed out querying {record_type} records for {domain}, "
                f"retrying ({_attempt}/{self.timeout_retries})"
            )
            return await self._resolve(domain, record_type, _attempt=_attempt)

    async def query(self, domain: str, record_type: str) -> list:
        """
        Queries DNS

        Args:
            domain (str): The domain or subdomain to query about
            record_type (str): The record type to query for

        Returns:
            list: A list of answer ``rdata`` objects

        Raises:
            :exc:`checkspf.utils.DNSException`
        """
        domain = normalize_domain(domain)
        record_type = record_type.upper()
        logging.debug(f"Getting {record_type} records for {domain}")
        try:
            answers = await self._resolve(domain, record_type)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return []
        except dns.exception.DNSException as error:
            raise DNSException(error)
        except OSError as error:
            raise DNSException(error)
        return list(answers)

    async def query_txt(self, domain: str) -> list[str]:
        """
        Queries DNS for TXT records

        Args:
            domain (str): A domain name

        Returns:
            list: A list of TXT records, with the character-strings of each
                  record joined together

        Raises:
            :exc:`checkspf.utils.DNSException`
        """
        records = []
        for answer in await self.query(domain, "TXT"):
            if not answer.strings:
                continue
            try:
                records.append(b"".join(answer.strings).decode())
            except UnicodeDecodeError:
                records.append(UNDECODABLE_TXT_RECORD)
        return records

    async def query_a(self, domain: str) -> list[str]:
        """
        Queries DNS for A records

        Args:
            domain (str): A domain name

        Returns:
            list: A list of IPv4 addresses

        Raises:
            :exc:`checkspf.utils.DNSException`
        """
        return [answer.to_text() for answer in await self.query(domain, "A")]

    async def query_aaaa(self, domain: str) -> list[str]:
        """
        Queries DNS for AAAA records

        Args:
            domain (str): A domain name

        Returns:
            list: A list of IPv6 addresses

        Raises:
            :exc:`checkspf.utils.DNSException`
        """
        return [answer.to_text() for answer in await self.query(domain, "AAAA")]

    async def query_mx(self, domain: str) -> list[str]:
        """
        Queries DNS for a list of Mail Exchange hosts

        Args:
            domain (str): A domain name

        Returns:
            list: Mail exchanger hostnames, sorted by preference

        Raises:
            :exc:`checkspf.utils.DNSException`
        """
        hosts = []
        for answer in await self.query(domain, "MX"):
            hostname = answer.exchange.to_text().rstrip(".").strip().lower()
            if hostname == "":
                logging.debug('"No Service" MX record found')
                continue
            hosts.append((answer.preference, hostname))
        return [hostname for _, hostname in sorted(hosts)]
