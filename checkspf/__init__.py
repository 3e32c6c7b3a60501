# -*- coding: utf-8 -*-

"""Checks if a host is permitted to send email for a domain using SPF"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
from csv import DictWriter
from io import StringIO
from typing import Optional, TypedDict, Union
from collections.abc import Sequence

from dns.nameserver import Nameserver

import checkspf._constants
from checkspf._constants import DNS_NAMESERVERS, DNS_TIMEOUT, DNS_TIMEOUT_RETRIES
from checkspf.network import (
    AddressRange,
    InvalidAddressRange,
    overlaps,
    parse_cidr,
)
from checkspf.spf import (
    AllQualifier,
    ExpandedPolicy,
    SPFError,
    Verdict,
    check_spf,
    expand_policy_record,
    get_expanded_policy,
    query_spf_records,
)
from checkspf.utils import DNSException, DNSResolver, normalize_domain

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


__version__ = checkspf._constants.__version__

__all__ = [
    "AddressRange",
    "AllQualifier",
    "DNSException",
    "DNSResolver",
    "ExpandedPolicy",
    "InvalidAddressRange",
    "SPFError",
    "Verdict",
    "check_sender",
    "check_senders",
    "check_spf",
    "evaluate_policy",
    "expand_policy_record",
    "get_expanded_policy",
    "overlaps",
    "parse_cidr",
    "query_spf_records",
    "validate",
]

Sender = Union[
    str,
    AddressRange,
    ipaddress.IPv4Address,
    ipaddress.IPv6Address,
    ipaddress.IPv4Network,
    ipaddress.IPv6Network,
]

all_verdicts: dict[AllQualifier, Verdict] = {
    AllQualifier.PASS: Verdict.PASS,
    AllQualifier.FAIL: Verdict.FAIL,
    AllQualifier.SOFTFAIL: Verdict.SOFTFAIL,
    AllQualifier.NEUTRAL: Verdict.NEUTRAL,
}


class SPFValidationResult(TypedDict, total=False):
    sender: str
    domain: str
    verdict: str
    all: Union[str, None]
    ranges: list[str]
    dns_lookups: Union[int, None]
    error: str


def normalize_sender(sender: Sender) -> Optional[AddressRange]:
    """
    Converts a sender to an address range

    Args:
        sender: An IPv4 or IPv6 address or CIDR range, as a string or
                an ``ipaddress`` object

    Returns:
        AddressRange: The sender's range, or ``None`` if the sender is not
                      an IPv4 or IPv6 address
    """
    if isinstance(sender, AddressRange):
        return sender
    if isinstance(sender, str):
        try:
            return parse_cidr(sender)
        except InvalidAddressRange as e:
            logging.debug(f"Invalid sender {sender!r}: {e}")
            return None
    if isinstance(sender, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return AddressRange.from_address(sender)
    if isinstance(sender, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return AddressRange(sender)
    logging.debug(f"Unsupported sender address type: {type(sender).__name__}")
    return None


def evaluate_policy(policy: ExpandedPolicy, sender: AddressRange) -> Verdict:
    """
    Checks a sender against an expanded SPF policy

    Args:
        policy (ExpandedPolicy): A domain's expanded SPF policy
        sender (AddressRange): The sending address or range

    Returns:
        Verdict: ``pass`` if the sender overlaps a permitted range,
                 otherwise the result of the ``all`` mechanism
    """
    if policy.all is AllQualifier.NONE:
        return Verdict.NONE
    for network in policy.ranges:
        if network.overlaps(sender):
            logging.debug(f"{sender} matches {network}")
            return Verdict.PASS
    return all_verdicts.get(policy.all, Verdict.PERMERROR)


async def _evaluate(
    sender: Sender,
    domain: str,
    *,
    resolver: Optional[DNSResolver],
    nameservers: Optional[Sequence[str | Nameserver]],
    timeout: float,
    timeout_retries: int,
    lifetime: Optional[float],
) -> tuple[Verdict, Optional[ExpandedPolicy], Optional[str]]:
    sender_range = normalize_sender(sender)
    if sender_range is None:
        return Verdict.PERMERROR, None, f"{sender} is not a valid IP address"

    if resolver is None:
        resolver = DNSResolver(
            nameservers=nameservers, timeout=timeout, timeout_retries=timeout_retries
        )

    domain = normalize_domain(domain)
    logging.debug(f"Checking if {sender_range} may send email for {domain}")
    try:
        if lifetime is None:
            policy = await get_expanded_policy(domain, resolver=resolver)
        else:
            policy = await asyncio.wait_for(
                get_expanded_policy(domain, resolver=resolver), lifetime
            )
    except SPFError as error:
        logging.debug(f"{domain}: {error}")
        return Verdict.PERMERROR, None, str(error.args[0])
    except DNSException as error:
        logging.debug(f"{domain}: {error}")
        return Verdict.TEMPERROR, None, str(error)
    except asyncio.TimeoutError:
        message = (
            f"Checking the SPF record of {domain} took more than {lifetime} seconds"
        )
        logging.debug(message)
        return Verdict.TEMPERROR, None, message

    return evaluate_policy(policy, sender_range), policy, None


async def validate(
    sender: Sender,
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = DNS_NAMESERVERS,
    resolver: Optional[DNSResolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
    lifetime: Optional[float] = None,
) -> Verdict:
    """
    Checks if a sender is permitted to send email for a domain

    Args:
        sender: An IPv4 or IPv6 address or CIDR range
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (DNSResolver): A resolver object to use for DNS requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout
        lifetime (float): number of seconds to wait for the whole check

    Returns:
        Verdict: One of ``pass``, ``fail``, ``softfail``, ``neutral``,
                 ``none``, ``permerror``, or ``temperror``
    """
    verdict, _, _ = await _evaluate(
        sender,
        domain,
        resolver=resolver,
        nameservers=nameservers,
        timeout=timeout,
        timeout_retries=timeout_retries,
        lifetime=lifetime,
    )
    return verdict


async def check_sender(
    sender: Sender,
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = DNS_NAMESERVERS,
    resolver: Optional[DNSResolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
    lifetime: Optional[float] = None,
) -> SPFValidationResult:
    """
    Returns a dictionary with the verdict for a sender and the policy it
    was checked against

    Args:
        sender: An IPv4 or IPv6 address or CIDR range
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (DNSResolver): A resolver object to use for DNS requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout
        lifetime (float): number of seconds to wait for the whole check

    Returns:
        dict: A ``dict`` with the following keys:
            - ``sender`` - The sender
            - ``domain`` - The domain
            - ``verdict`` - The verdict
            - ``all`` - The ``all`` qualifier of the domain's policy
            - ``ranges`` - The permitted address ranges
            - ``dns_lookups`` - The number of DNS lookups

        If an error occurs, ``all`` and ``dns_lookups`` are ``None`` and
        the dictionary also has an ``error`` key.
    """
    verdict, policy, error = await _evaluate(
        sender,
        domain,
        resolver=resolver,
        nameservers=nameservers,
        timeout=timeout,
        timeout_retries=timeout_retries,
        lifetime=lifetime,
    )
    results: SPFValidationResult = {
        "sender": str(sender),
        "domain": normalize_domain(domain),
        "verdict": verdict.value,
        "all": None,
        "ranges": [],
        "dns_lookups": None,
    }
    if policy is not None:
        results["all"] = str(policy.all)
        results["ranges"] = list(map(str, policy.ranges))
        results["dns_lookups"] = policy.dns_lookups
    if error is not None:
        results["error"] = error
    return results


async def check_senders(
    senders: Sequence[Sender],
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = DNS_NAMESERVERS,
    resolver: Optional[DNSResolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
    lifetime: Optional[float] = None,
) -> list[SPFValidationResult]:
    """
    Checks several senders against a domain concurrently

    Args:
        senders (list): A list of IPv4 or IPv6 addresses or CIDR ranges
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (DNSResolver): A resolver object to use for DNS requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout
        lifetime (float): number of seconds to wait for each check

    Returns:
        list: A list of results, in the order of ``senders``; see
              :func:`checkspf.check_sender`
    """
    if resolver is None:
        resolver = DNSResolver(
            nameservers=nameservers, timeout=timeout, timeout_retries=timeout_retries
        )
    return list(
        await asyncio.gather(
            *[
                check_sender(sender, domain, resolver=resolver, lifetime=lifetime)
                for sender in senders
            ]
        )
    )


def results_to_json(
    results: Union[dict[str, object], list[dict[str, object]]],
) -> str:
    """
    Converts a dictionary of results or list of results to a JSON string

    Args:
        results (dict): A dictionary of results

    Returns:
        str: Results in JSON format
    """
    return json.dumps(results, ensure_ascii=False, indent=2)


def results_to_csv_rows(
    results: Union[SPFValidationResult, list[SPFValidationResult]],
) -> list[dict]:
    """
    Converts a results dictionary or list of dictionaries and returns a
    list of CSV row dictionaries

    Args:
        results (dict): A dictionary of results

    Returns:
        list: A list of CSV row dictionaries
    """
    rows = []

    if type(results) is dict:
        results = [results]

    for result in results:
        row = {
            "domain": result["domain"],
            "sender": result["sender"],
            "verdict": result["verdict"],
            "all": result["all"],
            "dns_lookups": result["dns_lookups"],
            "ranges": "|".join(result["ranges"]),
        }
        if "error" in result:
            row["error"] = result["error"]
        rows.append(row)
    return rows


def results_to_csv(
    results: Union[SPFValidationResult, list[SPFValidationResult]],
) -> str:
    """
    Converts a dictionary of results to CSV

    Args:
        results (dict): A dictionary of results

    Returns:
        str: A CSV of results
    """
    fields = ["domain", "sender", "verdict", "all", "dns_lookups", "ranges", "error"]
    output = StringIO(newline="\n")
    writer = DictWriter(output, fieldnames=fields)
    writer.writeheader()
    rows = results_to_csv_rows(results)
    writer.writerows(rows)
    output.flush()

    return output.getvalue()


def output_to_file(path: str, content: str):
    """
    Write given content to the given path

    Args:
        path (str): A file path
        content (str): JSON or CSV text
    """
    with open(
        path, "w", newline="\n", encoding="utf-8", errors="ignore"
    ) as output_file:
        output_file.write(content)
