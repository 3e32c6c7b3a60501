# -*- coding: utf-8 -*-
"""Sender Policy framework (SPF) record expansion"""

from __future__ import annotations

import ipaddress
import logging
import re
from enum import Enum, IntEnum
from typing import NamedTuple, Optional
from collections.abc import Sequence

import dns.exception
import dns.name
import pyleri
from dns.nameserver import Nameserver

from checkspf._constants import (
    DNS_NAMESERVERS,
    DNS_TIMEOUT,
    DNS_TIMEOUT_RETRIES,
    SPF_MAX_DNS_LOOKUPS,
    SPF_MAX_MX_HOSTS,
    SYNTAX_ERROR_MARKER,
)
from checkspf.network import AddressRange, InvalidAddressRange, parse_cidr
from checkspf.utils import (
    UNDECODABLE_TXT_RECORD,
    DNSException,
    DNSResolver,
    normalize_domain,
)

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

SPF_VERSION_TAG_REGEX_STRING = "v=spf1"

# "all" is matched by its own element, so a mechanism may not start with it
SPF_MECHANISM_REGEX_STRING = (
    r"([+\-~?])?"
    r"(?!all(?:\s|$))"
    r"(ip4:|ip6:|include:|mx|a)"
    r"([\w+/.:\-]*)"
)
SPF_ALL_REGEX_STRING = r"([+\-~?])?all"

SPF_RECORD_REGEX = re.compile(r"^v=spf1(\s|$)", re.IGNORECASE)
MECHANISM_REGEX = re.compile(r"([+\-~?])?(ip4|ip6|include|mx|a)(.*)")
DOMAIN_SPEC_REGEX = re.compile(
    r"(?::(?P<domain>[^/:]+))?(?:/(?P<cidr4>\d+))?(?://(?P<cidr6>\d+))?"
)

# Detect an 'all' mechanism glued to the previous term without required
# whitespace, e.g., "ip4:203.0.113.7~all"
CONCATENATED_ALL_REGEX = re.compile(r"\S([+\-~?])all(?=\s|$)", re.IGNORECASE)


class SPFError(Exception):
    """Raised when an SPF record cannot be used to evaluate a sender"""

    def __init__(self, msg: str, data: Optional[dict] = None):
        """
        Args:
            msg (str): The error message
            data (dict): A dictionary of data to include in the output
        """
        self.data = data
        Exception.__init__(self, msg)


class SPFSyntaxError(SPFError):
    """Raised when an SPF syntax error is found"""


class SPFTooManyDNSLookups(SPFError):
    """Raised when an SPF record requires too many DNS lookups (10 max)"""

    def __init__(self, *args, **kwargs):
        data = {"dns_lookups": kwargs["dns_lookups"]}
        SPFError.__init__(self, args[0], data=data)


class SPFIncludeLoop(SPFError):
    """Raised when an SPF include loop is detected"""


class _SPFGrammar(pyleri.Grammar):
    """Defines Pyleri grammar for SPF records"""

    version_tag = pyleri.Regex(SPF_VERSION_TAG_REGEX_STRING, re.IGNORECASE)
    mechanism = pyleri.Regex(SPF_MECHANISM_REGEX_STRING, re.IGNORECASE)
    all_term = pyleri.Regex(SPF_ALL_REGEX_STRING, re.IGNORECASE)

    START = pyleri.Sequence(version_tag, pyleri.Repeat(mechanism), all_term)


class AllQualifier(IntEnum):
    """
    The result of the terminal ``all`` mechanism

    When records are combined the highest value is kept.
    """

    NONE = 0
    NEUTRAL = 1
    SOFTFAIL = 2
    FAIL = 3
    PASS = 4

    def __str__(self):
        return self.name.lower()


class Verdict(str, Enum):
    """The result of checking a sender against a domain's SPF record"""

    PASS = "pass"
    FAIL = "fail"
    SOFTFAIL = "softfail"
    NEUTRAL = "neutral"
    NONE = "none"
    PERMERROR = "permerror"
    TEMPERROR = "temperror"

    def __str__(self):
        return self.value


class MechanismKind(Enum):
    IP4 = "ip4"
    IP6 = "ip6"
    A = "a"
    MX = "mx"
    INCLUDE = "include"
    UNKNOWN = "unknown"


class Mechanism(NamedTuple):
    """A parsed SPF mechanism"""

    kind: MechanismKind
    qualifier: str
    value: str
    domain: Optional[str] = None
    cidr4: Optional[int] = None
    cidr6: Optional[int] = None
    network: Optional[AddressRange] = None


class ExpandedPolicy(NamedTuple):
    """The address ranges permitted by a domain, and its ``all`` qualifier"""

    ranges: tuple[AddressRange, ...]
    all: AllQualifier
    dns_lookups: int = 0


spf_qualifiers: dict[str, str] = {
    "": "pass",
    "?": "neutral",
    "+": "pass",
    "-": "fail",
    "~": "softfail",
}

all_qualifiers: dict[str, AllQualifier] = {
    "all": AllQualifier.PASS,
    "+all": AllQualifier.PASS,
    "-all": AllQualifier.FAIL,
    "~all": AllQualifier.SOFTFAIL,
    "?all": AllQualifier.NEUTRAL,
}


class LookupBudget(object):
    """
    Counts the mechanisms that require DNS lookups across a whole
    expansion, including every included record

    One budget is created per top-level expansion and passed down through
    each recursive call.
    """

    def __init__(self, limit: int = SPF_MAX_DNS_LOOKUPS):
        self.limit = limit
        self.dns_lookups = 0

    def spend(self, mechanism: Mechanism, domain: str):
        """
        Accounts for one DNS-resolving mechanism

        Raises:
            :exc:`checkspf.spf.SPFTooManyDNSLookups`
        """
        self.dns_lookups += 1
        logging.debug(
            f"{domain}: {mechanism.kind.value} mechanism uses DNS lookup "
            f"{self.dns_lookups}/{self.limit}"
        )
        if self.dns_lookups > self.limit:
            raise SPFTooManyDNSLookups(
                f"{domain}: Parsing the SPF record requires "
                f"{self.dns_lookups}/{self.limit} maximum DNS lookups - "
                "(RFC 7208 § 4.6.4)",
                dns_lookups=self.dns_lookups,
            )


def _get_resolver(
    resolver: Optional[DNSResolver],
    nameservers: Optional[Sequence[str | Nameserver]],
    timeout: float,
    timeout_retries: int,
) -> DNSResolver:
    if resolver is None:
        resolver = DNSResolver(
            nameservers=nameservers,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
    return resolver


def check_domain_name(name: str):
    """
    Checks that a name can be queried in DNS

    Args:
        name (str): A domain name

    Raises:
        :exc:`checkspf.spf.SPFSyntaxError`
    """
    if name == "":
        raise SPFSyntaxError("A domain name is required")
    try:
        dns.name.from_text(name)
    except (
        dns.exception.SyntaxError,
        dns.name.NameTooLong,
        dns.name.IDNAException,
    ) as e:
        raise SPFSyntaxError(f"{name} is not a valid domain name: {e}")


def parse_mechanism(term: str, domain: str) -> Mechanism:
    """
    Classifies a single SPF term

    Args:
        term (str): A mechanism, e.g. ``ip4:192.0.2.0/24`` or ``mx:example.com/24``
        domain (str): The domain that the SPF record came from

    Returns:
        Mechanism: The parsed mechanism; terms that are not supported
                   mechanisms have the ``UNKNOWN`` kind

    Raises:
        :exc:`checkspf.spf.SPFSyntaxError`
    """
    match = MECHANISM_REGEX.fullmatch(term.lower())
    if match is None:
        return Mechanism(MechanismKind.UNKNOWN, "+", term)
    qualifier = match.group(1) or "+"
    kind = MechanismKind(match.group(2))
    value = match.group(3)

    if kind in (MechanismKind.IP4, MechanismKind.IP6):
        if not value.startswith(":") or value == ":":
            raise SPFSyntaxError(f"{domain}: {kind.value} must have a value")
        value = value[1:]
        try:
            network = parse_cidr(value)
        except InvalidAddressRange:
            raise SPFSyntaxError(f"{value} is not a valid {kind.value} value.")
        if kind is MechanismKind.IP4 and network.version != 4:
            raise SPFSyntaxError(
                f"{value} is not a valid ip4 value.\nLooks like ipv6."
            )
        if kind is MechanismKind.IP6 and network.version != 6:
            raise SPFSyntaxError(
                f"{value} is not a valid ip6 value.\nLooks like ipv4."
            )
        return Mechanism(kind, qualifier, value, network=network)

    if kind is MechanismKind.INCLUDE:
        if not value.startswith(":") or value == ":":
            raise SPFSyntaxError(f"{domain}: {kind.value} must have a value")
        target = value[1:]
        if "/" in target or ":" in target:
            return Mechanism(MechanismKind.UNKNOWN, qualifier, term)
        check_domain_name(target)
        return Mechanism(kind, qualifier, target, domain=target)

    domain_spec = DOMAIN_SPEC_REGEX.fullmatch(value)
    if domain_spec is None:
        return Mechanism(MechanismKind.UNKNOWN, qualifier, term)
    if domain_spec.group("domain") is not None:
        check_domain_name(domain_spec.group("domain"))
    cidr4 = domain_spec.group("cidr4")
    cidr6 = domain_spec.group("cidr6")
    return Mechanism(
        kind,
        qualifier,
        value,
        domain=domain_spec.group("domain"),
        cidr4=int(cidr4) if cidr4 is not None else None,
        cidr6=int(cidr6) if cidr6 is not None else None,
    )


def get_all_qualifier(record: str, domain: str) -> AllQualifier:
    """
    Gets the result of the ``all`` mechanism that ends an SPF record

    Args:
        record (str): An SPF record
        domain (str): The domain that the SPF record came from

    A bare ``all`` carries the default ``+`` qualifier, so it is ``PASS``.

    Returns:
        AllQualifier: The qualifier of the ``all`` mechanism

    Raises:
        :exc:`checkspf.spf.SPFSyntaxError`
    """
    terms = record.replace('"', "").lower().split()
    if len(terms) < 2 or terms[-1] not in all_qualifiers:
        raise SPFSyntaxError(
            f"{domain}: The SPF record must end with +all, -all, ~all, or ?all: "
            f"{record}"
        )
    return all_qualifiers[terms[-1]]


def _parse_spf_record(
    record: str,
    domain: str,
    syntax_error_marker: str = SYNTAX_ERROR_MARKER,
) -> tuple[list[Mechanism], AllQualifier]:
    # Collapse RFC-style split TXT tokens, then remove remaining quotes
    record = re.sub(r'"\s+"', "", record).replace('"', "").strip()

    m = CONCATENATED_ALL_REGEX.search(record)
    if m:
        pos = m.start(1)
        marked_record = record[:pos] + syntax_error_marker + record[pos:]
        raise SPFSyntaxError(
            f"{domain}: Expected whitespace before 'all' at position {pos} "
            f"(marked with {syntax_error_marker}) in: {marked_record}"
        )

    parsed_record = _SPFGrammar().parse(record)
    if not parsed_record.is_valid:
        pos = parsed_record.pos
        expecting: list[str] = list(
            map(lambda x: str(x).strip('"'), list(parsed_record.expecting))
        )
        expecting_str = " or ".join(expecting)
        marked_record = record[:pos] + syntax_error_marker + record[pos:]
        raise SPFSyntaxError(
            f"{domain}: Expected {expecting_str} at position {pos} "
            f"(marked with {syntax_error_marker}) in: {marked_record}"
        )

    terms = record.split()
    if terms[0].lower() != SPF_VERSION_TAG_REGEX_STRING:
        raise SPFSyntaxError(
            f"{domain}: Expected whitespace after {SPF_VERSION_TAG_REGEX_STRING} "
            f"in: {record}"
        )
    all_qualifier = get_all_qualifier(record, domain)
    mechanisms = []
    for term in terms[1:-1]:
        mechanism = parse_mechanism(term, domain)
        if mechanism.kind is MechanismKind.UNKNOWN:
            raise SPFSyntaxError(
                f"{domain}: Invalid mechanism {mechanism.value} in: {record}"
            )
        # Only the terminal all may carry a qualifier other than pass
        if mechanism.qualifier != "+":
            raise SPFSyntaxError(
                f"{domain}: Unsupported {spf_qualifiers[mechanism.qualifier]} "
                f"qualifier on {term} in: {record}"
            )
        mechanisms.append(mechanism)

    return mechanisms, all_qualifier


def _mask_addresses(
    addresses: list[str], mechanism: Mechanism, domain: str
) -> list[AddressRange]:
    ranges = []
    for address in addresses:
        try:
            ip = ipaddress.ip_address(address)
            prefix_length = mechanism.cidr4
            if ip.version == 6 and mechanism.cidr6 is not None:
                prefix_length = mechanism.cidr6
            elif ip.version == 6 and prefix_length is not None:
                logging.debug(
                    f"{domain}: Applying the /{prefix_length} mask of "
                    f"{mechanism.kind.value}{mechanism.value} to IPv6 "
                    f"address {ip}"
                )
            ranges.append(AddressRange.from_address(ip, prefix_length))
        except ValueError as e:
            raise SPFSyntaxError(
                f"{domain}: Invalid {mechanism.kind.value} mechanism "
                f"{mechanism.kind.value}{mechanism.value}: {e}"
            )
    return ranges


async def _get_addresses(domain: str, resolver: DNSResolver) -> list[str]:
    addresses = await resolver.query_a(domain)
    addresses += await resolver.query_aaaa(domain)
    return addresses


async def _expand_mechanisms(
    mechanisms: list[Mechanism],
    domain: str,
    resolver: DNSResolver,
    budget: LookupBudget,
    recursion: list[str],
) -> list[AddressRange]:
    ranges = []
    for mechanism in mechanisms:
        if mechanism.kind in (MechanismKind.IP4, MechanismKind.IP6):
            ranges.append(mechanism.network)

        elif mechanism.kind is MechanismKind.A:
            budget.spend(mechanism, domain)
            target = mechanism.domain or domain
            addresses = await _get_addresses(target, resolver)
            if len(addresses) == 0:
                logging.debug(
                    f"{domain}: An a mechanism points to {target}, but that "
                    "domain/subdomain does not have any A/AAAA records."
                )
            ranges += _mask_addresses(addresses, mechanism, domain)

        elif mechanism.kind is MechanismKind.MX:
            budget.spend(mechanism, domain)
            target = mechanism.domain or domain
            hostnames = await resolver.query_mx(target)
            if len(hostnames) == 0:
                logging.debug(
                    f"{domain}: An mx mechanism points to {target}, but that "
                    "domain/subdomain does not have any MX records."
                )
            if len(hostnames) > SPF_MAX_MX_HOSTS:
                raise SPFTooManyDNSLookups(
                    f"{target} has more than {SPF_MAX_MX_HOSTS} MX records - "
                    "(RFC 7208 § 4.6.4)",
                    dns_lookups=len(hostnames),
                )
            for hostname in hostnames:
                addresses = await _get_addresses(hostname, resolver)
                ranges += _mask_addresses(addresses, mechanism, domain)

        elif mechanism.kind is MechanismKind.INCLUDE:
            budget.spend(mechanism, domain)
            target = normalize_domain(mechanism.domain)
            if target in recursion:
                pointer = " -> ".join(recursion + [target])
                raise SPFIncludeLoop(f"Include loop: {pointer}")
            included = await get_expanded_policy(
                target,
                resolver=resolver,
                budget=budget,
                recursion=recursion + [target],
            )
            if included.all is AllQualifier.NONE:
                logging.warning(
                    f"{domain}: The included domain {target} does not have "
                    "an SPF record"
                )
            ranges += included.ranges

        else:
            raise SPFSyntaxError(f"{domain}: Invalid mechanism {mechanism.value}")

    return ranges


async def expand_policy_record(
    record: str,
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = DNS_NAMESERVERS,
    resolver: Optional[DNSResolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
    budget: Optional[LookupBudget] = None,
    recursion: Optional[list[str]] = None,
    syntax_error_marker: str = SYNTAX_ERROR_MARKER,
) -> list[AddressRange]:
    """
    Expands an SPF record into the address ranges it permits, resolving
    ``a``, ``mx``, and ``include`` mechanisms

    Args:
        record (str): An SPF record
        domain (str): The domain that the SPF record came from
        nameservers (list): A list of nameservers to query
        resolver (DNSResolver): A resolver object to use for DNS requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout
        budget (LookupBudget): The DNS lookups left for the whole expansion
        recursion (list): A list of domains used in recursion
        syntax_error_marker (str): The maker for pointing out syntax errors

    Returns:
        list: A list of :class:`checkspf.network.AddressRange`

    Raises:
        :exc:`checkspf.spf.SPFSyntaxError`
        :exc:`checkspf.spf.SPFIncludeLoop`
        :exc:`checkspf.spf.SPFTooManyDNSLookups`
        :exc:`checkspf.utils.DNSException`
    """
    domain = normalize_domain(domain)
    logging.debug(f"Expanding the SPF record on {domain}")
    resolver = _get_resolver(resolver, nameservers, timeout, timeout_retries)
    if budget is None:
        budget = LookupBudget()
    if recursion is None:
        recursion = [domain]
    mechanisms, _ = _parse_spf_record(
        record, domain, syntax_error_marker=syntax_error_marker
    )
    return await _expand_mechanisms(mechanisms, domain, resolver, budget, recursion)


async def query_spf_records(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = DNS_NAMESERVERS,
    resolver: Optional[DNSResolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
) -> list[str]:
    """
    Queries DNS for SPF records

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (DNSResolver): A resolver object to use for DNS requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        list: The TXT records that are SPF records

    Raises:
        :exc:`checkspf.utils.DNSException`
    """
    domain = normalize_domain(domain)
    logging.debug(f"Checking for a SPF record on {domain}")
    resolver = _get_resolver(resolver, nameservers, timeout, timeout_retries)
    spf_records = []
    for record in await resolver.query_txt(domain):
        if record == UNDECODABLE_TXT_RECORD:
            logging.warning(f"{domain}: A TXT record contains undecodable characters.")
            continue
        # RFC 7208 § 4.5: the version section is terminated by either an SP
        # character or the end of the record, so "v=spf10" is discarded
        if SPF_RECORD_REGEX.match(record.strip('"')):
            spf_records.append(record)
    return spf_records


async def _expand_spf_records(
    records: list[str],
    domain: str,
    resolver: DNSResolver,
    budget: LookupBudget,
    recursion: list[str],
) -> ExpandedPolicy:
    if len(records) == 0:
        logging.debug(f"{domain}: An SPF record does not exist.")
        return ExpandedPolicy((), AllQualifier.NONE, budget.dns_lookups)
    if len(records) > 1:
        logging.warning(
            f"{domain}: The domain has multiple SPF TXT records; using the "
            "most permissive all mechanism"
        )

    ranges = []
    qualifier = AllQualifier.NONE
    for record in records:
        logging.debug(f"Expanding the SPF record on {domain}: {record}")
        mechanisms, record_qualifier = _parse_spf_record(record, domain)
        ranges += await _expand_mechanisms(
            mechanisms, domain, resolver, budget, recursion
        )
        qualifier = max(qualifier, record_qualifier)

    return ExpandedPolicy(tuple(dict.fromkeys(ranges)), qualifier, budget.dns_lookups)


async def get_expanded_policy(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = DNS_NAMESERVERS,
    resolver: Optional[DNSResolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
    budget: Optional[LookupBudget] = None,
    recursion: Optional[list[str]] = None,
) -> ExpandedPolicy:
    """
    Retrieves and expands the SPF record(s) of a domain

    .. note::
        RFC 7208 treats multiple SPF records as a permanent error. Here the
        ranges of every record are combined, and the most permissive
        ``all`` qualifier among them is kept.

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (DNSResolver): A resolver object to use for DNS requests
        timeout (float): Number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout
        budget (LookupBudget): The DNS lookups left for the whole expansion
        recursion (list): A list of domains used in recursion

    Returns:
        ExpandedPolicy: The permitted address ranges and the ``all``
                        qualifier, which is ``NONE`` when the domain does
                        not have an SPF record

    Raises:
        :exc:`checkspf.spf.SPFSyntaxError`
        :exc:`checkspf.spf.SPFIncludeLoop`
        :exc:`checkspf.spf.SPFTooManyDNSLookups`
        :exc:`checkspf.utils.DNSException`
    """
    domain = normalize_domain(domain)
    check_domain_name(domain)
    resolver = _get_resolver(resolver, nameservers, timeout, timeout_retries)
    if budget is None:
        budget = LookupBudget()
    if recursion is None:
        recursion = [domain]

    records = await query_spf_records(domain, resolver=resolver)
    return await _expand_spf_records(records, domain, resolver, budget, recursion)


async def check_spf(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = DNS_NAMESERVERS,
    resolver: Optional[DNSResolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
) -> dict:
    """
    Returns a dictionary with an expanded SPF policy or an error.

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (DNSResolver): A resolver object to use for DNS requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        dict: A ``dict`` with the following keys:
            - ``domain`` - The domain
            - ``records`` - The SPF records of the domain
            - ``all`` - The ``all`` qualifier
            - ``ranges`` - The permitted address ranges
            - ``dns_lookups`` - The number of DNS lookups
            - ``valid`` - True

        If an error occurs, the dictionary will have the following keys:
            - ``error`` - The error message
            - ``valid`` - False
    """
    domain = normalize_domain(domain)
    resolver = _get_resolver(resolver, nameservers, timeout, timeout_retries)
    spf_results = {
        "domain": domain,
        "records": [],
        "valid": True,
        "all": None,
        "ranges": [],
        "dns_lookups": None,
    }
    try:
        check_domain_name(domain)
        records = await query_spf_records(domain, resolver=resolver)
        spf_results["records"] = records
        policy = await _expand_spf_records(
            records, domain, resolver, LookupBudget(), [domain]
        )
        spf_results["all"] = str(policy.all)
        spf_results["ranges"] = list(map(str, policy.ranges))
        spf_results["dns_lookups"] = policy.dns_lookups
    except SPFError as error:
        spf_results["error"] = str(error.args[0])
        spf_results["valid"] = False
        if error.data:
            for key in error.data:
                spf_results[key] = error.data[key]
    except DNSException as error:
        spf_results["error"] = str(error)
        spf_results["valid"] = False

    return spf_results
