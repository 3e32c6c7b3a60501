#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Automated tests"""

import asyncio
import ipaddress
import unittest
from unittest.mock import AsyncMock, MagicMock

import dns.name
import dns.resolver

import checkspf
import checkspf.network
import checkspf.spf
import checkspf.utils
from checkspf import AllQualifier, Verdict
from checkspf.network import AddressRange, parse_cidr


class FakeResolver(object):
    """Answers DNS queries from dictionaries instead of the network"""

    def __init__(self, txt=None, a=None, aaaa=None, mx=None, failures=None):
        self.records = {
            "TXT": txt or {},
            "A": a or {},
            "AAAA": aaaa or {},
            "MX": mx or {},
        }
        self.failures = set(failures or [])
        self.queries = []

    async def _query(self, domain, record_type):
        domain = checkspf.utils.normalize_domain(domain)
        self.queries.append((record_type, domain))
        if domain in self.failures:
            raise checkspf.utils.DNSException("All nameservers failed to answer")
        return list(self.records[record_type].get(domain, []))

    async def query_txt(self, domain):
        return await self._query(domain, "TXT")

    async def query_a(self, domain):
        return await self._query(domain, "A")

    async def query_aaaa(self, domain):
        return await self._query(domain, "AAAA")

    async def query_mx(self, domain):
        return await self._query(domain, "MX")


class SlowResolver(FakeResolver):
    """Never answers queries about the given domains"""

    def __init__(self, slow_domains, **kwargs):
        FakeResolver.__init__(self, **kwargs)
        self.slow_domains = set(slow_domains)
        self.cancelled = False

    async def _query(self, domain, record_type):
        if domain in self.slow_domains:
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        return await FakeResolver._query(self, domain, record_type)


class BrokenResolver(FakeResolver):
    async def _query(self, domain, record_type):
        raise RuntimeError("This is a bug")


example_resolver = FakeResolver(
    txt={
        "example.com": [
            "google-site-verification=abc123",
            "v=spf1 ip4:52.58.128.0/17 -all",
        ],
    }
)


class Test(unittest.TestCase):
    def testParseCIDRRoundTrip(self):
        """Formatted ranges parse back to the same range"""
        examples = [
            "192.0.2.0/24",
            "52.58.128.0/17",
            "0.0.0.0/0",
            "203.0.113.7",
            "2001:db8::/32",
            "::/0",
            "2001:db8::1",
            "2001:DB8:0:0:0:0:0:1/128",
        ]
        for example in examples:
            network = parse_cidr(example)
            self.assertEqual(parse_cidr(str(network)), network)
            self.assertEqual(
                parse_cidr(str(network)).prefix_length, network.prefix_length
            )

    def testBareAddressIsFullWidth(self):
        """A bare address covers only itself"""
        ipv4 = parse_cidr("192.0.2.1")
        self.assertEqual(ipv4.version, 4)
        self.assertEqual(ipv4.prefix_length, 32)
        self.assertEqual(ipv4.network_address, bytes([192, 0, 2, 1]))
        ipv6 = parse_cidr("2001:db8::1")
        self.assertEqual(ipv6.version, 6)
        self.assertEqual(ipv6.prefix_length, 128)
        self.assertEqual(len(ipv6.network_address), 16)

    def testHostBitsAreCleared(self):
        network = parse_cidr("52.58.128.109/17")
        self.assertEqual(network.network_address, bytes([52, 58, 128, 0]))
        self.assertEqual(str(network), "52.58.128.0/17")
        self.assertEqual(network, parse_cidr("52.58.128.0/17"))

    def testInvalidCIDR(self):
        """Invalid addresses and prefix lengths raise InvalidAddressRange"""
        examples = [
            "",
            "example.com",
            "192.0.2",
            "192.0.2.256",
            "192.0.2.1/33",
            "192.0.2.1/",
            "192.0.2.1/-1",
            "192.0.2.1/+8",
            "192.0.2.1/8/8",
            "2001:db8::1/129",
            "1200:0000:AB00:1234:O000:2552:7777:1313",
        ]
        for example in examples:
            with self.assertRaises(checkspf.network.InvalidAddressRange, msg=example):
                parse_cidr(example)

    def testFromAddressMask(self):
        network = AddressRange.from_address("192.0.2.77", 24)
        self.assertEqual(network, parse_cidr("192.0.2.0/24"))
        network = AddressRange.from_address(ipaddress.ip_address("2001:db8::1"), 64)
        self.assertEqual(str(network), "2001:db8::/64")
        with self.assertRaises(checkspf.network.InvalidAddressRange):
            AddressRange.from_address("192.0.2.77", 64)

    def testAddressRangeIsImmutable(self):
        network = parse_cidr("192.0.2.0/24")
        with self.assertRaises(AttributeError):
            network._network = ipaddress.ip_network("198.51.100.0/24")
        self.assertEqual(len({network, parse_cidr("192.0.2.1/24")}), 1)

    def testOverlaps(self):
        """Ranges overlap when one contains the other"""
        pairs = [
            ("52.58.128.0/17", "52.58.128.109", True),
            ("52.58.128.0/17", "52.58.0.0/16", True),
            ("52.58.128.0/17", "52.58.0.0/17", False),
            ("52.58.128.0/17", "1.1.1.1", False),
            ("0.0.0.0/0", "203.0.113.7", True),
            ("192.0.2.1", "192.0.2.1", True),
            ("192.0.2.1", "192.0.2.2", False),
            ("2001:db8::/32", "2001:db8:1234::1", True),
            ("2001:db8::/32", "2001:db9::1", False),
            ("::/0", "0.0.0.0/0", False),
            ("::ffff:192.0.2.1", "192.0.2.1", False),
        ]
        for a, b, expected in pairs:
            a = parse_cidr(a)
            b = parse_cidr(b)
            self.assertEqual(a.overlaps(b), expected, f"{a} {b}")
            self.assertEqual(checkspf.overlaps(b, a), expected, f"{b} {a}")

    def testAllQualifierOrder(self):
        """Combined records keep the largest qualifier"""
        self.assertLess(AllQualifier.NONE, AllQualifier.NEUTRAL)
        self.assertLess(AllQualifier.NEUTRAL, AllQualifier.SOFTFAIL)
        self.assertLess(AllQualifier.SOFTFAIL, AllQualifier.FAIL)
        self.assertLess(AllQualifier.FAIL, AllQualifier.PASS)
        self.assertIs(max(AllQualifier.FAIL, AllQualifier.SOFTFAIL), AllQualifier.FAIL)
        self.assertEqual(str(AllQualifier.SOFTFAIL), "softfail")

    def testGetAllQualifier(self):
        examples = {
            "v=spf1 -all": AllQualifier.FAIL,
            "v=spf1 ip4:192.0.2.1 ~all": AllQualifier.SOFTFAIL,
            "v=spf1 ip4:192.0.2.1 ?ALL": AllQualifier.NEUTRAL,
            "v=spf1 +all": AllQualifier.PASS,
            "v=spf1 all": AllQualifier.PASS,
        }
        for record, qualifier in examples.items():
            self.assertIs(checkspf.spf.get_all_qualifier(record, "example.com"), qualifier)
        for record in ["v=spf1", "v=spf1 ip4:192.0.2.1", "v=spf1 !all"]:
            with self.assertRaises(checkspf.spf.SPFSyntaxError, msg=record):
                checkspf.spf.get_all_qualifier(record, "example.com")

    def testParseMechanism(self):
        """Mechanisms are classified before they are resolved"""
        parse = checkspf.spf.parse_mechanism
        kind = checkspf.spf.MechanismKind

        mechanism = parse("ip4:192.0.2.0/24", "example.com")
        self.assertIs(mechanism.kind, kind.IP4)
        self.assertEqual(mechanism.network, parse_cidr("192.0.2.0/24"))

        mechanism = parse("IP6:2001:DB8::/32", "example.com")
        self.assertIs(mechanism.kind, kind.IP6)

        mechanism = parse("a", "example.com")
        self.assertIs(mechanism.kind, kind.A)
        self.assertIsNone(mechanism.domain)
        self.assertIsNone(mechanism.cidr4)

        mechanism = parse("a:mail.example.com/24", "example.com")
        self.assertEqual(mechanism.domain, "mail.example.com")
        self.assertEqual(mechanism.cidr4, 24)
        self.assertIsNone(mechanism.cidr6)

        mechanism = parse("mx/24//64", "example.com")
        self.assertIs(mechanism.kind, kind.MX)
        self.assertIsNone(mechanism.domain)
        self.assertEqual(mechanism.cidr4, 24)
        self.assertEqual(mechanism.cidr6, 64)

        mechanism = parse("mx://64", "example.com")
        self.assertIs(mechanism.kind, kind.UNKNOWN)

        mechanism = parse("~include:_spf.example.net", "example.com")
        self.assertIs(mechanism.kind, kind.INCLUDE)
        self.assertEqual(mechanism.qualifier, "~")
        self.assertEqual(mechanism.domain, "_spf.example.net")

        self.assertIs(parse("apple", "example.com").kind, kind.UNKNOWN)
        self.assertIs(parse("exists:example.com", "example.com").kind, kind.UNKNOWN)

    def testInvalidIPMechanisms(self):
        """Invalid ip4 and ip6 values raise SPFSyntaxError"""
        examples = [
            "ip4:relay.mailchannels.net",
            "ip4:1200:0000:AB00:1234:0000:2552:7777:1313",
            "ip4:78.46.96.236/99",
            "ip6:1200:0000:AB00:1234:O000:2552:7777:1313",
            "ip6:78.46.96.236",
            "ip6:1200:0000:AB00:1234:0000:2552:7777:1313/130",
            "ip4:",
            "ip4",
        ]
        for example in examples:
            with self.assertRaises(checkspf.spf.SPFSyntaxError, msg=example):
                checkspf.spf.parse_mechanism(example, "surftown.dk")

    def testEvaluatePolicy(self):
        policy = checkspf.ExpandedPolicy(
            (parse_cidr("192.0.2.0/24"), parse_cidr("2001:db8::/32")),
            AllQualifier.SOFTFAIL,
        )
        self.assertIs(
            checkspf.evaluate_policy(policy, parse_cidr("192.0.2.9")), Verdict.PASS
        )
        self.assertIs(
            checkspf.evaluate_policy(policy, parse_cidr("2001:db8::9")), Verdict.PASS
        )
        self.assertIs(
            checkspf.evaluate_policy(policy, parse_cidr("198.51.100.1")),
            Verdict.SOFTFAIL,
        )
        empty = checkspf.ExpandedPolicy((), AllQualifier.NONE)
        self.assertIs(
            checkspf.evaluate_policy(empty, parse_cidr("192.0.2.9")), Verdict.NONE
        )

    def testResultsToCSV(self):
        results = [
            {
                "sender": "192.0.2.1",
                "domain": "example.com",
                "verdict": "pass",
                "all": "fail",
                "ranges": ["192.0.2.0/24", "2001:db8::/32"],
                "dns_lookups": 0,
            },
            {
                "sender": "not an address",
                "domain": "example.com",
                "verdict": "permerror",
                "all": None,
                "ranges": [],
                "dns_lookups": None,
                "error": "not an address is not a valid IP address",
            },
        ]
        lines = checkspf.results_to_csv(results).splitlines()
        self.assertEqual(lines[0], "domain,sender,verdict,all,dns_lookups,ranges,error")
        self.assertEqual(
            lines[1], "example.com,192.0.2.1,pass,fail,0,192.0.2.0/24|2001:db8::/32,"
        )
        self.assertTrue(lines[2].endswith("not an address is not a valid IP address"))


class TestSPF(unittest.IsolatedAsyncioTestCase):
    async def testExample(self):
        """Senders inside an ip4 range pass, others get the all result"""
        verdict = await checkspf.validate(
            "52.58.128.109", "example.com", resolver=example_resolver
        )
        self.assertIs(verdict, Verdict.PASS)
        verdict = await checkspf.validate("1.1.1.1", "example.com", resolver=example_resolver)
        self.assertIs(verdict, Verdict.FAIL)

    async def testNoTXTRecords(self):
        """Domains without SPF records have no verdict"""
        resolver = FakeResolver()
        for sender in ["192.0.2.1", "2001:db8::1"]:
            verdict = await checkspf.validate(sender, "empty.example", resolver=resolver)
            self.assertIs(verdict, Verdict.NONE)

    async def testNoSPFRecord(self):
        """TXT records that are not SPF records are ignored"""
        resolver = FakeResolver(
            txt={
                "example.com": [
                    "MS=83859DAEBD1978F9A7A67D3",
                    "v=spf10 ip4:192.0.2.0/24 -all",
                    "v=spf1x -all",
                ]
            }
        )
        policy = await checkspf.get_expanded_policy("example.com", resolver=resolver)
        self.assertEqual(policy.ranges, ())
        self.assertIs(policy.all, AllQualifier.NONE)
        verdict = await checkspf.validate("192.0.2.1", "example.com", resolver=resolver)
        self.assertIs(verdict, Verdict.NONE)

    async def testInvalidSender(self):
        """Invalid senders are a permanent error and cause no DNS queries"""
        resolver = FakeResolver(txt=example_resolver.records["TXT"])
        for sender in ["52.58.128", "mail.example.com", "", "52.58.128.109/33", 42]:
            verdict = await checkspf.validate(sender, "example.com", resolver=resolver)
            self.assertIs(verdict, Verdict.PERMERROR, sender)
        self.assertEqual(resolver.queries, [])

    async def testStructuredSender(self):
        for sender in [
            ipaddress.ip_address("52.58.128.109"),
            ipaddress.ip_network("52.58.130.0/24"),
            parse_cidr("52.58.128.1"),
            "52.58.128.0/20",
        ]:
            verdict = await checkspf.validate(sender, "example.com", resolver=example_resolver)
            self.assertIs(verdict, Verdict.PASS, sender)
        verdict = await checkspf.validate(
            ipaddress.ip_address("2001:db8::1"), "example.com", resolver=example_resolver
        )
        self.assertIs(verdict, Verdict.FAIL)

    async def testAllQualifiers(self):
        """Senders that do not match get the verdict of the all mechanism"""
        examples = {
            "-all": Verdict.FAIL,
            "~all": Verdict.SOFTFAIL,
            "?all": Verdict.NEUTRAL,
            "+all": Verdict.PASS,
        }
        for term, expected in examples.items():
            resolver = FakeResolver(
                txt={"example.com": [f"v=spf1 ip6:2001:db8::/32 {term}"]}
            )
            verdict = await checkspf.validate("192.0.2.1", "example.com", resolver=resolver)
            self.assertIs(verdict, expected, term)
            verdict = await checkspf.validate(
                "2001:db8::25", "example.com", resolver=resolver
            )
            self.assertIs(verdict, Verdict.PASS, term)

    async def testUppercaseSPFMechanism(self):
        """Treat uppercase SPF mechanisms as valid"""
        ranges = await checkspf.expand_policy_record(
            "v=spf1 IP4:147.75.8.208 -ALL", "example.no", resolver=FakeResolver()
        )
        self.assertEqual(ranges, [parse_cidr("147.75.8.208")])

    async def testSplitSPFRecord(self):
        """Split SPF records are parsed properly"""
        resolver = FakeResolver(
            txt={"_spf.example.net": ["v=spf1 ip4:192.0.2.0/24 -all"]}
        )
        record = '"v=spf1 ip4:147.75.8.208 " "include:_spf.example.net -all"'
        ranges = await checkspf.expand_policy_record(
            record, "example.com", resolver=resolver
        )
        self.assertEqual(
            ranges, [parse_cidr("147.75.8.208"), parse_cidr("192.0.2.0/24")]
        )

    async def testSPFSyntaxErrors(self):
        """SPF record syntax errors raise SPFSyntaxError"""
        examples = [
            "v=spf1 mx a:mail.cohaesio.net include: trustpilotservice.com ~all",
            "v=spf1 exists:%{i}.spf.hc0000-xx.iphmx.com ~all",
            "v=spf1 include:%{ir}.%{v}.%{d}.spf.has.pphosted.com ~all",
            "v=spf1 ptr -all",
            "v=spf1 ip4:192.0.2.1 redirect=_spf.example.com",
            "v=spf1 ip4:203.0.113.7~all",
            "v=spf1 -all ip4:192.0.2.1",
            "v=spf1 -all exp=explain._spf.example.com",
            "v=spf1 ip4:192.0.2.1",
            "v=spf1",
            "v=spf1 apple -all",
            "v=spf1 a: -all",
            "v=spf1ip4:192.0.2.1 -all",
            "v=spf1 ip4:78.46.96.236/99 ~all",
            "v=spf1 ip6:78.46.96.236 ~all",
        ]
        resolver = FakeResolver()
        for record in examples:
            with self.assertRaises(checkspf.spf.SPFSyntaxError, msg=record):
                await checkspf.expand_policy_record(
                    record, "example.com", resolver=resolver
                )
        self.assertEqual(resolver.queries, [])

    async def testSyntaxErrorIsPermError(self):
        resolver = FakeResolver(
            txt={"example.com": ["v=spf1 ip4:192.0.2.1 ptr:example.com -all"]}
        )
        verdict = await checkspf.validate("192.0.2.1", "example.com", resolver=resolver)
        self.assertIs(verdict, Verdict.PERMERROR)
        resolver = FakeResolver(txt={"example.com": ["v=spf1 ip4:192.0.2.1"]})
        verdict = await checkspf.validate("192.0.2.1", "example.com", resolver=resolver)
        self.assertIs(verdict, Verdict.PERMERROR)

    async def testAMechanism(self):
        """a mechanisms resolve A and AAAA records"""
        resolver = FakeResolver(
            a={"example.com": ["192.0.2.10"], "mail.example.com": ["198.51.100.7"]},
            aaaa={"example.com": ["2001:db8::10"]},
        )
        ranges = await checkspf.expand_policy_record(
            "v=spf1 a a:mail.example.com -all", "example.com", resolver=resolver
        )
        self.assertEqual(
            ranges,
            [
                parse_cidr("192.0.2.10"),
                parse_cidr("2001:db8::10"),
                parse_cidr("198.51.100.7"),
            ],
        )

    async def testAMechanismMask(self):
        """A mask on an a mechanism applies to each resolved address"""
        resolver = FakeResolver(
            txt={"example.com": ["v=spf1 a:mail.example.com/24 -all"]},
            a={"mail.example.com": ["192.0.2.10"]},
            aaaa={"mail.example.com": ["2001:db8:1:2::10"]},
        )
        with self.assertLogs(level="DEBUG") as logs:
            policy = await checkspf.get_expanded_policy(
                "example.com", resolver=resolver
            )
        self.assertEqual(
            policy.ranges, (parse_cidr("192.0.2.0/24"), parse_cidr("2001:d00::/24"))
        )
        self.assertTrue(
            any("/24 mask" in line and "2001:db8:1:2::10" in line for line in logs.output)
        )
        verdict = await checkspf.validate("192.0.2.200", "example.com", resolver=resolver)
        self.assertIs(verdict, Verdict.PASS)
        verdict = await checkspf.validate("192.0.3.1", "example.com", resolver=resolver)
        self.assertIs(verdict, Verdict.FAIL)

    async def testDualCIDRMask(self):
        """The //length form sets the mask of IPv6 addresses"""
        resolver = FakeResolver(
            a={"example.com": ["192.0.2.10"]},
            aaaa={"example.com": ["2001:db8:1:2::10"]},
        )
        ranges = await checkspf.expand_policy_record(
            "v=spf1 a/24//64 -all", "example.com", resolver=resolver
        )
        self.assertEqual(
            ranges, [parse_cidr("192.0.2.0/24"), parse_cidr("2001:db8:1:2::/64")]
        )
        ranges = await checkspf.expand_policy_record(
            "v=spf1 a//64 -all", "example.com", resolver=resolver
        )
        self.assertEqual(
            ranges, [parse_cidr("192.0.2.10"), parse_cidr("2001:db8:1:2::/64")]
        )

    async def testMaskTooLong(self):
        """A mask longer than an address raises SPFSyntaxError"""
        resolver = FakeResolver(a={"example.com": ["192.0.2.10"]})
        with self.assertRaises(checkspf.spf.SPFSyntaxError):
            await checkspf.expand_policy_record(
                "v=spf1 a/64 -all", "example.com", resolver=resolver
            )

    async def testMXMechanism(self):
        """mx mechanisms resolve the addresses of each mail exchanger"""
        resolver = FakeResolver(
            txt={"example.com": ["v=spf1 mx mx:example.org/24 -all"]},
            mx={
                "example.com": ["mx1.example.com", "mx2.example.com"],
                "example.org": ["mail.example.org"],
            },
            a={
                "mx1.example.com": ["192.0.2.1"],
                "mx2.example.com": ["192.0.2.2"],
                "mail.example.org": ["198.51.100.25"],
            },
            aaaa={"mx1.example.com": ["2001:db8::1"]},
        )
        policy = await checkspf.get_expanded_policy("example.com", resolver=resolver)
        self.assertEqual(
            set(policy.ranges),
            {
                parse_cidr("192.0.2.1"),
                parse_cidr("2001:db8::1"),
                parse_cidr("192.0.2.2"),
                parse_cidr("198.51.100.0/24"),
            },
        )
        self.assertEqual(policy.dns_lookups, 2)
        verdict = await checkspf.validate("198.51.100.99", "example.com", resolver=resolver)
        self.assertIs(verdict, Verdict.PASS)
        verdict = await checkspf.validate("192.0.2.3", "example.com", resolver=resolver)
        self.assertIs(verdict, Verdict.FAIL)

    async def testTooManyMXHosts(self):
        hosts = [f"mx{i}.example.com" for i in range(11)]
        resolver = FakeResolver(mx={"example.com": hosts})
        with self.assertRaises(checkspf.spf.SPFTooManyDNSLookups):
            await checkspf.expand_policy_record(
                "v=spf1 mx -all", "example.com", resolver=resolver
            )

    async def testMissingRecordsAreNotErrors(self):
        """a and mx mechanisms without records contribute nothing"""
        resolver = FakeResolver(
            txt={"example.com": ["v=spf1 a mx ip4:192.0.2.1 ~all"]}
        )
        policy = await checkspf.get_expanded_policy("example.com", resolver=resolver)
        self.assertEqual(policy.ranges, (parse_cidr("192.0.2.1"),))
        self.assertIs(policy.all, AllQualifier.SOFTFAIL)

    async def testInclude(self):
        """Included ranges are used, but not the included all mechanism"""
        resolver = FakeResolver(
            txt={
                "example.com": ["v=spf1 ip4:203.0.113.0/24 include:_spf.example.net -all"],
                "_spf.example.net": ["v=spf1 ip4:192.0.2.0/24 ip6:2001:db8::/32 +all"],
            }
        )
        policy = await checkspf.get_expanded_policy("example.com", resolver=resolver)
        self.assertEqual(
            policy.ranges,
            (
                parse_cidr("203.0.113.0/24"),
                parse_cidr("192.0.2.0/24"),
                parse_cidr("2001:db8::/32"),
            ),
        )
        self.assertIs(policy.all, AllQualifier.FAIL)
        self.assertEqual(policy.dns_lookups, 1)
        verdict = await checkspf.validate("192.0.2.5", "example.com", resolver=resolver)
        self.assertIs(verdict, Verdict.PASS)
        verdict = await checkspf.validate("198.51.100.1", "example.com", resolver=resolver)
        self.assertIs(verdict, Verdict.FAIL)

    async def testIncludeMissingSPF(self):
        """An included domain without an SPF record adds no ranges"""
        resolver = FakeResolver(
            txt={"example.com": ["v=spf1 include:example.doesnotexist ~all"]}
        )
        with self.assertLogs(level="WARNING") as logs:
            policy = await checkspf.get_expanded_policy("example.com", resolver=resolver)
        self.assertEqual(policy.ranges, ())
        self.assertIs(policy.all, AllQualifier.SOFTFAIL)
        self.assertTrue(any("example.doesnotexist" in line for line in logs.output))

    async def testSPFIncludeLoop(self):
        """SPF record with include loop raises SPFIncludeLoop"""
        resolver = FakeResolver(
            txt={
                "example.com": ["v=spf1 include:example.net -all"],
                "example.net": ["v=spf1 include:example.com -all"],
            }
        )
        with self.assertRaises(checkspf.spf.SPFIncludeLoop):
            await checkspf.expand_policy_record(
                "v=spf1 include:example.com -all", "example.com", resolver=resolver
            )
        with self.assertRaises(checkspf.spf.SPFIncludeLoop):
            await checkspf.get_expanded_policy("example.com", resolver=resolver)
        verdict = await checkspf.validate("192.0.2.1", "example.com", resolver=resolver)
        self.assertIs(verdict, Verdict.PERMERROR)

    async def testTooManySPFDNSLookups(self):
        """SPF records with > 10 SPF mechanisms that cause DNS lookups raise
        SPFTooManyDNSLookups"""
        record = "v=spf1 " + " ".join(f"a:host{i}.example.com" for i in range(11))
        record += " -all"
        resolver = FakeResolver()
        with self.assertRaises(checkspf.spf.SPFTooManyDNSLookups) as context:
            await checkspf.expand_policy_record(record, "example.com", resolver=resolver)
        self.assertEqual(context.exception.data, {"dns_lookups": 11})
        self.assertNotIn(("A", "host10.example.com"), resolver.queries)

    async def testDNSLookupsAreCountedAcrossIncludes(self):
        """Every included record spends the same DNS lookup budget"""
        txt = {
            "example.com": [
                "v=spf1 "
                + " ".join(f"include:_spf{i}.example.com" for i in range(4))
                + " -all"
            ]
        }
        for i in range(4):
            txt[f"_spf{i}.example.com"] = ["v=spf1 a mx ?all"]
        resolver = FakeResolver(txt=txt)
        with self.assertRaises(checkspf.spf.SPFTooManyDNSLookups):
            await checkspf.get_expanded_policy("example.com", resolver=resolver)
        verdict = await checkspf.validate("192.0.2.1", "example.com", resolver=resolver)
        self.assertIs(verdict, Verdict.PERMERROR)

        txt = {"example.com": txt["example.com"]}
        for i in range(4):
            txt[f"_spf{i}.example.com"] = ["v=spf1 a ?all"]
        policy = await checkspf.get_expanded_policy(
            "example.com", resolver=FakeResolver(txt=txt)
        )
        self.assertEqual(policy.dns_lookups, 8)

    async def testMultipleSPFRecords(self):
        """The ranges of every record and the largest all qualifier are used"""
        resolver = FakeResolver(
            txt={
                "example.com": [
                    "v=spf1 ip4:192.0.2.0/24 ?all",
                    "v=spf1 ip4:198.51.100.0/24 ~all",
                ]
            }
        )
        with self.assertLogs(level="WARNING"):
            policy = await checkspf.get_expanded_policy("example.com", resolver=resolver)
        self.assertEqual(
            policy.ranges, (parse_cidr("192.0.2.0/24"), parse_cidr("198.51.100.0/24"))
        )
        self.assertIs(policy.all, AllQualifier.SOFTFAIL)
        verdict = await checkspf.validate("203.0.113.1", "example.com", resolver=resolver)
        self.assertIs(verdict, Verdict.SOFTFAIL)

    async def testQualifiedMechanisms(self):
        """Mechanisms with a qualifier other than + are a permanent error"""
        examples = [
            "v=spf1 -ip4:192.0.2.1 +all",
            "v=spf1 ip4:198.51.100.0/24 ~a -all",
            "v=spf1 ?include:_spf.example.net ~all",
            "v=spf1 -mx:example.org ?all",
        ]
        for record in examples:
            resolver = FakeResolver(txt={"example.com": [record]})
            with self.assertRaises(checkspf.spf.SPFSyntaxError, msg=record):
                await checkspf.expand_policy_record(
                    record, "example.com", resolver=resolver
                )
            verdict = await checkspf.validate(
                "192.0.2.1", "example.com", resolver=resolver
            )
            self.assertIs(verdict, Verdict.PERMERROR, record)
            self.assertEqual(resolver.queries, [("TXT", "example.com")])

        resolver = FakeResolver(txt={"example.com": ["v=spf1 +ip4:192.0.2.1 -all"]})
        verdict = await checkspf.validate("192.0.2.1", "example.com", resolver=resolver)
        self.assertIs(verdict, Verdict.PASS)

    async def testInvalidDomainNames(self):
        """Domain names that cannot be queried are a permanent error"""
        long_label = "a" * 64
        long_name = ".".join(["a" * 63] * 4)
        examples = [
            "v=spf1 include:foo..bar -all",
            f"v=spf1 include:{long_label}.example -all",
            f"v=spf1 a:{long_label}.example -all",
            "v=spf1 mx:mail..example.com/24 -all",
            f"v=spf1 include:{long_name} -all",
        ]
        for record in examples:
            resolver = FakeResolver(txt={"example.com": [record]})
            with self.assertRaises(checkspf.spf.SPFSyntaxError, msg=record):
                await checkspf.expand_policy_record(
                    record, "example.com", resolver=resolver
                )
            verdict = await checkspf.validate(
                "192.0.2.1", "example.com", resolver=resolver
            )
            self.assertIs(verdict, Verdict.PERMERROR, record)
            self.assertEqual(resolver.queries, [("TXT", "example.com")])

        resolver = FakeResolver()
        for domain in ["bad..example", f"{long_label}.example", long_name, ""]:
            verdict = await checkspf.validate("192.0.2.1", domain, resolver=resolver)
            self.assertIs(verdict, Verdict.PERMERROR, domain)
            result = await checkspf.check_spf(domain, resolver=resolver)
            self.assertFalse(result["valid"], domain)
        self.assertEqual(resolver.queries, [])

    async def testDNSFailureIsTempError(self):
        """DNS failures result in temperror"""
        resolver = FakeResolver(failures=["example.com"])
        verdict = await checkspf.validate("192.0.2.1", "example.com", resolver=resolver)
        self.assertIs(verdict, Verdict.TEMPERROR)

        resolver = FakeResolver(
            txt={"example.com": ["v=spf1 ip4:192.0.2.1 include:broken.example -all"]},
            failures=["broken.example"],
        )
        verdict = await checkspf.validate("192.0.2.1", "example.com", resolver=resolver)
        self.assertIs(verdict, Verdict.TEMPERROR)
        with self.assertRaises(checkspf.DNSException):
            await checkspf.get_expanded_policy("example.com", resolver=resolver)

    async def testIncludedSyntaxErrorIsPermError(self):
        resolver = FakeResolver(
            txt={
                "example.com": ["v=spf1 ip4:192.0.2.1 include:broken.example -all"],
                "broken.example": ["v=spf1 ip4:192.0.2.300 -all"],
            }
        )
        verdict = await checkspf.validate("192.0.2.1", "example.com", resolver=resolver)
        self.assertIs(verdict, Verdict.PERMERROR)

    async def testUnexpectedErrorsPropagate(self):
        with self.assertRaises(RuntimeError):
            await checkspf.validate("192.0.2.1", "example.com", resolver=BrokenResolver())

    async def testLifetime(self):
        """Checks that take too long result in temperror"""
        resolver = SlowResolver(["example.com"])
        verdict = await checkspf.validate(
            "192.0.2.1", "example.com", resolver=resolver, lifetime=0.05
        )
        self.assertIs(verdict, Verdict.TEMPERROR)
        self.assertTrue(resolver.cancelled)

    async def testCancellation(self):
        """Cancelling a check cancels the lookups of included domains"""
        resolver = SlowResolver(
            ["slow.example"],
            txt={"example.com": ["v=spf1 include:slow.example -all"]},
        )
        task = asyncio.ensure_future(
            checkspf.validate("192.0.2.1", "example.com", resolver=resolver)
        )
        for _ in range(10):
            await asyncio.sleep(0)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertTrue(resolver.cancelled)

    async def testCheckSenders(self):
        """Several senders are checked concurrently"""
        results = await checkspf.check_senders(
            ["52.58.128.109", "1.1.1.1", "bogus"],
            "Example.COM.",
            resolver=example_resolver,
        )
        self.assertEqual([r["verdict"] for r in results], ["pass", "fail", "permerror"])
        self.assertEqual(results[0]["domain"], "example.com")
        self.assertEqual(results[0]["all"], "fail")
        self.assertEqual(results[0]["ranges"], ["52.58.128.0/17"])
        self.assertEqual(results[0]["dns_lookups"], 0)
        self.assertNotIn("error", results[0])
        self.assertIn("error", results[2])
        self.assertIsNone(results[2]["all"])

    async def testCheckSPF(self):
        resolver = FakeResolver(txt=example_resolver.records["TXT"])
        result = await checkspf.check_spf("example.com", resolver=resolver)
        self.assertTrue(result["valid"])
        self.assertEqual(result["records"], ["v=spf1 ip4:52.58.128.0/17 -all"])
        self.assertEqual(result["all"], "fail")
        self.assertEqual(result["ranges"], ["52.58.128.0/17"])
        self.assertEqual(resolver.queries, [("TXT", "example.com")])

        record = "v=spf1 " + " ".join(f"a:host{i}.example.com" for i in range(11))
        resolver = FakeResolver(txt={"example.com": [record + " -all"]})
        result = await checkspf.check_spf("example.com", resolver=resolver)
        self.assertFalse(result["valid"])
        self.assertEqual(result["dns_lookups"], 11)
        self.assertIn("error", result)

        result = await checkspf.check_spf(
            "example.com", resolver=FakeResolver(failures=["example.com"])
        )
        self.assertFalse(result["valid"])


def _answer(**kwargs):
    answer = MagicMock()
    for key, value in kwargs.items():
        setattr(answer, key, value)
    return answer


class TestDNSResolver(unittest.IsolatedAsyncioTestCase):
    def _resolver(self, side_effect=None, return_value=None, timeout_retries=2):
        mock_resolver = MagicMock()
        mock_resolver.nameservers = ["192.0.2.53"]
        mock_resolver.resolve = AsyncMock(
            side_effect=side_effect, return_value=return_value
        )
        resolver = checkspf.utils.DNSResolver(
            resolver=mock_resolver, timeout_retries=timeout_retries
        )
        return resolver, mock_resolver

    async def testMissingRecordsAreEmpty(self):
        for error in [dns.resolver.NXDOMAIN(), dns.resolver.NoAnswer()]:
            resolver, _ = self._resolver(side_effect=error)
            self.assertEqual(await resolver.query_a("example.com"), [])
            self.assertEqual(await resolver.query_txt("example.com"), [])

    async def testTimeoutRetries(self):
        error = dns.resolver.LifetimeTimeout(timeout=2.0001, errors=[])
        resolver, mock_resolver = self._resolver(side_effect=error)
        with self.assertRaises(checkspf.utils.DNSException):
            await resolver.query_txt("example.com")
        self.assertEqual(mock_resolver.resolve.await_count, 3)

    async def testDNSErrorsAreWrapped(self):
        for error in [dns.resolver.NoNameservers(), OSError("Network is unreachable")]:
            resolver, _ = self._resolver(side_effect=error)
            with self.assertRaises(checkspf.utils.DNSException):
                await resolver.query_a("example.com")

    async def testTXTRecordsAreJoined(self):
        answers = [
            _answer(strings=(b"v=spf1 ip4:192.0.2.1 ", b"-all")),
            _answer(strings=(b"\xff\xfe",)),
            _answer(strings=()),
        ]
        resolver, mock_resolver = self._resolver(return_value=answers)
        records = await resolver.query_txt("Example.COM.")
        self.assertEqual(
            records,
            ["v=spf1 ip4:192.0.2.1 -all", checkspf.utils.UNDECODABLE_TXT_RECORD],
        )
        self.assertEqual(mock_resolver.resolve.await_args.args, ("example.com", "TXT"))

    async def testMXRecordsAreSorted(self):
        answers = [
            _answer(preference=20, exchange=dns.name.from_text("MX2.example.com.")),
            _answer(preference=10, exchange=dns.name.from_text("mx1.example.com.")),
        ]
        resolver, _ = self._resolver(return_value=answers)
        self.assertEqual(
            await resolver.query_mx("example.com"),
            ["mx1.example.com", "mx2.example.com"],
        )

    async def testNullMX(self):
        answers = [_answer(preference=0, exchange=dns.name.root)]
        resolver, _ = self._resolver(return_value=answers)
        self.assertEqual(await resolver.query_mx("example.com"), [])

    def testNormalizeDomain(self):
        domain = checkspf.utils.normalize_domain("Exam\u200bple.COM.")
        self.assertEqual(domain, "example.com")


if __name__ == "__main__":
    unittest.main(verbosity=2)
