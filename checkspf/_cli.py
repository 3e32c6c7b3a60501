#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Checks if hosts are permitted to send email for a domain using SPF"""

from __future__ import annotations

import asyncio
from argparse import ArgumentParser

import logging

from checkspf import (
    __version__,
    check_senders,
    results_to_json,
    results_to_csv,
    output_to_file,
)
from checkspf._constants import (
    DNS_NAMESERVERS,
    DNS_TIMEOUT,
    DNS_TIMEOUT_RETRIES,
    PUBLIC_NAMESERVERS,
)
from checkspf.spf import check_spf
from checkspf.utils import DNSResolver

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


def _main():
    """Called when the module in executed"""
    arg_parser = ArgumentParser(description=__doc__)
    arg_parser.add_argument("domain", help="the domain to check")
    arg_parser.add_argument(
        "sender",
        nargs="*",
        help="one or more sending IPv4 or IPv6 addresses or CIDR ranges",
    )
    arg_parser.add_argument(
        "-e",
        "--expand",
        action="store_true",
        help="output the expanded SPF policy of the domain instead of verdicts",
    )
    arg_parser.add_argument(
        "-f",
        "--format",
        default="json",
        help="specify JSON or CSV screen output format",
    )
    arg_parser.add_argument(
        "-o",
        "--output",
        nargs="+",
        help="one or more file paths to output to "
        "(must end in .json or .csv) "
        "(silences screen output)",
    )
    arg_parser.add_argument(
        "-n", "--nameserver", nargs="+", help="nameservers to query"
    )
    arg_parser.add_argument(
        "--public-dns",
        action="store_true",
        help="query the Cloudflare and Google public DNS nameservers",
    )
    arg_parser.add_argument(
        "-t",
        "--timeout",
        help=f"number of seconds to wait for an answer from DNS (default {DNS_TIMEOUT})",
        type=float,
        default=DNS_TIMEOUT,
    )
    arg_parser.add_argument(
        "--timeout-retries",
        help="number of times to reattempt a query after a timeout "
        f"(default {DNS_TIMEOUT_RETRIES})",
        type=int,
        default=DNS_TIMEOUT_RETRIES,
    )
    arg_parser.add_argument(
        "-l",
        "--lifetime",
        type=float,
        help="number of seconds to wait for each sender check (default no limit)",
        default=None,
    )
    arg_parser.add_argument("-v", "--version", action="version", version=__version__)
    arg_parser.add_argument(
        "--debug", action="store_true", help="enable debugging output"
    )

    args = arg_parser.parse_args()

    logging_format = "%(asctime)s - %(levelname)s: %(message)s"
    logging.basicConfig(level=logging.WARNING, format=logging_format)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Debug output enabled")

    if not args.expand and len(args.sender) == 0:
        arg_parser.error("at least one sender is required unless --expand is used")

    nameservers = DNS_NAMESERVERS
    if args.public_dns:
        nameservers = PUBLIC_NAMESERVERS
    if args.nameserver:
        nameservers = args.nameserver
    resolver = DNSResolver(
        nameservers=nameservers,
        timeout=args.timeout,
        timeout_retries=args.timeout_retries,
    )

    if args.expand:
        results = asyncio.run(check_spf(args.domain, resolver=resolver))
        if args.format.lower() != "json":
            logging.warning("Expanded policies can only be output as JSON")
        json_results = results_to_json(results)
        if args.output is None:
            print(json_results)
        else:
            for path in args.output:
                if not path.lower().endswith(".json"):
                    logging.error(f"Output path {path} must end in .json")
                else:
                    output_to_file(path, json_results)
        return

    results = asyncio.run(
        check_senders(
            args.sender,
            args.domain,
            resolver=resolver,
            lifetime=args.lifetime,
        )
    )
    if len(results) == 1:
        results = results[0]

    if args.output is None:
        if args.format.lower() == "json":
            results = results_to_json(results)
        elif args.format.lower() == "csv":
            results = results_to_csv(results)
        print(results)
    else:
        for path in args.output:
            json_path = path.lower().endswith(".json")
            csv_path = path.lower().endswith(".csv")

            if not json_path and not csv_path:
                logging.error(f"Output path {path} must end in .json or .csv")
            else:
                if path.lower().endswith(".json"):
                    output_to_file(path, results_to_json(results))
                elif path.lower().endswith(".csv"):
                    output_to_file(path, results_to_csv(results))


if __name__ == "__main__":
    _main()
