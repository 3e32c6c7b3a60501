# -*- coding: utf-8 -*-
"""Constant values"""

from __future__ import annotations
import os

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

__version__ = "1.0.0"

SYNTAX_ERROR_MARKER = "➞"
DNS_TIMEOUT = 2.0
DNS_TIMEOUT_RETRIES = 2
DNS_NAMESERVERS = None
SPF_MAX_DNS_LOOKUPS = 10
SPF_MAX_MX_HOSTS = 10

# Cloudflare and Google public DNS
PUBLIC_NAMESERVERS = [
    "1.1.1.1",
    "1.0.0.1",
    "2606:4700:4700::1111",
    "2606:4700:4700::1001",
    "8.8.8.8",
    "8.8.4.4",
    "2001:4860:4860::8888",
    "2001:4860:4860::8844",
]

env = os.environ

if "DNS_TIMEOUT" in env:
    DNS_TIMEOUT = float(env["DNS_TIMEOUT"])
if "DNS_TIMEOUT_RETRIES" in env:
    DNS_TIMEOUT_RETRIES = int(env["DNS_TIMEOUT_RETRIES"])
if "DNS_NAMESERVERS" in env:
    DNS_NAMESERVERS = [
        ns.strip() for ns in env["DNS_NAMESERVERS"].split(",") if ns.strip()
    ]
if "SPF_MAX_DNS_LOOKUPS" in env:
    SPF_MAX_DNS_LOOKUPS = int(env["SPF_MAX_DNS_LOOKUPS"])
if "SPF_MAX_MX_HOSTS" in env:
    SPF_MAX_MX_HOSTS = int(env["SPF_MAX_MX_HOSTS"])
