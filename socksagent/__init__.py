# A python module for Chaining of Proxies
# Copyright (C) 2023  acuifex
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

from .agent import SocksProxyAgent, dns_lookup, usesystemdefaults
from .poolmanager import (SocksHTTPConnection, SocksHTTPConnectionPool,
                          SocksHTTPSConnection, SocksHTTPSConnectionPool,
                          SocksProxyManager)
from .proxy import (DEFAULT_PORT, Credentials, GeneralProxyError,
                    ProxyConfigError, ProxyError, Socks4Error,
                    Socks5AuthError, Socks5Error, SocksProxy, SocksVersion,
                    parse_proxies, parse_proxy)
from .socks import create_connection, create_connection_chain

__all__ = [
    'DEFAULT_PORT',
    'Credentials',
    'GeneralProxyError',
    'ProxyConfigError',
    'ProxyError',
    'Socks4Error',
    'Socks5AuthError',
    'Socks5Error',
    'SocksHTTPConnection',
    'SocksHTTPConnectionPool',
    'SocksHTTPSConnection',
    'SocksHTTPSConnectionPool',
    'SocksProxy',
    'SocksProxyAgent',
    'SocksProxyManager',
    'SocksVersion',
    'create_connection',
    'create_connection_chain',
    'dns_lookup',
    'parse_proxies',
    'parse_proxy',
    'usesystemdefaults',
]
