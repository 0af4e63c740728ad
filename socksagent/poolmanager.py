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

"""
urllib3 glue: connection pools whose sockets come from a SocksProxyAgent.

.. code-block:: python

    http = SocksProxyManager(["socks5h://10.0.0.1:1080", "socks4a://10.0.0.2"])
    r = http.request("GET", "https://example.com/")

Plain ``http`` connections take the raw tunnel. For ``https`` the tunnel is
wrapped the same way urllib3 wraps a direct connection, so every TLS option
of the pool (``assert_hostname``, ``ssl_minimum_version``, ...) applies.
"""

import socket
import typing

from urllib3.connection import (HTTPConnection, HTTPSConnection,
                                _ssl_wrap_socket_and_match_hostname)
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.exceptions import (ConnectTimeoutError, NameResolutionError,
                                NewConnectionError)
from urllib3.poolmanager import PoolManager

from .agent import SocksProxyAgent
from .proxy import ProxyError


class SocksHTTPConnection(HTTPConnection):
    """
    A plain-text HTTP connection tunneled through the agent's proxy chain.
    """

    def __init__(self, _socks_agent: SocksProxyAgent, *args: typing.Any, **kwargs: typing.Any) -> None:
        self._socks_agent = _socks_agent
        super().__init__(*args, **kwargs)

    def _new_conn(self) -> socket.socket:
        """
        Establish a new connection via the SOCKS proxy chain.
        """
        try:
            return self._socks_agent.connect(
                self.host,
                self.port,
                timeout=self.timeout,
                source_address=self.source_address,
                socket_options=self.socket_options,
            )
        except socket.gaierror as e:
            raise NameResolutionError(self.host, self, e) from e
        except TimeoutError as e:
            raise ConnectTimeoutError(
                self,
                f"Connection to {self.host} timed out. (connect timeout={self.timeout})",
            ) from e
        except (ProxyError, OSError) as e:
            raise NewConnectionError(
                self, f"Failed to establish a new connection: {e}"
            ) from e


class SocksHTTPSConnection(SocksHTTPConnection, HTTPSConnection):
    """
    An HTTPS connection whose TLS session runs inside the SOCKS tunnel.
    """

    def connect(self) -> None:
        sock = self._new_conn()
        # Checked against the url host even when the agent resolved it.
        server_hostname = self.host
        if self.server_hostname is not None:
            server_hostname = self.server_hostname

        try:
            sock_and_verified = _ssl_wrap_socket_and_match_hostname(
                sock=sock,
                cert_reqs=self.cert_reqs,
                ssl_version=self.ssl_version,
                ssl_minimum_version=self.ssl_minimum_version,
                ssl_maximum_version=self.ssl_maximum_version,
                ca_certs=self.ca_certs,
                ca_cert_dir=self.ca_cert_dir,
                ca_cert_data=self.ca_cert_data,
                cert_file=self.cert_file,
                key_file=self.key_file,
                key_password=self.key_password,
                server_hostname=server_hostname.rstrip("."),
                ssl_context=self.ssl_context,
                assert_hostname=self.assert_hostname,
                assert_fingerprint=self.assert_fingerprint,
            )
        except BaseException:
            sock.close()
            raise

        self.sock = sock_and_verified.socket
        self.is_verified = sock_and_verified.is_verified


class SocksHTTPConnectionPool(HTTPConnectionPool):
    ConnectionCls = SocksHTTPConnection


class SocksHTTPSConnectionPool(HTTPSConnectionPool):
    ConnectionCls = SocksHTTPSConnection


class SocksProxyManager(PoolManager):
    """
    A PoolManager that routes every connection through a chain of SOCKS
    proxies. ``proxies`` is anything SocksProxyAgent accepts, or an agent.
    """

    pool_classes_by_scheme = {
        "http": SocksHTTPConnectionPool,
        "https": SocksHTTPSConnectionPool,
    }

    def __init__(
        self,
        proxies: typing.Any,
        num_pools: int = 10,
        headers: typing.Mapping[str, str] | None = None,
        debug: typing.Callable[[str], None] | None = None,
        **connection_pool_kw: typing.Any,
    ):
        if isinstance(proxies, SocksProxyAgent):
            self.agent = proxies
        else:
            self.agent = SocksProxyAgent(proxies, debug)

        super().__init__(num_pools, headers, **connection_pool_kw)

        self.pool_classes_by_scheme = SocksProxyManager.pool_classes_by_scheme

    def _new_pool(self, scheme, host, port, request_context=None):
        # The agent is shared by every pool, so it stays out of the pool key.
        if request_context is None:
            request_context = self.connection_pool_kw.copy()
        request_context = dict(request_context, _socks_agent=self.agent)
        return super()._new_pool(scheme, host, port, request_context)
