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

"""SOCKS4/4a and SOCKS5 CONNECT negotiation over plain sockets.

``create_connection`` tunnels through one proxy, ``create_connection_chain``
through several: the first proxy is dialed directly and every following hop
is negotiated inside the tunnel opened by the previous one.
"""

import socket
import struct
from typing import Callable, Sequence

from urllib3.util.connection import create_connection as _dial
from urllib3.util.timeout import _DEFAULT_TIMEOUT

from .proxy import (GeneralProxyError, Socks4Error, Socks5AuthError,
                    Socks5Error, SocksProxy, SocksVersion)

_generalerrors = (
    "success",
    "invalid data",
    "not connected",
    "not available",
    "bad proxy type",
    "bad input")

_socks5errors = (
    "succeeded",
    "general SOCKS server failure",
    "connection not allowed by ruleset",
    "Network unreachable",
    "Host unreachable",
    "Connection refused",
    "TTL expired",
    "Command not supported",
    "Address type not supported",
    "Unknown error")

_socks5autherrors = (
    "succeeded",
    "authentication is required",
    "all offered authentication methods were rejected",
    "unknown username or invalid password",
    "unknown error")

_socks4errors = (
    "request granted",
    "request rejected or failed",
    "request rejected because SOCKS server cannot connect to identd on the client",
    "request rejected because the client program and identd report different user-ids",
    "unknown error")

# How long a single hop may take to answer when the caller gave no timeout.
NEGOTIATION_TIMEOUT = 20


def _pascal_encode(s: str) -> bytes:
    data = s.encode()
    if len(data) > 255:
        # one length byte, a cut value would name another host or password
        raise GeneralProxyError((5, _generalerrors[5]))
    return struct.pack("B%ds" % len(data), len(data), data)


def _ip_family(addr: str) -> int | None:
    for family in (socket.AF_INET, socket.AF_INET6):
        try:
            socket.inet_pton(family, addr)
            return family
        except (OSError, ValueError):
            pass
    return None


def _recvall(sock: socket.socket, count: int) -> bytes:
    """_recvall(sock, count) -> data
    Receive EXACTLY the number of bytes requested from the socket.
    Blocks until the required number of bytes have been received or a
    timeout occurs.
    """
    data = b''
    while len(data) < count:
        d = sock.recv(count - len(data))
        if not d:
            raise GeneralProxyError((0, "connection closed unexpectedly"))
        data = data + d
    return data


def _negotiatesocks5(sock: socket.socket, destaddr: str, destport: int, proxy: SocksProxy):
    """_negotiatesocks5(sock, destaddr, destport, proxy) -> bound address
    Negotiates a connection through a SOCKS5 server.
    """
    creds = proxy.credentials
    # First we'll send the authentication packages we support.
    if creds is not None and creds.userid is not None:
        # Offer USERNAME/PASSWORD in addition to the standard none.
        sock.sendall(struct.pack('BBBB', 0x05, 0x02, 0x00, 0x02))
    else:
        sock.sendall(struct.pack('BBB', 0x05, 0x01, 0x00))
    # We'll receive the server's response to determine which
    # method was selected
    chosenauth = _recvall(sock, 2)
    if chosenauth[0] != 0x05:
        raise GeneralProxyError((1, _generalerrors[1]))
    # Check the chosen authentication method
    if chosenauth[1] == 0x00:
        # No authentication is required
        pass
    elif chosenauth[1] == 0x02 and creds is not None:
        # RFC 1929 username/password sub-negotiation.
        sock.sendall(b"\x01" + _pascal_encode(creds.userid or '')
                     + _pascal_encode(creds.password or ''))
        authstat = _recvall(sock, 2)
        if authstat[0] != 0x01:
            # Bad response
            raise GeneralProxyError((1, _generalerrors[1]))
        if authstat[1] != 0x00:
            # Authentication failed
            raise Socks5AuthError((3, _socks5autherrors[3]))
        # Authentication succeeded
    elif chosenauth[1] in (0x02, 0xFF):
        # The server wants credentials we don't have, or none of ours fit.
        raise Socks5AuthError((2, _socks5autherrors[2]))
    else:
        raise GeneralProxyError((1, _generalerrors[1]))
    # Now we can request the actual connection
    req = struct.pack('BBB', 0x05, 0x01, 0x00)
    family = _ip_family(destaddr)
    if family == socket.AF_INET:
        req = req + b"\x01" + socket.inet_pton(family, destaddr)
    elif family == socket.AF_INET6:
        req = req + b"\x04" + socket.inet_pton(family, destaddr)
    else:
        # Not an IP literal, the proxy resolves it.
        req = req + b"\x03" + _pascal_encode(destaddr)
    # network endian
    req = req + struct.pack("!H", destport)
    sock.sendall(req)
    # Get the response
    resp = _recvall(sock, 4)
    if resp[0] != 0x05:
        raise GeneralProxyError((1, _generalerrors[1]))
    elif resp[1] != 0x00:
        # Connection failed
        if resp[1] <= 8:
            raise Socks5Error((resp[1], _socks5errors[resp[1]]))
        else:
            raise Socks5Error((9, _socks5errors[9]))
    # Get the bound address/port
    if resp[3] == 0x01:
        boundaddr = socket.inet_ntop(socket.AF_INET, _recvall(sock, 4))
    elif resp[3] == 0x03:
        length = _recvall(sock, 1)[0]
        boundaddr = _recvall(sock, length).decode('utf-8', 'replace')
    elif resp[3] == 0x04:
        boundaddr = socket.inet_ntop(socket.AF_INET6, _recvall(sock, 16))
    else:
        raise GeneralProxyError((1, _generalerrors[1]))
    boundport = struct.unpack("!H", _recvall(sock, 2))[0]
    return (boundaddr, boundport)


def _negotiatesocks4(sock: socket.socket, destaddr: str, destport: int, proxy: SocksProxy):
    """_negotiatesocks4(sock, destaddr, destport, proxy) -> bound address
    Negotiates a connection through a SOCKS4 server.
    """
    # Check if the destination address provided is an IP address
    rmtrslv = False
    family = _ip_family(destaddr)
    if family == socket.AF_INET:
        ipaddr = socket.inet_aton(destaddr)
    elif family == socket.AF_INET6:
        raise GeneralProxyError((5, "SOCKS4 cannot connect to IPv6 address %s" % destaddr))
    else:
        # It's a DNS name, let the server resolve it (SOCKS4A).
        ipaddr = struct.pack("BBBB", 0x00, 0x00, 0x00, 0x01)
        rmtrslv = True
    # Construct the request packet
    req = struct.pack("!BBH", 0x04, 0x01, destport) + ipaddr
    # The username parameter is considered userid for SOCKS4
    creds = proxy.credentials
    if creds is not None and creds.userid is not None:
        req = req + creds.userid.encode("utf-8")
    req = req + b"\x00"
    # NOTE: This is actually an extension to the SOCKS4 protocol
    # called SOCKS4A and may not be supported in all cases.
    if rmtrslv:
        req = req + destaddr.encode("utf-8") + b"\x00"
    sock.sendall(req)
    # Get the response from the server
    resp = _recvall(sock, 8)
    if resp[0] != 0x00:
        # Bad data
        raise GeneralProxyError((1, _generalerrors[1]))
    if resp[1] != 0x5A:
        # Server returned an error
        if resp[1] in (91, 92, 93):
            raise Socks4Error((resp[1], _socks4errors[resp[1] - 90]))
        else:
            raise Socks4Error((94, _socks4errors[4]))
    # Get the bound address/port
    return (socket.inet_ntoa(resp[4:]), struct.unpack("!H", resp[2:4])[0])


def negotiate(sock: socket.socket, destaddr: str, destport: int, proxy: SocksProxy):
    """Sends a CONNECT for (destaddr, destport) to ``proxy`` over ``sock``."""
    if proxy.type == SocksVersion.SOCKS5:
        return _negotiatesocks5(sock, destaddr, destport, proxy)
    elif proxy.type == SocksVersion.SOCKS4:
        return _negotiatesocks4(sock, destaddr, destport, proxy)
    raise GeneralProxyError((4, _generalerrors[4]))


def create_connection_chain(proxies: Sequence[SocksProxy], dest_host: str, dest_port: int,
                            timeout=_DEFAULT_TIMEOUT, source_address=None,
                            socket_options=None,
                            debug: Callable[[str], None] | None = None) -> socket.socket:
    """create_connection_chain(proxies, dest_host, dest_port[, timeout[, ...]]) -> socket
    Connects to (dest_host, dest_port) through every proxy in order. The
    returned socket carries the tunneled stream; on any failure the socket
    is closed and the error is raised.
    """
    if not proxies:
        raise GeneralProxyError((5, "no proxy to connect through"))
    if not dest_host or not isinstance(dest_port, int):
        raise GeneralProxyError((5, _generalerrors[5]))

    first = proxies[0]
    if debug: debug('*** Connect: %s:%s' % (first.host, first.port))
    sock = _dial((first.host, first.port), timeout, source_address, socket_options)
    try:
        if timeout is _DEFAULT_TIMEOUT and sock.gettimeout() is None:
            sock.settimeout(NEGOTIATION_TIMEOUT)
        hops = [(p.host, p.port) for p in proxies[1:]] + [(dest_host, dest_port)]
        for proxy, nexthop in zip(proxies, hops):
            if debug: debug('*** SOCKS%d: %s' % (proxy.type, nexthop))
            negotiate(sock, nexthop[0], nexthop[1], proxy)
        # Hand the socket back with the timeout the caller asked for.
        if timeout is _DEFAULT_TIMEOUT:
            sock.settimeout(socket.getdefaulttimeout())
    except BaseException:
        sock.close()
        raise
    return sock


def create_connection(proxy: SocksProxy, dest_host: str, dest_port: int,
                      timeout=_DEFAULT_TIMEOUT, source_address=None,
                      socket_options=None,
                      debug: Callable[[str], None] | None = None) -> socket.socket:
    """Single-hop version of create_connection_chain."""
    return create_connection_chain([proxy], dest_host, dest_port, timeout,
                                   source_address, socket_options, debug)
