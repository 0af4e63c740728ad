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

from collections.abc import Mapping
from dataclasses import InitVar, dataclass
from enum import IntEnum
from typing import Any, NamedTuple
from urllib.parse import unquote

from urllib3.exceptions import LocationParseError
from urllib3.util import parse_url


class SocksVersion(IntEnum):
    SOCKS4 = 4
    SOCKS5 = 5


# From RFC 1928, Section 3: "The SOCKS service is conventionally located
# on TCP port 1080"
DEFAULT_PORT = 1080

# scheme -> (version, resolve destination on the client)
PROTOCOL_NAMES = {
    'socks4': (SocksVersion.SOCKS4, True),
    'socks4a': (SocksVersion.SOCKS4, False),
    'socks5': (SocksVersion.SOCKS5, True),
    'socks': (SocksVersion.SOCKS5, False),
    'socks5h': (SocksVersion.SOCKS5, False),
}


class ProxyError(Exception): pass
class GeneralProxyError(ProxyError): pass
class Socks5AuthError(ProxyError): pass
class Socks5Error(ProxyError): pass
class Socks4Error(ProxyError): pass
class ProxyConfigError(ProxyError, TypeError): pass


class Credentials(NamedTuple):
    userid: str | None
    password: str | None

    def __repr__(self):
        # SocksProxy keeps these in its __dict__, so vars() reaches this
        return 'Credentials(userid=%r, password=%s)' % (
            self.userid, 'None' if self.password is None else '***')


@dataclass(frozen=True)
class SocksProxy:
    """One hop of a SOCKS chain.

    The credentials are accepted by the constructor but are not fields:
    they stay out of repr(), asdict() and comparisons, and are only read
    back through ``credentials`` while negotiating.
    """
    host: str
    port: int = DEFAULT_PORT
    type: SocksVersion = SocksVersion.SOCKS5
    userid: InitVar[str | None] = None
    password: InitVar[str | None] = None

    def __post_init__(self, userid, password):
        creds = Credentials(userid, password) if userid or password else None
        object.__setattr__(self, '_credentials', creds)

    @property
    def credentials(self) -> Credentials | None:
        return self._credentials


def _field(spec: Any, *names: str) -> Any:
    # Mappings and attribute-style objects (urllib3 Url, SplitResult, ...)
    for name in names:
        if isinstance(spec, Mapping):
            value = spec.get(name)
        else:
            value = getattr(spec, name, None)
        if value is not None and value != '':
            return value
    return None


def _parse_port(value: Any) -> int:
    port = 0
    if isinstance(value, int):
        port = value
    elif isinstance(value, str):
        try:
            port = int(value.strip(), 10)
        except ValueError:
            port = 0
    if not port:
        return DEFAULT_PORT
    if not 0 < port <= 0xFFFF:
        raise ProxyConfigError('"port" must be between 1 and 65535, got: %s' % (value,))
    return port


def _split_url(proxy_url: str) -> dict:
    try:
        url = parse_url(proxy_url)
    except LocationParseError as e:
        raise ProxyConfigError('Unable to parse proxy url %r: %s' % (proxy_url, e)) from e
    fields = {'protocol': url.scheme, 'host': url.host, 'port': url.port}
    if url.auth:
        fields['auth'] = unquote(url.auth)
    return fields


def parse_proxy(spec: Any) -> tuple[SocksProxy, bool]:
    """parse_proxy(spec) -> (proxy, lookup)
    Turns a proxy url or a url-like object into a SocksProxy. ``lookup``
    tells whether the destination must be resolved on the client before
    it is handed to the proxy.
    """
    if isinstance(spec, str):
        spec = _split_url(spec)

    # Prefer `hostname` over `host`, the latter may carry a port suffix.
    host = _field(spec, 'hostname', 'host')
    if not host:
        raise ProxyConfigError('No "host"')
    host = str(host)
    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]

    port = _parse_port(_field(spec, 'port'))

    version, lookup = SocksVersion.SOCKS5, False
    protocol = _field(spec, 'protocol', 'scheme')
    if protocol:
        scheme = str(protocol).lower().rstrip(':')
        if scheme not in PROTOCOL_NAMES:
            raise ProxyConfigError('A "socks" protocol must be specified! Got: %s' % (protocol,))
        version, lookup = PROTOCOL_NAMES[scheme]

    explicit_type = _field(spec, 'type')
    if explicit_type is not None:
        if explicit_type in (4, 5):
            version = SocksVersion(explicit_type)
        else:
            raise ProxyConfigError('"type" must be 4 or 5, got: %s' % (explicit_type,))

    userid = _field(spec, 'userid', 'user_id', 'username')
    password = _field(spec, 'password')
    auth = _field(spec, 'auth')
    if auth:
        userid, _, password = str(auth).partition(':')

    proxy = SocksProxy(host, port, version, userid or None, password or None)
    return proxy, lookup


def parse_proxies(specs: Any) -> list[tuple[SocksProxy, bool]]:
    """Parses a single proxy spec or a list of them, keeping hop order.
    The first entry is the hop nearest to the client.
    """
    # urllib3's Url and urlsplit() results are named tuples, not chains
    if not isinstance(specs, (list, tuple)) or hasattr(specs, '_fields'):
        specs = [specs]
    if not specs or any(not spec for spec in specs):
        raise ProxyConfigError('a SOCKS proxy server `host` and `port` must be specified!')
    return [parse_proxy(spec) for spec in specs]
