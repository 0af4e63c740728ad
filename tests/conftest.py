import datetime
import ipaddress
import json
import select
import socket
import socketserver
import ssl
import struct
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID


def _recv_exact(sock, count):
    data = b''
    while len(data) < count:
        chunk = sock.recv(count - len(data))
        if not chunk:
            raise ConnectionError('client went away')
        data += chunk
    return data


def _recv_until_nul(sock):
    data = b''
    while True:
        c = _recv_exact(sock, 1)
        if c == b'\x00':
            return data
        data += c


class ThreadedTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    daemon_threads = True
    allow_reuse_address = True


class SocksRequestHandler(socketserver.BaseRequestHandler):
    """Minimal SOCKS4/4a/5 server, CONNECT only."""

    def handle(self):
        try:
            version = _recv_exact(self.request, 1)[0]
            if version == 5:
                remote = self.handle_socks5()
            elif version == 4:
                remote = self.handle_socks4()
            else:
                return
        except ConnectionError:
            return
        if remote is not None:
            with remote:
                self.relay(remote)

    def connect_to_destination(self, address, port):
        try:
            return socket.create_connection((address, port), timeout=5)
        except OSError:
            return None

    def handle_socks5(self):
        nmethods = _recv_exact(self.request, 1)[0]
        methods = _recv_exact(self.request, nmethods)
        userid = None
        if self.server.credentials is not None:
            if 0x02 not in methods:
                self.request.sendall(b'\x05\xff')
                return None
            self.request.sendall(b'\x05\x02')
            _recv_exact(self.request, 1)
            userid = _recv_exact(self.request, _recv_exact(self.request, 1)[0]).decode()
            password = _recv_exact(self.request, _recv_exact(self.request, 1)[0]).decode()
            if (userid, password) != self.server.credentials:
                self.request.sendall(b'\x01\x01')
                return None
            self.request.sendall(b'\x01\x00')
        else:
            self.request.sendall(b'\x05\x00')

        _, command, _, address_type = _recv_exact(self.request, 4)
        if address_type == 0x01:
            address = socket.inet_ntoa(_recv_exact(self.request, 4))
        elif address_type == 0x03:
            address = _recv_exact(self.request, _recv_exact(self.request, 1)[0]).decode()
        elif address_type == 0x04:
            address = socket.inet_ntop(socket.AF_INET6, _recv_exact(self.request, 16))
        else:
            self.request.sendall(struct.pack('!BBBBIH', 5, 8, 0, 1, 0, 0))
            return None
        port = struct.unpack('!H', _recv_exact(self.request, 2))[0]
        self.server.requests.append((5, address_type, address, port, userid))

        remote = self.connect_to_destination(address, port)
        if remote is None:
            self.request.sendall(struct.pack('!BBBBIH', 5, 5, 0, 1, 0, 0))
            return None
        self.request.sendall(struct.pack('!BBBBIH', 5, 0, 0, 1, 0, 0))
        return remote

    def handle_socks4(self):
        _, port = struct.unpack('!BH', _recv_exact(self.request, 3))
        ipaddr = _recv_exact(self.request, 4)
        userid = _recv_until_nul(self.request).decode()
        if ipaddr[:3] == b'\x00\x00\x00' and ipaddr[3] != 0:
            address = _recv_until_nul(self.request).decode()
            address_type = 0x03
        else:
            address = socket.inet_ntoa(ipaddr)
            address_type = 0x01
        self.server.requests.append((4, address_type, address, port, userid or None))

        remote = self.connect_to_destination(address, port)
        if remote is None:
            self.request.sendall(struct.pack('!BBHI', 0, 91, 0, 0))
            return None
        self.request.sendall(struct.pack('!BBHI', 0, 90, 0, 0))
        return remote

    def relay(self, remote):
        sockets = [self.request, remote]
        while True:
            readable, _, _ = select.select(sockets, [], [], 10)
            if not readable:
                return
            for sock in readable:
                other = remote if sock is self.request else self.request
                try:
                    data = sock.recv(65536)
                except OSError:
                    return
                if not data:
                    return
                other.sendall(data)


def _start_server(server):
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


def make_socks_server(credentials=None):
    server = ThreadedTCPServer(('127.0.0.1', 0), SocksRequestHandler)
    server.credentials = credentials
    server.requests = []
    return _start_server(server)


class EchoHeadersHandler(BaseHTTPRequestHandler):
    protocol_version = 'HTTP/1.1'

    def do_GET(self):
        body = json.dumps({
            'path': self.path,
            'headers': {k.lower(): v for k, v in self.headers.items()},
        }).encode()
        self.send_response(404)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


def _certificate(subject, issuer, public_key, signing_key, extensions):
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
    )
    for extension, critical in extensions:
        builder = builder.add_extension(extension, critical=critical)
    return builder.sign(signing_key, hashes.SHA256())


def generate_certificates(tmp_path_factory):
    """A throwaway CA and a localhost/127.0.0.1 server certificate signed by it."""
    ca_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, 'socksagent test CA')])
    ca_cert = _certificate(ca_name, ca_name, ca_key.public_key(), ca_key, [
        (x509.BasicConstraints(ca=True, path_length=0), True),
        (x509.KeyUsage(digital_signature=True, content_commitment=False,
                       key_encipherment=False, data_encipherment=False,
                       key_agreement=False, key_cert_sign=True, crl_sign=True,
                       encipher_only=False, decipher_only=False), True),
        (x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key()), False),
    ])

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, 'localhost')])
    cert = _certificate(name, ca_name, key.public_key(), ca_key, [
        (x509.BasicConstraints(ca=False, path_length=None), True),
        (x509.KeyUsage(digital_signature=True, content_commitment=False,
                       key_encipherment=True, data_encipherment=False,
                       key_agreement=False, key_cert_sign=False, crl_sign=False,
                       encipher_only=False, decipher_only=False), True),
        (x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), False),
        (x509.SubjectAlternativeName([
            x509.DNSName('localhost'),
            x509.IPAddress(ipaddress.ip_address('127.0.0.1')),
        ]), False),
        (x509.SubjectKeyIdentifier.from_public_key(key.public_key()), False),
        (x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), False),
    ])

    directory = tmp_path_factory.mktemp('certs')
    ca_file = directory / 'ca.pem'
    cert_file = directory / 'server.pem'
    key_file = directory / 'server.key'
    ca_file.write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
    cert_file.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_file.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    ))
    return str(ca_file), str(cert_file), str(key_file)


@pytest.fixture(scope='session')
def socks_server():
    server = make_socks_server()
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def auth_socks_server():
    server = make_socks_server(credentials=('user', 'p:ss'))
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture(scope='session')
def socks_chain():
    servers = [make_socks_server() for _ in range(10)]
    yield servers
    for server in servers:
        server.shutdown()
        server.server_close()


@pytest.fixture(scope='session')
def http_server():
    server = _start_server(ThreadingHTTPServer(('127.0.0.1', 0), EchoHeadersHandler))
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture(scope='session')
def server_cert(tmp_path_factory):
    return generate_certificates(tmp_path_factory)


@pytest.fixture(scope='session')
def https_server(server_cert):
    _, cert_file, key_file = server_cert
    server = ThreadingHTTPServer(('127.0.0.1', 0), EchoHeadersHandler)
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(cert_file, key_file)
    server.socket = context.wrap_socket(server.socket, server_side=True)
    _start_server(server)
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def unused_port():
    with socket.socket() as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]
