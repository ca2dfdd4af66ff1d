import logging
import os
import socket
import ssl
import struct
import tempfile
import time
from contextlib import contextmanager
from typing import Any, Generator, Optional

from pylockdown.exceptions import ConnectionTerminatedError, PlistFormatError
from pylockdown.plist import DictionaryNode, PlistFormat, dumps, from_python, loads, to_python
from pylockdown.transport import DeviceTransport, MuxDevice

MAX_MESSAGE_SIZE = 16 * 1024 * 1024


def create_context(certfile: str, keyfile: Optional[str] = None) -> ssl.SSLContext:
    """
    Create an SSL context for a secure connection.

    :param certfile: The path to the certificate file.
    :param keyfile: The path to the key file (optional).
    :return: An SSL context object.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    if ssl.OPENSSL_VERSION.lower().startswith('openssl'):
        context.set_ciphers('ALL:!aNULL:!eNULL:@SECLEVEL=0')
    else:
        context.set_ciphers('ALL:!aNULL:!eNULL')
    context.options |= 0x4  # OPENSSL OP_LEGACY_SERVER_CONNECT (required for legacy iOS devices)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    context.load_cert_chain(certfile, keyfile)
    return context


@contextmanager
def pem_file(certificate: bytes, private_key: bytes) -> Generator[str, None, None]:
    """ write certificate and key into a single temporary PEM file, removed on exit """
    # use delete=False and manage the deletion ourselves because Windows
    # cannot use in-use files
    with tempfile.NamedTemporaryFile('w+b', suffix='.pem', delete=False) as f:
        f.write(certificate + b'\n' + private_key)
        filename = f.name

    try:
        yield filename
    finally:
        os.unlink(filename)


class ServiceConnection:
    """ length-prefixed plist channel to a single device port """

    def __init__(self, sock: socket.socket, mux_device: Optional[MuxDevice] = None):
        """
        :param sock: The socket to use for the connection.
        :param mux_device: The MuxDevice associated with the connection (optional).
        """
        self.logger = logging.getLogger(__name__)
        self.socket = sock

        # usbmux connections contain additional information associated with the current connection
        self.mux_device = mux_device

    @staticmethod
    def create_using_transport(transport: DeviceTransport, identifier: Optional[str],
                               port: int) -> 'ServiceConnection':
        mux_device = transport.get_device(identifier)
        return ServiceConnection(transport.connect(identifier, port, device=mux_device), mux_device=mux_device)

    def __enter__(self) -> 'ServiceConnection':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        self.socket.close()

    def recv(self, length: int = 4096) -> bytes:
        try:
            return self.socket.recv(length)
        except ssl.SSLError as e:
            raise ConnectionTerminatedError() from e

    def sendall(self, data: bytes) -> None:
        """
        Send data to the socket.

        :param data: The data to send.
        :raises ConnectionTerminatedError: If the connection is terminated abruptly.
        """
        try:
            self.socket.sendall(data)
        except (ssl.SSLEOFError, BrokenPipeError, ConnectionResetError) as e:
            raise ConnectionTerminatedError() from e

    def recvall(self, size: int) -> bytes:
        """
        Receive exactly ``size`` bytes.

        :raises ConnectionTerminatedError: If the stream ends first.
        """
        data = b''
        while len(data) < size:
            try:
                chunk = self.recv(size - len(data))
            except (BlockingIOError, ssl.SSLWantReadError, ssl.SSLWantWriteError):
                # Allow ssl to do stuff
                time.sleep(0)
                continue
            if not chunk:
                raise ConnectionTerminatedError(f'connection closed after {len(data)} of {size} bytes')
            data += chunk
        return data

    def send_prefixed(self, data: bytes) -> None:
        """
        Send a data block prefixed with its big-endian 32-bit length.

        :param data: The data to send.
        """
        self.sendall(struct.pack('>L', len(data)) + data)

    def recv_prefixed(self) -> bytes:
        """
        Receive a data block prefixed with its big-endian 32-bit length.

        :raises ConnectionTerminatedError: If the stream ends or the length exceeds MAX_MESSAGE_SIZE.
        """
        size = struct.unpack('>L', self.recvall(4))[0]
        if size > MAX_MESSAGE_SIZE:
            # the stream can no longer be trusted to be in sync
            self.close()
            raise ConnectionTerminatedError(f'message length {size} exceeds maximum of {MAX_MESSAGE_SIZE}')
        return self.recvall(size)

    def send_receive(self, message: DictionaryNode) -> DictionaryNode:
        """
        Send a dictionary as a binary plist and read back the device's dictionary response.

        :param message: The message to send.
        :return: The response.
        :raises PlistFormatError: If the response is not a valid plist dictionary.
        """
        self.send_prefixed(dumps(message, fmt=PlistFormat.BINARY))
        response = loads(self.recv_prefixed())
        if not isinstance(response, DictionaryNode):
            raise PlistFormatError(f'expected a dictionary response, got {type(response).__name__}')
        return response

    def send_recv_plist(self, data: dict) -> Any:
        """ :meth:`send_receive` over native python values """
        return to_python(self.send_receive(from_python(data)))

    def start_encrypted(self, certificate: bytes, private_key: bytes) -> None:
        """
        Upgrade the connection in place to TLS using the given host credentials.

        :param certificate: Host certificate (PEM).
        :param private_key: Host private key (PEM).
        :raises ConnectionTerminatedError: If the handshake fails. The connection is closed in that case.
        """
        try:
            with pem_file(certificate, private_key) as filename:
                self.socket = create_context(filename).wrap_socket(self.socket)
        except (ssl.SSLError, OSError) as e:
            self.logger.error(f'TLS handshake failed: {e}')
            self.close()
            raise ConnectionTerminatedError('failed to establish TLS session') from e
