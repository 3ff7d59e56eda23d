import socket
from typing import Optional

MAX_MESSAGE_SIZE = 10 * 1024 * 1024  # 10 MB


def recv_exactly(sock: socket.socket, n: int) -> Optional[bytes]:
    """Read exactly n bytes from sock. Returns None if the connection is closed
    cleanly or a timeout occurs with no data read. Raises ConnectionError if a
    timeout occurs after a partial read (the stream is now corrupted)."""
    data = bytearray()
    while len(data) < n:
        try:
            packet = sock.recv(n - len(data))
        except socket.timeout:
            if data:
                raise ConnectionError(f"Timeout after reading {len(data)}/{n} bytes")
            return None
        if not packet:
            return None
        data.extend(packet)
    return bytes(data)


def send_message(sock: socket.socket, payload: bytes) -> None:
    """Write one frame: 4-byte big-endian length followed by the payload."""
    if len(payload) > MAX_MESSAGE_SIZE:
        raise ValueError(f"Message too large: {len(payload)} bytes")
    sock.sendall(len(payload).to_bytes(4, byteorder='big') + payload)


def recv_message(sock: socket.socket) -> Optional[bytes]:
    """Read one frame. Returns None when the peer closed before a frame began."""
    length_data = recv_exactly(sock, 4)
    if not length_data:
        return None

    message_length = int.from_bytes(length_data, byteorder='big')
    if message_length > MAX_MESSAGE_SIZE:
        raise ConnectionError(f"Message too large: {message_length} bytes")

    message_data = recv_exactly(sock, message_length)
    if message_data is None:
        raise ConnectionError("Connection closed mid-message")
    return message_data
