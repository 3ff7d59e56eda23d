from __future__ import annotations
import socket
import json
import logging
import os
import threading
import time
from typing import Any, List, Optional

from . import protocol
from ._framing import recv_message, send_message

_ValidationErrors = (ValueError, TypeError, KeyError)


class SocketConnection:
    """Represents a single socket connection with retry logic"""
    def __init__(self, socket_path: str, timeout: float = 20.0):
        self.socket_path = socket_path
        self.timeout = timeout
        self.sock: Optional[socket.socket] = None
        self.lock = threading.Lock()
        self.connected = False

    def ensure_connected(self) -> bool:
        with self.lock:
            if self.connected and self.sock:
                return True
            return self._connect()

    def _connect(self) -> bool:
        try:
            if self.sock:
                self.sock.close()

            self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            self.sock.settimeout(self.timeout)
            self.sock.connect(self.socket_path)
            self.connected = True
            return True
        except OSError as e:  # why: ConnectionRefusedError and FileNotFoundError are expected while the daemon is absent
            logging.debug(f"Connection failed: {e}")
            self.connected = False
            return False

    def send_receive(self, data: dict, max_retries: int = 2) -> Optional[dict]:
        retries = 0
        while retries <= max_retries:
            try:
                if not self.ensure_connected():
                    retries += 1
                    time.sleep(0.1 * (2 ** retries))  # Exponential backoff: 0.2s, 0.4s
                    continue

                with self.lock:
                    send_message(self.sock, json.dumps(data).encode())
                    message_data = recv_message(self.sock)
                    if message_data is None:
                        raise ConnectionError("Connection closed before response")
                    return json.loads(message_data.decode())

            except (ConnectionError, socket.error) as e:
                logging.debug(f"Communication error (attempt {retries + 1}): {e}")
                with self.lock:
                    self.connected = False
                retries += 1
                if retries <= max_retries:
                    time.sleep(0.1 * (2 ** retries))  # Exponential backoff: 0.2s, 0.4s

        logging.error("Failed to communicate after retries")
        return None

    def close(self):
        with self.lock:
            if self.sock:
                try:
                    self.sock.close()
                except OSError:
                    pass
                self.sock = None
            self.connected = False


class CacheSocketClient:
    """Client for the thumbnail cache daemon."""
    def __init__(self, socket_path: str, timeout: float = 20.0):
        self.socket_path = socket_path
        self.connection = SocketConnection(socket_path, timeout=timeout)

    def _send_request(self, request: protocol.Request, response_model: type[protocol.Response]) -> Optional[protocol.Response]:
        """Send a request and validate the response. Returns None when the daemon is unreachable."""
        try:
            response_dict = self.connection.send_receive(request.model_dump())
            if response_dict is None:
                return None

            if response_dict.get("status") == "error":
                return protocol.ErrorResponse.model_validate(response_dict)
            return response_model.model_validate(response_dict)

        except _ValidationErrors as e:
            logging.error(f"Client-side validation error for command '{request.command}': {e}")
            return protocol.ErrorResponse(error_kind="validation_error", message=str(e))

    def folder_status(self, folder_path: str, include_thumbnails: bool = False) -> Optional[protocol.Response]:
        """Is the folder's thumbnail cache current? Also refreshes its stored fingerprint."""
        request = protocol.FolderStatusRequest(folder_path=folder_path, include_thumbnails=include_thumbnails)
        return self._send_request(request, protocol.FolderStatusResponse)

    def folder_status_batch(self, folder_paths: List[Any]) -> Optional[protocol.Response]:
        request = protocol.FolderStatusBatchRequest(folder_paths=folder_paths)
        return self._send_request(request, protocol.FolderStatusBatchResponse)

    def folder_hashes(self) -> Optional[protocol.Response]:
        return self._send_request(protocol.FolderHashesRequest(), protocol.FolderHashesResponse)

    def rebuild_folder(self, folder_path: str) -> Optional[protocol.Response]:
        request = protocol.RebuildFolderRequest(folder_path=folder_path)
        return self._send_request(request, protocol.RebuildFolderResponse)

    def generate_single(self, image_path: str) -> Optional[protocol.Response]:
        request = protocol.GenerateSingleRequest(image_path=image_path)
        return self._send_request(request, protocol.GenerateSingleResponse)

    def cleanup_history(self, retention_hours: Optional[float] = None) -> Optional[protocol.Response]:
        request = protocol.CleanupHistoryRequest(action="cleanup", retention_hours=retention_hours)
        return self._send_request(request, protocol.CleanupHistoryResponse)

    def clear_history(self) -> Optional[protocol.Response]:
        request = protocol.CleanupHistoryRequest(action="clear")
        return self._send_request(request, protocol.CleanupHistoryResponse)

    def cache_status(self) -> Optional[protocol.Response]:
        return self._send_request(protocol.CacheStatusRequest(), protocol.CacheStatusResponse)

    def trigger_scan(self) -> Optional[protocol.Response]:
        return self._send_request(protocol.TriggerScanRequest(), protocol.TriggerScanResponse)

    def history(self, limit: int = 50) -> Optional[protocol.Response]:
        return self._send_request(protocol.HistoryRequest(limit=limit), protocol.HistoryResponse)

    def get_config(self) -> Optional[protocol.Response]:
        return self._send_request(protocol.GetConfigRequest(), protocol.ConfigResponse)

    def update_config(self, scheduler: Optional[dict] = None,
                      thumbnails: Optional[dict] = None) -> Optional[protocol.Response]:
        """Merge-updates the scheduler and/or thumbnail settings of the running daemon."""
        request = protocol.UpdateConfigRequest(scheduler=scheduler, thumbnails=thumbnails)
        return self._send_request(request, protocol.ConfigResponse)

    # --- Daemon Control Methods ---
    def is_socket_file_present(self) -> bool:
        """Check if the daemon socket file exists."""
        return os.path.exists(self.socket_path)

    def shutdown_daemon(self) -> bool:
        """Send a command to shut down the daemon."""
        response = self.connection.send_receive(protocol.Request(command="shutdown").model_dump(), max_retries=0)
        return response is not None and response.get("status") == "success"

    def close(self):
        """Clean up resources"""
        self.connection.close()
