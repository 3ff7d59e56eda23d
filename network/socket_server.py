import os
import socket
import json
import logging
import threading
import time
from typing import Optional

from core.cache_database import CacheDatabase
from core.cache_status import CacheStatusService
from core.errors import ThumbCacheError, ValidationError
from core.history_retention import HistoryRetentionManager
from core.models import FolderStatus
from core.scheduler import CacheScheduler
from core.thumbnail_manager import LAST_REBUILT_FOLDER_KEY, ThumbnailManager
from . import protocol
from ._framing import recv_message, send_message


class CacheSocketServer:
    """Server that answers cache status, rebuild and history requests via Unix domain socket."""

    def __init__(self, socket_path: str, cache_db: CacheDatabase, status_service: CacheStatusService,
                 thumbnail_manager: ThumbnailManager, retention_manager: HistoryRetentionManager,
                 scheduler: Optional[CacheScheduler] = None, on_shutdown=None, config_manager=None):
        """
        Initialize and bind the cache socket server.
        """
        self.socket_path = socket_path
        self.cache_db = cache_db
        self.status_service = status_service
        self.thumbnail_manager = thumbnail_manager
        self.retention_manager = retention_manager
        self.scheduler = scheduler
        self.on_shutdown = on_shutdown
        self.config_manager = config_manager if config_manager is not None else thumbnail_manager.config_manager
        self.server_socket = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.running = True
        self.client_threads = []
        self._shutdown_lock = threading.Lock()

        if os.path.exists(self.socket_path):
            os.remove(self.socket_path)
        self.server_socket.bind(self.socket_path)
        self.server_socket.listen(5)
        logging.info(f"Socket bound at {self.socket_path}")

    def run_forever(self):
        """Accept and handle connections until shutdown."""
        try:
            logging.info(f"Cache daemon accepting connections on {self.socket_path}")
            while self.running:
                try:
                    conn, _ = self.server_socket.accept()
                    client_thread = threading.Thread(
                        target=self.handle_client,
                        args=(conn,),
                        daemon=True
                    )
                    self.client_threads.append(client_thread)
                    client_thread.start()
                except OSError as e:  # why: EBADF/EINVAL once shutdown() closes the listening socket
                    if self.running:
                        logging.error(f"Error accepting connection: {e}")
                        time.sleep(0.1)  # Avoid busy-loop if the socket is in a bad state
        finally:
            self.shutdown()

    def handle_client(self, conn: socket.socket):
        """
        Handle a client connection: one JSON request frame in, one JSON response frame out,
        repeated until the client disconnects.
        """
        try:
            conn.settimeout(10)
            while self.running:
                try:
                    message_data = recv_message(conn)
                    if message_data is None:
                        break

                    try:
                        request_data = json.loads(message_data.decode())
                    except (UnicodeDecodeError, json.JSONDecodeError) as e:
                        response = protocol.ErrorResponse(
                            error_kind=ValidationError.kind, message=f"Malformed request: {e}"
                        ).model_dump_json()
                    else:
                        command = request_data.get("command", "unknown") if isinstance(request_data, dict) else "unknown"
                        logging.debug(f"Server received command: '{command}'")
                        response = self.handle_request(request_data)

                    send_message(conn, response.encode())

                except socket.timeout:
                    continue
                except (OSError, ConnectionError, ValueError) as e:
                    logging.error(f"Error handling client: {e}")
                    break
        finally:
            conn.close()

    def handle_request(self, request_data) -> str:
        """
        Validate and dispatch one request. Always returns a JSON response string.
        """
        try:
            if not isinstance(request_data, dict):
                raise ValidationError("Request must be a JSON object.")
            command = request_data.get("command")
            if not command:
                raise ValidationError("Request missing 'command' field.")

            # --- Command Dispatcher ---
            response_model = self._dispatch_command(command, request_data)
            return response_model.model_dump_json()

        except ThumbCacheError as e:
            if isinstance(e, ValidationError):
                logging.info(f"Rejected request: {e.message}")
            else:
                logging.warning(f"Request failed ({e.kind}): {e.message}")
            return protocol.ErrorResponse(error_kind=e.kind, message=e.message).model_dump_json()
        except OSError as e:
            logging.warning(f"I/O error processing request: {e}")
            return protocol.ErrorResponse(error_kind="io_error", message=str(e)).model_dump_json()
        except (TypeError, ValueError) as e:
            return protocol.ErrorResponse(error_kind=ValidationError.kind,
                                          message=f"Validation Error: {e}").model_dump_json()
        except Exception as e:  # why: any unhandled error from handler dispatch must not crash the server
            logging.error(f"Error processing request: {e}", exc_info=True)
            return protocol.ErrorResponse(message=f"Internal Server Error: {str(e)}").model_dump_json()

    def _dispatch_command(self, command: str, request_data: dict) -> protocol.Response:
        """Dispatches commands to the appropriate handler."""
        if command == "folder_status":
            req = protocol.FolderStatusRequest.model_validate(request_data)
            status = self.status_service.get_folder_cache_status(req.folder_path)
            thumbnails = None
            if req.include_thumbnails:
                thumbnails = self.thumbnail_manager.folder_thumbnail_summary(req.folder_path)
            return protocol.FolderStatusResponse(
                folder=protocol.FolderStatusModel(**status.to_dict()), thumbnails=thumbnails,
            )

        elif command == "folder_status_batch":
            req = protocol.FolderStatusBatchRequest.model_validate(request_data)
            results = self.status_service.get_folder_cache_status_batch(req.folder_paths)
            by_folder = {
                folder: (result.to_dict() if isinstance(result, FolderStatus) else result)
                for folder, result in results.items()
            }
            logging.info(f"SocketServer: folder_status_batch answered {len(by_folder)} folders")
            return protocol.FolderStatusBatchResponse(by_folder=by_folder)

        elif command == "folder_hashes":
            protocol.FolderHashesRequest.model_validate(request_data)
            summary = self.status_service.get_all_records()
            return protocol.FolderHashesResponse(
                records=[record.to_dict() for record in summary["records"]],
                stats=summary["stats"],
            )

        elif command == "rebuild_folder":
            req = protocol.RebuildFolderRequest.model_validate(request_data)
            logging.info(f"SocketServer: rebuild requested for '{req.folder_path or '/'}'")
            result = self.thumbnail_manager.rebuild_folder_thumbnails(req.folder_path)
            return protocol.RebuildFolderResponse(
                message=f"Generated {result.thumbnails_generated} thumbnails",
                **result.to_dict(),
            )

        elif command == "generate_single":
            req = protocol.GenerateSingleRequest.model_validate(request_data)
            result = self.thumbnail_manager.generate_single_thumbnail(req.image_path)
            return protocol.GenerateSingleResponse(
                message=f"Generated {len(result['thumbnails'])} thumbnails", **result,
            )

        elif command == "cleanup_history":
            req = protocol.CleanupHistoryRequest.model_validate(request_data)
            if req.action == "clear":
                self.retention_manager.clear_all_history()
                return protocol.CleanupHistoryResponse(cleared=True, message="History cleared")
            removed = self.retention_manager.cleanup_history(req.retention_hours)
            return protocol.CleanupHistoryResponse(**removed)

        elif command == "cache_status":
            protocol.CacheStatusRequest.model_validate(request_data)
            summary = self.status_service.get_all_records()
            return protocol.CacheStatusResponse(
                scheduler=self.scheduler.status() if self.scheduler else {},
                stats=summary["stats"],
                thumbnails=self.thumbnail_manager.thumbnail_stats(),
                last_rebuilt_folder=self.cache_db.get_state(LAST_REBUILT_FOLDER_KEY),
            )

        elif command == "trigger_scan":
            protocol.TriggerScanRequest.model_validate(request_data)
            if self.scheduler is None:
                raise ThumbCacheError("Scheduler is not running")
            result = self.scheduler.force_scan()
            return protocol.TriggerScanResponse(result=result.to_dict(), message=result.error)

        elif command == "history":
            req = protocol.HistoryRequest.model_validate(request_data)
            return protocol.HistoryResponse(
                history=[entry.to_dict() for entry in self.cache_db.get_history(req.limit)],
                changes=[change.to_dict() for change in self.cache_db.get_changes(req.limit)],
            )

        elif command == "get_config":
            protocol.GetConfigRequest.model_validate(request_data)
            return protocol.ConfigResponse(**self.config_manager.runtime_config())

        elif command == "update_config":
            req = protocol.UpdateConfigRequest.model_validate(request_data)
            updates = req.updates()
            config = self.config_manager.update_runtime_config(updates)
            if "thumbnails" in updates:
                self.thumbnail_manager.apply_settings()
            if "scheduler" in updates and self.scheduler is not None:
                self.scheduler.wake()
            logging.info(f"SocketServer: updated config sections {sorted(updates)}")
            return protocol.ConfigResponse(message="Configuration updated", **config)

        elif command == "shutdown":
            threading.Thread(target=self.shutdown, name="server-shutdown", daemon=True).start()
            return protocol.Response(message="Server shutting down")

        raise ValidationError(f"Unknown command: {command}")

    def shutdown(self) -> None:
        """Stop the server and clean up resources."""
        with self._shutdown_lock:
            if not self.running:
                return
            self.running = False

        logging.info("CacheSocketServer shutting down.")
        try:
            # Unblock accept() before closing
            self.server_socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self.server_socket.close()
            if os.path.exists(self.socket_path):
                os.remove(self.socket_path)
        except OSError as e:
            logging.error(f"Error during shutdown: {e}")

        if self.on_shutdown is not None:
            self.on_shutdown()
