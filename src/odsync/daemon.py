#!/usr/bin/env python3
"""Background sync daemon for odsync."""

import logging
import signal
import threading
from typing import Optional

from .auth import TokenProvider, TokenStore
from .config import Config
from .errors import StorageError
from .logging_config import setup_logging
from .onedrive_client import GraphRemoteStore
from .orchestrator import SyncOrchestrator
from .state_store import SyncStateStore
from .watcher import LocalWatcher

logger = logging.getLogger(__name__)


def create_orchestrator(config: Config, store: SyncStateStore,
                        watcher: Optional[LocalWatcher] = None) -> SyncOrchestrator:
    """Wire the Graph remote store and auth collaborator into an orchestrator.

    Args:
        config: Configuration manager
        store: Opened sync state store
        watcher: Optional live filesystem watcher

    Returns:
        SyncOrchestrator using the current configuration snapshot
    """
    settings = config.snapshot()
    token_provider = TokenProvider(TokenStore(config.token_path),
                                   client_id=config.client_id or None,
                                   timeout=settings.request_timeout)
    remote = GraphRemoteStore(token_provider,
                              remote_root=settings.remote_root,
                              hash_algorithm=settings.hash_algorithm,
                              timeout=settings.request_timeout)
    return SyncOrchestrator(settings, store, remote, watcher=watcher,
                            token_provider=token_provider)


class SyncDaemon:
    """Runs automatic sync cycles and watches the sync root between them."""

    def __init__(self, config: Config):
        """Initialize sync daemon.

        Args:
            config: Configuration manager
        """
        self.config = config
        self.store: Optional[SyncStateStore] = None
        self.watcher: Optional[LocalWatcher] = None
        self.orchestrator: Optional[SyncOrchestrator] = None
        self._stop_event = threading.Event()
        self._sync_thread: Optional[threading.Thread] = None

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down gracefully...")
            self.stop()

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

    def initialize(self) -> bool:
        """Open the state store and build the sync engine.

        Returns:
            True if initialization successful
        """
        setup_logging(level=self.config.log_level, log_file=self.config.log_path)
        logger.info("=== odsync daemon starting ===")

        if TokenStore(self.config.token_path).load() is None:
            logger.error("Not authenticated. Please store a token first.")
            return False

        try:
            self.store = SyncStateStore(self.config.state_db_path)
        except StorageError as e:
            # Never rebuilt automatically; the user has to run reset-state
            logger.critical(f"Cannot open sync state: {e}")
            logger.critical("Run 'odsync reset-state --yes' to start over with an empty state")
            return False

        self.watcher = LocalWatcher(self.config.sync_directory)
        self.orchestrator = create_orchestrator(self.config, self.store, self.watcher)
        logger.info("Sync engine initialized")
        return True

    def start(self) -> int:
        """Start the daemon and block until it is stopped.

        Returns:
            Process exit code
        """
        if not self.initialize():
            logger.error("Failed to initialize daemon")
            return 1

        self._setup_signal_handlers()
        self.watcher.start()

        self._sync_thread = threading.Thread(target=self._sync_loop, name='odsync-sync',
                                             daemon=True)
        self._sync_thread.start()
        logger.info(f"Sync daemon started. Monitoring: {self.config.sync_directory}")

        try:
            while not self._stop_event.is_set():
                if self._check_force_sync_signal():
                    logger.info("Force sync triggered by user")
                    self.orchestrator.request_sync()
                self._stop_event.wait(1)
        except KeyboardInterrupt:
            self.stop()
        finally:
            self._shutdown()
        return 0

    def stop(self) -> None:
        """Request shutdown; a running cycle stops at its next task boundary."""
        logger.info("Stopping sync daemon...")
        self._stop_event.set()
        if self.orchestrator:
            self.orchestrator.cancel_cycle()
            self.orchestrator.request_sync()

    def _shutdown(self) -> None:
        if self.watcher:
            self.watcher.stop()
        if self._sync_thread:
            self._sync_thread.join(timeout=30)
        if self.store:
            self.store.close()
        logger.info("Sync daemon stopped")

    def _sync_loop(self) -> None:
        try:
            self.orchestrator.run_forever(self._stop_event)
        except StorageError as e:
            logger.critical(f"Stopping: sync state store failed: {e}")
            self._stop_event.set()

    def _check_force_sync_signal(self) -> bool:
        """Check if force sync signal file exists.

        Returns:
            True if force sync requested
        """
        force_sync_path = self.config.force_sync_path
        if force_sync_path.exists():
            try:
                force_sync_path.unlink()
                return True
            except OSError as e:
                logger.warning(f"Failed to remove force sync signal: {e}")
                return False
        return False


def main():
    """Main entry point for daemon."""
    config = Config()
    daemon = SyncDaemon(config)
    return daemon.start()


if __name__ == '__main__':
    raise SystemExit(main())
