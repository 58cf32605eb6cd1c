"""odsync - bidirectional sync between a local folder and Microsoft OneDrive."""

__version__ = '0.1.0'
__license__ = 'MIT'

from .config import Config, SyncSettings
from .orchestrator import SyncOrchestrator, SyncStatus
from .state_store import SyncStateStore

__all__ = ['Config', 'SyncSettings', 'SyncOrchestrator', 'SyncStatus', 'SyncStateStore']
