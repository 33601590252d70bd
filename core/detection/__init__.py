from .sync_tone import SyncDetector

__all__ = ["SyncDetector"]
