"""
Shared data structures available to both the decode worker and the controller.
"""

from .app_settings import AppSettings, AppSettingsStore
from .sample_buffer import BufferView, LoadError, SampleBuffer, load_sample_buffer

__all__ = ["AppSettings", "AppSettingsStore", "BufferView", "LoadError", "SampleBuffer", "load_sample_buffer"]
