"""code-iterator - iterate on Python code with an LLM and a sandbox."""

from code_iterator.config import Settings, load_settings
from code_iterator.dispatch import Dispatcher
from code_iterator.service import Service, build_service

__version__ = "0.1.0"

__all__ = ["Dispatcher", "Service", "Settings", "build_service", "load_settings"]
