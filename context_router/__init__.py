"""
Context router package initialization.
"""

# Setup logging configuration on package import
from .utils.logging_config import setup_logging

setup_logging()

from .services.assembly_engine import ContextAssemblyEngine, ContextAssemblyError  # noqa: E402
from .services.smart_router import SmartRouter  # noqa: E402

__all__ = ['ContextAssemblyEngine', 'ContextAssemblyError', 'SmartRouter', 'setup_logging']
