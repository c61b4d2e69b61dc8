"""
RestoreScale: tiled face restoration and super-resolution pipeline
Main package initialization
"""

__version__ = "1.0.0"

from restorescale.config import Config
from restorescale.logger import setup_logger

# Initialize logger
logger = setup_logger(__name__)

__all__ = ["Config", "logger"]
