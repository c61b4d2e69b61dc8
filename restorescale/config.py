"""
Configuration management for the RestoreScale pipeline
"""

import os
from pathlib import Path
from typing import Dict, Any
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Config:
    """Main configuration class for RestoreScale"""

    # Application settings
    APP_NAME = "RestoreScale"
    APP_VERSION = "1.0.0"
    DEBUG = os.getenv("DEBUG", "False").lower() == "true"

    # Paths
    BASE_DIR = Path(__file__).parent.parent
    LOGS_DIR = Path(os.getenv("LOGS_DIR", str(BASE_DIR / "logs")))
    MODEL_CACHE_DIR = Path(
        os.getenv("MODEL_CACHE_DIR", str(Path.home() / ".cache" / "restorescale"))
    )

    # Create directories if they don't exist
    LOGS_DIR.mkdir(parents=True, exist_ok=True)

    # Model sources
    ESRGAN_MODEL_URL = os.getenv(
        "ESRGAN_MODEL_URL",
        "https://huggingface.co/Meeperomi/RealESRGAN_x4-onnx/resolve/main/RealESRGAN_x4.onnx?download=true",
    )
    GFPGAN_MODEL_URL = os.getenv(
        "GFPGAN_MODEL_URL",
        "https://huggingface.co/Meeperomi/GFPGANv1.4-onnx/resolve/main/GFPGANv1.4.onnx?download=true",
    )
    MODEL_DOWNLOAD_TIMEOUT = float(os.getenv("MODEL_DOWNLOAD_TIMEOUT", "300"))
    MODEL_DOWNLOAD_CHUNK_SIZE = int(os.getenv("MODEL_DOWNLOAD_CHUNK_SIZE", "1048576"))

    # Pipeline settings
    UPSCALE_TILE_SIZE = int(os.getenv("UPSCALE_TILE_SIZE", "256"))
    UPSCALE_FACTOR = int(os.getenv("UPSCALE_FACTOR", "4"))
    FACE_RESTORE_SIZE = int(os.getenv("FACE_RESTORE_SIZE", "512"))
    DEFAULT_BACKEND = os.getenv("DEFAULT_BACKEND", "cpu")
    ORT_INTRA_OP_THREADS = int(os.getenv("ORT_INTRA_OP_THREADS", "0"))
    EVENT_STREAM_TIMEOUT = float(os.getenv("EVENT_STREAM_TIMEOUT", "600"))

    # API settings
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Logging settings
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_TO_FILE = os.getenv("LOG_TO_FILE", "True").lower() == "true"

    @classmethod
    def to_dict(cls) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return {
            key: getattr(cls, key)
            for key in dir(cls)
            if not key.startswith("_") and key.isupper()
        }


class DevelopmentConfig(Config):
    """Development configuration"""

    DEBUG = True
    LOG_LEVEL = "DEBUG"


class ProductionConfig(Config):
    """Production configuration"""

    DEBUG = False
    LOG_LEVEL = "INFO"


class TestingConfig(Config):
    """Testing configuration"""

    DEBUG = True
    LOG_TO_FILE = False
    MODEL_DOWNLOAD_TIMEOUT = 5.0
    EVENT_STREAM_TIMEOUT = 30.0


def get_config() -> Config:
    """Get appropriate configuration based on environment"""
    env = os.getenv("ENVIRONMENT", "development").lower()

    config_map = {
        "development": DevelopmentConfig,
        "production": ProductionConfig,
        "testing": TestingConfig,
    }

    return config_map.get(env, DevelopmentConfig)
