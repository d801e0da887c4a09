from pathlib import Path
import dotenv
import logging
import os


ROOT = Path(__file__).parent.parent

dotenv.load_dotenv(ROOT / '.env')

# Logging configuration
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name"""
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    return logger


# Locations
DEFAULT_DATA_DIRECTORY = os.environ.get('WIKIMIRROR_DATA_DIR', str(ROOT / 'data'))
DEFAULT_CONFIG_PATH = os.environ.get('WIKIMIRROR_CONFIG', str(ROOT / 'sync_config.yaml'))

# Constants
VALID_SOURCES = ['osrs', 'nlab', 'wikipedia', 'vintage_machinery']
USER_AGENT = 'WikiMirror/1.0 (python-requests)'
MAX_EXTRACTED_TEXT_LENGTH = 100_000
RUN_LOCK_TTL_SECONDS = 3600

