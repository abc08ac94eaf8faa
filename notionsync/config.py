from pathlib import Path
import dotenv
import os


ROOT = Path(__file__).parent.parent

dotenv.load_dotenv(ROOT / '.env')


# Hierarchy settings
DEFAULT_MAX_DEPTH = 5
MAX_DEPTH_CEILING = 10

# Batch settings
DEFAULT_BATCH_SIZE = 20
DEFAULT_BATCH_STAGGER_SECONDS = 3.0

# Remote I/O settings
DEFAULT_FETCH_TIMEOUT = 30

def get_state_directory() -> str:
    """
    Directory holding the registries, job table and checkpoint log.
    Returns:
        str: NOTIONSYNC_STATE_DIR if set, './state' otherwise
    """
    return os.environ.get('NOTIONSYNC_STATE_DIR', './state')

def get_log_level() -> str:
    return os.environ.get('NOTIONSYNC_LOG_LEVEL', 'INFO').upper()
