import sys
from pathlib import Path


# Ensure platform-adapter is importable when the project is not installed.
PLATFORM_ADAPTER_DIR = Path(__file__).resolve().parents[1]
if str(PLATFORM_ADAPTER_DIR) not in sys.path:
    sys.path.insert(0, str(PLATFORM_ADAPTER_DIR))
